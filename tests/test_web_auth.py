"""Sign-in flow with a stubbed msal client and Graph endpoint."""
from urllib.parse import parse_qs, urlparse

import pytest
import requests
import yaml

from pc_group_cloning import web
from pc_group_cloning.web import create_app


HELPDESK_GROUP = "0b1c-helpdesk"


class StubConfidentialClient:
    instances = []
    token_result = {}

    def __init__(self, client_id, client_credential, authority):
        self.client_id = client_id
        self.authority = authority
        self.auth_requests = []
        self.code_requests = []
        StubConfidentialClient.instances.append(self)

    def get_authorization_request_url(self, scopes, state, redirect_uri, prompt=None):
        self.auth_requests.append({"scopes": scopes, "state": state, "redirect_uri": redirect_uri})
        return f"https://login.example.test/authorize?state={state}"

    def acquire_token_by_authorization_code(self, code, scopes, redirect_uri):
        self.code_requests.append(code)
        return dict(StubConfidentialClient.token_result)


class StubResponse:
    def __init__(self, payload, status_code=200):
        self._payload = payload
        self.status_code = status_code
        self.text = str(payload)

    def json(self):
        return self._payload


@pytest.fixture
def msal_stub(monkeypatch):
    StubConfidentialClient.instances = []
    StubConfidentialClient.token_result = {}
    monkeypatch.setattr(web.msal, "ConfidentialClientApplication", StubConfidentialClient)
    return StubConfidentialClient


@pytest.fixture
def client(settings_file, msal_stub):
    with settings_file.open("r", encoding="utf-8") as handle:
        data = yaml.safe_load(handle)
    data["auth"] = {
        "enabled": True,
        "tenant_id": "tenant-1",
        "client_id": "client-1",
        "client_secret": "secret-1",
        "redirect_uri": "https://clone.example.test/auth/callback",
        "allowed_groups": [HELPDESK_GROUP],
    }
    with settings_file.open("w", encoding="utf-8") as handle:
        yaml.safe_dump(data, handle)

    app = create_app(settings_file)
    app.config["TESTING"] = True
    yield app.test_client()
    services = app.config.get("_SERVICES")
    if services is not None:
        services.close()


def _start_sign_in(client):
    response = client.get("/login?next=/api/audit")
    assert response.status_code == 302
    return parse_qs(urlparse(response.headers["Location"]).query)["state"][0]


def _claims(**extra):
    claims = {"name": "Alice Example", "preferred_username": "alice@example.com", "oid": "oid-1"}
    claims.update(extra)
    return claims


def test_login_redirects_to_authority(client, msal_stub):
    response = client.get("/login")

    assert response.headers["Location"].startswith("https://login.example.test/authorize")
    stub = msal_stub.instances[0]
    assert stub.client_id == "client-1"
    assert stub.authority == "https://login.microsoftonline.com/tenant-1"
    assert stub.auth_requests[0]["redirect_uri"] == "https://clone.example.test/auth/callback"
    with client.session_transaction() as session:
        assert session["auth_state"] == stub.auth_requests[0]["state"]


def test_callback_signs_in_member_of_allowed_group(client, msal_stub):
    state = _start_sign_in(client)
    msal_stub.token_result = {"access_token": "token", "id_token_claims": _claims(groups=[HELPDESK_GROUP])}

    response = client.get(f"/auth/callback?state={state}&code=abc")

    assert response.status_code == 302
    assert response.headers["Location"].endswith("/api/audit")
    assert msal_stub.instances[-1].code_requests == ["abc"]
    with client.session_transaction() as session:
        assert session["user"] == {"name": "Alice Example", "upn": "alice@example.com", "oid": "oid-1"}
        assert "auth_state" not in session
    assert client.get("/api/audit").status_code == 200


def test_callback_denies_user_outside_allowed_groups(client, msal_stub):
    state = _start_sign_in(client)
    msal_stub.token_result = {"access_token": "token", "id_token_claims": _claims(groups=["other"])}

    response = client.get(f"/auth/callback?state={state}&code=abc")

    assert response.status_code == 403
    assert response.get_json()["success"] is False
    with client.session_transaction() as session:
        assert "user" not in session
    assert client.get("/api/audit").status_code == 401


def test_callback_with_wrong_state_returns_to_login(client, msal_stub):
    _start_sign_in(client)

    response = client.get("/auth/callback?state=forged&code=abc")

    assert response.status_code == 302
    assert response.headers["Location"].endswith("/login")
    assert msal_stub.instances[-1].code_requests == []


def test_callback_without_token_returns_to_login(client, msal_stub):
    state = _start_sign_in(client)
    msal_stub.token_result = {"error": "invalid_grant", "error_description": "expired"}

    response = client.get(f"/auth/callback?state={state}&code=abc")

    assert response.headers["Location"].endswith("/login")
    with client.session_transaction() as session:
        assert "user" not in session


def test_group_overage_is_resolved_through_graph(client, msal_stub, monkeypatch):
    pages = {
        "https://graph.microsoft.com/v1.0/me/memberOf?$select=id": {
            "value": [{"id": "other"}],
            "@odata.nextLink": "https://graph.microsoft.com/v1.0/me/memberOf?page=2",
        },
        "https://graph.microsoft.com/v1.0/me/memberOf?page=2": {"value": [{"id": HELPDESK_GROUP}]},
    }
    requested = []

    def fake_get(url, headers, timeout):
        requested.append(headers["Authorization"])
        return StubResponse(pages[url])

    monkeypatch.setattr(web.requests, "get", fake_get)
    state = _start_sign_in(client)
    msal_stub.token_result = {
        "access_token": "graph-token",
        "id_token_claims": _claims(_claim_names={"groups": "src1"}),
    }

    response = client.get(f"/auth/callback?state={state}&code=abc")

    assert response.status_code == 302
    assert requested == ["Bearer graph-token", "Bearer graph-token"]
    with client.session_transaction() as session:
        assert session["user"]["upn"] == "alice@example.com"


def test_graph_failure_denies_overage_user(client, msal_stub, monkeypatch):
    def unreachable(url, headers, timeout):
        raise requests.ConnectionError("graph down")

    monkeypatch.setattr(web.requests, "get", unreachable)
    state = _start_sign_in(client)
    msal_stub.token_result = {
        "access_token": "graph-token",
        "id_token_claims": _claims(_claim_names={"groups": "src1"}),
    }

    assert client.get(f"/auth/callback?state={state}&code=abc").status_code == 403
