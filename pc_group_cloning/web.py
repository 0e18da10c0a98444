"""Flask JSON API for the PC group cloning tool."""
from __future__ import annotations

import json
import os
import secrets
import threading
from datetime import date
from pathlib import Path
from typing import Any, Dict, List, Optional

import msal
import requests
from flask import (
    Flask,
    g,
    jsonify,
    redirect,
    request,
    session,
    url_for,
)
from flask import has_request_context

from .audit import AuditFilters
from .config import (
    AppConfig,
    AuthConfig,
    config_to_dict,
    ensure_default_config,
    load_config,
)
from .models import UNKNOWN_USER, CloneRequest
from .orchestrator import OperationContext
from .services import Services, build_services


_AUTH_EXEMPT_ENDPOINTS = {"login", "logout", "auth_callback", "static", "index"}
_DEFAULT_AUTH_SCOPES = ("https://graph.microsoft.com/User.Read",)
_RESERVED_AUTH_SCOPES = {"openid", "profile", "offline_access"}
_MIN_SEARCH_TERM = 2
_MAX_RECENT = 500

# Guards the cached Services swap when the settings file changes
_SERVICES_LOCK = threading.Lock()


def create_app(config_path: Optional[Path | str] = None) -> Flask:
    """Create and configure the Flask application."""

    resolved_config_path = Path(config_path) if config_path else None
    ensure_default_config(resolved_config_path)

    app = Flask(__name__)
    app.config["SECRET_KEY"] = os.environ.get("PCCLONE_WEB_SECRET", "pc-group-cloning-secret")
    app.config["CONFIG_PATH"] = resolved_config_path
    app.json.sort_keys = False

    register_routes(app)
    return app


def register_routes(app: Flask) -> None:
    """Attach all web routes to the provided Flask app."""

    @app.before_request
    def _enforce_authentication() -> Optional[Any]:
        config = _load_app_config(app)
        current_user = session.get("user")
        g.current_user = current_user
        if not config.auth.enabled:
            return None

        endpoint = request.endpoint or ""
        if endpoint.startswith("static") or endpoint in _AUTH_EXEMPT_ENDPOINTS:
            return None

        if current_user:
            return None

        if request.path.startswith("/api/"):
            return jsonify({"success": False, "message": "Authentication required."}), 401
        session["post_login_redirect"] = request.url
        return redirect(url_for("login"))

    @app.route("/")
    def index() -> Any:
        config = _load_app_config(app)
        return jsonify(
            {
                "application": "PC Group Cloning",
                "domain": config.directory.domain,
                "authEnabled": config.auth.enabled,
                "user": session.get("user"),
            }
        )

    @app.route("/login")
    def login() -> Any:
        config = _load_app_config(app)
        if not config.auth.enabled:
            return jsonify({"success": False, "message": "Authentication is not enabled."}), 400
        if not config.auth.has_credentials:
            return (
                jsonify(
                    {
                        "success": False,
                        "message": "Authentication is enabled but not fully configured.",
                    }
                ),
                500,
            )

        state = secrets.token_urlsafe(32)
        session["auth_state"] = state
        next_url = request.args.get("next") or session.get("post_login_redirect") or url_for("index")
        session["post_login_redirect"] = next_url

        client = _build_msal_client(config.auth)
        redirect_uri = _auth_redirect_uri(config.auth)
        requested_scopes = list(config.auth.scopes or _DEFAULT_AUTH_SCOPES)
        scopes = [scope for scope in requested_scopes if scope.lower() not in _RESERVED_AUTH_SCOPES]
        if not scopes:
            scopes = list(_DEFAULT_AUTH_SCOPES)
        auth_url = client.get_authorization_request_url(
            scopes=scopes,
            state=state,
            redirect_uri=redirect_uri,
            prompt="select_account",
        )
        return redirect(auth_url)

    @app.route("/logout")
    def logout() -> Any:
        session.clear()
        return redirect(url_for("index"))

    @app.route("/auth/callback")
    def auth_callback() -> Any:
        config = _load_app_config(app)
        if not config.auth.enabled:
            return jsonify({"success": False, "message": "Authentication is not enabled."}), 400

        expected_state = session.get("auth_state")
        if not expected_state or expected_state != request.args.get("state"):
            app.logger.warning("Auth callback: state mismatch")
            return redirect(url_for("login"))
        session.pop("auth_state", None)

        if "error" in request.args:
            app.logger.warning(
                "Auth callback: sign-in failed (%s)",
                request.args.get("error_description") or request.args.get("error"),
            )
            return redirect(url_for("login"))

        code = request.args.get("code")
        if not code:
            return redirect(url_for("login"))

        client = _build_msal_client(config.auth)
        token_result = client.acquire_token_by_authorization_code(
            code,
            scopes=list(config.auth.scopes or _DEFAULT_AUTH_SCOPES),
            redirect_uri=_auth_redirect_uri(config.auth),
        )
        if "access_token" not in token_result:
            app.logger.error(
                "Auth callback: token acquisition failed (error=%s, error_description=%s, correlation_id=%s)",
                token_result.get("error"),
                token_result.get("error_description"),
                token_result.get("correlation_id"),
            )
            return redirect(url_for("login"))

        claims = token_result.get("id_token_claims") or {}
        subject = claims.get("preferred_username") or claims.get("oid") or "unknown"
        allowed_groups = set(config.auth.allowed_groups or [])
        user_groups = _extract_user_groups(claims, token_result, app.logger)
        if allowed_groups and user_groups.isdisjoint(allowed_groups):
            app.logger.warning(
                "Auth callback: denying user=%s (required groups=%s)",
                subject,
                sorted(allowed_groups),
            )
            return jsonify({"success": False, "message": "You do not have access to this application."}), 403

        session["user"] = {
            "name": claims.get("name") or claims.get("preferred_username") or "Signed-in user",
            "upn": claims.get("preferred_username") or claims.get("email"),
            "oid": claims.get("oid"),
        }
        app.logger.info("Auth callback: signed in user=%s", subject)
        return redirect(session.pop("post_login_redirect", url_for("index")))

    # Clone -----------------------------------------------------------------
    @app.post("/api/clone/execute")
    def api_clone_execute() -> Any:
        payload = request.get_json(silent=True)
        if not isinstance(payload, dict):
            return (
                jsonify({"success": False, "errors": ["Request body must be a JSON object."], "message": "Invalid request"}),
                400,
            )

        clone_request = CloneRequest.from_dict(payload)
        validation_errors = clone_request.validation_errors()
        if validation_errors:
            return (
                jsonify({"success": False, "errors": validation_errors, "message": "Invalid request"}),
                400,
            )

        services = _get_services(app)
        username = _current_username()
        timeout = services.config.clone.timeout_seconds or None
        app.logger.info(
            "Clone requested by %s: %s -> %s",
            username,
            clone_request.source_computer,
            clone_request.target_computer,
        )
        outcome = services.clone(
            clone_request,
            username=username,
            context=OperationContext(timeout=timeout),
        )

        if outcome.fatal:
            return (
                jsonify(
                    {
                        "success": False,
                        "message": outcome.message,
                        "error": outcome.errors[-1] if outcome.errors else "",
                    }
                ),
                500,
            )
        return jsonify(outcome.to_dict())

    # Directory lookups -----------------------------------------------------
    @app.get("/api/computer/search")
    def api_computer_search() -> Any:
        term = _search_term()
        if term is None:
            return jsonify([])
        with _get_services(app).directory() as client:
            return jsonify(client.search_computers(term))

    @app.get("/api/computer/<path:name>/groups")
    def api_computer_groups(name: str) -> Any:
        with _get_services(app).directory() as client:
            return jsonify(client.get_computer_groups(name))

    @app.get("/api/computer/<path:name>/ou")
    def api_computer_ou(name: str) -> Any:
        with _get_services(app).directory() as client:
            return jsonify({"ou": client.get_computer_ou(name)})

    @app.get("/api/computer/<path:name>/details")
    def api_computer_details(name: str) -> Any:
        with _get_services(app).directory() as client:
            return jsonify(client.get_computer_details(name).to_dict())

    @app.get("/api/groups/search")
    def api_groups_search() -> Any:
        term = _search_term()
        if term is None:
            return jsonify([])
        with _get_services(app).directory() as client:
            return jsonify(client.search_groups(term))

    @app.get("/api/ou/search")
    def api_ou_search() -> Any:
        term = _search_term()
        if term is None:
            return jsonify([])
        with _get_services(app).directory() as client:
            return jsonify(client.search_organizational_units(term))

    # Audit -----------------------------------------------------------------
    @app.get("/api/audit")
    def api_audit() -> Any:
        try:
            filters = _audit_filters_from_args(request.args)
        except ValueError as exc:
            return jsonify({"success": False, "message": str(exc)}), 400

        audit = _get_services(app).audit
        payload = audit.query(filters).to_dict()
        payload["usernames"] = audit.usernames()
        payload["operations"] = audit.operations()
        return jsonify(payload)

    @app.get("/api/audit/recent")
    def api_audit_recent() -> Any:
        count = min(max(_parse_int(request.args.get("count"), 50), 1), _MAX_RECENT)
        username = (request.args.get("username") or "").strip()
        audit = _get_services(app).audit
        records = audit.by_user(username, count) if username else audit.recent(count)
        return jsonify([record.to_dict() for record in records])

    @app.get("/api/audit/<int:record_id>")
    def api_audit_record(record_id: int) -> Any:
        record = _get_services(app).audit.get(record_id)
        if record is None:
            return jsonify({"success": False, "message": "Audit record not found."}), 404
        return jsonify(record.to_dict())

    # Administration --------------------------------------------------------
    @app.get("/api/admin/service-account")
    def api_service_account() -> Any:
        identity = _get_services(app).vault.get_active_identity()
        if identity is None:
            return jsonify({"configured": False})
        return jsonify({"configured": True, **identity.to_public_dict()})

    @app.post("/api/admin/service-account")
    def api_save_service_account() -> Any:
        fields, errors = _service_account_fields(request.get_json(silent=True))
        if errors:
            return jsonify({"success": False, "errors": errors}), 400

        vault = _get_services(app).vault
        if not vault.save_identity(fields["domain"], fields["username"], fields["password"], _current_username()):
            return jsonify({"success": False, "message": "Error saving service account."}), 500
        return jsonify({"success": True, "message": "Service account saved successfully."})

    @app.post("/api/admin/service-account/test")
    def api_test_service_account() -> Any:
        fields, errors = _service_account_fields(request.get_json(silent=True))
        if errors:
            return jsonify({"success": False, "errors": errors}), 400

        ok = _get_services(app).vault.test_identity(fields["domain"], fields["username"], fields["password"])
        message = (
            "Service account test successful."
            if ok
            else "Service account test failed. Check the credentials."
        )
        return jsonify({"success": ok, "message": message})

    @app.get("/api/admin/retired-ou")
    def api_retired_ou() -> Any:
        config = _get_services(app).ou_store.get_config()
        if config is None:
            return jsonify({"retiredComputersOU": None})
        return jsonify(config.to_dict())

    @app.get("/api/admin/retired-ou/history")
    def api_retired_ou_history() -> Any:
        history = _get_services(app).ou_store.history()
        return jsonify([config.to_dict() for config in history])

    @app.post("/api/admin/retired-ou")
    def api_save_retired_ou() -> Any:
        payload = request.get_json(silent=True) or {}
        path = str(payload.get("retiredComputersOU") or payload.get("retired_computers_ou") or "").strip()
        if not path:
            return jsonify({"success": False, "errors": ["Retired computers OU is required."]}), 400

        if not _get_services(app).ou_store.save_retired_ou(path, _current_username()):
            return jsonify({"success": False, "message": "Error saving retired computers OU."}), 500
        return jsonify({"success": True, "message": "Retired computers OU saved successfully."})


def _load_app_config(app: Flask) -> AppConfig:
    if has_request_context():
        cached = getattr(g, "_app_config", None)
        if cached is None:
            cached = load_config(app.config.get("CONFIG_PATH"))
            g._app_config = cached
        return cached
    return load_config(app.config.get("CONFIG_PATH"))


def _get_services(app: Flask) -> Services:
    config = _load_app_config(app)
    signature = json.dumps(config_to_dict(config), sort_keys=True)
    with _SERVICES_LOCK:
        cached: Optional[Services] = app.config.get("_SERVICES")
        if cached is not None and app.config.get("_SERVICES_SIGNATURE") == signature:
            return cached

        if cached is not None:
            app.logger.info("Configuration changed; rebuilding services")
            cached.close()
        services = build_services(config)
        app.config["_SERVICES"] = services
        app.config["_SERVICES_SIGNATURE"] = signature
        return services


def _current_username() -> str:
    user = session.get("user") or {}
    name = user.get("upn") or user.get("name")
    if name:
        return str(name)
    remote_user = request.environ.get("REMOTE_USER")
    if remote_user:
        return str(remote_user)
    return UNKNOWN_USER


def _search_term() -> Optional[str]:
    term = (request.args.get("term") or "").strip()
    if len(term) < _MIN_SEARCH_TERM:
        return None
    return term


def _service_account_fields(payload: Any) -> tuple[Dict[str, str], List[str]]:
    payload = payload if isinstance(payload, dict) else {}
    fields = {
        "domain": str(payload.get("domain") or "").strip(),
        "username": str(payload.get("username") or "").strip(),
        "password": str(payload.get("password") or ""),
    }
    errors = [f"{key.capitalize()} is required." for key, value in fields.items() if not value]
    return fields, errors


def _parse_date(raw: Optional[str], name: str) -> Optional[date]:
    if not raw:
        return None
    try:
        return date.fromisoformat(raw)
    except ValueError as exc:
        raise ValueError(f"Invalid {name} date '{raw}'; expected YYYY-MM-DD.") from exc


def _parse_success(raw: Optional[str]) -> Optional[bool]:
    if raw is None or raw == "":
        return None
    lowered = raw.strip().lower()
    if lowered in {"1", "true", "yes"}:
        return True
    if lowered in {"0", "false", "no"}:
        return False
    raise ValueError(f"Invalid success filter '{raw}'.")


def _parse_int(raw: Optional[str], default: int) -> int:
    try:
        return int(raw) if raw is not None else default
    except (TypeError, ValueError):
        return default


def _audit_filters_from_args(args: Any) -> AuditFilters:
    return AuditFilters(
        from_date=_parse_date(args.get("from"), "from"),
        to_date=_parse_date(args.get("to"), "to"),
        username=args.get("username") or None,
        operation=args.get("operation") or None,
        source_computer=args.get("source") or None,
        target_computer=args.get("target") or None,
        error_message=args.get("error") or None,
        success=_parse_success(args.get("success")),
        sort_by=args.get("sortBy") or "timestamp",
        sort_direction=args.get("sortDirection") or "desc",
        page=_parse_int(args.get("page"), 1),
        page_size=_parse_int(args.get("pageSize"), 25),
    )


def _build_msal_client(auth_config: AuthConfig) -> msal.ConfidentialClientApplication:
    authority = f"https://login.microsoftonline.com/{auth_config.tenant_id or 'common'}"
    return msal.ConfidentialClientApplication(
        client_id=auth_config.client_id,
        client_credential=auth_config.client_secret,
        authority=authority,
    )


def _auth_redirect_uri(auth_config: AuthConfig) -> str:
    if auth_config.redirect_uri:
        return auth_config.redirect_uri
    base = request.url_root.rstrip("/")
    return f"{base}{url_for('auth_callback')}"


def _extract_user_groups(
    claims: Dict[str, Any],
    token_result: Dict[str, Any],
    logger: Any,
) -> set[str]:
    groups = set(claims.get("groups") or [])
    if groups:
        return groups

    claim_names = claims.get("_claim_names") or {}
    if not claim_names.get("groups"):
        logger.info("Auth groups: no groups claim or overage reference found in ID token.")
        return groups

    access_token = token_result.get("access_token")
    if not access_token:
        logger.warning("Auth groups: groups claim present but no access token available.")
        return groups
    try:
        return _fetch_member_groups(access_token, logger)
    except requests.RequestException as exc:
        logger.warning("Unable to fetch group membership from Graph: %s", exc)
        return groups


def _fetch_member_groups(access_token: str, logger: Any) -> set[str]:
    headers = {"Authorization": f"Bearer {access_token}"}
    groups: set[str] = set()
    url: Optional[str] = "https://graph.microsoft.com/v1.0/me/memberOf?$select=id"
    while url:
        response = requests.get(url, headers=headers, timeout=10)
        if response.status_code != 200:
            logger.warning(
                "Auth groups: Graph memberOf request failed (status=%s body=%s)",
                response.status_code,
                response.text,
            )
            break
        payload = response.json()
        for entry in payload.get("value", []):
            group_id = entry.get("id")
            if group_id:
                groups.add(group_id)
        url = payload.get("@odata.nextLink")
    logger.info("Auth groups: Graph memberOf returned %s unique groups.", len(groups))
    return groups


def main() -> None:
    """Run the development server."""

    app = create_app()
    app.run(
        host=os.environ.get("PCCLONE_WEB_HOST", "0.0.0.0"),
        port=int(os.environ.get("PCCLONE_WEB_PORT", "5000")),
        debug=os.environ.get("PCCLONE_WEB_DEBUG") == "1",
    )


if __name__ == "__main__":
    main()
