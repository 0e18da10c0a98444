import sqlite3

from pc_group_cloning.vault import SERVICE_IDENTITY_KEY, CredentialVault


def test_no_identity_means_no_credentials(settings, cipher):
    vault = CredentialVault(settings, cipher)
    assert vault.get_active_identity() is None
    assert vault.get_credentials() is None


def test_save_then_get_credentials_round_trips(settings, cipher):
    vault = CredentialVault(settings, cipher)
    assert vault.save_identity("EXAMPLE", "svc-clone", "s3cret!", "admin@example.com")

    credentials = vault.get_credentials()
    assert credentials is not None
    assert credentials.username == "EXAMPLE\\svc-clone"
    assert credentials.password == "s3cret!"


def test_secret_is_stored_encrypted(settings, cipher):
    vault = CredentialVault(settings, cipher)
    vault.save_identity("EXAMPLE", "svc-clone", "s3cret!", "admin")

    payload = settings.current(SERVICE_IDENTITY_KEY).payload
    assert payload["encrypted_secret"] != "s3cret!"
    assert cipher.decrypt(payload["encrypted_secret"]) == "s3cret!"


def test_empty_secret_round_trips_to_empty(settings, cipher):
    vault = CredentialVault(settings, cipher)
    vault.save_identity("EXAMPLE", "svc-clone", "", "admin")

    assert settings.current(SERVICE_IDENTITY_KEY).payload["encrypted_secret"] == ""
    assert vault.get_credentials().password == ""


def test_latest_identity_wins(settings, cipher):
    vault = CredentialVault(settings, cipher)
    vault.save_identity("EXAMPLE", "old-svc", "one", "admin")
    vault.save_identity("EXAMPLE", "new-svc", "two", "admin2")

    identity = vault.get_active_identity()
    assert identity.username == "new-svc"
    assert identity.updated_by == "admin2"
    assert identity.last_updated is not None
    assert vault.get_credentials().password == "two"


def test_undecryptable_secret_yields_empty_password(settings, cipher):
    settings.replace(
        SERVICE_IDENTITY_KEY,
        {"domain": "EXAMPLE", "username": "svc", "encrypted_secret": "garbage!!"},
        "admin",
    )
    credentials = CredentialVault(settings, cipher).get_credentials()
    assert credentials.username == "EXAMPLE\\svc"
    assert credentials.password == ""


def test_repr_masks_password(settings, cipher):
    vault = CredentialVault(settings, cipher)
    vault.save_identity("EXAMPLE", "svc", "hunter2", "admin")
    assert "hunter2" not in repr(vault.get_credentials())


def test_public_dict_has_no_secret(settings, cipher):
    vault = CredentialVault(settings, cipher)
    vault.save_identity("EXAMPLE", "svc", "hunter2", "admin")
    public = vault.get_active_identity().to_public_dict()
    assert "hunter2" not in str(public)
    assert "encrypted_secret" not in public


def test_save_reports_storage_failure(store, settings, cipher):
    vault = CredentialVault(settings, cipher)
    store.close()
    assert vault.save_identity("EXAMPLE", "svc", "pw", "admin") is False
    assert vault.get_active_identity() is None


def test_test_identity_uses_binder_without_saving(settings, cipher):
    calls = []

    def binder(domain, username, secret):
        calls.append((domain, username, secret))
        return secret == "good"

    vault = CredentialVault(settings, cipher, binder=binder)
    assert vault.test_identity(" EXAMPLE ", "svc ", "good") is True
    assert vault.test_identity("EXAMPLE", "svc", "bad") is False
    assert calls[0] == ("EXAMPLE", "svc", "good")
    assert vault.get_active_identity() is None


def test_test_identity_without_binder(settings, cipher):
    assert CredentialVault(settings, cipher).test_identity("EXAMPLE", "svc", "pw") is False


def test_for_directory_binds_against_mock(settings, cipher, directory_config):
    vault = CredentialVault.for_directory(settings, cipher, directory_config)
    assert vault.test_identity("EXAMPLE", "svc-clone", "s3cret!") is True
    assert vault.test_identity("EXAMPLE", "svc-clone", "wrong") is False


def test_prequalified_username_is_not_prefixed_twice(settings, cipher, directory_config):
    vault = CredentialVault.for_directory(settings, cipher, directory_config)
    assert vault.test_identity("EXAMPLE", "EXAMPLE\\svc-clone", "s3cret!") is True
    assert vault.save_identity("EXAMPLE", "EXAMPLE\\svc-clone", "s3cret!", "admin")

    assert vault.get_credentials().username == "EXAMPLE\\svc-clone"


def test_username_without_domain_is_used_as_is(settings, cipher):
    vault = CredentialVault(settings, cipher)
    vault.save_identity("", "svc-clone@example.com", "pw", "admin")
    assert vault.get_credentials().username == "svc-clone@example.com"
