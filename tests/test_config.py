from pathlib import Path

import pytest
import yaml

from pc_group_cloning.config import (
    DEFAULT_ENCRYPTION_KEY,
    DEFAULT_OFFICE_GROUP_MAPPINGS,
    ConfigurationError,
    DirectoryConfig,
    config_to_dict,
    ensure_default_config,
    load_config,
)


def _write(path: Path, payload) -> Path:
    with path.open("w", encoding="utf-8") as handle:
        yaml.safe_dump(payload, handle)
    return path


def test_minimal_config_uses_defaults(tmp_path):
    config = load_config(_write(tmp_path / "s.yaml", {"directory": {"domain": "corp.example.com"}}))

    assert config.directory.server_uri == "ldap://corp.example.com"
    assert config.directory.base_dn == "DC=corp,DC=example,DC=com"
    assert not config.directory.is_mock
    assert config.encryption.key == DEFAULT_ENCRYPTION_KEY
    assert config.clone.operation_label == "Clone Groups (Enhanced)"
    assert config.clone.system_groups == ("Domain Users", "Domain Computers")
    assert config.clone.office_group_mappings == DEFAULT_OFFICE_GROUP_MAPPINGS
    assert config.clone.remap_trigger == "a"
    assert config.auth.enabled is False
    assert config.logging.level == "INFO"


def test_ssl_changes_default_scheme():
    assert DirectoryConfig(domain="example.com", use_ssl=True).server_uri == "ldaps://example.com"


def test_mock_server(settings_file):
    config = load_config(settings_file)
    assert config.directory.is_mock
    assert config.directory.mock_data_file is not None


def test_missing_directory_section(tmp_path):
    with pytest.raises(ConfigurationError):
        load_config(_write(tmp_path / "s.yaml", {"encryption": {"key": "x"}}))


def test_missing_domain(tmp_path):
    with pytest.raises(ConfigurationError):
        load_config(_write(tmp_path / "s.yaml", {"directory": {"server_uri": "ldap://dc1"}}))


def test_invalid_ambient_auth(tmp_path):
    path = _write(tmp_path / "s.yaml", {"directory": {"domain": "example.com", "ambient_auth": "magic"}})
    with pytest.raises(ConfigurationError):
        load_config(path)


def test_invalid_office_mappings(tmp_path):
    path = _write(
        tmp_path / "s.yaml",
        {"directory": {"domain": "example.com"}, "clone": {"office_group_mappings": ["a"]}},
    )
    with pytest.raises(ConfigurationError):
        load_config(path)


def test_missing_file(tmp_path):
    with pytest.raises(ConfigurationError):
        load_config(tmp_path / "absent.yaml")


def test_environment_overrides(tmp_path, monkeypatch):
    path = _write(tmp_path / "s.yaml", {"directory": {"domain": "example.com"}})
    monkeypatch.setenv("PCCLONE_ENCRYPTION__KEY", "from-env")
    monkeypatch.setenv("PCCLONE_CLONE__TIMEOUT_SECONDS", "45")
    monkeypatch.setenv("PCCLONE_DIRECTORY__USE_SSL", "true")

    config = load_config(path)
    assert config.encryption.key == "from-env"
    assert config.clone.timeout_seconds == 45
    assert config.directory.use_ssl is True


def test_config_path_from_environment(settings_file, monkeypatch):
    monkeypatch.setenv("PCCLONE_CONFIG", str(settings_file))
    assert load_config().directory.is_mock


def test_system_groups_from_comma_string(tmp_path):
    path = _write(
        tmp_path / "s.yaml",
        {"directory": {"domain": "example.com"}, "clone": {"system_groups": "Domain Users, Kiosk"}},
    )
    assert load_config(path).clone.system_groups == ("Domain Users", "Kiosk")


def test_config_to_dict_round_trips(settings_file, tmp_path):
    config = load_config(settings_file)
    config.clone.remap_trigger = "lab"
    target = _write(tmp_path / "copy.yaml", config_to_dict(config))

    reloaded = load_config(target)
    assert reloaded.clone.remap_trigger == "lab"
    assert reloaded.directory.mock_data_file == config.directory.mock_data_file
    assert reloaded.storage.database_file == config.storage.database_file


def test_ensure_default_config_copies_template(tmp_path):
    template = _write(tmp_path / "example.yaml", {"directory": {"domain": "example.com"}})
    target = tmp_path / "config" / "settings.yaml"

    assert ensure_default_config(target, template) == target
    assert load_config(target).directory.domain == "example.com"


def test_ensure_default_config_without_template(tmp_path):
    with pytest.raises(ConfigurationError):
        ensure_default_config(tmp_path / "settings.yaml", tmp_path / "missing.yaml")


def test_shipped_example_is_valid():
    example = Path(__file__).resolve().parent.parent / "config" / "settings.example.yaml"
    config = load_config(example)
    assert config.directory.domain == "example.com"
    assert config.clone.office_group_mappings == DEFAULT_OFFICE_GROUP_MAPPINGS
