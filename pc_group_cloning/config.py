"""Configuration loading utilities for the PC group cloning tool."""
from __future__ import annotations

import os
import shutil
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Iterable, Optional

import yaml

from .dn import domain_to_base_dn


DEFAULT_CONFIG_PATH = Path("config/settings.yaml")
DEFAULT_TEMPLATE_PATH = Path("config/settings.example.yaml")
ENV_CONFIG_PATH = "PCCLONE_CONFIG"
ENV_PREFIX = "PCCLONE_"

DEFAULT_ENCRYPTION_KEY = "PCGroupCloning2025DefaultKey32Char"
DEFAULT_OPERATION_LABEL = "Clone Groups (Enhanced)"
DEFAULT_SYSTEM_GROUPS = ("Domain Users", "Domain Computers")
DEFAULT_OFFICE_GROUP_MAPPINGS = {
    "LSS-App-Office-Professional-2021-Academic": "LSS-App-Office-Professional",
    "LSS-App-Office-Professional-2021-Corporate": "LSS-App-Office-Professional",
    "LSS-App-Office-Standard-2021-Academic": "LSS-App-Office-Standard",
    "LSS-App-Office-Standard-2021-Corporate": "LSS-App-Office-Standard",
    "LSS-App-Office-Visio-Standard-2021": "LSS-App-Office-Visio-Standard",
    "LSS-App-Office-Project-Standard-2021": "LSS-App-Office-Project-Standard",
}
AMBIENT_AUTH_MODES = ("kerberos", "simple", "anonymous")


@dataclass
class DirectoryConfig:
    """Settings required to reach Active Directory via LDAP."""

    domain: str
    server_uri: str = ""
    base_dn: str = ""
    use_ssl: bool = False
    connect_timeout: int = 10
    receive_timeout: int = 30
    ambient_auth: str = "kerberos"
    ambient_user: Optional[str] = None
    ambient_password: Optional[str] = None
    mock_data_file: Optional[Path] = None
    search_limit: int = 200

    def __post_init__(self) -> None:
        if not self.server_uri:
            scheme = "ldaps" if self.use_ssl else "ldap"
            self.server_uri = f"{scheme}://{self.domain}"
        if not self.base_dn:
            self.base_dn = domain_to_base_dn(self.domain)

    @property
    def is_mock(self) -> bool:
        return self.server_uri.startswith("mock://")


@dataclass
class EncryptionConfig:
    """Key material for the service-identity secret cipher."""

    key: str = DEFAULT_ENCRYPTION_KEY


@dataclass
class StorageConfig:
    """Filesystem locations used by the application."""

    database_file: Path = Path("data/pcgroupcloning.db")


@dataclass
class CloneConfig:
    """Business rules applied by the clone workflow."""

    operation_label: str = DEFAULT_OPERATION_LABEL
    system_groups: tuple[str, ...] = DEFAULT_SYSTEM_GROUPS
    office_group_mappings: Dict[str, str] = field(
        default_factory=lambda: dict(DEFAULT_OFFICE_GROUP_MAPPINGS)
    )
    remap_trigger: str = "a"
    timeout_seconds: int = 300


@dataclass
class AuthConfig:
    """Settings for Entra ID / Microsoft identity authentication."""

    enabled: bool = False
    tenant_id: Optional[str] = None
    client_id: Optional[str] = None
    client_secret: Optional[str] = None
    redirect_uri: Optional[str] = None
    allowed_groups: tuple[str, ...] = ()
    scopes: tuple[str, ...] = ("https://graph.microsoft.com/User.Read",)

    @property
    def has_credentials(self) -> bool:
        return bool(self.tenant_id and self.client_id and self.client_secret)


@dataclass
class LoggingConfig:
    level: str = "INFO"


@dataclass
class AppConfig:
    """Aggregate configuration for the application."""

    directory: DirectoryConfig
    encryption: EncryptionConfig = field(default_factory=EncryptionConfig)
    storage: StorageConfig = field(default_factory=StorageConfig)
    clone: CloneConfig = field(default_factory=CloneConfig)
    auth: AuthConfig = field(default_factory=AuthConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)


class ConfigurationError(RuntimeError):
    """Raised when the configuration file or environment variables are invalid."""


def _load_from_file(path: Path) -> Dict[str, Any]:
    if not path.exists():
        raise ConfigurationError(
            f"Configuration file '{path}' does not exist. "
            "Create it from 'config/settings.example.yaml' or set environment variables."
        )
    with path.open("r", encoding="utf-8") as file:
        return yaml.safe_load(file) or {}


def _apply_environment_overrides(config_dict: Dict[str, Any]) -> Dict[str, Any]:
    """Override configuration values with environment variables."""

    overrides: Dict[str, Any] = {}
    for key, value in os.environ.items():
        if not key.startswith(ENV_PREFIX) or key == ENV_CONFIG_PATH:
            continue
        path = key[len(ENV_PREFIX) :].lower().split("__")
        node = overrides
        for part in path[:-1]:
            node = node.setdefault(part, {})
        node[path[-1]] = value

    if overrides:
        config_dict = _deep_merge(config_dict, overrides)
    return config_dict


def _deep_merge(base: Dict[str, Any], overrides: Dict[str, Any]) -> Dict[str, Any]:
    result = dict(base)
    for key, value in overrides.items():
        if isinstance(value, dict) and isinstance(base.get(key), dict):
            result[key] = _deep_merge(base[key], value)
        else:
            result[key] = value
    return result


def _resolve_config_path(path: Optional[Path] = None) -> Path:
    if path is not None:
        return Path(path)
    env_path = os.environ.get(ENV_CONFIG_PATH)
    if env_path:
        return Path(env_path)
    return DEFAULT_CONFIG_PATH


def ensure_default_config(
    path: Optional[Path] = None, template_path: Optional[Path] = None
) -> Path:
    """Ensure a configuration file exists, copying from the example if needed."""

    target_path = _resolve_config_path(path)
    if target_path.exists():
        return target_path

    template = Path(template_path) if template_path is not None else DEFAULT_TEMPLATE_PATH
    if not template.exists():
        raise ConfigurationError(
            "Default configuration template not found. "
            "Ensure 'config/settings.example.yaml' is present or specify a template."
        )

    target_path.parent.mkdir(parents=True, exist_ok=True)
    shutil.copy(template, target_path)
    return target_path


def _load_config_dict(path: Optional[Path] = None) -> Dict[str, Any]:
    resolved_path = _resolve_config_path(path)
    if resolved_path == DEFAULT_CONFIG_PATH:
        ensure_default_config(resolved_path)

    config_dict = _load_from_file(resolved_path)
    return _apply_environment_overrides(config_dict)


def _get_required(config_dict: Dict[str, Any], key: str) -> Dict[str, Any]:
    try:
        section = config_dict[key]
    except KeyError as exc:
        raise ConfigurationError(f"Missing required configuration section: '{key}'.") from exc
    if not isinstance(section, dict):
        raise ConfigurationError(f"Configuration section '{key}' must be a mapping.")
    return section


def _normalize_sequence(value: Any) -> Iterable[Any]:
    if isinstance(value, (list, tuple, set)):
        return value
    if isinstance(value, str):
        return [part for part in value.split(",")]
    return [value]


def _to_bool(value: Any) -> bool:
    if isinstance(value, bool):
        return value
    if isinstance(value, str):
        return value.strip().lower() in {"1", "true", "yes", "on"}
    return bool(value)


def _to_int(value: Any) -> int:
    if isinstance(value, int):
        return value
    if isinstance(value, str):
        return int(value.strip())
    return int(value)


def _optional_path(raw: Any) -> Optional[Path]:
    """Convert a raw config value to ``Path`` if set, otherwise ``None``."""

    if raw is None:
        return None
    if isinstance(raw, Path):
        return raw
    if isinstance(raw, str):
        stripped = raw.strip()
        if not stripped:
            return None
        return Path(stripped)
    return Path(raw)


def _optional_str(value: Any) -> Optional[str]:
    if value is None:
        return None
    if isinstance(value, str):
        stripped = value.strip()
        return stripped or None
    return str(value)


def _clean_tuple(value: Any, default: tuple[str, ...]) -> tuple[str, ...]:
    if value is None:
        return default
    return tuple(filter(None, [str(entry).strip() for entry in _normalize_sequence(value)]))


def _parse_directory(section: Dict[str, Any]) -> DirectoryConfig:
    domain = _optional_str(section.get("domain"))
    if not domain:
        raise ConfigurationError("Missing directory configuration key: 'domain'.")

    ambient_auth = str(section.get("ambient_auth") or "kerberos").strip().lower()
    if ambient_auth not in AMBIENT_AUTH_MODES:
        raise ConfigurationError(
            f"Unsupported directory.ambient_auth '{ambient_auth}'. "
            f"Expected one of: {', '.join(AMBIENT_AUTH_MODES)}."
        )

    try:
        return DirectoryConfig(
            domain=domain,
            server_uri=_optional_str(section.get("server_uri")) or "",
            base_dn=_optional_str(section.get("base_dn")) or "",
            use_ssl=_to_bool(section.get("use_ssl", False)),
            connect_timeout=_to_int(section.get("connect_timeout", 10)),
            receive_timeout=_to_int(section.get("receive_timeout", 30)),
            ambient_auth=ambient_auth,
            ambient_user=_optional_str(section.get("ambient_user")),
            ambient_password=_optional_str(section.get("ambient_password")),
            mock_data_file=_optional_path(section.get("mock_data_file")),
            search_limit=_to_int(section.get("search_limit", 200)),
        )
    except ValueError as exc:
        raise ConfigurationError(f"Invalid directory configuration value: {exc}.") from exc


def _parse_clone(section: Dict[str, Any]) -> CloneConfig:
    defaults = CloneConfig()
    mappings_raw = section.get("office_group_mappings")
    if mappings_raw is None:
        mappings = dict(defaults.office_group_mappings)
    elif isinstance(mappings_raw, dict):
        mappings = {str(key).strip(): str(value).strip() for key, value in mappings_raw.items()}
    else:
        raise ConfigurationError("clone.office_group_mappings must be a mapping of group names.")

    try:
        timeout = _to_int(section.get("timeout_seconds", defaults.timeout_seconds))
    except ValueError as exc:
        raise ConfigurationError(f"Invalid clone.timeout_seconds: {exc}.") from exc

    return CloneConfig(
        operation_label=_optional_str(section.get("operation_label")) or defaults.operation_label,
        system_groups=_clean_tuple(section.get("system_groups"), defaults.system_groups),
        office_group_mappings=mappings,
        remap_trigger=str(section.get("remap_trigger", defaults.remap_trigger)),
        timeout_seconds=max(0, timeout),
    )


def _parse_auth(section: Dict[str, Any]) -> AuthConfig:
    default_scopes = AuthConfig().scopes
    return AuthConfig(
        enabled=_to_bool(section.get("enabled", False)),
        tenant_id=_optional_str(section.get("tenant_id")),
        client_id=_optional_str(section.get("client_id")),
        client_secret=_optional_str(section.get("client_secret")),
        redirect_uri=_optional_str(section.get("redirect_uri")),
        allowed_groups=_clean_tuple(section.get("allowed_groups"), ()),
        scopes=_clean_tuple(section.get("scopes"), default_scopes) or default_scopes,
    )


def load_config(path: Optional[Path] = None) -> AppConfig:
    """Load application configuration from disk and environment variables."""

    config_dict = _load_config_dict(path)
    directory_config = _parse_directory(_get_required(config_dict, "directory"))

    encryption_section = config_dict.get("encryption") or {}
    key = encryption_section.get("key")
    encryption_config = EncryptionConfig(key=str(key) if key else DEFAULT_ENCRYPTION_KEY)

    storage_section = config_dict.get("storage") or {}
    storage_config = StorageConfig(
        database_file=_optional_path(storage_section.get("database_file"))
        or StorageConfig().database_file,
    )

    logging_section = config_dict.get("logging") or {}
    logging_config = LoggingConfig(
        level=str(logging_section.get("level", "INFO")).strip().upper() or "INFO"
    )

    return AppConfig(
        directory=directory_config,
        encryption=encryption_config,
        storage=storage_config,
        clone=_parse_clone(config_dict.get("clone") or {}),
        auth=_parse_auth(config_dict.get("auth") or {}),
        logging=logging_config,
    )


def config_to_dict(config: AppConfig) -> Dict[str, Any]:
    """Serialize an :class:`AppConfig` back to primitive types."""

    directory = config.directory
    return {
        "directory": {
            "domain": directory.domain,
            "server_uri": directory.server_uri,
            "base_dn": directory.base_dn,
            "use_ssl": directory.use_ssl,
            "connect_timeout": directory.connect_timeout,
            "receive_timeout": directory.receive_timeout,
            "ambient_auth": directory.ambient_auth,
            "ambient_user": directory.ambient_user or "",
            "ambient_password": directory.ambient_password or "",
            **(
                {"mock_data_file": str(directory.mock_data_file)}
                if directory.mock_data_file
                else {}
            ),
            "search_limit": directory.search_limit,
        },
        "encryption": {"key": config.encryption.key},
        "storage": {"database_file": str(config.storage.database_file)},
        "clone": {
            "operation_label": config.clone.operation_label,
            "system_groups": list(config.clone.system_groups),
            "office_group_mappings": dict(config.clone.office_group_mappings),
            "remap_trigger": config.clone.remap_trigger,
            "timeout_seconds": config.clone.timeout_seconds,
        },
        "auth": {
            "enabled": config.auth.enabled,
            "tenant_id": config.auth.tenant_id or "",
            "client_id": config.auth.client_id or "",
            "client_secret": config.auth.client_secret or "",
            "redirect_uri": config.auth.redirect_uri or "",
            "allowed_groups": list(config.auth.allowed_groups),
            "scopes": list(config.auth.scopes),
        },
        "logging": {"level": config.logging.level},
    }


__all__ = [
    "AppConfig",
    "AuthConfig",
    "CloneConfig",
    "ConfigurationError",
    "DirectoryConfig",
    "EncryptionConfig",
    "LoggingConfig",
    "StorageConfig",
    "config_to_dict",
    "ensure_default_config",
    "load_config",
]
