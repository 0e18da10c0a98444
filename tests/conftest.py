from __future__ import annotations

from pathlib import Path

import pytest
import yaml

from pc_group_cloning.config import DirectoryConfig
from pc_group_cloning.database import MEMORY_DATABASE, SqliteStore
from pc_group_cloning.encryption import SymmetricCipher
from pc_group_cloning.settings_store import VersionedSettingsStore


MOCK_DIRECTORY = {
    "computers": [
        {
            "name": "PC-OLD01",
            "distinguished_name": "CN=PC-OLD01,OU=Floor2,OU=Workstations,DC=example,DC=com",
            "description": "Reception desk",
            "member_of": [
                "CN=Domain Computers,CN=Users,DC=example,DC=com",
                "CN=AppX,OU=Groups,DC=example,DC=com",
            ],
        },
        {
            "name": "PC-NEW01",
            "distinguished_name": "CN=PC-NEW01,OU=Staging,DC=example,DC=com",
            "description": "",
            "member_of": [
                "CN=Domain Users,CN=Users,DC=example,DC=com",
                "CN=Domain Computers,CN=Users,DC=example,DC=com",
                "CN=AppY,OU=Groups,DC=example,DC=com",
            ],
        },
        {
            "name": "LAB-PC01",
            "distinguished_name": "CN=LAB-PC01,CN=Computers,DC=example,DC=com",
            "description": "Lab bench 1",
            "member_of": [],
        },
    ],
    "groups": [
        {
            "name": "Domain Users",
            "sAMAccountName": "Domain Users",
            "distinguished_name": "CN=Domain Users,CN=Users,DC=example,DC=com",
        },
        {
            "name": "Domain Computers",
            "sAMAccountName": "Domain Computers",
            "distinguished_name": "CN=Domain Computers,CN=Users,DC=example,DC=com",
        },
        {
            "name": "AppX",
            "sAMAccountName": "AppX",
            "distinguished_name": "CN=AppX,OU=Groups,DC=example,DC=com",
        },
        {
            "name": "AppY",
            "sAMAccountName": "AppY",
            "distinguished_name": "CN=AppY,OU=Groups,DC=example,DC=com",
        },
        {
            "name": "LSS-App-Office-Professional",
            "sAMAccountName": "LSS-App-Office-Professional",
            "distinguished_name": "CN=LSS-App-Office-Professional,OU=Groups,DC=example,DC=com",
        },
    ],
    "organizational_units": [
        {"distinguished_name": "OU=Workstations,DC=example,DC=com", "description": "All workstations"},
        {
            "distinguished_name": "OU=Floor2,OU=Workstations,DC=example,DC=com",
            "description": "Second floor",
        },
        {"distinguished_name": "OU=Staging,DC=example,DC=com", "description": "Staging"},
        {
            "distinguished_name": "OU=Retired,OU=Workstations,DC=example,DC=com",
            "description": "Retired",
        },
    ],
    "accounts": [{"username": "EXAMPLE\\svc-clone", "password": "s3cret!"}],
}


@pytest.fixture
def mock_directory_file(tmp_path: Path) -> Path:
    path = tmp_path / "directory.yaml"
    with path.open("w", encoding="utf-8") as handle:
        yaml.safe_dump(MOCK_DIRECTORY, handle, sort_keys=False)
    return path


@pytest.fixture
def directory_config(mock_directory_file: Path) -> DirectoryConfig:
    return DirectoryConfig(
        domain="example.com",
        server_uri="mock://example",
        mock_data_file=mock_directory_file,
    )


@pytest.fixture
def store():
    sqlite_store = SqliteStore(MEMORY_DATABASE)
    yield sqlite_store
    sqlite_store.close()


@pytest.fixture
def settings(store) -> VersionedSettingsStore:
    return VersionedSettingsStore(store)


@pytest.fixture
def cipher() -> SymmetricCipher:
    return SymmetricCipher("unit-test-key")


@pytest.fixture
def settings_file(tmp_path: Path, mock_directory_file: Path) -> Path:
    path = tmp_path / "settings.yaml"
    payload = {
        "directory": {
            "domain": "example.com",
            "server_uri": "mock://example",
            "mock_data_file": str(mock_directory_file),
        },
        "encryption": {"key": "unit-test-key"},
        "storage": {"database_file": str(tmp_path / "data" / "clone.db")},
        "clone": {"timeout_seconds": 0},
    }
    with path.open("w", encoding="utf-8") as handle:
        yaml.safe_dump(payload, handle, sort_keys=False)
    return path
