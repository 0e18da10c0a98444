import yaml
import pytest

from pc_group_cloning.ad_client import ADClient, MockDirectory, ad_client, verify_credentials
from pc_group_cloning.models import ResultStatus


@pytest.fixture
def client(directory_config):
    with ad_client(directory_config) as directory:
        yield directory


def test_search_computers_is_case_insensitive_substring(client):
    assert client.search_computers("pc") == ["LAB-PC01", "PC-NEW01", "PC-OLD01"]
    assert client.search_computers("new") == ["PC-NEW01"]
    assert client.search_computers("zzz") == []


def test_search_groups(client):
    assert client.search_groups("app") == ["AppX", "AppY", "LSS-App-Office-Professional"]


def test_search_organizational_units_returns_dns(client):
    assert client.search_organizational_units("floor") == [
        "OU=Floor2,OU=Workstations,DC=example,DC=com"
    ]


def test_get_computer_groups_parses_common_names(client):
    assert client.get_computer_groups("pc-new01") == ["AppY", "Domain Computers", "Domain Users"]


def test_get_computer_groups_unknown_computer(client):
    assert client.get_computer_groups("NOPE") == []


def test_get_computer_ou(client):
    assert client.get_computer_ou("PC-OLD01") == "OU=Floor2,OU=Workstations,DC=example,DC=com"
    assert client.get_computer_ou("LAB-PC01") == ""
    assert client.get_computer_ou("NOPE") == ""


def test_get_computer_details(client):
    details = client.get_computer_details("PC-OLD01")
    assert details.to_dict() == {
        "ou": "OU=Floor2,OU=Workstations,DC=example,DC=com",
        "ouDescription": "Second floor",
        "computerDescription": "Reception desk",
    }


def test_add_is_idempotent(client):
    first = client.add_computer_to_group("PC-NEW01", "AppX")
    second = client.add_computer_to_group("PC-NEW01", "AppX")

    assert first.status is ResultStatus.SUCCESS
    assert second.status is ResultStatus.ALREADY_SATISFIED
    assert second
    assert "AppX" in client.get_computer_groups("PC-NEW01")


def test_remove_is_idempotent(client):
    first = client.remove_computer_from_group("PC-NEW01", "AppY")
    second = client.remove_computer_from_group("PC-NEW01", "AppY")

    assert first.status is ResultStatus.SUCCESS
    assert second.status is ResultStatus.ALREADY_SATISFIED
    assert "AppY" not in client.get_computer_groups("PC-NEW01")


def test_unknown_group_is_not_found(client):
    result = client.add_computer_to_group("PC-NEW01", "DoesNotExist")
    assert result.status is ResultStatus.NOT_FOUND
    assert not result


def test_unknown_computer_is_not_found(client):
    assert client.remove_computer_from_group("NOPE", "AppX").status is ResultStatus.NOT_FOUND


def test_move_computer_to_ou(client):
    target = "OU=Floor2,OU=Workstations,DC=example,DC=com"
    assert client.move_computer_to_ou("PC-NEW01", target).status is ResultStatus.SUCCESS
    assert client.get_computer_ou("PC-NEW01") == target
    assert client.move_computer_to_ou("PC-NEW01", target).status is ResultStatus.ALREADY_SATISFIED


def test_move_to_missing_ou_fails(client):
    result = client.move_computer_to_ou("PC-NEW01", "OU=Nowhere,DC=example,DC=com")
    assert result.status is ResultStatus.NOT_FOUND


def test_mutations_are_written_back(directory_config, mock_directory_file):
    with ADClient(directory_config) as client:
        client.add_computer_to_group("LAB-PC01", "AppX")

    with mock_directory_file.open("r", encoding="utf-8") as handle:
        data = yaml.safe_load(handle)
    lab = next(c for c in data["computers"] if c["name"] == "LAB-PC01")
    assert lab["member_of"] == ["CN=AppX,OU=Groups,DC=example,DC=com"]


def test_verify_credentials_against_mock_accounts(directory_config):
    assert verify_credentials(directory_config, "EXAMPLE", "svc-clone", "s3cret!")
    assert not verify_credentials(directory_config, "EXAMPLE", "svc-clone", "nope")


def test_mock_without_accounts_accepts_any_non_empty(tmp_path):
    directory = MockDirectory(tmp_path / "missing.yaml")
    assert directory.check_bind("EXAMPLE\\anyone", "pw")
    assert not directory.check_bind("EXAMPLE\\anyone", "")
