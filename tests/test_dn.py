import pytest

from pc_group_cloning.dn import (
    domain_to_base_dn,
    escape_filter_value,
    extract_common_name,
    organizational_unit_from_dn,
    parent_dn,
    split_dn,
)


def test_split_dn_honours_escaped_commas():
    assert split_dn(r"CN=Smith\, John,OU=Users,DC=example,DC=com") == [
        ("CN", r"Smith\, John"),
        ("OU", "Users"),
        ("DC", "example"),
        ("DC", "com"),
    ]


def test_split_dn_empty():
    assert split_dn("") == []


@pytest.mark.parametrize(
    "dn, expected",
    [
        ("CN=AppX,OU=Groups,DC=example,DC=com", "AppX"),
        ("cn=Domain Users,CN=Users,DC=example,DC=com", "Domain Users"),
        (r"CN=Sales\, East,OU=Groups,DC=example,DC=com", "Sales, East"),
        ("OU=Groups,DC=example,DC=com", ""),
        ("", ""),
    ],
)
def test_extract_common_name(dn, expected):
    assert extract_common_name(dn) == expected


def test_organizational_unit_from_dn_drops_own_name():
    dn = "CN=PC01,OU=Floor2,OU=Workstations,DC=example,DC=com"
    assert organizational_unit_from_dn(dn) == "OU=Floor2,OU=Workstations,DC=example,DC=com"


def test_organizational_unit_from_dn_without_ou():
    assert organizational_unit_from_dn("CN=PC01,CN=Computers,DC=example,DC=com") == ""


def test_organizational_unit_from_dn_with_escaped_name():
    dn = r"CN=PC\,01,OU=Lab,DC=example,DC=com"
    assert organizational_unit_from_dn(dn) == "OU=Lab,DC=example,DC=com"


def test_parent_dn():
    assert parent_dn("CN=PC01,OU=Lab,DC=example,DC=com") == "OU=Lab,DC=example,DC=com"


def test_domain_to_base_dn():
    assert domain_to_base_dn("corp.example.com") == "DC=corp,DC=example,DC=com"
    assert domain_to_base_dn("") == ""


def test_escape_filter_value():
    assert escape_filter_value("PC*(01)\\") == r"PC\2a\2801\29\5c"
