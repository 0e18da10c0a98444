import pytest

from pc_group_cloning.config import CloneConfig
from pc_group_cloning.policies import GroupRemapPolicy, OfficeGroupRemapPolicy


@pytest.fixture
def policy():
    return OfficeGroupRemapPolicy()


@pytest.mark.parametrize(
    "group, expected",
    [
        ("LSS-App-Office-Professional-2021-Academic", "LSS-App-Office-Professional"),
        ("LSS-App-Office-Professional-2021-Corporate", "LSS-App-Office-Professional"),
        ("LSS-App-Office-Standard-2021-Academic", "LSS-App-Office-Standard"),
        ("LSS-App-Office-Standard-2021-Corporate", "LSS-App-Office-Standard"),
        ("LSS-App-Office-Visio-Standard-2021", "LSS-App-Office-Visio-Standard"),
        ("LSS-App-Office-Project-Standard-2021", "LSS-App-Office-Project-Standard"),
        ("AppX", "AppX"),
    ],
)
def test_remaps_when_target_contains_a(policy, group, expected):
    assert policy.remap_group(group, "LAB-PC01") == expected


def test_no_remap_without_a(policy):
    group = "LSS-App-Office-Professional-2021-Academic"
    assert policy.remap_group(group, "LIB-PC01") == group


def test_trigger_is_case_insensitive(policy):
    assert policy.applies_to("lab-pc01")
    assert policy.applies_to("LAB-PC01")
    assert not policy.applies_to("LIB-PC01")


def test_lookup_is_exact(policy):
    group = "lss-app-office-professional-2021-academic"
    assert policy.remap_group(group, "LAB-PC01") == group


def test_remap_keeps_order_and_duplicates(policy):
    groups = [
        "LSS-App-Office-Standard-2021-Academic",
        "AppX",
        "LSS-App-Office-Standard-2021-Corporate",
    ]
    assert policy.remap(groups, "LAB-PC01") == [
        "LSS-App-Office-Standard",
        "AppX",
        "LSS-App-Office-Standard",
    ]


def test_from_config_uses_custom_table_and_trigger():
    config = CloneConfig(office_group_mappings={"Old": "New"}, remap_trigger="-X")
    policy = OfficeGroupRemapPolicy.from_config(config)
    assert policy.remap_group("Old", "PC-X01") == "New"
    assert policy.remap_group("Old", "LAB-PC01") == "Old"


def test_empty_trigger_disables_remapping():
    policy = OfficeGroupRemapPolicy(trigger="")
    group = "LSS-App-Office-Professional-2021-Academic"
    assert policy.remap_group(group, "LAB-PC01") == group


def test_identity_policy():
    assert GroupRemapPolicy().remap(["A", "B"], "LAB-PC01") == ["A", "B"]
