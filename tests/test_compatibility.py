import pytest

from compatibility import (
    BLOOD_GROUPS, PLASMA_DONORS, RED_CELL_DONORS, can_supply, compatible_donors, compatible_recipients,
)
from errors import ValidationError
from schemas import Component

# Receive-from table for red cells
EXPECTED_DONORS = {
    "A+": {"A+", "A-", "O+", "O-"},
    "O+": {"O+", "O-"},
    "B+": {"B+", "B-", "O+", "O-"},
    "AB+": set(BLOOD_GROUPS),
    "A-": {"A-", "O-"},
    "O-": {"O-"},
    "B-": {"B-", "O-"},
    "AB-": {"AB-", "A-", "B-", "O-"},
}


@pytest.mark.parametrize("recipient", BLOOD_GROUPS)
def test_red_cell_donors_match_table(recipient):
    assert set(compatible_donors(recipient)) == EXPECTED_DONORS[recipient]


@pytest.mark.parametrize("group", BLOOD_GROUPS)
def test_identical_group_listed_first(group):
    assert compatible_donors(group)[0] == group
    assert compatible_recipients(group)[0] == group


def test_directions_agree():
    for donor in BLOOD_GROUPS:
        for recipient in BLOOD_GROUPS:
            assert (recipient in compatible_recipients(donor)) == (donor in compatible_donors(recipient))


def test_compatibility_is_asymmetric():
    assert can_supply("O-", "AB+")
    assert not can_supply("AB+", "O-")


def test_universal_donor_and_recipient():
    assert set(compatible_recipients("O-")) == set(BLOOD_GROUPS)
    assert compatible_recipients("AB+") == ("AB+",)


def test_plasma_reverses_abo():
    assert can_supply("AB-", "O+", Component.PLASMA)
    assert not can_supply("O-", "AB+", Component.PLASMA)
    assert set(compatible_recipients("AB+", Component.CRYOPRECIPITATE)) == set(BLOOD_GROUPS)
    assert compatible_donors("A+", Component.PLASMA)[0] == "A+"


def test_platelets_follow_red_cell_rules():
    assert compatible_donors("B-", Component.PLATELETS) == compatible_donors("B-", Component.RED_CELLS)


@pytest.mark.parametrize("bad", ["C+", "A", "", None, "ab+"])
def test_unknown_group_rejected(bad):
    with pytest.raises(ValidationError):
        compatible_donors(bad)
    with pytest.raises(ValidationError):
        can_supply(bad, "A+")


def test_tables_are_read_only():
    with pytest.raises(TypeError):
        RED_CELL_DONORS["O-"] = ("A+",)
    with pytest.raises(TypeError):
        PLASMA_DONORS["AB+"] = ()
