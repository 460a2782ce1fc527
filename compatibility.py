"""
ABO/Rh compatibility between a donated product and its recipient.

Red-cell rules (whole blood, red cells, platelets): a donor group can supply
a recipient when the donor carries no ABO antigen the recipient lacks and is
Rh- or the recipient is Rh+. Plasma rules (plasma, cryoprecipitate) are the
ABO reverse: AB plasma is universal, O plasma only goes to O. Rh is ignored
for plasma.

The tables are module constants, never mutated.
"""

from types import MappingProxyType
from typing import Tuple

from errors import ValidationError
from schemas import Component

BLOOD_GROUPS: Tuple[str, ...] = ("A+", "A-", "B+", "B-", "AB+", "AB-", "O+", "O-")

# Recipient -> acceptable red-cell donors, most preferred first
_RED_CELL_DONORS = {
    "O-":  ("O-",),
    "O+":  ("O+", "O-"),
    "A-":  ("A-", "O-"),
    "A+":  ("A+", "A-", "O+", "O-"),
    "B-":  ("B-", "O-"),
    "B+":  ("B+", "B-", "O+", "O-"),
    "AB-": ("AB-", "A-", "B-", "O-"),
    "AB+": ("AB+", "AB-", "A+", "A-", "B+", "B-", "O+", "O-"),
}

# Recipient ABO -> donor ABO whose plasma it accepts
_PLASMA_ABO_DONORS = {
    "O":  ("O", "A", "B", "AB"),
    "A":  ("A", "AB"),
    "B":  ("B", "AB"),
    "AB": ("AB",),
}

PLASMA_COMPONENTS = frozenset({Component.PLASMA.value, Component.CRYOPRECIPITATE.value})


def _abo(group: str) -> str:
    return group[:-1]


def _build_plasma_donors():
    table = {}
    for recipient in BLOOD_GROUPS:
        accepted = _PLASMA_ABO_DONORS[_abo(recipient)]
        donors = [g for g in BLOOD_GROUPS if _abo(g) in accepted]
        donors.sort(key=lambda g: (accepted.index(_abo(g)), g[-1] != recipient[-1]))
        table[recipient] = tuple(donors)
    return table


def _invert(donors_by_recipient):
    recipients = {g: [] for g in BLOOD_GROUPS}
    for recipient in BLOOD_GROUPS:
        for donor in donors_by_recipient[recipient]:
            recipients[donor].append(recipient)
    return {donor: tuple(sorted(r, key=lambda g: (g != donor, BLOOD_GROUPS.index(g))))
            for donor, r in recipients.items()}


RED_CELL_DONORS = MappingProxyType(_RED_CELL_DONORS)
RED_CELL_RECIPIENTS = MappingProxyType(_invert(_RED_CELL_DONORS))
PLASMA_DONORS = MappingProxyType(_build_plasma_donors())
PLASMA_RECIPIENTS = MappingProxyType(_invert(PLASMA_DONORS))


def validate_blood_group(group: str) -> str:
    if group not in RED_CELL_DONORS:
        raise ValidationError(f"Unknown blood group: {group!r}", blood_group=group)
    return group


def _tables(component):
    if component in PLASMA_COMPONENTS:
        return PLASMA_DONORS, PLASMA_RECIPIENTS
    return RED_CELL_DONORS, RED_CELL_RECIPIENTS


def compatible_recipients(donor_group: str, component: str = Component.RED_CELLS) -> Tuple[str, ...]:
    """Groups that can receive a product from ``donor_group``."""
    validate_blood_group(donor_group)
    return _tables(component)[1][donor_group]


def compatible_donors(recipient_group: str, component: str = Component.RED_CELLS) -> Tuple[str, ...]:
    """Groups a ``recipient_group`` patient can accept, identical group first."""
    validate_blood_group(recipient_group)
    return _tables(component)[0][recipient_group]


def can_supply(donor_group: str, recipient_group: str, component: str = Component.RED_CELLS) -> bool:
    validate_blood_group(donor_group)
    return donor_group in compatible_donors(recipient_group, component)
