"""
Blood type compatibility rules.

Pure functions over the closed BloodType enumeration. The donor/recipient
table is built once from the ABO and Rh rules and checked at application
startup by validate_compatibility_table().
"""

from app.models.domain.blood_domain import BloodType

# 8 + 4 + 4 + 4 + 2 + 2 + 2 + 1 donor->recipient pairs under ABO and Rh rules
STANDARD_COMPATIBLE_PAIRS = 27

# ABO groups each donor group may give red cells to
_ABO_RECIPIENTS: dict[str, frozenset[str]] = {
    "O": frozenset({"O", "A", "B", "AB"}),
    "A": frozenset({"A", "AB"}),
    "B": frozenset({"B", "AB"}),
    "AB": frozenset({"AB"}),
}


def _rule(donor: BloodType, recipient: BloodType) -> bool:
    if recipient.abo not in _ABO_RECIPIENTS[donor.abo]:
        return False
    # Rh-negative donors give to both; Rh-positive only to Rh-positive
    return recipient.rh_positive or not donor.rh_positive


COMPATIBILITY_TABLE: dict[tuple[BloodType, BloodType], bool] = {
    (donor, recipient): _rule(donor, recipient) for donor in BloodType for recipient in BloodType
}


def can_donate(donor_type: BloodType, recipient_type: BloodType) -> bool:
    """
    Whether blood of donor_type may be given to a recipient of recipient_type.

    Raises:
        ValueError: If either argument is not a known blood type
    """
    return COMPATIBILITY_TABLE[(BloodType.parse(donor_type), BloodType.parse(recipient_type))]


def get_compatible_types(recipient_type: BloodType) -> frozenset[BloodType]:
    """Donor types that can give to recipient_type."""
    recipient = BloodType.parse(recipient_type)
    return frozenset(donor for donor in BloodType if COMPATIBILITY_TABLE[(donor, recipient)])


def get_recipient_types(donor_type: BloodType) -> frozenset[BloodType]:
    """Recipient types that donor_type can give to."""
    donor = BloodType.parse(donor_type)
    return frozenset(
        recipient for recipient in BloodType if COMPATIBILITY_TABLE[(donor, recipient)]
    )


def validate_compatibility_table() -> None:
    """
    Sanity-check the compatibility table.

    Raises:
        RuntimeError: If the table is partial or disagrees with the ABO/Rh rules
    """
    expected_size = len(BloodType) ** 2
    if len(COMPATIBILITY_TABLE) != expected_size:
        raise RuntimeError(
            f"Compatibility table has {len(COMPATIBILITY_TABLE)} entries, expected {expected_size}"
        )

    compatible_pairs = sum(1 for allowed in COMPATIBILITY_TABLE.values() if allowed)
    if compatible_pairs != STANDARD_COMPATIBLE_PAIRS:
        raise RuntimeError(
            f"Compatibility table has {compatible_pairs} compatible pairs, "
            f"expected {STANDARD_COMPATIBLE_PAIRS}"
        )

    for blood_type in BloodType:
        if not COMPATIBILITY_TABLE[(BloodType.O_NEG, blood_type)]:
            raise RuntimeError(f"O- must be able to donate to {blood_type.value}")
        if not COMPATIBILITY_TABLE[(blood_type, BloodType.AB_POS)]:
            raise RuntimeError(f"AB+ must be able to receive from {blood_type.value}")
        if not COMPATIBILITY_TABLE[(blood_type, blood_type)]:
            raise RuntimeError(f"{blood_type.value} must be able to donate to itself")

    for (donor, recipient), allowed in COMPATIBILITY_TABLE.items():
        # a positive donor never gives to a negative recipient
        if allowed and donor.rh_positive and not recipient.rh_positive:
            raise RuntimeError(f"{donor.value} -> {recipient.value} violates the Rh rule")
