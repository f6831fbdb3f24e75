"""
Tests for blood type compatibility rules.
"""

import pytest

from app.models.domain.blood_domain import BloodType
from app.services.compatibility import (
    COMPATIBILITY_TABLE,
    STANDARD_COMPATIBLE_PAIRS,
    can_donate,
    get_compatible_types,
    get_recipient_types,
    validate_compatibility_table,
)


def test_table_is_total_and_validates():
    assert len(COMPATIBILITY_TABLE) == 64
    assert sum(COMPATIBILITY_TABLE.values()) == STANDARD_COMPATIBLE_PAIRS
    validate_compatibility_table()


def test_o_negative_is_universal_donor():
    assert get_recipient_types(BloodType.O_NEG) == frozenset(BloodType)


def test_ab_positive_is_universal_recipient():
    assert get_compatible_types(BloodType.AB_POS) == frozenset(BloodType)


@pytest.mark.parametrize(
    "donor, recipient, expected",
    [
        ("O-", "AB-", True),
        ("AB-", "AB-", True),
        ("A+", "AB-", False),
        ("O+", "O-", False),
        ("A-", "A+", True),
        ("A+", "A-", False),
        ("B-", "A-", False),
        ("AB+", "O+", False),
    ],
)
def test_can_donate_pairs(donor, recipient, expected):
    assert can_donate(BloodType(donor), BloodType(recipient)) is expected


def test_rh_positive_never_gives_to_rh_negative():
    for donor in BloodType:
        for recipient in BloodType:
            if donor.rh_positive and not recipient.rh_positive:
                assert can_donate(donor, recipient) is False


def test_compatible_types_for_ab_negative():
    assert get_compatible_types(BloodType.AB_NEG) == {
        BloodType.O_NEG,
        BloodType.A_NEG,
        BloodType.B_NEG,
        BloodType.AB_NEG,
    }


def test_string_input_is_parsed():
    assert can_donate("o-", "ab+") is True


def test_unknown_type_fails_fast():
    with pytest.raises(ValueError):
        can_donate("C+", "A+")
