"""Tests for validating candidate conversions before they are stored."""
import math

import pytest
from pydantic import ValidationError

from app.services.conversion_graph import ConversionEdge, UnitRecord
from app.services.conversion_validation import (
    ConversionCandidate,
    CyclePolicy,
    find_duplicate,
    validate_conversion,
)
from app.services.exceptions import (
    DuplicateConversion,
    InconsistentCycle,
    InvalidUnitReference,
)

OWNER = 1
A, B, C = 1, 2, 3
MATERIAL = 10


def edge(conversion_id, from_unit, to_unit, rate, **kwargs):
    kwargs.setdefault("owner_id", OWNER)
    return ConversionEdge(
        conversion_id=conversion_id, from_unit_id=from_unit, to_unit_id=to_unit,
        conversion_rate=rate, **kwargs,
    )


def candidate(from_unit, to_unit, rate, **kwargs):
    kwargs.setdefault("owner_id", OWNER)
    return ConversionCandidate(from_unit_id=from_unit, to_unit_id=to_unit, conversion_rate=rate, **kwargs)


CHAIN = [edge(1, A, B, 2), edge(2, B, C, 5)]


def test_new_pair_is_valid():
    result = validate_conversion(candidate(A, B, 2), [])
    assert result.valid
    assert result.warnings == []


def test_duplicate_same_direction():
    with pytest.raises(DuplicateConversion) as excinfo:
        validate_conversion(candidate(A, B, 3), [edge(1, A, B, 2)])
    assert excinfo.value.existing_id == 1


def test_duplicate_reversed_pair():
    with pytest.raises(DuplicateConversion):
        validate_conversion(candidate(B, A, 0.5), [edge(1, A, B, 2)])


def test_inactive_edge_is_not_a_duplicate():
    result = validate_conversion(candidate(A, B, 3), [edge(1, A, B, 2, status="inactive")])
    assert result.valid


def test_other_owner_edge_is_not_a_duplicate():
    result = validate_conversion(candidate(A, B, 3), [edge(1, A, B, 2, owner_id=2)])
    assert result.valid


def test_material_edge_next_to_general_edge():
    existing = [edge(1, A, B, 2)]
    result = validate_conversion(candidate(A, B, 3, material_id=MATERIAL), existing)
    assert result.valid
    assert result.warnings == []


def test_duplicate_within_material_scope():
    existing = [edge(1, A, B, 3, material_id=MATERIAL)]
    with pytest.raises(DuplicateConversion):
        validate_conversion(candidate(A, B, 4, material_id=MATERIAL), existing)


def test_editing_an_edge_excludes_itself():
    result = validate_conversion(candidate(A, B, 4), CHAIN, exclude_conversion_id=1)
    assert result.valid
    assert find_duplicate(candidate(A, B, 4), CHAIN, exclude_conversion_id=1) is None


def test_consistent_redundant_path_is_a_warning():
    result = validate_conversion(candidate(A, C, 10), CHAIN)
    assert result.valid
    assert len(result.warnings) == 1
    assert "redundant" in result.warnings[0]


def test_inconsistent_cycle_is_rejected():
    with pytest.raises(InconsistentCycle) as excinfo:
        validate_conversion(candidate(A, C, 12), CHAIN)
    assert excinfo.value.rate_product == pytest.approx(12 / 10)


def test_inconsistent_cycle_under_warn_policy():
    result = validate_conversion(candidate(A, C, 12), CHAIN, policy=CyclePolicy.WARN)
    assert result.valid
    assert "cycle" in result.warnings[0]


def test_forward_candidate_closing_a_forward_chain():
    chain = [edge(1, A, B, 2, direction="forward"), edge(2, B, C, 5, direction="forward")]
    assert validate_conversion(candidate(C, A, 0.1, direction="forward"), chain).warnings
    with pytest.raises(InconsistentCycle):
        validate_conversion(candidate(C, A, 1, direction="forward"), chain)


def test_both_candidate_checks_reciprocal_arc():
    chain = [edge(1, A, B, 2, direction="forward"), edge(2, B, C, 5, direction="forward")]
    with pytest.raises(InconsistentCycle):
        validate_conversion(candidate(A, C, 20), chain)


def test_unknown_unit():
    units = [
        UnitRecord(unit_id=A, unit_code="a", unit_name="A"),
        UnitRecord(unit_id=B, unit_code="b", unit_name="B"),
    ]
    with pytest.raises(InvalidUnitReference) as excinfo:
        validate_conversion(candidate(A, C, 2), [], units=units)
    assert excinfo.value.unit_id == C


@pytest.mark.parametrize("from_unit,to_unit,rate", [
    (A, A, 1),
    (A, B, 0),
    (A, B, -1),
    (A, B, math.inf),
    (A, B, math.nan),
])
def test_malformed_candidate(from_unit, to_unit, rate):
    with pytest.raises(ValidationError):
        candidate(from_unit, to_unit, rate)


def test_inactive_edge_does_not_close_a_cycle():
    chain = CHAIN + [edge(3, C, A, 7, status="inactive")]
    assert validate_conversion(candidate(A, C, 10), chain).warnings
    assert validate_conversion(candidate(C, A, 0.1), chain).warnings
