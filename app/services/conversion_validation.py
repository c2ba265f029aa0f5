"""Validation of candidate conversion edges before they are stored."""

import logging
from enum import Enum
from typing import Iterable, List, Optional

from pydantic import BaseModel, Field

from app.services.conversion_graph import (
    DEFAULT_CYCLE_TOLERANCE,
    ConversionEdge,
    ConversionTerms,
    Direction,
    UnitRecord,
    build_graph,
)
from app.services.exceptions import (
    DuplicateConversion,
    InconsistentCycle,
    InvalidUnitReference,
    NoPathFound,
)

logger = logging.getLogger(__name__)


class CyclePolicy(str, Enum):
    REJECT = "reject"
    WARN = "warn"


class ConversionCandidate(ConversionTerms):
    """Edge proposed for create or update, not stored yet"""


class ValidationResult(BaseModel):
    valid: bool
    reason: Optional[str] = None
    warnings: List[str] = Field(default_factory=list)


def find_duplicate(
    candidate: ConversionCandidate,
    existing_edges: Iterable[ConversionEdge],
    exclude_conversion_id: Optional[int] = None,
) -> Optional[ConversionEdge]:
    """Active edge of the same owner and material scope joining the same two units"""
    pair = frozenset((candidate.from_unit_id, candidate.to_unit_id))
    for edge in existing_edges:
        if edge.conversion_id == exclude_conversion_id:
            continue
        if (
            edge.is_active
            and edge.owner_id == candidate.owner_id
            and edge.material_id == candidate.material_id
            and edge.unit_pair == pair
        ):
            return edge
    return None


def validate_conversion(
    candidate: ConversionCandidate,
    existing_edges: Iterable[ConversionEdge],
    units: Optional[Iterable[UnitRecord]] = None,
    exclude_conversion_id: Optional[int] = None,
    cycle_tolerance: float = DEFAULT_CYCLE_TOLERANCE,
    policy: CyclePolicy = CyclePolicy.REJECT,
    max_units: Optional[int] = None,
    max_edges: Optional[int] = None,
) -> ValidationResult:
    """
    Check that ``candidate`` may be stored next to ``existing_edges``.

    The candidate model already guarantees distinct units and a finite,
    positive rate. Raises InvalidUnitReference, DuplicateConversion, or
    InconsistentCycle (only under the ``reject`` policy). Cycles whose rates
    agree with the existing graph are returned as warnings; the caller
    decides whether to commit.
    """
    if units is not None:
        known = {unit.unit_id for unit in units}
        for unit_id in (candidate.from_unit_id, candidate.to_unit_id):
            if unit_id not in known:
                raise InvalidUnitReference(unit_id)

    existing_edges = [
        edge for edge in existing_edges if edge.conversion_id != exclude_conversion_id
    ]

    duplicate = find_duplicate(candidate, existing_edges)
    if duplicate is not None:
        logger.warning(
            "Rejected duplicate conversion %s -> %s (owner=%s material=%s), existing id %s",
            candidate.from_unit_id, candidate.to_unit_id, candidate.owner_id,
            candidate.material_id, duplicate.conversion_id,
        )
        raise DuplicateConversion(
            candidate.from_unit_id, candidate.to_unit_id,
            candidate.material_id, duplicate.conversion_id,
        )

    # Edges on the same unit pair are either inactive or general edges the
    # candidate overrides; neither closes a cycle with it.
    pair = frozenset((candidate.from_unit_id, candidate.to_unit_id))
    graph = build_graph(
        [edge for edge in existing_edges if edge.unit_pair != pair],
        candidate.owner_id,
        candidate.material_id,
        cycle_tolerance=cycle_tolerance,
        max_units=max_units,
        max_edges=max_edges,
    )

    warnings: List[str] = []
    for source, target, weight in _candidate_arcs(candidate):
        try:
            existing = graph.find_path(target, source)
        except NoPathFound:
            continue

        product = weight * existing.rate
        if graph.is_consistent_product(product):
            warnings.append(
                "Units are already connected through "
                + " -> ".join(str(u) for u in existing.path)
                + " at a consistent rate; the new conversion is redundant"
            )
            break

        error = InconsistentCycle((source,) + existing.path, product)
        if CyclePolicy(policy) is CyclePolicy.REJECT:
            logger.warning("Rejected conversion candidate: %s", error)
            raise error
        warnings.append(str(error))
        break

    return ValidationResult(valid=True, warnings=warnings)


def _candidate_arcs(candidate: ConversionCandidate):
    direction = candidate.direction
    if direction is Direction.REVERSE:
        return [(candidate.to_unit_id, candidate.from_unit_id, candidate.conversion_rate)]
    arcs = [(candidate.from_unit_id, candidate.to_unit_id, candidate.conversion_rate)]
    if direction is Direction.BOTH:
        arcs.append((candidate.to_unit_id, candidate.from_unit_id, 1.0 / candidate.conversion_rate))
    return arcs
