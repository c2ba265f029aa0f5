"""
Conversion operations for the API layer.

Each call reads one snapshot of the owner's units and conversion rows,
builds a fresh graph from it and discards it afterwards.
"""

import logging
from typing import Dict, List, Optional

from pydantic import ValidationError
from sqlalchemy import text
from sqlalchemy.orm import Session

from app.config import settings
from app.services.conversion_graph import (
    ConversionEdge,
    ConversionGraph,
    UnitRecord,
    build_graph,
)
from app.services.conversion_validation import (
    ConversionCandidate,
    CyclePolicy,
    ValidationResult,
    validate_conversion,
)
from app.services.exceptions import (
    ConversionError,
    ConversionValidationError,
    InvalidMaterialReference,
)

logger = logging.getLogger(__name__)


def describe_validation_error(exc: ValidationError) -> str:
    error = exc.errors()[0]
    field = ".".join(str(part) for part in error["loc"])
    return f"{field}: {error['msg']}" if field else error["msg"]


def load_conversion_edges(
    db: Session,
    owner_id: int,
    material_id: Optional[int] = None,
) -> List[ConversionEdge]:
    """
    General edges of the owner, plus the edges of ``material_id`` when given.

    Rows that do not form a valid edge (written around the API, e.g. by an
    import) are logged and left out of the snapshot.
    """
    query = """
        SELECT conversion_id, owner_id, from_unit_id, to_unit_id, material_id,
               conversion_rate, direction, precision, status
        FROM unit_conversions
        WHERE owner_id = :owner_id
    """
    params = {"owner_id": owner_id}

    if material_id is not None:
        query += " AND (material_id IS NULL OR material_id = :material_id)"
        params["material_id"] = material_id
    else:
        query += " AND material_id IS NULL"

    query += " ORDER BY conversion_id ASC"

    results = db.execute(text(query), params).fetchall()

    edges = []
    for r in results:
        try:
            edges.append(ConversionEdge(
                conversion_id=r.conversion_id,
                owner_id=r.owner_id,
                from_unit_id=r.from_unit_id,
                to_unit_id=r.to_unit_id,
                material_id=r.material_id,
                conversion_rate=float(r.conversion_rate),
                direction=r.direction,
                precision=r.precision,
                status=r.status,
            ))
        except ValidationError as exc:
            logger.warning(
                "Skipping unusable conversion %s for owner %s: %s",
                r.conversion_id, owner_id, describe_validation_error(exc),
            )
    return edges


def load_units(db: Session, owner_id: int) -> Dict[int, UnitRecord]:
    results = db.execute(
        text("""
            SELECT unit_id, unit_code, unit_name, unit_type, status
            FROM material_units
            WHERE owner_id = :owner_id
        """),
        {"owner_id": owner_id}
    ).fetchall()

    return {
        r.unit_id: UnitRecord(
            unit_id=r.unit_id,
            unit_code=r.unit_code,
            unit_name=r.unit_name,
            unit_type=r.unit_type,
            status=r.status,
        )
        for r in results
    }


def ensure_material(db: Session, owner_id: int, material_id: Optional[int]) -> None:
    if material_id is None:
        return
    exists = db.execute(
        text("SELECT material_id FROM materials WHERE material_id = :material_id AND owner_id = :owner_id"),
        {"material_id": material_id, "owner_id": owner_id}
    ).fetchone()
    if exists is None:
        raise InvalidMaterialReference(material_id)


def build_owner_graph(
    db: Session,
    owner_id: int,
    material_id: Optional[int] = None,
) -> ConversionGraph:
    """Graph snapshot keyed by ``(owner_id, material_id)``"""
    ensure_material(db, owner_id, material_id)
    return build_graph(
        load_conversion_edges(db, owner_id, material_id),
        owner_id,
        material_id,
        units=load_units(db, owner_id).values(),
        cycle_tolerance=settings.CYCLE_RATE_TOLERANCE,
        max_units=settings.CONVERSION_MAX_UNITS,
        max_edges=settings.CONVERSION_MAX_EDGES,
    )


def find_conversion_path(
    db: Session,
    owner_id: int,
    from_unit_id: int,
    to_unit_id: int,
    material_id: Optional[int] = None,
) -> dict:
    graph = build_owner_graph(db, owner_id, material_id)
    result = graph.find_path(from_unit_id, to_unit_id)

    logger.info(
        "Conversion path owner=%s %s -> %s material=%s: %s rate=%s",
        owner_id, from_unit_id, to_unit_id, material_id, list(result.path), result.rate,
    )

    return {
        "path": list(result.path),
        "rate": result.rate,
        "steps": [
            {"unit_id": unit_id, "unit_name": graph.unit_label(unit_id)}
            for unit_id in result.path
        ],
        "conversion_ids": list(result.conversion_ids),
    }


def convert_quantity(
    db: Session,
    owner_id: int,
    from_unit_id: int,
    to_unit_id: int,
    quantity: float,
    material_id: Optional[int] = None,
) -> dict:
    graph = build_owner_graph(db, owner_id, material_id)
    converted, path = graph.convert(quantity, from_unit_id, to_unit_id)

    return {
        "from_quantity": quantity,
        "to_quantity": converted,
        "rate": path.rate,
        "precision": path.precision,
        "path": list(path.path),
    }


def check_circular_conversion(
    db: Session,
    owner_id: int,
    material_id: Optional[int] = None,
) -> dict:
    graph = build_owner_graph(db, owner_id, material_id)
    cycles = graph.find_cycles()
    has_inconsistent = any(not cycle.consistent for cycle in cycles)

    if has_inconsistent:
        logger.warning(
            "Inconsistent conversion cycles for owner=%s material=%s: %s",
            owner_id, material_id,
            [list(cycle.unit_ids) for cycle in cycles if not cycle.consistent],
        )

    return {
        "has_circular": bool(cycles),
        "has_inconsistent": has_inconsistent,
        "cycles": [
            {
                "unit_ids": list(cycle.unit_ids),
                "conversion_ids": list(cycle.conversion_ids),
                "rate_product": cycle.rate_product,
                "consistent": cycle.consistent,
            }
            for cycle in cycles
        ],
    }


def validate_conversion_candidate(
    db: Session,
    owner_id: int,
    from_unit_id: int,
    to_unit_id: int,
    conversion_rate: float,
    material_id: Optional[int] = None,
    direction: str = "both",
    exclude_conversion_id: Optional[int] = None,
    active: bool = True,
) -> ValidationResult:
    """
    Raise a ConversionError when the candidate must not be stored.

    An inactive candidate is only checked for well-formed terms and known
    units; it cannot collide with another edge or close a cycle.
    """
    ensure_material(db, owner_id, material_id)
    try:
        candidate = ConversionCandidate(
            from_unit_id=from_unit_id,
            to_unit_id=to_unit_id,
            conversion_rate=conversion_rate,
            owner_id=owner_id,
            material_id=material_id,
            direction=direction,
        )
    except ValidationError as exc:
        raise ConversionValidationError(describe_validation_error(exc)) from exc
    return validate_conversion(
        candidate,
        load_conversion_edges(db, owner_id, material_id) if active else [],
        units=load_units(db, owner_id).values(),
        exclude_conversion_id=exclude_conversion_id,
        cycle_tolerance=settings.CYCLE_RATE_TOLERANCE,
        policy=CyclePolicy(settings.CYCLE_POLICY),
        max_units=settings.CONVERSION_MAX_UNITS,
        max_edges=settings.CONVERSION_MAX_EDGES,
    )


def check_conversion_candidate(db: Session, owner_id: int, **candidate) -> ValidationResult:
    """Like validate_conversion_candidate, but reports rejections instead of raising"""
    try:
        return validate_conversion_candidate(db, owner_id, **candidate)
    except ConversionError as exc:
        return ValidationResult(valid=False, reason=str(exc))
