import logging

from fastapi import APIRouter, Depends, HTTPException, status, Query
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session
from sqlalchemy import DateTime, bindparam, text
from typing import Optional

from app.database import get_db
from app.dependencies import require_role, get_owner_context
from app.models import UnitConversion
from app.schemas.conversion import (
    BatchDeleteRequest,
    BatchDeleteResponse,
    CircularCheckResponse,
    ConversionCandidate,
    ConversionCheck,
    ConversionCreate,
    ConversionListResponse,
    ConversionPathResponse,
    ConversionResponse,
    ConversionUpdate,
    ConvertRequest,
    ConvertResponse,
    ValidationResultResponse,
)
from app.services import conversion_service
from app.services.exceptions import ConversionError, DuplicateConversion
from app.utils.timezone import get_local_now

logger = logging.getLogger(__name__)

router = APIRouter()

WRITE_ROLES = ("MASTER", "ADMIN", "STAFF")

CONVERSION_SELECT = """
    SELECT
        uc.conversion_id, uc.owner_id, uc.from_unit_id, uc.to_unit_id, uc.material_id,
        uc.conversion_rate, uc.direction, uc.precision, uc.status, uc.visibility,
        uc.created_by, uc.created_at, uc.updated_at,
        fu.unit_name as from_unit_name,
        tu.unit_name as to_unit_name,
        m.material_name
    FROM unit_conversions uc
    LEFT JOIN material_units fu ON fu.unit_id = uc.from_unit_id
    LEFT JOIN material_units tu ON tu.unit_id = uc.to_unit_id
    LEFT JOIN materials m ON m.material_id = uc.material_id
"""


def _http_error(exc: ConversionError) -> HTTPException:
    return HTTPException(status_code=exc.status_code, detail=str(exc))


def _serialize(r) -> dict:
    return {
        "conversion_id": r.conversion_id,
        "owner_id": r.owner_id,
        "from_unit_id": r.from_unit_id,
        "to_unit_id": r.to_unit_id,
        "material_id": r.material_id,
        "conversion_rate": float(r.conversion_rate),
        "direction": r.direction,
        "precision": r.precision,
        "status": r.status,
        "visibility": r.visibility,
        "created_by": r.created_by,
        "from_unit_name": r.from_unit_name,
        "to_unit_name": r.to_unit_name,
        "material_name": r.material_name,
        "created_at": r.created_at,
        "updated_at": r.updated_at
    }


def _get_owned_conversion(db: Session, conversion_id: int, owner_id: int):
    result = db.execute(
        text(CONVERSION_SELECT + " WHERE uc.conversion_id = :conversion_id"),
        {"conversion_id": conversion_id}
    ).fetchone()

    if not result:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="Conversion not found"
        )

    if result.owner_id != owner_id:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Not allowed to access this conversion"
        )

    return result


def _duplicate_of(db: Session, owner_id: int, from_unit_id: int, to_unit_id: int,
                  material_id: Optional[int], exclude_id: Optional[int] = None) -> Optional[DuplicateConversion]:
    """The active row already holding this unit pair, reported as a DuplicateConversion"""

    existing = db.execute(
        text("""
            SELECT conversion_id
            FROM unit_conversions
            WHERE owner_id = :owner_id
            AND status = 'active'
            AND COALESCE(material_id, 0) = :material_scope
            AND ((from_unit_id = :from_unit_id AND to_unit_id = :to_unit_id)
                 OR (from_unit_id = :to_unit_id AND to_unit_id = :from_unit_id))
            AND conversion_id <> :exclude_id
            ORDER BY conversion_id ASC
        """),
        {
            "owner_id": owner_id,
            "material_scope": material_id or 0,
            "from_unit_id": from_unit_id,
            "to_unit_id": to_unit_id,
            "exclude_id": exclude_id or 0
        }
    ).fetchone()

    if not existing:
        return None
    return DuplicateConversion(from_unit_id, to_unit_id, material_id, existing.conversion_id)


@router.get("/unit-conversions", response_model=ConversionListResponse)
def get_conversions(
    keyword: Optional[str] = Query(None, description="Search by unit or material name"),
    material_id: Optional[int] = Query(None, description="Material-specific and general conversions"),
    unit_id: Optional[int] = Query(None, description="Conversions touching this unit"),
    owner_id: int = Depends(get_owner_context),
    db: Session = Depends(get_db)
):
    """Get unit conversions of the current owner"""

    query = CONVERSION_SELECT + " WHERE uc.owner_id = :owner_id"
    params = {"owner_id": owner_id}

    if keyword:
        query += """
            AND (fu.unit_name LIKE :keyword
                 OR tu.unit_name LIKE :keyword
                 OR m.material_name LIKE :keyword)
        """
        params["keyword"] = f"%{keyword}%"

    if material_id is not None:
        query += " AND (uc.material_id = :material_id OR uc.material_id IS NULL)"
        params["material_id"] = material_id

    if unit_id is not None:
        query += " AND (uc.from_unit_id = :unit_id OR uc.to_unit_id = :unit_id)"
        params["unit_id"] = unit_id

    query += " ORDER BY uc.created_at DESC, uc.conversion_id DESC"

    results = db.execute(text(query), params).fetchall()

    logger.info("Listed %d conversions for owner %s", len(results), owner_id)

    return {"list": [_serialize(r) for r in results], "total": len(results)}


@router.post("/unit-conversions", response_model=ConversionResponse, status_code=status.HTTP_201_CREATED)
def create_conversion(
    data: ConversionCreate,
    owner_id: int = Depends(get_owner_context),
    db: Session = Depends(get_db),
    current_user: dict = Depends(require_role(*WRITE_ROLES))
):
    """Create new unit conversion after validating it against the owner's graph"""

    try:
        result = conversion_service.validate_conversion_candidate(
            db,
            owner_id,
            from_unit_id=data.from_unit_id,
            to_unit_id=data.to_unit_id,
            conversion_rate=data.conversion_rate,
            material_id=data.material_id,
            direction=data.direction,
            active=data.status == "active"
        )
    except ConversionError as exc:
        raise _http_error(exc) from exc

    for warning in result.warnings:
        logger.info("Conversion candidate for owner %s: %s", owner_id, warning)

    conversion = UnitConversion(
        owner_id=owner_id,
        from_unit_id=data.from_unit_id,
        to_unit_id=data.to_unit_id,
        material_id=data.material_id,
        conversion_rate=data.conversion_rate,
        direction=data.direction,
        precision=data.precision,
        status=data.status,
        visibility=data.visibility,
        created_by=current_user["user_id"]
    )

    try:
        db.add(conversion)
        db.commit()
    except IntegrityError as exc:
        db.rollback()
        # Another request stored the same pair after validation passed
        duplicate = _duplicate_of(db, owner_id, data.from_unit_id, data.to_unit_id, data.material_id)
        if duplicate is None:
            logger.exception("Failed to create conversion for owner %s", owner_id)
            raise
        logger.warning("Create for owner %s lost the race: %s", owner_id, duplicate)
        raise _http_error(duplicate) from exc
    except Exception:
        db.rollback()
        logger.exception("Failed to create conversion for owner %s", owner_id)
        raise

    logger.info(
        "Created conversion %s: %s -> %s rate=%s material=%s owner=%s",
        conversion.conversion_id, data.from_unit_id, data.to_unit_id,
        data.conversion_rate, data.material_id, owner_id
    )
    return _serialize(_get_owned_conversion(db, conversion.conversion_id, owner_id))


@router.get("/unit-conversions/path", response_model=ConversionPathResponse)
def get_conversion_path(
    from_unit: int = Query(..., description="Source unit ID"),
    to_unit: int = Query(..., description="Target unit ID"),
    material_id: Optional[int] = Query(None, description="Material scope"),
    owner_id: int = Depends(get_owner_context),
    db: Session = Depends(get_db)
):
    """Find the conversion path and end-to-end rate between two units"""

    try:
        return conversion_service.find_conversion_path(db, owner_id, from_unit, to_unit, material_id)
    except ConversionError as exc:
        raise _http_error(exc) from exc


@router.post("/unit-conversions/convert", response_model=ConvertResponse)
def convert_quantity(
    data: ConvertRequest,
    owner_id: int = Depends(get_owner_context),
    db: Session = Depends(get_db)
):
    """Convert a quantity from one unit to another"""

    try:
        return conversion_service.convert_quantity(
            db,
            owner_id,
            data.from_unit_id,
            data.to_unit_id,
            data.quantity,
            data.material_id
        )
    except ConversionError as exc:
        raise _http_error(exc) from exc


@router.post("/unit-conversions/check-circular", response_model=CircularCheckResponse)
def check_circular_conversion(
    data: ConversionCheck,
    owner_id: int = Depends(get_owner_context),
    db: Session = Depends(get_db)
):
    """Report conversion cycles and whether their rates agree"""

    try:
        return conversion_service.check_circular_conversion(db, owner_id, data.material_id)
    except ConversionError as exc:
        raise _http_error(exc) from exc


@router.post("/unit-conversions/validate", response_model=ValidationResultResponse)
def validate_conversion(
    data: ConversionCandidate,
    owner_id: int = Depends(get_owner_context),
    db: Session = Depends(get_db)
):
    """Check whether a conversion could be created, without creating it"""

    result = conversion_service.check_conversion_candidate(
        db,
        owner_id,
        from_unit_id=data.from_unit_id,
        to_unit_id=data.to_unit_id,
        conversion_rate=data.conversion_rate,
        material_id=data.material_id,
        direction=data.direction,
        exclude_conversion_id=data.conversion_id
    )

    return {"valid": result.valid, "reason": result.reason, "warnings": result.warnings}


@router.post("/unit-conversions/batch-delete", response_model=BatchDeleteResponse)
def delete_conversions(
    data: BatchDeleteRequest,
    owner_id: int = Depends(get_owner_context),
    db: Session = Depends(get_db),
    current_user: dict = Depends(require_role("MASTER", "ADMIN"))
):
    """Delete several conversions of the current owner in one transaction"""

    statement = text("""
        DELETE FROM unit_conversions
        WHERE conversion_id IN :ids AND owner_id = :owner_id
    """).bindparams(bindparam("ids", expanding=True))

    try:
        deleted = db.execute(statement, {"ids": data.ids, "owner_id": owner_id}).rowcount
        db.commit()
    except Exception:
        db.rollback()
        logger.exception("Batch delete of conversions failed for owner %s", owner_id)
        raise

    if not deleted:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="No matching conversions found"
        )

    logger.info("Deleted %d conversions for owner %s", deleted, owner_id)
    return {"deleted": deleted}


@router.get("/unit-conversions/by-unit/{unit_id}", response_model=ConversionListResponse)
def get_unit_conversions(
    unit_id: int,
    material_id: Optional[int] = Query(None, description="Material scope"),
    owner_id: int = Depends(get_owner_context),
    db: Session = Depends(get_db)
):
    """Active conversions touching a unit, general or for the given material"""

    query = CONVERSION_SELECT + """
        WHERE uc.owner_id = :owner_id
        AND uc.status = 'active'
        AND (uc.from_unit_id = :unit_id OR uc.to_unit_id = :unit_id)
    """
    params = {"owner_id": owner_id, "unit_id": unit_id}

    if material_id is not None:
        query += " AND (uc.material_id = :material_id OR uc.material_id IS NULL)"
        params["material_id"] = material_id
    else:
        query += " AND uc.material_id IS NULL"

    query += " ORDER BY uc.conversion_id ASC"

    results = db.execute(text(query), params).fetchall()
    return {"list": [_serialize(r) for r in results], "total": len(results)}


@router.get("/unit-conversions/{conversion_id}", response_model=ConversionResponse)
def get_conversion(
    conversion_id: int,
    owner_id: int = Depends(get_owner_context),
    db: Session = Depends(get_db)
):
    """Get unit conversion by ID"""
    return _serialize(_get_owned_conversion(db, conversion_id, owner_id))


@router.put("/unit-conversions/{conversion_id}", response_model=ConversionResponse)
def update_conversion(
    conversion_id: int,
    data: ConversionUpdate,
    owner_id: int = Depends(get_owner_context),
    db: Session = Depends(get_db),
    current_user: dict = Depends(require_role(*WRITE_ROLES))
):
    """Update rate, direction, precision, status or visibility of a conversion"""

    conversion = _get_owned_conversion(db, conversion_id, owner_id)
    changes = data.model_dump(exclude_unset=True, exclude_none=True)

    if not changes:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="No fields to update"
        )

    rate = changes.get("conversion_rate", conversion.conversion_rate)
    direction = changes.get("direction", conversion.direction)
    new_status = changes.get("status", conversion.status)

    # A changed rate or direction must still fit the rest of the graph
    if new_status == "active" and ("conversion_rate" in changes or "direction" in changes or "status" in changes):
        try:
            conversion_service.validate_conversion_candidate(
                db,
                owner_id,
                from_unit_id=conversion.from_unit_id,
                to_unit_id=conversion.to_unit_id,
                conversion_rate=float(rate),
                material_id=conversion.material_id,
                direction=direction,
                exclude_conversion_id=conversion_id
            )
        except ConversionError as exc:
            raise _http_error(exc) from exc

    update_fields = [f"{field} = :{field}" for field in changes]
    update_fields.append("updated_at = :updated_at")
    params = {**changes, "conversion_id": conversion_id, "updated_at": get_local_now()}

    statement = text(f"""
        UPDATE unit_conversions
        SET {', '.join(update_fields)}
        WHERE conversion_id = :conversion_id
    """).bindparams(bindparam("updated_at", type_=DateTime(timezone=True)))

    try:
        db.execute(statement, params)
        db.commit()
    except IntegrityError as exc:
        db.rollback()
        duplicate = _duplicate_of(
            db, owner_id, conversion.from_unit_id, conversion.to_unit_id,
            conversion.material_id, exclude_id=conversion_id
        )
        if duplicate is None:
            logger.exception("Failed to update conversion %s", conversion_id)
            raise
        raise _http_error(duplicate) from exc
    except Exception:
        db.rollback()
        logger.exception("Failed to update conversion %s", conversion_id)
        raise

    logger.info("Updated conversion %s: %s", conversion_id, changes)
    return _serialize(_get_owned_conversion(db, conversion_id, owner_id))


@router.delete("/unit-conversions/{conversion_id}", status_code=status.HTTP_204_NO_CONTENT)
def delete_conversion(
    conversion_id: int,
    owner_id: int = Depends(get_owner_context),
    db: Session = Depends(get_db),
    current_user: dict = Depends(require_role("MASTER", "ADMIN"))
):
    """Delete unit conversion"""

    _get_owned_conversion(db, conversion_id, owner_id)

    try:
        db.execute(
            text("DELETE FROM unit_conversions WHERE conversion_id = :conversion_id"),
            {"conversion_id": conversion_id}
        )
        db.commit()
    except Exception:
        db.rollback()
        logger.exception("Failed to delete conversion %s", conversion_id)
        raise

    logger.info("Deleted conversion %s for owner %s", conversion_id, owner_id)
