import logging

from fastapi import APIRouter, Depends, HTTPException, status, Query
from sqlalchemy.orm import Session
from sqlalchemy import DateTime, bindparam, text
from typing import Optional

from app.database import get_db
from app.dependencies import require_role, get_owner_context
from app.models import Unit
from app.schemas.unit import (
    UnitCreate,
    UnitUpdate,
    UnitResponse,
    UnitListResponse,
    UnitUsageResponse
)
from app.utils.timezone import get_local_now

logger = logging.getLogger(__name__)

router = APIRouter()

UNIT_COLUMNS = """
    unit_id, owner_id, unit_code, unit_name, unit_type, description,
    status, created_by, created_at, updated_at
"""

# Fields that identify a unit; frozen while conversions or materials use it
IDENTITY_FIELDS = ("unit_code", "unit_type")


def _serialize(r) -> dict:
    return {
        "unit_id": r.unit_id,
        "owner_id": r.owner_id,
        "unit_code": r.unit_code,
        "unit_name": r.unit_name,
        "unit_type": r.unit_type,
        "description": r.description,
        "status": r.status,
        "created_by": r.created_by,
        "created_at": r.created_at,
        "updated_at": r.updated_at
    }


def _get_owned_unit(db: Session, unit_id: int, owner_id: int):
    result = db.execute(
        text(f"SELECT {UNIT_COLUMNS} FROM material_units WHERE unit_id = :unit_id"),
        {"unit_id": unit_id}
    ).fetchone()

    if not result:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="Unit not found"
        )

    if result.owner_id != owner_id:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Not allowed to access this unit"
        )

    return result


def _unit_code_exists(db: Session, unit_code: str, owner_id: int, exclude_unit_id: Optional[int] = None) -> bool:
    existing = db.execute(
        text("""
            SELECT unit_id FROM material_units
            WHERE unit_code = :unit_code AND owner_id = :owner_id AND unit_id <> :exclude_id
        """),
        {"unit_code": unit_code, "owner_id": owner_id, "exclude_id": exclude_unit_id or 0}
    ).fetchone()
    return existing is not None


def _count_references(db: Session, unit_id: int):
    """Conversions and materials that point at a unit"""
    return db.execute(
        text("""
            SELECT
                (SELECT COUNT(*) FROM unit_conversions
                 WHERE from_unit_id = :unit_id OR to_unit_id = :unit_id) AS conversions,
                (SELECT COUNT(*) FROM materials
                 WHERE base_unit_id = :unit_id) AS materials
        """),
        {"unit_id": unit_id}
    ).fetchone()


@router.get("/units", response_model=UnitListResponse)
def get_all_units(
    keyword: Optional[str] = Query(None, description="Search by code or name"),
    unit_type: Optional[str] = Query(None, description="Filter by unit type (basic/sub)"),
    owner_id: int = Depends(get_owner_context),
    db: Session = Depends(get_db)
):
    """Get all units of the current owner"""

    query = f"SELECT {UNIT_COLUMNS} FROM material_units WHERE owner_id = :owner_id"
    params = {"owner_id": owner_id}

    if keyword:
        query += " AND (unit_code LIKE :keyword OR unit_name LIKE :keyword)"
        params["keyword"] = f"%{keyword}%"

    if unit_type:
        query += " AND unit_type = :unit_type"
        params["unit_type"] = unit_type

    query += " ORDER BY created_at DESC, unit_id DESC"

    results = db.execute(text(query), params).fetchall()

    return {"list": [_serialize(r) for r in results], "total": len(results)}


@router.get("/units/{unit_id}", response_model=UnitResponse)
def get_unit_by_id(
    unit_id: int,
    owner_id: int = Depends(get_owner_context),
    db: Session = Depends(get_db)
):
    """Get unit by ID"""
    return _serialize(_get_owned_unit(db, unit_id, owner_id))


@router.get("/units/{unit_id}/usage", response_model=UnitUsageResponse)
def get_unit_usage(
    unit_id: int,
    owner_id: int = Depends(get_owner_context),
    db: Session = Depends(get_db)
):
    """How many conversions and materials use a unit"""

    _get_owned_unit(db, unit_id, owner_id)
    references = _count_references(db, unit_id)

    return {
        "unit_id": unit_id,
        "in_use": bool(references.conversions or references.materials),
        "conversions": references.conversions,
        "materials": references.materials
    }


@router.post("/units", response_model=UnitResponse, status_code=status.HTTP_201_CREATED)
def create_unit(
    data: UnitCreate,
    owner_id: int = Depends(get_owner_context),
    db: Session = Depends(get_db),
    current_user: dict = Depends(require_role("MASTER", "ADMIN", "STAFF"))
):
    """Create new unit"""

    if _unit_code_exists(db, data.unit_code, owner_id):
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail="Unit code already exists"
        )

    unit = Unit(
        owner_id=owner_id,
        unit_code=data.unit_code,
        unit_name=data.unit_name,
        unit_type=data.unit_type,
        description=data.description,
        status=data.status,
        created_by=current_user["user_id"]
    )

    try:
        db.add(unit)
        db.commit()
    except Exception:
        db.rollback()
        logger.exception("Failed to create unit %s for owner %s", data.unit_code, owner_id)
        raise

    logger.info("Created unit %s (%s) for owner %s", unit.unit_id, data.unit_code, owner_id)
    return _serialize(_get_owned_unit(db, unit.unit_id, owner_id))


@router.put("/units/{unit_id}", response_model=UnitResponse)
def update_unit(
    unit_id: int,
    data: UnitUpdate,
    owner_id: int = Depends(get_owner_context),
    db: Session = Depends(get_db),
    current_user: dict = Depends(require_role("MASTER", "ADMIN", "STAFF"))
):
    """Update unit (code and type are fixed once the unit is referenced)"""

    unit = _get_owned_unit(db, unit_id, owner_id)
    changes = data.model_dump(exclude_unset=True, exclude_none=True)

    if not changes:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="No fields to update"
        )

    renamed = [field for field in IDENTITY_FIELDS if field in changes and changes[field] != getattr(unit, field)]
    if renamed:
        references = _count_references(db, unit_id)
        if references.conversions or references.materials:
            raise HTTPException(
                status_code=status.HTTP_400_BAD_REQUEST,
                detail=(
                    f"Cannot change {', '.join(renamed)} of a unit used by "
                    f"{references.conversions} conversion(s) and {references.materials} material(s)"
                )
            )

    if "unit_code" in changes and _unit_code_exists(db, changes["unit_code"], owner_id, unit_id):
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail="Unit code already exists"
        )

    update_fields = [f"{field} = :{field}" for field in changes]
    update_fields.append("updated_at = :updated_at")
    params = {**changes, "unit_id": unit_id, "updated_at": get_local_now()}

    statement = text(f"""
        UPDATE material_units
        SET {', '.join(update_fields)}
        WHERE unit_id = :unit_id
    """).bindparams(bindparam("updated_at", type_=DateTime(timezone=True)))

    try:
        db.execute(statement, params)
        db.commit()
    except Exception:
        db.rollback()
        logger.exception("Failed to update unit %s", unit_id)
        raise

    return _serialize(_get_owned_unit(db, unit_id, owner_id))


@router.delete("/units/{unit_id}", status_code=status.HTTP_204_NO_CONTENT)
def delete_unit(
    unit_id: int,
    owner_id: int = Depends(get_owner_context),
    db: Session = Depends(get_db),
    current_user: dict = Depends(require_role("MASTER", "ADMIN"))
):
    """Delete unit (refused while conversions or materials use it)"""

    _get_owned_unit(db, unit_id, owner_id)
    references = _count_references(db, unit_id)

    if references.conversions or references.materials:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=(
                f"Cannot delete unit. It is used by {references.conversions} conversion(s) "
                f"and {references.materials} material(s)"
            )
        )

    try:
        db.execute(
            text("DELETE FROM material_units WHERE unit_id = :unit_id"),
            {"unit_id": unit_id}
        )
        db.commit()
    except Exception:
        db.rollback()
        logger.exception("Failed to delete unit %s", unit_id)
        raise

    logger.info("Deleted unit %s for owner %s", unit_id, owner_id)
