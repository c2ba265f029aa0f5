from sqlalchemy import Column, Integer, String, Numeric, ForeignKey, CheckConstraint, UniqueConstraint, Index, case, func

from app.database import Base
from app.models.base import TimestampMixin


class Unit(Base, TimestampMixin):
    __tablename__ = "material_units"
    __table_args__ = (
        UniqueConstraint("owner_id", "unit_code", name="uq_material_units_owner_code"),
    )
    
    unit_id = Column(Integer, primary_key=True, autoincrement=True)
    owner_id = Column(Integer, nullable=False, index=True)
    unit_code = Column(String(50), nullable=False)
    unit_name = Column(String(100), nullable=False)
    unit_type = Column(String(20), nullable=False, default="basic")
    description = Column(String(255))
    status = Column(String(20), nullable=False, default="active")
    created_by = Column(Integer)


class UnitConversion(Base, TimestampMixin):
    __tablename__ = "unit_conversions"
    __table_args__ = (
        CheckConstraint("conversion_rate > 0", name="ck_unit_conversions_rate_positive"),
        CheckConstraint("from_unit_id <> to_unit_id", name="ck_unit_conversions_distinct_units"),
    )
    
    conversion_id = Column(Integer, primary_key=True, autoincrement=True)
    owner_id = Column(Integer, nullable=False, index=True)
    from_unit_id = Column(Integer, ForeignKey('material_units.unit_id'), nullable=False)
    to_unit_id = Column(Integer, ForeignKey('material_units.unit_id'), nullable=False)
    material_id = Column(Integer, ForeignKey('materials.material_id', ondelete='CASCADE'))
    conversion_rate = Column(Numeric(20, 10, asdecimal=False), nullable=False)
    direction = Column(String(20), nullable=False, default="both")
    precision = Column(Integer, nullable=False, default=2)
    status = Column(String(20), nullable=False, default="active")
    visibility = Column(String(20), nullable=False, default="private")
    created_by = Column(Integer)


# One active conversion per owner, material scope and unordered unit pair.
# Inactive rows are free to repeat a pair.
Index(
    "uq_unit_conversions_active_pair",
    UnitConversion.owner_id,
    case(
        (UnitConversion.from_unit_id < UnitConversion.to_unit_id, UnitConversion.from_unit_id),
        else_=UnitConversion.to_unit_id,
    ),
    case(
        (UnitConversion.from_unit_id < UnitConversion.to_unit_id, UnitConversion.to_unit_id),
        else_=UnitConversion.from_unit_id,
    ),
    func.coalesce(UnitConversion.material_id, 0),
    unique=True,
    postgresql_where=UnitConversion.status == "active",
    sqlite_where=UnitConversion.status == "active",
)
