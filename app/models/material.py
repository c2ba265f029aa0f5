from sqlalchemy import Column, Integer, String, ForeignKey

from app.database import Base
from app.models.base import TimestampMixin


class Material(Base, TimestampMixin):
    __tablename__ = "materials"
    
    material_id = Column(Integer, primary_key=True, autoincrement=True)
    owner_id = Column(Integer, nullable=False, index=True)
    material_code = Column(String(100), nullable=False)
    material_name = Column(String(255), nullable=False)
    base_unit_id = Column(Integer, ForeignKey('material_units.unit_id'))
    status = Column(String(20), nullable=False, default="active")
