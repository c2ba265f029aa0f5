from app.models.base import TimestampMixin
from app.models.unit import Unit, UnitConversion
from app.models.material import Material

__all__ = [
    "TimestampMixin",
    "Unit",
    "UnitConversion",
    "Material",
]
