"""Errors raised by the unit conversion services.

The conversion core never writes state, so every error here is scoped to a
single query and can be retried with corrected input. ``status_code`` is the
HTTP status the API layer reports for the error.
"""


class ConversionError(Exception):
    status_code = 400

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class ConversionValidationError(ConversionError):
    """Candidate edge is malformed (same units, non-positive rate, ...)"""
    status_code = 400


class InvalidUnitReference(ConversionError):
    status_code = 400

    def __init__(self, unit_id: int):
        super().__init__(f"Unit {unit_id} does not exist for this owner")
        self.unit_id = unit_id


class NoPathFound(ConversionError):
    status_code = 404

    def __init__(self, from_unit_id: int, to_unit_id: int, material_id=None):
        scope = f" for material {material_id}" if material_id is not None else ""
        super().__init__(
            f"No conversion path from unit {from_unit_id} to unit {to_unit_id}{scope}"
        )
        self.from_unit_id = from_unit_id
        self.to_unit_id = to_unit_id
        self.material_id = material_id


class DuplicateConversion(ConversionError):
    status_code = 409

    def __init__(self, from_unit_id: int, to_unit_id: int, material_id=None, existing_id=None):
        scope = f"material {material_id}" if material_id is not None else "general scope"
        super().__init__(
            f"Conversion between unit {from_unit_id} and unit {to_unit_id} already exists ({scope})"
        )
        self.existing_id = existing_id


class InconsistentCycle(ConversionError):
    status_code = 409

    def __init__(self, unit_ids, rate_product: float):
        chain = " -> ".join(str(u) for u in unit_ids)
        super().__init__(
            f"Conversion cycle {chain} has rate product {rate_product:.10g}, expected 1"
        )
        self.unit_ids = list(unit_ids)
        self.rate_product = rate_product


class GraphTooLarge(ConversionError):
    status_code = 413

    def __init__(self, kind: str, count: int, limit: int):
        super().__init__(f"Conversion graph has {count} {kind}, limit is {limit}")
        self.count = count
        self.limit = limit


class InvalidMaterialReference(ConversionError):
    status_code = 400

    def __init__(self, material_id: int):
        super().__init__(f"Material {material_id} does not exist for this owner")
        self.material_id = material_id
