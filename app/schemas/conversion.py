from pydantic import BaseModel, Field, model_validator
from typing import List, Optional, Literal
from datetime import datetime


Direction = Literal["both", "forward", "reverse"]
RecordStatus = Literal["active", "inactive"]
Visibility = Literal["private", "public"]


class ConversionBase(BaseModel):
    from_unit_id: int
    to_unit_id: int
    conversion_rate: float = Field(..., gt=0, allow_inf_nan=False)
    material_id: Optional[int] = None
    
    @model_validator(mode="after")
    def check_distinct_units(self):
        if self.from_unit_id == self.to_unit_id:
            raise ValueError("from_unit_id and to_unit_id must be different")
        return self


class ConversionCreate(ConversionBase):
    direction: Direction = "both"
    precision: int = Field(2, ge=0, le=10)
    status: RecordStatus = "active"
    visibility: Visibility = "private"


class ConversionUpdate(BaseModel):
    conversion_rate: Optional[float] = Field(None, gt=0, allow_inf_nan=False)
    direction: Optional[Direction] = None
    precision: Optional[int] = Field(None, ge=0, le=10)
    status: Optional[RecordStatus] = None
    visibility: Optional[Visibility] = None


class ConversionResponse(BaseModel):
    conversion_id: int
    owner_id: int
    from_unit_id: int
    to_unit_id: int
    material_id: Optional[int]
    conversion_rate: float
    direction: str
    precision: int
    status: str
    visibility: str
    created_by: Optional[int]
    from_unit_name: Optional[str] = None
    to_unit_name: Optional[str] = None
    material_name: Optional[str] = None
    created_at: datetime
    updated_at: datetime
    
    class Config:
        from_attributes = True


class ConversionListResponse(BaseModel):
    list: List[ConversionResponse]
    total: int


class ConversionCandidate(ConversionBase):
    """Candidate edge submitted for validation before create"""
    direction: Direction = "both"
    conversion_id: Optional[int] = Field(
        None, description="Existing conversion being edited, excluded from duplicate checks"
    )


class ConversionCheck(BaseModel):
    material_id: Optional[int] = None


class CycleInfo(BaseModel):
    unit_ids: List[int]
    conversion_ids: List[int]
    rate_product: float
    consistent: bool


class CircularCheckResponse(BaseModel):
    has_circular: bool
    has_inconsistent: bool
    cycles: List[CycleInfo]


class ValidationResultResponse(BaseModel):
    valid: bool
    reason: Optional[str] = None
    warnings: List[str] = []


class PathStep(BaseModel):
    unit_id: int
    unit_name: Optional[str] = None


class ConversionPathResponse(BaseModel):
    path: List[int]
    rate: float
    steps: List[PathStep]
    conversion_ids: List[int]


class ConvertRequest(BaseModel):
    from_unit_id: int
    to_unit_id: int
    quantity: float = Field(..., allow_inf_nan=False)
    material_id: Optional[int] = None


class ConvertResponse(BaseModel):
    from_quantity: float
    to_quantity: float
    rate: float
    precision: int
    path: List[int]


class BatchDeleteRequest(BaseModel):
    ids: List[int] = Field(..., min_length=1)


class BatchDeleteResponse(BaseModel):
    deleted: int
