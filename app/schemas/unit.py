from pydantic import BaseModel, Field
from typing import List, Optional, Literal
from datetime import datetime


UnitType = Literal["basic", "sub"]
RecordStatus = Literal["active", "inactive"]


class UnitBase(BaseModel):
    unit_code: str = Field(..., min_length=1, max_length=50)
    unit_name: str = Field(..., min_length=1, max_length=100)
    unit_type: UnitType = "basic"
    description: Optional[str] = None


class UnitCreate(UnitBase):
    status: RecordStatus = "active"


class UnitUpdate(BaseModel):
    unit_code: Optional[str] = Field(None, min_length=1, max_length=50)
    unit_name: Optional[str] = Field(None, min_length=1, max_length=100)
    unit_type: Optional[UnitType] = None
    description: Optional[str] = None
    status: Optional[RecordStatus] = None


class UnitResponse(UnitBase):
    unit_id: int
    owner_id: int
    status: str
    created_by: Optional[int]
    created_at: datetime
    updated_at: datetime
    
    class Config:
        from_attributes = True


class UnitListResponse(BaseModel):
    list: List[UnitResponse]
    total: int


class UnitUsageResponse(BaseModel):
    unit_id: int
    in_use: bool
    conversions: int
    materials: int
