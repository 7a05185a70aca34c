"""
Compliance Schemas
"""
from decimal import Decimal
from typing import Optional, List

from pydantic import BaseModel


class ViolationResponse(BaseModel):
    field: str
    code: str
    message: str


class IncotermListResponse(BaseModel):
    transport_mode: Optional[str] = None
    incoterms: List[str]


class ComplianceCheckRequest(BaseModel):
    transport_mode: Optional[str] = None
    incoterm: Optional[str] = None
    freight_value: Optional[Decimal] = None
    insurance_value: Optional[Decimal] = None


class ComplianceCheckResponse(BaseModel):
    valid: bool
    violations: List[ViolationResponse]
