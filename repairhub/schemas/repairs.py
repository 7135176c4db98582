from datetime import date
from decimal import Decimal
from typing import Optional, List, Dict, Literal

from pydantic import BaseModel, Field


class RepairCreate(BaseModel):
    device: str = Field(min_length=1, max_length=120)
    issues: List[str] = Field(min_length=1)
    parts_tier: Optional[Dict[str, Literal["economy", "premium", "genuine"]]] = None
    scheduled_date: Optional[date] = None
    time_slot: Optional[str] = None
    address: Optional[str] = None
    customer_lat: Optional[float] = None
    customer_lng: Optional[float] = None
    notes: Optional[str] = None
    parts_in_stock: Optional[bool] = None


class AdvanceRequest(BaseModel):
    expected_status: Optional[str] = None


class CancelRequest(BaseModel):
    reason: Optional[str] = None


class PartsInStockRequest(BaseModel):
    parts_in_stock: bool


class SignatureRequest(BaseModel):
    image: str  # base64 PNG or data URL


class QuoteRequest(BaseModel):
    issues: List[str] = Field(min_length=1)
    parts_tier: Optional[Dict[str, Literal["economy", "premium", "genuine"]]] = None


class QuoteResponse(BaseModel):
    parts_total: Decimal
    service_fee: Decimal
    labor_fee: Decimal
    tax_amount: Decimal
    total_estimate: Decimal
