from decimal import Decimal
from typing import Optional, Literal

from pydantic import BaseModel, Field


class TipRequest(BaseModel):
    tip_amount: Decimal = Field(default=Decimal("0"), ge=0)


class MethodRequest(BaseModel):
    method: Literal["cash", "hosted_link", "nfc", "split"]


class CashRequest(BaseModel):
    received: str  # as typed; sanitized server side


class SplitRequest(BaseModel):
    cash_amount: str


class NfcCallbackRequest(BaseModel):
    status: str
    code: Optional[str] = None


class HostedLinkWebhook(BaseModel):
    repair_id: str
    status: Literal["completed", "failed"]
    reference: Optional[str] = None
