"""
Payment provider integrations.

HostedLinkClient creates hosted checkout links (Square Online Checkout API);
build_nfc_deep_link produces the URL that hands a charge to the in-person
tap app and names the callback it returns to.
"""
import json
import uuid
from decimal import Decimal
from io import BytesIO
from typing import Optional, Dict, Any
from urllib.parse import quote

import httpx
import qrcode
import structlog

from ..config import settings
from .errors import PaymentCaptureFailed

logger = structlog.get_logger(__name__)

SANDBOX_API_BASE = "https://connect.squareupsandbox.com"
PRODUCTION_API_BASE = "https://connect.squareup.com"
MIN_CHARGE_CENTS = 100


def to_cents(amount: Decimal) -> int:
    return int((Decimal(amount) * 100).quantize(Decimal("1")))


class HostedLinkClient:
    """Client for the hosted payment link API"""

    def __init__(self, access_token: Optional[str] = None, sandbox: Optional[bool] = None):
        self.access_token = access_token or settings.payment_link_access_token
        sandbox = settings.payment_link_sandbox if sandbox is None else sandbox
        self.base_url = SANDBOX_API_BASE if sandbox else PRODUCTION_API_BASE
        if not self.access_token:
            raise PaymentCaptureFailed("Hosted payment links are not configured", code="provider_unconfigured")

    def _headers(self) -> Dict[str, str]:
        return {
            "Authorization": f"Bearer {self.access_token}",
            "Content-Type": "application/json",
            "Square-Version": settings.payment_link_api_version,
        }

    def _request(self, method: str, endpoint: str, **kwargs) -> Dict[str, Any]:
        url = f"{self.base_url}/{endpoint.lstrip('/')}"
        try:
            with httpx.Client(timeout=30.0) as client:
                response = client.request(method, url, headers=self._headers(), **kwargs)
        except httpx.HTTPError as e:
            logger.warning("hosted_link_request_failed", endpoint=endpoint, error=str(e))
            raise PaymentCaptureFailed("Payment provider unreachable, try again", code="provider_unreachable")
        try:
            data = response.json()
        except ValueError:
            data = {}
        if response.status_code >= 400:
            detail = ((data.get("errors") or [{}])[0]).get("detail") or response.text[:200]
            logger.warning("hosted_link_provider_error", endpoint=endpoint, status=response.status_code, detail=detail)
            raise PaymentCaptureFailed(f"Payment provider rejected the request: {detail}", code="provider_error")
        return data

    def location_id(self) -> str:
        data = self._request("GET", "/v2/locations")
        locations = data.get("locations") or []
        if not locations:
            raise PaymentCaptureFailed("No payment location configured for this account", code="provider_error")
        return locations[0]["id"]

    def create(self, amount: Decimal, description: str, redirect_url: str) -> str:
        """Create a quick-pay link for `amount` and return its URL."""
        if amount <= 0 or amount > Decimal(str(settings.payment_link_max_amount)):
            raise PaymentCaptureFailed("Invalid payment amount", code="invalid_amount")
        cents = to_cents(amount)
        if cents < MIN_CHARGE_CENTS:
            raise PaymentCaptureFailed("Amount must be at least $1.00", code="invalid_amount")
        body = {
            "idempotency_key": str(uuid.uuid4()),
            "quick_pay": {
                "name": description,
                "price_money": {"amount": cents, "currency": settings.currency},
                "location_id": self.location_id(),
            },
            "checkout_options": {"redirect_url": redirect_url, "ask_for_shipping_address": False},
        }
        data = self._request("POST", "/v2/online-checkout/payment-links", json=body)
        link = data.get("payment_link") or {}
        if not link.get("url"):
            raise PaymentCaptureFailed("No payment URL returned from provider", code="provider_error")
        return link["url"]


def build_nfc_deep_link(amount: Decimal, repair_id, callback_url: str, notes: Optional[str] = None) -> str:
    """Deep link into the tap-to-pay app; `state` carries the repair id back on the callback."""
    payload = {
        "amount_money": {"amount": to_cents(amount), "currency_code": settings.currency},
        "callback_url": callback_url,
        "client_id": settings.nfc_client_id,
        "version": "1.3",
        "notes": notes or "",
        "state": str(repair_id),
        "options": {"supported_tender_types": ["CREDIT_CARD"]},
    }
    return f"{settings.nfc_app_scheme}?data={quote(json.dumps(payload, separators=(',', ':')))}"


def generate_qr_code_png(data: str, box_size: int = 10) -> bytes:
    """QR code PNG for a payment link, shown to the customer to scan"""
    qr = qrcode.QRCode(
        version=None,
        error_correction=qrcode.constants.ERROR_CORRECT_M,
        box_size=box_size,
        border=4,
    )
    qr.add_data(data)
    qr.make(fit=True)

    img = qr.make_image(fill_color="black", back_color="white")
    buffer = BytesIO()
    img.save(buffer, format="PNG")
    return buffer.getvalue()
