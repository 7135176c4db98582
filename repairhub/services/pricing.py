"""
Booking quote computation.
All money is Decimal rounded half-up to cents.
"""
from decimal import Decimal, ROUND_HALF_UP
from typing import Dict, Iterable, Optional

from ..config import settings

CENT = Decimal("0.01")

PARTS_TIERS = ("economy", "premium", "genuine")
DEFAULT_TIER = "premium"

PARTS_PRICING: Dict[str, Dict[str, int]] = {
    "screen": {"economy": 49, "premium": 89, "genuine": 179},
    "battery": {"economy": 29, "premium": 49, "genuine": 89},
    "charging": {"economy": 39, "premium": 59, "genuine": 99},
    "back-glass": {"economy": 39, "premium": 69, "genuine": 149},
    "camera-rear": {"economy": 49, "premium": 79, "genuine": 159},
    "camera-front": {"economy": 39, "premium": 69, "genuine": 129},
    "speaker": {"economy": 29, "premium": 49, "genuine": 79},
    "water-damage": {"economy": 59, "premium": 99, "genuine": 149},
    "buttons": {"economy": 29, "premium": 49, "genuine": 79},
    "software": {"economy": 0, "premium": 0, "genuine": 0},
}


def to_money(value) -> Decimal:
    if value is None:
        return Decimal("0.00")
    if not isinstance(value, Decimal):
        value = Decimal(str(value))
    return value.quantize(CENT, rounding=ROUND_HALF_UP)


def issue_price(issue_id: str, tier: Optional[str]) -> Decimal:
    prices = PARTS_PRICING.get(issue_id)
    if prices is None:
        raise ValueError(f"Unknown issue {issue_id!r}")
    tier = tier or DEFAULT_TIER
    if tier not in prices:
        raise ValueError(f"Unknown parts tier {tier!r}")
    return to_money(prices[tier])


def quote(issues: Iterable[str], parts_tier: Optional[Dict[str, str]] = None) -> Dict[str, Decimal]:
    """Price a booking: parts by tier, flat fees, tax on parts plus service fee."""
    parts_tier = parts_tier or {}
    issues = list(issues)
    if not issues:
        raise ValueError("At least one issue is required")
    parts_total = sum((issue_price(i, parts_tier.get(i)) for i in issues), Decimal("0.00"))
    service_fee = to_money(settings.service_fee)
    labor_fee = to_money(settings.labor_fee)
    tax_amount = to_money((parts_total + service_fee) * Decimal(str(settings.tax_rate)))
    return {
        "parts_total": to_money(parts_total),
        "service_fee": service_fee,
        "labor_fee": labor_fee,
        "tax_amount": tax_amount,
        "total_estimate": to_money(parts_total + service_fee + labor_fee + tax_amount),
    }
