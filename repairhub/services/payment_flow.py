"""
Payment and completion protocol.

The wizard runs tip -> method -> capture -> signature -> done. Its step is
never stored: resume_step() derives it from the repair's persisted payment
fields, so a reload or a return from an external payment page lands on the
right step. COMPLETE is only written by finalize(), in one conditional
UPDATE that re-checks payment and signature.
"""
import re
from datetime import datetime
from decimal import Decimal, InvalidOperation
from typing import Optional, Dict, Any

import structlog
from sqlalchemy.orm import Session

from ..config import settings
from ..models.models import Repair, User
from ..storage.provider import StorageProvider
from .audit import create_audit_log
from .errors import ActionForbidden, PaymentCaptureFailed, TransitionRejected
from .lifecycle import NOT_NULL, conditional_update, get_repair
from .notifications import notify_repair_event
from .payment_providers import HostedLinkClient, build_nfc_deep_link
from .pricing import to_money
from .repair_state import RepairStatus, coerce
from .signatures import store_signature

logger = structlog.get_logger(__name__)

STEP_TIP = "tip"
STEP_METHOD = "method"
STEP_CAPTURE = "capture"
STEP_SIGNATURE = "signature"
STEP_DONE = "done"

CASH = "cash"
HOSTED_LINK = "hosted_link"
NFC = "nfc"
SPLIT = "split"
METHODS = (CASH, HOSTED_LINK, NFC, SPLIT)
CARD_LEGS = (HOSTED_LINK, NFC)

OPEN_PAYMENT_STATUSES = ("unpaid", "pending", "failed")


def amount_due(repair: Repair) -> Decimal:
    return to_money(repair.total_estimate) + to_money(repair.tip_amount)


def card_amount(repair: Repair) -> Decimal:
    """What the card leg charges: the full amount, or due minus the recorded cash part of a split."""
    due = amount_due(repair)
    if repair.payment_method == SPLIT and repair.split_cash_amount is not None:
        return to_money(due - to_money(repair.split_cash_amount))
    return due


def sanitize_amount(text: Optional[str]) -> str:
    """Keep digits and the first decimal point of a typed amount."""
    cleaned = re.sub(r"[^0-9.]", "", text or "")
    head, dot, tail = cleaned.partition(".")
    return head + dot + tail.replace(".", "")


def parse_amount(text: Optional[str]) -> Optional[Decimal]:
    cleaned = sanitize_amount(text)
    if cleaned in ("", "."):
        return None
    try:
        return to_money(Decimal(cleaned))
    except InvalidOperation:
        return None


def cash_summary(due: Decimal, received_text: Optional[str]) -> Dict[str, Any]:
    """Change owed or shortfall for a typed cash amount."""
    received = parse_amount(received_text)
    if received is None:
        return {"received": None, "change": None, "shortfall": to_money(due), "sufficient": False}
    diff = to_money(received - due)
    return {
        "received": received,
        "change": diff if diff >= 0 else None,
        "shortfall": -diff if diff < 0 else Decimal("0.00"),
        "sufficient": diff >= 0,
    }


def resume_step(repair: Repair) -> str:
    if coerce(repair.status) == RepairStatus.COMPLETE:
        return STEP_DONE
    if repair.payment_status == "completed":
        return STEP_DONE if repair.completion_signature_path else STEP_SIGNATURE
    if repair.payment_method:
        return STEP_CAPTURE
    return STEP_TIP


def wizard_state(repair: Repair) -> Dict[str, Any]:
    return {
        "repair_id": str(repair.id),
        "step": resume_step(repair),
        "tip_presets": list(settings.tip_presets),
        "tip_amount": to_money(repair.tip_amount),
        "total_estimate": to_money(repair.total_estimate),
        "amount_due": amount_due(repair),
        "payment_method": repair.payment_method,
        "payment_status": repair.payment_status,
        "split_cash_amount": to_money(repair.split_cash_amount) if repair.split_cash_amount is not None else None,
        "card_amount": card_amount(repair),
        "cash_received": to_money(repair.cash_received) if repair.cash_received is not None else None,
        "payment_link": repair.payment_reference if repair.payment_method in (HOSTED_LINK, SPLIT) else None,
        "signature_captured": bool(repair.completion_signature_path),
        "status": repair.status,
    }


def _load_for_payment(db: Session, repair_id, actor: User) -> Repair:
    repair = get_repair(db, repair_id)
    db.refresh(repair)
    if repair.technician_id != actor.id:
        raise ActionForbidden("Only the assigned technician can take payment")
    if coerce(repair.status) != RepairStatus.IN_PROGRESS:
        raise TransitionRejected("Payment is taken once the repair is in progress", code="not_in_progress")
    return repair


def _require_open(repair: Repair) -> None:
    if repair.payment_status == "completed":
        raise TransitionRejected("Payment already collected", code="already_paid")


def _payment_audit(db: Session, repair: Repair, actor_id, action: str, changes: Dict[str, Any], source: str = "app") -> None:
    create_audit_log(
        db,
        entity_type="payment",
        entity_id=repair.id,
        action=action,
        actor_id=actor_id,
        actor_role="technician" if actor_id else "system",
        source=source,
        changes_json=changes,
    )


def select_tip(db: Session, repair_id, actor: User, tip) -> Dict[str, Any]:
    repair = _load_for_payment(db, repair_id, actor)
    _require_open(repair)
    if repair.payment_status == "pending":
        raise TransitionRejected("A card payment is already in progress", code="payment_pending")
    tip = to_money(tip or 0)
    if tip < 0:
        raise PaymentCaptureFailed("Tip cannot be negative", code="invalid_tip")
    repair.tip_amount = tip
    repair.payment_method = None
    repair.split_cash_amount = None
    repair.updated_at = datetime.utcnow()
    db.commit()
    state = wizard_state(repair)
    state["step"] = STEP_METHOD
    return state


def select_method(db: Session, repair_id, actor: User, method: str) -> Dict[str, Any]:
    if method not in METHODS:
        raise PaymentCaptureFailed(f"Unknown payment method {method!r}", code="invalid_method")
    repair = _load_for_payment(db, repair_id, actor)
    _require_open(repair)
    if repair.payment_status == "pending":
        raise TransitionRejected("A card payment is already in progress", code="payment_pending")
    repair.payment_method = method
    repair.payment_status = "unpaid"
    repair.payment_reference = None
    repair.split_cash_amount = None
    repair.cash_received = None
    repair.updated_at = datetime.utcnow()
    db.commit()
    return wizard_state(repair)


def _complete_payment(db: Session, repair: Repair, actor_id, values: Dict[str, Any], source: str = "app") -> Repair:
    now = datetime.utcnow()
    updated = conditional_update(
        db,
        repair.id,
        expected={"status": RepairStatus.IN_PROGRESS.value, "payment_status": OPEN_PAYMENT_STATUSES},
        values={**values, "payment_status": "completed", "paid_at": now},
    )
    if updated is None:
        db.rollback()
        raise TransitionRejected("Payment state changed in the meantime, refresh and retry", code="stale_payment")
    _payment_audit(db, updated, actor_id, "PAYMENT", {k: str(v) for k, v in values.items()}, source=source)
    db.commit()
    logger.info("payment_completed", repair_id=str(updated.id), method=updated.payment_method, source=source)
    return updated


def capture_cash(db: Session, repair_id, actor: User, received_text: str) -> Dict[str, Any]:
    """Accept a cash payment covering the full amount due."""
    repair = _load_for_payment(db, repair_id, actor)
    _require_open(repair)
    due = amount_due(repair)
    summary = cash_summary(due, received_text)
    if not summary["sufficient"]:
        raise PaymentCaptureFailed(f"Cash received is short by ${summary['shortfall']:.2f}", code="insufficient_cash")
    updated = _complete_payment(
        db, repair, actor.id, {"payment_method": CASH, "cash_received": summary["received"]}
    )
    state = wizard_state(updated)
    state["change"] = summary["change"]
    return state


def record_split(db: Session, repair_id, actor: User, cash_text: str) -> Dict[str, Any]:
    """Record the cash part of a split before the card leg launches."""
    repair = _load_for_payment(db, repair_id, actor)
    _require_open(repair)
    if repair.payment_status == "pending":
        raise TransitionRejected("A card payment is already in progress", code="payment_pending")
    due = amount_due(repair)
    cash = parse_amount(cash_text)
    if cash is None or cash <= 0 or cash >= due:
        raise PaymentCaptureFailed(f"Cash portion must be between $0.00 and ${due:.2f}", code="invalid_split")
    repair.payment_method = SPLIT
    repair.split_cash_amount = cash
    repair.cash_received = cash
    repair.updated_at = datetime.utcnow()
    db.commit()
    return wizard_state(repair)


def _card_ready(repair: Repair, method: str) -> None:
    if repair.payment_method == SPLIT:
        if repair.split_cash_amount is None:
            raise PaymentCaptureFailed("Record the cash portion first", code="split_cash_missing")
    elif repair.payment_method != method:
        raise TransitionRejected(f"Payment method is {repair.payment_method or 'not selected'}", code="method_mismatch")


def start_hosted_link(db: Session, repair_id, actor: User, client: Optional[HostedLinkClient] = None) -> Dict[str, Any]:
    """
    Create the hosted payment link for the card amount.

    The provider call happens before any write, so a failure leaves the
    repair's payment fields untouched.
    """
    repair = _load_for_payment(db, repair_id, actor)
    _require_open(repair)
    _card_ready(repair, HOSTED_LINK)
    amount = card_amount(repair)
    client = client or HostedLinkClient()
    redirect_url = f"{settings.technician_app_url}/repairs/{repair.id}?payment=return"
    url = client.create(amount, f"{repair.device} repair", redirect_url)
    repair.payment_status = "pending"
    repair.payment_reference = url
    repair.updated_at = datetime.utcnow()
    _payment_audit(db, repair, actor.id, "PAYMENT_LINK", {"amount": str(amount), "url": url})
    db.commit()
    logger.info("payment_link_created", repair_id=str(repair.id), amount=str(amount))
    return {**wizard_state(repair), "url": url, "amount": amount}


def launch_nfc(db: Session, repair_id, actor: User) -> Dict[str, Any]:
    repair = _load_for_payment(db, repair_id, actor)
    _require_open(repair)
    _card_ready(repair, NFC)
    amount = card_amount(repair)
    callback_url = f"{settings.technician_app_url}/repairs/{repair.id}/payment/nfc"
    url = build_nfc_deep_link(amount, repair.id, callback_url, notes=f"{repair.device} repair")
    return {**wizard_state(repair), "url": url, "amount": amount}


def nfc_callback(db: Session, repair_id, actor: User, status: str, code: Optional[str] = None) -> Dict[str, Any]:
    """Result of the tap app; success completes payment, anything else keeps the wizard on capture."""
    repair = _load_for_payment(db, repair_id, actor)
    if repair.payment_status == "completed":
        return wizard_state(repair)
    if status != "ok":
        logger.info("nfc_payment_failed", repair_id=str(repair.id), code=code)
        raise PaymentCaptureFailed(f"Card payment did not go through ({code or 'cancelled'})", code="nfc_failed")
    _card_ready(repair, NFC)
    values = {"payment_reference": code}
    if repair.payment_method != SPLIT:
        values["payment_method"] = NFC
    updated = _complete_payment(db, repair, actor.id, values)
    return wizard_state(updated)


def mark_payment_completed(db: Session, repair_id, reference: Optional[str] = None) -> Repair:
    """Provider confirmation for a hosted link (webhook)."""
    repair = get_repair(db, repair_id)
    db.refresh(repair)
    if repair.payment_status == "completed":
        return repair
    values = {"payment_reference": reference} if reference else {}
    return _complete_payment(db, repair, None, values, source="webhook")


def mark_payment_failed(db: Session, repair_id, reason: Optional[str] = None) -> Repair:
    repair = get_repair(db, repair_id)
    updated = conditional_update(
        db, repair.id, expected={"payment_status": "pending"}, values={"payment_status": "failed"}
    )
    if updated is None:
        db.rollback()
        return repair
    _payment_audit(db, updated, None, "PAYMENT_FAILED", {"reason": reason}, source="webhook")
    db.commit()
    return updated


def submit_signature(db: Session, repair_id, actor: User, png_bytes: bytes, storage: StorageProvider) -> Repair:
    """Store the customer's completion signature, then finalize."""
    repair = _load_for_payment(db, repair_id, actor)
    if repair.payment_status != "completed":
        raise TransitionRejected("Collect payment before the signature", code="payment_required")
    key = store_signature(storage, repair.id, "completion", png_bytes)
    repair.completion_signature_path = key
    repair.updated_at = datetime.utcnow()
    db.commit()
    return finalize(db, repair.id, actor)


def finalize(db: Session, repair_id, actor: User) -> Repair:
    repair = get_repair(db, repair_id)
    if repair.technician_id != actor.id:
        raise ActionForbidden("Only the assigned technician can complete this repair")
    now = datetime.utcnow()
    updated = conditional_update(
        db,
        repair.id,
        expected={
            "status": RepairStatus.IN_PROGRESS.value,
            "payment_status": "completed",
            "completion_signature_path": NOT_NULL,
        },
        values={"status": RepairStatus.COMPLETE.value, "completed_at": now},
    )
    if updated is None:
        db.rollback()
        db.refresh(repair)
        if repair.payment_status != "completed":
            raise TransitionRejected("Payment is not completed", code="payment_required")
        if not repair.completion_signature_path:
            raise TransitionRejected("Customer signature is required", code="signature_required")
        raise TransitionRejected(f"Repair is {repair.status}", code="stale_status")
    create_audit_log(
        db,
        entity_type="repair",
        entity_id=updated.id,
        action="COMPLETE",
        actor_id=actor.id,
        actor_role="technician",
        source="app",
        changes_json={"status": {"before": "in_progress", "after": "complete"}},
    )
    db.commit()
    logger.info("repair_completed", repair_id=str(updated.id))
    notify_repair_event(db, updated, "repair_complete")
    return updated
