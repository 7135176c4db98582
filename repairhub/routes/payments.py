"""
Payment wizard API routes and provider callbacks.
"""
import hmac
from typing import Optional

import structlog
from fastapi import APIRouter, Depends, Header, HTTPException
from fastapi.encoders import jsonable_encoder
from fastapi.responses import Response
from sqlalchemy.orm import Session

from ..auth.security import require_roles
from ..config import settings
from ..db import get_db
from ..models.models import User
from ..schemas.payments import (
    CashRequest,
    HostedLinkWebhook,
    MethodRequest,
    NfcCallbackRequest,
    SplitRequest,
    TipRequest,
)
from ..schemas.repairs import SignatureRequest
from ..services import lifecycle, payment_flow
from ..services.payment_providers import generate_qr_code_png
from ..services.signatures import decode_data_url
from ..storage.factory import get_storage

logger = structlog.get_logger(__name__)

router = APIRouter(prefix="/payments", tags=["payments"])


@router.post("/webhooks/hosted-link")
def hosted_link_webhook(
    payload: HostedLinkWebhook,
    x_webhook_secret: Optional[str] = Header(default=None),
    db: Session = Depends(get_db),
):
    if not x_webhook_secret or not hmac.compare_digest(x_webhook_secret, settings.payment_webhook_secret):
        raise HTTPException(status_code=401, detail="Invalid webhook secret")
    if payload.status == "completed":
        repair = payment_flow.mark_payment_completed(db, payload.repair_id, payload.reference)
    else:
        repair = payment_flow.mark_payment_failed(db, payload.repair_id, payload.reference)
    logger.info("hosted_link_webhook", repair_id=payload.repair_id, status=payload.status)
    return {"ok": True, "payment_status": repair.payment_status}


@router.get("/{repair_id}")
def wizard(repair_id: str, db: Session = Depends(get_db), user: User = Depends(require_roles("technician"))):
    """Current wizard step, always derived from the repair's stored payment fields."""
    repair = lifecycle.get_repair(db, repair_id)
    if repair.technician_id != user.id:
        raise HTTPException(status_code=403, detail="Forbidden")
    db.refresh(repair)
    return jsonable_encoder(payment_flow.wizard_state(repair))


@router.post("/{repair_id}/tip")
def select_tip(repair_id: str, payload: TipRequest, db: Session = Depends(get_db),
               user: User = Depends(require_roles("technician"))):
    return jsonable_encoder(payment_flow.select_tip(db, repair_id, user, payload.tip_amount))


@router.post("/{repair_id}/method")
def select_method(repair_id: str, payload: MethodRequest, db: Session = Depends(get_db),
                  user: User = Depends(require_roles("technician"))):
    return jsonable_encoder(payment_flow.select_method(db, repair_id, user, payload.method))


@router.post("/{repair_id}/cash")
def capture_cash(repair_id: str, payload: CashRequest, db: Session = Depends(get_db),
                 user: User = Depends(require_roles("technician"))):
    return jsonable_encoder(payment_flow.capture_cash(db, repair_id, user, payload.received))


@router.get("/{repair_id}/cash/preview")
def cash_preview(repair_id: str, received: str = "", db: Session = Depends(get_db),
                 user: User = Depends(require_roles("technician"))):
    """Change owed or shortfall as the technician types the amount received."""
    repair = lifecycle.get_repair(db, repair_id)
    if repair.technician_id != user.id:
        raise HTTPException(status_code=403, detail="Forbidden")
    summary = payment_flow.cash_summary(payment_flow.amount_due(repair), received)
    summary["sanitized"] = payment_flow.sanitize_amount(received)
    return jsonable_encoder(summary)


@router.post("/{repair_id}/split")
def record_split(repair_id: str, payload: SplitRequest, db: Session = Depends(get_db),
                 user: User = Depends(require_roles("technician"))):
    return jsonable_encoder(payment_flow.record_split(db, repair_id, user, payload.cash_amount))


@router.post("/{repair_id}/hosted-link")
def start_hosted_link(repair_id: str, db: Session = Depends(get_db),
                      user: User = Depends(require_roles("technician"))):
    return jsonable_encoder(payment_flow.start_hosted_link(db, repair_id, user))


@router.get("/{repair_id}/hosted-link/qr.png")
def hosted_link_qr(repair_id: str, db: Session = Depends(get_db),
                   user: User = Depends(require_roles("technician"))):
    repair = lifecycle.get_repair(db, repair_id)
    if repair.technician_id != user.id:
        raise HTTPException(status_code=403, detail="Forbidden")
    if repair.payment_status != "pending" or not repair.payment_reference:
        raise HTTPException(status_code=404, detail="No active payment link")
    return Response(content=generate_qr_code_png(repair.payment_reference), media_type="image/png")


@router.post("/{repair_id}/nfc")
def launch_nfc(repair_id: str, db: Session = Depends(get_db),
               user: User = Depends(require_roles("technician"))):
    return jsonable_encoder(payment_flow.launch_nfc(db, repair_id, user))


@router.post("/{repair_id}/nfc/callback")
def nfc_callback(repair_id: str, payload: NfcCallbackRequest, db: Session = Depends(get_db),
                 user: User = Depends(require_roles("technician"))):
    return jsonable_encoder(payment_flow.nfc_callback(db, repair_id, user, payload.status, payload.code))


@router.post("/{repair_id}/signature")
def submit_signature(repair_id: str, payload: SignatureRequest, db: Session = Depends(get_db),
                     user: User = Depends(require_roles("technician"))):
    png = decode_data_url(payload.image)
    repair = payment_flow.submit_signature(db, repair_id, user, png, get_storage())
    return jsonable_encoder(payment_flow.wizard_state(repair))


@router.post("/{repair_id}/finalize")
def finalize(repair_id: str, db: Session = Depends(get_db),
             user: User = Depends(require_roles("technician"))):
    repair = payment_flow.finalize(db, repair_id, user)
    return jsonable_encoder(payment_flow.wizard_state(repair))
