"""
Repair booking and lifecycle API routes.
"""
from fastapi import APIRouter, Depends, HTTPException
from fastapi.encoders import jsonable_encoder
from sqlalchemy.orm import Session

from ..auth.security import get_current_user, require_roles
from ..db import get_db
from ..models.models import User
from ..schemas.repairs import (
    AdvanceRequest,
    CancelRequest,
    PartsInStockRequest,
    QuoteRequest,
    QuoteResponse,
    RepairCreate,
    SignatureRequest,
)
from ..services import lifecycle, pricing
from ..services.audit import get_audit_logs, verify_audit_log
from ..services.chat import unread_counts
from ..services.signatures import decode_data_url
from ..storage.factory import get_storage

router = APIRouter(prefix="/repairs", tags=["repairs"])


def _out(repair) -> dict:
    return jsonable_encoder(lifecycle.repair_to_dict(repair))


@router.post("/quote", response_model=QuoteResponse)
def quote(payload: QuoteRequest):
    try:
        return pricing.quote(payload.issues, payload.parts_tier)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))


@router.post("")
def book_repair(
    payload: RepairCreate,
    db: Session = Depends(get_db),
    user: User = Depends(require_roles("customer")),
):
    repair = lifecycle.book(db, user, payload.model_dump())
    return _out(repair)


@router.get("")
def list_repairs(db: Session = Depends(get_db), user: User = Depends(get_current_user)):
    """Technician queue or customer dashboard, each with unread chat badges."""
    repairs = lifecycle.visible_repairs(db, user)
    unread = unread_counts(db, repairs, user)
    items = []
    for repair in repairs:
        item = _out(repair)
        item["unread_messages"] = unread.get(str(repair.id), 0)
        items.append(item)
    return items


@router.get("/{repair_id}")
def get_repair(repair_id: str, db: Session = Depends(get_db), user: User = Depends(get_current_user)):
    repair = lifecycle.get_repair(db, repair_id)
    if not lifecycle.can_view(repair, user):
        raise HTTPException(status_code=403, detail="Forbidden")
    return _out(repair)


@router.post("/{repair_id}/claim")
def claim_repair(
    repair_id: str,
    db: Session = Depends(get_db),
    user: User = Depends(require_roles("technician")),
):
    return _out(lifecycle.claim(db, repair_id, user))


@router.post("/{repair_id}/advance")
def advance_repair(
    repair_id: str,
    payload: AdvanceRequest = AdvanceRequest(),
    db: Session = Depends(get_db),
    user: User = Depends(require_roles("technician")),
):
    return _out(lifecycle.advance(db, repair_id, user, expected_status=payload.expected_status))


@router.post("/{repair_id}/cancel")
def cancel_repair(
    repair_id: str,
    payload: CancelRequest = CancelRequest(),
    db: Session = Depends(get_db),
    user: User = Depends(get_current_user),
):
    return _out(lifecycle.cancel(db, repair_id, user, reason=payload.reason))


@router.post("/{repair_id}/parts-in-stock")
def set_parts_in_stock(
    repair_id: str,
    payload: PartsInStockRequest,
    db: Session = Depends(get_db),
    user: User = Depends(require_roles("technician")),
):
    return _out(lifecycle.set_parts_in_stock(db, repair_id, user, payload.parts_in_stock))


@router.post("/{repair_id}/intake-signature")
def intake_signature(
    repair_id: str,
    payload: SignatureRequest,
    db: Session = Depends(get_db),
    user: User = Depends(require_roles("technician")),
):
    png = decode_data_url(payload.image)
    return _out(lifecycle.record_intake_signature(db, repair_id, user, png, get_storage()))


@router.get("/{repair_id}/audit")
def repair_audit(repair_id: str, db: Session = Depends(get_db), user: User = Depends(get_current_user)):
    repair = lifecycle.get_repair(db, repair_id)
    lifecycle.require_participant(repair, user)
    logs = get_audit_logs(db, entity_id=repair.id)
    return [
        {
            "id": str(log.id),
            "entity_type": log.entity_type,
            "action": log.action,
            "actor_id": str(log.actor_id) if log.actor_id else None,
            "actor_role": log.actor_role,
            "source": log.source,
            "changes": log.changes_json,
            "context": log.context,
            "timestamp_utc": log.timestamp_utc.isoformat() if log.timestamp_utc else None,
            "verified": verify_audit_log(log),
        }
        for log in logs
    ]


@router.get("/{repair_id}/signatures")
def signature_links(repair_id: str, db: Session = Depends(get_db), user: User = Depends(get_current_user)):
    """Short-lived links to the stored intake and completion signatures."""
    repair = lifecycle.get_repair(db, repair_id)
    lifecycle.require_participant(repair, user)
    storage = get_storage()
    return {
        "intake": storage.download_url(repair.intake_signature_path) if repair.intake_signature_path else None,
        "completion": storage.download_url(repair.completion_signature_path) if repair.completion_signature_path else None,
    }
