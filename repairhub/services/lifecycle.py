"""
Repair lifecycle: booking, claim, advance, cancel.

Every status change is a conditional UPDATE on the status the caller last
saw, so of two concurrent writers exactly one wins and the other gets
TransitionRejected. Rows written through these statements are queued on
the change feed explicitly since the ORM flush never sees them.
"""
import uuid
from datetime import datetime
from typing import Optional, Dict, Any, List

import structlog
from sqlalchemy import and_, or_, update
from sqlalchemy.orm import Session

from ..models.models import Repair, TechLocation, User
from ..storage.provider import StorageProvider
from . import change_feed, pricing
from .audit import create_audit_log
from .errors import ActionForbidden, RepairNotFound, TransitionRejected
from .notifications import notify_repair_event
from .repair_state import RepairStatus, coerce, is_terminal, next_status, progress
from .signatures import store_signature

logger = structlog.get_logger(__name__)

# Expectation for conditional_update: column IS NOT NULL
NOT_NULL = object()

# Emails sent after the transition into a status has committed
ENTRY_NOTIFICATIONS = {
    RepairStatus.EN_ROUTE: "tech_en_route",
    RepairStatus.ARRIVED: "tech_arrived",
}


def _uuid(value) -> uuid.UUID:
    if isinstance(value, uuid.UUID):
        return value
    try:
        return uuid.UUID(str(value))
    except ValueError:
        raise RepairNotFound(f"Repair {value} not found")


def get_repair(db: Session, repair_id) -> Repair:
    repair = db.get(Repair, _uuid(repair_id))
    if repair is None:
        raise RepairNotFound(f"Repair {repair_id} not found")
    return repair


def participant_role(repair: Repair, user: User) -> Optional[str]:
    """customer|technician for the repair's two parties, admin for staff, else None."""
    if repair.customer_id == user.id:
        return "customer"
    if repair.technician_id is not None and repair.technician_id == user.id:
        return "technician"
    if user.role == "admin":
        return "admin"
    return None


def require_participant(repair: Repair, user: User) -> str:
    role = participant_role(repair, user)
    if role is None:
        raise ActionForbidden("Not a participant of this repair")
    return role


def conditional_update(db: Session, repair_id: uuid.UUID, expected: Dict[str, Any], values: Dict[str, Any]) -> Optional[Repair]:
    """
    UPDATE repairs SET values WHERE id = repair_id AND <expected columns match>.

    Returns the refreshed Repair when exactly one row changed, else None.
    A None expectation matches SQL NULL, a tuple matches any of its values.
    """
    stmt = update(Repair).where(Repair.id == repair_id)
    for column, value in expected.items():
        attr = getattr(Repair, column)
        if value is None:
            stmt = stmt.where(attr.is_(None))
        elif value is NOT_NULL:
            stmt = stmt.where(attr.isnot(None))
        elif isinstance(value, tuple):
            stmt = stmt.where(attr.in_(value))
        else:
            stmt = stmt.where(attr == value)
    values = {**values, "updated_at": datetime.utcnow()}
    result = db.execute(stmt.values(**values).execution_options(synchronize_session=False))
    if result.rowcount != 1:
        return None
    repair = db.get(Repair, repair_id, populate_existing=True)
    change_feed.record(db, change_feed.UPDATE, repair)
    return repair


def delete_location(db: Session, repair_id: uuid.UUID) -> int:
    """Remove the live position row for a repair inside the caller's transaction."""
    rows = db.query(TechLocation).filter(TechLocation.repair_id == repair_id).all()
    for row in rows:
        db.delete(row)
    return len(rows)


def book(db: Session, customer: User, data: Dict[str, Any]) -> Repair:
    """Create a PENDING repair with a server-computed quote."""
    try:
        quote = pricing.quote(data.get("issues") or [], data.get("parts_tier"))
    except ValueError as e:
        raise TransitionRejected(str(e), code="invalid_booking")
    repair = Repair(
        id=uuid.uuid4(),
        customer_id=customer.id,
        technician_id=None,
        device=data["device"],
        issues=list(data.get("issues") or []),
        parts_tier=data.get("parts_tier") or None,
        scheduled_date=data.get("scheduled_date"),
        time_slot=data.get("time_slot"),
        address=data.get("address"),
        customer_lat=data.get("customer_lat"),
        customer_lng=data.get("customer_lng"),
        notes=data.get("notes"),
        parts_in_stock=data.get("parts_in_stock"),
        status=RepairStatus.PENDING.value,
        payment_status="unpaid",
        tip_amount=pricing.to_money(0),
        **quote,
    )
    db.add(repair)
    create_audit_log(
        db,
        entity_type="repair",
        entity_id=repair.id,
        action="CREATE",
        actor_id=customer.id,
        actor_role="customer",
        source="app",
        changes_json={"after": {"status": repair.status, "total_estimate": quote["total_estimate"]}},
    )
    db.commit()
    logger.info("repair_booked", repair_id=str(repair.id), customer_id=str(customer.id))
    notify_repair_event(db, repair, "repair_confirmed")
    return repair


def claim(db: Session, repair_id, technician: User) -> Repair:
    """Attach an unassigned pending repair to `technician` and confirm it."""
    if technician.role != "technician":
        raise ActionForbidden("Only technicians can claim repairs")
    rid = _uuid(repair_id)
    get_repair(db, rid)
    repair = conditional_update(
        db,
        rid,
        expected={"status": RepairStatus.PENDING.value, "technician_id": None},
        values={"status": RepairStatus.CONFIRMED.value, "technician_id": technician.id},
    )
    if repair is None:
        db.rollback()
        raise TransitionRejected("Repair was already claimed", code="already_claimed")
    create_audit_log(
        db,
        entity_type="repair",
        entity_id=rid,
        action="CLAIM",
        actor_id=technician.id,
        actor_role="technician",
        source="app",
        changes_json={"status": {"before": "pending", "after": "confirmed"}, "technician_id": str(technician.id)},
    )
    db.commit()
    logger.info("repair_claimed", repair_id=str(rid), technician_id=str(technician.id))
    return repair


def advance(db: Session, repair_id, actor: User, expected_status: Optional[str] = None) -> Repair:
    """
    Move a repair one step along its effective sequence.

    `expected_status` is the status the caller rendered; when given it must
    still be current. COMPLETE is never reached here, see payment_flow.finalize.
    """
    rid = _uuid(repair_id)
    repair = get_repair(db, rid)
    db.refresh(repair)
    current = coerce(repair.status)
    if expected_status is not None and coerce(expected_status) != current:
        raise TransitionRejected(
            f"Repair is {current.value}, not {coerce(expected_status).value}", code="stale_status"
        )
    if current == RepairStatus.PENDING:
        return claim(db, rid, actor)
    if repair.technician_id != actor.id:
        raise ActionForbidden("Only the assigned technician can advance this repair")

    target = next_status(current, repair.parts_in_stock)
    if target == RepairStatus.COMPLETE:
        raise TransitionRejected("Collect payment and the customer's signature to complete", code="payment_required")
    if current == RepairStatus.ARRIVED and not repair.intake_signature_path:
        raise TransitionRejected("Customer intake signature is required before starting", code="intake_signature_required")

    updated = conditional_update(
        db,
        rid,
        expected={"status": current.value, "technician_id": actor.id},
        values={"status": target.value},
    )
    if updated is None:
        db.rollback()
        raise TransitionRejected("Repair changed in the meantime, refresh and retry", code="stale_status")
    if current == RepairStatus.EN_ROUTE:
        delete_location(db, rid)
    create_audit_log(
        db,
        entity_type="repair",
        entity_id=rid,
        action="ADVANCE",
        actor_id=actor.id,
        actor_role="technician",
        source="app",
        changes_json={"status": {"before": current.value, "after": target.value}},
    )
    db.commit()
    logger.info("repair_advanced", repair_id=str(rid), before=current.value, after=target.value)

    template = ENTRY_NOTIFICATIONS.get(target)
    if template:
        notify_repair_event(db, updated, template)
    return updated


def cancel(db: Session, repair_id, actor: User, reason: Optional[str] = None) -> Repair:
    rid = _uuid(repair_id)
    repair = get_repair(db, rid)
    db.refresh(repair)
    role = require_participant(repair, actor)
    current = coerce(repair.status)
    if is_terminal(current):
        raise TransitionRejected(f"Repair is already {current.value}")

    updated = conditional_update(
        db,
        rid,
        expected={"status": current.value},
        values={"status": RepairStatus.CANCELLED.value, "cancelled_at": datetime.utcnow()},
    )
    if updated is None:
        db.rollback()
        raise TransitionRejected("Repair changed in the meantime, refresh and retry", code="stale_status")
    if current == RepairStatus.EN_ROUTE:
        delete_location(db, rid)
    create_audit_log(
        db,
        entity_type="repair",
        entity_id=rid,
        action="CANCEL",
        actor_id=actor.id,
        actor_role=role,
        source="app",
        changes_json={"status": {"before": current.value, "after": "cancelled"}},
        context={"reason": reason} if reason else None,
    )
    db.commit()
    logger.info("repair_cancelled", repair_id=str(rid), by=role, before=current.value)
    return updated


def record_intake_signature(db: Session, repair_id, actor: User, png_bytes: bytes, storage: StorageProvider) -> Repair:
    """Store the customer's intake authorization, captured on the technician's device on arrival."""
    repair = get_repair(db, repair_id)
    if repair.technician_id != actor.id:
        raise ActionForbidden("Only the assigned technician can collect the intake signature")
    if coerce(repair.status) not in (RepairStatus.ARRIVED, RepairStatus.IN_PROGRESS):
        raise TransitionRejected("Intake signature is collected on arrival", code="not_arrived")
    key = store_signature(storage, repair.id, "intake", png_bytes)
    repair.intake_signature_path = key
    repair.updated_at = datetime.utcnow()
    create_audit_log(
        db,
        entity_type="repair",
        entity_id=repair.id,
        action="INTAKE_SIGNATURE",
        actor_id=actor.id,
        actor_role="technician",
        source="app",
        changes_json={"intake_signature_path": key},
    )
    db.commit()
    return repair


def set_parts_in_stock(db: Session, repair_id, actor: User, in_stock: bool) -> Repair:
    """Technician records parts availability while the repair is still before the parts states."""
    repair = get_repair(db, repair_id)
    if repair.technician_id != actor.id:
        raise ActionForbidden("Only the assigned technician can update parts availability")
    # The sequence depends on this flag, so it may only change before the repair enters it
    updated = conditional_update(
        db,
        repair.id,
        expected={
            "status": (RepairStatus.PENDING.value, RepairStatus.CONFIRMED.value),
            "technician_id": actor.id,
        },
        values={"parts_in_stock": in_stock},
    )
    if updated is None:
        db.rollback()
        db.refresh(repair)
        raise TransitionRejected(
            f"Parts availability is fixed once the repair is {repair.status}", code="stale_status"
        )
    db.commit()
    return updated


def visible_repairs(db: Session, user: User) -> List[Repair]:
    """Technician queue (own jobs plus unclaimed pending), customer dashboard, or everything for admins."""
    query = db.query(Repair)
    if user.role == "technician":
        query = query.filter(
            or_(
                Repair.technician_id == user.id,
                and_(Repair.technician_id.is_(None), Repair.status == RepairStatus.PENDING.value),
            )
        )
    elif user.role != "admin":
        query = query.filter(Repair.customer_id == user.id)
    return query.order_by(Repair.scheduled_date.asc(), Repair.created_at.desc()).all()


def can_view(repair: Repair, user: User) -> bool:
    if participant_role(repair, user) is not None:
        return True
    # Unclaimed jobs are open to every technician so they can be claimed
    return user.role == "technician" and repair.technician_id is None and repair.status == RepairStatus.PENDING.value


def repair_to_dict(repair: Repair) -> Dict[str, Any]:
    """Column values as the change feed carries them, plus the stepper projection."""
    row = change_feed.row_image(repair)
    row["progress"] = progress(repair.status, repair.parts_in_stock)
    return row
