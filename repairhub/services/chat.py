"""
Per-repair chat between the customer and the assigned technician.
"""
import uuid
from datetime import datetime
from typing import Optional, List, Dict

import structlog
from sqlalchemy import func
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from ..config import settings
from ..models.models import ChatLastRead, Message, Repair, User
from .errors import ActionForbidden, RepairError
from .lifecycle import get_repair, participant_role

logger = structlog.get_logger(__name__)

ROLES = ("customer", "technician")


class InvalidMessage(RepairError):
    status_code = 422
    title = "Unprocessable Entity"
    code = "invalid_message"


def other_role(role: str) -> str:
    return "technician" if role == "customer" else "customer"


def viewer_role(repair: Repair, user: User) -> str:
    """Chat role of a user on a repair; only the two parties may chat."""
    role = participant_role(repair, user)
    if role not in ROLES:
        raise ActionForbidden("Only the customer and the assigned technician can use this chat")
    return role


def validate_body(body: Optional[str]) -> str:
    text = (body or "").strip()
    if not text:
        raise InvalidMessage("Message cannot be empty")
    if len(text) > settings.message_max_length:
        raise InvalidMessage(f"Message is longer than {settings.message_max_length} characters")
    return text


def send_message(db: Session, repair_id, sender: User, body: str, client_id: Optional[str] = None) -> Message:
    """
    Persist a message.

    Idempotent on (repair_id, client_id): a retried send returns the
    message already stored for that correlation id.
    """
    repair = get_repair(db, repair_id)
    role = viewer_role(repair, sender)
    text = validate_body(body)
    client_id = (client_id or str(uuid.uuid4()))[:64]

    existing = (
        db.query(Message)
        .filter(Message.repair_id == repair.id, Message.client_id == client_id)
        .first()
    )
    if existing is not None:
        return existing

    msg = Message(
        repair_id=repair.id,
        client_id=client_id,
        sender_id=sender.id,
        sender_role=role,
        sender_name=sender.full_name,
        body=text,
        created_at=datetime.utcnow(),
    )
    db.add(msg)
    try:
        db.commit()
    except IntegrityError:
        # Concurrent retry of the same send won the insert
        db.rollback()
        existing = (
            db.query(Message)
            .filter(Message.repair_id == repair.id, Message.client_id == client_id)
            .first()
        )
        if existing is None:
            raise
        return existing
    logger.info("chat_message_sent", repair_id=str(repair.id), role=role)
    return msg


def list_messages(db: Session, repair_id, viewer: User, limit: int = 200) -> List[Message]:
    repair = get_repair(db, repair_id)
    viewer_role(repair, viewer)
    return (
        db.query(Message)
        .filter(Message.repair_id == repair.id)
        .order_by(Message.created_at.asc(), Message.id.asc())
        .limit(max(1, min(500, limit)))
        .all()
    )


def mark_read(db: Session, repair_id, viewer: User, at: Optional[datetime] = None) -> ChatLastRead:
    """Upsert the viewer's read cursor. Touches no other row."""
    repair = get_repair(db, repair_id)
    viewer_role(repair, viewer)
    at = at or datetime.utcnow()
    cursor = (
        db.query(ChatLastRead)
        .filter(ChatLastRead.repair_id == repair.id, ChatLastRead.user_id == viewer.id)
        .first()
    )
    if cursor is None:
        cursor = ChatLastRead(repair_id=repair.id, user_id=viewer.id, last_read_at=at)
        db.add(cursor)
    else:
        cursor.last_read_at = at
    try:
        db.commit()
    except IntegrityError:
        db.rollback()
        cursor = (
            db.query(ChatLastRead)
            .filter(ChatLastRead.repair_id == repair.id, ChatLastRead.user_id == viewer.id)
            .first()
        )
        cursor.last_read_at = at
        db.commit()
    return cursor


def last_read_at(db: Session, repair_id: uuid.UUID, user_id: uuid.UUID) -> Optional[datetime]:
    return (
        db.query(ChatLastRead.last_read_at)
        .filter(ChatLastRead.repair_id == repair_id, ChatLastRead.user_id == user_id)
        .scalar()
    )


def unread_count(db: Session, repair_id, viewer: User) -> int:
    """Messages from the other party newer than the viewer's cursor, or all of them without one."""
    repair = get_repair(db, repair_id)
    role = viewer_role(repair, viewer)
    query = db.query(func.count(Message.id)).filter(
        Message.repair_id == repair.id,
        Message.sender_role == other_role(role),
    )
    cursor = last_read_at(db, repair.id, viewer.id)
    if cursor is not None:
        query = query.filter(Message.created_at > cursor)
    return int(query.scalar() or 0)


def unread_counts(db: Session, repairs: List[Repair], viewer: User) -> Dict[str, int]:
    """Unread badge per repair for a queue or dashboard listing."""
    counts: Dict[str, int] = {}
    for repair in repairs:
        if participant_role(repair, viewer) not in ROLES:
            counts[str(repair.id)] = 0
            continue
        counts[str(repair.id)] = unread_count(db, repair.id, viewer)
    return counts


def serialize_message(msg: Message) -> dict:
    return {
        "id": str(msg.id),
        "repair_id": str(msg.repair_id),
        "client_id": msg.client_id,
        "sender_id": str(msg.sender_id),
        "sender_role": msg.sender_role,
        "sender_name": msg.sender_name,
        "body": msg.body,
        "created_at": msg.created_at.isoformat() if msg.created_at else None,
    }
