import uuid
from datetime import date, datetime
from decimal import Decimal
from typing import Optional

from sqlalchemy import (
    String,
    DateTime,
    Date,
    Boolean,
    ForeignKey,
    Float,
    Numeric,
    JSON,
    UniqueConstraint,
    Text,
    Index,
)
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import Mapped, mapped_column

from ..db import Base


def uuid_pk() -> Mapped[uuid.UUID]:
    return mapped_column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)


def money(default: Optional[str] = "0.00", nullable: bool = False):
    return mapped_column(Numeric(10, 2), default=Decimal(default) if default is not None else None, nullable=nullable)


class User(Base):
    """Local projection of an identity-provider account."""
    __tablename__ = "users"

    id: Mapped[uuid.UUID] = uuid_pk()
    email: Mapped[str] = mapped_column(String(255), unique=True, nullable=False, index=True)
    full_name: Mapped[Optional[str]] = mapped_column(String(255))
    phone: Mapped[Optional[str]] = mapped_column(String(50))
    role: Mapped[str] = mapped_column(String(20), nullable=False, default="customer")  # customer|technician|admin
    password_hash: Mapped[str] = mapped_column(String(255), nullable=False)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True)
    notify_email: Mapped[bool] = mapped_column(Boolean, default=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=datetime.utcnow)
    last_login_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))


# =====================
# Repair domain
# =====================


class Repair(Base):
    __tablename__ = "repairs"

    id: Mapped[uuid.UUID] = uuid_pk()
    customer_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), ForeignKey("users.id", ondelete="RESTRICT"), nullable=False, index=True
    )
    technician_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        UUID(as_uuid=True), ForeignKey("users.id", ondelete="SET NULL"), index=True
    )

    device: Mapped[str] = mapped_column(String(120), nullable=False)
    issues: Mapped[list] = mapped_column(JSON, default=list)  # issue ids, e.g. ["screen", "battery"]
    parts_tier: Mapped[Optional[dict]] = mapped_column(JSON)  # {issue_id: economy|premium|genuine}
    scheduled_date: Mapped[Optional[date]] = mapped_column(Date)
    time_slot: Mapped[Optional[str]] = mapped_column(String(50))
    address: Mapped[Optional[str]] = mapped_column(String(500))
    customer_lat: Mapped[Optional[float]] = mapped_column(Float)
    customer_lng: Mapped[Optional[float]] = mapped_column(Float)
    notes: Mapped[Optional[str]] = mapped_column(Text)

    status: Mapped[str] = mapped_column(String(32), nullable=False, default="pending", index=True)
    parts_in_stock: Mapped[Optional[bool]] = mapped_column(Boolean, nullable=True)  # None = unknown (legacy rows)

    # Money
    service_fee: Mapped[Decimal] = money()
    labor_fee: Mapped[Decimal] = money()
    parts_total: Mapped[Decimal] = money()
    tax_amount: Mapped[Decimal] = money()
    total_estimate: Mapped[Decimal] = money()  # Pre-tip total
    tip_amount: Mapped[Decimal] = money()
    payment_method: Mapped[Optional[str]] = mapped_column(String(20))  # cash|hosted_link|nfc|split
    payment_status: Mapped[str] = mapped_column(String(20), default="unpaid", nullable=False)  # unpaid|pending|completed|failed
    split_cash_amount: Mapped[Optional[Decimal]] = money(default=None, nullable=True)
    cash_received: Mapped[Optional[Decimal]] = money(default=None, nullable=True)
    payment_reference: Mapped[Optional[str]] = mapped_column(String(255))

    # Signatures (storage keys)
    intake_signature_path: Mapped[Optional[str]] = mapped_column(String(1024))
    completion_signature_path: Mapped[Optional[str]] = mapped_column(String(1024))

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=datetime.utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=datetime.utcnow)
    paid_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    completed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    cancelled_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))

    __table_args__ = (
        Index("idx_repairs_queue", "technician_id", "status"),
    )


class Message(Base):
    __tablename__ = "messages"

    id: Mapped[uuid.UUID] = uuid_pk()
    repair_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), ForeignKey("repairs.id", ondelete="CASCADE"), nullable=False, index=True
    )
    client_id: Mapped[str] = mapped_column(String(64), nullable=False)  # Client-generated correlation id
    sender_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True
    )
    sender_role: Mapped[str] = mapped_column(String(20), nullable=False)  # customer|technician
    sender_name: Mapped[Optional[str]] = mapped_column(String(255))
    body: Mapped[str] = mapped_column(String(1000), nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=datetime.utcnow, index=True)

    __table_args__ = (UniqueConstraint("repair_id", "client_id", name="uq_message_client_id"),)


class ChatLastRead(Base):
    __tablename__ = "chat_last_read"

    id: Mapped[uuid.UUID] = uuid_pk()
    repair_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), ForeignKey("repairs.id", ondelete="CASCADE"), nullable=False, index=True
    )
    user_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True
    )
    last_read_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=datetime.utcnow, nullable=False)

    __table_args__ = (UniqueConstraint("repair_id", "user_id", name="uq_chat_last_read"),)


class TechLocation(Base):
    """Live technician position; at most one row per repair."""
    __tablename__ = "tech_locations"

    id: Mapped[uuid.UUID] = uuid_pk()
    repair_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), ForeignKey("repairs.id", ondelete="CASCADE"), nullable=False, unique=True, index=True
    )
    technician_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True
    )
    latitude: Mapped[float] = mapped_column(Float, nullable=False)
    longitude: Mapped[float] = mapped_column(Float, nullable=False)
    heading: Mapped[Optional[float]] = mapped_column(Float)
    speed: Mapped[Optional[float]] = mapped_column(Float)
    accuracy: Mapped[Optional[float]] = mapped_column(Float)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=datetime.utcnow, nullable=False)


class AuditLog(Base):
    """Append-only audit log for repair lifecycle actions"""
    __tablename__ = "audit_logs"

    id: Mapped[uuid.UUID] = uuid_pk()
    entity_type: Mapped[str] = mapped_column(String(50), nullable=False, index=True)  # repair|payment|message
    entity_id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), nullable=False, index=True)
    action: Mapped[str] = mapped_column(String(50), nullable=False)  # CREATE|CLAIM|ADVANCE|CANCEL|PAYMENT|COMPLETE
    actor_id: Mapped[Optional[uuid.UUID]] = mapped_column(UUID(as_uuid=True), ForeignKey("users.id", ondelete="SET NULL"), index=True)
    actor_role: Mapped[Optional[str]] = mapped_column(String(50))  # customer|technician|admin|system
    source: Mapped[Optional[str]] = mapped_column(String(50))  # app|webhook|system
    changes_json: Mapped[Optional[dict]] = mapped_column(JSON)  # Before/after diff
    timestamp_utc: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=datetime.utcnow, nullable=False, index=True)
    context: Mapped[Optional[dict]] = mapped_column(JSON)
    integrity_hash: Mapped[Optional[str]] = mapped_column(String(64))  # SHA256 hash for integrity verification

    __table_args__ = (
        Index("idx_audit_entity", "entity_type", "entity_id"),
    )


class Notification(Base):
    """Outbound email records"""
    __tablename__ = "notifications"

    id: Mapped[uuid.UUID] = uuid_pk()
    user_id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)
    repair_id: Mapped[Optional[uuid.UUID]] = mapped_column(UUID(as_uuid=True), ForeignKey("repairs.id", ondelete="CASCADE"), index=True)
    channel: Mapped[str] = mapped_column(String(20), nullable=False, default="email")
    template_key: Mapped[Optional[str]] = mapped_column(String(100))  # repair_confirmed|tech_en_route|tech_arrived|repair_complete
    payload_json: Mapped[Optional[dict]] = mapped_column(JSON)
    sent_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    status: Mapped[str] = mapped_column(String(20), default="pending")  # pending|sent|failed|skipped
    error_message: Mapped[Optional[str]] = mapped_column(Text)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=datetime.utcnow)

    __table_args__ = (
        Index("idx_notifications_repair_template", "repair_id", "template_key"),
    )


# Committed changes on these tables are pushed to change feed subscribers
from ..services.change_feed import watch  # noqa: E402

watch(Repair, Message, ChatLastRead, TechLocation)
