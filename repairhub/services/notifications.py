"""
Notification service for repair lifecycle emails.
Dispatch is best-effort: a failed email never undoes or blocks the
transition that triggered it.
"""
from datetime import datetime
from html import escape
from typing import Optional, Dict

import httpx
import structlog
from sqlalchemy.orm import Session

from ..models.models import Notification, Repair, User
from ..config import settings

logger = structlog.get_logger(__name__)

ISSUE_NAMES = {
    "screen": "Screen Replacement",
    "battery": "Battery Replacement",
    "charging": "Charging Port Repair",
    "back-glass": "Back Glass Replacement",
    "camera-rear": "Rear Camera Repair",
    "camera-front": "Front Camera Repair",
    "speaker": "Speaker / Microphone Repair",
    "water-damage": "Water Damage Repair",
    "buttons": "Button Repair",
    "software": "Software Troubleshooting",
}

SUBJECTS = {
    "repair_confirmed": "Your repair is booked",
    "tech_en_route": "Your technician is on the way",
    "tech_arrived": "Your technician has arrived",
    "repair_complete": "Your repair is complete - receipt inside",
}


def format_issues(issues) -> str:
    if not issues:
        return "General Repair"
    return ", ".join(ISSUE_NAMES.get(str(i), str(i)) for i in issues)


def render_email(template_key: str, repair: Repair, customer: User) -> Dict[str, str]:
    """Subject and HTML body for one lifecycle email."""
    subject = SUBJECTS[template_key]
    name = escape(customer.full_name or "there")
    device = escape(repair.device or "your device")
    issues = escape(format_issues(repair.issues))
    link = f"{settings.customer_app_url}/repairs/{repair.id}"
    lines = {
        "repair_confirmed": f"We received your booking for {device} ({issues}).",
        "tech_en_route": "Your technician is driving to you now. Track them live in the app.",
        "tech_arrived": f"Your technician has arrived for your {device} repair.",
        "repair_complete": (
            f"Your {device} repair is done. Total paid: "
            f"${(repair.total_estimate or 0) + (repair.tip_amount or 0):.2f}."
        ),
    }
    html = (
        f"<p>Hi {name},</p>"
        f"<p>{lines[template_key]}</p>"
        f"<p><a href=\"{escape(link)}\">View your repair</a></p>"
    )
    return {"subject": subject, "html": html}


def send_email(to: str, subject: str, html: str) -> Optional[str]:
    """Send through the transactional email API. Returns the provider message id."""
    with httpx.Client(timeout=10.0) as client:
        response = client.post(
            settings.email_api_url,
            headers={"Authorization": f"Bearer {settings.email_api_key}"},
            json={"from": settings.mail_from, "to": [to], "subject": subject, "html": html},
        )
        response.raise_for_status()
        return (response.json() or {}).get("id")


def notify_repair_event(db: Session, repair: Repair, template_key: str) -> Optional[Notification]:
    """
    Record and dispatch a lifecycle email to the repair's customer.

    Args:
        db: Database session (the triggering change must already be committed)
        repair: Repair the event belongs to
        template_key: repair_confirmed|tech_en_route|tech_arrived|repair_complete

    Returns:
        Notification row, or None when nothing could be recorded
    """
    if template_key not in SUBJECTS:
        raise ValueError(f"Unknown notification template {template_key}")
    try:
        customer = db.query(User).filter(User.id == repair.customer_id).first()
        if customer is None:
            return None
        notification = Notification(
            user_id=customer.id,
            repair_id=repair.id,
            channel="email",
            template_key=template_key,
            payload_json={"repair_id": str(repair.id), "status": repair.status},
            status="pending",
        )
        db.add(notification)
        if not settings.enable_email or not customer.notify_email or not settings.email_api_key:
            notification.status = "skipped"
            db.commit()
            return notification
        email = render_email(template_key, repair, customer)
        try:
            provider_id = send_email(customer.email, email["subject"], email["html"])
            notification.status = "sent"
            notification.sent_at = datetime.utcnow()
            notification.payload_json = {**(notification.payload_json or {}), "provider_id": provider_id}
        except httpx.HTTPError as e:
            notification.status = "failed"
            notification.error_message = str(e)[:1000]
            logger.warning("notification_send_failed", repair_id=str(repair.id), template=template_key, error=str(e))
        db.commit()
        return notification
    except Exception:
        db.rollback()
        logger.exception("notification_record_failed", repair_id=str(repair.id), template=template_key)
        return None
