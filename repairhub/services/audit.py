"""
Append-only audit trail for repair and payment actions.

Entries join the caller's transaction, so they commit or roll back together
with the change they describe. Each one carries an HMAC-SHA256 over its
canonical content; verify_audit_log() detects rows edited after the fact.
"""
import hashlib
import hmac
import json
from datetime import datetime
from typing import Any, Dict, List, Optional

from sqlalchemy.orm import Session

from ..config import settings
from ..models.models import AuditLog

HASHED_FIELDS = ("entity_type", "entity_id", "action", "actor_id", "actor_role", "source", "timestamp_utc", "changes", "context")


def _jsonable(value: Optional[Dict[str, Any]]) -> Optional[Dict[str, Any]]:
    # Decimal, UUID and datetime values are stored as strings
    return json.loads(json.dumps(value, default=str)) if value else None


def _canonical(entry: Dict[str, Any]) -> str:
    present = {k: entry[k] for k in HASHED_FIELDS if entry.get(k) is not None}
    return json.dumps(present, sort_keys=True, default=str, separators=(",", ":"))


def _sign(entry: Dict[str, Any], secret: str) -> str:
    return hmac.new(secret.encode(), _canonical(entry).encode(), hashlib.sha256).hexdigest()


def _entry_fields(log: AuditLog) -> Dict[str, Any]:
    return {
        "entity_type": log.entity_type,
        "entity_id": str(log.entity_id),
        "action": log.action,
        "actor_id": str(log.actor_id) if log.actor_id else None,
        "actor_role": log.actor_role,
        "source": log.source,
        "timestamp_utc": log.timestamp_utc.replace(tzinfo=None).isoformat() if log.timestamp_utc else None,
        "changes": log.changes_json,
        "context": log.context,
    }


def create_audit_log(
    db: Session,
    entity_type: str,
    entity_id,
    action: str,
    actor_id=None,
    actor_role: Optional[str] = None,
    source: Optional[str] = None,
    changes_json: Optional[Dict[str, Any]] = None,
    context: Optional[Dict[str, Any]] = None,
) -> AuditLog:
    """
    Add one entry to the current transaction; the caller commits.

    Args:
        entity_type: repair|payment
        action: CREATE|CLAIM|ADVANCE|CANCEL|INTAKE_SIGNATURE|PAYMENT_LINK|PAYMENT|PAYMENT_FAILED|COMPLETE
        actor_role: customer|technician|admin|system
        source: app|webhook (defaults to system)
    """
    log = AuditLog(
        entity_type=entity_type,
        entity_id=entity_id,
        action=action,
        actor_id=actor_id,
        actor_role=actor_role,
        source=source or "system",
        changes_json=_jsonable(changes_json),
        timestamp_utc=datetime.utcnow(),
        context=_jsonable(context),
    )
    log.integrity_hash = _sign(_entry_fields(log), settings.jwt_secret)
    db.add(log)
    return log


def verify_audit_log(log: AuditLog, secret: Optional[str] = None) -> bool:
    if not log.integrity_hash:
        return False
    expected = _sign(_entry_fields(log), secret or settings.jwt_secret)
    return hmac.compare_digest(expected, log.integrity_hash)


def get_audit_logs(
    db: Session,
    entity_type: Optional[str] = None,
    entity_id=None,
    limit: int = 100,
    offset: int = 0,
) -> List[AuditLog]:
    """Newest first."""
    query = db.query(AuditLog)
    if entity_type:
        query = query.filter(AuditLog.entity_type == entity_type)
    if entity_id is not None:
        query = query.filter(AuditLog.entity_id == entity_id)
    return query.order_by(AuditLog.timestamp_utc.desc()).limit(limit).offset(offset).all()
