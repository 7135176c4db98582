"""
Live technician location during the en-route phase.
One row per repair, overwritten on each publish.
"""
from datetime import datetime
from typing import Optional, Dict, Any

import structlog
from sqlalchemy.orm import Session

from ..models.models import Repair, TechLocation, User
from .errors import ActionForbidden, TransitionRejected
from .geofence import distance_and_eta, is_low_accuracy
from .lifecycle import get_repair, require_participant
from .repair_state import RepairStatus

logger = structlog.get_logger(__name__)


def upsert_location(
    db: Session,
    repair_id,
    technician: User,
    latitude: float,
    longitude: float,
    heading: Optional[float] = None,
    speed: Optional[float] = None,
    accuracy: Optional[float] = None,
) -> TechLocation:
    """Accepted only while the repair is EN_ROUTE and the caller is its technician."""
    repair = get_repair(db, repair_id)
    if not (-90 <= latitude <= 90 and -180 <= longitude <= 180):
        raise TransitionRejected("Coordinates out of range", code="invalid_coordinates")
    # Row lock on the en-route repair. Status changes update the same row and
    # delete the location after it, so they serialize behind this commit.
    locked = (
        db.query(Repair.id)
        .filter(
            Repair.id == repair.id,
            Repair.status == RepairStatus.EN_ROUTE.value,
            Repair.technician_id == technician.id,
        )
        .with_for_update()
        .first()
    )
    if locked is None:
        db.rollback()
        db.refresh(repair)
        if repair.technician_id != technician.id:
            raise ActionForbidden("Only the assigned technician can share location for this repair")
        raise TransitionRejected("Location is only shared while en route", code="not_en_route")

    row = db.query(TechLocation).filter(TechLocation.repair_id == repair.id).first()
    if row is None:
        row = TechLocation(repair_id=repair.id, technician_id=technician.id)
        db.add(row)
    row.latitude = latitude
    row.longitude = longitude
    row.heading = heading
    row.speed = speed
    row.accuracy = accuracy
    row.updated_at = datetime.utcnow()
    db.commit()
    if is_low_accuracy(accuracy):
        logger.info("location_low_accuracy", repair_id=str(repair.id), accuracy=accuracy)
    return row


def get_location(db: Session, repair_id, viewer: User) -> Optional[TechLocation]:
    repair = get_repair(db, repair_id)
    require_participant(repair, viewer)
    return db.query(TechLocation).filter(TechLocation.repair_id == repair.id).first()


def stop_sharing(db: Session, repair_id, technician: User) -> bool:
    repair = get_repair(db, repair_id)
    if repair.technician_id != technician.id:
        raise ActionForbidden("Only the assigned technician can stop sharing")
    deleted = db.query(TechLocation).filter(TechLocation.repair_id == repair.id).all()
    for row in deleted:
        db.delete(row)
    db.commit()
    return bool(deleted)


def teardown_for_technician(db: Session, technician_id) -> int:
    """Remove every live position a technician is publishing, e.g. on sign-out."""
    rows = db.query(TechLocation).filter(TechLocation.technician_id == technician_id).all()
    for row in rows:
        db.delete(row)
    db.commit()
    if rows:
        logger.info("location_teardown", technician_id=str(technician_id), count=len(rows))
    return len(rows)


def describe(location: Optional[TechLocation], repair: Repair) -> Dict[str, Any]:
    """Position plus distance and ETA to the customer for the customer view."""
    if location is None:
        return {"sharing": False, "repair_id": str(repair.id)}
    miles, eta = distance_and_eta(location.latitude, location.longitude, repair.customer_lat, repair.customer_lng)
    return {
        "sharing": True,
        "repair_id": str(repair.id),
        "latitude": location.latitude,
        "longitude": location.longitude,
        "heading": location.heading,
        "speed": location.speed,
        "accuracy": location.accuracy,
        "low_accuracy": is_low_accuracy(location.accuracy),
        "updated_at": location.updated_at.isoformat() if location.updated_at else None,
        "distance_miles": miles,
        "eta_minutes": eta,
    }
