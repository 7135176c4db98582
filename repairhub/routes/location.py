from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from ..auth.security import get_current_user, require_roles
from ..db import get_db
from ..models.models import User
from ..schemas.chat import LocationUpdate
from ..services import location
from ..services.lifecycle import get_repair


router = APIRouter(prefix="/repairs/{repair_id}/location", tags=["location"])


@router.put("")
def publish_location(repair_id: str, payload: LocationUpdate, db: Session = Depends(get_db),
                     user: User = Depends(require_roles("technician"))):
    row = location.upsert_location(
        db,
        repair_id,
        user,
        payload.latitude,
        payload.longitude,
        heading=payload.heading,
        speed=payload.speed,
        accuracy=payload.accuracy,
    )
    return {"ok": True, "updated_at": row.updated_at.isoformat()}


@router.get("")
def get_location(repair_id: str, db: Session = Depends(get_db), user: User = Depends(get_current_user)):
    row = location.get_location(db, repair_id, user)
    return location.describe(row, get_repair(db, repair_id))


@router.delete("")
def stop_sharing(repair_id: str, db: Session = Depends(get_db),
                 user: User = Depends(require_roles("technician"))):
    return {"ok": True, "removed": location.stop_sharing(db, repair_id, user)}
