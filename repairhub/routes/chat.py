from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from ..auth.security import get_current_user
from ..db import get_db
from ..models.models import User
from ..schemas.chat import MessageCreate
from ..services import chat


router = APIRouter(prefix="/repairs/{repair_id}/messages", tags=["chat"])


@router.get("")
def list_messages(repair_id: str, limit: int = 200, db: Session = Depends(get_db),
                  me: User = Depends(get_current_user)):
    return [chat.serialize_message(m) for m in chat.list_messages(db, repair_id, me, limit=limit)]


@router.post("")
def send_message(repair_id: str, payload: MessageCreate, db: Session = Depends(get_db),
                 me: User = Depends(get_current_user)):
    msg = chat.send_message(db, repair_id, me, payload.body, client_id=payload.client_id)
    return chat.serialize_message(msg)


@router.post("/read")
def mark_read(repair_id: str, db: Session = Depends(get_db), me: User = Depends(get_current_user)):
    cursor = chat.mark_read(db, repair_id, me)
    return {"repair_id": repair_id, "last_read_at": cursor.last_read_at.isoformat()}


@router.get("/unread_count")
def unread_count(repair_id: str, db: Session = Depends(get_db), me: User = Depends(get_current_user)):
    return {"repair_id": repair_id, "unread": chat.unread_count(db, repair_id, me)}
