"""
Websocket gateway onto the change feed.

Clients subscribe to channels:
  repair:<id>   the repair row, its messages, read cursors and live location
  dashboard     the customer's own repairs
  queue         refresh hints for the technician queue
"""
import asyncio
import json
from typing import Optional

import structlog
from fastapi import APIRouter, HTTPException, WebSocket, WebSocketDisconnect

from ..auth.security import user_from_token
from ..db import SessionLocal
from ..models.models import User
from ..services import lifecycle
from ..services.change_feed import eq
from ..services.errors import RepairError
from ..services.feed_hub import ChannelSpec, hub

logger = structlog.get_logger(__name__)

router = APIRouter(prefix="/realtime", tags=["realtime"])


def channel_spec(channel: str, user: User) -> ChannelSpec:
    """Resolve a channel name to feed subscriptions, checking the user may see it."""
    if channel == "queue":
        if user.role not in ("technician", "admin"):
            raise HTTPException(status_code=403, detail="Forbidden")
        return [("repairs", None, False)]
    if channel == "dashboard":
        return [("repairs", eq("customer_id", user.id), True)]
    if channel.startswith("repair:"):
        repair_id = channel.split(":", 1)[1]
        db = SessionLocal()
        try:
            repair = lifecycle.get_repair(db, repair_id)
            if not lifecycle.can_view(repair, user):
                raise HTTPException(status_code=403, detail="Forbidden")
            rid = str(repair.id)
        finally:
            db.close()
        return [
            ("repairs", eq("id", rid), True),
            ("messages", eq("repair_id", rid), True),
            ("chat_last_read", eq("repair_id", rid), True),
            ("tech_locations", eq("repair_id", rid), True),
        ]
    raise HTTPException(status_code=400, detail=f"Unknown channel {channel}")


def _authenticate(token: Optional[str]) -> Optional[User]:
    if not token:
        return None
    db = SessionLocal()
    try:
        return user_from_token(db, token)
    except HTTPException:
        return None
    finally:
        db.close()


@router.websocket("/ws")
async def ws_feed(websocket: WebSocket, token: Optional[str] = None):
    user = _authenticate(token)
    if user is None:
        await websocket.close(code=4401)
        return

    await websocket.accept()
    conn = await hub.connect(str(user.id), websocket)
    pump = asyncio.create_task(hub.pump(conn))
    try:
        while True:
            data = await websocket.receive_text()
            if data and data.strip().lower() in {"ping", "keepalive"}:
                await websocket.send_text("pong")
                continue
            try:
                msg = json.loads(data)
                action = msg.get("action")
                channel = str(msg.get("channel") or "")
            except (ValueError, AttributeError):
                await websocket.send_json({"event": "error", "data": {"detail": "Invalid message"}})
                continue
            if action == "subscribe":
                try:
                    bindings = channel_spec(channel, user)
                except (HTTPException, RepairError) as e:
                    await websocket.send_json({"event": "error", "data": {"channel": channel, "detail": e.detail}})
                    continue
                hub.subscribe(conn, channel, bindings)
                await websocket.send_json({"event": "subscribed", "data": {"channel": channel}})
            elif action == "unsubscribe":
                hub.unsubscribe(conn, channel)
                await websocket.send_json({"event": "unsubscribed", "data": {"channel": channel}})
            else:
                await websocket.send_json({"event": "error", "data": {"detail": f"Unknown action {action}"}})
    except WebSocketDisconnect:
        pass
    finally:
        pump.cancel()
        await hub.disconnect(conn)
        logger.info("feed_ws_closed", user_id=str(user.id))
