"""
Chat thread model for one repair.

Outgoing messages appear immediately as Pending entries keyed by a local
id that doubles as the message's client_id. The server's row (from the
send response or the feed echo, whichever comes first) turns the entry
into a Confirmed one in place, so a message is never shown twice.
"""
import threading
import uuid
from dataclasses import dataclass
from datetime import datetime
from html import escape
from typing import Any, Callable, Dict, List, Optional, Union

import structlog

from ..config import settings
from ..services.change_feed import INSERT, ChangeEvent, ChangeFeed, Subscription, eq, feed as default_feed

logger = structlog.get_logger(__name__)

Row = Dict[str, Any]


@dataclass(frozen=True)
class Pending:
    local_id: str


@dataclass(frozen=True)
class Confirmed:
    server_id: str


@dataclass(frozen=True)
class ThreadEntry:
    ref: Union[Pending, Confirmed]
    client_id: str
    body: str
    sender_role: str
    sender_id: Optional[str]
    sender_name: Optional[str]
    created_at: Optional[datetime]

    @property
    def pending(self) -> bool:
        return isinstance(self.ref, Pending)


def render_body(body: str) -> str:
    """Message bodies are stored raw; escape for display."""
    return escape(body or "", quote=True)


def _as_datetime(value) -> Optional[datetime]:
    if value is None or isinstance(value, datetime):
        return value
    return datetime.fromisoformat(str(value).replace("Z", "+00:00")).replace(tzinfo=None)


def _entry_from_row(row: Row) -> ThreadEntry:
    return ThreadEntry(
        ref=Confirmed(str(row["id"])),
        client_id=str(row.get("client_id") or row["id"]),
        body=row.get("body") or "",
        sender_role=row.get("sender_role") or "",
        sender_id=str(row["sender_id"]) if row.get("sender_id") else None,
        sender_name=row.get("sender_name"),
        created_at=_as_datetime(row.get("created_at")),
    )


class ChatThread:
    def __init__(
        self,
        repair_id,
        viewer_role: str,
        send: Callable[[str, str], Row],
        fetch: Callable[[], List[Row]],
        mark_read: Optional[Callable[[], Any]] = None,
        viewer_id: Optional[str] = None,
        feed: Optional[ChangeFeed] = None,
    ) -> None:
        self.repair_id = str(repair_id)
        self.viewer_role = viewer_role
        self.viewer_id = viewer_id
        self._send = send
        self._fetch = fetch
        self._mark_read = mark_read
        self._feed = feed or default_feed
        self._lock = threading.RLock()
        self._sub: Optional[Subscription] = None
        self._buffer: Optional[List[ChangeEvent]] = None
        self.entries: List[ThreadEntry] = []
        self.compose = ""
        self.error: Optional[str] = None
        self.last_read_at: Optional[datetime] = None

    @property
    def other_role(self) -> str:
        return "technician" if self.viewer_role == "customer" else "customer"

    def open(self) -> "ChatThread":
        with self._lock:
            self._buffer = []
        self._sub = self._feed.subscribe(
            "messages", self._on_event, where=eq("repair_id", self.repair_id), operations=(INSERT,)
        )
        rows = self._fetch()
        with self._lock:
            self.entries = []
            for row in rows:
                self._reconcile(row)
            buffered, self._buffer = self._buffer, None
            for ev in buffered:
                self._reconcile(ev.row)
        self.mark_read()
        return self

    def close(self) -> None:
        if self._sub is not None:
            self._sub.unsubscribe()
            self._sub = None

    def mark_read(self) -> None:
        """Advance the viewer's own cursor; the other party's is untouched."""
        if self._mark_read is None:
            self.last_read_at = datetime.utcnow()
            return
        result = self._mark_read()
        self.last_read_at = _as_datetime(result) or datetime.utcnow()

    def _on_event(self, ev: ChangeEvent) -> None:
        with self._lock:
            if self._buffer is not None:
                self._buffer.append(ev)
                return
            entry = self._reconcile(ev.row)
        # Messages arriving while the thread is open are read on arrival
        if entry.sender_role == self.other_role and self._sub is not None:
            try:
                self.mark_read()
            except Exception as e:
                logger.warning("chat_mark_read_failed", repair_id=self.repair_id, error=str(e))

    def _reconcile(self, row: Row) -> ThreadEntry:
        confirmed = _entry_from_row(row)
        with self._lock:
            for i, entry in enumerate(self.entries):
                same_server = isinstance(entry.ref, Confirmed) and entry.ref.server_id == confirmed.ref.server_id
                if same_server or entry.client_id == confirmed.client_id:
                    self.entries[i] = confirmed
                    break
            else:
                self.entries.append(confirmed)
            self.entries.sort(key=lambda e: (e.pending, e.created_at or datetime.max))
            return confirmed

    def send(self, text: Optional[str] = None) -> bool:
        """
        Optimistically append and persist a message.

        On failure the pending entry is removed and the compose box gets the
        text back; returns False with `error` set. A failed response whose row
        already arrived through the feed counts as sent.
        """
        raw = self.compose if text is None else text
        body = (raw or "").strip()
        if not body or len(body) > settings.message_max_length:
            self.error = "Message must be 1-%d characters" % settings.message_max_length
            return False
        local_id = str(uuid.uuid4())
        entry = ThreadEntry(
            ref=Pending(local_id),
            client_id=local_id,
            body=body,
            sender_role=self.viewer_role,
            sender_id=self.viewer_id,
            sender_name=None,
            created_at=None,
        )
        with self._lock:
            self.entries.append(entry)
            self.compose = ""
            self.error = None
        try:
            row = self._send(body, local_id)
        except Exception as e:
            logger.warning("chat_send_failed", repair_id=self.repair_id, error=str(e))
            with self._lock:
                self.entries = [x for x in self.entries if x.ref != Pending(local_id)]
                # The feed already delivered the stored row, so the send went through
                if any(x.client_id == local_id for x in self.entries):
                    return True
                self.compose = raw
                self.error = str(e) or "Message could not be sent"
            return False
        if row:
            self._reconcile(row)
        return True

    def unread_count(self) -> int:
        with self._lock:
            return sum(
                1
                for e in self.entries
                if not e.pending
                and e.sender_role == self.other_role
                and (self.last_read_at is None or (e.created_at is not None and e.created_at > self.last_read_at))
            )

    def rendered(self) -> List[Dict[str, Any]]:
        with self._lock:
            return [
                {
                    "key": e.ref.local_id if e.pending else e.ref.server_id,
                    "pending": e.pending,
                    "mine": e.sender_role == self.viewer_role,
                    "html": render_body(e.body),
                }
                for e in self.entries
            ]

    def __enter__(self) -> "ChatThread":
        return self.open()

    def __exit__(self, *exc) -> None:
        self.close()