"""
Row-level change feed.

Committed INSERT/UPDATE/DELETE changes on watched tables are published to
in-process subscribers. Events are collected on flush and only published
after the surrounding transaction commits; a rollback discards them.
Callbacks run synchronously on the committing thread, in commit order.
"""
import threading
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional

import structlog
from sqlalchemy import event, inspect
from sqlalchemy.orm import Session

logger = structlog.get_logger(__name__)

INSERT = "INSERT"
UPDATE = "UPDATE"
DELETE = "DELETE"
OPERATIONS = (INSERT, UPDATE, DELETE)

_PENDING_KEY = "change_feed_pending"

Row = Dict[str, Any]
RowPredicate = Callable[[Row], bool]


@dataclass(frozen=True)
class ChangeEvent:
    table: str
    operation: str
    row: Row
    seq: int
    committed_at: datetime = field(default_factory=datetime.utcnow)

    @property
    def row_id(self) -> Optional[str]:
        value = self.row.get("id")
        return str(value) if value is not None else None


def eq(column: str, value: Any) -> RowPredicate:
    """Filter matching rows whose column equals value (compared as strings)."""
    expected = str(value)

    def _match(row: Row) -> bool:
        return column in row and str(row[column]) == expected

    return _match


class Subscription:
    """Cancellation handle returned by ChangeFeed.subscribe."""

    def __init__(self, feed: "ChangeFeed", table: str, callback: Callable[[ChangeEvent], None],
                 where: Optional[RowPredicate] = None, operations=OPERATIONS):
        self._feed = feed
        self.table = table
        self.callback = callback
        self.where = where
        self.operations = tuple(operations)
        self.active = True

    def matches(self, ev: ChangeEvent) -> bool:
        if not self.active or ev.table != self.table or ev.operation not in self.operations:
            return False
        if self.where is None:
            return True
        try:
            return bool(self.where(ev.row))
        except Exception:
            logger.warning("feed_filter_failed", table=self.table, operation=ev.operation)
            return False

    def unsubscribe(self) -> None:
        if self.active:
            self.active = False
            self._feed._remove(self)

    def __enter__(self) -> "Subscription":
        return self

    def __exit__(self, *exc) -> None:
        self.unsubscribe()


class ChangeFeed:
    def __init__(self) -> None:
        self._subs: Dict[str, List[Subscription]] = {}
        self._lock = threading.RLock()
        self._seq = 0

    def subscribe(self, table: str, callback: Callable[[ChangeEvent], None],
                  where: Optional[RowPredicate] = None, operations=OPERATIONS) -> Subscription:
        sub = Subscription(self, table, callback, where, operations)
        with self._lock:
            self._subs.setdefault(table, []).append(sub)
        return sub

    def _remove(self, sub: Subscription) -> None:
        with self._lock:
            subs = self._subs.get(sub.table)
            if subs and sub in subs:
                subs.remove(sub)
                if not subs:
                    self._subs.pop(sub.table, None)

    def subscriber_count(self, table: Optional[str] = None) -> int:
        with self._lock:
            if table is not None:
                return len(self._subs.get(table, []))
            return sum(len(v) for v in self._subs.values())

    def cursor(self) -> int:
        return self._seq

    def publish(self, table: str, operation: str, row: Row) -> ChangeEvent:
        if operation not in OPERATIONS:
            raise ValueError(f"Unknown operation {operation}")
        # Sequence assignment and delivery share the lock so no subscriber
        # sees an older event for a row after a newer one.
        with self._lock:
            self._seq += 1
            ev = ChangeEvent(table=table, operation=operation, row=dict(row), seq=self._seq)
            targets = [s for s in self._subs.get(table, []) if s.matches(ev)]
            for sub in targets:
                try:
                    sub.callback(ev)
                except Exception:
                    # best-effort; one broken subscriber must not block the others
                    logger.exception("feed_callback_failed", table=table, operation=operation, seq=ev.seq)
        return ev

    def reset(self) -> None:
        with self._lock:
            self._subs.clear()


# Global singleton feed
feed = ChangeFeed()

_watched_tables: Dict[str, bool] = {}


def watch(*models) -> None:
    """Register ORM models whose committed changes are published."""
    for model in models:
        _watched_tables[model.__tablename__] = True


def row_image(obj) -> Row:
    state = inspect(obj)
    values = state.dict
    return {attr.key: values.get(attr.key) for attr in state.mapper.column_attrs}


def record(session: Session, operation: str, obj) -> None:
    """Queue a change for publication when `session` commits.

    Used by code paths that write through Core statements (conditional
    updates), which the flush hook does not see.
    """
    session.info.setdefault(_PENDING_KEY, []).append((obj.__tablename__, operation, row_image(obj)))


@event.listens_for(Session, "after_flush")
def _collect(session: Session, flush_context) -> None:
    pending = session.info.setdefault(_PENDING_KEY, [])
    for obj in session.new:
        if getattr(obj, "__tablename__", None) in _watched_tables:
            pending.append((obj.__tablename__, INSERT, row_image(obj)))
    for obj in session.dirty:
        if getattr(obj, "__tablename__", None) in _watched_tables and session.is_modified(obj, include_collections=False):
            pending.append((obj.__tablename__, UPDATE, row_image(obj)))
    for obj in session.deleted:
        if getattr(obj, "__tablename__", None) in _watched_tables:
            pending.append((obj.__tablename__, DELETE, row_image(obj)))


@event.listens_for(Session, "after_commit")
def _publish(session: Session) -> None:
    pending = session.info.pop(_PENDING_KEY, None) or []
    for table, operation, row in pending:
        feed.publish(table, operation, row)


@event.listens_for(Session, "after_rollback")
def _discard(session: Session) -> None:
    session.info.pop(_PENDING_KEY, None)
