"""
Client-side read models over the change feed.

Both apps keep their screens current the same way: subscribe first while
buffering, take a full snapshot, replay the buffer, then apply the live
stream. Detail views merge each event into the row; list views refetch the
whole projection whenever the watched table changes.
"""
import itertools
import threading
from typing import Any, Callable, Dict, List, Optional

import structlog

from ..config import settings
from ..services.change_feed import (
    DELETE,
    ChangeEvent,
    ChangeFeed,
    RowPredicate,
    Subscription,
    eq,
    feed as default_feed,
)
from ..services.errors import FeedDisconnected

logger = structlog.get_logger(__name__)

Row = Dict[str, Any]


class _FeedView:
    """Subscription lifecycle shared by detail and list views."""

    table = "repairs"

    def __init__(self, feed: Optional[ChangeFeed] = None, max_attempts: Optional[int] = None,
                 on_change: Optional[Callable[["_FeedView"], None]] = None) -> None:
        self._feed = feed or default_feed
        self._max_attempts = max_attempts or settings.feed_resubscribe_attempts
        self._on_change = on_change
        self._lock = threading.RLock()
        self._sub: Optional[Subscription] = None
        self._buffer: Optional[List[ChangeEvent]] = None
        self.closed = False
        self.error: Optional[FeedDisconnected] = None

    def _where(self) -> Optional[RowPredicate]:
        return None

    def _snapshot(self) -> None:
        raise NotImplementedError

    def _apply(self, ev: ChangeEvent) -> bool:
        raise NotImplementedError

    def _notify(self) -> None:
        if self._on_change is not None:
            try:
                self._on_change(self)
            except Exception:
                logger.exception("view_listener_failed", view=type(self).__name__)

    def _handle(self, ev: ChangeEvent) -> None:
        with self._lock:
            if self.closed:
                return
            if self._buffer is not None:
                self._buffer.append(ev)
                return
            changed = self._apply(ev)
        if changed:
            self._notify()

    def _connect(self) -> None:
        with self._lock:
            self._buffer = []
        try:
            self._sub = self._feed.subscribe(self.table, self._handle, where=self._where())
            self._snapshot()
        except Exception:
            with self._lock:
                self._buffer = None
            if self._sub is not None:
                self._sub.unsubscribe()
                self._sub = None
            raise
        with self._lock:
            buffered, self._buffer = self._buffer, None
            for ev in buffered:
                self._apply(ev)
        self._notify()

    def open(self) -> "_FeedView":
        """Subscribe and load, retrying like a reconnect."""
        self._reconnect()
        return self

    def handle_disconnect(self) -> None:
        """The feed dropped: resubscribe with a fresh snapshot (no replay of what was missed)."""
        if self.closed:
            return
        if self._sub is not None:
            self._sub.unsubscribe()
            self._sub = None
        self._reconnect()

    def _reconnect(self) -> None:
        last_error: Optional[Exception] = None
        for attempt in range(1, self._max_attempts + 1):
            try:
                self._connect()
                self.error = None
                return
            except Exception as e:
                last_error = e
                logger.warning("feed_resubscribe_failed", view=type(self).__name__, attempt=attempt, error=str(e))
        self.error = FeedDisconnected(
            f"Live updates unavailable after {self._max_attempts} attempts: {last_error}"
        )
        raise self.error

    def close(self) -> None:
        """Stop listening. Writes already in flight are not cancelled."""
        with self._lock:
            self.closed = True
        if self._sub is not None:
            self._sub.unsubscribe()
            self._sub = None

    def __enter__(self):
        return self.open()

    def __exit__(self, *exc) -> None:
        self.close()


class OptimisticEdit:
    """Handle for one in-flight local edit."""

    def __init__(self, view: "RepairDetailView", token: int, fields: Row) -> None:
        self._view = view
        self.token = token
        self.fields = fields

    def settle(self, server_row: Optional[Row] = None) -> None:
        self._view._settle(self.token, server_row)

    def rollback(self) -> None:
        self._view._rollback(self.token)


class RepairDetailView(_FeedView):
    """
    One repair, kept current from the feed.

    Events are shallow patches: fields present overwrite, absent fields are
    kept. Fields with an in-flight optimistic edit show the local value until
    the edit settles or rolls back.
    """

    def __init__(self, repair_id, fetch: Callable[[], Optional[Row]], **kwargs) -> None:
        super().__init__(**kwargs)
        self.repair_id = str(repair_id)
        self._fetch = fetch
        self._server: Row = {}
        self._last_seq = 0
        self._edits: Dict[int, Row] = {}
        self._tokens = itertools.count(1)
        self.deleted = False

    def _where(self) -> RowPredicate:
        return eq("id", self.repair_id)

    def _snapshot(self) -> None:
        row = self._fetch()
        with self._lock:
            self._server = dict(row or {})
            self.deleted = row is None

    def _apply(self, ev: ChangeEvent) -> bool:
        if ev.seq <= self._last_seq:
            return False
        self._last_seq = ev.seq
        if ev.operation == DELETE:
            self.deleted = True
            return True
        self._server.update(ev.row)
        return True

    @property
    def server_state(self) -> Row:
        with self._lock:
            return dict(self._server)

    @property
    def state(self) -> Row:
        with self._lock:
            merged = dict(self._server)
            for fields in self._edits.values():
                merged.update(fields)
            return merged

    def get(self, field: str, default=None):
        return self.state.get(field, default)

    def begin_edit(self, **fields) -> OptimisticEdit:
        with self._lock:
            token = next(self._tokens)
            self._edits[token] = dict(fields)
        self._notify()
        return OptimisticEdit(self, token, fields)

    def _settle(self, token: int, server_row: Optional[Row]) -> None:
        with self._lock:
            fields = self._edits.pop(token, None)
            if fields is None:
                return
            self._server.update(server_row if server_row is not None else fields)
        self._notify()

    def _rollback(self, token: int) -> None:
        with self._lock:
            if self._edits.pop(token, None) is None:
                return
        self._notify()

    def optimistic(self, write: Callable[[], Optional[Row]], **fields) -> Optional[Row]:
        """Show `fields` immediately, run `write`, then settle or roll back."""
        edit = self.begin_edit(**fields)
        try:
            result = write()
        except Exception:
            edit.rollback()
            raise
        edit.settle(result)
        return result

    @property
    def pending_fields(self) -> List[str]:
        with self._lock:
            return sorted({k for fields in self._edits.values() for k in fields})


class RepairListView(_FeedView):
    """A list projection (technician queue, customer dashboard) refetched on any change."""

    def __init__(self, fetch_all: Callable[[], List[Row]], where: Optional[RowPredicate] = None, **kwargs) -> None:
        super().__init__(**kwargs)
        self._fetch_all = fetch_all
        self._filter = where
        self._rows: List[Row] = []
        self._stale = False
        self.fetch_count = 0

    def _where(self) -> Optional[RowPredicate]:
        return self._filter

    def _snapshot(self) -> None:
        rows = self._fetch_all()
        with self._lock:
            self._rows = list(rows)
            self._stale = False
            self.fetch_count += 1

    def _apply(self, ev: ChangeEvent) -> bool:
        # The refetch is deferred to the next read; the event carries no list position
        self._stale = True
        return True

    @property
    def stale(self) -> bool:
        return self._stale

    def refresh(self) -> List[Row]:
        self._snapshot()
        return self.items

    @property
    def items(self) -> List[Row]:
        if self._stale and not self.closed:
            self._snapshot()
        with self._lock:
            return list(self._rows)


def technician_queue_view(fetch_all: Callable[[], List[Row]], **kwargs) -> RepairListView:
    """
    The queue shows the technician's own jobs plus unclaimed pending ones.
    It listens to the whole table: a repair claimed by someone else leaves
    the queue, and that change no longer matches the queue filter.
    """
    return RepairListView(fetch_all, where=None, **kwargs)


def customer_dashboard_view(customer_id, fetch_all: Callable[[], List[Row]], **kwargs) -> RepairListView:
    return RepairListView(fetch_all, where=eq("customer_id", customer_id), **kwargs)
