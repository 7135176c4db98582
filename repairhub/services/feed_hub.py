import asyncio
from typing import Dict, Set, List, Tuple, Optional, Callable

import structlog
from fastapi import WebSocket
from fastapi.encoders import jsonable_encoder

from .change_feed import ChangeEvent, ChangeFeed, RowPredicate, Subscription, feed as default_feed

logger = structlog.get_logger(__name__)

QUEUE_MAXSIZE = 1000

# (table, filter, forward row data) per subscription of a channel
ChannelSpec = List[Tuple[str, Optional[RowPredicate], bool]]


class FeedConnection:
    """One websocket client: its channel subscriptions and outbound queue."""

    def __init__(self, user_id: str, ws: WebSocket, loop: asyncio.AbstractEventLoop) -> None:
        self.user_id = user_id
        self.ws = ws
        self.loop = loop
        self.queue: asyncio.Queue = asyncio.Queue(maxsize=QUEUE_MAXSIZE)
        self.channels: Dict[str, List[Subscription]] = {}

    def _enqueue(self, data: dict) -> None:
        try:
            self.queue.put_nowait(data)
        except asyncio.QueueFull:
            # client fell behind; it must resubscribe and take a fresh snapshot
            logger.warning("feed_queue_overflow", user_id=self.user_id)
            while not self.queue.empty():
                self.queue.get_nowait()
            self.queue.put_nowait({"event": "resync", "data": {}})

    def deliver(self, channel: str, ev: ChangeEvent, with_row: bool) -> None:
        """Called on the committing thread; hands the event to the connection's loop."""
        if with_row:
            payload = {
                "event": "change",
                "channel": channel,
                "data": {
                    "table": ev.table,
                    "operation": ev.operation,
                    "row": jsonable_encoder(ev.row),
                    "seq": ev.seq,
                },
            }
        else:
            payload = {"event": "refresh", "channel": channel, "data": {"table": ev.table, "seq": ev.seq}}
        try:
            self.loop.call_soon_threadsafe(self._enqueue, payload)
        except RuntimeError:
            # loop already closed; the connection is going away
            pass


class FeedHub:
    def __init__(self, change_feed: Optional[ChangeFeed] = None) -> None:
        self._feed = change_feed or default_feed
        # user_id (str) -> set of connections
        self._user_connections: Dict[str, Set[FeedConnection]] = {}
        self._lock = asyncio.Lock()

    async def connect(self, user_id: str, ws: WebSocket) -> FeedConnection:
        conn = FeedConnection(user_id, ws, asyncio.get_running_loop())
        async with self._lock:
            self._user_connections.setdefault(user_id, set()).add(conn)
        return conn

    async def disconnect(self, conn: FeedConnection) -> None:
        for channel in list(conn.channels):
            self.unsubscribe(conn, channel)
        async with self._lock:
            conns = self._user_connections.get(conn.user_id)
            if conns is not None:
                conns.discard(conn)
                if not conns:
                    self._user_connections.pop(conn.user_id, None)

    def subscribe(self, conn: FeedConnection, channel: str, bindings: ChannelSpec) -> None:
        if channel in conn.channels:
            return
        subs = []
        for table, where, with_row in bindings:
            callback: Callable[[ChangeEvent], None] = (
                lambda ev, _c=channel, _r=with_row: conn.deliver(_c, ev, _r)
            )
            subs.append(self._feed.subscribe(table, callback, where=where))
        conn.channels[channel] = subs

    def unsubscribe(self, conn: FeedConnection, channel: str) -> None:
        for sub in conn.channels.pop(channel, []):
            sub.unsubscribe()

    async def pump(self, conn: FeedConnection) -> None:
        """Forward queued events to the socket until it fails or the task is cancelled."""
        while True:
            data = await conn.queue.get()
            await conn.ws.send_json(data)


# Global singleton hub
hub = FeedHub()
