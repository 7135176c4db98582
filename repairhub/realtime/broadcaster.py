"""
Location broadcast while a technician is en route, and the customer-side watch.
"""
import asyncio
import enum
import threading
from typing import Any, Awaitable, Callable, Dict, Optional

import structlog

from ..config import settings
from ..services.change_feed import DELETE, ChangeEvent, ChangeFeed, Subscription, eq, feed as default_feed
from ..services.errors import LocationPermissionDenied
from ..services.geofence import distance_and_eta, is_low_accuracy

logger = structlog.get_logger(__name__)

Sample = Dict[str, Any]


class Permission(str, enum.Enum):
    PROMPT = "prompt"
    GRANTED = "granted"
    DENIED = "denied"


class LocationBroadcaster:
    """
    Publishes the technician's position for one repair.

    Samples only replace the buffered latest one; a timer flushes every
    `interval` seconds, and the first sample after start is flushed
    immediately so the customer sees a position without waiting a tick.
    """

    def __init__(
        self,
        repair_id,
        publish: Callable[[Sample], Awaitable[Any]],
        request_permission: Callable[[], Awaitable[bool]],
        teardown: Optional[Callable[[], Awaitable[Any]]] = None,
        interval: Optional[float] = None,
    ) -> None:
        self.repair_id = str(repair_id)
        self._publish = publish
        self._request_permission = request_permission
        self._teardown = teardown
        self.interval = interval or settings.location_publish_interval_s
        self.permission = Permission.PROMPT
        self.error: Optional[LocationPermissionDenied] = None
        self._latest: Optional[Sample] = None
        self._first_sent = False
        self._wake: Optional[asyncio.Event] = None
        self._task: Optional[asyncio.Task] = None
        self.published = 0

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    @property
    def sharing_unavailable(self) -> bool:
        return self.permission == Permission.DENIED

    async def start(self) -> bool:
        """Ask for permission and begin publishing. Denial never blocks the repair's progress."""
        if self.running:
            return True
        try:
            granted = await self._request_permission()
        except Exception as e:
            logger.warning("location_permission_error", repair_id=self.repair_id, error=str(e))
            granted = False
        if not granted:
            self.permission = Permission.DENIED
            self.error = LocationPermissionDenied("Location sharing is unavailable; enable it to let the customer track you")
            return False
        self.permission = Permission.GRANTED
        self.error = None
        self._latest = None
        self._first_sent = False
        self._wake = asyncio.Event()
        self._task = asyncio.create_task(self._run())
        return True

    async def retry(self) -> bool:
        return await self.start()

    def add_sample(self, latitude: float, longitude: float, heading: Optional[float] = None,
                   speed: Optional[float] = None, accuracy: Optional[float] = None) -> None:
        if not self.running:
            return
        self._latest = {
            "latitude": latitude,
            "longitude": longitude,
            "heading": heading,
            "speed": speed,
            "accuracy": accuracy,
        }
        if not self._first_sent and self._wake is not None:
            self._wake.set()

    async def flush(self) -> bool:
        sample, self._latest = self._latest, None
        if sample is None:
            return False
        try:
            await self._publish(sample)
        except Exception as e:
            # Keep the latest position for the next tick unless a newer one arrived
            if self._latest is None:
                self._latest = sample
            logger.warning("location_push_failed", repair_id=self.repair_id, error=str(e))
            return False
        self._first_sent = True
        self.published += 1
        return True

    async def _run(self) -> None:
        try:
            await self._wake.wait()
            await self.flush()
            while True:
                await asyncio.sleep(self.interval)
                await self.flush()
        except asyncio.CancelledError:
            pass

    async def stop(self) -> None:
        """Stop publishing and remove the shared position."""
        task, self._task = self._task, None
        if task is not None:
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
        self._latest = None
        if self._teardown is not None:
            try:
                await self._teardown()
            except Exception as e:
                logger.warning("location_teardown_failed", repair_id=self.repair_id, error=str(e))

    async def follow_status(self, status: str) -> None:
        """Run exactly while the repair is en route."""
        if status == "en_route":
            if not self.running and self.permission != Permission.DENIED:
                await self.start()
        elif self.running:
            await self.stop()


class LocationWatch:
    """Customer side: the technician's single location row and the ETA derived from it."""

    def __init__(
        self,
        repair_id,
        fetch: Callable[[], Optional[Dict[str, Any]]],
        customer_lat: Optional[float] = None,
        customer_lng: Optional[float] = None,
        feed: Optional[ChangeFeed] = None,
        on_change: Optional[Callable[["LocationWatch"], None]] = None,
    ) -> None:
        self.repair_id = str(repair_id)
        self._fetch = fetch
        self.customer_lat = customer_lat
        self.customer_lng = customer_lng
        self._feed = feed or default_feed
        self._on_change = on_change
        self._lock = threading.RLock()
        self._sub: Optional[Subscription] = None
        self.location: Optional[Dict[str, Any]] = None

    def open(self) -> "LocationWatch":
        self._sub = self._feed.subscribe("tech_locations", self._on_event, where=eq("repair_id", self.repair_id))
        row = self._fetch()
        with self._lock:
            if self.location is None and row:
                self.location = dict(row)
        return self

    def _on_event(self, ev: ChangeEvent) -> None:
        with self._lock:
            self.location = None if ev.operation == DELETE else dict(ev.row)
        if self._on_change is not None:
            self._on_change(self)

    @property
    def sharing(self) -> bool:
        return self.location is not None

    def eta(self) -> Dict[str, Any]:
        with self._lock:
            loc = self.location
        if loc is None:
            return {"sharing": False, "distance_miles": None, "eta_minutes": None}
        miles, minutes = distance_and_eta(loc["latitude"], loc["longitude"], self.customer_lat, self.customer_lng)
        return {
            "sharing": True,
            "distance_miles": miles,
            "eta_minutes": minutes,
            "low_accuracy": is_low_accuracy(loc.get("accuracy")),
        }

    def close(self) -> None:
        if self._sub is not None:
            self._sub.unsubscribe()
            self._sub = None
