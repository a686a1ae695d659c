"""
Outbound event sink shared by all sessions.

Two channels with different loss rules:
- proximity events are coalesced per (session, target): only the latest pending
  event is delivered, and when too many targets are pending the oldest is dropped;
- cheat flags go through a bounded queue; producers wait briefly for space and
  raise `EventSinkOverflow` rather than dropping a flag.

A single drain task hands items to forwarders (logging, webhook, in-memory).
"""

from __future__ import annotations

import asyncio
import inspect
import logging
from typing import Any, Protocol, Union

from geohunt.config.settings import SinkSettings
from geohunt.core.http import post_json
from geohunt.domain.errors import EventSinkOverflow
from geohunt.domain.models import CheatFlag, ProximityEvent

logger = logging.getLogger(__name__)

SinkItem = Union[CheatFlag, ProximityEvent]


def envelope(item: SinkItem) -> dict[str, Any]:
    kind = "cheat_flag" if isinstance(item, CheatFlag) else "proximity_event"
    return {"type": kind, "data": item.model_dump(mode="json")}


class Forwarder(Protocol):
    def deliver(self, item: SinkItem) -> Any: ...


class LoggingForwarder:
    def deliver(self, item: SinkItem) -> None:
        if isinstance(item, CheatFlag):
            logger.info("flag %s %s/%s user=%s", item.id, item.reason, item.severity, item.user_id)
        else:
            logger.info(
                "event %s session=%s target=%s at %.1fm",
                item.kind,
                item.session_id,
                item.target_id,
                item.distance_m,
            )


class MemoryForwarder:
    """Keeps delivered items in order; used by the CLI replay and tests."""

    def __init__(self) -> None:
        self.items: list[SinkItem] = []

    def deliver(self, item: SinkItem) -> None:
        self.items.append(item)

    @property
    def events(self) -> list[ProximityEvent]:
        return [i for i in self.items if isinstance(i, ProximityEvent)]

    @property
    def flags(self) -> list[CheatFlag]:
        return [i for i in self.items if isinstance(i, CheatFlag)]


class HttpForwarder:
    """POSTs each item as a JSON envelope to a webhook (rendering bridge, wallet, moderation)."""

    def __init__(self, url: str, *, timeout_seconds: float = 5):
        self.url = url
        self.timeout_seconds = timeout_seconds

    async def deliver(self, item: SinkItem) -> None:
        await asyncio.to_thread(
            post_json, self.url, payload=envelope(item), timeout_seconds=self.timeout_seconds
        )


def build_forwarders(settings: SinkSettings) -> list[Forwarder]:
    forwarders: list[Forwarder] = [LoggingForwarder()]
    if settings.forward_url:
        forwarders.append(HttpForwarder(settings.forward_url, timeout_seconds=settings.forward_timeout_seconds))
    return forwarders


class EventSink:
    def __init__(self, settings: SinkSettings, forwarders: list[Forwarder] | None = None):
        self._settings = settings
        self._forwarders: list[Forwarder] = list(forwarders) if forwarders is not None else []
        self._flags: asyncio.Queue[CheatFlag] = asyncio.Queue(maxsize=settings.flag_queue_size)
        self._pending: dict[tuple[str, str], ProximityEvent] = {}
        self._wakeup = asyncio.Event()
        self._task: asyncio.Task | None = None
        self.coalesced = 0
        self.dropped = 0

    def add_forwarder(self, forwarder: Forwarder) -> None:
        self._forwarders.append(forwarder)

    @property
    def pending_events(self) -> int:
        return len(self._pending)

    @property
    def pending_flags(self) -> int:
        return self._flags.qsize()

    def publish_event(self, event: ProximityEvent) -> None:
        key = (event.session_id, event.target_id)
        if key in self._pending:
            # Only the latest state per target matters to the renderer.
            del self._pending[key]
            self.coalesced += 1
        elif len(self._pending) >= self._settings.max_pending_events:
            oldest_key = next(iter(self._pending))
            dropped = self._pending.pop(oldest_key)
            self.dropped += 1
            logger.warning(
                "Event sink full; dropped %s for session %s target %s",
                dropped.kind,
                dropped.session_id,
                dropped.target_id,
            )
        self._pending[key] = event
        self._wakeup.set()

    async def publish_flag(self, flag: CheatFlag) -> None:
        try:
            await asyncio.wait_for(self._flags.put(flag), timeout=self._settings.flag_put_timeout_seconds)
        except asyncio.TimeoutError as e:
            logger.critical("Cheat flag queue full; could not enqueue flag %s", flag.id)
            raise EventSinkOverflow(f"cheat flag queue full ({self._flags.maxsize})", flag_id=flag.id) from e
        self._wakeup.set()

    async def flush(self) -> int:
        """Deliver everything currently pending; flags first. Returns items delivered."""
        delivered = 0
        while not self._flags.empty():
            flag = self._flags.get_nowait()
            await self._deliver(flag)
            delivered += 1
        events = list(self._pending.values())
        self._pending.clear()
        for event in events:
            await self._deliver(event)
            delivered += 1
        return delivered

    async def _deliver(self, item: SinkItem) -> None:
        for forwarder in self._forwarders:
            try:
                result = forwarder.deliver(item)
                if inspect.isawaitable(result):
                    await result
            except Exception:
                # Flags are already in the ledger; a failed forward is logged, not retried.
                logger.exception("Forwarder %s failed for %s", type(forwarder).__name__, type(item).__name__)

    async def run(self) -> None:
        while True:
            await self._wakeup.wait()
            self._wakeup.clear()
            await self.flush()

    def start(self) -> asyncio.Task:
        if self._task is None or self._task.done():
            self._task = asyncio.create_task(self.run(), name="geohunt-event-sink")
        return self._task

    async def stop(self) -> None:
        task, self._task = self._task, None
        if task is not None:
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
        await self.flush()
