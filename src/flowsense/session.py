"""Asyncio session actor around a :class:`FlowEngine`.

Sensor callbacks arrive on arbitrary threads (bleak's notification
handlers, HealthKit-style bridges, test threads).  None of them touch the
engine: each ``submit_*`` call hands an event to the owning event loop with
``call_soon_threadsafe`` and a single consumer task applies events in
arrival order.

Two schedulers feed the same recompute entry point through the queue:

  - a periodic tick (every ``tick_interval_sec``, first one after
    ``initial_delay_sec``)
  - a debounce timer re-armed by every accepted heart-rate sample, firing
    ``debounce_sec`` after the last one

Stopping a session cancels both schedulers and the consumer and clears
the engine before its first suspension point, so a ``start()`` that runs
while the cancelled tasks wind down always finds a clean engine.  Events
already in flight carry the generation number of the session that produced
them and are dropped once it is over.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any

from flowsense.engine import FlowEngine
from flowsense.models import SessionSummary

logger = logging.getLogger(__name__)


class SessionError(Exception):
    """Base class for session lifecycle errors."""


class SessionAlreadyActiveError(SessionError):
    def __init__(self) -> None:
        super().__init__("A flow session is already active")


class SessionNotActiveError(SessionError):
    def __init__(self) -> None:
        super().__init__("No flow session is currently active")


# Event kinds
BEAT = "beat"
INTERVAL = "interval"
HEART_RATE = "heart_rate"
SLEEP = "sleep"
SUBSTANCES = "substances"
RECOMPUTE = "recompute"


class FlowSession:
    """Serialises all engine mutation onto one event loop."""

    def __init__(self, engine: FlowEngine) -> None:
        self.engine = engine
        self.config = engine.config
        self._loop: asyncio.AbstractEventLoop | None = None
        self._queue: asyncio.Queue | None = None
        self._consumer: asyncio.Task | None = None
        self._ticker: asyncio.Task | None = None
        self._debounce: asyncio.TimerHandle | None = None
        self._generation = 0
        self.dropped = 0

    @property
    def is_active(self) -> bool:
        return self._consumer is not None

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def start(self, **session_kwargs: Any) -> None:
        """Start a session on the running loop.

        Keyword arguments are passed to :meth:`FlowEngine.start`.
        """
        if self.is_active:
            raise SessionAlreadyActiveError()

        loop = asyncio.get_running_loop()
        self._loop = loop
        self._generation += 1
        self._queue = asyncio.Queue(maxsize=self.config.queue_maxsize)
        self.engine.start(**session_kwargs)

        gen = self._generation
        self._consumer = loop.create_task(self._consume(self._queue))
        self._ticker = loop.create_task(self._tick(gen))
        logger.info("Flow session %d started", gen)

    async def stop(self) -> SessionSummary:
        """Cancel scheduling, clear session state and return the summary."""
        if not self.is_active:
            raise SessionNotActiveError()

        # Invalidate in-flight events before anything else yields
        self._generation += 1
        if self._debounce is not None:
            self._debounce.cancel()
            self._debounce = None

        tasks = [t for t in (self._ticker, self._consumer) if t is not None]
        for task in tasks:
            task.cancel()
        self._ticker = None
        self._consumer = None
        self._queue = None
        summary = self.engine.stop()
        logger.info("Flow session stopped")

        await asyncio.gather(*tasks, return_exceptions=True)
        return summary

    # ------------------------------------------------------------------
    # Producer API (callable from any thread)
    # ------------------------------------------------------------------

    def submit_beat(self, timestamp: float) -> bool:
        return self._submit(BEAT, timestamp)

    def submit_interval(self, rr_ms: float, observed_at: float | None = None) -> bool:
        return self._submit(INTERVAL, rr_ms, observed_at)

    def submit_heart_rate(self, bpm: float, timestamp: float | None = None) -> bool:
        return self._submit(HEART_RATE, bpm, timestamp)

    def submit_sleep_quality(self, score: float) -> bool:
        return self._submit(SLEEP, score)

    def submit_substances(self, levels: dict[str, float]) -> bool:
        return self._submit(SUBSTANCES, dict(levels))

    def request_recompute(self) -> bool:
        return self._submit(RECOMPUTE)

    def _submit(self, kind: str, *args: Any) -> bool:
        """Hand an event to the owning loop; False if no session is running."""
        loop = self._loop
        if not self.is_active or loop is None or loop.is_closed():
            return False
        gen = self._generation
        try:
            running = asyncio.get_running_loop()
        except RuntimeError:
            running = None
        if running is loop:
            self._enqueue(gen, kind, args)
        else:
            try:
                loop.call_soon_threadsafe(self._enqueue, gen, kind, args)
            except RuntimeError:
                # loop closed between the check and the call
                return False
        return True

    def _enqueue(self, gen: int, kind: str, args: tuple) -> None:
        queue = self._queue
        if gen != self._generation or queue is None:
            return
        try:
            queue.put_nowait((kind, args))
        except asyncio.QueueFull:
            self.dropped += 1
            logger.warning("Event queue full, dropping %s event", kind)

    # ------------------------------------------------------------------
    # Consumer and schedulers (event-loop side)
    # ------------------------------------------------------------------

    async def _consume(self, queue: asyncio.Queue) -> None:
        while True:
            kind, args = await queue.get()
            try:
                self._apply(kind, args)
            finally:
                queue.task_done()

    def _apply(self, kind: str, args: tuple) -> None:
        try:
            self._dispatch(kind, args)
        except (TypeError, ValueError) as e:
            logger.warning("Dropping malformed %s event %r: %s", kind, args, e)

    def _dispatch(self, kind: str, args: tuple) -> None:
        engine = self.engine
        if kind == BEAT:
            engine.add_beat(*args)
        elif kind == INTERVAL:
            engine.add_interval(*args)
        elif kind == HEART_RATE:
            if engine.add_heart_rate(*args):
                self._schedule_debounce()
        elif kind == SLEEP:
            engine.set_sleep_quality(*args)
        elif kind == SUBSTANCES:
            engine.set_substances(*args)
        elif kind == RECOMPUTE:
            engine.recompute()
        else:
            logger.warning("Unknown event kind %r", kind)

    def _schedule_debounce(self) -> None:
        if self._loop is None:
            return
        if self._debounce is not None:
            self._debounce.cancel()
        self._debounce = self._loop.call_later(
            self.config.debounce_sec,
            self._enqueue,
            self._generation,
            RECOMPUTE,
            (),
        )

    async def _tick(self, gen: int) -> None:
        await asyncio.sleep(self.config.initial_delay_sec)
        while True:
            self._enqueue(gen, RECOMPUTE, ())
            await asyncio.sleep(self.config.tick_interval_sec)

    async def drain(self) -> None:
        """Wait until every queued event has been applied."""
        if self._queue is not None:
            await self._queue.join()
