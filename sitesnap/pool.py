"""Bounded pool of render sessions with FIFO admission and engine self-healing."""

from __future__ import annotations

import asyncio
import logging
from collections import deque
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import AsyncIterator, Deque, Dict, Optional

from sitesnap import metrics
from sitesnap.browser import RenderEngine, RenderSession
from sitesnap.errors import PoolShuttingDownError

LOGGER = logging.getLogger(__name__)

_DISCONNECTED = "disconnected"
_STOP = "stop"


@dataclass(slots=True)
class PoolStats:
    """Snapshot used by the health probe."""

    active_sessions: int
    queue_length: int
    ceiling: int
    connected: bool


@dataclass(slots=True)
class _PendingLease:
    future: asyncio.Future[RenderSession]


class RenderSessionPool:
    """Hands out at most ``max_sessions`` sessions; everyone else waits in line.

    A released slot goes straight to the head of the queue without passing
    through the free count, so a fresh ``acquire()`` can never overtake a
    queued caller. Engine disconnects arrive as events on a control queue and
    are handled by a single control-loop task.
    """

    def __init__(
        self,
        engine: RenderEngine,
        *,
        max_sessions: int,
        shutdown_grace_ms: int = 30_000,
    ) -> None:
        if max_sessions < 1:
            raise ValueError("max_sessions must be >= 1")
        self._engine = engine
        self._ceiling = max_sessions
        self._grace_s = max(0, shutdown_grace_ms) / 1000.0
        self._active = 0
        self._queue: Deque[_PendingLease] = deque()
        self._leases: Dict[RenderSession, int] = {}
        self._generation = 0
        self._lock = asyncio.Lock()
        self._engine_lock = asyncio.Lock()
        self._events: asyncio.Queue[str] = asyncio.Queue()
        self._drained = asyncio.Event()
        self._drained.set()
        self._control_task: Optional[asyncio.Task[None]] = None
        self._closing = False
        self._started = False

    @property
    def ceiling(self) -> int:
        return self._ceiling

    @property
    def closing(self) -> bool:
        return self._closing

    async def start(self) -> None:
        """Launch the engine and the control loop; safe to call twice."""

        if self._started:
            return
        self._started = True
        self._engine.on_disconnect(self._notify_disconnect)
        self._control_task = asyncio.create_task(self._control_loop())
        await self._ensure_engine()

    async def acquire(self) -> RenderSession:
        loop = asyncio.get_running_loop()
        async with self._lock:
            if self._closing:
                raise PoolShuttingDownError()
            # Waiters left over from a disconnect are served before any newcomer.
            if self._active < self._ceiling and not self._queue:
                self._active += 1
                generation = self._generation
                pending = None
            else:
                pending = _PendingLease(future=loop.create_future())
                self._queue.append(pending)
                LOGGER.debug(
                    "Session request queued (queue=%d, active=%d)", len(self._queue), self._active
                )
            self._publish()

        if pending is None:
            try:
                return await self._open_session(generation)
            except BaseException:
                await self._free_slot(generation)
                raise

        try:
            return await pending.future
        except asyncio.CancelledError:
            await self._abandon(pending)
            raise

    async def release(self, session: RenderSession) -> None:
        try:
            await session.close()
        except Exception as exc:
            LOGGER.warning("Error closing render session: %s", exc)
        async with self._lock:
            generation = self._leases.pop(session, None)
        if generation is None:
            return
        await self._free_slot(generation)

    @asynccontextmanager
    async def lease(self) -> AsyncIterator[RenderSession]:
        session = await self.acquire()
        try:
            yield session
        finally:
            await self.release(session)

    def stats(self) -> PoolStats:
        return PoolStats(
            active_sessions=self._active,
            queue_length=len(self._queue),
            ceiling=self._ceiling,
            connected=self._engine.is_connected(),
        )

    async def shutdown(self) -> None:
        """Reject queued leases, wait out the grace period, then close the engine."""

        async with self._lock:
            self._closing = True
            rejected = list(self._queue)
            self._queue.clear()
            self._publish()
        for pending in rejected:
            if not pending.future.done():
                pending.future.set_exception(PoolShuttingDownError())
        if rejected:
            LOGGER.info("Rejected %d queued session requests", len(rejected))

        if self._active > 0:
            LOGGER.info("Waiting for %d active sessions to finish", self._active)
            try:
                await asyncio.wait_for(self._drained.wait(), timeout=self._grace_s)
            except asyncio.TimeoutError:
                LOGGER.warning(
                    "Timed out waiting for sessions, force closing engine (active=%d)",
                    self._active,
                )

        if self._control_task is not None:
            self._events.put_nowait(_STOP)
            try:
                await asyncio.wait_for(self._control_task, timeout=5)
            except asyncio.TimeoutError:  # pragma: no cover - relaunch stuck
                self._control_task.cancel()
            self._control_task = None

        try:
            await self._engine.close()
        except Exception as exc:
            LOGGER.error("Error closing render engine: %s", exc)
        LOGGER.info("Render session pool closed")

    def _notify_disconnect(self) -> None:
        self._events.put_nowait(_DISCONNECTED)

    async def _control_loop(self) -> None:
        while True:
            event = await self._events.get()
            if event == _STOP:
                return
            if event == _DISCONNECTED:
                try:
                    await self._handle_disconnect()
                except Exception:  # pragma: no cover - keep the loop alive
                    LOGGER.exception("Render engine recovery failed")

    async def _handle_disconnect(self) -> None:
        async with self._lock:
            invalidated = len(self._leases)
            self._generation += 1
            self._active = 0
            self._leases.clear()
            self._publish()
            closing = self._closing
        LOGGER.warning("Render engine disconnected; invalidated %d sessions", invalidated)
        if closing:
            return
        try:
            await self._ensure_engine()
        except Exception as exc:
            LOGGER.error("Failed to restart render engine: %s", exc)
            await self._reject_queue(exc)
            return
        LOGGER.info("Render engine restarted")
        await self._drain_queue()

    async def _reject_queue(self, exc: BaseException) -> None:
        """Fail every queued lease; no release is coming to wake them."""

        async with self._lock:
            rejected = list(self._queue)
            self._queue.clear()
            self._publish()
        for pending in rejected:
            if not pending.future.done():
                pending.future.set_exception(exc)
        if rejected:
            LOGGER.warning("Rejected %d queued session requests after failed restart", len(rejected))

    async def _ensure_engine(self) -> None:
        async with self._engine_lock:
            if not self._engine.is_connected():
                await self._engine.launch()

    async def _open_session(self, generation: int) -> RenderSession:
        await self._ensure_engine()
        session = await self._engine.new_session()
        async with self._lock:
            self._leases[session] = generation
        return session

    async def _free_slot(self, generation: int) -> None:
        """Return a slot, or hand it directly to the oldest waiter."""

        async with self._lock:
            if generation != self._generation:
                return
            handoff = self._pop_waiter() if not self._closing else None
            if handoff is None:
                self._active -= 1
            self._publish()
        if handoff is not None:
            await self._fulfil(handoff, generation)

    async def _drain_queue(self) -> None:
        grants: list[tuple[_PendingLease, int]] = []
        async with self._lock:
            while self._active < self._ceiling and not self._closing:
                pending = self._pop_waiter()
                if pending is None:
                    break
                self._active += 1
                grants.append((pending, self._generation))
            self._publish()
        for pending, generation in grants:
            await self._fulfil(pending, generation)

    def _pop_waiter(self) -> Optional[_PendingLease]:
        while self._queue:
            pending = self._queue.popleft()
            if not pending.future.done():
                return pending
        return None

    async def _fulfil(self, pending: _PendingLease, generation: int) -> None:
        try:
            session = await self._open_session(generation)
        except Exception as exc:
            if not pending.future.done():
                pending.future.set_exception(exc)
            await self._free_slot(generation)
            return
        if pending.future.done():
            # Waiter gave up while the session was opening.
            await self.release(session)
            return
        pending.future.set_result(session)

    async def _abandon(self, pending: _PendingLease) -> None:
        async with self._lock:
            if pending in self._queue:
                self._queue.remove(pending)
                self._publish()
                return
        future = pending.future
        if future.done() and not future.cancelled() and future.exception() is None:
            await self.release(future.result())

    def _publish(self) -> None:
        if self._active <= 0:
            self._drained.set()
        else:
            self._drained.clear()
        metrics.record_pool_state(active=self._active, queued=len(self._queue))
