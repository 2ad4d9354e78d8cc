"""
Heartbeat scheduler. Keeps an authenticated session alive.

Every interval a ``PING`` with a fresh nonce goes out; the matching ``PONG``
has to be seen before the next tick, either as the direct reply to the ping
or in a mailbox batch. When the ping is only acked, the scheduler drains the
mailbox itself; envelopes other than pongs stay with the client for the next
``fetch_messages()``. A pong for an earlier, already failed ping is stale and
ignored. A missing pong, or one with an unknown nonce, is a liveness failure:
it is logged, handed to ``on_failure``, and under ``HeartbeatPolicy.CLOSE``
the session is closed.
"""

from __future__ import annotations

import asyncio
import logging
import uuid
from collections import deque
from enum import Enum
from typing import TYPE_CHECKING, Any, Callable, Optional

from uju.errors import HeartbeatTimeout, InvalidStateError, ProtocolViolation, UjuError

if TYPE_CHECKING:
    from uju.client import AsyncSessionClient

logger = logging.getLogger(__name__)

# Earlier nonces remembered so their late pongs read as stale, not as mismatches.
RECENT_NONCES = 16
# Mailbox drains per interval while waiting for a pong.
DRAINS_PER_INTERVAL = 4


class HeartbeatPolicy(str, Enum):
    REPORT = "report"
    CLOSE = "close"


class HeartbeatScheduler:
    def __init__(
        self,
        client: AsyncSessionClient,
        interval: float,
        policy: HeartbeatPolicy = HeartbeatPolicy.REPORT,
        on_failure: Optional[Callable[[UjuError], Any]] = None,
        nonce_factory: Callable[[], str] = lambda: uuid.uuid4().hex,
    ):
        self._client = client
        self._interval = interval
        self._policy = policy
        self._on_failure = on_failure
        self._nonce_factory = nonce_factory
        self._task: Optional[asyncio.Task[None]] = None
        self._outstanding: Optional[tuple[str, asyncio.Future[None]]] = None
        self._recent: deque[str] = deque(maxlen=RECENT_NONCES)
        self.failures = 0
        self.last_failure: Optional[UjuError] = None

    @property
    def interval(self) -> float:
        return self._interval

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        if self.running:
            return
        self._task = asyncio.get_running_loop().create_task(self._run())

    def acknowledge(self, nonce: str) -> bool:
        """Match a pong against the outstanding ping. Returns True on a match."""
        if self._outstanding is None:
            logger.debug("pong %s with no ping outstanding", nonce)
            return False
        expected, waiter = self._outstanding
        if waiter.done():
            return False
        if nonce == expected:
            waiter.set_result(None)
            return True
        if nonce in self._recent:
            logger.debug("stale pong %s for an earlier ping", nonce)
            return False
        waiter.set_exception(HeartbeatTimeout(f"pong nonce {nonce!r} does not match ping {expected!r}", expected))
        return False

    def cancel(self) -> None:
        """Cancel without waiting; used when the session faults."""
        if self._task is not None and self._task is not asyncio.current_task():
            self._task.cancel()

    async def stop(self) -> None:
        task, self._task = self._task, None
        if self._outstanding is not None:
            self._outstanding[1].cancel()
            self._outstanding = None
        if task is None or task is asyncio.current_task():
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass

    async def _run(self) -> None:
        loop = asyncio.get_running_loop()
        while True:
            started = loop.time()
            try:
                await self._beat(loop, started)
            except (InvalidStateError, ProtocolViolation) as e:
                logger.debug("heartbeat stopped: %s", e)
                return
            except UjuError as e:
                if not await self._report(e):
                    return
            await asyncio.sleep(max(0.0, self._interval - (loop.time() - started)))

    async def _beat(self, loop: asyncio.AbstractEventLoop, started: float) -> None:
        nonce = self._nonce_factory()
        waiter: asyncio.Future[None] = loop.create_future()
        self._outstanding = (nonce, waiter)
        self._recent.append(nonce)
        deadline = started + self._interval
        try:
            pong = await self._client.ping(nonce)
            if pong is None or not self.acknowledge(pong.nonce):
                await self._collect(loop, waiter, deadline)
            try:
                await asyncio.wait_for(waiter, timeout=max(0.0, deadline - loop.time()))
            except asyncio.TimeoutError:
                raise HeartbeatTimeout(f"no pong for {nonce!r} within {self._interval:.3f}s", nonce)
        finally:
            self._outstanding = None

    async def _collect(self, loop: asyncio.AbstractEventLoop, waiter: asyncio.Future[None], deadline: float) -> None:
        # Pongs found in the mailbox reach acknowledge() through the client.
        while not waiter.done() and loop.time() < deadline:
            await self._client.collect_pongs()
            if waiter.done():
                return
            await asyncio.wait([waiter], timeout=min(max(0.0, deadline - loop.time()), self._interval / DRAINS_PER_INTERVAL))

    async def _report(self, failure: UjuError) -> bool:
        """Record a liveness failure. Returns False when the loop should end."""
        self.failures += 1
        self.last_failure = failure
        logger.warning("heartbeat failure on session %s: %s", self._client.session_id, failure)
        if self._on_failure is not None:
            try:
                result = self._on_failure(failure)
                if asyncio.iscoroutine(result):
                    await result
            except Exception:
                logger.exception("liveness failure callback raised")
        if self._policy is HeartbeatPolicy.CLOSE:
            await self._client.close()
            return False
        return True
