"""
Mailbox poller. Drains the session mailbox in the background.

Envelopes go to ``handler`` when one is given, otherwise into a queue read
through ``messages()``. ``PONG`` envelopes are consumed by the heartbeat and
not delivered.
"""

from __future__ import annotations

import asyncio
import logging
from typing import TYPE_CHECKING, Any, AsyncGenerator, Callable, Optional

from uju.errors import InvalidStateError
from uju.models.envelope import Envelope, Pong

if TYPE_CHECKING:
    from uju.client import AsyncSessionClient

DEFAULT_POLL_INTERVAL_S = 1.0

logger = logging.getLogger(__name__)


class MailboxPoller:
    def __init__(
        self,
        client: AsyncSessionClient,
        interval: float = DEFAULT_POLL_INTERVAL_S,
        handler: Optional[Callable[[Envelope], Any]] = None,
    ):
        self._client = client
        self._interval = interval
        self._handler = handler
        self._queue: asyncio.Queue[Optional[Envelope]] = asyncio.Queue()
        self._task: Optional[asyncio.Task[None]] = None
        self.error: Optional[BaseException] = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        if self.running:
            return
        self._task = asyncio.get_running_loop().create_task(self._run())

    def add_done_callback(self, callback: Callable[[MailboxPoller], Any]) -> None:
        """Call ``callback(self)`` once the background task has finished."""
        if self._task is not None:
            self._task.add_done_callback(lambda _: callback(self))

    def cancel(self) -> None:
        if self._task is not None and self._task is not asyncio.current_task():
            self._task.cancel()

    async def stop(self) -> None:
        task, self._task = self._task, None
        if task is None or task is asyncio.current_task():
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass

    async def messages(self) -> AsyncGenerator[Envelope, None]:
        """Yield delivered envelopes in order until the poller stops."""
        while True:
            envelope = await self._queue.get()
            if envelope is None:
                return
            yield envelope

    async def _run(self) -> None:
        try:
            while True:
                batch = await self._client.fetch_messages()
                for envelope in batch:
                    if isinstance(envelope, Pong):
                        continue
                    await self._deliver(envelope)
                if not batch:
                    await asyncio.sleep(self._interval)
        except InvalidStateError as e:
            logger.debug("poller stopped: %s", e)
        except Exception as e:
            self.error = e
            logger.error("mailbox poller failed: %s", e)
        finally:
            self._queue.put_nowait(None)

    async def _deliver(self, envelope: Envelope) -> None:
        if self._handler is None:
            self._queue.put_nowait(envelope)
            return
        result = self._handler(envelope)
        if asyncio.iscoroutine(result):
            await result
