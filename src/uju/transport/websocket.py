"""
Websocket transport for the ``/socket`` upgrade path.

Over a socket the broker pushes envelopes instead of queueing them, so this
adapter keeps its own mailbox: a reader task buffers every inbound frame,
writes are acknowledged locally, and ``flush-mailbox`` drains the buffer as
a ``ServerMessage`` batch. The session client sees the same exchanges it
sees over HTTP.
"""

import asyncio
import json
import logging
from collections import deque
from typing import Any, Callable, Optional

import websockets

from uju.errors import TransportError
from uju.models.envelope import ServerMessage
from uju.models.protocol import ResponseCode
from uju.transport import routes
from uju.transport.envelope import envelope_to_dict

logger = logging.getLogger(__name__)

LAYER = "transport"


def _socket_url(base_url: str) -> str:
    url = routes.build_route(base_url, routes.WEBSOCKET)
    if url.startswith("https://"):
        return "wss://" + url[len("https://"):]
    if url.startswith("http://"):
        return "ws://" + url[len("http://"):]
    return url


def _batch(message: str, extra: Optional[list[Any]] = None) -> bytes:
    ack = ServerMessage(code=ResponseCode.RESPONSE_STATUS_SUCCESS, message=message, extra=extra, layer=LAYER)
    return json.dumps(envelope_to_dict(ack)).encode("utf-8")


class WebSocketTransport:
    def __init__(
        self,
        base_url: str,
        flush_wait: float = 1.0,
        connect: Callable[..., Any] = websockets.connect,
    ):
        self._url = _socket_url(base_url)
        self._flush_wait = flush_wait
        self._connect = connect
        self._ws: Any = None
        self._reader: Optional[asyncio.Task[None]] = None
        self._inbox: deque[Any] = deque()
        self._arrived = asyncio.Event()
        self._failure: Optional[BaseException] = None

    @property
    def url(self) -> str:
        return self._url

    async def request(self, route: str, body: Optional[bytes] = None, session: Optional[str] = None) -> bytes:
        if route == routes.START_SESSION:
            await self._open()
            return _batch("socket open")
        if route == routes.SEND:
            self._ensure_open()
            try:
                await self._ws.send((body or b"").decode("utf-8"))
            except websockets.WebSocketException as e:
                raise TransportError(f"socket send failed: {e}") from e
            return _batch("sent")
        if route == routes.FLUSH_MAILBOX:
            self._ensure_open(allow_drain=True)
            return _batch("mailbox", await self._drain())
        raise TransportError(f"route {route!r} is not served over the socket", details={"route": route})

    async def _open(self) -> None:
        if self._ws is not None:
            return
        try:
            self._ws = await self._connect(self._url)
        except (OSError, websockets.WebSocketException) as e:
            raise TransportError(f"could not open {self._url}: {e}", details={"url": self._url}) from e
        logger.debug("socket open: %s", self._url)
        self._reader = asyncio.create_task(self._read_loop())

    def _ensure_open(self, allow_drain: bool = False) -> None:
        if self._ws is None:
            raise TransportError("socket is not open")
        if self._failure is not None and not (allow_drain and self._inbox):
            raise TransportError(f"socket closed: {self._failure}")

    async def _read_loop(self) -> None:
        try:
            async for frame in self._ws:
                try:
                    self._inbox.append(json.loads(frame))
                except json.JSONDecodeError:
                    # Left for the codec to reject with a DecodeError.
                    self._inbox.append(frame)
                self._arrived.set()
        except websockets.ConnectionClosed as e:
            self._failure = e
        else:
            self._failure = ConnectionResetError("server closed the socket")
        finally:
            self._arrived.set()
            logger.debug("socket reader stopped: %s", self._failure)

    async def _drain(self) -> list[Any]:
        if not self._inbox and self._failure is None:
            self._arrived.clear()
            try:
                await asyncio.wait_for(self._arrived.wait(), timeout=self._flush_wait)
            except asyncio.TimeoutError:
                pass
        items = list(self._inbox)
        self._inbox.clear()
        return items

    async def close(self) -> None:
        if self._reader is not None:
            self._reader.cancel()
            try:
                await self._reader
            except asyncio.CancelledError:
                pass
            self._reader = None
        if self._ws is not None:
            await self._ws.close()
            self._ws = None
