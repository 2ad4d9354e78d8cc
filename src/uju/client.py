"""
AsyncSessionClient / SessionClient: the session state machine.

    Disconnected --start_session--> SessionStarted --authenticate--> Authenticated
         any state --close--> Closed
         any live state --protocol violation--> Faulted

Calls that change state must not overlap; the client serializes its own
transport exchanges, including those made by the heartbeat and the poller.
"""

import asyncio
import logging
from collections import deque
from enum import Enum
from typing import Any, Callable, Optional, Union

from pydantic import BaseModel
from pydantic import ValidationError as PydanticValidationError

from uju.errors import AuthFailure, InvalidStateError, ProtocolViolation, RequestRejected, UjuError, ValidationError
from uju.heartbeat import HeartbeatPolicy, HeartbeatScheduler
from uju.mailbox import DEFAULT_POLL_INTERVAL_S, MailboxPoller
from uju.models.envelope import Authenticate, Configure, Envelope, EnvelopePayload, Hello, Ping, Pong, Send, ServerMessage
from uju.models.protocol import (
    CONFIGURE_PAYLOAD_FOR_SCOPE,
    SEND_CONFIG_FOR_METHOD,
    ConfigureScope,
    ResponseCode,
    SendMethod,
    SessionConfig,
)
from uju.models.query import MetadataQuery
from uju.transport import routes
from uju.transport.base import Transport
from uju.transport.envelope import decode_envelope, decode_many, encode_envelope, encode_session_config
from uju.transport.http import DEFAULT_BASE_URL, HttpTransport

logger = logging.getLogger(__name__)


class SessionState(str, Enum):
    DISCONNECTED = "disconnected"
    SESSION_STARTED = "session_started"
    AUTHENTICATED = "authenticated"
    CLOSED = "closed"
    FAULTED = "faulted"


LIVE_STATES = (SessionState.SESSION_STARTED, SessionState.AUTHENTICATED)


class AsyncSessionClient:
    """Async uju client (primary)."""

    def __init__(
        self,
        base_url: str = DEFAULT_BASE_URL,
        config: Optional[SessionConfig] = None,
        transport: Optional[Transport] = None,
        heartbeat: bool = True,
        heartbeat_policy: HeartbeatPolicy = HeartbeatPolicy.REPORT,
        on_liveness_failure: Optional[Callable[[UjuError], Any]] = None,
    ):
        self._transport: Transport = transport or HttpTransport(base_url)
        self._config = config or SessionConfig()
        self._heartbeat_enabled = heartbeat
        self._heartbeat_policy = heartbeat_policy
        self._on_liveness_failure = on_liveness_failure

        self._state = SessionState.DISCONNECTED
        self._session_id: Optional[str] = None
        self._heartbeat_ms: Optional[int] = None
        self._fault: Optional[ProtocolViolation] = None
        self._io_lock = asyncio.Lock()

        self.heartbeat: Optional[HeartbeatScheduler] = None
        self._pollers: list[MailboxPoller] = []
        # Mailbox envelopes drained by the heartbeat, handed out by fetch_messages().
        self._pending: deque[Envelope] = deque()

    @property
    def state(self) -> SessionState:
        return self._state

    @property
    def session_id(self) -> Optional[str]:
        return self._session_id

    @property
    def heartbeat_ms(self) -> Optional[int]:
        return self._heartbeat_ms

    @property
    def config(self) -> SessionConfig:
        return self._config

    @property
    def pollers(self) -> tuple[MailboxPoller, ...]:
        """Pollers started with poll() that are still running."""
        return tuple(self._pollers)

    @property
    def fault(self) -> Optional[ProtocolViolation]:
        return self._fault

    async def __aenter__(self) -> "AsyncSessionClient":
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.close()

    # -- lifecycle ---------------------------------------------------------

    async def start_session(self, config: Optional[SessionConfig] = None) -> Hello:
        """Bootstrap a session: ack, then exactly one ``HELLO`` in the mailbox."""
        async with self._io_lock:
            self._require("start_session", SessionState.DISCONNECTED)
            session_config = config or self._config
            response = await self._request(routes.START_SESSION, encode_session_config(session_config), authenticated=False)
            ack = self._expect_ack(response, "start_session")
            messages = await self._drain_after(ack)
            if len(messages) != 1 or not isinstance(messages[0], Hello):
                raise self._violation(
                    f"start_session expected exactly one HELLO, got {_describe(messages)}",
                )
            hello = messages[0]
            self._require("start_session", SessionState.DISCONNECTED)
            self._config = session_config
            self._session_id = hello.session
            self._heartbeat_ms = hello.heartbeat
            self._state = SessionState.SESSION_STARTED
        logger.debug("session %s started, heartbeat %dms", hello.session, hello.heartbeat)
        return hello

    async def authenticate(self, credentials: str) -> ServerMessage:
        """Authenticate the started session.

        Raises AuthFailure when the broker refuses the credentials; the
        session stays started and authenticate() may be called again.
        """
        async with self._io_lock:
            self._require("authenticate", SessionState.SESSION_STARTED)
            response = await self._request(routes.SEND, encode_envelope(Authenticate(auth=credentials, config=self._config)))
            ack = self._expect_ack(response, "authenticate")
            messages = await self._drain_after(ack)
            if len(messages) != 1 or not isinstance(messages[0], ServerMessage):
                raise self._violation(
                    f"authenticate expected exactly one SERVER_MESSAGE, got {_describe(messages)}",
                )
            result = messages[0]
            if result.code == ResponseCode.AUTH_FAILURE:
                logger.debug("session %s: authentication refused", self._session_id)
                raise AuthFailure(result.message, details={"session": self._session_id, "layer": result.layer})
            if result.code != ResponseCode.AUTH_SUCCESS:
                raise self._violation(f"authenticate got unexpected code {result.code.name}")
            self._require("authenticate", SessionState.SESSION_STARTED)
            self._state = SessionState.AUTHENTICATED
        logger.debug("session %s authenticated", self._session_id)
        if self._heartbeat_enabled:
            self._start_heartbeat()
        return result

    async def close(self) -> None:
        """Close from any state. Idempotent; stops heartbeat and pollers."""
        if self._state is SessionState.CLOSED:
            return
        self._state = SessionState.CLOSED
        await self._stop_background()
        await self._transport.close()
        logger.debug("session %s closed", self._session_id)

    # -- operations --------------------------------------------------------

    async def send(
        self,
        data: Any,
        method: Union[SendMethod, str] = SendMethod.IMMEDIATE,
        config: Union[BaseModel, dict[str, Any], None] = None,
        query: Optional[MetadataQuery] = None,
    ) -> ServerMessage:
        """Send ``data`` to every client the query matches.

        ``config`` must be a SendConfig for immediate sends and a
        SendLaterConfig for later sends; a mismatch raises ValidationError
        and nothing is transmitted.
        """
        self._require("send", SessionState.AUTHENTICATED)
        method = _coerce(SendMethod, method, "method")
        envelope = _build(
            Send,
            method=method,
            data=data,
            config=_paired_config(SEND_CONFIG_FOR_METHOD[method], config, f"method {method.value!r}"),
            query=query or MetadataQuery(),
        )
        envelope.query.check()
        async with self._io_lock:
            self._require("send", SessionState.AUTHENTICATED)
            response = await self._request(routes.SEND, encode_envelope(envelope))
        return self._expect_result(response, "send", (ResponseCode.RESPONSE_STATUS_SUCCESS,))

    async def configure(
        self,
        scope: Union[ConfigureScope, str],
        payload: Union[BaseModel, dict[str, Any]],
    ) -> ServerMessage:
        """Configure the session, a group, or global settings."""
        self._require("configure", *LIVE_STATES)
        scope = _coerce(ConfigureScope, scope, "scope")
        envelope = _build(
            Configure,
            scope=scope,
            config=_paired_config(CONFIGURE_PAYLOAD_FOR_SCOPE[scope], payload, f"scope {scope.value!r}"),
        )
        async with self._io_lock:
            self._require("configure", *LIVE_STATES)
            response = await self._request(routes.SEND, encode_envelope(envelope))
        result = self._expect_result(
            response, "configure", (ResponseCode.RESPONSE_STATUS_SUCCESS, ResponseCode.CONFIGURE_SUCCESS),
        )
        if isinstance(envelope.config, SessionConfig):
            self._config = envelope.config
        return result

    async def ping(self, nonce: str) -> Optional[Pong]:
        """Send one PING. Returns the PONG if the broker answered inline."""
        async with self._io_lock:
            self._require("ping", SessionState.AUTHENTICATED)
            response = await self._request(routes.SEND, encode_envelope(Ping(nonce=nonce)))
        if isinstance(response, Pong):
            return response
        self._expect_result(response, "ping", (ResponseCode.RESPONSE_STATUS_SUCCESS,))
        return None

    async def fetch_messages(self) -> list[Envelope]:
        """Drain the mailbox once. Order of the result is delivery order.

        Envelopes the heartbeat already pulled off the mailbox come first.
        """
        async with self._io_lock:
            self._require("fetch_messages", *LIVE_STATES)
            fetched = await self._fetch()
            messages = [*self._pending, *fetched]
            self._pending.clear()
        return messages

    async def collect_pongs(self) -> None:
        """Drain the mailbox on behalf of the heartbeat.

        Pongs are matched against the outstanding ping; every other envelope
        is kept for the next fetch_messages() call.
        """
        async with self._io_lock:
            self._require("collect_pongs", SessionState.AUTHENTICATED)
            messages = await self._fetch()
            self._pending.extend(m for m in messages if not isinstance(m, Pong))

    def poll(
        self,
        interval: float = DEFAULT_POLL_INTERVAL_S,
        handler: Optional[Callable[[Envelope], Any]] = None,
    ) -> MailboxPoller:
        """Start a background MailboxPoller bound to this session."""
        self._require("poll", *LIVE_STATES)
        poller = MailboxPoller(self, interval=interval, handler=handler)
        self._pollers.append(poller)
        poller.start()
        poller.add_done_callback(self._forget_poller)
        return poller

    # -- internals ---------------------------------------------------------

    def _require(self, operation: str, *states: SessionState) -> None:
        if self._state not in states:
            raise InvalidStateError(operation, self._state.value)

    def _violation(self, message: str) -> ProtocolViolation:
        """Fault the session and return the error for the caller to raise."""
        error = ProtocolViolation(message, details={"session": self._session_id, "state": self._state.value})
        logger.error("protocol violation on session %s: %s", self._session_id, message)
        self._fault = error
        self._state = SessionState.FAULTED
        self._cancel_background()
        return error

    async def _request(self, route: str, body: Optional[bytes], authenticated: bool = True) -> Envelope:
        session = self._session_id if authenticated else None
        raw = await self._transport.request(route, body, session)
        return decode_envelope(raw)

    def _expect_ack(self, response: Envelope, operation: str) -> ServerMessage:
        if not isinstance(response, ServerMessage) or response.code != ResponseCode.RESPONSE_STATUS_SUCCESS:
            raise self._violation(f"{operation} expected a success ack, got {_describe([response])}")
        return response

    def _expect_result(self, response: Envelope, operation: str, accepted: tuple[ResponseCode, ...]) -> ServerMessage:
        if not isinstance(response, ServerMessage):
            raise self._violation(f"{operation} expected SERVER_MESSAGE, got {response.opcode.value}")
        if response.code not in accepted:
            raise RequestRejected(f"{operation} rejected: {response.code.name} ({response.message})", response)
        return response

    async def _drain_after(self, ack: ServerMessage) -> list[Envelope]:
        # An ack may carry the mailbox batch inline instead of leaving it queued.
        if isinstance(ack.extra, list):
            messages = decode_many(ack.extra)
            self._observe(messages)
            return messages
        return await self._fetch()

    async def _fetch(self) -> list[Envelope]:
        response = await self._request(routes.FLUSH_MAILBOX, None)
        if not isinstance(response, ServerMessage):
            raise self._violation(f"mailbox answered with {response.opcode.value}, expected SERVER_MESSAGE")
        if response.extra is None:
            raise self._violation("mailbox response has no extra field")
        if not isinstance(response.extra, list):
            raise self._violation(f"mailbox extra is {type(response.extra).__name__}, expected an array")
        messages = decode_many(response.extra)
        self._observe(messages)
        return messages

    def _observe(self, messages: list[Envelope]) -> None:
        if self.heartbeat is None:
            return
        for message in messages:
            if isinstance(message, Pong):
                self.heartbeat.acknowledge(message.nonce)

    def _forget_poller(self, poller: MailboxPoller) -> None:
        if poller in self._pollers:
            self._pollers.remove(poller)

    def _start_heartbeat(self) -> None:
        if self._heartbeat_ms is None:
            raise InvalidStateError("heartbeat", self._state.value)
        self.heartbeat = HeartbeatScheduler(
            self,
            interval=self._heartbeat_ms / 1000.0,
            policy=self._heartbeat_policy,
            on_failure=self._on_liveness_failure,
        )
        self.heartbeat.start()

    def _cancel_background(self) -> None:
        if self.heartbeat is not None:
            self.heartbeat.cancel()
        for poller in list(self._pollers):
            poller.cancel()

    async def _stop_background(self) -> None:
        if self.heartbeat is not None:
            await self.heartbeat.stop()
        pollers, self._pollers = self._pollers, []
        for poller in pollers:
            await poller.stop()


class SessionClient:
    """Sync wrapper around AsyncSessionClient. Runs the event loop internally.

    Background tasks only advance while a call is running, so the heartbeat
    is off unless asked for.
    """

    def __init__(self, **kwargs: Any):
        kwargs.setdefault("heartbeat", False)
        self._loop = asyncio.new_event_loop()
        self._async = AsyncSessionClient(**kwargs)

    def _run(self, coro: Any) -> Any:
        return self._loop.run_until_complete(coro)

    @property
    def state(self) -> SessionState:
        return self._async.state

    @property
    def session_id(self) -> Optional[str]:
        return self._async.session_id

    def start_session(self, config: Optional[SessionConfig] = None) -> Hello:
        return self._run(self._async.start_session(config))

    def authenticate(self, credentials: str) -> ServerMessage:
        return self._run(self._async.authenticate(credentials))

    def send(self, data: Any, **kwargs: Any) -> ServerMessage:
        return self._run(self._async.send(data, **kwargs))

    def configure(self, scope: Union[ConfigureScope, str], payload: Union[BaseModel, dict[str, Any]]) -> ServerMessage:
        return self._run(self._async.configure(scope, payload))

    def fetch_messages(self) -> list[Envelope]:
        return self._run(self._async.fetch_messages())

    def close(self) -> None:
        self._run(self._async.close())
        self._loop.close()


def _describe(messages: list[Envelope]) -> str:
    if not messages:
        return "no messages"
    return ", ".join(
        f"{m.opcode.value}({m.code.name})" if isinstance(m, ServerMessage) else m.opcode.value
        for m in messages
    )


def _coerce(enum_cls: Any, value: Any, name: str) -> Any:
    try:
        return enum_cls(value)
    except ValueError:
        raise ValidationError(f"unknown {name} {value!r}", {name: value})


def _paired_config(expected: type[BaseModel], config: Any, owner: str) -> BaseModel:
    if isinstance(config, dict):
        try:
            return expected.model_validate(config)
        except PydanticValidationError as e:
            raise ValidationError(f"{owner} needs {expected.__name__}: {e.error_count()} error(s)")
    if type(config) is not expected:
        raise ValidationError(
            f"{owner} needs {expected.__name__}, got {type(config).__name__}",
            {"expected": expected.__name__, "got": type(config).__name__},
        )
    return config


def _build(cls: type[EnvelopePayload], **fields: Any) -> Any:
    try:
        return cls(**fields)
    except PydanticValidationError as e:
        raise ValidationError(f"invalid {cls.OPCODE.value} payload: {e.error_count()} error(s)")
