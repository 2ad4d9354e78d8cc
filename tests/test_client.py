"""Session state machine against a scripted transport."""

import asyncio

import pytest

from fakes import HANDSHAKE, ScriptedTransport, ack, hello, mailbox, pong, receive, server
from uju.client import AsyncSessionClient, SessionClient, SessionState
from uju.errors import (
    AuthFailure,
    DecodeError,
    InvalidStateError,
    ProtocolViolation,
    RequestRejected,
    TransportError,
    ValidationError,
)
from uju.models.envelope import Hello, Receive, ServerMessage
from uju.models.protocol import (
    ConfigureScope,
    Format,
    GroupConfig,
    ResponseCode,
    SendConfig,
    SendLaterConfig,
    SendMethod,
    SessionConfig,
)
from uju.models.query import MetadataQuery, combine, compare


def make_client(*responses, **kwargs) -> tuple[AsyncSessionClient, ScriptedTransport]:
    transport = ScriptedTransport(*responses, default=kwargs.pop("default", None))
    kwargs.setdefault("heartbeat", False)
    return AsyncSessionClient(transport=transport, **kwargs), transport


async def authenticated(*responses, **kwargs) -> tuple[AsyncSessionClient, ScriptedTransport]:
    client, transport = make_client(*HANDSHAKE, *responses, **kwargs)
    await client.start_session()
    await client.authenticate("secret")
    return client, transport


class TestStartSession:
    @pytest.mark.asyncio
    async def test_ack_then_hello(self):
        client, transport = make_client(ack(), mailbox(hello("s-1", 1500)))
        result = await client.start_session()

        assert result == Hello(session="s-1", heartbeat=1500)
        assert client.state is SessionState.SESSION_STARTED
        assert client.session_id == "s-1"
        assert client.heartbeat_ms == 1500
        assert transport.requests == [
            ("/start-session", {"format": "json", "compression": "none", "metadata": None}, None),
            ("/flush-mailbox", None, None),
        ]

    @pytest.mark.asyncio
    async def test_hello_piggybacked_on_ack(self):
        client, transport = make_client(ack([hello()]))
        await client.start_session()
        assert client.state is SessionState.SESSION_STARTED
        assert len(transport.requests) == 1

    @pytest.mark.asyncio
    async def test_config_argument_is_kept(self):
        client, transport = make_client(ack(), mailbox(hello()))
        await client.start_session(SessionConfig(format=Format.MSGPACK))
        assert client.config.format is Format.MSGPACK
        assert transport.requests[0][1]["format"] == "msgpack"

    @pytest.mark.asyncio
    @pytest.mark.parametrize("responses", [
        (server(-2, "failure"),),
        (server(0, "auth success"),),
        (hello(),),
        (ack(), mailbox()),
        (ack(), mailbox(hello(), hello("s-2"))),
        (ack(), mailbox(pong("x"))),
        (ack(), server(-1, "no extra")),
    ], ids=["failure-ack", "wrong-code", "wrong-opcode", "empty-mailbox", "two-hellos", "pong", "no-extra"])
    async def test_deviations_fault_the_session(self, responses):
        client, _ = make_client(*responses)
        with pytest.raises(ProtocolViolation):
            await client.start_session()
        assert client.state is SessionState.FAULTED
        assert client.session_id is None
        assert isinstance(client.fault, ProtocolViolation)

    @pytest.mark.asyncio
    async def test_faulted_session_fails_fast(self):
        client, transport = make_client(ack(), mailbox())
        with pytest.raises(ProtocolViolation):
            await client.start_session()
        requests_before = len(transport.requests)
        with pytest.raises(InvalidStateError) as exc:
            await client.authenticate("secret")
        assert exc.value.details["state"] == "faulted"
        with pytest.raises(InvalidStateError):
            await client.start_session()
        assert len(transport.requests) == requests_before

    @pytest.mark.asyncio
    async def test_only_from_disconnected(self):
        client, _ = make_client(ack(), mailbox(hello()))
        await client.start_session()
        with pytest.raises(InvalidStateError):
            await client.start_session()

    @pytest.mark.asyncio
    async def test_transport_error_leaves_state_untouched(self):
        client, _ = make_client(TransportError("connection refused"))
        with pytest.raises(TransportError):
            await client.start_session()
        assert client.state is SessionState.DISCONNECTED

    @pytest.mark.asyncio
    async def test_decode_error_propagates(self):
        client, _ = make_client(b"<html>502</html>")
        with pytest.raises(DecodeError):
            await client.start_session()
        assert client.state is SessionState.DISCONNECTED


class TestAuthenticate:
    @pytest.mark.asyncio
    async def test_before_start_session(self):
        client, transport = make_client()
        with pytest.raises(InvalidStateError) as exc:
            await client.authenticate("secret")
        assert exc.value.details == {"operation": "authenticate", "state": "disconnected"}
        assert transport.requests == []

    @pytest.mark.asyncio
    async def test_success(self):
        client, transport = await authenticated()
        assert client.state is SessionState.AUTHENTICATED
        route, body, session = transport.requests[2]
        assert route == "/send"
        assert session == "s-1"
        assert body == {
            "opcode": "AUTHENTICATE",
            "payload": {"auth": "secret", "config": {"format": "json", "compression": "none", "metadata": None}},
        }
        assert transport.requests[3] == ("/flush-mailbox", None, "s-1")

    @pytest.mark.asyncio
    async def test_failure_then_retry(self):
        client, _ = make_client(
            ack(), mailbox(hello()),
            ack(), mailbox(server(1, "auth failure")),
            ack(), mailbox(server(0, "auth success")),
        )
        await client.start_session()
        with pytest.raises(AuthFailure) as exc:
            await client.authenticate("wrong")
        assert str(exc.value) == "auth failure"
        assert client.state is SessionState.SESSION_STARTED

        result = await client.authenticate("right")
        assert result.code is ResponseCode.AUTH_SUCCESS
        assert client.state is SessionState.AUTHENTICATED

    @pytest.mark.asyncio
    @pytest.mark.parametrize("outcome", [
        mailbox(server(2, "configured")),
        mailbox(),
        mailbox(server(0, "auth success"), server(0, "auth success")),
        mailbox(receive("early")),
    ], ids=["wrong-code", "nothing", "two-results", "wrong-opcode"])
    async def test_unexpected_outcome_is_a_violation(self, outcome):
        client, _ = make_client(ack(), mailbox(hello()), ack(), outcome)
        await client.start_session()
        with pytest.raises(ProtocolViolation):
            await client.authenticate("secret")
        assert client.state is SessionState.FAULTED

    @pytest.mark.asyncio
    async def test_not_twice(self):
        client, _ = await authenticated()
        with pytest.raises(InvalidStateError):
            await client.authenticate("secret")


class TestSend:
    @pytest.mark.asyncio
    async def test_immediate(self):
        client, transport = await authenticated(ack())
        result = await client.send(
            "hi", SendMethod.IMMEDIATE, SendConfig(nonce="n-1", await_reply=True),
            MetadataQuery(filter=[compare("$gt", "/key", 69)]),
        )
        assert isinstance(result, ServerMessage)
        assert transport.requests[-1] == ("/send", {
            "opcode": "SEND",
            "payload": {
                "method": "immediate",
                "data": "hi",
                "config": {"nonce": "n-1", "await_reply": True},
                "query": {
                    "_debug": {},
                    "filter": [{"op": "$gt", "path": "/key", "value": {"value": 69}}],
                    "select": None,
                },
            },
        }, "s-1")

    @pytest.mark.asyncio
    async def test_later_with_dict_config(self):
        client, transport = await authenticated(ack())
        await client.send({"k": "v"}, "later", {"group": "nightly"})
        body = transport.requests[-1][1]
        assert body["payload"]["method"] == "later"
        assert body["payload"]["config"] == {"group": "nightly"}

    @pytest.mark.asyncio
    async def test_later_config_under_immediate_is_not_transmitted(self):
        client, transport = await authenticated()
        sent = len(transport.requests)
        with pytest.raises(ValidationError) as exc:
            await client.send("x", SendMethod.IMMEDIATE, SendLaterConfig(group="g"))
        assert exc.value.details == {"expected": "SendConfig", "got": "SendLaterConfig"}
        with pytest.raises(ValidationError):
            await client.send("x", SendMethod.LATER, {"nonce": "n", "await_reply": False})
        with pytest.raises(ValidationError):
            await client.send("x", "sometime", SendConfig(nonce="n"))
        assert len(transport.requests) == sent
        assert client.state is SessionState.AUTHENTICATED

    @pytest.mark.asyncio
    async def test_bad_arity_is_not_transmitted(self):
        client, transport = await authenticated()
        sent = len(transport.requests)
        query = MetadataQuery(filter=[combine("$not")])
        with pytest.raises(ValidationError):
            await client.send("x", SendMethod.IMMEDIATE, SendConfig(nonce="n"), query)
        assert len(transport.requests) == sent

    @pytest.mark.asyncio
    async def test_rejected(self):
        client, _ = await authenticated(server(4, "invalid client payload"))
        with pytest.raises(RequestRejected) as exc:
            await client.send("x", SendMethod.IMMEDIATE, SendConfig(nonce="n"))
        assert exc.value.response.code is ResponseCode.INVALID_CLIENT_PAYLOAD
        assert client.state is SessionState.AUTHENTICATED

    @pytest.mark.asyncio
    async def test_non_server_message_reply_is_a_violation(self):
        client, _ = await authenticated(hello())
        with pytest.raises(ProtocolViolation):
            await client.send("x", SendMethod.IMMEDIATE, SendConfig(nonce="n"))
        assert client.state is SessionState.FAULTED

    @pytest.mark.asyncio
    async def test_requires_authentication(self):
        client, _ = make_client(ack(), mailbox(hello()))
        await client.start_session()
        with pytest.raises(InvalidStateError):
            await client.send("x", SendMethod.IMMEDIATE, SendConfig(nonce="n"))


class TestConfigure:
    @pytest.mark.asyncio
    async def test_from_session_started(self):
        client, transport = make_client(ack(), mailbox(hello()), server(2, "configured"))
        await client.start_session()
        new_config = SessionConfig(metadata={"key": 123})
        result = await client.configure(ConfigureScope.SESSION, new_config)
        assert result.code is ResponseCode.CONFIGURE_SUCCESS
        assert client.config == new_config
        assert transport.requests[-1][1] == {
            "opcode": "CONFIGURE",
            "payload": {"scope": "session", "config": {"format": "json", "compression": "none", "metadata": {"key": 123}}},
        }

    @pytest.mark.asyncio
    async def test_group_after_authentication(self):
        client, transport = await authenticated(ack())
        await client.configure("group", {"max_size": 100, "max_age": 3600, "replication": "Datacenter"})
        assert transport.requests[-1][1]["payload"]["config"] == {
            "max_size": 100, "max_age": 3600, "replication": "Datacenter",
        }

    @pytest.mark.asyncio
    async def test_scope_payload_mismatch(self):
        client, transport = await authenticated()
        sent = len(transport.requests)
        with pytest.raises(ValidationError):
            await client.configure(ConfigureScope.GLOBAL, GroupConfig(max_size=1, max_age=1))
        with pytest.raises(ValidationError):
            await client.configure(ConfigureScope.GROUP, SessionConfig())
        assert len(transport.requests) == sent

    @pytest.mark.asyncio
    async def test_not_before_session(self):
        client, _ = make_client()
        with pytest.raises(InvalidStateError):
            await client.configure(ConfigureScope.SESSION, SessionConfig())

    @pytest.mark.asyncio
    async def test_rejected(self):
        client, _ = await authenticated(server(-2, "nope"))
        with pytest.raises(RequestRejected):
            await client.configure(ConfigureScope.SESSION, SessionConfig())
        assert client.config == SessionConfig()


class TestFetchMessages:
    @pytest.mark.asyncio
    async def test_two_messages_in_order(self):
        client, _ = await authenticated(mailbox(receive("first", "n-1"), receive("second")))
        messages = await client.fetch_messages()
        assert messages == [Receive(nonce="n-1", data="first"), Receive(nonce=None, data="second")]

    @pytest.mark.asyncio
    async def test_empty_batch(self):
        client, _ = await authenticated(mailbox())
        assert await client.fetch_messages() == []

    @pytest.mark.asyncio
    @pytest.mark.parametrize("response", [
        server(-1, "no extra"),
        ack("not a list"),
        ack({"0": receive("x")}),
        receive("x"),
    ], ids=["missing-extra", "string-extra", "object-extra", "not-server-message"])
    async def test_broken_contract(self, response):
        client, _ = await authenticated(response)
        with pytest.raises(ProtocolViolation):
            await client.fetch_messages()
        assert client.state is SessionState.FAULTED

    @pytest.mark.asyncio
    async def test_bad_element_is_a_decode_error(self):
        client, _ = await authenticated(mailbox(receive("ok"), {"opcode": "NOPE", "payload": {}}))
        with pytest.raises(DecodeError):
            await client.fetch_messages()
        assert client.state is SessionState.AUTHENTICATED

    @pytest.mark.asyncio
    async def test_needs_live_session(self):
        client, _ = make_client()
        with pytest.raises(InvalidStateError):
            await client.fetch_messages()


class TestClose:
    @pytest.mark.asyncio
    async def test_idempotent(self):
        client, transport = await authenticated()
        await client.close()
        await client.close()
        assert client.state is SessionState.CLOSED
        assert transport.closed

    @pytest.mark.asyncio
    async def test_operations_after_close(self):
        client, _ = await authenticated()
        await client.close()
        with pytest.raises(InvalidStateError):
            await client.send("x", SendMethod.IMMEDIATE, SendConfig(nonce="n"))
        with pytest.raises(InvalidStateError):
            await client.fetch_messages()

    @pytest.mark.asyncio
    async def test_from_faulted_and_disconnected(self):
        client, _ = make_client(ack(), mailbox())
        with pytest.raises(ProtocolViolation):
            await client.start_session()
        await client.close()
        assert client.state is SessionState.CLOSED

        fresh, transport = make_client()
        async with fresh:
            pass
        assert fresh.state is SessionState.CLOSED
        assert transport.closed


class TestBackground:
    @pytest.mark.asyncio
    async def test_heartbeat_starts_on_authentication_and_stops_on_close(self):
        client, _ = await authenticated(heartbeat=True)
        assert client.heartbeat is not None
        assert client.heartbeat.running
        assert client.heartbeat.interval == 1.0
        await client.close()
        assert not client.heartbeat.running

    @pytest.mark.asyncio
    async def test_inline_pong(self):
        client, transport = await authenticated(
            lambda route, body: pong(body["payload"]["nonce"]), heartbeat=True,
        )
        await asyncio.sleep(0.05)
        assert transport.sent("/send")[-1]["opcode"] == "PING"
        assert client.heartbeat.failures == 0
        await client.close()

    @pytest.mark.asyncio
    async def test_heartbeat_drains_mailbox_and_keeps_other_envelopes(self):
        transport_ref = {}

        def mailbox_with_pong(route, body):
            ping = transport_ref["t"].sent("/send")[-1]
            return mailbox(pong(ping["payload"]["nonce"]), receive("early"))

        client, transport = await authenticated(ack(), mailbox_with_pong, mailbox(receive("late")), heartbeat=True)
        transport_ref["t"] = transport
        await asyncio.sleep(0.05)
        assert client.heartbeat.failures == 0

        messages = await client.fetch_messages()
        assert [m.data for m in messages] == ["early", "late"]
        await client.close()

    @pytest.mark.asyncio
    async def test_heartbeat_without_poller_against_acking_broker(self):
        transport_ref = {}

        def broker(route, body):
            if route == "/send":
                return ack()
            ping = transport_ref["t"].sent("/send")[-1]
            return mailbox(pong(ping["payload"]["nonce"]))

        responses = (ack(), mailbox(hello(heartbeat=100)), ack(), mailbox(server(0, "auth success")))
        client, transport = make_client(*responses, default=broker, heartbeat=True)
        transport_ref["t"] = transport
        await client.start_session()
        await client.authenticate("secret")
        await asyncio.sleep(0.35)

        pings = [body for body in transport.sent("/send") if body["opcode"] == "PING"]
        assert len(pings) >= 3
        assert client.heartbeat.failures == 0
        assert client.state is SessionState.AUTHENTICATED
        await client.close()

    @pytest.mark.asyncio
    async def test_start_heartbeat_needs_hello(self):
        client, _ = make_client()
        with pytest.raises(InvalidStateError):
            client._start_heartbeat()

    @pytest.mark.asyncio
    async def test_poller_delivers_and_stops_on_close(self):
        client, _ = await authenticated(
            mailbox(receive("a"), pong("stray"), receive("b")),
            default=mailbox(),
        )
        poller = client.poll(interval=0.01)
        seen = []
        async for envelope in poller.messages():
            seen.append(envelope.data)
            if len(seen) == 2:
                break
        assert seen == ["a", "b"]
        await client.close()
        assert not poller.running
        assert poller.error is None

    @pytest.mark.asyncio
    async def test_poller_violation_faults_session(self):
        client, _ = await authenticated(server(-1, "no extra"))
        poller = client.poll(interval=0.01)
        remaining = [m async for m in poller.messages()]
        assert remaining == []
        assert isinstance(poller.error, ProtocolViolation)
        assert client.state is SessionState.FAULTED
        await client.close()

    @pytest.mark.asyncio
    async def test_finished_pollers_are_dropped(self):
        client, _ = await authenticated(default=mailbox())
        first = client.poll(interval=0.01)
        second = client.poll(interval=0.01)
        assert client.pollers == (first, second)

        await first.stop()
        await asyncio.sleep(0)
        assert client.pollers == (second,)

        await client.close()
        assert client.pollers == ()


def test_sync_wrapper():
    client = SessionClient(transport=ScriptedTransport(*HANDSHAKE, mailbox(receive("x"))))
    client.start_session()
    client.authenticate("secret")
    assert client.state is SessionState.AUTHENTICATED
    assert client.session_id == "s-1"
    assert client.fetch_messages() == [Receive(nonce=None, data="x")]
    client.close()
    assert client.state is SessionState.CLOSED
