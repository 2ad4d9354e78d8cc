"""
uju: client-side protocol core for the uju message broker.

Session state machine, envelope codec and metadata query algebra, over an
injected HTTP or websocket transport.
"""

from uju.client import AsyncSessionClient, SessionClient, SessionState
from uju.errors import (
    AuthFailure,
    DecodeError,
    HeartbeatTimeout,
    InvalidStateError,
    ProtocolViolation,
    RequestRejected,
    TransportError,
    UjuError,
    ValidationError,
)
from uju.heartbeat import HeartbeatPolicy, HeartbeatScheduler
from uju.mailbox import MailboxPoller
from uju.transport.envelope import decode_envelope, encode_envelope

__version__ = "0.1.0"
__all__ = [
    "AsyncSessionClient",
    "SessionClient",
    "SessionState",
    "HeartbeatPolicy",
    "HeartbeatScheduler",
    "MailboxPoller",
    "decode_envelope",
    "encode_envelope",
    "UjuError",
    "TransportError",
    "DecodeError",
    "ProtocolViolation",
    "AuthFailure",
    "ValidationError",
    "InvalidStateError",
    "RequestRejected",
    "HeartbeatTimeout",
]
