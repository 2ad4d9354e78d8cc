"""
Envelope variants: the closed set of ``{opcode, payload}`` messages.

Each class is the payload of one opcode; the opcode itself lives on the
class (``OPCODE``) and is only written out by the codec.
"""

from enum import Enum
from typing import Any, ClassVar, Optional, Union

from pydantic import Field, model_validator

from uju.models.protocol import (
    CONFIGURE_PAYLOAD_FOR_SCOPE,
    SEND_CONFIG_FOR_METHOD,
    ConfigureScope,
    GlobalSessionConfig,
    GroupConfig,
    ResponseCode,
    SendConfig,
    SendLaterConfig,
    SendMethod,
    SessionConfig,
)
from uju.models.query import MetadataQuery
from uju.models.wire import WireModel


class Opcode(str, Enum):
    HELLO = "HELLO"
    AUTHENTICATE = "AUTHENTICATE"
    SERVER_MESSAGE = "SERVER_MESSAGE"
    SEND = "SEND"
    RECEIVE = "RECEIVE"
    PING = "PING"
    PONG = "PONG"
    CONFIGURE = "CONFIGURE"


class EnvelopePayload(WireModel):
    OPCODE: ClassVar[Opcode]

    @property
    def opcode(self) -> Opcode:
        return self.OPCODE


class Hello(EnvelopePayload):
    """First mailbox message of a session. ``heartbeat`` is in milliseconds."""

    OPCODE: ClassVar[Opcode] = Opcode.HELLO

    session: str
    heartbeat: int = Field(gt=0)


class Authenticate(EnvelopePayload):
    OPCODE: ClassVar[Opcode] = Opcode.AUTHENTICATE

    auth: str
    config: SessionConfig


class ServerMessage(EnvelopePayload):
    OPCODE: ClassVar[Opcode] = Opcode.SERVER_MESSAGE

    code: ResponseCode
    message: str
    extra: Optional[Any] = None
    layer: str


class Send(EnvelopePayload):
    OPCODE: ClassVar[Opcode] = Opcode.SEND

    method: SendMethod
    data: Any
    config: Union[SendConfig, SendLaterConfig]
    query: MetadataQuery = Field(default_factory=MetadataQuery)

    @model_validator(mode="after")
    def _config_matches_method(self) -> "Send":
        expected = SEND_CONFIG_FOR_METHOD[self.method]
        if type(self.config) is not expected:
            raise ValueError(
                f"method {self.method.value!r} needs {expected.__name__}, got {type(self.config).__name__}"
            )
        return self


class Receive(EnvelopePayload):
    OPCODE: ClassVar[Opcode] = Opcode.RECEIVE

    nonce: Optional[str] = None
    data: Any


class Ping(EnvelopePayload):
    OPCODE: ClassVar[Opcode] = Opcode.PING

    nonce: str


class Pong(EnvelopePayload):
    OPCODE: ClassVar[Opcode] = Opcode.PONG

    nonce: str


class Configure(EnvelopePayload):
    OPCODE: ClassVar[Opcode] = Opcode.CONFIGURE

    scope: ConfigureScope
    config: Union[SessionConfig, GroupConfig, GlobalSessionConfig]

    @model_validator(mode="after")
    def _config_matches_scope(self) -> "Configure":
        expected = CONFIGURE_PAYLOAD_FOR_SCOPE[self.scope]
        if type(self.config) is not expected:
            raise ValueError(
                f"scope {self.scope.value!r} needs {expected.__name__}, got {type(self.config).__name__}"
            )
        return self


Envelope = Union[Hello, Authenticate, ServerMessage, Send, Receive, Ping, Pong, Configure]

PAYLOAD_TYPES: dict[Opcode, type[EnvelopePayload]] = {
    cls.OPCODE: cls
    for cls in (Hello, Authenticate, ServerMessage, Send, Receive, Ping, Pong, Configure)
}
