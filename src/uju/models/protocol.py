"""
Protocol enums and configuration records shared by several envelopes.

Config records forbid unknown keys: the untagged unions they take part in
are told apart by shape alone.
"""

from enum import Enum, IntEnum
from typing import Any, Optional

from pydantic import ConfigDict, Field

from uju.models.wire import WireModel


class ResponseCode(IntEnum):
    """Frozen wire values. Negative codes are generic acks, the rest are outcomes."""

    RESPONSE_STATUS_FAILURE = -2
    RESPONSE_STATUS_SUCCESS = -1
    AUTH_SUCCESS = 0
    AUTH_FAILURE = 1
    CONFIGURE_SUCCESS = 2
    PARSE_FAILURE = 3
    INVALID_CLIENT_PAYLOAD = 4

    @property
    def is_ack(self) -> bool:
        return self < 0


class Format(str, Enum):
    JSON = "json"
    MSGPACK = "msgpack"


class Compression(str, Enum):
    NONE = "none"
    ZSTD = "zstd"


class Replication(str, Enum):
    NONE = "None"
    DATACENTER = "Datacenter"
    REGION = "Region"


class SendMethod(str, Enum):
    IMMEDIATE = "immediate"
    LATER = "later"


class ConfigureScope(str, Enum):
    SESSION = "session"
    GROUP = "group"
    GLOBAL = "global"


class SessionConfig(WireModel):
    """Negotiated at session start and repeated at authentication."""

    model_config = ConfigDict(extra="forbid")

    format: Format = Format.JSON
    compression: Compression = Compression.NONE
    metadata: Optional[Any] = None


class GroupConfig(WireModel):
    model_config = ConfigDict(extra="forbid")

    max_size: int = Field(ge=0)
    max_age: int = Field(ge=0)
    replication: Replication = Replication.NONE


class GlobalSessionConfig(WireModel):
    model_config = ConfigDict(extra="forbid")

    max_size: int = Field(ge=0)
    max_age: int = Field(ge=0)
    replication: Replication = Replication.NONE


class SendConfig(WireModel):
    """Config for ``immediate`` sends."""

    model_config = ConfigDict(extra="forbid")

    nonce: str
    await_reply: bool = False


class SendLaterConfig(WireModel):
    """Config for ``later`` sends, queued under a group."""

    model_config = ConfigDict(extra="forbid")

    group: str


# Probe order for blind decoding of the untagged unions. Part of the wire contract.
SEND_CONFIG_PROBE_ORDER: tuple[type[WireModel], ...] = (SendConfig, SendLaterConfig)
CONFIGURE_PAYLOAD_PROBE_ORDER: tuple[type[WireModel], ...] = (SessionConfig, GroupConfig, GlobalSessionConfig)

SEND_CONFIG_FOR_METHOD: dict[SendMethod, type[WireModel]] = {
    SendMethod.IMMEDIATE: SendConfig,
    SendMethod.LATER: SendLaterConfig,
}

CONFIGURE_PAYLOAD_FOR_SCOPE: dict[ConfigureScope, type[WireModel]] = {
    ConfigureScope.SESSION: SessionConfig,
    ConfigureScope.GROUP: GroupConfig,
    ConfigureScope.GLOBAL: GlobalSessionConfig,
}
