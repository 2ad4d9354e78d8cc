"""
Envelope codec: ``{"opcode": ..., "payload": {...}}`` to and from models.

Two payload fields are untagged unions: ``SEND.config`` and
``CONFIGURE.config``. The discriminant already present in the payload
(``method`` / ``scope``) picks the alternative. Only when that discriminant
is missing or unknown does the decoder probe blindly, in the order fixed by
``SEND_CONFIG_PROBE_ORDER`` and ``CONFIGURE_PAYLOAD_PROBE_ORDER``, and
exactly one alternative has to fit.
"""

import json
from enum import Enum
from typing import Any, Iterable, Optional, Union

from pydantic import BaseModel
from pydantic import ValidationError as PydanticValidationError

from uju.errors import DecodeError
from uju.models.envelope import PAYLOAD_TYPES, Envelope, EnvelopePayload, Opcode
from uju.models.protocol import (
    CONFIGURE_PAYLOAD_FOR_SCOPE,
    CONFIGURE_PAYLOAD_PROBE_ORDER,
    SEND_CONFIG_FOR_METHOD,
    SEND_CONFIG_PROBE_ORDER,
    ConfigureScope,
    SendMethod,
    SessionConfig,
)
from uju.models.query import check_filter_bounds
from uju.models.wire import WIRE_CONTEXT


def envelope_to_dict(envelope: EnvelopePayload) -> dict[str, Any]:
    return {
        "opcode": envelope.OPCODE.value,
        "payload": envelope.model_dump(mode="json", by_alias=True),
    }


def encode_envelope(envelope: EnvelopePayload) -> bytes:
    return json.dumps(envelope_to_dict(envelope)).encode("utf-8")


def encode_session_config(config: SessionConfig) -> bytes:
    """Body of the bootstrap request: the bare config, not an envelope."""
    return config.model_dump_json().encode("utf-8")


def decode_envelope(raw: Union[bytes, str, dict[str, Any]]) -> Envelope:
    """Decode one envelope. Raises DecodeError; never returns a partial result."""
    data = _load(raw) if isinstance(raw, (bytes, bytearray, str)) else raw
    if not isinstance(data, dict) or not isinstance(data.get("payload"), dict):
        raise DecodeError("envelope must be an object with an object payload", code=DecodeError.MALFORMED)

    try:
        opcode = Opcode(data.get("opcode"))
    except ValueError:
        raise DecodeError(f"unknown opcode {data.get('opcode')!r}", code=DecodeError.UNKNOWN_OPCODE)

    payload = data["payload"]
    if opcode is Opcode.SEND:
        if isinstance(payload.get("query"), dict):
            check_filter_bounds(payload["query"].get("filter"))
        payload = {**payload, "config": _resolve_union(
            payload.get("config"),
            SEND_CONFIG_FOR_METHOD.get(_enum_or_none(SendMethod, payload.get("method"))),
            SEND_CONFIG_PROBE_ORDER,
            field="config",
        )}
    elif opcode is Opcode.CONFIGURE:
        payload = {**payload, "config": _resolve_union(
            payload.get("config"),
            CONFIGURE_PAYLOAD_FOR_SCOPE.get(_enum_or_none(ConfigureScope, payload.get("scope"))),
            CONFIGURE_PAYLOAD_PROBE_ORDER,
            field="config",
        )}

    try:
        return PAYLOAD_TYPES[opcode].model_validate(payload, context=WIRE_CONTEXT)  # type: ignore[return-value]
    except PydanticValidationError as e:
        raise DecodeError(
            f"invalid {opcode.value} payload: {e.error_count()} error(s)",
            details={"opcode": opcode.value, "errors": e.errors(include_url=False)},
        )


def decode_many(items: Iterable[Any]) -> list[Envelope]:
    """Decode a mailbox batch element by element, keeping order."""
    return [decode_envelope(item) for item in items]


def _load(raw: Union[bytes, bytearray, str]) -> Any:
    try:
        return json.loads(raw)
    except (UnicodeDecodeError, json.JSONDecodeError) as e:
        raise DecodeError(f"not valid JSON: {e}", code=DecodeError.MALFORMED)


def _enum_or_none(enum_cls: type[Enum], value: Any) -> Optional[Enum]:
    try:
        return enum_cls(value)
    except ValueError:
        return None


def _fits(cls: type[BaseModel], raw: Any) -> bool:
    try:
        cls.model_validate(raw, context=WIRE_CONTEXT)
    except PydanticValidationError:
        return False
    return True


def _resolve_union(
    raw: Any,
    designated: Optional[type[BaseModel]],
    probe_order: tuple[type[BaseModel], ...],
    field: str,
) -> BaseModel:
    if designated is not None:
        try:
            return designated.model_validate(raw, context=WIRE_CONTEXT)
        except PydanticValidationError:
            raise DecodeError(
                f"{field} does not have the shape of {designated.__name__}",
                code=DecodeError.AMBIGUOUS_OR_INVALID_UNION,
                details={"expected": designated.__name__},
            )

    matches = [cls for cls in probe_order if _fits(cls, raw)]
    if len(matches) != 1:
        raise DecodeError(
            f"{field} matches {len(matches)} alternatives, expected exactly one",
            code=DecodeError.AMBIGUOUS_OR_INVALID_UNION,
            details={"matches": [cls.__name__ for cls in matches]},
        )
    return matches[0].model_validate(raw, context=WIRE_CONTEXT)
