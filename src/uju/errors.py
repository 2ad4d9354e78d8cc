"""
uju error types: one class per failure kind the protocol core can report.
"""

from typing import Any, Optional


class UjuError(Exception):
    def __init__(self, code: str, message: str, details: Optional[dict[str, Any]] = None):
        super().__init__(message)
        self.code = code
        self.details = details


class TransportError(UjuError):
    """Delivery failed below the protocol (network, IO, HTTP status)."""

    def __init__(self, message: str, details: Optional[dict[str, Any]] = None):
        super().__init__("transport_error", message, details)


class DecodeError(UjuError):
    """Malformed or ambiguous wire payload."""

    MALFORMED = "malformed"
    UNKNOWN_OPCODE = "unknown_opcode"
    INVALID_PAYLOAD = "invalid_payload"
    AMBIGUOUS_OR_INVALID_UNION = "ambiguous_or_invalid_union"
    FILTER_TOO_LARGE = "filter_too_large"

    def __init__(self, message: str, code: str = INVALID_PAYLOAD, details: Optional[dict[str, Any]] = None):
        super().__init__(code, message, details)


class ProtocolViolation(UjuError):
    """The server answered with a sequence the protocol does not allow."""

    def __init__(self, message: str, details: Optional[dict[str, Any]] = None):
        super().__init__("protocol_violation", message, details)


class AuthFailure(UjuError):
    def __init__(self, message: str = "authentication failed", details: Optional[dict[str, Any]] = None):
        super().__init__("auth_failure", message, details)


class ValidationError(UjuError):
    """Local mismatch caught before anything is transmitted."""

    def __init__(self, message: str, details: Optional[dict[str, Any]] = None):
        super().__init__("validation_error", message, details)


class InvalidStateError(UjuError):
    def __init__(self, operation: str, state: str):
        super().__init__(
            "invalid_state",
            f"{operation}() is not valid while the session is {state}",
            {"operation": operation, "state": state},
        )


class RequestRejected(UjuError):
    def __init__(self, message: str, response: Any):
        super().__init__("request_rejected", message, {"code": int(response.code), "layer": response.layer})
        self.response = response


class HeartbeatTimeout(UjuError):
    def __init__(self, message: str, nonce: Optional[str] = None):
        super().__init__("heartbeat_timeout", message, {"nonce": nonce} if nonce else None)
        self.nonce = nonce
