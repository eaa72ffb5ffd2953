"""
Exception types and error codes for the AgentWire worker runtime.

Recoverable failures are reported to callers through ``error`` events
carrying an :class:`ErrorCode`; the exceptions below are raised inside
the runtime and mostly caught by the connection supervisor.
"""

from __future__ import annotations

from enum import Enum


class ErrorCode(str, Enum):
    """Codes carried on ``error`` events."""

    TRANSPORT_ERROR = "transport_error"
    AUTH_REJECTED = "auth_rejected"
    RECONNECT_EXHAUSTED = "reconnect_exhausted"
    VERIFICATION_FAILED = "verification_failed"
    HANDLER_ERROR = "handler_error"
    TIMEOUT = "timeout"
    PROTOCOL_ERROR = "protocol_error"
    QUEUE_FULL = "queue_full"
    RESULT_UNDELIVERED = "result_undelivered"
    SERVER_ERROR = "server_error"


class AgentWireError(RuntimeError):
    """Base class for runtime errors."""

    code: ErrorCode = ErrorCode.TRANSPORT_ERROR


class ProtocolError(AgentWireError):
    """A frame could not be decoded or does not match its message kind."""

    code = ErrorCode.PROTOCOL_ERROR


class TransportError(AgentWireError):
    """The connection dropped, went stale, or exceeded the malformed frame limit."""

    code = ErrorCode.TRANSPORT_ERROR


class AuthenticationError(AgentWireError):
    """The registry refused the worker's credentials."""

    code = ErrorCode.AUTH_REJECTED

    def __init__(self, reason: str, reject_code: str | None = None) -> None:
        super().__init__(reason)
        self.reason = reason
        self.reject_code = reject_code
