"""
JSON wire codec for the worker protocol.

Frames are JSON text objects shaped ``{kind, taskId?, payload}``.
The codec is stateless; every decoding failure surfaces as
:class:`~agentwire_runtime.errors.ProtocolError`.
"""

from __future__ import annotations

import json
import time
from typing import Any

from pydantic import BaseModel, ValidationError

from agentwire_runtime.errors import ProtocolError
from agentwire_runtime.types import (
    AuthAckPayload,
    AuthPayload,
    AuthRejectPayload,
    Envelope,
    ErrorPayload,
    HeartbeatPayload,
    MessageKind,
    ResultAckPayload,
    TaskMessage,
    TaskResult,
)

PAYLOAD_MODELS: dict[MessageKind, type[BaseModel]] = {
    MessageKind.AUTH: AuthPayload,
    MessageKind.AUTH_ACK: AuthAckPayload,
    MessageKind.AUTH_REJECT: AuthRejectPayload,
    MessageKind.TASK: TaskMessage,
    MessageKind.RESULT: TaskResult,
    MessageKind.RESULT_ACK: ResultAckPayload,
    MessageKind.HEARTBEAT: HeartbeatPayload,
    MessageKind.ERROR: ErrorPayload,
}


class WireCodec:
    """Encode and decode protocol frames."""

    def encode(self, envelope: Envelope) -> str:
        data: dict[str, Any] = {"kind": envelope.kind.value, "payload": envelope.payload}
        if envelope.task_id is not None:
            data["taskId"] = envelope.task_id
        try:
            return json.dumps(data, separators=(",", ":"))
        except (TypeError, ValueError) as e:
            raise ProtocolError(f"Cannot encode {envelope.kind.value} frame: {e}") from e

    def decode(self, raw: str | bytes) -> Envelope:
        """Parse a frame and validate its payload against the kind's model."""
        if isinstance(raw, (bytes, bytearray)):
            try:
                raw = raw.decode("utf-8")
            except UnicodeDecodeError as e:
                raise ProtocolError("Frame is not valid UTF-8") from e
        try:
            data = json.loads(raw)
        except json.JSONDecodeError as e:
            raise ProtocolError(f"Frame is not valid JSON: {e.msg}") from e
        if not isinstance(data, dict):
            raise ProtocolError("Frame must be a JSON object")
        try:
            envelope = Envelope(**data)
        except (ValidationError, TypeError) as e:
            raise ProtocolError(f"Invalid envelope: {e}") from e
        self.read_payload(envelope)
        return envelope

    def read_payload(self, envelope: Envelope) -> BaseModel:
        """Return the typed payload model for ``envelope``."""
        model = PAYLOAD_MODELS[envelope.kind]
        payload = envelope.payload
        # result_ack / task may carry the id only on the envelope
        if envelope.task_id and "taskId" not in payload and "taskId" in _alias_names(model):
            payload = {**payload, "taskId": envelope.task_id}
        try:
            return model(**payload)
        except (ValidationError, TypeError) as e:
            raise ProtocolError(f"Invalid {envelope.kind.value} payload: {e}") from e

    # -- Builders ----------------------------------------------------------

    def auth(self, agent_id: str, proof: str, timestamp: int) -> Envelope:
        return Envelope(
            kind=MessageKind.AUTH,
            payload={"agentId": agent_id, "proof": proof, "timestamp": timestamp},
        )

    def heartbeat(self, timestamp: float | None = None) -> Envelope:
        return Envelope(
            kind=MessageKind.HEARTBEAT,
            payload={"timestamp": time.time() if timestamp is None else timestamp},
        )

    def result(self, result: TaskResult) -> Envelope:
        return Envelope(kind=MessageKind.RESULT, task_id=result.task_id, payload=result.to_wire())

    @staticmethod
    def is_serializable(value: Any) -> bool:
        try:
            json.dumps(value)
        except (TypeError, ValueError):
            return False
        return True


def _alias_names(model: type[BaseModel]) -> set[str]:
    return {f.alias or name for name, f in model.model_fields.items()}
