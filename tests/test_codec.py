"""
Unit tests for the worker wire codec.
"""

from __future__ import annotations

import json

import pytest

from agentwire_runtime.codec import WireCodec
from agentwire_runtime.errors import ProtocolError
from agentwire_runtime.types import Envelope, MessageKind, TaskMessage, TaskResult

from fakes import make_task_message, task_frame


def test_decode_task_frame(requester) -> None:
    """A task frame decodes into an envelope with a typed payload."""
    message = make_task_message(requester, "task-42", price=250)
    raw = json.dumps({"kind": "task", "taskId": "task-42", "payload": task_frame(message)})

    codec = WireCodec()
    envelope = codec.decode(raw)
    payload = codec.read_payload(envelope)

    assert envelope.kind is MessageKind.TASK
    assert envelope.task_id == "task-42"
    assert isinstance(payload, TaskMessage)
    assert payload.contract.price == 250
    assert payload.contract.requester == requester.address
    assert payload.payment.settlement_ref == "settle-task-42"


def test_decode_accepts_bytes() -> None:
    """Binary frames are decoded as UTF-8 JSON."""
    envelope = WireCodec().decode(b'{"kind":"heartbeat","payload":{"timestamp":1700000000.5}}')
    assert envelope.kind is MessageKind.HEARTBEAT


def test_result_ack_takes_task_id_from_envelope() -> None:
    """result_ack may carry the task id on the envelope only."""
    codec = WireCodec()
    envelope = codec.decode('{"kind":"result_ack","taskId":"t1","payload":{}}')
    assert codec.read_payload(envelope).task_id == "t1"


@pytest.mark.parametrize(
    "raw",
    [
        "not json at all",
        "[1, 2, 3]",
        '{"kind":"teleport","payload":{}}',
        '{"payload":{}}',
        '{"kind":"task","payload":{"taskId":"t1"}}',
        '{"kind":"heartbeat","payload":{"timestamp":"yesterday"}}',
        '{"kind":"error","payload":"boom"}',
        b"\xff\xfe\xfd",
    ],
)
def test_decode_rejects_malformed_frames(raw) -> None:
    """Malformed frames raise ProtocolError."""
    with pytest.raises(ProtocolError):
        WireCodec().decode(raw)


def test_encode_success_result() -> None:
    """A success result carries output and no error detail."""
    codec = WireCodec()
    frame = json.loads(codec.encode(codec.result(TaskResult(task_id="t1", success=True, output={"n": 3}))))

    assert frame == {"kind": "result", "taskId": "t1", "payload": {"taskId": "t1", "success": True, "output": {"n": 3}}}


def test_encode_failure_result() -> None:
    """A failure result carries error detail and code instead of output."""
    codec = WireCodec()
    frame = json.loads(codec.encode(codec.result(TaskResult.failure("t1", "Expired", "Expired"))))

    assert frame["payload"] == {
        "taskId": "t1",
        "success": False,
        "errorDetail": "Expired",
        "errorCode": "Expired",
    }


def test_encode_unserializable_payload() -> None:
    """Encoding a payload that is not JSON raises ProtocolError."""
    envelope = Envelope(kind=MessageKind.RESULT, task_id="t1", payload={"output": object()})
    with pytest.raises(ProtocolError):
        WireCodec().encode(envelope)


def test_auth_builder() -> None:
    codec = WireCodec()
    frame = json.loads(codec.encode(codec.auth("agent-1", "abc123", 1700000000)))
    assert frame == {
        "kind": "auth",
        "payload": {"agentId": "agent-1", "proof": "abc123", "timestamp": 1700000000},
    }
