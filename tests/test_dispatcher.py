"""
Tests for task dispatch: isolation, deadlines, concurrency, result
delivery and redelivery handling.
"""

from __future__ import annotations

import asyncio
import time

import pytest

from agentwire_runtime.dispatcher import TaskDispatcher
from agentwire_runtime.errors import ProtocolError
from agentwire_runtime.events import EventManager
from agentwire_runtime.types import TaskResult
from agentwire_runtime.verification import RejectionReason, VerificationPipeline

from fakes import FakeSender, make_task_message, wait_until


def make_dispatcher(handler=None, **kwargs) -> tuple[TaskDispatcher, EventManager, list]:
    events = EventManager()
    seen: list = []
    events.subscribe_all(seen.append)
    dispatcher = TaskDispatcher(VerificationPipeline(), handler=handler, events=events, **kwargs)
    return dispatcher, events, seen


def auto_ack(dispatcher: TaskDispatcher) -> FakeSender:
    sender = FakeSender(on_result=lambda envelope: dispatcher.acknowledge(envelope.task_id))
    dispatcher.bind_sender(sender)
    return sender


def error_codes(seen: list) -> list[str]:
    return [e.data["code"] for e in seen if e.type == "error"]


# ============================================================
#  Handler execution
# ============================================================


@pytest.mark.asyncio
async def test_successful_task_is_sent_and_released(requester) -> None:
    """A handler's output is sent as a result and dropped once acknowledged."""
    calls: list = []

    async def handler(task, contract):
        calls.append((task.task_id, contract.requester))
        return {"echo": task.description["prompt"]}

    dispatcher, _, _ = make_dispatcher(handler)
    sender = auto_ack(dispatcher)

    admission = await dispatcher.receive(make_task_message(requester))
    result = await admission.result
    await wait_until(lambda: not dispatcher.is_tracked("task-1"))

    assert admission.admitted
    assert result == TaskResult(task_id="task-1", success=True, output={"echo": "run task-1"})
    assert calls == [("task-1", requester.address)]
    assert sender.sent[0].payload == {"taskId": "task-1", "success": True, "output": {"echo": "run task-1"}}


@pytest.mark.asyncio
async def test_sync_handler_is_supported(requester) -> None:
    dispatcher, _, _ = make_dispatcher(lambda task, contract: contract.price * 2)
    auto_ack(dispatcher)

    admission = await dispatcher.receive(make_task_message(requester, price=21))
    assert (await admission.result).output == 42


@pytest.mark.asyncio
async def test_handler_error_is_isolated(requester) -> None:
    """A raising handler yields a failure result and leaves other tasks alone."""

    async def handler(task, contract):
        if task.task_id == "bad":
            raise ValueError("model exploded")
        await asyncio.sleep(0.01)
        return "ok"

    dispatcher, events, seen = make_dispatcher(handler)
    auto_ack(dispatcher)

    bad = await dispatcher.receive(make_task_message(requester, "bad"))
    good = await dispatcher.receive(make_task_message(requester, "good"))
    bad_result, good_result = await bad.result, await good.result
    await events.drain()

    assert not bad_result.success
    assert bad_result.error_code == "handler_error"
    assert "model exploded" in bad_result.error_detail
    assert good_result.success and good_result.output == "ok"
    assert error_codes(seen) == ["handler_error"]


@pytest.mark.asyncio
async def test_handler_may_return_explicit_failure(requester) -> None:
    async def handler(task, contract):
        return TaskResult.failure("ignored-id", "cannot summarise images", "unsupported")

    dispatcher, _, _ = make_dispatcher(handler)
    auto_ack(dispatcher)

    result = await (await dispatcher.receive(make_task_message(requester))).result
    assert result.task_id == "task-1"
    assert result.error_code == "unsupported"


@pytest.mark.asyncio
async def test_non_json_output_fails(requester) -> None:
    dispatcher, _, _ = make_dispatcher(lambda task, contract: object())
    auto_ack(dispatcher)

    result = await (await dispatcher.receive(make_task_message(requester))).result
    assert not result.success
    assert result.error_code == "invalid_output"


@pytest.mark.asyncio
async def test_explicit_result_with_non_json_output_fails(requester) -> None:
    """A returned TaskResult gets the same output check as a bare value."""
    dispatcher, _, _ = make_dispatcher(
        lambda task, contract: TaskResult(task_id=task.task_id, success=True, output={1, 2})
    )
    sender = auto_ack(dispatcher)

    result = await (await dispatcher.receive(make_task_message(requester))).result
    await wait_until(lambda: not dispatcher.is_tracked("task-1"))

    assert not result.success
    assert result.error_code == "invalid_output"
    assert sender.sent[0].payload["errorCode"] == "invalid_output"


@pytest.mark.asyncio
async def test_submit_without_handler(requester) -> None:
    dispatcher, _, _ = make_dispatcher()
    with pytest.raises(RuntimeError):
        await dispatcher.receive(make_task_message(requester))


# ============================================================
#  Deadlines
# ============================================================


@pytest.mark.asyncio
async def test_hung_handler_times_out_once(requester) -> None:
    """A handler that never completes fails with a timeout exactly once."""
    never = asyncio.Event()

    async def handler(task, contract):
        if task.task_id == "hung":
            await never.wait()
        return "done"

    dispatcher, events, seen = make_dispatcher(handler, max_concurrency=2)
    sender = auto_ack(dispatcher)

    hung = await dispatcher.receive(make_task_message(requester, "hung", expires_in=0.1))
    other = await dispatcher.receive(make_task_message(requester, "other"))

    assert (await other.result).output == "done"
    assert not hung.result.done()

    result = await hung.result
    assert result.error_code == "timeout"
    assert time.time() >= hung.task.deadline
    await asyncio.sleep(0.05)
    await events.drain()

    assert len(sender.results_for("hung")) == 1
    assert error_codes(seen) == ["timeout"]
    never.set()


@pytest.mark.asyncio
async def test_timeout_not_before_deadline(requester) -> None:
    async def handler(task, contract):
        await asyncio.sleep(10)

    dispatcher, _, _ = make_dispatcher(handler, task_timeout_ms=50)
    auto_ack(dispatcher)

    admission = await dispatcher.receive(make_task_message(requester))
    result = await admission.result

    assert result.error_code == "timeout"
    assert admission.task.deadline <= admission.task.contract.expires_at
    assert time.time() >= admission.task.deadline


@pytest.mark.asyncio
async def test_timeout_frees_the_slot(requester) -> None:
    """A timed out handler no longer occupies a concurrency slot."""
    never = asyncio.Event()

    async def handler(task, contract):
        if task.task_id == "hung":
            await never.wait()
        return task.task_id

    dispatcher, _, _ = make_dispatcher(handler, max_concurrency=1)
    auto_ack(dispatcher)

    hung = await dispatcher.receive(make_task_message(requester, "hung", expires_in=0.05))
    queued = await dispatcher.receive(make_task_message(requester, "queued"))

    assert (await hung.result).error_code == "timeout"
    assert (await queued.result).output == "queued"
    never.set()


@pytest.mark.asyncio
async def test_late_output_is_discarded(requester) -> None:
    release = asyncio.Event()

    async def handler(task, contract):
        await release.wait()
        return "too late"

    dispatcher, _, _ = make_dispatcher(handler)
    sender = auto_ack(dispatcher)

    admission = await dispatcher.receive(make_task_message(requester, expires_in=0.05))
    assert (await admission.result).error_code == "timeout"

    release.set()
    await asyncio.sleep(0.02)
    assert [e.payload["success"] for e in sender.sent] == [False]


# ============================================================
#  Concurrency
# ============================================================


@pytest.mark.asyncio
async def test_concurrency_bound_and_fifo_admission(requester) -> None:
    """With two slots, the third task starts only after one of the first two finishes."""
    delays = {"task-1": 0.01, "task-2": 0.05, "task-3": 0.005}
    timeline: list[tuple[str, str]] = []

    async def handler(task, contract):
        timeline.append(("start", task.task_id))
        await asyncio.sleep(delays[task.task_id])
        timeline.append(("end", task.task_id))
        return task.task_id

    dispatcher, _, _ = make_dispatcher(handler, max_concurrency=2)
    sender = auto_ack(dispatcher)

    admissions = [await dispatcher.receive(make_task_message(requester, t)) for t in delays]
    await asyncio.gather(*(a.result for a in admissions))
    await wait_until(lambda: len(sender.sent) == 3)

    assert [e.task_id for e in sender.sent] == ["task-1", "task-3", "task-2"]
    assert timeline[:2] == [("start", "task-1"), ("start", "task-2")]
    assert timeline.index(("start", "task-3")) > timeline.index(("end", "task-1"))


# ============================================================
#  Result delivery
# ============================================================


@pytest.mark.asyncio
async def test_result_is_retransmitted_until_acked(requester) -> None:
    dispatcher, _, _ = make_dispatcher(lambda task, contract: "ok", ack_timeout_ms=20)
    acks = {"count": 0}

    def ack_on_third(envelope):
        acks["count"] += 1
        if acks["count"] == 3:
            dispatcher.acknowledge(envelope.task_id)

    sender = FakeSender(on_result=ack_on_third)
    dispatcher.bind_sender(sender)

    await dispatcher.receive(make_task_message(requester))
    await wait_until(lambda: not dispatcher.is_tracked("task-1"))
    assert len(sender.sent) == 3


@pytest.mark.asyncio
async def test_gives_up_after_max_retransmits(requester) -> None:
    dispatcher, events, seen = make_dispatcher(
        lambda task, contract: "ok", ack_timeout_ms=10, max_result_retransmits=2
    )
    sender = FakeSender()
    dispatcher.bind_sender(sender)

    await dispatcher.receive(make_task_message(requester))
    await wait_until(lambda: not dispatcher.is_tracked("task-1"))
    await events.drain()

    assert len(sender.sent) == 3
    assert error_codes(seen) == ["result_undelivered"]


@pytest.mark.asyncio
async def test_result_waits_for_reconnection(requester) -> None:
    """While disconnected, the result is held and sent once the link is back."""
    dispatcher, _, _ = make_dispatcher(lambda task, contract: "ok")
    sender = FakeSender(connected=False, on_result=lambda e: dispatcher.acknowledge(e.task_id))
    dispatcher.bind_sender(sender)

    admission = await dispatcher.receive(make_task_message(requester))
    await admission.result
    await asyncio.sleep(0.02)
    assert sender.sent == [] and sender.buffered == []
    assert dispatcher.pending_results() == ["task-1"]

    sender.set_connected(True)
    await wait_until(lambda: not dispatcher.is_tracked("task-1"))
    assert [e.task_id for e in sender.sent] == ["task-1"]


@pytest.mark.asyncio
async def test_gives_up_when_deadline_passes_disconnected(requester) -> None:
    dispatcher, events, seen = make_dispatcher(lambda task, contract: "ok")
    dispatcher.bind_sender(FakeSender(connected=False))

    await dispatcher.receive(make_task_message(requester, expires_in=0.05))
    await wait_until(lambda: not dispatcher.is_tracked("task-1"))
    await events.drain()
    assert error_codes(seen) == ["result_undelivered"]


class UnencodableSender(FakeSender):
    async def send(self, envelope, *, buffer=True):
        raise ProtocolError("Cannot encode result frame")


@pytest.mark.asyncio
async def test_unencodable_result_is_reported_and_released(requester) -> None:
    """A send that cannot encode the result ends delivery cleanly."""
    dispatcher, events, seen = make_dispatcher(lambda task, contract: "ok")
    dispatcher.bind_sender(UnencodableSender())

    admission = await dispatcher.receive(make_task_message(requester))
    await admission.result
    await wait_until(lambda: not dispatcher.is_tracked("task-1"))
    await events.drain()

    assert error_codes(seen) == ["result_undelivered"]


# ============================================================
#  Housekeeping
# ============================================================


@pytest.mark.asyncio
async def test_finished_entries_pruned_on_receive(requester) -> None:
    """Without a sender, finished tasks are kept until their deadline, then dropped on the next receipt."""
    dispatcher, _, _ = make_dispatcher(lambda task, contract: "ok")

    admission = await dispatcher.receive(make_task_message(requester, "short", expires_in=0.05))
    await admission.result
    assert dispatcher.is_tracked("short")

    await asyncio.sleep(0.08)
    rejected = await dispatcher.receive(make_task_message(requester, "cheap", price=100, amount=1))

    assert not rejected.admitted
    assert not dispatcher.is_tracked("short")


# ============================================================
#  Redelivery
# ============================================================


@pytest.mark.asyncio
async def test_redelivery_resends_cached_result(requester) -> None:
    """A repeated task id re-sends the cached result without re-running the handler."""
    calls: list[str] = []

    async def handler(task, contract):
        calls.append(task.task_id)
        return "answer"

    dispatcher, _, _ = make_dispatcher(handler, ack_timeout_ms=5000)
    sender = FakeSender()
    dispatcher.bind_sender(sender)
    message = make_task_message(requester)

    first = await dispatcher.receive(message)
    await first.result
    await wait_until(lambda: len(sender.sent) == 1)

    again = await dispatcher.receive(message)

    assert again.admitted
    assert again.task.redelivery
    assert again.result is first.result
    assert calls == ["task-1"]
    assert [e.payload["output"] for e in sender.results_for("task-1")] == ["answer", "answer"]

    dispatcher.acknowledge("task-1")
    await wait_until(lambda: not dispatcher.is_tracked("task-1"))


@pytest.mark.asyncio
async def test_redelivery_while_running_waits(requester) -> None:
    release = asyncio.Event()
    calls: list[str] = []

    async def handler(task, contract):
        calls.append(task.task_id)
        await release.wait()
        return "finished"

    dispatcher, _, _ = make_dispatcher(handler)
    sender = auto_ack(dispatcher)
    message = make_task_message(requester)

    first = await dispatcher.receive(message)
    again = await dispatcher.receive(message)
    assert again.result is first.result
    assert sender.sent == []

    release.set()
    assert (await again.result).output == "finished"
    assert calls == ["task-1"]


@pytest.mark.asyncio
async def test_replay_after_ack_is_rejected(requester) -> None:
    """Once acknowledged and forgotten, the same payment is a replay."""
    dispatcher, _, _ = make_dispatcher(lambda task, contract: "ok")
    sender = auto_ack(dispatcher)
    message = make_task_message(requester)

    await (await dispatcher.receive(message)).result
    await wait_until(lambda: not dispatcher.is_tracked("task-1"))

    replay = await dispatcher.receive(message)
    assert replay.verdict.reason is RejectionReason.PAYMENT_REPLAYED
    assert sender.sent[-1].payload["errorDetail"] == "PaymentReplayed"


# ============================================================
#  Rejection
# ============================================================


@pytest.mark.asyncio
async def test_rejected_task_never_reaches_handler(requester) -> None:
    calls: list = []
    dispatcher, events, seen = make_dispatcher(lambda task, contract: calls.append(task))
    sender = auto_ack(dispatcher)
    message = make_task_message(requester, price=100, amount=10)

    admission = await dispatcher.receive(message)
    await events.drain()

    assert not admission.admitted
    assert admission.result is None
    assert calls == []
    assert sender.sent[0].payload == {
        "taskId": "task-1",
        "success": False,
        "errorDetail": "PaymentInsufficient",
        "errorCode": "PaymentInsufficient",
    }
    contract_events = [e for e in seen if e.type == "contract_received"]
    assert contract_events[0].data["reason"] == "PaymentInsufficient"
    assert contract_events[0].data["admitted"] is False
    assert [e.type for e in seen if e.type == "payment_received"] == ["payment_received"]
    assert error_codes(seen) == ["verification_failed"]


@pytest.mark.asyncio
async def test_envelope_task_id_must_match_contract(requester) -> None:
    dispatcher, _, _ = make_dispatcher(lambda task, contract: "ok")
    auto_ack(dispatcher)
    message = make_task_message(requester).model_copy(update={"task_id": "someone-else"})

    admission = await dispatcher.receive(message)
    assert admission.verdict.reason is RejectionReason.TASK_MISMATCH
