"""
Task dispatch for the AgentWire worker runtime.

The dispatcher admits verified tasks, runs the caller's handler under a
per-task deadline with bounded concurrency, and delivers each result
back to the registry until it is acknowledged. Both ingress paths
(the registry connection and the HTTP ``listen`` endpoint) go through
:meth:`TaskDispatcher.receive`.
"""

from __future__ import annotations

import asyncio
import inspect
import logging
import time
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Awaitable, Callable, Protocol

from agentwire_runtime.codec import WireCodec
from agentwire_runtime.errors import ErrorCode, ProtocolError
from agentwire_runtime.events import EventManager
from agentwire_runtime.types import (
    Contract,
    Envelope,
    MessageKind,
    ResultAckPayload,
    Task,
    TaskMessage,
    TaskResult,
)
from agentwire_runtime.verification import (
    Rejected,
    RejectionReason,
    VerificationPipeline,
    Verdict,
)

if TYPE_CHECKING:
    from agentwire_runtime.connection import ConnectionManager

logger = logging.getLogger(__name__)

# Handler signature: (task, contract) -> output (sync or async)
TaskHandler = Callable[[Task, Contract], Awaitable[Any] | Any]


class ResultSender(Protocol):
    """What the dispatcher needs from the registry connection."""

    @property
    def is_connected(self) -> bool: ...

    async def send(self, envelope: Envelope, *, buffer: bool = True) -> bool: ...

    async def wait_connected(self, timeout: float | None = None) -> bool: ...


@dataclass(frozen=True)
class Admission:
    """Outcome of :meth:`TaskDispatcher.receive`."""

    verdict: Verdict
    task: Task | None = None
    result: asyncio.Future[TaskResult] | None = None

    @property
    def admitted(self) -> bool:
        return self.verdict.admitted


@dataclass
class _Entry:
    task: Task
    result: asyncio.Future[TaskResult]
    acked: asyncio.Event = field(default_factory=asyncio.Event)
    runner: asyncio.Task[None] | None = None
    handler_task: asyncio.Future[Any] | None = None


class TaskDispatcher:
    """Tracks in-flight tasks and runs the caller's handler for each.

    Args:
        verifier: Admission checks applied to every inbound task.
        handler: The caller's task handler, ``(task, contract) -> output``.
        codec: Frame codec used to build ``result`` messages.
        events: Event manager for lifecycle and error events.
        max_concurrency: Handlers allowed to run at once; the rest wait
            in arrival order.
        task_timeout_ms: Optional cap on a task's run time. The deadline
            is the contract expiry or this cap, whichever is sooner.
        ack_timeout_ms: How long to wait for ``result_ack`` before resending.
        max_result_retransmits: Resends allowed after the first send.
        clock: Returns the current unix time in seconds.
    """

    def __init__(
        self,
        verifier: VerificationPipeline,
        *,
        handler: TaskHandler | None = None,
        codec: WireCodec | None = None,
        events: EventManager | None = None,
        max_concurrency: int = 4,
        task_timeout_ms: int | None = None,
        ack_timeout_ms: int = 10000,
        max_result_retransmits: int = 5,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._verifier = verifier
        self._handler = handler
        self._codec = codec or WireCodec()
        self._events = events or EventManager()
        self._task_timeout = task_timeout_ms / 1000.0 if task_timeout_ms else None
        self._ack_timeout = ack_timeout_ms / 1000.0
        self._max_sends = max_result_retransmits + 1
        self._clock = clock

        self._sender: ResultSender | None = None
        self._slots = asyncio.Semaphore(max_concurrency)
        # In-flight task table; the lock guards check-then-insert for
        # concurrent HTTP ingress requests
        self._entries: dict[str, _Entry] = {}
        self._lock = asyncio.Lock()

    # ---- Wiring ----

    def set_handler(self, handler: TaskHandler | None) -> None:
        self._handler = handler

    @property
    def has_handler(self) -> bool:
        return self._handler is not None

    def attach(self, connection: "ConnectionManager") -> None:
        """Receive tasks and acks from ``connection`` and send results over it."""
        self._sender = connection
        connection.route(MessageKind.TASK, self._on_task_frame)
        connection.route(MessageKind.RESULT_ACK, self._on_ack_frame)

    def bind_sender(self, sender: ResultSender | None) -> None:
        self._sender = sender

    # ---- Introspection ----

    @property
    def in_flight(self) -> int:
        """Tasks whose handler has not produced a result yet."""
        return sum(1 for entry in self._entries.values() if not entry.result.done())

    def is_tracked(self, task_id: str) -> bool:
        return task_id in self._entries

    def pending_results(self) -> list[str]:
        """Task ids with a result that has not been acknowledged."""
        return [
            task_id
            for task_id, entry in self._entries.items()
            if entry.result.done() and not entry.acked.is_set()
        ]

    # ---- Ingress ----

    async def _on_task_frame(self, envelope: Envelope) -> None:
        message: TaskMessage = self._codec.read_payload(envelope)  # type: ignore[assignment]
        await self.receive(message)

    def _on_ack_frame(self, envelope: Envelope) -> None:
        ack: ResultAckPayload = self._codec.read_payload(envelope)  # type: ignore[assignment]
        self.acknowledge(ack.task_id)

    async def receive(self, message: TaskMessage) -> Admission:
        """Verify an inbound task and submit it if admitted.

        A rejected task is answered with a failure result carrying the
        rejection reason (over the connection when one is attached).
        """
        contract, payment = message.contract, message.payment
        self._prune()
        redelivery = self.is_tracked(message.task_id)

        verdict: Verdict
        if message.task_id != contract.task_id:
            verdict = Rejected(message.task_id, RejectionReason.TASK_MISMATCH)
        else:
            verdict = self._verifier.verify(contract, payment, redelivery=redelivery)

        reason = verdict.reason.value if isinstance(verdict, Rejected) else None
        self._events.emit(
            "contract_received",
            {
                "taskId": contract.task_id,
                "requester": contract.requester,
                "price": contract.price,
                "expiresAt": contract.expires_at,
                "admitted": verdict.admitted,
                "reason": reason,
            },
        )
        self._events.emit(
            "payment_received",
            {
                "taskId": payment.task_id,
                "payer": payment.payer,
                "amount": payment.amount,
                "settlementRef": payment.settlement_ref,
                "admitted": verdict.admitted,
                "reason": reason,
            },
        )

        if isinstance(verdict, Rejected):
            self._events.emit(
                "error",
                {
                    "code": ErrorCode.VERIFICATION_FAILED.value,
                    "message": f"Task {message.task_id} rejected: {reason}",
                    "taskId": message.task_id,
                    "reason": reason,
                },
            )
            if self._sender is not None:
                rejection = TaskResult.failure(message.task_id, reason or "", reason)
                await self._sender.send(self._codec.result(rejection))
            return Admission(verdict)

        now = self._clock()
        deadline = contract.expires_at
        if self._task_timeout is not None:
            deadline = min(deadline, now + self._task_timeout)
        task = Task(
            task_id=message.task_id,
            description=message.description,
            contract=contract,
            payment=payment,
            received_at=now,
            deadline=deadline,
            redelivery=redelivery,
        )
        future = await self.submit(task)
        return Admission(verdict, task, future)

    async def submit(self, task: Task) -> asyncio.Future[TaskResult]:
        """Record ``task`` in flight and schedule its handler.

        A task id that is already tracked is not run again: the cached
        result is re-sent if there is one, otherwise the running
        handler's future is returned.

        Raises:
            RuntimeError: If no task handler is registered.
        """
        async with self._lock:
            self._prune()
            entry = self._entries.get(task.task_id)
            if entry is not None:
                logger.info("Redelivery of task %s; handler not re-invoked", task.task_id)
                if entry.result.done() and self._sender is not None and not entry.acked.is_set():
                    await self._sender.send(self._codec.result(entry.result.result()), buffer=False)
                return entry.result

            if self._handler is None:
                raise RuntimeError("No task handler registered; call on('task', handler) first")

            entry = _Entry(task=task, result=asyncio.get_running_loop().create_future())
            self._entries[task.task_id] = entry
            entry.runner = asyncio.create_task(self._run(entry))
            logger.debug("Task %s accepted (deadline in %.1fs)", task.task_id, task.deadline - self._clock())
            return entry.result

    def acknowledge(self, task_id: str) -> bool:
        """Mark the result for ``task_id`` as received by the registry."""
        entry = self._entries.get(task_id)
        if entry is None:
            logger.debug("Ack for unknown task %s", task_id)
            return False
        entry.acked.set()
        return True

    # ---- Execution ----

    async def _run(self, entry: _Entry) -> None:
        task = entry.task
        if task.deadline - self._clock() <= 0:
            result = self._timed_out(task)
        else:
            acquired = False
            try:
                await asyncio.wait_for(self._slots.acquire(), timeout=task.deadline - self._clock())
                acquired = True
                result = await self._invoke(entry)
            except asyncio.TimeoutError:
                result = self._timed_out(task)
            finally:
                if acquired:
                    self._slots.release()

        if not entry.result.done():
            entry.result.set_result(result)
        if self._sender is not None:
            await self._deliver(entry, result)

    async def _invoke(self, entry: _Entry) -> TaskResult:
        task = entry.task
        handler_task = asyncio.ensure_future(self._call_handler(task))
        entry.handler_task = handler_task
        while True:
            remaining = task.deadline - self._clock()
            done, _ = await asyncio.wait({handler_task}, timeout=max(remaining, 0))
            # Loop timers may fire slightly before the wall-clock deadline
            if done or self._clock() >= task.deadline:
                break

        if not done:
            # The handler keeps running; its eventual output is discarded
            handler_task.add_done_callback(_discard_late_output(task.task_id))
            return self._timed_out(task)

        if handler_task.cancelled():
            return TaskResult.failure(task.task_id, "Handler was cancelled", ErrorCode.HANDLER_ERROR.value)

        exc = handler_task.exception()
        if exc is not None:
            logger.error("Handler for task %s failed: %s", task.task_id, exc, exc_info=exc)
            self._events.emit(
                "error",
                {
                    "code": ErrorCode.HANDLER_ERROR.value,
                    "message": f"{type(exc).__name__}: {exc}",
                    "taskId": task.task_id,
                },
            )
            return TaskResult.failure(task.task_id, f"{type(exc).__name__}: {exc}", ErrorCode.HANDLER_ERROR.value)

        output = handler_task.result()
        if isinstance(output, TaskResult):
            if WireCodec.is_serializable(output.output):
                return output.model_copy(update={"task_id": task.task_id})
            output = output.output
        if not WireCodec.is_serializable(output):
            logger.error("Handler for task %s returned a non-JSON output (%s)", task.task_id, type(output).__name__)
            return TaskResult.failure(
                task.task_id,
                f"Handler output of type {type(output).__name__} is not JSON-serializable",
                "invalid_output",
            )
        return TaskResult(task_id=task.task_id, success=True, output=output)

    async def _call_handler(self, task: Task) -> Any:
        handler = self._handler
        if handler is None:
            raise RuntimeError("No task handler registered")
        result = handler(task, task.contract)
        if inspect.isawaitable(result):
            result = await result
        return result

    def _timed_out(self, task: Task) -> TaskResult:
        logger.warning("Task %s exceeded its deadline", task.task_id)
        self._events.emit(
            "error",
            {
                "code": ErrorCode.TIMEOUT.value,
                "message": f"Task {task.task_id} exceeded its deadline",
                "taskId": task.task_id,
            },
        )
        return TaskResult.failure(task.task_id, "Task deadline exceeded", ErrorCode.TIMEOUT.value)

    # ---- Delivery ----

    async def _deliver(self, entry: _Entry, result: TaskResult) -> None:
        """Send ``result`` until acknowledged, the deadline passes, or sends run out."""
        sender = self._sender
        if sender is None:
            raise RuntimeError("No result sender bound")
        task = entry.task
        envelope = self._codec.result(result)
        sends = 0

        try:
            while not entry.acked.is_set():
                if sender.is_connected:
                    try:
                        sent = await sender.send(envelope, buffer=False)
                    except ProtocolError as e:
                        logger.error("Result for task %s cannot be encoded: %s", task.task_id, e)
                        self._undelivered(task, f"Result for task {task.task_id} cannot be encoded: {e}")
                        return
                    if sent:
                        sends += 1
                        try:
                            await asyncio.wait_for(entry.acked.wait(), timeout=self._ack_timeout)
                            break
                        except asyncio.TimeoutError:
                            logger.debug("No ack for task %s after send %d", task.task_id, sends)

                if entry.acked.is_set():
                    break
                remaining = task.deadline - self._clock()
                if remaining <= 0 or sends >= self._max_sends:
                    logger.warning("Giving up on result for task %s after %d send(s)", task.task_id, sends)
                    self._undelivered(task, f"Result for task {task.task_id} was not acknowledged")
                    break
                if not sender.is_connected:
                    await sender.wait_connected(remaining)
        finally:
            async with self._lock:
                if self._entries.get(task.task_id) is entry:
                    del self._entries[task.task_id]

    def _undelivered(self, task: Task, message: str) -> None:
        self._events.emit(
            "error",
            {
                "code": ErrorCode.RESULT_UNDELIVERED.value,
                "message": message,
                "taskId": task.task_id,
            },
        )

    # ---- Housekeeping ----

    def _prune(self) -> None:
        """Drop finished entries past their deadline (HTTP ingress keeps them for dedup)."""
        now = self._clock()
        expired = [
            task_id
            for task_id, entry in self._entries.items()
            if entry.result.done()
            and (entry.runner is None or entry.runner.done())
            and entry.task.deadline <= now
        ]
        for task_id in expired:
            del self._entries[task_id]

    async def close(self) -> None:
        """Stop delivery loops and abandon in-flight tasks."""
        tasks: list[asyncio.Future[Any]] = []
        for entry in self._entries.values():
            for running in (entry.runner, entry.handler_task):
                if running is not None and not running.done():
                    running.cancel()
                    tasks.append(running)
            if not entry.result.done():
                entry.result.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        self._entries.clear()


def _discard_late_output(task_id: str) -> Callable[[asyncio.Future[Any]], None]:
    def _callback(handler_task: asyncio.Future[Any]) -> None:
        if handler_task.cancelled():
            return
        exc = handler_task.exception()
        if exc is not None:
            logger.info("Timed out task %s later failed: %s", task_id, exc)
        else:
            logger.info("Discarding late output of timed out task %s", task_id)

    return _callback
