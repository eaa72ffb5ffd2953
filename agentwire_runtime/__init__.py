"""
AgentWire Worker Runtime for Python.

Lets a compute agent receive paid tasks from the AgentWire registry
over a persistent outbound connection, verify the signed contract and
payment for each task, run it, and send the result back.

Example::

    from agentwire_runtime import AgentWorker

    worker = AgentWorker(agent_id="agent_123", secret="sk_...")

    @worker.on("task")
    async def handle(task, contract):
        return {"answer": await my_agent.run(task.description)}

    await worker.connect()
    # ... later
    await worker.disconnect()
"""

from agentwire_runtime.client import AgentWorker
from agentwire_runtime.codec import WireCodec
from agentwire_runtime.connection import ConnectionManager, compute_backoff, derive_proof
from agentwire_runtime.dispatcher import Admission, TaskDispatcher
from agentwire_runtime.errors import (
    AgentWireError,
    AuthenticationError,
    ErrorCode,
    ProtocolError,
    TransportError,
)
from agentwire_runtime.events import EventManager
from agentwire_runtime.types import (
    ConnectionState,
    Contract,
    Envelope,
    MessageKind,
    Payment,
    ReconnectConfig,
    Task,
    TaskMessage,
    TaskResult,
    WorkerConfig,
    WorkerEvent,
    WorkerSettings,
)
from agentwire_runtime.verification import (
    Admitted,
    Rejected,
    RejectionReason,
    VerificationPipeline,
    sign_contract,
    sign_payment,
)

__all__ = [
    "AgentWorker",
    "WireCodec",
    "ConnectionManager",
    "compute_backoff",
    "derive_proof",
    "Admission",
    "TaskDispatcher",
    "AgentWireError",
    "AuthenticationError",
    "ErrorCode",
    "ProtocolError",
    "TransportError",
    "EventManager",
    "ConnectionState",
    "Contract",
    "Envelope",
    "MessageKind",
    "Payment",
    "ReconnectConfig",
    "Task",
    "TaskMessage",
    "TaskResult",
    "WorkerConfig",
    "WorkerEvent",
    "WorkerSettings",
    "Admitted",
    "Rejected",
    "RejectionReason",
    "VerificationPipeline",
    "sign_contract",
    "sign_payment",
]

__version__ = "0.1.0"
