"""
Pydantic models for the AgentWire worker runtime.

Wire-facing models keep the protocol's camelCase field names as
aliases and expose snake_case attributes in Python.
"""

from __future__ import annotations

import time
from enum import Enum
from typing import Any

from pydantic import BaseModel, Field
from pydantic_settings import BaseSettings, SettingsConfigDict


# ============================================================
#  Configuration
# ============================================================


DEFAULT_REGISTRY_URL = "wss://registry.agentwire.dev/v1/worker"


class ReconnectConfig(BaseModel):
    """Reconnection backoff settings."""

    initial_delay_ms: int = Field(1000, alias="initialDelayMs", ge=0)
    max_delay_ms: int = Field(30000, alias="maxDelayMs", ge=0)
    # None retries forever
    max_attempts: int | None = Field(None, alias="maxAttempts", ge=0)

    model_config = {"populate_by_name": True}


class WorkerConfig(BaseModel):
    """Configuration for a worker connecting to the AgentWire registry."""

    agent_id: str = Field(alias="agentId", min_length=1)
    secret: str = Field(min_length=1)
    registry_url: str = Field(DEFAULT_REGISTRY_URL, alias="registryUrl")
    max_concurrency: int = Field(4, alias="maxConcurrency", ge=1)
    heartbeat_interval_ms: int = Field(30000, alias="heartbeatIntervalMs", gt=0)
    heartbeat_timeout_multiplier: float = Field(3.0, alias="heartbeatTimeoutMultiplier", gt=1)
    reconnect: ReconnectConfig = Field(default_factory=ReconnectConfig)
    task_timeout_ms: int | None = Field(None, alias="taskTimeoutMs", gt=0)
    ack_timeout_ms: int = Field(10000, alias="ackTimeoutMs", gt=0)
    max_result_retransmits: int = Field(5, alias="maxResultRetransmits", ge=0)
    outbound_queue_size: int = Field(256, alias="outboundQueueSize", ge=0)
    malformed_frame_threshold: int = Field(10, alias="malformedFrameThreshold", ge=0)
    send_timeout_ms: int = Field(5000, alias="sendTimeoutMs", gt=0)
    connect_timeout_ms: int = Field(10000, alias="connectTimeoutMs", gt=0)
    replay_history_size: int = Field(10000, alias="replayHistorySize", ge=1)

    model_config = {"populate_by_name": True}

    @property
    def ws_url(self) -> str:
        """Registry URL with http(s) mapped to ws(s)."""
        url = self.registry_url.rstrip("/")
        return url.replace("http://", "ws://", 1).replace("https://", "wss://", 1)

    @classmethod
    def from_env(cls, **overrides: Any) -> "WorkerConfig":
        """Build a config from ``AGENTWIRE_*`` environment variables.

        Keyword overrides win over the environment. See
        :class:`WorkerSettings` for the variable names.
        """
        values: dict[str, Any] = WorkerSettings().model_dump(exclude_none=True)
        values.update(overrides)
        return cls(**values)


class WorkerSettings(BaseSettings):
    """``AGENTWIRE_*`` environment overlay for :class:`WorkerConfig`.

    Every config field can be set, e.g. ``AGENTWIRE_TASK_TIMEOUT_MS``.
    Reconnect settings nest with ``__``:
    ``AGENTWIRE_RECONNECT__MAX_ATTEMPTS=5``.
    """

    agent_id: str | None = None
    secret: str | None = None
    registry_url: str | None = None
    max_concurrency: int | None = None
    heartbeat_interval_ms: int | None = None
    heartbeat_timeout_multiplier: float | None = None
    reconnect: ReconnectConfig | None = None
    task_timeout_ms: int | None = None
    ack_timeout_ms: int | None = None
    max_result_retransmits: int | None = None
    outbound_queue_size: int | None = None
    malformed_frame_threshold: int | None = None
    send_timeout_ms: int | None = None
    connect_timeout_ms: int | None = None
    replay_history_size: int | None = None

    model_config = SettingsConfigDict(
        env_prefix="AGENTWIRE_",
        env_nested_delimiter="__",
        env_ignore_empty=True,
        extra="ignore",
    )


# ============================================================
#  Connection
# ============================================================


class ConnectionState(str, Enum):
    """Lifecycle states of the registry connection."""

    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    AUTHENTICATING = "authenticating"
    CONNECTED = "connected"
    RECONNECTING = "reconnecting"
    CLOSED = "closed"


class MessageKind(str, Enum):
    """Message kinds of the worker wire protocol."""

    AUTH = "auth"
    AUTH_ACK = "auth_ack"
    AUTH_REJECT = "auth_reject"
    TASK = "task"
    RESULT = "result"
    RESULT_ACK = "result_ack"
    HEARTBEAT = "heartbeat"
    ERROR = "error"


class Envelope(BaseModel):
    """Outer frame shared by every protocol message."""

    kind: MessageKind
    task_id: str | None = Field(None, alias="taskId")
    payload: dict[str, Any] = Field(default_factory=dict)

    model_config = {"populate_by_name": True}


class AuthPayload(BaseModel):
    agent_id: str = Field(alias="agentId")
    proof: str
    timestamp: int

    model_config = {"populate_by_name": True}


class AuthAckPayload(BaseModel):
    session_id: str | None = Field(None, alias="sessionId")

    model_config = {"populate_by_name": True}


class AuthRejectPayload(BaseModel):
    code: str | None = None
    reason: str = "authentication rejected"


class HeartbeatPayload(BaseModel):
    timestamp: float


class ErrorPayload(BaseModel):
    code: str
    message: str = ""


class ResultAckPayload(BaseModel):
    task_id: str = Field(alias="taskId")

    model_config = {"populate_by_name": True}


# ============================================================
#  Contracts and payments
# ============================================================


class Contract(BaseModel):
    """A signed task offer from a requester."""

    task_id: str = Field(alias="taskId", min_length=1)
    requester: str
    description: str = ""
    price: int = Field(0, ge=0)
    # int or float, exactly as signed
    expires_at: int | float = Field(alias="expiresAt")
    signature: str = ""

    model_config = {"populate_by_name": True, "frozen": True}

    def signing_fields(self) -> dict[str, Any]:
        """Fields covered by the signature, keyed by wire name."""
        return self.model_dump(by_alias=True, exclude={"signature"})


class Payment(BaseModel):
    """Proof that the requester settled the contract's price."""

    task_id: str = Field(alias="taskId", min_length=1)
    payer: str
    amount: int = Field(ge=0)
    settlement_ref: str = Field(alias="settlementRef")
    signature: str = ""

    model_config = {"populate_by_name": True, "frozen": True}

    def signing_fields(self) -> dict[str, Any]:
        return self.model_dump(by_alias=True, exclude={"signature"})


class TaskMessage(BaseModel):
    """Body of an inbound ``task`` message (also the HTTP ingress body)."""

    task_id: str = Field(alias="taskId", min_length=1)
    description: Any = None
    contract: Contract
    payment: Payment

    model_config = {"populate_by_name": True}


# ============================================================
#  Tasks and results
# ============================================================


class Task(BaseModel):
    """An admitted unit of work handed to the caller's handler."""

    task_id: str = Field(alias="taskId")
    description: Any = None
    contract: Contract
    payment: Payment
    received_at: float = Field(default_factory=time.time, alias="receivedAt")
    deadline: float
    redelivery: bool = False

    model_config = {"populate_by_name": True}


class TaskResult(BaseModel):
    """Outcome of a task, sent back to the registry as a ``result`` message."""

    task_id: str = Field(alias="taskId")
    success: bool
    output: Any = None
    error_detail: str | None = Field(None, alias="errorDetail")
    error_code: str | None = Field(None, alias="errorCode")

    model_config = {"populate_by_name": True}

    @classmethod
    def failure(cls, task_id: str, detail: str, code: str | None = None) -> "TaskResult":
        return cls(task_id=task_id, success=False, error_detail=detail, error_code=code)

    def to_wire(self) -> dict[str, Any]:
        """``{taskId, success, output | errorDetail}``"""
        data: dict[str, Any] = {"taskId": self.task_id, "success": self.success}
        if self.success:
            data["output"] = self.output
        else:
            data["errorDetail"] = self.error_detail or ""
            if self.error_code:
                data["errorCode"] = self.error_code
        return data


# ============================================================
#  Events
# ============================================================


class WorkerEvent(BaseModel):
    """A lifecycle event delivered to registered observers.

    Event types:
    - connected: authenticated session established
    - disconnected: session lost or closed
    - contract_received: contract seen, with its verification verdict
    - payment_received: payment proof seen for a task
    - error: any recoverable failure, ``data["code"]`` is an ErrorCode
    """

    type: str
    timestamp: float = Field(default_factory=time.time)
    data: dict[str, Any] = Field(default_factory=dict)
