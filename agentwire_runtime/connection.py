"""
Outbound registry connection for the AgentWire worker runtime.

Owns the WebSocket lifecycle: connect, authenticate, heartbeat,
staleness detection, reconnect with jittered exponential backoff, and
shutdown. Inbound frames are decoded and routed by message kind to the
consumers registered with :meth:`ConnectionManager.route`.
"""

from __future__ import annotations

import asyncio
import hashlib
import hmac
import logging
import random
import time
from collections import deque
from typing import Any, Awaitable, Callable, Mapping, Protocol

import websockets
from websockets.exceptions import WebSocketException

from agentwire_runtime.codec import WireCodec
from agentwire_runtime.errors import (
    AuthenticationError,
    ErrorCode,
    ProtocolError,
    TransportError,
)
from agentwire_runtime.events import EventManager
from agentwire_runtime.types import (
    AuthAckPayload,
    AuthRejectPayload,
    ConnectionState,
    Envelope,
    ErrorPayload,
    MessageKind,
    ReconnectConfig,
    WorkerConfig,
)

logger = logging.getLogger(__name__)


class Transport(Protocol):
    """The subset of a websockets client connection the manager uses."""

    async def send(self, message: str) -> None: ...

    async def recv(self) -> str | bytes: ...

    async def close(self) -> None: ...


Connector = Callable[[str], Awaitable[Transport]]
Consumer = Callable[[Envelope], Awaitable[None] | None]

TRANSPORT_ERRORS: tuple[type[BaseException], ...] = (
    OSError,
    asyncio.TimeoutError,
    WebSocketException,
    TransportError,
    ProtocolError,
)


def derive_proof(secret: str, agent_id: str, timestamp: int) -> str:
    """HMAC-SHA256 of ``agentId:timestamp`` keyed with the worker secret."""
    message = f"{agent_id}:{timestamp}".encode()
    return hmac.new(secret.encode(), message, hashlib.sha256).hexdigest()


def compute_backoff(attempt: int, reconnect: ReconnectConfig, rng: random.Random | None = None) -> float:
    """Delay in seconds before reconnect ``attempt`` (1-based).

    Exponential from ``initial_delay_ms``, jittered by ±20%, never above
    ``max_delay_ms``.
    """
    rng = rng or random.Random()
    exponent = min(max(attempt - 1, 0), 32)
    delay = min(reconnect.initial_delay_ms * (2 ** exponent), reconnect.max_delay_ms)
    # Add jitter (±20%) to avoid thundering herd
    delay *= 0.8 + rng.random() * 0.4
    return min(delay, reconnect.max_delay_ms) / 1000.0


class ConnectionManager:
    """Maintains the authenticated duplex connection to the registry.

    Args:
        config: Worker configuration (credentials, heartbeat, backoff).
        codec: Frame codec, a fresh :class:`WireCodec` by default.
        events: Event manager that receives lifecycle events.
        connector: Coroutine opening a transport for a URL. Defaults to
            :func:`websockets.connect`.
        rng: Random source for backoff jitter.
        clock: Monotonic clock used for liveness tracking.
    """

    def __init__(
        self,
        config: WorkerConfig,
        *,
        codec: WireCodec | None = None,
        events: EventManager | None = None,
        connector: Connector | None = None,
        rng: random.Random | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._config = config
        self._codec = codec or WireCodec()
        self._events = events or EventManager()
        self._connector = connector or self._open_websocket
        self._rng = rng or random.Random()
        self._clock = clock

        self._state = ConnectionState.DISCONNECTED
        self._session_id: str | None = None
        self._transport: Transport | None = None
        self._last_seen = 0.0
        self._attempt = 0
        self._malformed = 0

        self._consumers: dict[MessageKind, Consumer] = {}
        self._outbound: deque[Envelope] = deque()
        self._send_lock = asyncio.Lock()
        self._connected_event = asyncio.Event()
        self._settled: asyncio.Future[None] | None = None
        self._supervisor: asyncio.Task[None] | None = None

    # ---- Properties ----

    @property
    def state(self) -> ConnectionState:
        return self._state

    @property
    def is_connected(self) -> bool:
        return self._state is ConnectionState.CONNECTED

    @property
    def session_id(self) -> str | None:
        """Session id assigned by the registry in ``auth_ack``."""
        return self._session_id

    @property
    def reconnect_attempts(self) -> int:
        """Consecutive failed attempts since the last successful connect."""
        return self._attempt

    @property
    def last_heartbeat(self) -> float:
        """Monotonic time of the last inbound frame."""
        return self._last_seen

    @property
    def pending_outbound(self) -> int:
        return len(self._outbound)

    def route(self, kind: MessageKind, consumer: Consumer) -> None:
        """Send inbound messages of ``kind`` to ``consumer``."""
        self._consumers[kind] = consumer

    # ---- Lifecycle ----

    async def connect(self, credentials: Mapping[str, str] | None = None) -> ConnectionState:
        """Start the connection and wait for the first attempt cycle to settle.

        Returns the resulting state: ``connected`` on success, or
        ``disconnected`` after an authentication rejection or once
        reconnect attempts are exhausted. With unbounded reconnects this
        waits until a connection is established.

        Raises:
            RuntimeError: If the manager has been closed.
        """
        if self._state is ConnectionState.CLOSED:
            raise RuntimeError("Connection manager is closed; create a new worker to reconnect")

        if self._supervisor is not None and not self._supervisor.done():
            if self._settled is not None:
                await asyncio.shield(self._settled)
            return self._state

        if credentials:
            self._apply_credentials(credentials)

        self._attempt = 0
        self._settled = asyncio.get_running_loop().create_future()
        self._set_state(ConnectionState.CONNECTING)
        self._supervisor = asyncio.create_task(self._supervise())
        await asyncio.shield(self._settled)
        return self._state

    async def disconnect(self) -> None:
        """Close the connection for good. Never reconnects afterwards."""
        if self._state is ConnectionState.CLOSED:
            return
        self._set_state(ConnectionState.CLOSED)

        supervisor = self._supervisor
        if supervisor is not None and not supervisor.done() and supervisor is not asyncio.current_task():
            supervisor.cancel()
            try:
                await supervisor
            except asyncio.CancelledError:
                pass
        self._supervisor = None

        await self._teardown()
        dropped = len(self._outbound)
        self._outbound.clear()
        self._settle()

        if dropped:
            logger.warning("Discarded %d unsent message(s) on disconnect", dropped)
        logger.info("Disconnected from registry")
        self._events.emit("disconnected", {"reason": "closed", "final": True})

    async def wait_connected(self, timeout: float | None = None) -> bool:
        """Suspend until the connection is up, or ``timeout`` elapses."""
        if self.is_connected:
            return True
        try:
            await asyncio.wait_for(self._connected_event.wait(), timeout)
        except asyncio.TimeoutError:
            return False
        return self.is_connected

    async def wait_stopped(self) -> None:
        """Suspend until the supervisor ends (closed, fatal, or retries exhausted)."""
        supervisor = self._supervisor
        if supervisor is not None and not supervisor.done():
            await asyncio.wait({supervisor})

    # ---- Outbound ----

    async def send(self, envelope: Envelope, *, buffer: bool = True) -> bool:
        """Send a message, buffering it while the connection is down.

        Returns False when the message was neither sent nor buffered
        (``buffer=False`` while disconnected, or the buffer is full).

        Raises:
            ProtocolError: If the envelope cannot be encoded.
        """
        if self._state is ConnectionState.CLOSED:
            return False

        if self.is_connected:
            frame = self._codec.encode(envelope)
            try:
                await self._send_frame(frame)
                return True
            except TRANSPORT_ERRORS as e:
                logger.warning("Send of %s failed: %s", envelope.kind.value, e)
                # Stop further sends until the supervisor has reconnected
                self._set_state(ConnectionState.RECONNECTING)
                await self._drop_transport()

        if not buffer:
            return False
        return self._enqueue(envelope)

    def _enqueue(self, envelope: Envelope) -> bool:
        if len(self._outbound) >= self._config.outbound_queue_size:
            logger.warning("Outbound queue full; dropping %s message", envelope.kind.value)
            self._events.emit(
                "error",
                {
                    "code": ErrorCode.QUEUE_FULL.value,
                    "message": f"Outbound queue full, dropped {envelope.kind.value}",
                    "taskId": envelope.task_id,
                },
            )
            return False
        self._outbound.append(envelope)
        return True

    async def _send_frame(self, frame: str) -> None:
        async with self._send_lock:
            transport = self._transport
            if transport is None:
                raise TransportError("No open transport")
            await asyncio.wait_for(transport.send(frame), timeout=self._config.send_timeout_ms / 1000.0)

    async def _flush_outbound(self) -> None:
        while self._outbound and self.is_connected:
            envelope = self._outbound.popleft()
            try:
                await self._send_frame(self._codec.encode(envelope))
            except ProtocolError:
                logger.exception("Dropping unencodable %s message", envelope.kind.value)
            except TRANSPORT_ERRORS:
                self._outbound.appendleft(envelope)
                raise
        if self._outbound:
            logger.debug("%d message(s) still buffered", len(self._outbound))

    # ---- Supervisor ----

    async def _supervise(self) -> None:
        try:
            while self._state is not ConnectionState.CLOSED:
                try:
                    await self._establish()
                except AuthenticationError as e:
                    await self._teardown()
                    logger.error("Registry rejected credentials: %s", e.reason)
                    self._set_state(ConnectionState.DISCONNECTED)
                    self._events.emit(
                        "error",
                        {
                            "code": ErrorCode.AUTH_REJECTED.value,
                            "message": e.reason,
                            "rejectCode": e.reject_code,
                        },
                    )
                    return
                except TRANSPORT_ERRORS as e:
                    await self._teardown()
                    self._report_transport_error(e)
                except Exception as e:
                    logger.exception("Unexpected error while connecting")
                    await self._teardown()
                    self._report_transport_error(e)
                else:
                    self._attempt = 0
                    self._settle()
                    reason = await self._serve()
                    if self._state is ConnectionState.CLOSED:
                        return
                    self._set_state(ConnectionState.RECONNECTING)
                    await self._teardown()
                    logger.warning("Connection lost: %s", reason)
                    self._report_transport_error(reason)
                    self._events.emit("disconnected", {"reason": str(reason), "final": False})

                if not await self._backoff():
                    return
        finally:
            self._settle()

    async def _establish(self) -> None:
        config = self._config
        self._set_state(ConnectionState.CONNECTING)
        self._transport = await asyncio.wait_for(
            self._connector(config.ws_url),
            timeout=config.connect_timeout_ms / 1000.0,
        )

        self._set_state(ConnectionState.AUTHENTICATING)
        timestamp = int(time.time())
        auth = self._codec.auth(config.agent_id, derive_proof(config.secret, config.agent_id, timestamp), timestamp)
        await self._send_frame(self._codec.encode(auth))
        ack = await asyncio.wait_for(self._await_auth_reply(), timeout=config.connect_timeout_ms / 1000.0)

        self._session_id = ack.session_id
        self._malformed = 0
        self._last_seen = self._clock()
        self._set_state(ConnectionState.CONNECTED)
        logger.info("Connected to registry as %s (session %s)", config.agent_id, self._session_id)
        self._events.emit("connected", {"agentId": config.agent_id, "sessionId": self._session_id})
        await self._flush_outbound()

    async def _await_auth_reply(self) -> AuthAckPayload:
        transport = self._transport
        if transport is None:
            raise TransportError("No open transport")
        while True:
            envelope = self._codec.decode(await transport.recv())
            if envelope.kind is MessageKind.AUTH_ACK:
                return self._codec.read_payload(envelope)  # type: ignore[return-value]
            if envelope.kind is MessageKind.AUTH_REJECT:
                reject: AuthRejectPayload = self._codec.read_payload(envelope)  # type: ignore[assignment]
                raise AuthenticationError(reject.reason, reject.code)
            logger.debug("Ignoring %s frame before authentication", envelope.kind.value)

    async def _backoff(self) -> bool:
        self._attempt += 1
        max_attempts = self._config.reconnect.max_attempts
        if max_attempts is not None and self._attempt > max_attempts:
            logger.error("Giving up after %d reconnect attempt(s)", self._attempt - 1)
            self._set_state(ConnectionState.DISCONNECTED)
            self._events.emit(
                "error",
                {
                    "code": ErrorCode.RECONNECT_EXHAUSTED.value,
                    "message": f"Reconnect attempts exhausted ({max_attempts})",
                },
            )
            return False

        self._set_state(ConnectionState.RECONNECTING)
        delay = compute_backoff(self._attempt, self._config.reconnect, self._rng)
        logger.warning("Reconnecting in %.2fs (attempt %d)", delay, self._attempt)
        await asyncio.sleep(delay)
        return self._state is not ConnectionState.CLOSED

    def _report_transport_error(self, error: BaseException | str) -> None:
        message = str(error) or type(error).__name__
        logger.warning("Transport error: %s", message)
        self._events.emit("error", {"code": ErrorCode.TRANSPORT_ERROR.value, "message": message})

    # ---- Session ----

    async def _serve(self) -> BaseException | str:
        """Run the reader and heartbeat until either stops; return why."""
        reader = asyncio.create_task(self._read_loop())
        heartbeat = asyncio.create_task(self._heartbeat_loop())
        try:
            done, _ = await asyncio.wait({reader, heartbeat}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            for task in (reader, heartbeat):
                task.cancel()
            await asyncio.gather(reader, heartbeat, return_exceptions=True)

        finished = done.pop()
        if finished.cancelled():
            return "session cancelled"
        return finished.exception() or "connection closed"

    async def _read_loop(self) -> None:
        threshold = self._config.malformed_frame_threshold
        while True:
            transport = self._transport
            if transport is None:
                raise TransportError("Transport closed")
            raw = await transport.recv()
            self._last_seen = self._clock()
            try:
                envelope = self._codec.decode(raw)
            except ProtocolError as e:
                self._malformed += 1
                logger.warning("Dropping malformed frame (%d/%d): %s", self._malformed, threshold, e)
                self._events.emit("error", {"code": ErrorCode.PROTOCOL_ERROR.value, "message": str(e)})
                if self._malformed > threshold:
                    raise TransportError(f"Malformed frame threshold exceeded ({threshold})") from e
                continue
            await self._dispatch(envelope)

    async def _dispatch(self, envelope: Envelope) -> None:
        kind = envelope.kind
        if kind is MessageKind.HEARTBEAT:
            return
        if kind is MessageKind.ERROR:
            error: ErrorPayload = self._codec.read_payload(envelope)  # type: ignore[assignment]
            logger.warning("Registry error %s: %s", error.code, error.message)
            self._events.emit(
                "error",
                {
                    "code": ErrorCode.SERVER_ERROR.value,
                    "message": error.message,
                    "serverCode": error.code,
                    "taskId": envelope.task_id,
                },
            )
            return

        consumer = self._consumers.get(kind)
        if consumer is None:
            logger.debug("No consumer for %s frame; ignoring", kind.value)
            return
        try:
            result = consumer(envelope)
            if asyncio.iscoroutine(result):
                await result
        except Exception:
            logger.exception("Consumer for %s frame failed", kind.value)

    async def _heartbeat_loop(self) -> None:
        """Send periodic heartbeats and declare the session stale on silence."""
        interval = self._config.heartbeat_interval_ms / 1000.0
        stale_after = interval * self._config.heartbeat_timeout_multiplier
        while True:
            await asyncio.sleep(interval)
            silent_for = self._clock() - self._last_seen
            if silent_for > stale_after:
                raise TransportError(f"No liveness for {silent_for:.1f}s; connection stale")
            await self._send_frame(self._codec.encode(self._codec.heartbeat()))

    # ---- Internal ----

    def _set_state(self, state: ConnectionState) -> None:
        if state is self._state:
            return
        logger.debug("Connection state %s -> %s", self._state.value, state.value)
        self._state = state
        if state is ConnectionState.CONNECTED:
            self._connected_event.set()
        else:
            self._connected_event.clear()

    def _settle(self) -> None:
        if self._settled is not None and not self._settled.done():
            self._settled.set_result(None)

    def _apply_credentials(self, credentials: Mapping[str, str]) -> None:
        update: dict[str, Any] = {}
        for key, value in credentials.items():
            if key in ("agentId", "agent_id"):
                update["agent_id"] = value
            elif key == "secret":
                update["secret"] = value
        self._config = self._config.model_copy(update=update)

    async def _drop_transport(self) -> None:
        """Close the transport so the reader ends and the supervisor reconnects."""
        transport = self._transport
        if transport is None:
            return
        try:
            await transport.close()
        except Exception:
            logger.debug("Error closing transport", exc_info=True)

    async def _teardown(self) -> None:
        await self._drop_transport()
        self._transport = None
        self._session_id = None

    async def _open_websocket(self, url: str) -> Transport:
        return await websockets.connect(
            url,
            open_timeout=self._config.connect_timeout_ms / 1000.0,
            ping_interval=None,
        )
