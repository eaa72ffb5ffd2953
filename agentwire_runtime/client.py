"""
AgentWire worker runtime - public client.

Composes the registry connection, admission checks and task dispatch
behind a small callback API.

Usage::

    from agentwire_runtime import AgentWorker

    worker = AgentWorker(agent_id="agent_123", secret="sk_...")

    @worker.on("task")
    async def handle(task, contract):
        return {"summary": await summarize(task.description)}

    worker.on("error", lambda event: print(event.data["code"]))
    await worker.run_forever()
"""

from __future__ import annotations

import asyncio
import logging
import re
from typing import Any, Callable

from agentwire_runtime.codec import WireCodec
from agentwire_runtime.connection import ConnectionManager, Connector
from agentwire_runtime.dispatcher import TaskDispatcher, TaskHandler
from agentwire_runtime.events import EventHandler, EventManager
from agentwire_runtime.types import ConnectionState, WorkerConfig
from agentwire_runtime.verification import PaymentVerifier, VerificationPipeline

logger = logging.getLogger(__name__)

TASK_EVENT = "task"
OBSERVER_EVENTS = frozenset(
    {"connected", "disconnected", "contract_received", "payment_received", "error"}
)


def normalize_event_name(name: str) -> str:
    """Map ``onContractReceived`` / ``on_contract_received`` to ``contract_received``."""
    if name.startswith("on_"):
        name = name[3:]
    elif re.match(r"on[A-Z]", name):
        name = name[2:]
    return re.sub(r"(?<!^)(?=[A-Z])", "_", name).lower()


class AgentWorker:
    """
    A worker that receives paid tasks from the AgentWire registry.

    Register a ``task`` handler with :meth:`on`, then either
    :meth:`connect` to the registry (outbound WebSocket, no inbound
    surface) or :meth:`listen` for HTTP task submissions. The two modes
    are mutually exclusive for one instance.
    """

    def __init__(
        self,
        config: WorkerConfig | None = None,
        *,
        payment_verifier: PaymentVerifier | None = None,
        connector: Connector | None = None,
        on_task: TaskHandler | None = None,
        on_connected: EventHandler | None = None,
        on_disconnected: EventHandler | None = None,
        on_contract_received: EventHandler | None = None,
        on_payment_received: EventHandler | None = None,
        on_error: EventHandler | None = None,
        **config_fields: Any,
    ) -> None:
        if config is None:
            config = WorkerConfig(**config_fields)
        elif config_fields:
            raise TypeError("Pass either a WorkerConfig or config fields, not both")
        self._config = config

        self._events = EventManager()
        self._codec = WireCodec()
        self._verifier = VerificationPipeline(
            payment_verifier=payment_verifier,
            history_size=config.replay_history_size,
        )
        self._dispatcher = TaskDispatcher(
            self._verifier,
            codec=self._codec,
            events=self._events,
            max_concurrency=config.max_concurrency,
            task_timeout_ms=config.task_timeout_ms,
            ack_timeout_ms=config.ack_timeout_ms,
            max_result_retransmits=config.max_result_retransmits,
        )
        self._connection = ConnectionManager(
            config,
            codec=self._codec,
            events=self._events,
            connector=connector,
        )
        self._mode: str | None = None
        self._server: Any | None = None

        if on_task:
            self.on(TASK_EVENT, on_task)
        for name, handler in (
            ("connected", on_connected),
            ("disconnected", on_disconnected),
            ("contract_received", on_contract_received),
            ("payment_received", on_payment_received),
            ("error", on_error),
        ):
            if handler:
                self.on(name, handler)

    @property
    def config(self) -> WorkerConfig:
        return self._config

    @property
    def state(self) -> ConnectionState:
        """Current registry connection state."""
        return self._connection.state

    @property
    def session_id(self) -> str | None:
        return self._connection.session_id

    @property
    def in_flight(self) -> int:
        return self._dispatcher.in_flight

    @property
    def connection(self) -> ConnectionManager:
        return self._connection

    @property
    def dispatcher(self) -> TaskDispatcher:
        return self._dispatcher

    @property
    def verifier(self) -> VerificationPipeline:
        return self._verifier

    # ---- Event registration ----

    def on(self, event: str, handler: Callable[..., Any] | None = None) -> Any:
        """Register the ``task`` handler or a lifecycle observer.

        Can be used as a decorator when ``handler`` is omitted.

        Raises:
            ValueError: For an unknown event name.
        """
        if handler is None:
            def decorator(fn: Callable[..., Any]) -> Callable[..., Any]:
                self.on(event, fn)
                return fn

            return decorator

        name = normalize_event_name(event)
        if name == TASK_EVENT:
            if self._dispatcher.has_handler:
                logger.warning("Replacing existing task handler")
            self._dispatcher.set_handler(handler)
        elif name in OBSERVER_EVENTS:
            self._events.subscribe(name, handler)
        else:
            raise ValueError(f"Unknown event {event!r}")
        return handler

    def off(self, event: str, handler: Callable[..., Any] | None = None) -> None:
        """Remove the task handler or lifecycle observers."""
        name = normalize_event_name(event)
        if name == TASK_EVENT:
            self._dispatcher.set_handler(None)
        else:
            self._events.unsubscribe(name, handler)

    # ---- Connection mode ----

    async def connect(self, credentials: dict[str, str] | None = None) -> ConnectionState:
        """
        Connect to the registry and start receiving tasks.

        Returns the connection state once the first attempt settles.
        Pass ``credentials`` (``agentId``/``secret``) to retry after an
        authentication rejection.
        """
        self._claim_mode("connect")
        self._require_handler()
        self._dispatcher.attach(self._connection)
        return await self._connection.connect(credentials)

    async def disconnect(self) -> None:
        """Close the connection (or stop the HTTP server) and release resources."""
        if self._mode == "connect":
            await self._connection.disconnect()
        if self._server is not None:
            self._server.should_exit = True
        await self._dispatcher.close()
        await self._events.stop()

    async def run_forever(self) -> None:
        """Connect and keep the worker alive until it is closed or gives up."""
        try:
            await self.connect()
            await self._connection.wait_stopped()
        except (asyncio.CancelledError, KeyboardInterrupt):
            pass
        finally:
            await self.disconnect()

    async def __aenter__(self) -> "AgentWorker":
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.disconnect()

    # ---- Listen mode ----

    def asgi_app(self, *, path: str = "/tasks", require_auth: bool = True) -> Any:
        """Return the FastAPI app for the HTTP task ingress."""
        from agentwire_runtime.server import create_app

        self._claim_mode("listen")
        self._require_handler()
        return create_app(self._dispatcher, self._config, path=path, require_auth=require_auth)

    async def listen(
        self,
        host: str = "127.0.0.1",
        port: int = 8080,
        *,
        path: str = "/tasks",
        require_auth: bool = True,
        log_level: str = "info",
    ) -> None:
        """Serve the HTTP task ingress with uvicorn until stopped.

        Args:
            host: Interface to bind.
            port: Port to bind.
            path: Route accepting task submissions.
            require_auth: Require ``Authorization: Bearer <secret>``.
            log_level: uvicorn log level.
        """
        import uvicorn

        app = self.asgi_app(path=path, require_auth=require_auth)
        server_config = uvicorn.Config(app=app, host=host, port=port, log_level=log_level)
        self._server = uvicorn.Server(server_config)
        logger.info("Listening for tasks on http://%s:%d%s", host, port, path)
        try:
            await self._server.serve()
        finally:
            self._server = None
            await self._dispatcher.close()
            await self._events.stop()

    # ---- Internal ----

    def _claim_mode(self, mode: str) -> None:
        if self._mode is not None and self._mode != mode:
            raise RuntimeError(
                f"Worker already uses {self._mode}(); connect() and listen() are mutually exclusive"
            )
        self._mode = mode

    def _require_handler(self) -> None:
        if not self._dispatcher.has_handler:
            raise RuntimeError("No task handler registered; call on('task', handler) first")
