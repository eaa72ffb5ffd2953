"""
HTTP ingress for workers that run reachable infrastructure.

Instead of pulling tasks over the registry connection, the registry
POSTs them to ``/tasks``. Tasks go through the same
:meth:`TaskDispatcher.receive` path, so verification, deduplication and
deadlines behave exactly as on the WebSocket connection; the result is
returned in the HTTP response.
"""

from __future__ import annotations

import asyncio
import hmac
import logging

from fastapi import Depends, FastAPI, Header, HTTPException
from fastapi.responses import JSONResponse

from agentwire_runtime.dispatcher import TaskDispatcher
from agentwire_runtime.types import TaskMessage, TaskResult, WorkerConfig
from agentwire_runtime.verification import Rejected

logger = logging.getLogger(__name__)


def _token_ok(authorization: str | None, secret: str) -> bool:
    if not authorization:
        return False
    scheme, _, token = authorization.partition(" ")
    if scheme.lower() != "bearer" or not token:
        return False
    return hmac.compare_digest(token.strip().encode(), secret.encode())


def create_app(
    dispatcher: TaskDispatcher,
    config: WorkerConfig,
    *,
    path: str = "/tasks",
    require_auth: bool = True,
) -> FastAPI:
    """Build the FastAPI app serving the task ingress.

    Args:
        dispatcher: Dispatcher that verifies and runs submitted tasks.
        config: Worker config; ``secret`` is the expected bearer token.
        path: Route accepting task submissions.
        require_auth: Require ``Authorization: Bearer <secret>``.
    """
    app = FastAPI(title="AgentWire worker", docs_url=None, redoc_url=None)

    @app.get("/health")
    async def health():
        return {
            "status": "ok",
            "agentId": config.agent_id,
            "inFlight": dispatcher.in_flight,
        }

    async def check_token(authorization: str | None = Header(None)) -> None:
        if require_auth and not _token_ok(authorization, config.secret):
            logger.warning("Rejected task submission with invalid credentials")
            raise HTTPException(status_code=401, detail="Invalid or missing bearer token")

    @app.post(path, dependencies=[Depends(check_token)])
    async def submit_task(message: TaskMessage):
        admission = await dispatcher.receive(message)
        if isinstance(admission.verdict, Rejected):
            reason = admission.verdict.reason.value
            return JSONResponse(
                status_code=403,
                content=TaskResult.failure(message.task_id, reason, reason).to_wire(),
            )

        if admission.result is None:
            raise RuntimeError(f"Admitted task {message.task_id} has no result future")
        try:
            result = await asyncio.shield(admission.result)
        except asyncio.CancelledError:
            if not admission.result.cancelled():
                raise
            return JSONResponse(status_code=503, content={"error": "Worker shutting down"})
        return JSONResponse(status_code=200, content=result.to_wire())

    return app
