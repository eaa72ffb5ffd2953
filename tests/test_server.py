"""
Tests for the HTTP task ingress used by ``AgentWorker.listen``.

Requests go through httpx's ASGI transport straight into the FastAPI
app, so no port is bound.
"""

from __future__ import annotations

import asyncio

import httpx
import pytest

from agentwire_runtime.client import AgentWorker

from fakes import make_task_message, task_frame

SECRET = "sk_test_ingress"
AUTH = {"Authorization": f"Bearer {SECRET}"}


def make_worker(handler) -> AgentWorker:
    worker = AgentWorker(agent_id="agent-http", secret=SECRET)
    worker.on("task", handler)
    return worker


def client_for(worker: AgentWorker, **kwargs) -> httpx.AsyncClient:
    app = worker.asgi_app(**kwargs)
    return httpx.AsyncClient(transport=httpx.ASGITransport(app=app), base_url="http://worker")


@pytest.mark.asyncio
async def test_health() -> None:
    worker = make_worker(lambda task, contract: "ok")
    async with client_for(worker) as client:
        response = await client.get("/health")

    assert response.status_code == 200
    assert response.json() == {"status": "ok", "agentId": "agent-http", "inFlight": 0}


@pytest.mark.asyncio
async def test_submission_returns_result(requester) -> None:
    """A valid submission runs the handler and returns its result."""

    async def handler(task, contract):
        return {"words": len(task.description["prompt"].split())}

    worker = make_worker(handler)
    async with client_for(worker) as client:
        response = await client.post("/tasks", json=task_frame(make_task_message(requester)), headers=AUTH)

    assert response.status_code == 200
    assert response.json() == {"taskId": "task-1", "success": True, "output": {"words": 2}}
    await worker.disconnect()


@pytest.mark.asyncio
@pytest.mark.parametrize("headers", [{}, {"Authorization": "Bearer wrong"}, {"Authorization": SECRET}])
async def test_bad_token_is_unauthorized(requester, headers) -> None:
    calls: list = []
    worker = make_worker(lambda task, contract: calls.append(task))
    async with client_for(worker) as client:
        response = await client.post("/tasks", json=task_frame(make_task_message(requester)), headers=headers)

    assert response.status_code == 401
    assert calls == []


@pytest.mark.asyncio
async def test_token_checked_before_body_validation() -> None:
    """Unauthenticated callers get 401, never validation details."""
    worker = make_worker(lambda task, contract: "ok")
    async with client_for(worker) as client:
        response = await client.post("/tasks", json={"taskId": "t1"})

    assert response.status_code == 401
    assert "taskId" not in response.text


@pytest.mark.asyncio
async def test_auth_can_be_disabled(requester) -> None:
    worker = make_worker(lambda task, contract: "ok")
    async with client_for(worker, require_auth=False) as client:
        response = await client.post("/tasks", json=task_frame(make_task_message(requester)))
    assert response.status_code == 200
    await worker.disconnect()


@pytest.mark.asyncio
async def test_rejected_submission(requester, stranger) -> None:
    """Verification failures return 403 with the enumerated reason."""
    calls: list = []
    worker = make_worker(lambda task, contract: calls.append(task))
    message = make_task_message(requester, payer=stranger)

    async with client_for(worker) as client:
        response = await client.post("/tasks", json=task_frame(message), headers=AUTH)

    assert response.status_code == 403
    assert response.json() == {
        "taskId": "task-1",
        "success": False,
        "errorDetail": "PaymentInvalid",
        "errorCode": "PaymentInvalid",
    }
    assert calls == []


@pytest.mark.asyncio
async def test_malformed_body(requester) -> None:
    worker = make_worker(lambda task, contract: "ok")
    async with client_for(worker) as client:
        response = await client.post("/tasks", json={"taskId": "t1"}, headers=AUTH)
    assert response.status_code == 422


@pytest.mark.asyncio
async def test_concurrent_duplicates_run_once(requester) -> None:
    """Simultaneous duplicate submissions share a single handler run."""
    calls: list[str] = []

    async def handler(task, contract):
        calls.append(task.task_id)
        await asyncio.sleep(0.02)
        return "shared"

    worker = make_worker(handler)
    body = task_frame(make_task_message(requester))
    async with client_for(worker) as client:
        responses = await asyncio.gather(
            *(client.post("/tasks", json=body, headers=AUTH) for _ in range(3))
        )

    assert [r.status_code for r in responses] == [200, 200, 200]
    assert {r.json()["output"] for r in responses} == {"shared"}
    assert calls == ["task-1"]
    await worker.disconnect()


@pytest.mark.asyncio
async def test_listen_mode_excludes_connect() -> None:
    """An instance serving HTTP cannot also connect to the registry."""
    worker = make_worker(lambda task, contract: "ok")
    worker.asgi_app()
    with pytest.raises(RuntimeError):
        await worker.connect()
