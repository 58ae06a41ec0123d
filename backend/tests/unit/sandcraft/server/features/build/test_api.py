"""Tests for the /build HTTP surface.

The full application is exercised in-process through httpx's ASGI transport,
with the sandbox provider swapped for the fake and the process-wide handle
cache and in-flight registry pointed at per-test instances.
"""

import json
from collections.abc import AsyncGenerator
from typing import Any
from uuid import UUID
from uuid import uuid4

import httpx
import pytest
import pytest_asyncio
from fastapi import FastAPI
from sqlalchemy.ext.asyncio import AsyncEngine

from sandcraft.configs.app_configs import AUTH_USER_ID_HEADER
from sandcraft.main import get_application
from sandcraft.server.features.build.agent import registry as registry_module
from sandcraft.server.features.build.agent.registry import InFlightRegistry
from sandcraft.server.features.build.api.dependencies import get_provider
from sandcraft.server.features.build.errors import ProvisionFailedError
from sandcraft.server.features.build.sandbox import manager as manager_module
from sandcraft.server.features.build.sandbox.manager import SandboxHandleCache
from tests.unit.sandcraft.server.features.build.fakes import CommandScript
from tests.unit.sandcraft.server.features.build.fakes import FakeSandboxProvider


def _headers(user_id: UUID) -> dict[str, str]:
    return {AUTH_USER_ID_HEADER: str(user_id)}


def _sse_events(body: str) -> list[tuple[str, dict[str, Any]]]:
    events = []
    for frame in body.split("\n\n"):
        if not frame.strip():
            continue
        event_line, data_line = frame.split("\n")
        events.append(
            (event_line.removeprefix("event: "), json.loads(data_line[len("data: ") :]))
        )
    return events


def _agent_line(event_type: str, data: dict[str, Any] | None = None) -> str:
    return json.dumps({"type": event_type, "data": data}) + "\n"


@pytest.fixture()
def app(
    engine: AsyncEngine,
    provider: FakeSandboxProvider,
    handle_cache: SandboxHandleCache,
    registry: InFlightRegistry,
    monkeypatch: pytest.MonkeyPatch,
) -> FastAPI:
    monkeypatch.setattr(manager_module, "_handle_cache_instance", handle_cache)
    monkeypatch.setattr(registry_module, "_registry_instance", registry)

    app = get_application()
    app.dependency_overrides[get_provider] = lambda: provider
    return app


@pytest_asyncio.fixture()
async def client(
    app: FastAPI, owner_id: UUID
) -> AsyncGenerator[httpx.AsyncClient, None]:
    async with httpx.AsyncClient(
        transport=httpx.ASGITransport(app=app),
        base_url="http://testserver",
        headers=_headers(owner_id),
    ) as client:
        yield client


async def _create_project(client: httpx.AsyncClient, name: str = "todo app") -> str:
    response = await client.post("/build/projects", json={"name": name})
    assert response.status_code == 200
    return response.json()["id"]


async def _start_sandbox(client: httpx.AsyncClient, project_id: str) -> str:
    response = await client.post(f"/build/sandbox/project/{project_id}/start")
    assert response.status_code == 200
    return response.json()["id"]


# ---------------------------------------------------------------------------
# Auth
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_requests_without_valid_user_are_rejected(app: FastAPI) -> None:
    async with httpx.AsyncClient(
        transport=httpx.ASGITransport(app=app), base_url="http://testserver"
    ) as anonymous:
        response = await anonymous.get("/build/projects")
        assert response.status_code == 401

        response = await anonymous.get(
            "/build/projects", headers={AUTH_USER_ID_HEADER: "not-a-uuid"}
        )
        assert response.status_code == 401


@pytest.mark.asyncio
async def test_health(client: httpx.AsyncClient) -> None:
    response = await client.get("/health")
    assert response.json() == {"status": "healthy"}


# ---------------------------------------------------------------------------
# Projects
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_project_crud(client: httpx.AsyncClient, owner_id: UUID) -> None:
    response = await client.post(
        "/build/projects", json={"name": "todo app", "description": "tasks"}
    )
    assert response.status_code == 200
    created = response.json()
    assert created["name"] == "todo app"
    assert created["description"] == "tasks"
    assert created["ownerId"] == str(owner_id)

    response = await client.get("/build/projects")
    assert [p["id"] for p in response.json()["projects"]] == [created["id"]]

    response = await client.get(f"/build/projects/{created['id']}")
    assert response.json()["name"] == "todo app"

    response = await client.delete(f"/build/projects/{created['id']}")
    assert response.json() == {"deleted": True}

    response = await client.get(f"/build/projects/{created['id']}")
    assert response.status_code == 404
    assert response.json()["code"] == "not_found"


@pytest.mark.asyncio
async def test_project_name_is_validated(client: httpx.AsyncClient) -> None:
    response = await client.post("/build/projects", json={"name": ""})
    assert response.status_code == 422


@pytest.mark.asyncio
async def test_other_users_project_is_forbidden(client: httpx.AsyncClient) -> None:
    project_id = await _create_project(client)
    stranger = _headers(uuid4())

    response = await client.get(f"/build/projects/{project_id}", headers=stranger)
    assert response.status_code == 403
    assert response.json()["code"] == "forbidden"

    response = await client.get("/build/projects", headers=stranger)
    assert response.json() == {"projects": []}

    response = await client.post(
        f"/build/sandbox/project/{project_id}/start", headers=stranger
    )
    assert response.status_code == 403


@pytest.mark.asyncio
async def test_deleting_project_kills_its_sandbox(
    client: httpx.AsyncClient, provider: FakeSandboxProvider
) -> None:
    project_id = await _create_project(client)
    sandbox_id = await _start_sandbox(client, project_id)

    response = await client.delete(f"/build/projects/{project_id}")

    assert response.json() == {"deleted": True}
    assert provider.killed == [sandbox_id]
    response = await client.post(f"/build/sandbox/{sandbox_id}/pause")
    assert response.status_code == 404


# ---------------------------------------------------------------------------
# Sandbox lifecycle
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_sandbox_lifecycle(
    client: httpx.AsyncClient, provider: FakeSandboxProvider
) -> None:
    project_id = await _create_project(client)

    response = await client.get(f"/build/sandbox/project/{project_id}")
    assert response.status_code == 404

    response = await client.post(f"/build/sandbox/project/{project_id}/start")
    started = response.json()
    assert started["state"] == "running"
    assert started["projectId"] == project_id
    sandbox_id = started["id"]

    # Starting again reuses the running sandbox
    response = await client.post(f"/build/sandbox/project/{project_id}/start")
    assert response.json()["id"] == sandbox_id
    assert provider.created == [sandbox_id]

    response = await client.post(f"/build/sandbox/{sandbox_id}/pause")
    assert response.json()["state"] == "paused"

    response = await client.post(f"/build/sandbox/{sandbox_id}/pause")
    assert response.status_code == 400
    assert response.json()["code"] == "invalid_state"

    response = await client.post(f"/build/sandbox/{sandbox_id}/resume")
    assert response.json()["state"] == "running"

    response = await client.get(f"/build/sandbox/project/{project_id}")
    assert response.json()["state"] == "running"

    for _ in range(2):
        response = await client.post(f"/build/sandbox/{sandbox_id}/terminate")
        assert response.status_code == 200
        assert response.json()["state"] == "terminated"


@pytest.mark.asyncio
async def test_unknown_sandbox_is_not_found(client: httpx.AsyncClient) -> None:
    response = await client.post("/build/sandbox/sbx-missing/resume")
    assert response.status_code == 404
    assert response.json()["code"] == "not_found"


@pytest.mark.asyncio
async def test_provision_failure_maps_to_bad_gateway(
    client: httpx.AsyncClient, provider: FakeSandboxProvider
) -> None:
    project_id = await _create_project(client)
    provider.create_error = ProvisionFailedError("no capacity")

    response = await client.post(f"/build/sandbox/project/{project_id}/start")

    assert response.status_code == 502
    assert response.json()["code"] == "provision_failed"


# ---------------------------------------------------------------------------
# Files, commands and preview
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_file_operations(client: httpx.AsyncClient) -> None:
    sandbox_id = await _start_sandbox(client, await _create_project(client))
    base = f"/build/sandbox/{sandbox_id}"

    response = await client.post(f"{base}/directory", json={"path": "/app"})
    assert response.json() == {"path": "/app"}

    response = await client.post(
        f"{base}/file", json={"path": "/app/index.html", "content": "<h1>hi</h1>"}
    )
    assert response.status_code == 200

    response = await client.get(f"{base}/files", params={"path": "/app"})
    listing = response.json()
    assert listing["path"] == "/app"
    assert [(e["name"], e["isDirectory"]) for e in listing["entries"]] == [
        ("index.html", False)
    ]

    response = await client.get(f"{base}/file", params={"path": "/app/index.html"})
    assert response.json() == {"path": "/app/index.html", "content": "<h1>hi</h1>"}

    response = await client.delete(f"{base}/file", params={"path": "/app/index.html"})
    assert response.status_code == 200
    response = await client.get(f"{base}/files", params={"path": "/app"})
    assert response.json()["entries"] == []

    response = await client.get(f"{base}/file", params={"path": "/app/index.html"})
    assert response.status_code == 404


@pytest.mark.asyncio
async def test_operations_on_paused_sandbox_are_rejected(
    client: httpx.AsyncClient,
) -> None:
    sandbox_id = await _start_sandbox(client, await _create_project(client))
    await client.post(f"/build/sandbox/{sandbox_id}/pause")

    response = await client.post(
        f"/build/sandbox/{sandbox_id}/execute", json={"command": "ls"}
    )

    assert response.status_code == 400
    assert response.json()["code"] == "invalid_state"


@pytest.mark.asyncio
async def test_execute_returns_output_and_exit_code(
    client: httpx.AsyncClient, provider: FakeSandboxProvider
) -> None:
    sandbox_id = await _start_sandbox(client, await _create_project(client))
    provider.scripts = [
        ("npm test", CommandScript(stdout_chunks=["1 failing\n"], exit_code=1)),
    ]

    response = await client.post(
        f"/build/sandbox/{sandbox_id}/execute",
        json={"command": "npm test", "cwd": "/app", "timeoutSeconds": 30},
    )

    # A failing command is still a successful request
    assert response.status_code == 200
    assert response.json() == {"stdout": "1 failing\n", "stderr": "", "exitCode": 1}
    recorded = provider.commands[-1]
    assert recorded.cwd == "/app"
    assert recorded.timeout_seconds == 30


@pytest.mark.asyncio
async def test_execute_stream_relays_output(
    client: httpx.AsyncClient, provider: FakeSandboxProvider
) -> None:
    sandbox_id = await _start_sandbox(client, await _create_project(client))
    provider.scripts = [
        ("npm run build", CommandScript(stdout_chunks=["step 1\n", "step 2\n"])),
        ("false", CommandScript(stderr="nope\n", exit_code=3)),
    ]

    response = await client.post(
        f"/build/sandbox/{sandbox_id}/execute/stream",
        json={"command": "npm run build"},
    )
    assert response.headers["content-type"].startswith("text/event-stream")
    events = _sse_events(response.text)
    assert [event_type for event_type, _ in events] == [
        "terminal:output",
        "terminal:output",
        "agent:done",
    ]
    assert [payload["data"]["content"] for _, payload in events[:2]] == [
        "step 1\n",
        "step 2\n",
    ]

    response = await client.post(
        f"/build/sandbox/{sandbox_id}/execute/stream", json={"command": "false"}
    )
    events = _sse_events(response.text)
    assert events[0][1]["data"] == {"stream": "stderr", "content": "nope\n"}
    assert events[-1][0] == "agent:error"
    assert events[-1][1]["data"] == {
        "message": "Command exited with code 3",
        "code": "command_failed",
    }


@pytest.mark.asyncio
async def test_preview_url_is_stored(client: httpx.AsyncClient) -> None:
    project_id = await _create_project(client)
    sandbox_id = await _start_sandbox(client, project_id)

    response = await client.get(
        f"/build/sandbox/{sandbox_id}/preview", params={"port": 3000}
    )
    assert response.json() == {
        "port": 3000,
        "url": f"https://3000-{sandbox_id}.sandbox.test",
    }

    response = await client.get(f"/build/sandbox/project/{project_id}")
    assert response.json()["previewUrl"] == f"https://3000-{sandbox_id}.sandbox.test"

    response = await client.get(
        f"/build/sandbox/{sandbox_id}/preview", params={"port": 0}
    )
    assert response.status_code == 422


# ---------------------------------------------------------------------------
# Agent
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_chat_streams_turn_and_history_has_it(
    client: httpx.AsyncClient, provider: FakeSandboxProvider
) -> None:
    project_id = await _create_project(client)
    provider.agent_script = CommandScript(
        stdout_chunks=[
            _agent_line("agent:message", {"content": "Hello!"}),
            _agent_line("agent:done", {"sessionId": "sess-9"}),
        ]
    )

    response = await client.post(
        "/build/agent/chat", json={"projectId": project_id, "content": "hi"}
    )

    assert response.status_code == 200
    assert response.headers["cache-control"] == "no-cache"
    events = _sse_events(response.text)
    assert [event_type for event_type, _ in events] == [
        "sandbox:status",
        "sandbox:status",
        "agent:message",
        "agent:done",
    ]
    assert events[-1][1]["data"] == {"sessionId": "sess-9"}

    response = await client.get(f"/build/agent/history/{project_id}")
    history = response.json()
    assert history["conversationId"] is not None
    assert [(m["role"], m["content"]) for m in history["messages"]] == [
        ("user", "hi"),
        ("assistant", "Hello!"),
    ]

    response = await client.get(f"/build/sandbox/project/{project_id}")
    assert response.json()["agentSessionId"] == "sess-9"


@pytest.mark.asyncio
async def test_history_of_new_project_is_empty(client: httpx.AsyncClient) -> None:
    project_id = await _create_project(client)

    response = await client.get(f"/build/agent/history/{project_id}")

    assert response.json() == {"conversationId": None, "messages": []}


@pytest.mark.asyncio
async def test_chat_while_turn_in_flight_is_conflict(
    client: httpx.AsyncClient, registry: InFlightRegistry
) -> None:
    project_id = await _create_project(client)
    cancel_event = registry.register(UUID(project_id))
    assert cancel_event is not None

    response = await client.post(
        "/build/agent/chat", json={"projectId": project_id, "content": "hi"}
    )
    assert response.status_code == 409
    assert response.json()["code"] == "busy"

    response = await client.post("/build/agent/stop", json={"projectId": project_id})
    assert response.json() == {"stopped": True}
    assert cancel_event.is_set()

    registry.deregister(UUID(project_id), cancel_event)
    response = await client.post("/build/agent/stop", json={"projectId": project_id})
    assert response.json() == {"stopped": False}


@pytest.mark.asyncio
async def test_chat_validates_request(client: httpx.AsyncClient) -> None:
    project_id = await _create_project(client)

    response = await client.post(
        "/build/agent/chat", json={"projectId": project_id, "content": ""}
    )
    assert response.status_code == 422

    response = await client.post(
        "/build/agent/chat", json={"projectId": str(uuid4()), "content": "hi"}
    )
    assert response.status_code == 404
