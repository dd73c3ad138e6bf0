"""
Autopilot - API Tests
=====================

HTTP surface of the cycle engine, driven through the fake executor.
"""

from pathlib import Path

from fastapi import FastAPI
from fastapi.testclient import TestClient
from httpx import AsyncClient

from autopilot.api.auto import ClientQueue
from autopilot.api.main import create_app
from autopilot.core import repository
from autopilot.core.engine.cycle_engine import CycleEngine
from autopilot.core.event_hub import EventHub
from autopilot.core.events import AutoEvent, AutoEventType, EventBuilder

from conftest import ScriptedExecutors, TestingSessionLocal, wait_until


async def _start(client: AsyncClient, tmp_path: Path, **payload) -> dict:
    response = await client.post(
        "/api/v1/auto/start",
        json={"target_project": str(tmp_path), **payload},
    )
    assert response.status_code == 201, response.text
    return response.json()["data"]


# ==========================================================================
# Health
# ==========================================================================

class TestHealth:

    async def test_health_reports_engine(self, client: AsyncClient):
        response = await client.get("/health")

        assert response.status_code == 200
        data = response.json()
        assert data["engine"] == "idle"
        assert "version" in data

    async def test_root(self, client: AsyncClient):
        response = await client.get("/")
        assert response.status_code == 200
        assert response.json()["health"] == "/health"


# ==========================================================================
# Lifecycle
# ==========================================================================

class TestLifecycle:
    """Start, pause, resume and stop through the API."""

    async def test_start_and_status(self, client: AsyncClient, executors: ScriptedExecutors, tmp_path: Path):
        executors.block = True
        data = await _start(client, tmp_path, initial_prompt="Build a todo app")
        assert data["target_project"] == str(tmp_path)

        await wait_until(executors.running.is_set)
        response = await client.get("/api/v1/auto/status")

        assert response.status_code == 200
        status = response.json()
        assert status["session_id"] == data["session_id"]
        assert status["status"] == "running"
        assert status["current_phase"] == "discovery"
        assert status["stats"]["total_cycles"] == 0

    async def test_second_start_conflicts(self, client: AsyncClient, executors: ScriptedExecutors, tmp_path: Path):
        executors.block = True
        await _start(client, tmp_path)

        response = await client.post("/api/v1/auto/start", json={"target_project": str(tmp_path)})

        assert response.status_code == 409
        assert "already running" in response.json()["detail"]

    async def test_start_missing_directory(self, client: AsyncClient, tmp_path: Path):
        response = await client.post(
            "/api/v1/auto/start",
            json={"target_project": str(tmp_path / "nope")},
        )
        assert response.status_code == 409

    async def test_pause_resume_stop(self, client: AsyncClient, executors: ScriptedExecutors, tmp_path: Path):
        executors.block = True
        await _start(client, tmp_path)
        await wait_until(executors.running.is_set)

        response = await client.post("/api/v1/auto/pause")
        assert response.status_code == 200
        assert (await client.get("/api/v1/auto/status")).json()["status"] == "paused"

        response = await client.post("/api/v1/auto/resume")
        assert response.status_code == 200
        assert (await client.get("/api/v1/auto/status")).json()["status"] == "running"

        response = await client.post("/api/v1/auto/stop")
        assert response.status_code == 200
        assert response.json()["message"] == "Autonomous mode stopped"
        assert (await client.get("/api/v1/auto/status")).json()["status"] == "idle"

    async def test_stop_when_idle(self, client: AsyncClient):
        response = await client.post("/api/v1/auto/stop")

        assert response.status_code == 200
        assert response.json()["message"] == "Autonomous mode was not running"

    async def test_pause_and_resume_when_idle_conflict(self, client: AsyncClient):
        assert (await client.post("/api/v1/auto/pause")).status_code == 409
        assert (await client.post("/api/v1/auto/resume")).status_code == 409

    async def test_resume_running_session_conflicts(self, client: AsyncClient, executors: ScriptedExecutors, tmp_path: Path):
        executors.block = True
        await _start(client, tmp_path)

        response = await client.post("/api/v1/auto/resume")

        assert response.status_code == 409


# ==========================================================================
# User Prompts
# ==========================================================================

class TestPrompts:

    async def test_add_prompt(self, client: AsyncClient, executors: ScriptedExecutors, tmp_path: Path):
        executors.block = True
        data = await _start(client, tmp_path)

        response = await client.post("/api/v1/auto/prompts", json={"content": "Prefer small commits"})

        assert response.status_code == 201
        prompt = response.json()
        assert prompt["session_id"] == data["session_id"]
        assert prompt["content"] == "Prefer small commits"
        assert prompt["added_at_cycle"] == 0

    async def test_add_prompt_without_session(self, client: AsyncClient):
        response = await client.post("/api/v1/auto/prompts", json={"content": "hello"})
        assert response.status_code == 409

    async def test_empty_prompt_rejected(self, client: AsyncClient):
        response = await client.post("/api/v1/auto/prompts", json={"content": ""})
        assert response.status_code == 422


# ==========================================================================
# History
# ==========================================================================

class TestHistory:

    async def test_cycles_and_findings(self, app: FastAPI, client: AsyncClient, session_factory, tmp_path: Path):
        async with session_factory() as db:
            await repository.update_auto_settings(db, max_cycles=2)
            await db.commit()
        data = await _start(client, tmp_path)
        await wait_until(lambda: not app.state.engine.is_active)

        response = await client.get(f"/api/v1/auto/sessions/{data['session_id']}/cycles")
        assert response.status_code == 200
        cycles = response.json()
        assert [c["cycle_number"] for c in cycles] == [0, 1]
        assert all(c["status"] == "completed" for c in cycles)

        response = await client.get(f"/api/v1/auto/sessions/{data['session_id']}/findings")
        assert response.status_code == 200
        assert response.json() == []

    async def test_unknown_session(self, client: AsyncClient):
        assert (await client.get("/api/v1/auto/sessions/missing/cycles")).status_code == 404
        assert (await client.get("/api/v1/auto/sessions/missing/findings")).status_code == 404


# ==========================================================================
# Event Stream
# ==========================================================================

class TestStream:

    def test_stream_without_engine(self):
        app = create_app()
        with TestClient(app).websocket_connect("/api/v1/auto/stream") as websocket:
            message = websocket.receive_json()
        assert message["type"] == "error"
        assert message["data"]["message"] == "Engine not initialized"

    def test_history_then_live_events(self):
        app = create_app()
        engine = CycleEngine(session_factory=TestingSessionLocal, hub=EventHub(buffer_size=10))
        app.state.engine = engine
        engine.emit(EventBuilder.session_status("running", "session-1"))

        with TestClient(app).websocket_connect("/api/v1/auto/stream") as websocket:
            replayed = websocket.receive_json()
            websocket.portal.call(engine.emit, AutoEvent(type=AutoEventType.TEXT_DELTA, data={"text": "live"}))
            live = websocket.receive_json()

        assert replayed["type"] == "session_status"
        assert replayed["data"] == {"status": "running", "session_id": "session-1"}
        assert "timestamp" in replayed
        assert live["type"] == "text_delta"
        assert live["data"] == {"text": "live"}
        assert engine.hub.listeners == set()


class TestClientQueue:

    async def test_full_queue_drops_new_events(self):
        queue = ClientQueue(maxsize=2)
        events = [AutoEvent(type=AutoEventType.TEXT_DELTA, data={"text": str(i)}) for i in range(3)]

        for event in events:
            queue.put(event)

        assert queue.dropped == 1
        assert queue.queue.qsize() == 2
        assert await queue.get() is events[0]
        assert await queue.get() is events[1]
