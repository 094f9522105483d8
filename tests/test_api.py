"""API tests: triage routes, error mapping, health and the app lifespan."""

import httpx
import pytest
import pytest_asyncio

from ticketflow.config import QueueName, Settings
from ticketflow.main import create_app, lifespan
from ticketflow.triage.application import TriageAgentService

TICKET = {"id": "T-1", "subject": "Reset", "description": "Reset my password", "priority": "low"}


@pytest.fixture
def settings(tmp_path):
    return Settings(
        environment="test",
        config_backend="file",
        config_file_path=tmp_path / "triage.yaml",
        config_watch_enabled=False,
        broker_backend="memory",
        queue_clean_interval_seconds=0,
    )


@pytest_asyncio.fixture
async def service(config_store, scheduler, pipeline, engines):
    service = TriageAgentService(config_store, scheduler, pipeline, **engines)
    await service.initialize()
    await scheduler.start()
    yield service
    await service.shutdown()


@pytest_asyncio.fixture
async def client(settings, service):
    app = create_app(settings)
    app.state.triage_service = service
    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://test") as client:
        yield client


# ========== Processing ==========

@pytest.mark.asyncio
async def test_process_ticket(client):
    response = await client.post("/triage/process", json=TICKET, headers={"X-Correlation-ID": "abc-123"})

    assert response.status_code == 200
    assert response.headers["X-Correlation-ID"] == "abc-123"
    body = response.json()
    assert body["ticket_id"] == "T-1"
    assert body["auto_resolve"] is True
    assert body["recommendation"] == "auto_resolve"
    assert body["knowledge_matches"][0]["article_id"] == "kb-1"


@pytest.mark.asyncio
async def test_process_ticket_validates_body(client):
    response = await client.post("/triage/process", json={"subject": "no id"})

    assert response.status_code == 422


@pytest.mark.asyncio
async def test_batch_separates_results_and_errors(client):
    response = await client.post("/triage/batch", json={"tickets": [TICKET, {"id": "   "}]})

    assert response.status_code == 200
    body = response.json()
    assert body["processed"] == 1
    assert body["failed"] == 1
    assert body["errors"][0]["error"] == "Ticket identifier is required"


@pytest.mark.asyncio
async def test_respond_drafts_reply(client):
    response = await client.post("/triage/respond", json=TICKET)

    assert response.status_code == 200
    assert response.json()["content"] == "Reply for T-1"


# ========== Queues ==========

@pytest.mark.asyncio
async def test_queue_ticket_then_read_job(client):
    response = await client.post("/triage/queue", json={"ticket": TICKET, "priority": "urgent"})

    assert response.status_code == 202
    job = response.json()
    assert job["queue_name"] == QueueName.TICKET_PROCESSING
    assert job["priority"] == 1
    assert job["state"] == "waiting"

    fetched = await client.get(f"/triage/jobs/{QueueName.TICKET_PROCESSING}/{job['id']}")
    assert fetched.status_code == 200
    assert fetched.json()["payload"]["id"] == "T-1"


@pytest.mark.asyncio
async def test_queue_other_job_kinds(client):
    indexing = await client.post("/triage/knowledge/index", json={"articles": [{"id": "kb-2", "title": "VPN"}]})
    drafting = await client.post("/triage/respond/queue", json=TICKET)

    assert indexing.status_code == 202
    assert indexing.json()["queue_name"] == QueueName.KNOWLEDGE_INDEXING
    assert drafting.status_code == 202
    assert drafting.json()["queue_name"] == QueueName.RESPONSE_GENERATION


@pytest.mark.asyncio
async def test_unknown_job_and_queue_are_404(client):
    missing_job = await client.get(f"/triage/jobs/{QueueName.TICKET_PROCESSING}/999")
    missing_queue = await client.get("/triage/queues/nope/stats")

    assert missing_job.status_code == 404
    assert missing_queue.status_code == 404
    assert missing_queue.json()["error_type"] == "QueueNotFoundError"


@pytest.mark.asyncio
async def test_pause_resume_and_clean(client):
    queue = QueueName.TICKET_PROCESSING

    paused = await client.post(f"/triage/queues/{queue}/pause")
    assert paused.status_code == 200
    assert paused.json()["paused"] is True

    resumed = await client.post(f"/triage/queues/{queue}/resume")
    assert resumed.json()["paused"] is False

    cleaned = await client.post(f"/triage/queues/{queue}/clean")
    assert cleaned.status_code == 200
    assert cleaned.json() == {"queue": queue, "completed": 0, "failed": 0}

    stats = await client.get(f"/triage/queues/{queue}/stats")
    assert stats.json()["concurrency"] == 5


# ========== Configuration ==========

@pytest.mark.asyncio
async def test_config_read_update_reset(client):
    current = await client.get("/triage/config")
    assert current.status_code == 200
    assert current.json()["config"]["auto_resolve_threshold"] == 0.85

    updated = await client.patch("/triage/config", json={"auto_resolve_threshold": 0.9})
    assert updated.status_code == 200
    assert updated.json()["config"]["auto_resolve_threshold"] == 0.9
    assert updated.json()["revision"] == current.json()["revision"] + 1

    reset = await client.post("/triage/config/reset")
    assert reset.json()["config"]["auto_resolve_threshold"] == 0.85


@pytest.mark.asyncio
async def test_invalid_config_update_is_422_with_every_error(client):
    response = await client.patch("/triage/config", json={
        "auto_resolve_threshold": 2,
        "openai": {"enabled": True}
    })

    assert response.status_code == 422
    errors = response.json()["errors"]
    assert len(errors) == 2
    assert any(error.startswith("auto_resolve_threshold") for error in errors)


@pytest.mark.asyncio
async def test_config_export_import(client):
    document = (await client.get("/triage/config/export")).json()
    document["config"]["auto_resolution"]["max_priority"] = "low"

    imported = await client.post("/triage/config/import", json=document)
    assert imported.status_code == 200
    assert imported.json()["config"]["auto_resolution"]["max_priority"] == "low"

    rejected = await client.post("/triage/config/import", json={**document, "type": "sla"})
    assert rejected.status_code == 422
    assert rejected.json()["errors"] == ["Invalid configuration type"]


# ========== Health / availability ==========

@pytest.mark.asyncio
async def test_health(client):
    response = await client.get("/health")

    assert response.status_code == 200
    body = response.json()
    assert body["status"] == "healthy"
    assert body["environment"] == "test"


@pytest.mark.asyncio
async def test_routes_unavailable_without_service(settings):
    app = create_app(settings)
    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://test") as client:
        response = await client.post("/triage/process", json=TICKET)
        health = await client.get("/health")

    assert response.status_code == 503
    assert health.json()["status"] == "initializing"


@pytest.mark.asyncio
async def test_lifespan_wires_and_stops_services(settings):
    app = create_app(settings)

    async with lifespan(app):
        service = app.state.triage_service
        assert service.is_initialized
        assert service.scheduler.is_running
        result = await service.process_ticket(TICKET)
        # stub collaborators never clear the threshold
        assert result.auto_resolve is False

    assert app.state.triage_service is None
    assert not service.scheduler.is_running
    assert settings.config_file_path.exists()
