"""Tests for TriageAgentService: queue wiring, config propagation, health."""

import pytest
import pytest_asyncio

from ticketflow.config import HealthStatus, JobPriority, JobState, QueueName
from ticketflow.core import ConfigurationException, InvalidTicketError
from ticketflow.queueing.domain import BackoffType
from ticketflow.triage.application import (
    MANAGED_QUEUES,
    TriageAgentService,
    job_defaults_for,
    job_priority_for,
)
from ticketflow.aiconfig.domain import default_config

from tests.conftest import wait_until

TICKET = {"id": "T-1", "subject": "Reset", "description": "Reset my password", "priority": "low"}


@pytest.fixture
def service(config_store, scheduler, pipeline, engines):
    return TriageAgentService(config_store, scheduler, pipeline, **engines)


@pytest_asyncio.fixture
async def running_service(service, scheduler):
    await service.initialize()
    await scheduler.start()
    yield service
    await service.shutdown()


async def wait_for_state(scheduler, queue_name, job_id, state):
    async def check():
        job = await scheduler.get_job_status(queue_name, job_id)
        return job is not None and job.state == state
    await wait_until(check)
    return await scheduler.get_job_status(queue_name, job_id)


def test_job_priority_mapping():
    assert job_priority_for("urgent") == JobPriority.URGENT
    assert job_priority_for("CRITICAL") == JobPriority.URGENT
    assert job_priority_for("high") == JobPriority.HIGH
    assert job_priority_for("medium") == JobPriority.NORMAL
    assert job_priority_for(None) == JobPriority.NORMAL


def test_job_defaults_follow_config():
    defaults = job_defaults_for(default_config())

    assert defaults["attempts"] == 3
    assert defaults["backoff"].type == BackoffType.EXPONENTIAL
    assert defaults["backoff"].delay == 2.0
    assert defaults["timeout"] == 30.0


@pytest.mark.asyncio
async def test_initialize_registers_queues_from_config(service, scheduler):
    await service.initialize()

    assert set(scheduler.queue_names) == set(MANAGED_QUEUES)
    stats = await scheduler.get_queue_stats(QueueName.TICKET_PROCESSING)
    assert stats["concurrency"] == 5
    assert (await scheduler.get_queue_stats(QueueName.KNOWLEDGE_INDEXING))["concurrency"] == 2
    assert service.is_initialized

    # initializing twice is a no-op
    await service.initialize()


@pytest.mark.asyncio
async def test_queueing_requires_initialization(service):
    with pytest.raises(ConfigurationException):
        await service.queue_ticket_processing(TICKET)


@pytest.mark.asyncio
async def test_queued_ticket_is_processed(running_service, scheduler):
    job = await running_service.queue_ticket_processing(TICKET)

    done = await wait_for_state(scheduler, QueueName.TICKET_PROCESSING, job.id, JobState.COMPLETED)

    assert done.return_value["ticket_id"] == "T-1"
    assert done.return_value["auto_resolve"] is True


@pytest.mark.asyncio
async def test_queue_priority_follows_ticket_priority(running_service, scheduler):
    await scheduler.pause_queue(QueueName.TICKET_PROCESSING)

    urgent = await running_service.queue_ticket_processing({**TICKET, "priority": "urgent"})
    explicit = await running_service.queue_ticket_processing(TICKET, priority="high")

    assert urgent.priority == JobPriority.URGENT
    assert explicit.priority == JobPriority.HIGH


@pytest.mark.asyncio
async def test_invalid_ticket_is_rejected_before_queueing(running_service):
    with pytest.raises(InvalidTicketError):
        await running_service.queue_ticket_processing({"description": "no id"})


@pytest.mark.asyncio
async def test_invalid_ticket_job_fails_without_retry(running_service, scheduler):
    job = await scheduler.add_job(QueueName.TICKET_PROCESSING, {"description": "no id"})

    failed = await wait_for_state(scheduler, QueueName.TICKET_PROCESSING, job.id, JobState.FAILED)

    assert failed.attempts_made == 1
    assert failed.failed_reason == "Ticket identifier is required"


@pytest.mark.asyncio
async def test_knowledge_indexing_job(running_service, scheduler, engines):
    job = await running_service.queue_knowledge_indexing([{"id": "kb-9", "title": "VPN setup"}])

    done = await wait_for_state(scheduler, QueueName.KNOWLEDGE_INDEXING, job.id, JobState.COMPLETED)

    assert done.return_value == {"indexed": 1, "skipped": 0}
    assert engines["knowledge_search"].indexed == [{"id": "kb-9", "title": "VPN setup"}]


@pytest.mark.asyncio
async def test_response_generation_job(running_service, scheduler):
    job = await running_service.queue_response_generation(TICKET)

    done = await wait_for_state(scheduler, QueueName.RESPONSE_GENERATION, job.id, JobState.COMPLETED)

    assert done.return_value["content"] == "Reply for T-1"
    assert done.return_value["citations"] == ["kb-1"]


@pytest.mark.asyncio
async def test_config_change_updates_live_queues(running_service, scheduler, config_store):
    await config_store.update({
        "queue": {"concurrency": {"ticket-processing": 8}, "retry_attempts": 5}
    })

    stats = await scheduler.get_queue_stats(QueueName.TICKET_PROCESSING)
    assert stats["concurrency"] == 8

    await scheduler.pause_queue(QueueName.TICKET_PROCESSING)
    job = await running_service.queue_ticket_processing(TICKET)
    assert job.max_attempts == 5


@pytest.mark.asyncio
async def test_health_aggregates_components(service, running_service):
    health = await running_service.get_health_status()

    assert health["status"] == HealthStatus.HEALTHY
    assert set(health["engines"]) == {"classification", "knowledge", "response", "confidence"}
    assert health["queues"]["broker"] == "connected"
    assert health["config"]["config_loaded"] is True


@pytest.mark.asyncio
async def test_health_before_initialize(service):
    health = await service.get_health_status()

    assert health["status"] == "initializing"
    assert health["engines"] == {}


@pytest.mark.asyncio
async def test_unhealthy_engine_makes_service_unhealthy(running_service, engines):
    async def broken_health():
        raise ConnectionError("engine unreachable")

    engines["classifier"].get_health = broken_health

    health = await running_service.get_health_status()

    assert health["engines"]["classification"]["status"] == HealthStatus.UNHEALTHY
    assert health["status"] == HealthStatus.UNHEALTHY
