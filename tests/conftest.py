"""
Shared fixtures: in-memory persistence, scriptable pipeline collaborators
and a controllable clock.
"""

import asyncio
import copy
from typing import Any, Dict, List, Optional, Sequence

import pytest

from ticketflow.aiconfig.application import ConfigStore, IConfigRepository
from ticketflow.queueing.application import QueueScheduler
from ticketflow.queueing.infrastructure import InMemoryBroker
from ticketflow.triage.application import (
    IClassificationEngine,
    IConfidenceScorer,
    IKnowledgeSearch,
    IResponseGenerator,
    TriagePipeline,
)
from ticketflow.triage.domain import Classification, KnowledgeMatch, SuggestedResponse, Ticket


# ========== Persistence ==========

class MemoryConfigRepository(IConfigRepository):
    """Keeps the settings mapping in memory and records every save."""

    def __init__(self, settings: Optional[Dict[str, Any]] = None):
        self.settings = copy.deepcopy(settings)
        self.saves: List[Dict[str, Any]] = []
        self.fail_on_save = False
        self.fail_on_load = False

    async def load_config(self) -> Optional[Dict[str, Any]]:
        if self.fail_on_load:
            raise ConnectionError("database unavailable")
        return copy.deepcopy(self.settings)

    async def save_config(self, settings: Dict[str, Any]) -> None:
        if self.fail_on_save:
            raise ConnectionError("database unavailable")
        self.settings = copy.deepcopy(settings)
        self.saves.append(copy.deepcopy(settings))


# ========== Pipeline collaborators ==========

class FakeClassifier(IClassificationEngine):
    def __init__(self, category="password_reset", confidence=0.95, priority=None, error=None):
        self.category = category
        self.confidence = confidence
        self.priority = priority
        self.error = error
        self.calls: List[Ticket] = []

    async def classify(self, ticket: Ticket) -> Classification:
        self.calls.append(ticket)
        if self.error:
            raise self.error
        return Classification(
            category=self.category,
            confidence=self.confidence,
            priority=self.priority,
            reasoning="fake"
        )


class FakeKnowledgeSearch(IKnowledgeSearch):
    def __init__(self, matches=None, error=None):
        self.matches = list(matches) if matches is not None else [
            KnowledgeMatch(article_id="kb-1", title="Resetting your password", score=0.92)
        ]
        self.error = error
        self.indexed: List[Dict[str, Any]] = []

    async def search(self, ticket: Ticket, classification: Optional[Classification]) -> Sequence[KnowledgeMatch]:
        if self.error:
            raise self.error
        return list(self.matches)

    async def index_articles(self, articles: List[Dict[str, Any]]) -> Dict[str, Any]:
        self.indexed.extend(articles)
        return {"indexed": len(articles), "skipped": 0}


class FakeResponseGenerator(IResponseGenerator):
    def __init__(self, confidence=0.9, error=None):
        self.confidence = confidence
        self.error = error

    async def generate(self, ticket, classification, matches) -> SuggestedResponse:
        if self.error:
            raise self.error
        return SuggestedResponse(
            content=f"Reply for {ticket.id}",
            type="solution" if matches else "acknowledgment",
            confidence=self.confidence,
            citations=tuple(match.article_id for match in matches)
        )


class FakeConfidenceScorer(IConfidenceScorer):
    def __init__(self, score: Any = 0.9, error=None):
        self.score = score
        self.error = error

    async def calculate(self, ticket, classification, matches, response) -> float:
        if self.error:
            raise self.error
        return self.score


class FakeClock:
    """Manually advanced epoch-seconds clock."""

    def __init__(self, now: float = 1_700_000_000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


async def wait_until(predicate, timeout: float = 3.0, interval: float = 0.01) -> None:
    """Poll an async or sync predicate until it is truthy."""
    deadline = asyncio.get_running_loop().time() + timeout
    while True:
        result = predicate()
        if asyncio.iscoroutine(result):
            result = await result
        if result:
            return
        if asyncio.get_running_loop().time() > deadline:
            raise AssertionError("condition not met in time")
        await asyncio.sleep(interval)


# ========== Fixtures ==========

@pytest.fixture
def config_repository():
    return MemoryConfigRepository()


@pytest.fixture
def config_store(config_repository):
    return ConfigStore(config_repository)


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def broker():
    return InMemoryBroker()


@pytest.fixture
def scheduler(broker):
    return QueueScheduler(
        broker,
        lock_duration=30.0,
        stall_interval=30.0,
        poll_interval=0.01,
        drain_timeout=1.0,
    )


@pytest.fixture
def engines():
    return {
        "classifier": FakeClassifier(),
        "knowledge_search": FakeKnowledgeSearch(),
        "response_generator": FakeResponseGenerator(),
        "confidence_scorer": FakeConfidenceScorer(),
    }


@pytest.fixture
def pipeline(config_store, engines):
    return TriagePipeline(config_store, **engines)
