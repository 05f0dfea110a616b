"""
Pytest configuration and fixtures for OutreachHQ API tests.
"""
import asyncio
import time

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from outreachhq.database import Base, get_db
from outreachhq.engine.locks import CampaignLocks
from outreachhq.engine.orchestrator import GenerationOrchestrator, RetryPolicy
from outreachhq.engine.registry import CampaignRegistry
from outreachhq.errors import PermanentGenerationFailure, PublishFailure
from outreachhq.limiter import limiter
from outreachhq.main import app
from outreachhq.models.recipient import Recipient
from outreachhq.models.template import Template
from outreachhq.routes.campaigns import get_registry
from outreachhq.services.delivery import DeliveryQueuePublisher, OutboxPublisher
from outreachhq.services.generation import GeneratedEmail, GenerationService
from outreachhq.services.recipients import RecipientProfileSource

# Disable rate limiting for tests
limiter.enabled = False

# Use in-memory SQLite for tests with shared connection
SQLALCHEMY_DATABASE_URL = "sqlite:///:memory:"

engine = create_engine(
    SQLALCHEMY_DATABASE_URL,
    connect_args={"check_same_thread": False},
    poolclass=StaticPool,
)
TestingSessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)

# Global session for sharing across requests
_test_session = None


def get_test_db():
    """Get the shared test database session."""
    yield _test_session


# ============================================================
# ENGINE FAKES
# ============================================================

class FakeGenerationService(GenerationService):
    """
    Scripted generation service.

    ``script`` maps a recipient id to a list of responses consumed one per
    call; an Exception instance is raised, anything else is returned. Once a
    recipient's script runs out the default email is returned.
    """

    def __init__(self, script=None):
        self.script = {rid: list(responses) for rid, responses in (script or {}).items()}
        self.calls = []
        self.gate = None  # asyncio.Event; when set, calls wait on it

    async def generate(self, history, recipient, prior_draft=None, template=None):
        rid = recipient["id"]
        self.calls.append({
            "recipient_id": rid,
            "history": [turn.text for turn in history],
            "prior_draft": prior_draft,
            "template": template,
        })
        if self.gate is not None:
            await self.gate.wait()

        responses = self.script.get(rid)
        if responses:
            response = responses.pop(0)
            if isinstance(response, Exception):
                raise response
            return response

        return GeneratedEmail(
            subject=f"A note for {recipient['first_name']}",
            body=f"Dear {recipient['first_name']}, {history[-1].text}",
        )

    def calls_for(self, recipient_id):
        return [call for call in self.calls if call["recipient_id"] == recipient_id]


class FakeRecipientSource(RecipientProfileSource):
    """Every id resolves to a profile unless it is listed in ``missing``."""

    def __init__(self, missing=()):
        self.missing = set(missing)

    async def get_profile(self, recipient_id):
        if recipient_id in self.missing:
            raise PermanentGenerationFailure(f"Recipient {recipient_id} not found", kind="profile_missing")
        return {"id": recipient_id, "first_name": f"Donor{recipient_id}"}


class RecordingPublisher(DeliveryQueuePublisher):
    """Keeps published batches in memory; ``fail_next`` makes the next publish fail."""

    def __init__(self):
        self.batches = []
        self.fail_next = False

    async def publish(self, campaign_id, messages):
        if self.fail_next:
            self.fail_next = False
            raise PublishFailure("Delivery queue unavailable", {"campaign_id": campaign_id})
        self.batches.append((campaign_id, list(messages)))
        return f"batch-{len(self.batches)}"


async def no_sleep(delay):
    return None


def build_registry(service=None, publisher=None, recipients=None, max_retries=2, concurrency=5, sleep=no_sleep):
    """A registry wired to test doubles. Call from inside a running loop or a request."""
    locks = CampaignLocks()
    orchestrator = GenerationOrchestrator(
        service or FakeGenerationService(),
        recipients or FakeRecipientSource(),
        locks,
        policy=RetryPolicy(max_retries=max_retries, call_timeout=5.0),
        concurrency=concurrency,
        sleep=sleep,
    )
    return CampaignRegistry(orchestrator, publisher or RecordingPublisher(), locks)


async def settle(registry):
    """Let every scheduled run and its completion callback finish."""
    await registry.orchestrator.drain()
    await asyncio.sleep(0)


# ============================================================
# DATABASE / APP FIXTURES
# ============================================================

@pytest.fixture(scope="function")
def db():
    """Create a fresh database for each test."""
    global _test_session

    Base.metadata.create_all(bind=engine)

    _test_session = TestingSessionLocal()

    app.dependency_overrides[get_db] = get_test_db

    yield _test_session

    app.dependency_overrides.clear()
    _test_session.close()
    _test_session = None

    Base.metadata.drop_all(bind=engine)


@pytest.fixture(scope="function")
def generation_service():
    return FakeGenerationService()


@pytest.fixture(scope="function")
def registry(db, generation_service):
    """Campaign registry backed by the fake generator and the test outbox."""
    registry = build_registry(
        service=generation_service,
        publisher=OutboxPublisher(TestingSessionLocal),
    )
    app.dependency_overrides[get_registry] = lambda: registry
    return registry


@pytest.fixture(scope="function")
def client(db, registry):
    """Create a test client."""
    with TestClient(app) as c:
        yield c


@pytest.fixture(scope="function")
def recipients(db):
    """Three donors in selection order."""
    rows = [
        Recipient(first_name="Ada", last_name="Lovelace", email="ada@example.com", notes="Gave in 2023"),
        Recipient(first_name="Grace", last_name="Hopper", email="grace@example.com"),
        Recipient(first_name="Alan", last_name="Turing", email="alan@example.com", attributes={"tier": "gold"}),
    ]
    db.add_all(rows)
    db.commit()
    for row in rows:
        db.refresh(row)
    return rows


@pytest.fixture(scope="function")
def template(db):
    row = Template(name="Year-end appeal", content="Thank them for last year's gift.", category="appeal")
    db.add(row)
    db.commit()
    db.refresh(row)
    return row


def wait_for_status(client, campaign_id, *statuses, timeout=5.0):
    """Poll the campaign until it reaches one of ``statuses``."""
    deadline = time.monotonic() + timeout
    while True:
        data = client.get(f"/api/campaigns/{campaign_id}").json()
        if data["status"] in statuses:
            return data
        if time.monotonic() > deadline:
            raise AssertionError(f"Campaign stuck in {data['status']}, expected one of {statuses}")
        time.sleep(0.02)
