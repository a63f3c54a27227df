"""
Shared fixtures: a temporary case database, a controllable clock for the
rate limiter, and a pipeline wired to both.
"""

import pytest
from fastapi.testclient import TestClient

from casedesk.api.deps import get_pipeline
from casedesk.api.main import app
from casedesk.core.db import init_db
from casedesk.core.rate_limit import RateLimiter
from casedesk.core.submission import build_pipeline


class FakeClock:
    """Monotonic clock stand-in that only moves when told to."""

    def __init__(self, start: float = 1000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float):
        self.now += seconds


@pytest.fixture
def db_path(tmp_path, monkeypatch):
    """Create a temporary database for testing."""
    path = str(tmp_path / "casedesk_test.db")
    monkeypatch.setenv("DB_PATH", path)
    init_db(path)
    return path


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def rate_limit_per_minute():
    """Override in a test module to change the bucket size."""
    return 30


@pytest.fixture
def rate_limiter(clock, rate_limit_per_minute):
    return RateLimiter(per_minute=rate_limit_per_minute, clock=clock)


@pytest.fixture
def pipeline(db_path, rate_limiter):
    return build_pipeline(db_path, rate_limiter=rate_limiter)


@pytest.fixture
def registered_agent(pipeline):
    """(agent, api_key) for a freshly registered agent."""
    return pipeline.agents.register("triage-bot", "KYC triage agent")


@pytest.fixture
def agent(registered_agent):
    return registered_agent[0]


@pytest.fixture
def api_key(registered_agent):
    return registered_agent[1]


@pytest.fixture
def policy(pipeline):
    return pipeline.cases.add_policy("AML Handbook", "2024.1", [
        {"id": "cdd-1", "title": "Customer due diligence", "text": "Verify identity before onboarding."},
        {"id": "edd-2", "title": "Enhanced due diligence", "text": "PEPs require senior approval."},
    ])


@pytest.fixture
def policy_case(pipeline, agent):
    return pipeline.cases.create(
        "Do PEPs need senior approval?", "policy_qa", "Question from onboarding team", agent.id
    )


@pytest.fixture
def general_case(pipeline, agent):
    return pipeline.cases.create("Weekly summary", "general", "Summarize open alerts", agent.id)


@pytest.fixture
def client(pipeline):
    """Create a test client for the FastAPI app bound to the test pipeline."""
    app.dependency_overrides[get_pipeline] = lambda: pipeline
    yield TestClient(app)
    app.dependency_overrides.pop(get_pipeline, None)
