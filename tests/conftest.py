"""
Test configuration and fixtures for Purrplexed.

- In-memory SQLite engine shared across one test (StaticPool)
- Session factory bound to it for the persisted usage store
- Mock transport and orchestrator wired together
- TestClient with the relay's dependencies overridden
"""

from datetime import datetime

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from purrplexed.api.analysis_sse import (
    get_analysis_service,
    get_image_encoder,
    get_usage_meter,
)
from purrplexed.database import init_db
from purrplexed.main import app
from purrplexed.services.image_encoder import ImageEncoder
from purrplexed.services.mock_transport import MockAnalysisTransport
from purrplexed.services.parallel_analysis_service import ParallelAnalysisService
from purrplexed.services.usage_meter import UsageMeterService
from tests.factories import make_jpeg_bytes


# =============================================================================
# Database Fixtures
# =============================================================================


@pytest.fixture
def db_engine():
    """Fresh in-memory database per test."""
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    init_db(bind=engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session_factory(db_engine):
    return sessionmaker(autocommit=False, autoflush=False, bind=db_engine)


# =============================================================================
# Analysis Fixtures
# =============================================================================


class FakeClock:
    """Settable clock for day-rollover tests."""

    def __init__(self, now: datetime):
        self.now = now

    def __call__(self) -> datetime:
        return self.now


@pytest.fixture
def clock():
    return FakeClock(datetime(2026, 3, 14, 9, 30))


@pytest.fixture
def meter(clock):
    return UsageMeterService(daily_limit=5, clock=clock)


@pytest.fixture
def mock_transport():
    return MockAnalysisTransport()


@pytest.fixture
def service(mock_transport):
    return ParallelAnalysisService(
        mock_transport, backend_contract="upload", detail_concurrency="sequential"
    )


@pytest.fixture
def photo_bytes() -> bytes:
    return make_jpeg_bytes()


# =============================================================================
# API Fixtures
# =============================================================================


@pytest.fixture
def client(service, meter):
    """TestClient with the relay wired to the mock transport and in-memory meter."""
    app.dependency_overrides[get_analysis_service] = lambda: service
    app.dependency_overrides[get_usage_meter] = lambda: meter
    app.dependency_overrides[get_image_encoder] = lambda: ImageEncoder(
        max_dimension=256, quality=60
    )
    with TestClient(app) as test_client:
        yield test_client
    app.dependency_overrides.clear()
