"""Pytest configuration and shared fixtures.

This module provides centralized test fixtures for:
- HTTP client for API testing
- SQLite-backed resource store (aiosqlite, one database file per test)
- Mock OpenAI clients for embeddings and generation
- Common FHIR test data
"""

import uuid
from unittest.mock import AsyncMock, MagicMock

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from app.auth import verify_api_key
from app.database import Base
from app.main import app
from app.repositories.fhir import FhirRepository
from app.routes.deps import get_cache_manager, get_index_manager, get_orchestrator, get_repository
from app.services.analysis import AnalysisOrchestrator
from app.services.cache import CacheManager
from app.services.embeddings import EmbeddingService
from app.services.retrieval import RetrievalIndexManager
from app.services.vector_index import IndexStorage

TEST_API_KEY = "test-api-key"

# Terms that get their own embedding dimension; everything else lands on the bias
EMBEDDING_VOCABULARY = (
    "hemoglobin",
    "glucose",
    "cholesterol",
    "hypertension",
    "diabetes",
    "heart",
    "steps",
    "sleep",
    "medication",
    "report",
)


async def stub_verify_api_key() -> str:
    """Stub auth dependency that accepts every request."""
    return TEST_API_KEY


# =============================================================================
# Mock OpenAI Clients
# =============================================================================


def keyword_embedding(text: str) -> list[float]:
    """Deterministic bag-of-keywords embedding, so similar texts score high."""
    lowered = text.lower()
    return [float(lowered.count(term)) for term in EMBEDDING_VOCABULARY] + [0.1]


def create_keyword_embedding_client() -> AsyncMock:
    """Mock AsyncOpenAI client whose embeddings follow keyword_embedding."""
    mock_client = AsyncMock()

    async def create(model: str, input: list[str]):
        response = MagicMock()
        response.data = [MagicMock(embedding=keyword_embedding(text)) for text in input]
        return response

    mock_client.embeddings.create = AsyncMock(side_effect=create)
    return mock_client


class FakeGenerator:
    """TextGenerator double that records prompts and can fail chosen topics."""

    def __init__(self, response: str = "Generated analysis.", fail_on: tuple[str, ...] = ()):
        self.response = response
        self.fail_on = fail_on
        self.calls: list[tuple[str, str, float]] = []

    async def generate(self, system: str, prompt: str, temperature: float) -> str:
        self.calls.append((system, prompt, temperature))
        for marker in self.fail_on:
            if marker in prompt:
                raise RuntimeError(f"upstream unavailable for {marker}")
        return self.response


# =============================================================================
# Database Fixtures
# =============================================================================


@pytest_asyncio.fixture
async def test_engine(tmp_path):
    """Create a SQLite test engine with the schema created.

    Each test gets its own database file, so no cleanup between tests
    is needed beyond disposing the engine.
    """
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path}/test.db", echo=False)

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield engine

    await engine.dispose()


@pytest.fixture
def session_maker(test_engine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(
        test_engine,
        class_=AsyncSession,
        expire_on_commit=False,
    )


@pytest.fixture
def repository(session_maker) -> FhirRepository:
    """Resource store over the test database."""
    return FhirRepository(session_maker)


# =============================================================================
# Service Fixtures
# =============================================================================


@pytest.fixture
def cache_manager() -> CacheManager:
    return CacheManager(default_ttl=60.0)


@pytest.fixture
def embedding_client() -> AsyncMock:
    return create_keyword_embedding_client()


@pytest.fixture
def embedding_service(embedding_client) -> EmbeddingService:
    return EmbeddingService(client=embedding_client, model="test-embedding-model")


@pytest.fixture
def index_storage(tmp_path) -> IndexStorage:
    return IndexStorage(tmp_path / "indexes")


@pytest.fixture
def index_manager(repository, embedding_service, index_storage, cache_manager) -> RetrievalIndexManager:
    return RetrievalIndexManager(
        repository,
        embedding_service,
        storage=index_storage,
        cache_manager=cache_manager,
        default_mode="summary_only",
    )


@pytest.fixture
def generator() -> FakeGenerator:
    return FakeGenerator()


@pytest.fixture
def orchestrator(index_manager, generator) -> AnalysisOrchestrator:
    return AnalysisOrchestrator(index_manager, generator, temperature=0.3)


# =============================================================================
# HTTP Client Fixtures
# =============================================================================


@pytest_asyncio.fixture
async def client(repository, cache_manager, index_manager, orchestrator):
    """Async test client for the FastAPI app wired to the test services.

    Overrides the service providers and API key check; cleans the
    overrides up afterwards.
    """
    app.dependency_overrides[get_repository] = lambda: repository
    app.dependency_overrides[get_cache_manager] = lambda: cache_manager
    app.dependency_overrides[get_index_manager] = lambda: index_manager
    app.dependency_overrides[get_orchestrator] = lambda: orchestrator
    app.dependency_overrides[verify_api_key] = stub_verify_api_key

    async with AsyncClient(
        transport=ASGITransport(app=app),
        base_url="http://test",
    ) as ac:
        yield ac

    app.dependency_overrides.clear()


# =============================================================================
# FHIR Test Data Fixtures
# =============================================================================


@pytest.fixture
def user_id() -> str:
    """Generate a unique user ID for testing."""
    return f"user-{uuid.uuid4()}"


@pytest.fixture
def patient_id() -> str:
    """Generate a unique patient ID for testing."""
    return str(uuid.uuid4())


@pytest.fixture
def sample_condition(patient_id) -> dict:
    """Sample FHIR Condition resource for testing."""
    return {
        "resourceType": "Condition",
        "id": "condition-test-456",
        "subject": {"reference": f"Patient/{patient_id}"},
        "code": {
            "coding": [
                {
                    "system": "http://snomed.info/sct",
                    "code": "38341003",
                    "display": "Hypertension",
                }
            ]
        },
        "clinicalStatus": {"coding": [{"code": "active"}]},
        "onsetDateTime": "2020-01-15",
    }


@pytest.fixture
def sample_observation(patient_id) -> dict:
    """Sample FHIR Observation resource for testing."""
    return {
        "resourceType": "Observation",
        "id": "observation-test-789",
        "status": "final",
        "subject": {"reference": f"Patient/{patient_id}"},
        "code": {
            "coding": [
                {
                    "system": "http://loinc.org",
                    "code": "718-7",
                    "display": "Hemoglobin [Mass/volume] in Blood",
                }
            ],
            "text": "Hemoglobin",
        },
        "valueQuantity": {"value": 13.2, "unit": "g/dL"},
        "effectiveDateTime": "2024-03-01T09:00:00+00:00",
    }


@pytest.fixture
def make_observation(patient_id):
    """Factory for minimal numeric Observations of the test patient."""

    def _make(resource_id: str, code: str, text: str, value: float, date: str) -> dict:
        return {
            "resourceType": "Observation",
            "id": resource_id,
            "status": "final",
            "subject": {"reference": f"Patient/{patient_id}"},
            "code": {"coding": [{"system": "http://loinc.org", "code": code, "display": text}], "text": text},
            "valueQuantity": {"value": value, "unit": "mg/dL"},
            "effectiveDateTime": date,
        }

    return _make
