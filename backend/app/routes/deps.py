"""Service providers for route dependencies.

Process-wide singletons are created lazily; tests override these providers
through ``app.dependency_overrides``.
"""

from functools import lru_cache

from fastapi import Depends, HTTPException, status

from app.database import async_session_maker
from app.exceptions import (
    HealthRecordError,
    NotFoundError,
    PersistenceError,
    UpstreamGenerationError,
    ValidationError,
)
from app.repositories.fhir import FhirRepository
from app.services.analysis import AnalysisOrchestrator
from app.services.cache import CacheManager
from app.services.embeddings import EmbeddingService
from app.services.generation import OpenAITextGenerator
from app.services.ingestion import IngestionPipeline
from app.services.retrieval import RetrievalIndexManager


@lru_cache
def _cache_manager() -> CacheManager:
    return CacheManager()


@lru_cache
def _repository() -> FhirRepository:
    return FhirRepository(async_session_maker)


@lru_cache
def _index_manager() -> RetrievalIndexManager:
    return RetrievalIndexManager(_repository(), EmbeddingService(), cache_manager=_cache_manager())


@lru_cache
def _orchestrator() -> AnalysisOrchestrator:
    return AnalysisOrchestrator(_index_manager(), OpenAITextGenerator())


def get_cache_manager() -> CacheManager:
    return _cache_manager()


def get_repository() -> FhirRepository:
    return _repository()


def get_index_manager() -> RetrievalIndexManager:
    return _index_manager()


def get_orchestrator() -> AnalysisOrchestrator:
    return _orchestrator()


def get_pipeline(
    repository: FhirRepository = Depends(get_repository),
    cache_manager: CacheManager = Depends(get_cache_manager),
) -> IngestionPipeline:
    return IngestionPipeline(repository, cache_manager=cache_manager)


_STATUS_CODES: tuple[tuple[type[HealthRecordError], int], ...] = (
    (ValidationError, status.HTTP_400_BAD_REQUEST),
    (NotFoundError, status.HTTP_404_NOT_FOUND),
    (PersistenceError, status.HTTP_503_SERVICE_UNAVAILABLE),
    (UpstreamGenerationError, status.HTTP_502_BAD_GATEWAY),
)


def http_error(error: HealthRecordError) -> HTTPException:
    """Map a domain error to the HTTPException returned to clients."""
    for error_type, status_code in _STATUS_CODES:
        if isinstance(error, error_type):
            return HTTPException(status_code=status_code, detail=str(error))
    return HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail=str(error))
