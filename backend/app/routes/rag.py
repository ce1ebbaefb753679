"""Retrieval index API routes: status, rebuild and semantic query."""

from datetime import datetime
from typing import Any

from fastapi import APIRouter, Depends, HTTPException, status
from pydantic import BaseModel, Field

from app.auth import verify_api_key
from app.exceptions import HealthRecordError
from app.routes.deps import get_index_manager, http_error
from app.services.retrieval import DEFAULT_QUERY_LIMIT, MAX_QUERY_LIMIT, IndexStatus, RetrievalIndexManager
from app.services.wearable_filter import WearableMode

router = APIRouter(prefix="/users/{user_id}/index", tags=["rag"])


class IndexStatusResponse(BaseModel):
    state: str
    resource_count: int
    indexed_count: int
    last_updated: datetime | None = None
    wearable_mode: str | None = None
    memory_only: bool
    error: str | None = None
    stale: bool = False

    @classmethod
    def from_status(cls, index_status: IndexStatus) -> "IndexStatusResponse":
        return cls(
            state=index_status.state.value,
            resource_count=index_status.resource_count,
            indexed_count=index_status.indexed_count,
            last_updated=index_status.last_updated,
            wearable_mode=index_status.wearable_mode,
            memory_only=index_status.memory_only,
            error=index_status.error,
            stale=index_status.stale,
        )


class RebuildRequest(BaseModel):
    wearable_mode: WearableMode | None = None


class QueryRequest(BaseModel):
    query: str = Field(..., min_length=1)
    limit: int = Field(default=DEFAULT_QUERY_LIMIT, ge=1, le=MAX_QUERY_LIMIT)
    wearable_mode: WearableMode | None = None


class QueryResponse(BaseModel):
    resources: list[dict[str, Any]]
    scores: list[float]
    used_index: bool
    rebuilt: bool


@router.get("", response_model=IndexStatusResponse)
async def index_status(
    user_id: str,
    index_manager: RetrievalIndexManager = Depends(get_index_manager),
    _api_key: str = Depends(verify_api_key),
) -> IndexStatusResponse:
    """Build status of the user's retrieval index."""
    return IndexStatusResponse.from_status(await index_manager.status(user_id))


@router.post("", response_model=IndexStatusResponse)
async def rebuild_index(
    user_id: str,
    request: RebuildRequest | None = None,
    index_manager: RetrievalIndexManager = Depends(get_index_manager),
    _api_key: str = Depends(verify_api_key),
) -> IndexStatusResponse:
    """Force a rebuild of the user's retrieval index.

    Raises:
        HTTPException: 502 if embedding fails, 503 if the store is unavailable.
    """
    mode = request.wearable_mode if request else None
    try:
        await index_manager.rebuild(user_id, mode)
    except HealthRecordError as e:
        raise http_error(e)
    except Exception as e:
        raise HTTPException(status_code=status.HTTP_502_BAD_GATEWAY, detail=f"Index build failed: {e}")
    return IndexStatusResponse.from_status(await index_manager.status(user_id))


@router.post("/query", response_model=QueryResponse)
async def query_index(
    user_id: str,
    request: QueryRequest,
    index_manager: RetrievalIndexManager = Depends(get_index_manager),
    _api_key: str = Depends(verify_api_key),
) -> QueryResponse:
    """Resources most relevant to a query, best first."""
    try:
        result = await index_manager.query(user_id, request.query, request.limit, request.wearable_mode)
    except HealthRecordError as e:
        raise http_error(e)
    return QueryResponse(
        resources=result.resources,
        scores=result.scores,
        used_index=result.used_index,
        rebuilt=result.rebuilt,
    )
