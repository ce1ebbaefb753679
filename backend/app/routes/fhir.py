"""FHIR resource API routes over a user's resource collection."""

from typing import Any

from fastapi import APIRouter, Depends, HTTPException, Request, Response, status
from pydantic import BaseModel

from app.auth import verify_api_key
from app.exceptions import HealthRecordError
from app.repositories.fhir import DEFAULT_LIMIT, FhirRepository
from app.routes.deps import get_cache_manager, get_repository, http_error
from app.schemas.fhir import PATIENT_FIELD_TYPES, make_reference
from app.services.cache import CacheManager

router = APIRouter(prefix="/users/{user_id}/fhir", tags=["fhir"])

# Search parameters that control the query rather than filter it
CONTROL_PARAMS = {"_sort", "_count"}


class ResourceCreatedResponse(BaseModel):
    """Response from creating a FHIR resource."""

    id: str
    resource_type: str


def build_predicate(resource_type: str, params: dict[str, str]) -> dict[str, Any]:
    """Turn FHIR search parameters into a repository predicate.

    ``patient=<id>`` matches the subject (or patient) reference; a
    comma-separated value matches any of its parts.
    """
    predicate: dict[str, Any] = {}
    for name, value in params.items():
        if name in CONTROL_PARAMS:
            continue
        if name == "patient":
            path = "patient.reference" if resource_type in PATIENT_FIELD_TYPES else "subject.reference"
            predicate[path] = value if "/" in value else make_reference("Patient", value)
            continue
        parts = [p for p in value.split(",") if p]
        predicate[name] = parts if len(parts) > 1 else value
    return predicate


@router.get("/{resource_type}")
async def search_resources(
    user_id: str,
    resource_type: str,
    request: Request,
    repository: FhirRepository = Depends(get_repository),
    _api_key: str = Depends(verify_api_key),
) -> dict[str, Any]:
    """Search a user's resources of one type.

    Query parameters are field paths with optional FHIR prefixes
    (``effectiveDateTime=ge2024-01-01``), plus ``_sort`` and ``_count``.

    Returns:
        A FHIR searchset Bundle.
    """
    params = dict(request.query_params)
    try:
        limit = int(params.get("_count", DEFAULT_LIMIT))
    except ValueError:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="_count must be an integer")

    try:
        return await repository.search_bundle(
            user_id,
            resource_type,
            build_predicate(resource_type, params),
            sort=params.get("_sort"),
            limit=limit,
        )
    except HealthRecordError as e:
        raise http_error(e)


@router.post("/{resource_type}", response_model=ResourceCreatedResponse, status_code=status.HTTP_201_CREATED)
async def create_resource(
    user_id: str,
    resource_type: str,
    resource: dict[str, Any],
    repository: FhirRepository = Depends(get_repository),
    cache_manager: CacheManager = Depends(get_cache_manager),
    _api_key: str = Depends(verify_api_key),
) -> ResourceCreatedResponse:
    """Create a resource; a body without resourceType takes the path's type."""
    body_type = resource.setdefault("resourceType", resource_type)
    if body_type != resource_type:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=f"resourceType '{body_type}' does not match path '{resource_type}'",
        )
    try:
        resource_id = await repository.create(user_id, resource)
    except HealthRecordError as e:
        raise http_error(e)
    cache_manager.invalidate_user(user_id)
    return ResourceCreatedResponse(id=resource_id, resource_type=resource_type)


@router.get("/{resource_type}/{resource_id}")
async def read_resource(
    user_id: str,
    resource_type: str,
    resource_id: str,
    repository: FhirRepository = Depends(get_repository),
    _api_key: str = Depends(verify_api_key),
) -> dict[str, Any]:
    """Read one resource by type and id."""
    try:
        resource = await repository.get(user_id, resource_type, resource_id)
    except HealthRecordError as e:
        raise http_error(e)
    if resource is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"{resource_type}/{resource_id} not found",
        )
    return resource


@router.put("/{resource_type}/{resource_id}")
async def update_resource(
    user_id: str,
    resource_type: str,
    resource_id: str,
    resource: dict[str, Any],
    repository: FhirRepository = Depends(get_repository),
    cache_manager: CacheManager = Depends(get_cache_manager),
    _api_key: str = Depends(verify_api_key),
) -> dict[str, Any]:
    """Overwrite an existing resource, incrementing its versionId."""
    resource = {**resource, "resourceType": resource_type, "id": resource_id}
    try:
        updated = await repository.update(user_id, resource)
    except HealthRecordError as e:
        raise http_error(e)
    cache_manager.invalidate_user(user_id)
    return updated


@router.delete("/{resource_type}/{resource_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_resource(
    user_id: str,
    resource_type: str,
    resource_id: str,
    repository: FhirRepository = Depends(get_repository),
    cache_manager: CacheManager = Depends(get_cache_manager),
    _api_key: str = Depends(verify_api_key),
) -> Response:
    """Delete a resource; deleting a missing resource also returns 204."""
    try:
        await repository.delete(user_id, resource_type, resource_id)
    except HealthRecordError as e:
        raise http_error(e)
    cache_manager.invalidate_user(user_id)
    return Response(status_code=status.HTTP_204_NO_CONTENT)


class CleanupResponse(BaseModel):
    deleted: int


@router.delete("", response_model=CleanupResponse)
async def delete_all_resources(
    user_id: str,
    resource_type: str | None = None,
    repository: FhirRepository = Depends(get_repository),
    cache_manager: CacheManager = Depends(get_cache_manager),
    _api_key: str = Depends(verify_api_key),
) -> CleanupResponse:
    """Delete every resource of a user, optionally only one resource type."""
    try:
        deleted = await repository.delete_all(user_id, resource_type)
    except HealthRecordError as e:
        raise http_error(e)
    cache_manager.invalidate_user(user_id)
    return CleanupResponse(deleted=deleted)
