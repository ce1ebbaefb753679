"""Ingestion API routes: analyzed documents, wearable exports, single entries."""

from typing import Any

from fastapi import APIRouter, Depends, HTTPException, status
from pydantic import BaseModel, Field

from app.auth import verify_api_key
from app.exceptions import HealthRecordError
from app.routes.deps import get_pipeline, http_error
from app.schemas.raw_inputs import DocumentInput
from app.services.ingestion import IngestionError, IngestionPipeline, IngestionState

router = APIRouter(prefix="/users/{user_id}", tags=["ingest"])


class DocumentIngestRequest(BaseModel):
    """An analyzed document to turn into FHIR resources."""

    patient_id: str
    analysis: str | None = None
    metadata: DocumentInput = Field(default_factory=DocumentInput)
    file_url: str | None = None


class WearableIngestRequest(BaseModel):
    patient_id: str
    device_name: str = "Wearable device"
    data: dict[str, list[dict[str, Any]]]


class EntryIngestRequest(BaseModel):
    """A single raw entry (tagged by ``kind``) or a batch of ready FHIR resources."""

    patient_id: str
    entry: dict[str, Any] | None = None
    resources: list[dict[str, Any]] | None = None


class IngestErrorResponse(BaseModel):
    step: str
    message: str


class DocumentIngestResponse(BaseModel):
    state: IngestionState
    record_type: str
    document_reference_id: str | None = None
    diagnostic_report_id: str | None = None
    imaging_study_id: str | None = None
    imaging_report_id: str | None = None
    procedure_id: str | None = None
    family_member_history_id: str | None = None
    observation_ids: list[str] = []
    embedded_ids: dict[str, list[str]] = {}
    errors: list[IngestErrorResponse] = []


class WearableIngestResponse(BaseModel):
    state: IngestionState
    observation_ids: list[str]
    summary_report_ids: list[str]
    generic_ids: list[str]
    skipped: int
    errors: list[IngestErrorResponse] = []


class EntryIngestResponse(BaseModel):
    state: IngestionState = IngestionState.PERSISTED
    created: list[str] = []
    resource: dict[str, Any] | None = None
    errors: list[IngestErrorResponse] = []


def _errors(errors: list[IngestionError]) -> list[IngestErrorResponse]:
    return [IngestErrorResponse(step=e.step, message=e.message) for e in errors]


@router.post("/documents", response_model=DocumentIngestResponse)
async def ingest_document(
    user_id: str,
    request: DocumentIngestRequest,
    pipeline: IngestionPipeline = Depends(get_pipeline),
    _api_key: str = Depends(verify_api_key),
) -> DocumentIngestResponse:
    """Create the FHIR resources described by an analyzed document.

    Partial failures are reported in ``errors`` with state
    ``partial_failure``; created resources are kept.
    """
    result = await pipeline.ingest_document(
        user_id, request.patient_id, request.analysis, request.metadata, request.file_url
    )
    return DocumentIngestResponse(
        state=result.state,
        record_type=result.record_type,
        document_reference_id=result.document_reference_id,
        diagnostic_report_id=result.diagnostic_report_id,
        imaging_study_id=result.imaging_study_id,
        imaging_report_id=result.imaging_report_id,
        procedure_id=result.procedure_id,
        family_member_history_id=result.family_member_history_id,
        observation_ids=result.observation_ids,
        embedded_ids=result.embedded_ids,
        errors=_errors(result.errors),
    )


@router.post("/wearables", response_model=WearableIngestResponse)
async def ingest_wearables(
    user_id: str,
    request: WearableIngestRequest,
    pipeline: IngestionPipeline = Depends(get_pipeline),
    _api_key: str = Depends(verify_api_key),
) -> WearableIngestResponse:
    """Store a category-keyed wearable export with per-category summaries."""
    result = await pipeline.ingest_wearable_data(user_id, request.patient_id, request.device_name, request.data)
    return WearableIngestResponse(
        state=result.state,
        observation_ids=result.observation_ids,
        summary_report_ids=result.summary_report_ids,
        generic_ids=result.generic_ids,
        skipped=result.skipped,
        errors=_errors(result.errors),
    )


@router.post("/entries", response_model=EntryIngestResponse, status_code=status.HTTP_201_CREATED)
async def ingest_entries(
    user_id: str,
    request: EntryIngestRequest,
    pipeline: IngestionPipeline = Depends(get_pipeline),
    _api_key: str = Depends(verify_api_key),
) -> EntryIngestResponse:
    """Store one raw entry, or a batch of ready FHIR resources.

    A single entry is a simple write: conversion and store errors are
    returned as HTTP errors. Batch items are stored independently.
    """
    if (request.entry is None) == (request.resources is None):
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Provide exactly one of 'entry' or 'resources'",
        )

    if request.resources is not None:
        batch = await pipeline.ingest_resources(user_id, request.patient_id, request.resources)
        return EntryIngestResponse(state=batch.state, created=batch.created, errors=_errors(batch.errors))

    try:
        resource = await pipeline.ingest_raw(user_id, request.patient_id, request.entry)
    except HealthRecordError as e:
        raise http_error(e)
    except ValueError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))
    return EntryIngestResponse(
        created=[f"{resource['resourceType']}/{resource['id']}"],
        resource=resource,
    )
