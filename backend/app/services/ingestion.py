"""Ingestion pipeline: raw inputs to persisted FHIR resources.

Each ingestion unit moves through::

    RECEIVED -> TYPE_DETECTED -> CONVERTED -> PERSISTED | PARTIAL_FAILURE

A unit may fan out to several resources. Every creation is attempted
independently; a failed conversion or write is logged and recorded on the
result without aborting its siblings. There is no cross-resource
transaction. Referenced resources (Observations, ImagingStudy) are created
before the reports that point at them.
"""

import asyncio
import logging
from collections.abc import Callable, Iterator
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from app.repositories.fhir import FhirRepository
from app.schemas.fhir import PATIENT_FIELD_TYPES, Resource, make_reference, to_fhir_dict
from app.schemas.raw_inputs import (
    DocumentInput,
    FamilyHistoryInput,
    ImagingInput,
    ImagingReportInput,
    LabResultInput,
    ProcedureInput,
    RawInputModel,
)
from app.services.cache import CacheManager
from app.services.converters import (
    convert_lab_to_observation,
    convert_raw_input,
    convert_record_to_diagnostic_report,
    convert_to_document_reference,
    convert_to_family_member_history,
    convert_to_imaging_report,
    convert_to_imaging_study,
    convert_to_procedure,
    ensure_lab_category,
    extract_lab_results_from_text,
)
from app.services.document_sections import (
    DEFAULT_RECORD_TYPE,
    NO_ANALYSIS,
    NO_BRIEF_SUMMARY,
    NO_DETAILED_ANALYSIS,
    parse_document_analysis,
)
from app.services.terminology import Terminology
from app.services.wearable_converter import WearableSummary, build_summary_report, convert_device_data

logger = logging.getLogger(__name__)


class IngestionState(str, Enum):
    RECEIVED = "received"
    TYPE_DETECTED = "type_detected"
    CONVERTED = "converted"
    PERSISTED = "persisted"
    PARTIAL_FAILURE = "partial_failure"


class DocumentKind(str, Enum):
    LAB = "lab"
    IMAGING = "imaging"
    PROCEDURE = "procedure"
    FAMILY_HISTORY = "family_history"


# Record-type substrings per document kind (matched lowercase)
KIND_KEYWORDS: tuple[tuple[DocumentKind, tuple[str, ...]], ...] = (
    (DocumentKind.LAB, ("lab", "laboratory", "pathology", "blood", "test", "panel")),
    (DocumentKind.IMAGING, ("radio", "imaging", "mri", "ct scan", "xray", "x-ray", "ultrasound")),
    (DocumentKind.PROCEDURE, ("procedure", "surgery", "operative", "operation")),
    (DocumentKind.FAMILY_HISTORY, ("family history",)),
)


_PLACEHOLDERS = frozenset({NO_ANALYSIS, NO_BRIEF_SUMMARY, NO_DETAILED_ANALYSIS})


def _section(text: str) -> str | None:
    return None if text in _PLACEHOLDERS else text


def detect_document_kinds(record_type: str | None) -> set[DocumentKind]:
    """Document kinds implied by a free-text record type hint."""
    if not record_type:
        return set()
    hint = record_type.lower()
    return {kind for kind, keywords in KIND_KEYWORDS if any(k in hint for k in keywords)}


@dataclass
class IngestionError:
    step: str
    message: str


@dataclass
class _UnitResult:
    state: IngestionState = IngestionState.RECEIVED
    transitions: list[IngestionState] = field(default_factory=lambda: [IngestionState.RECEIVED])
    errors: list[IngestionError] = field(default_factory=list)

    def advance(self, state: IngestionState) -> None:
        self.state = state
        self.transitions.append(state)

    def finish(self) -> None:
        self.advance(IngestionState.PARTIAL_FAILURE if self.errors else IngestionState.PERSISTED)


@dataclass
class DocumentIngestionResult(_UnitResult):
    """Resources created from one analyzed document.

    Each id field is None when that resource was not applicable or failed.
    """

    record_type: str = ""
    kinds: set[DocumentKind] = field(default_factory=set)
    document_reference_id: str | None = None
    diagnostic_report_id: str | None = None
    imaging_study_id: str | None = None
    imaging_report_id: str | None = None
    procedure_id: str | None = None
    family_member_history_id: str | None = None
    observation_ids: list[str] = field(default_factory=list)
    embedded_ids: dict[str, list[str]] = field(default_factory=dict)


@dataclass
class WearableIngestionResult(_UnitResult):
    observation_ids: list[str] = field(default_factory=list)
    summary_report_ids: list[str] = field(default_factory=list)
    generic_ids: list[str] = field(default_factory=list)
    skipped: int = 0
    summary: WearableSummary = field(default_factory=WearableSummary)


@dataclass
class BatchIngestionResult(_UnitResult):
    created: list[str] = field(default_factory=list)


def link_patient(resource: dict[str, Any], patient_id: str) -> dict[str, Any]:
    """Add the patient link to a FHIR dict that has neither subject nor patient."""
    if resource.get("subject") or resource.get("patient"):
        return resource
    field_name = "patient" if resource.get("resourceType") in PATIENT_FIELD_TYPES else "subject"
    resource[field_name] = {"reference": make_reference("Patient", patient_id)}
    return resource


# =============================================================================
# Reference ordering
# =============================================================================


def _aliases(resource: dict[str, Any]) -> list[str]:
    """Reference strings that may point at a resource inside one batch."""
    resource_id = resource.get("id")
    if not resource_id or not resource.get("resourceType"):
        return []
    return [make_reference(resource["resourceType"], resource_id), f"urn:uuid:{resource_id}"]


def _references(node: Any) -> Iterator[str]:
    if isinstance(node, dict):
        for key, value in node.items():
            if key == "reference" and isinstance(value, str):
                yield value
            else:
                yield from _references(value)
    elif isinstance(node, list):
        for item in node:
            yield from _references(item)


def rewrite_references(node: Any, mapping: dict[str, str]) -> Any:
    """Copy of a FHIR structure with every ``reference`` found in mapping replaced."""
    if isinstance(node, dict):
        return {
            key: mapping.get(value, value)
            if key == "reference" and isinstance(value, str)
            else rewrite_references(value, mapping)
            for key, value in node.items()
        }
    if isinstance(node, list):
        return [rewrite_references(item, mapping) for item in node]
    return node


def order_by_references(resources: list[dict[str, Any]]) -> list[list[dict[str, Any]]]:
    """Group resources into waves; each resource follows everything it references.

    Resources of one wave do not reference each other and may be written
    concurrently. References that form a cycle are broken by writing the
    remaining resources in their given order.
    """
    owner = {alias: i for i, r in enumerate(resources) for alias in _aliases(r)}
    depends_on = [
        {owner[ref] for ref in _references(r) if ref in owner and owner[ref] != i} for i, r in enumerate(resources)
    ]

    waves: list[list[dict[str, Any]]] = []
    done: set[int] = set()
    pending = list(range(len(resources)))
    while pending:
        ready = [i for i in pending if depends_on[i] <= done]
        if not ready:
            logger.warning(f"Circular references among {len(pending)} resources; writing them in order")
            ready = pending
        waves.append([resources[i] for i in ready])
        done.update(ready)
        pending = [i for i in pending if i not in done]
    return waves


class IngestionPipeline:
    """Converts raw inputs and persists the resulting resources."""

    def __init__(
        self,
        repository: FhirRepository,
        cache_manager: CacheManager | None = None,
        terminology: Terminology | None = None,
        on_change: Callable[[str], None] | None = None,
    ):
        """
        Initialize the pipeline.

        Args:
            repository: Resource store receiving every write.
            cache_manager: Caches to invalidate after successful writes.
            terminology: Code tables for converters (defaults to built-ins).
            on_change: Extra callback invoked with the user id after writes.
        """
        self._repository = repository
        self._cache_manager = cache_manager
        self._terminology = terminology
        self._on_change = on_change

    def _invalidate(self, user_id: str) -> None:
        if self._cache_manager is not None:
            self._cache_manager.invalidate_user(user_id)
        if self._on_change is not None:
            self._on_change(user_id)

    async def _create(
        self,
        user_id: str,
        step: str,
        build: Callable[[], Resource | dict[str, Any]],
        unit: _UnitResult,
    ) -> str | None:
        """Convert and persist one resource, recording any failure on the unit."""
        try:
            resource = build()
            return await self._repository.create(user_id, resource)
        except Exception as e:
            logger.warning(f"Ingestion step '{step}' failed for user {user_id}: {e}")
            unit.errors.append(IngestionError(step=step, message=str(e)))
            return None

    # =========================================================================
    # Documents
    # =========================================================================

    async def ingest_document(
        self,
        user_id: str,
        patient_id: str,
        analysis_text: str | None,
        metadata: DocumentInput | dict[str, Any] | None = None,
        file_url: str | None = None,
    ) -> DocumentIngestionResult:
        """Persist the resources described by one analyzed document.

        Embedded FHIR resources in the analysis text take precedence. Without
        them, the record type decides the fan-out: always a DocumentReference,
        plus Observations and a lab DiagnosticReport for lab documents, an
        ImagingStudy and radiology report for imaging, a Procedure, or a
        FamilyMemberHistory.

        Args:
            user_id: Owner of the resource collection.
            patient_id: Subject of every created resource.
            analysis_text: Document-analysis collaborator output.
            metadata: Upload metadata; explicit fields win over the analysis.
            file_url: Location of the stored source document.

        Returns:
            DocumentIngestionResult with one id field per created resource.
        """
        result = DocumentIngestionResult()
        analysis = parse_document_analysis(analysis_text)
        meta = metadata if isinstance(metadata, DocumentInput) else DocumentInput.model_validate(metadata or {})

        if analysis.embedded_resources:
            result.record_type = meta.record_type or analysis.record_type
            result.advance(IngestionState.TYPE_DETECTED)
            await self._persist_embedded(user_id, patient_id, analysis.embedded_resources, result)
            self._finish(user_id, result)
            return result

        document = meta.model_copy(
            update={
                "record_type": meta.record_type or analysis.record_type or DEFAULT_RECORD_TYPE,
                "record_date": meta.record_date or analysis.record_date or None,
                "brief_summary": meta.brief_summary or _section(analysis.brief_summary),
                "detailed_analysis": meta.detailed_analysis or _section(analysis.detailed_analysis),
                "file_url": file_url or meta.file_url,
            }
        )
        result.record_type = document.record_type
        result.kinds = detect_document_kinds(document.record_type)
        result.advance(IngestionState.TYPE_DETECTED)
        logger.info(
            f"Ingesting document '{document.name or document.record_type}' for user {user_id}: "
            f"kinds={sorted(k.value for k in result.kinds)}"
        )

        lab_text = analysis.raw_text or "\n".join(filter(None, [document.detailed_analysis, document.brief_summary]))
        labs = list(document.results) or (
            extract_lab_results_from_text(lab_text) if DocumentKind.LAB in result.kinds else []
        )
        result.advance(IngestionState.CONVERTED)

        tasks = [self._ingest_document_reference(user_id, patient_id, document, result)]
        if DocumentKind.LAB in result.kinds:
            tasks.append(self._ingest_lab(user_id, patient_id, document, labs, result))
        if DocumentKind.IMAGING in result.kinds:
            tasks.append(self._ingest_imaging(user_id, patient_id, document, result))
        if DocumentKind.PROCEDURE in result.kinds:
            tasks.append(self._ingest_procedure(user_id, patient_id, document, result))
        if DocumentKind.FAMILY_HISTORY in result.kinds:
            tasks.append(self._ingest_family_history(user_id, patient_id, document, result))
        await asyncio.gather(*tasks)

        self._finish(user_id, result)
        return result

    def _finish(self, user_id: str, result: _UnitResult) -> None:
        result.finish()
        self._invalidate(user_id)
        if result.errors:
            logger.warning(f"Ingestion for user {user_id} finished with {len(result.errors)} failures")

    async def _persist_embedded(
        self,
        user_id: str,
        patient_id: str,
        resources: list[dict[str, Any]],
        result: DocumentIngestionResult,
    ) -> None:
        candidates = []
        # References to an embedded Patient point at the ingesting patient
        mapping: dict[str, str] = {}
        for resource in resources:
            resource_type = resource.get("resourceType")
            if resource_type == "Patient":
                logger.debug("Skipping embedded Patient resource")
                mapping.update(dict.fromkeys(_aliases(resource), make_reference("Patient", patient_id)))
                continue
            candidates.append(link_patient(dict(resource), patient_id))
        result.advance(IngestionState.CONVERTED)

        created = await self._persist_ordered(user_id, "embedded ", candidates, result, mapping)
        for resource_type, resource_id in created:
            result.embedded_ids.setdefault(resource_type, []).append(resource_id)

    async def _persist_ordered(
        self,
        user_id: str,
        step_prefix: str,
        resources: list[dict[str, Any]],
        unit: _UnitResult,
        mapping: dict[str, str] | None = None,
    ) -> list[tuple[str, str]]:
        """Persist resources that reference each other, referenced ones first.

        References to resources of the batch are rewritten to the ids the
        store assigned. Returns ``(resourceType, id)`` of each stored resource.
        """
        mapping = dict(mapping or {})
        created: list[tuple[str, str]] = []
        for wave in order_by_references(resources):
            wave = [rewrite_references(r, mapping) for r in wave]
            ids = await asyncio.gather(
                *(self._create(user_id, f"{step_prefix}{r.get('resourceType')}", lambda r=r: r, unit) for r in wave)
            )
            for resource, resource_id in zip(wave, ids):
                if resource_id is None:
                    continue
                resource_type = resource["resourceType"]
                created.append((resource_type, resource_id))
                mapping.update(dict.fromkeys(_aliases(resource), make_reference(resource_type, resource_id)))
        return created

    async def _ingest_document_reference(
        self, user_id: str, patient_id: str, document: DocumentInput, result: DocumentIngestionResult
    ) -> None:
        result.document_reference_id = await self._create(
            user_id,
            "DocumentReference",
            lambda: convert_to_document_reference(
                document, patient_id, document.file_url, terminology=self._terminology
            ),
            result,
        )

    async def _ingest_lab(
        self,
        user_id: str,
        patient_id: str,
        document: DocumentInput,
        labs: list[LabResultInput],
        result: DocumentIngestionResult,
    ) -> None:
        ids = await asyncio.gather(
            *(
                self._create(
                    user_id,
                    f"Observation {lab.name}",
                    lambda lab=lab: convert_lab_to_observation(
                        lab.model_copy(update={"date": lab.date or document.record_date}),
                        patient_id,
                        terminology=self._terminology,
                    ),
                    result,
                )
                for lab in labs
            )
        )
        result.observation_ids = [i for i in ids if i is not None]
        if not labs:
            logger.info("Lab document yielded no observations; storing report without results")

        result.diagnostic_report_id = await self._create(
            user_id,
            "DiagnosticReport",
            lambda: ensure_lab_category(
                convert_record_to_diagnostic_report(document, patient_id, result.observation_ids)
            ),
            result,
        )

    async def _ingest_imaging(
        self, user_id: str, patient_id: str, document: DocumentInput, result: DocumentIngestionResult
    ) -> None:
        extracted = document.extracted_data
        result.imaging_study_id = await self._create(
            user_id,
            "ImagingStudy",
            lambda: convert_to_imaging_study(
                ImagingInput(
                    name=document.name or document.record_type,
                    description=document.brief_summary or document.name,
                    modality=extracted.get("modality") or document.record_type,
                    date=document.record_date,
                ),
                patient_id,
                terminology=self._terminology,
            ),
            result,
        )
        result.imaging_report_id = await self._create(
            user_id,
            "DiagnosticReport (imaging)",
            lambda: convert_to_imaging_report(
                ImagingReportInput(
                    name=document.name or document.record_type,
                    date=document.record_date,
                    conclusion=extracted.get("conclusion"),
                    impression=extracted.get("impression"),
                    brief_summary=document.brief_summary,
                    url=document.file_url,
                    file_type=document.file_type,
                ),
                patient_id,
                result.imaging_study_id,
            ),
            result,
        )

    async def _ingest_procedure(
        self, user_id: str, patient_id: str, document: DocumentInput, result: DocumentIngestionResult
    ) -> None:
        extracted = document.extracted_data
        result.procedure_id = await self._create(
            user_id,
            "Procedure",
            lambda: convert_to_procedure(
                ProcedureInput.model_validate(
                    {
                        "name": document.name or document.record_type,
                        "date": document.record_date,
                        "outcome": document.brief_summary,
                        **extracted,
                    }
                ),
                patient_id,
                terminology=self._terminology,
            ),
            result,
        )

    async def _ingest_family_history(
        self, user_id: str, patient_id: str, document: DocumentInput, result: DocumentIngestionResult
    ) -> None:
        result.family_member_history_id = await self._create(
            user_id,
            "FamilyMemberHistory",
            lambda: convert_to_family_member_history(
                FamilyHistoryInput.model_validate({"relationship": "family member", **document.extracted_data}),
                patient_id,
                terminology=self._terminology,
            ),
            result,
        )

    # =========================================================================
    # Wearables
    # =========================================================================

    async def ingest_wearable_data(
        self,
        user_id: str,
        patient_id: str,
        device_name: str,
        data: dict[str, list[dict[str, Any]]],
    ) -> WearableIngestionResult:
        """Persist a device export: samples first, then per-category summaries."""
        result = WearableIngestionResult()
        conversion = convert_device_data(data, device_name, patient_id)
        result.advance(IngestionState.TYPE_DETECTED)
        result.skipped = conversion.skipped
        result.summary = conversion.summary
        result.advance(IngestionState.CONVERTED)

        async def persist_category(group) -> None:
            ids = await asyncio.gather(
                *(
                    self._create(user_id, f"Observation {group.category}", lambda o=o: o, result)
                    for o in group.observations
                )
            )
            created = [i for i in ids if i is not None]
            result.observation_ids.extend(created)
            report_id = await self._create(
                user_id,
                f"DiagnosticReport {group.summary_code}",
                lambda: build_summary_report(group, patient_id, device_name, created),
                result,
            )
            if report_id is not None:
                result.summary_report_ids.append(report_id)

        generic_ids = await asyncio.gather(
            *(persist_category(group) for group in conversion.categories),
            *(self._create(user_id, "Basic (wearable)", lambda g=g: g, result) for g in conversion.generic),
        )
        result.generic_ids = [i for i in generic_ids[len(conversion.categories) :] if i is not None]

        self._finish(user_id, result)
        logger.info(
            f"Ingested wearable data from {device_name} for user {user_id}: "
            f"{len(result.observation_ids)} observations, {len(result.summary_report_ids)} summaries"
        )
        return result

    # =========================================================================
    # Ready resources and single entries
    # =========================================================================

    async def ingest_resources(
        self,
        user_id: str,
        patient_id: str,
        resources: list[dict[str, Any]],
    ) -> BatchIngestionResult:
        """Persist ready FHIR dicts, each independently.

        Resources referenced by others in the batch are written first.
        """
        result = BatchIngestionResult()
        result.advance(IngestionState.TYPE_DETECTED)
        candidates = [link_patient(dict(r), patient_id) for r in resources if r.get("resourceType") != "Patient"]
        result.advance(IngestionState.CONVERTED)

        created = await self._persist_ordered(user_id, "", candidates, result)
        result.created = [make_reference(resource_type, i) for resource_type, i in created]
        self._finish(user_id, result)
        return result

    async def ingest_raw(
        self,
        user_id: str,
        patient_id: str,
        raw: RawInputModel | dict[str, Any],
    ) -> dict[str, Any]:
        """Convert and persist one raw entry; errors propagate to the caller.

        Returns:
            The stored FHIR resource.

        Raises:
            ValidationError: If the entry lacks a required identity field.
            PersistenceError: If the store is unavailable.
        """
        resource = to_fhir_dict(convert_raw_input(raw, patient_id, terminology=self._terminology))
        resource_id = await self._repository.create(user_id, resource)
        self._invalidate(user_id)
        stored = await self._repository.get(user_id, resource["resourceType"], resource_id)
        logger.info(f"Created {resource['resourceType']}/{resource_id} for user {user_id}")
        return stored or {**resource, "id": resource_id}
