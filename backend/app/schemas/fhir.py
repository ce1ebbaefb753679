"""Canonical FHIR-like resource model.

Resources are pydantic models with camelCase aliases so they serialize to
the same JSON the store persists. Unknown fields are kept (``extra="allow"``)
because stored resources may carry elements these models do not declare.
"""

from __future__ import annotations

from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

# Resource types whose FHIR definition has no patient link
UNLINKED_TYPES = frozenset({"Patient", "Medication"})

# Resource types that link to the patient via ``patient`` instead of ``subject``
PATIENT_FIELD_TYPES = frozenset({"AllergyIntolerance", "Immunization", "FamilyMemberHistory"})


class FhirModel(BaseModel):
    """Base model for FHIR datatypes and resources."""

    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        extra="allow",
    )


# =============================================================================
# Datatypes
# =============================================================================


class Coding(FhirModel):
    system: str | None = None
    code: str | None = None
    display: str | None = None


class CodeableConcept(FhirModel):
    coding: list[Coding] = Field(default_factory=list)
    text: str | None = None


class Reference(FhirModel):
    reference: str | None = None
    display: str | None = None


class Quantity(FhirModel):
    value: float | None = None
    unit: str | None = None
    system: str | None = None
    code: str | None = None


class Period(FhirModel):
    start: str | None = None
    end: str | None = None


class ReferenceRange(FhirModel):
    low: Quantity | None = None
    high: Quantity | None = None
    text: str | None = None


class Meta(FhirModel):
    last_updated: str | None = None
    version_id: str | None = None
    tag: list[Coding] = Field(default_factory=list)


class Attachment(FhirModel):
    content_type: str | None = None
    url: str | None = None
    title: str | None = None
    creation: str | None = None


class Annotation(FhirModel):
    text: str


class Dosage(FhirModel):
    text: str | None = None


class ObservationComponent(FhirModel):
    code: CodeableConcept
    value_quantity: Quantity | None = None
    value_string: str | None = None


class HumanName(FhirModel):
    use: str | None = None
    family: str | None = None
    given: list[str] = Field(default_factory=list)
    text: str | None = None


class ContactPoint(FhirModel):
    system: str | None = None
    value: str | None = None
    use: str | None = None


# =============================================================================
# Resources
# =============================================================================


class Resource(FhirModel):
    """Abstract base for all resources."""

    resource_type: str
    id: str | None = None
    meta: Meta | None = None


class Patient(Resource):
    resource_type: Literal["Patient"] = "Patient"
    active: bool | None = None
    name: list[HumanName] = Field(default_factory=list)
    telecom: list[ContactPoint] = Field(default_factory=list)
    gender: str | None = None
    birth_date: str | None = None


class Observation(Resource):
    resource_type: Literal["Observation"] = "Observation"
    status: str = "final"
    category: list[CodeableConcept] = Field(default_factory=list)
    code: CodeableConcept
    subject: Reference
    effective_date_time: str | None = None
    effective_period: Period | None = None
    issued: str | None = None
    value_quantity: Quantity | None = None
    value_string: str | None = None
    interpretation: list[CodeableConcept] = Field(default_factory=list)
    reference_range: list[ReferenceRange] = Field(default_factory=list)
    component: list[ObservationComponent] = Field(default_factory=list)
    device: Reference | None = None
    note: list[Annotation] = Field(default_factory=list)


class Condition(Resource):
    resource_type: Literal["Condition"] = "Condition"
    clinical_status: CodeableConcept | None = None
    verification_status: CodeableConcept | None = None
    category: list[CodeableConcept] = Field(default_factory=list)
    severity: CodeableConcept | None = None
    code: CodeableConcept
    subject: Reference
    onset_date_time: str | None = None
    abatement_date_time: str | None = None
    recorded_date: str | None = None
    note: list[Annotation] = Field(default_factory=list)


class DiagnosticReport(Resource):
    resource_type: Literal["DiagnosticReport"] = "DiagnosticReport"
    status: str = "final"
    category: list[CodeableConcept] = Field(default_factory=list)
    code: CodeableConcept
    subject: Reference
    effective_date_time: str | None = None
    effective_period: Period | None = None
    issued: str | None = None
    result: list[Reference] = Field(default_factory=list)
    imaging_study: list[Reference] = Field(default_factory=list)
    conclusion: str | None = None
    presented_form: list[Attachment] = Field(default_factory=list)


class Procedure(Resource):
    resource_type: Literal["Procedure"] = "Procedure"
    status: str = "completed"
    code: CodeableConcept
    subject: Reference
    performed_date_time: str | None = None
    performed_period: Period | None = None
    body_site: list[CodeableConcept] = Field(default_factory=list)
    outcome: CodeableConcept | None = None
    note: list[Annotation] = Field(default_factory=list)


class DocumentContent(FhirModel):
    attachment: Attachment


class DocumentReference(Resource):
    resource_type: Literal["DocumentReference"] = "DocumentReference"
    status: str = "current"
    type: CodeableConcept
    category: list[CodeableConcept] = Field(default_factory=list)
    subject: Reference
    date: str | None = None
    description: str | None = None
    content: list[DocumentContent] = Field(default_factory=list)


class FamilyMemberCondition(FhirModel):
    code: CodeableConcept
    onset_string: str | None = None
    note: list[Annotation] = Field(default_factory=list)


class FamilyMemberHistory(Resource):
    resource_type: Literal["FamilyMemberHistory"] = "FamilyMemberHistory"
    status: str = "completed"
    patient: Reference
    date: str | None = None
    relationship: CodeableConcept
    condition: list[FamilyMemberCondition] = Field(default_factory=list)


class ImagingInstance(FhirModel):
    uid: str
    sop_class: Coding | None = None
    number: int | None = None


class ImagingSeries(FhirModel):
    uid: str
    number: int | None = None
    modality: Coding
    description: str | None = None
    body_site: Coding | None = None
    instance: list[ImagingInstance] = Field(default_factory=list)


class ImagingStudy(Resource):
    resource_type: Literal["ImagingStudy"] = "ImagingStudy"
    status: str = "available"
    subject: Reference
    started: str | None = None
    modality: list[Coding] = Field(default_factory=list)
    description: str | None = None
    number_of_series: int | None = None
    number_of_instances: int | None = None
    series: list[ImagingSeries] = Field(default_factory=list)


class Medication(Resource):
    resource_type: Literal["Medication"] = "Medication"
    code: CodeableConcept
    form: CodeableConcept | None = None


class MedicationStatement(Resource):
    resource_type: Literal["MedicationStatement"] = "MedicationStatement"
    status: str = "active"
    medication_codeable_concept: CodeableConcept | None = None
    medication_reference: Reference | None = None
    subject: Reference
    effective_date_time: str | None = None
    effective_period: Period | None = None
    date_asserted: str | None = None
    dosage: list[Dosage] = Field(default_factory=list)
    note: list[Annotation] = Field(default_factory=list)


class AllergyReaction(FhirModel):
    manifestation: list[CodeableConcept] = Field(default_factory=list)
    severity: str | None = None


class AllergyIntolerance(Resource):
    resource_type: Literal["AllergyIntolerance"] = "AllergyIntolerance"
    clinical_status: CodeableConcept | None = None
    verification_status: CodeableConcept | None = None
    type: str | None = None
    category: list[str] = Field(default_factory=list)
    criticality: str | None = None
    code: CodeableConcept
    patient: Reference
    onset_date_time: str | None = None
    recorded_date: str | None = None
    reaction: list[AllergyReaction] = Field(default_factory=list)


class Immunization(Resource):
    resource_type: Literal["Immunization"] = "Immunization"
    status: str = "completed"
    vaccine_code: CodeableConcept
    patient: Reference
    occurrence_date_time: str | None = None
    lot_number: str | None = None
    note: list[Annotation] = Field(default_factory=list)


class GenericResource(Resource):
    """Catch-all resource preserving an opaque raw map under ``data``."""

    resource_type: Literal["Basic"] = "Basic"
    code: CodeableConcept
    subject: Reference
    created: str | None = None
    data: dict[str, Any] = Field(default_factory=dict)


# =============================================================================
# Helpers
# =============================================================================


def make_reference(resource_type: str, resource_id: str) -> str:
    """Build a ``Type/id`` reference string."""
    return f"{resource_type}/{resource_id}"


def patient_reference(patient_id: str) -> Reference:
    """Build the subject/patient Reference for a patient id."""
    return Reference(reference=make_reference("Patient", patient_id))


def parse_reference(reference: str | None) -> tuple[str, str] | None:
    """Split a ``Type/id`` reference into its parts.

    Returns:
        (resource_type, id) tuple, or None if the reference is not relative.
    """
    if not reference or "/" not in reference:
        return None
    resource_type, _, resource_id = reference.rpartition("/")
    if not resource_type or not resource_id:
        return None
    return resource_type.rsplit("/", 1)[-1], resource_id


def _prune(value: Any) -> Any:
    """Drop empty lists and dicts, which FHIR JSON never carries."""
    if isinstance(value, dict):
        pruned = {k: _prune(v) for k, v in value.items()}
        return {k: v for k, v in pruned.items() if v != [] and v != {}}
    if isinstance(value, list):
        return [_prune(v) for v in value]
    return value


def to_fhir_dict(resource: Resource | dict[str, Any]) -> dict[str, Any]:
    """Serialize a resource model (or pass through a dict) as FHIR JSON."""
    if isinstance(resource, dict):
        return resource
    return _prune(resource.model_dump(by_alias=True, exclude_none=True))


def subject_reference(resource: dict[str, Any]) -> str | None:
    """Return the subject/patient reference string of a FHIR dict, if any."""
    for field in ("subject", "patient"):
        ref = resource.get(field)
        if isinstance(ref, dict) and ref.get("reference"):
            return ref["reference"]
    return None


def requires_subject(resource_type: str) -> bool:
    """Whether resources of this type must carry a patient link."""
    return resource_type not in UNLINKED_TYPES


def first_coding(concept: dict[str, Any] | None) -> dict[str, Any]:
    """First coding of a CodeableConcept dict, or an empty dict."""
    if not concept:
        return {}
    codings = concept.get("coding") or []
    return codings[0] if codings else {}


def concept_display(concept: dict[str, Any] | None) -> str:
    """Human-readable label of a CodeableConcept dict."""
    if not concept:
        return ""
    return concept.get("text") or first_coding(concept).get("display") or ""
