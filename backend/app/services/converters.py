"""Converters from raw domain inputs to canonical FHIR resources.

Every converter takes a raw input (a tagged input model or a plain dict) and
a patient id, and returns a fully formed resource model. Converters are pure
and total: missing optional fields are omitted or filled with a documented
default. The only hard failure is a missing identity field
(FamilyMemberHistory without a relationship), which raises ValidationError.

Date fields are normalized to ISO-8601 instants. A missing date defaults to
the time of that individual conversion.
"""

import logging
import re
import uuid
from collections.abc import Callable
from datetime import datetime
from typing import Any, TypeVar

from app.exceptions import ValidationError
from app.schemas.fhir import (
    AllergyIntolerance,
    AllergyReaction,
    Annotation,
    Attachment,
    CodeableConcept,
    Coding,
    Condition,
    ContactPoint,
    DiagnosticReport,
    DocumentContent,
    DocumentReference,
    Dosage,
    FamilyMemberCondition,
    FamilyMemberHistory,
    GenericResource,
    HumanName,
    ImagingInstance,
    ImagingSeries,
    ImagingStudy,
    Immunization,
    Medication,
    MedicationStatement,
    Observation,
    Patient,
    Period,
    Procedure,
    Quantity,
    Reference,
    ReferenceRange,
    Resource,
    make_reference,
    patient_reference,
)
from app.schemas.raw_inputs import (
    AllergyInput,
    ConditionInput,
    DocumentInput,
    FamilyHistoryInput,
    GenericInput,
    ImagingInput,
    ImagingReportInput,
    ImmunizationInput,
    LabResultInput,
    MedicationInput,
    ProcedureInput,
    RawInputModel,
    WearableSampleInput,
    parse_raw_input,
)
from app.services.terminology import (
    ACT_CODE_SYSTEM,
    LOINC_SYSTEM,
    SNOMED_SYSTEM,
    Terminology,
    get_terminology,
)
from app.utils.fhir_helpers import normalize_instant, parse_fhir_datetime, utc_now

logger = logging.getLogger(__name__)

UCUM_SYSTEM = "http://unitsofmeasure.org"
DIAGNOSTIC_SERVICE_SYSTEM = "http://terminology.hl7.org/CodeSystem/v2-0074"
OBSERVATION_CATEGORY_SYSTEM = "http://terminology.hl7.org/CodeSystem/observation-category"
CONDITION_CLINICAL_SYSTEM = "http://terminology.hl7.org/CodeSystem/condition-clinical"
CONDITION_SEVERITY_SYSTEM = "http://terminology.hl7.org/CodeSystem/condition-severity"
INTERPRETATION_SYSTEM = "http://terminology.hl7.org/CodeSystem/v3-ObservationInterpretation"

# DiagnosticReport codes
LAB_REPORT_CODE = "11502-2"
GENERIC_REPORT_CODE = "74465-6"
IMAGING_REPORT_CODE = "18748-4"

# Fallback DocumentReference type when the record type is unknown
DEFAULT_DOCUMENT_CODE = "83320-2"
DEFAULT_DOCUMENT_DISPLAY = "Medical record documentation"

# DICOM UID root for UUID-derived identifiers
DICOM_UUID_ROOT = "2.25"
CT_IMAGE_STORAGE = Coding(
    system="urn:ietf:rfc:3986",
    code="1.2.840.10008.5.1.4.1.1.2",
    display="CT Image Storage",
)

VALID_ALLERGY_CATEGORIES = ("food", "medication", "environment", "biologic")
VALID_CRITICALITY = ("low", "high", "unable-to-assess")

# File extension -> attachment content type
CONTENT_TYPES = {
    "pdf": "application/pdf",
    "jpg": "image/jpeg",
    "jpeg": "image/jpeg",
    "png": "image/png",
    "txt": "text/plain",
    "html": "text/html",
    "json": "application/json",
}

LAB_CATEGORY = CodeableConcept(
    coding=[Coding(system=DIAGNOSTIC_SERVICE_SYSTEM, code="LAB", display="Laboratory")],
    text="Laboratory",
)
RADIOLOGY_CATEGORY = CodeableConcept(
    coding=[Coding(system=DIAGNOSTIC_SERVICE_SYSTEM, code="RAD", display="Radiology")],
    text="Radiology",
)
LABORATORY_OBSERVATION_CATEGORY = CodeableConcept(
    coding=[Coding(system=OBSERVATION_CATEGORY_SYSTEM, code="laboratory", display="Laboratory")],
    text="Laboratory",
)
DOCUMENT_CATEGORY = CodeableConcept(
    coding=[Coding(system=ACT_CODE_SYSTEM, code="DOC", display="Document")],
    text="Document",
)

InputT = TypeVar("InputT", bound=RawInputModel)


def _coerce(model_cls: type[InputT], raw: InputT | dict[str, Any]) -> InputT:
    """Accept either a validated input model or a loose dict."""
    if isinstance(raw, model_cls):
        return raw
    if isinstance(raw, RawInputModel):
        return model_cls.model_validate(raw.model_dump(exclude={"kind"}))
    return model_cls.model_validate({k: v for k, v in raw.items() if k != "kind"})


def _to_float(value: Any) -> float | None:
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return float(value)
    match = re.search(r"-?\d+(?:\.\d+)?", str(value))
    return float(match.group()) if match else None


def _annotation(text: str | None) -> list[Annotation]:
    return [Annotation(text=text)] if text else []


def content_type_for(url: str | None, fallback: str | None = None) -> str:
    """Attachment content type from a file URL's extension."""
    if url:
        path = url.split("?", 1)[0]
        extension = path.rsplit(".", 1)[-1].lower() if "." in path else ""
        if extension in CONTENT_TYPES:
            return CONTENT_TYPES[extension]
    return fallback or "application/pdf"


def has_category(categories: list[CodeableConcept], code: str) -> bool:
    """Whether any category carries a coding with ``code``."""
    return any(c.code == code for concept in categories for c in concept.coding)


def ensure_lab_category(report: DiagnosticReport) -> DiagnosticReport:
    """Append the LAB category to a report if it is not already present."""
    if not has_category(report.category, "LAB"):
        report.category.append(LAB_CATEGORY.model_copy(deep=True))
    return report


# =============================================================================
# Patient
# =============================================================================


def create_patient_from_user(user_data: dict[str, Any], resource_id: str | None = None) -> Patient:
    """Build a Patient resource from an application user profile."""
    first = user_data.get("firstName") or user_data.get("first_name") or ""
    last = user_data.get("lastName") or user_data.get("last_name") or ""
    email = user_data.get("email")
    birth = parse_fhir_datetime(user_data.get("birthDate") or user_data.get("birth_date"))
    return Patient(
        id=resource_id,
        active=True,
        name=[HumanName(use="official", family=last, given=[first], text=f"{first} {last}".strip())],
        telecom=[ContactPoint(system="email", value=email, use="home")] if email else [],
        gender=user_data.get("gender"),
        birth_date=birth.date().isoformat() if birth else None,
    )


# =============================================================================
# Laboratory
# =============================================================================


def _interpretation(value: float, low: float | None, high: float | None) -> CodeableConcept | None:
    if high is not None and value > high:
        code, display = "H", "High"
    elif low is not None and value < low:
        code, display = "L", "Low"
    elif low is not None or high is not None:
        code, display = "N", "Normal"
    else:
        return None
    return CodeableConcept(
        coding=[Coding(system=INTERPRETATION_SYSTEM, code=code, display=display)],
        text=display,
    )


def convert_lab_to_observation(
    lab: LabResultInput | dict[str, Any],
    patient_id: str,
    *,
    resource_id: str | None = None,
    terminology: Terminology | None = None,
    now: datetime | None = None,
) -> Observation:
    """Convert a lab result row to a laboratory Observation.

    The test name is coded through the LOINC table; an unmapped name keeps
    its text under the "unknown" code. Numeric values become valueQuantity,
    anything else valueString.
    """
    lab = _coerce(LabResultInput, lab)
    terms = terminology or get_terminology()
    timestamp = normalize_instant(lab.date, now or utc_now())

    coding = [Coding(**terms.labs.lookup(lab.name))] if lab.name else []
    observation = Observation(
        id=resource_id or lab.id,
        status=lab.status or "final",
        category=[LABORATORY_OBSERVATION_CATEGORY.model_copy(deep=True)],
        code=CodeableConcept(coding=coding, text=lab.name or "Unknown test"),
        subject=patient_reference(patient_id),
        effective_date_time=timestamp,
        issued=timestamp,
    )

    value = _to_float(lab.value)
    unit = lab.unit or ""
    if value is not None:
        observation.value_quantity = Quantity(value=value, unit=unit, system=UCUM_SYSTEM, code=unit)
    elif isinstance(lab.value, str) and lab.value.strip():
        observation.value_string = lab.value.strip()

    rng = lab.reference_range
    if rng is not None and (rng.low is not None or rng.high is not None or rng.text):
        observation.reference_range = [
            ReferenceRange(
                low=Quantity(value=rng.low, unit=unit) if rng.low is not None else None,
                high=Quantity(value=rng.high, unit=unit) if rng.high is not None else None,
                text=rng.text,
            )
        ]
        if value is not None:
            interpretation = _interpretation(value, rng.low, rng.high)
            if interpretation is not None:
                observation.interpretation = [interpretation]
    return observation


# Ordered (pattern, display name, default unit). Each value may be followed by
# a unit and a parenthesized "(low-high)" reference range.
_NUMBER = r"(\d+(?:\.\d+)?)"
_RANGE = rf"(?:\s*\(\s*{_NUMBER}\s*[-–]\s*{_NUMBER}\s*\))?"

LAB_TEXT_PATTERNS: list[tuple[str, str, str, str]] = [
    (r"hemoglobin(?!\s*a1c)", "Hemoglobin", r"g/dL", "g/dL"),
    (r"hematocrit", "Hematocrit", r"%", "%"),
    (r"(?:wbc|white blood cells?)", "White Blood Cell Count", r"k/uL|10\^3/uL", "10^3/uL"),
    (r"platelets?", "Platelet Count", r"k/uL|10\^3/uL", "10^3/uL"),
    (r"glucose", "Glucose", r"mg/dL", "mg/dL"),
    (r"(?<!ldl )(?<!hdl )cholesterol", "Cholesterol", r"mg/dL", "mg/dL"),
    (r"ldl(?: cholesterol)?", "LDL", r"mg/dL", "mg/dL"),
    (r"hdl(?: cholesterol)?", "HDL", r"mg/dL", "mg/dL"),
    (r"creatinine", "Creatinine", r"mg/dL", "mg/dL"),
    (r"tsh", "TSH", r"mIU/L|uIU/mL", "mIU/L"),
    (r"ferritin", "Ferritin", r"ng/mL", "ng/mL"),
    (r"vitamin d", "Vitamin D", r"ng/mL", "ng/mL"),
]

_COMPILED_LAB_PATTERNS = [
    (
        re.compile(rf"\b{name_re}\b\s*:?\s*{_NUMBER}\s*({unit_re})?{_RANGE}", re.IGNORECASE),
        display,
        default_unit,
    )
    for name_re, display, unit_re, default_unit in LAB_TEXT_PATTERNS
]


def extract_lab_results_from_text(text: str | None) -> list[LabResultInput]:
    """Pull "Name: value unit (low-high)" lab values out of free text.

    Each pattern contributes at most its first match, in pattern order.
    """
    if not text:
        return []
    results = []
    for pattern, display, default_unit in _COMPILED_LAB_PATTERNS:
        match = pattern.search(text)
        if not match:
            continue
        value, unit, low, high = match.groups()
        reference_range = None
        if low is not None and high is not None:
            reference_range = {"low": float(low), "high": float(high)}
        results.append(
            LabResultInput(
                name=display,
                value=float(value),
                unit=unit or default_unit,
                reference_range=reference_range,
            )
        )
    return results


# =============================================================================
# Diagnostic reports
# =============================================================================


def convert_record_to_diagnostic_report(
    record: DocumentInput | dict[str, Any],
    patient_id: str,
    observation_ids: list[str] | None = None,
    *,
    resource_id: str | None = None,
    now: datetime | None = None,
) -> DiagnosticReport:
    """Convert an analyzed medical record into a DiagnosticReport.

    Lab-like record types get the laboratory report code and LAB category.
    ``observation_ids`` become ``result`` references.
    """
    record = _coerce(DocumentInput, record)
    now = now or utc_now()
    record_type = record.record_type or "Unknown report type"
    is_lab = "lab" in record_type.lower()

    report = DiagnosticReport(
        id=resource_id or record.id,
        status="final",
        code=CodeableConcept(
            coding=[
                Coding(
                    system=LOINC_SYSTEM,
                    code=LAB_REPORT_CODE if is_lab else GENERIC_REPORT_CODE,
                    display=record_type,
                )
            ],
            text=record_type,
        ),
        subject=patient_reference(patient_id),
        effective_date_time=normalize_instant(record.record_date, now),
        issued=normalize_instant(record.created_at, now),
        result=[Reference(reference=make_reference("Observation", oid)) for oid in observation_ids or []],
        conclusion=record.brief_summary or record.comment or None,
    )
    if is_lab:
        ensure_lab_category(report)
    if record.file_url:
        report.presented_form = [
            Attachment(
                content_type=content_type_for(record.file_url, record.file_type),
                url=record.file_url,
                title=record.name,
            )
        ]
    return report


def convert_to_imaging_report(
    report_data: ImagingReportInput | dict[str, Any],
    patient_id: str,
    imaging_study_id: str | None = None,
    *,
    resource_id: str | None = None,
    now: datetime | None = None,
) -> DiagnosticReport:
    """Convert imaging findings into a radiology DiagnosticReport."""
    data = _coerce(ImagingReportInput, report_data)
    now = now or utc_now()
    report = DiagnosticReport(
        id=resource_id or data.id,
        status="final",
        category=[RADIOLOGY_CATEGORY.model_copy(deep=True)],
        code=CodeableConcept(
            coding=[
                Coding(system=LOINC_SYSTEM, code=IMAGING_REPORT_CODE, display="Diagnostic imaging report")
            ],
            text=data.name or "Imaging Report",
        ),
        subject=patient_reference(patient_id),
        effective_date_time=normalize_instant(data.date, now),
        issued=normalize_instant(data.issued, now),
        conclusion=data.conclusion or data.impression or data.brief_summary or None,
        result=[Reference(reference=make_reference("Observation", oid)) for oid in data.observation_ids],
    )
    if imaging_study_id:
        report.imaging_study = [Reference(reference=make_reference("ImagingStudy", imaging_study_id))]
    if data.url:
        report.presented_form = [
            Attachment(content_type=content_type_for(data.url, data.file_type), url=data.url, title=data.name)
        ]
    return report


# =============================================================================
# Medications, conditions, allergies, immunizations
# =============================================================================


def convert_to_medication(
    medication: MedicationInput | dict[str, Any],
    *,
    resource_id: str | None = None,
    terminology: Terminology | None = None,
) -> Medication:
    """Convert a medication name to a Medication resource coded with RxNorm."""
    medication = _coerce(MedicationInput, medication)
    terms = terminology or get_terminology()
    coding = [Coding(**terms.medications.lookup(medication.name))] if medication.name else []
    return Medication(
        id=resource_id or medication.id,
        code=CodeableConcept(coding=coding, text=medication.name or "Unknown medication"),
        form=CodeableConcept(text=medication.form) if medication.form else None,
    )


def convert_to_medication_statement(
    medication: MedicationInput | dict[str, Any],
    patient_id: str,
    medication_id: str | None = None,
    *,
    resource_id: str | None = None,
    terminology: Terminology | None = None,
    now: datetime | None = None,
) -> MedicationStatement:
    """Convert a medication entry to a MedicationStatement.

    References ``Medication/{medication_id}`` when given; the coded concept is
    always filled so the statement stays readable on its own.
    """
    medication = _coerce(MedicationInput, medication)
    terms = terminology or get_terminology()
    now = now or utc_now()

    coding = [Coding(**terms.medications.lookup(medication.name))] if medication.name else []
    statement = MedicationStatement(
        id=resource_id or medication.id,
        status=(medication.status or "active").lower(),
        medication_codeable_concept=CodeableConcept(
            coding=coding, text=medication.name or "Unknown medication"
        ),
        subject=patient_reference(patient_id),
        date_asserted=normalize_instant(None, now),
    )
    if medication_id:
        statement.medication_reference = Reference(reference=make_reference("Medication", medication_id))

    dosage_text = " ".join(
        part for part in (medication.dosage, medication.frequency, medication.route) if part
    )
    if dosage_text:
        statement.dosage = [Dosage(text=dosage_text)]

    if medication.start_date:
        statement.effective_period = Period(
            start=normalize_instant(medication.start_date, now),
            end=normalize_instant(medication.end_date, now) if medication.end_date else None,
        )
    return statement


def convert_to_condition(
    condition: ConditionInput | dict[str, Any],
    patient_id: str,
    *,
    resource_id: str | None = None,
    terminology: Terminology | None = None,
    now: datetime | None = None,
) -> Condition:
    """Convert a diagnosis entry to a Condition coded with ICD-10."""
    condition = _coerce(ConditionInput, condition)
    terms = terminology or get_terminology()
    now = now or utc_now()

    status = (condition.status or "active").lower()
    coding = [Coding(**terms.conditions.lookup(condition.name))] if condition.name else []
    resource = Condition(
        id=resource_id or condition.id,
        clinical_status=CodeableConcept(
            coding=[Coding(system=CONDITION_CLINICAL_SYSTEM, code=status, display=status.capitalize())]
        ),
        code=CodeableConcept(coding=coding, text=condition.name or "Unknown condition"),
        subject=patient_reference(patient_id),
        recorded_date=normalize_instant(None, now),
        note=_annotation(condition.note),
    )
    if condition.onset_date:
        resource.onset_date_time = normalize_instant(condition.onset_date, now)
    if condition.severity:
        resource.severity = CodeableConcept(
            coding=[
                Coding(
                    system=CONDITION_SEVERITY_SYSTEM,
                    code=condition.severity.lower(),
                    display=condition.severity,
                )
            ],
            text=condition.severity,
        )
    return resource


def convert_to_allergy_intolerance(
    allergy: AllergyInput | dict[str, Any],
    patient_id: str,
    *,
    resource_id: str | None = None,
    now: datetime | None = None,
) -> AllergyIntolerance:
    """Convert an allergy entry to an AllergyIntolerance.

    Categories and criticality outside the FHIR value sets are dropped.
    """
    allergy = _coerce(AllergyInput, allergy)
    now = now or utc_now()
    categories = [c.lower() for c in allergy.category if c.lower() in VALID_ALLERGY_CATEGORIES]
    criticality = allergy.criticality.lower() if allergy.criticality else None

    resource = AllergyIntolerance(
        id=resource_id or allergy.id,
        type=allergy.type or "allergy",
        category=categories,
        criticality=criticality if criticality in VALID_CRITICALITY else None,
        code=CodeableConcept(text=allergy.name or "Unknown allergy"),
        patient=patient_reference(patient_id),
        recorded_date=normalize_instant(None, now),
        reaction=[
            AllergyReaction(
                manifestation=[
                    CodeableConcept(text=r.manifestation or r.description or "Unknown reaction")
                ],
                severity=r.severity,
            )
            for r in allergy.reaction
        ],
    )
    if allergy.onset_date:
        resource.onset_date_time = normalize_instant(allergy.onset_date, now)
    return resource


def convert_to_immunization(
    immunization: ImmunizationInput | dict[str, Any],
    patient_id: str,
    *,
    resource_id: str | None = None,
    terminology: Terminology | None = None,
    now: datetime | None = None,
) -> Immunization:
    """Convert a vaccination entry to an Immunization coded with CVX."""
    immunization = _coerce(ImmunizationInput, immunization)
    terms = terminology or get_terminology()
    coding = [Coding(**terms.vaccines.lookup(immunization.name))] if immunization.name else []
    resource = Immunization(
        id=resource_id or immunization.id,
        status="completed",
        vaccine_code=CodeableConcept(coding=coding, text=immunization.name or "Unknown vaccine"),
        patient=patient_reference(patient_id),
        occurrence_date_time=normalize_instant(immunization.date, now or utc_now()),
        lot_number=immunization.lot_number,
    )
    if immunization.site:
        resource.site = {"text": immunization.site}
    return resource


# =============================================================================
# Documents, procedures, family history
# =============================================================================


def convert_to_document_reference(
    document: DocumentInput | dict[str, Any],
    patient_id: str,
    file_url: str | None = None,
    *,
    resource_id: str | None = None,
    terminology: Terminology | None = None,
    now: datetime | None = None,
) -> DocumentReference:
    """Convert an uploaded document's metadata into a DocumentReference.

    The record type is coded through the document-type table; its category
    follows the matched row, or the generic DOC category when nothing matches.
    """
    document = _coerce(DocumentInput, document)
    terms = terminology or get_terminology()
    now = now or utc_now()
    url = file_url or document.file_url

    entry = terms.document_types.match(document.record_type)
    if entry is not None:
        coding = Coding(system=LOINC_SYSTEM, code=entry.code, display=entry.display)
        category = CodeableConcept(
            coding=[Coding(system=ACT_CODE_SYSTEM, code=entry.category or "DOC", display=entry.display)],
            text=entry.display,
        )
    elif document.record_type:
        coding = Coding(**terms.document_types.lookup(document.record_type))
        category = DOCUMENT_CATEGORY.model_copy(deep=True)
    else:
        coding = Coding(system=LOINC_SYSTEM, code=DEFAULT_DOCUMENT_CODE, display=DEFAULT_DOCUMENT_DISPLAY)
        category = DOCUMENT_CATEGORY.model_copy(deep=True)

    content = []
    if url:
        content.append(
            DocumentContent(
                attachment=Attachment(
                    content_type=content_type_for(url, document.file_type),
                    url=url,
                    title=document.name or "Medical Record",
                    creation=normalize_instant(document.created_at, now),
                )
            )
        )

    return DocumentReference(
        id=resource_id or document.id,
        status="current",
        type=CodeableConcept(coding=[coding], text=document.record_type or "Medical Record"),
        category=[category],
        subject=patient_reference(patient_id),
        date=normalize_instant(document.record_date, now),
        description=document.comment or document.brief_summary or "Medical document",
        content=content,
    )


def _procedure_status(raw_status: str | None, performed: datetime | None, now: datetime) -> str:
    if raw_status:
        status = raw_status.lower().strip()
        if "complet" in status:
            return "completed"
        if "in progress" in status or "ongoing" in status:
            return "in-progress"
        if "planned" in status or "scheduled" in status:
            return "preparation"
        if "cancelled" in status or "stopped" in status:
            return "stopped"
    elif performed is not None and performed <= now:
        return "completed"
    return "unknown"


def convert_to_procedure(
    procedure: ProcedureInput | dict[str, Any],
    patient_id: str,
    *,
    resource_id: str | None = None,
    terminology: Terminology | None = None,
    now: datetime | None = None,
) -> Procedure:
    """Convert a procedure entry to a Procedure coded with SNOMED CT.

    Status is inferred from free text ("completed", "scheduled", ...), or from
    a past date when no status is given. A completed procedure without a date
    is stamped with the conversion time; other undated procedures omit it.
    """
    procedure = _coerce(ProcedureInput, procedure)
    terms = terminology or get_terminology()
    now = now or utc_now()
    performed = parse_fhir_datetime(procedure.date)
    status = _procedure_status(procedure.status, performed, now)

    coding = [Coding(**terms.procedures.lookup(procedure.name))] if procedure.name else []
    resource = Procedure(
        id=resource_id or procedure.id,
        status=status,
        code=CodeableConcept(coding=coding, text=procedure.name or "Procedure"),
        subject=patient_reference(patient_id),
        outcome=CodeableConcept(text=procedure.outcome) if procedure.outcome else None,
        body_site=[CodeableConcept(text=procedure.body_site)] if procedure.body_site else [],
    )
    if procedure.date:
        resource.performed_date_time = normalize_instant(procedure.date, now)
    elif status == "completed":
        resource.performed_date_time = normalize_instant(None, now)

    # FHIR elements without a dedicated model field ride along as extras
    if procedure.location:
        resource.location = {"display": procedure.location}
    if procedure.performer:
        resource.performer = [{"actor": {"display": procedure.performer}}]
    if procedure.reason:
        resource.reasonCode = [{"text": procedure.reason}]
    if procedure.complications:
        resource.complication = [{"text": c} for c in procedure.complications]
    return resource


def convert_to_family_member_history(
    history: FamilyHistoryInput | dict[str, Any],
    patient_id: str,
    *,
    resource_id: str | None = None,
    terminology: Terminology | None = None,
    now: datetime | None = None,
) -> FamilyMemberHistory:
    """Convert a family history entry to a FamilyMemberHistory.

    Raises:
        ValidationError: If the relationship is missing.
    """
    history = _coerce(FamilyHistoryInput, history)
    if not history.relationship or not history.relationship.strip():
        raise ValidationError("relationship required")
    terms = terminology or get_terminology()

    resource = FamilyMemberHistory(
        id=resource_id or history.id,
        status="completed",
        patient=patient_reference(patient_id),
        date=normalize_instant(None, now or utc_now()),
        relationship=CodeableConcept(
            coding=[Coding(**terms.relationships.lookup(history.relationship))],
            text=history.relationship,
        ),
        condition=[
            FamilyMemberCondition(
                code=CodeableConcept(text=c.name or "Unknown condition"),
                onset_string=str(c.onset_age) if c.onset_age is not None else None,
            )
            for c in history.conditions
        ],
    )
    if history.name:
        resource.name = history.name
    if history.sex:
        resource.sex = {"text": history.sex}
    if history.age is not None:
        resource.ageString = str(history.age)
    if history.deceased:
        resource.deceasedBoolean = True
    return resource


# =============================================================================
# Imaging
# =============================================================================


def _dicom_uid(*parts: str) -> str:
    """Deterministic UUID-derived DICOM UID under the 2.25 root."""
    return f"{DICOM_UUID_ROOT}.{uuid.uuid5(uuid.NAMESPACE_OID, '|'.join(parts)).int}"


def convert_to_imaging_study(
    imaging: ImagingInput | dict[str, Any],
    patient_id: str,
    *,
    resource_id: str | None = None,
    terminology: Terminology | None = None,
    now: datetime | None = None,
) -> ImagingStudy:
    """Convert imaging metadata to an ImagingStudy.

    A study without series gets one default series holding one instance, so
    the study is always navigable.
    """
    imaging = _coerce(ImagingInput, imaging)
    terms = terminology or get_terminology()
    started = normalize_instant(imaging.date, now or utc_now())
    study_uid = imaging.study_uid or _dicom_uid(
        patient_id, imaging.name or "", imaging.description or "", started
    )

    modality = Coding(**terms.modalities.lookup(imaging.modality)) if imaging.modality else None

    def _series_modality(raw: str | None) -> Coding:
        if raw:
            return Coding(**terms.modalities.lookup(raw))
        if modality is not None:
            return modality.model_copy()
        return Coding(**terms.modalities.lookup(None))

    series = []
    for index, item in enumerate(imaging.series or [None], start=1):
        series_uid = (item.uid if item and item.uid else None) or f"{study_uid}.{index}"
        raw_instances = item.instances if item and item.instances else [{}]
        instances = [
            ImagingInstance(
                uid=inst.get("uid") or f"{series_uid}.{inst_index}",
                sop_class=CT_IMAGE_STORAGE.model_copy(),
                number=inst_index,
                title=inst.get("title") or f"Instance {inst_index}",
            )
            for inst_index, inst in enumerate(raw_instances, start=1)
        ]
        series.append(
            ImagingSeries(
                uid=series_uid,
                number=index,
                modality=_series_modality(item.modality if item else None),
                description=(item.description if item else None)
                or ("Default Series" if item is None else f"Series {index}"),
                body_site=(
                    Coding(system=SNOMED_SYSTEM, display=item.body_site)
                    if item and item.body_site
                    else None
                ),
                instance=instances,
                numberOfInstances=len(instances),
            )
        )

    return ImagingStudy(
        id=resource_id or imaging.id,
        status="available",
        subject=patient_reference(patient_id),
        started=started,
        modality=[modality] if modality else [],
        description=imaging.description or imaging.name,
        number_of_series=len(series),
        number_of_instances=sum(len(s.instance) for s in series),
        series=series,
        identifier=[{"system": "urn:dicom:uid", "value": f"urn:oid:{study_uid}"}],
    )


# =============================================================================
# Generic entries and dispatch
# =============================================================================


def convert_generic(
    entry: GenericInput | dict[str, Any],
    patient_id: str,
    *,
    resource_id: str | None = None,
    now: datetime | None = None,
) -> GenericResource:
    """Wrap an unrecognised entry, preserving the raw map under ``data``."""
    entry = entry if isinstance(entry, GenericInput) else parse_raw_input(entry)
    if not isinstance(entry, GenericInput):
        entry = GenericInput(data=entry.model_dump(by_alias=True, exclude_none=True))
    return GenericResource(
        id=resource_id or entry.id,
        code=CodeableConcept(text=entry.label or "Unrecognized entry"),
        subject=patient_reference(patient_id),
        created=normalize_instant(entry.date, now or utc_now()),
        data=entry.data,
    )


def _convert_wearable_sample(raw: WearableSampleInput, patient_id: str, **kwargs: Any) -> Resource:
    # Imported lazily: the wearable converter depends on this module
    from app.services.wearable_converter import convert_wearable_sample

    return convert_wearable_sample(raw, patient_id, now=kwargs.get("now"))


_DISPATCH: dict[type[RawInputModel], Callable[..., Resource]] = {
    LabResultInput: convert_lab_to_observation,
    MedicationInput: convert_to_medication_statement,
    ConditionInput: convert_to_condition,
    AllergyInput: convert_to_allergy_intolerance,
    ImmunizationInput: convert_to_immunization,
    ProcedureInput: convert_to_procedure,
    FamilyHistoryInput: convert_to_family_member_history,
    ImagingInput: convert_to_imaging_study,
    ImagingReportInput: convert_to_imaging_report,
    DocumentInput: convert_to_document_reference,
    WearableSampleInput: _convert_wearable_sample,
    GenericInput: convert_generic,
}

_ACCEPTS_TERMINOLOGY = {
    convert_lab_to_observation,
    convert_to_medication_statement,
    convert_to_condition,
    convert_to_immunization,
    convert_to_procedure,
    convert_to_family_member_history,
    convert_to_imaging_study,
    convert_to_document_reference,
}


def convert_raw_input(
    raw: RawInputModel | dict[str, Any],
    patient_id: str,
    *,
    terminology: Terminology | None = None,
    now: datetime | None = None,
) -> Resource:
    """Convert any tagged raw input to its single primary resource.

    Raises:
        ValidationError: If the input lacks a required identity field.
    """
    model = parse_raw_input(raw)
    converter = _DISPATCH[type(model)]
    kwargs: dict[str, Any] = {"now": now}
    if converter in _ACCEPTS_TERMINOLOGY:
        kwargs["terminology"] = terminology
    return converter(model, patient_id, **kwargs)
