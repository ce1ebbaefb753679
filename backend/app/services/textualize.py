"""Textualization of FHIR resources into embeddable fragments.

Every fragment starts with a ``Resource Type`` / ``ID`` header followed by
type-specific lines. Types without a template list their scalar top-level
fields. Each fragment carries ``{resourceType, id, date, code, display}``
metadata so retrieval hits map back to their originating resource.
"""

from collections.abc import Callable
from typing import Any

from app.schemas.fhir import concept_display, first_coding
from app.utils.fhir_helpers import extract_code, extract_display_name, resource_date

UNKNOWN = "Unknown"

# Types whose fragment metadata carries code/display
CODED_TYPES = frozenset({"Observation", "DiagnosticReport", "Condition", "Procedure"})


def _display(concept: dict[str, Any] | None) -> str:
    return concept_display(concept) or UNKNOWN


def _status_code(concept: dict[str, Any] | None) -> str:
    return first_coding(concept).get("code") or UNKNOWN


def _observation_value(resource: dict[str, Any]) -> str | None:
    if "valueQuantity" in resource:
        vq = resource["valueQuantity"]
        return f"{vq.get('value', '')} {vq.get('unit', '')}".strip()
    if "valueString" in resource:
        return str(resource["valueString"])
    if "valueCodeableConcept" in resource:
        return _display(resource["valueCodeableConcept"])
    return None


# =============================================================================
# FHIR Resource Text Templates
# =============================================================================


def _template_observation(resource: dict[str, Any]) -> list[str]:
    lines = [f"Code: {_display(resource.get('code'))}"]
    value = _observation_value(resource)
    if value:
        lines.append(f"Value: {value}")
    for component in resource.get("component") or []:
        cv = _observation_value(component)
        if cv:
            lines.append(f"{_display(component.get('code'))}: {cv}")
    lines.append(f"Date: {resource.get('effectiveDateTime') or resource.get('issued') or UNKNOWN}")
    lines.append(f"Status: {resource.get('status') or UNKNOWN}")
    interpretation = resource.get("interpretation") or []
    if interpretation:
        lines.append(f"Interpretation: {_display(interpretation[0])}")
    ranges = resource.get("referenceRange") or []
    if ranges and ranges[0].get("text"):
        lines.append(f"Reference Range: {ranges[0]['text']}")
    device = (resource.get("device") or {}).get("display")
    if device:
        lines.append(f"Device: {device}")
    subject = (resource.get("subject") or {}).get("reference")
    if subject:
        lines.append(f"Subject: {subject}")
    return lines


def _template_condition(resource: dict[str, Any]) -> list[str]:
    lines = [
        f"Condition: {_display(resource.get('code'))}",
        f"Clinical Status: {_status_code(resource.get('clinicalStatus'))}",
        f"Verification Status: {_status_code(resource.get('verificationStatus'))}",
    ]
    if resource.get("severity"):
        lines.append(f"Severity: {_display(resource['severity'])}")
    if resource.get("onsetDateTime"):
        lines.append(f"Onset Date: {resource['onsetDateTime']}")
    if resource.get("abatementDateTime"):
        lines.append(f"Abatement Date: {resource['abatementDateTime']}")
    return lines


def _template_diagnostic_report(resource: dict[str, Any]) -> list[str]:
    lines = [
        f"Report Type: {_display(resource.get('code'))}",
        f"Status: {resource.get('status') or UNKNOWN}",
        f"Date: {resource.get('effectiveDateTime') or resource.get('issued') or UNKNOWN}",
    ]
    if resource.get("conclusion"):
        lines.append(f"Conclusion: {resource['conclusion']}")
    results = resource.get("result") or []
    if results:
        lines.append(f"Results: {len(results)} observation(s)")
        for index, result in enumerate(results, start=1):
            lines.append(f"  Result {index}: {result.get('reference') or UNKNOWN}")
    return lines


def _template_medication_statement(resource: dict[str, Any]) -> list[str]:
    medication = resource.get("medicationCodeableConcept") or {}
    name = _display(medication) if medication else (
        (resource.get("medicationReference") or {}).get("display") or UNKNOWN
    )
    lines = [f"Medication: {name}", f"Status: {resource.get('status') or UNKNOWN}"]
    period = resource.get("effectivePeriod")
    if period:
        lines.append(f"Period: {period.get('start') or UNKNOWN} to {period.get('end') or 'ongoing'}")
    elif resource.get("effectiveDateTime"):
        lines.append(f"Date: {resource['effectiveDateTime']}")
    for index, dosage in enumerate(resource.get("dosage") or [], start=1):
        lines.append(f"Dosage {index}: {dosage.get('text') or UNKNOWN}")
    return lines


def _template_allergy_intolerance(resource: dict[str, Any]) -> list[str]:
    category = resource.get("category")
    lines = [
        f"Allergy: {_display(resource.get('code'))}",
        f"Type: {resource.get('type') or UNKNOWN}",
        f"Category: {', '.join(category) if isinstance(category, list) and category else category or UNKNOWN}",
        f"Criticality: {resource.get('criticality') or UNKNOWN}",
    ]
    for reaction in resource.get("reaction") or []:
        manifestations = [_display(m) for m in reaction.get("manifestation") or []]
        if manifestations:
            lines.append(f"Reaction: {', '.join(manifestations)}")
    return lines


def _template_immunization(resource: dict[str, Any]) -> list[str]:
    return [
        f"Vaccine: {_display(resource.get('vaccineCode'))}",
        f"Status: {resource.get('status') or UNKNOWN}",
        f"Date: {resource.get('occurrenceDateTime') or UNKNOWN}",
    ]


def _template_procedure(resource: dict[str, Any]) -> list[str]:
    lines = [
        f"Procedure: {_display(resource.get('code'))}",
        f"Status: {resource.get('status') or UNKNOWN}",
        f"Date: {resource.get('performedDateTime') or UNKNOWN}",
    ]
    if resource.get("outcome"):
        lines.append(f"Outcome: {_display(resource['outcome'])}")
    return lines


def _template_document_reference(resource: dict[str, Any]) -> list[str]:
    lines = [
        f"Document Type: {_display(resource.get('type'))}",
        f"Date: {resource.get('date') or UNKNOWN}",
    ]
    if resource.get("description"):
        lines.append(f"Description: {resource['description']}")
    return lines


def _template_family_member_history(resource: dict[str, Any]) -> list[str]:
    lines = [f"Relationship: {_display(resource.get('relationship'))}"]
    for condition in resource.get("condition") or []:
        lines.append(f"Condition: {_display(condition.get('code'))}")
    return lines


def _template_imaging_study(resource: dict[str, Any]) -> list[str]:
    lines = [f"Started: {resource.get('started') or UNKNOWN}"]
    if resource.get("description"):
        lines.append(f"Description: {resource['description']}")
    for series in resource.get("series") or []:
        modality = (series.get("modality") or {}).get("code") or UNKNOWN
        lines.append(f"Series: {series.get('description') or modality} ({modality})")
    return lines


def _template_default(resource: dict[str, Any]) -> list[str]:
    return [
        f"{key}: {value}"
        for key, value in resource.items()
        if key not in ("resourceType", "id") and not isinstance(value, (dict, list))
    ]


RESOURCE_TEMPLATES: dict[str, Callable[[dict[str, Any]], list[str]]] = {
    "Observation": _template_observation,
    "Condition": _template_condition,
    "DiagnosticReport": _template_diagnostic_report,
    "MedicationStatement": _template_medication_statement,
    "AllergyIntolerance": _template_allergy_intolerance,
    "Immunization": _template_immunization,
    "Procedure": _template_procedure,
    "DocumentReference": _template_document_reference,
    "FamilyMemberHistory": _template_family_member_history,
    "ImagingStudy": _template_imaging_study,
}

# Resource types the retrieval index covers
INDEXED_TYPES = frozenset(RESOURCE_TEMPLATES)


def resource_to_text(resource: dict[str, Any]) -> str:
    """Convert a FHIR resource to a human-readable text fragment.

    Args:
        resource: FHIR resource dictionary with 'resourceType' field.

    Returns:
        Multi-line text, or "" if the resource has no resourceType.
    """
    resource_type = resource.get("resourceType") if resource else None
    if not resource_type:
        return ""
    template_fn = RESOURCE_TEMPLATES.get(resource_type, _template_default)
    lines = [f"Resource Type: {resource_type}", f"ID: {resource.get('id')}"]
    lines.extend(template_fn(resource))
    return "\n".join(lines) + "\n"


def fragment_metadata(resource: dict[str, Any]) -> dict[str, Any]:
    """Retrieval metadata for a resource's fragment."""
    resource_type = resource.get("resourceType")
    metadata = {
        "resourceType": resource_type,
        "id": resource.get("id"),
        "date": resource_date(resource) or "",
    }
    if resource_type in CODED_TYPES:
        metadata["code"] = first_coding(extract_code(resource)).get("code") or ""
        metadata["display"] = extract_display_name(resource) or ""
    return metadata


def resources_to_context(resources: list[dict[str, Any]]) -> str:
    """Concatenate resource fragments into one context block for generation."""
    return "\n".join(resource_to_text(r) for r in resources if r)
