"""Shared FHIR resource parsing utilities.

Consolidates date normalization, reference handling and field extraction
used by the converters, the store and the retrieval index. All functions are
pure and handle missing/malformed data gracefully.
"""

import logging
from datetime import date, datetime, timezone
from typing import Any

logger = logging.getLogger(__name__)

# Non-ISO date layouts accepted from free-text sources
_DATE_FORMATS = (
    "%m/%d/%Y",
    "%m/%d/%y",
    "%m-%d-%Y",
    "%B %d, %Y",
    "%b %d, %Y",
    "%d %B %Y",
    "%d %b %Y",
    "%Y/%m/%d",
)

# Fields consulted, in order, when deciding how recent a resource is
DATE_FIELDS = (
    "effectiveDateTime",
    "effectivePeriod.start",
    "performedDateTime",
    "performedPeriod.start",
    "onsetDateTime",
    "occurrenceDateTime",
    "started",
    "date",
    "recordedDate",
    "issued",
    "dateAsserted",
    "meta.lastUpdated",
)

_EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)


def utc_now() -> datetime:
    """Return current UTC time as timezone-aware datetime."""
    return datetime.now(timezone.utc)


def parse_fhir_datetime(value: Any) -> datetime | None:
    """Parse a FHIR date/datetime (or common free-text date) to an aware datetime.

    Handles:
    - 2024-01-15T10:30:00Z
    - 2024-01-15T10:30:00+00:00
    - 2024-01-15
    - 01/15/2024, January 15, 2024
    - datetime / date objects and epoch milliseconds

    Naive values are assumed to be UTC.

    Returns:
        Timezone-aware datetime, or None if the value cannot be parsed.
    """
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        parsed = value
    elif isinstance(value, date):
        parsed = datetime(value.year, value.month, value.day)
    elif isinstance(value, (int, float)) and not isinstance(value, bool):
        # Device exports use epoch milliseconds
        seconds = value / 1000 if value > 1e11 else value
        try:
            return datetime.fromtimestamp(seconds, tz=timezone.utc)
        except (OverflowError, OSError, ValueError):
            return None
    elif isinstance(value, str):
        text = value.strip()
        try:
            parsed = datetime.fromisoformat(text.replace("Z", "+00:00"))
        except ValueError:
            parsed = None
            for fmt in _DATE_FORMATS:
                try:
                    parsed = datetime.strptime(text, fmt)
                    break
                except ValueError:
                    continue
            if parsed is None:
                return None
    else:
        return None

    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def normalize_instant(value: Any, now: datetime | None = None) -> str:
    """Normalize a date-like value to an ISO-8601 UTC instant string.

    Missing values map to ``now`` (or the current time when ``now`` is None),
    evaluated at the moment of conversion. Unparseable values also map to
    ``now`` and are logged.

    Args:
        value: Raw date value.
        now: Optional clock override.

    Returns:
        ISO-8601 instant with an explicit +00:00 offset.
    """
    parsed = parse_fhir_datetime(value)
    if parsed is None:
        if value not in (None, ""):
            logger.debug(f"Unparseable date {value!r}, defaulting to now")
        parsed = now or utc_now()
    return parsed.astimezone(timezone.utc).isoformat()


def get_path(resource: dict[str, Any], path: str) -> Any:
    """Resolve a dotted path (``"subject.reference"``) against a FHIR dict.

    List values along the path resolve through their first element.

    Returns:
        The value, or None if any segment is missing.
    """
    current: Any = resource
    for segment in path.split("."):
        if isinstance(current, list):
            current = current[0] if current else None
        if not isinstance(current, dict):
            return None
        current = current.get(segment)
    return current


def resource_date(resource: dict[str, Any]) -> str | None:
    """Return the most relevant date string of a resource, if any."""
    for path in DATE_FIELDS:
        value = get_path(resource, path)
        if value:
            return str(value)
    return None


def resource_datetime(resource: dict[str, Any]) -> datetime:
    """Parsed resource date for recency ordering; undated resources sort oldest."""
    return parse_fhir_datetime(resource_date(resource)) or _EPOCH


def extract_reference_id(reference: str | None) -> str | None:
    """Extract FHIR ID from a reference string.

    Handles both formats:
    - "urn:uuid:abc-123" -> "abc-123"
    - "Patient/abc-123" -> "abc-123"
    """
    if not reference:
        return None

    if reference.startswith("urn:uuid:"):
        return reference[9:]  # len("urn:uuid:")
    elif "/" in reference:
        return reference.split("/")[-1]
    return reference


def extract_first_coding(codeable_concept: dict[str, Any] | None) -> dict[str, Any]:
    """Extract first coding from a FHIR CodeableConcept."""
    if not codeable_concept:
        return {}
    codings = codeable_concept.get("coding", [])
    return codings[0] if codings else {}


def extract_code(resource: dict[str, Any]) -> dict[str, Any]:
    """Return the CodeableConcept that says what a resource is."""
    for field in ("code", "vaccineCode", "medicationCodeableConcept", "type", "relationship"):
        concept = resource.get(field)
        if isinstance(concept, dict):
            return concept
    return {}


def extract_display_name(resource: dict[str, Any]) -> str | None:
    """Extract a display name from a FHIR resource.

    Prefers the first coding's display unless it is the unknown sentinel,
    then falls back to the concept text.
    """
    code = extract_code(resource)
    if not code:
        return None
    coding = extract_first_coding(code)
    if coding.get("display") and coding.get("code") != "unknown":
        return coding["display"]
    return code.get("text") or coding.get("display")


def extract_observation_value(resource: dict[str, Any]) -> tuple[Any, str | None]:
    """Extract value and unit from FHIR Observation.

    Handles valueQuantity, valueCodeableConcept, and valueString.

    Returns:
        Tuple of (value, unit) where unit may be None
    """
    if "valueQuantity" in resource:
        vq = resource["valueQuantity"]
        return vq.get("value"), vq.get("unit")
    elif "valueCodeableConcept" in resource:
        coding = extract_first_coding(resource["valueCodeableConcept"])
        return coding.get("display"), None
    elif "valueString" in resource:
        return resource["valueString"], None
    return None, None


def has_tag(resource: dict[str, Any], code: str) -> bool:
    """Whether ``meta.tag`` carries a coding with the given code."""
    tags = (resource.get("meta") or {}).get("tag") or []
    return any(isinstance(t, dict) and t.get("code") == code for t in tags)
