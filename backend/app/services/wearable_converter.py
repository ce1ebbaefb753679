"""Wearable device exports to FHIR Observations and summary DiagnosticReports.

Device data arrives as category-keyed sample lists::

    {"heart_rate": [{"dateTime": "...", "value": 72}, ...],
     "steps": [...], "sleep": [...], "activities": [...], "dataframe": [...]}

Known categories become wearable-tagged Observations plus one summary
DiagnosticReport per category. Unknown categories go through the generic
converter so nothing is dropped. Samples with no usable timestamp or value
are skipped.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

from app.schemas.fhir import (
    CodeableConcept,
    Coding,
    DiagnosticReport,
    GenericResource,
    Meta,
    Observation,
    ObservationComponent,
    Period,
    Quantity,
    Reference,
    make_reference,
    patient_reference,
)
from app.schemas.raw_inputs import GenericInput, WearableSampleInput
from app.services.converters import (
    OBSERVATION_CATEGORY_SYSTEM,
    UCUM_SYSTEM,
    convert_generic,
)
from app.services.terminology import LOINC_SYSTEM
from app.utils.fhir_helpers import normalize_instant, parse_fhir_datetime, utc_now

logger = logging.getLogger(__name__)

TAG_SYSTEM = "http://healthrecord.app/fhir/CodeSystem/resource-tags"
WEARABLE_SUMMARY_SYSTEM = "http://healthrecord.app/fhir/CodeSystem/wearable-summary"

WEARABLE_TAG_CODE = "wearable"
SUMMARY_TAG_CODE = "summary"

# LOINC codes produced by this converter
HEART_RATE_CODE = "8867-4"
STEPS_CODE = "41950-7"
SLEEP_DURATION_CODE = "93832-4"
DEEP_SLEEP_CODE = "93831-6"
REM_SLEEP_CODE = "93830-8"
LIGHT_SLEEP_CODE = "93829-0"
EXERCISE_CODE = "41981-2"
DISTANCE_CODE = "41979-6"
GLUCOSE_CODE = "2339-0"

# Category aliases used by device vendors -> canonical category
CATEGORY_ALIASES = {
    "heart_rate": "heart_rate",
    "heart_rates": "heart_rate",
    "hr": "heart_rate",
    "steps": "steps",
    "step_count": "steps",
    "sleep": "sleep",
    "sleeps": "sleep",
    "cycles": "sleep",
    "activities": "activity",
    "activity": "activity",
    "dataframe": "glucose",
    "glucose": "glucose",
}

# Canonical category -> (summary code, summary display)
SUMMARY_CODES = {
    "heart_rate": ("heart-rate-summary", "Heart Rate Summary"),
    "steps": ("step-count-summary", "Step Count Summary"),
    "sleep": ("sleep-summary", "Sleep Summary"),
    "activity": ("activity-summary", "Activity Summary"),
    "glucose": ("glucose-summary", "Glucose Summary"),
}

# Sample timestamp fields in priority order
TIMESTAMP_FIELDS = ("dateTime", "timestamp", "date", "time", "start", "startTime", "start_time")


def wearable_tags(*, summary: bool = False) -> Meta:
    """``meta`` carrying the wearable (and optionally summary) tag."""
    tags = [Coding(system=TAG_SYSTEM, code=WEARABLE_TAG_CODE, display="Wearable device data")]
    if summary:
        tags.append(Coding(system=TAG_SYSTEM, code=SUMMARY_TAG_CODE, display="Summary"))
    return Meta(tag=tags)


def _category(code: str, display: str) -> CodeableConcept:
    return CodeableConcept(
        coding=[Coding(system=OBSERVATION_CATEGORY_SYSTEM, code=code, display=display)],
        text=display,
    )


def _loinc(code: str, display: str) -> CodeableConcept:
    return CodeableConcept(coding=[Coding(system=LOINC_SYSTEM, code=code, display=display)], text=display)


def _quantity(value: float, unit: str, ucum: str | None = None) -> Quantity:
    return Quantity(value=value, unit=unit, system=UCUM_SYSTEM, code=ucum or unit)


def _number(sample: dict[str, Any], *keys: str) -> float | None:
    for key in keys:
        raw = sample.get(key)
        if raw is None or isinstance(raw, bool):
            continue
        try:
            return float(raw)
        except (TypeError, ValueError):
            continue
    return None


def sample_timestamp(sample: dict[str, Any]) -> datetime | None:
    """First parseable timestamp among the known sample fields."""
    for key in TIMESTAMP_FIELDS:
        parsed = parse_fhir_datetime(sample.get(key))
        if parsed is not None:
            return parsed
    return None


# =============================================================================
# Summaries
# =============================================================================


@dataclass
class WearableSummary:
    """Numeric aggregates for one device export."""

    heart_rate: dict[str, float] | None = None
    steps: dict[str, float] | None = None
    sleep: dict[str, float] | None = None
    activity: dict[str, Any] | None = None
    glucose: dict[str, float] | None = None


def _min_max_avg(values: list[float]) -> dict[str, float]:
    return {
        "min": min(values),
        "max": max(values),
        "avg": round(sum(values) / len(values), 1),
        "count": len(values),
    }


def _describe(category: str, stats: dict[str, Any]) -> str:
    """One-line human summary for the report conclusion."""
    if category == "heart_rate":
        return (
            f"Heart rate averaged {stats['avg']} bpm (range {stats['min']}-{stats['max']}) "
            f"over {stats['count']} readings"
        )
    if category == "steps":
        return f"{stats['total']:.0f} steps over {stats['days']} days, averaging {stats['avg']:.0f} per day"
    if category == "sleep":
        return (
            f"Average sleep {stats['avg_duration']:.0f} min over {stats['nights']} nights "
            f"(deep {stats['avg_deep']:.0f}, REM {stats['avg_rem']:.0f}, light {stats['avg_light']:.0f} min)"
        )
    if category == "activity":
        types = ", ".join(stats["types"]) or "unspecified"
        return (
            f"{stats['count']} activities ({types}), {stats['total_duration']:.0f} min, "
            f"{stats['total_calories']:.0f} kcal"
        )
    if category == "glucose":
        return (
            f"Glucose averaged {stats['avg']} mg/dL (range {stats['min']}-{stats['max']}) "
            f"over {stats['count']} readings"
        )
    return ""


# =============================================================================
# Per-category sample converters
# =============================================================================


def _base_observation(
    patient_id: str,
    device_name: str,
    timestamp: datetime,
    category: CodeableConcept,
    code: CodeableConcept,
) -> Observation:
    return Observation(
        meta=wearable_tags(),
        status="final",
        category=[category],
        code=code,
        subject=patient_reference(patient_id),
        effective_date_time=normalize_instant(timestamp),
        device=Reference(display=device_name),
    )


def _heart_rate(sample, patient_id, device_name, timestamp) -> list[Observation]:
    value = _number(sample, "value", "bpm", "heart_rate", "heartRate")
    if value is None:
        return []
    obs = _base_observation(
        patient_id, device_name, timestamp, _category("vital-signs", "Vital Signs"), _loinc(HEART_RATE_CODE, "Heart rate")
    )
    obs.value_quantity = _quantity(value, "beats/min", "/min")
    return [obs]


def _steps(sample, patient_id, device_name, timestamp) -> list[Observation]:
    value = _number(sample, "steps", "value", "step_count")
    if value is None:
        return []
    obs = _base_observation(
        patient_id,
        device_name,
        timestamp,
        _category("activity", "Activity"),
        _loinc(STEPS_CODE, "Number of steps in 24 hour Measured"),
    )
    obs.value_quantity = _quantity(value, "steps")
    return [obs]


_SLEEP_PARTS = (
    (("duration", "total", "minutes"), SLEEP_DURATION_CODE, "Sleep duration"),
    (("deep",), DEEP_SLEEP_CODE, "Deep sleep duration"),
    (("rem",), REM_SLEEP_CODE, "REM sleep duration"),
    (("light",), LIGHT_SLEEP_CODE, "Light sleep duration"),
)


def _sleep(sample, patient_id, device_name, timestamp) -> list[Observation]:
    observations = []
    for keys, code, display in _SLEEP_PARTS:
        value = _number(sample, *keys)
        if value is None:
            continue
        obs = _base_observation(
            patient_id, device_name, timestamp, _category("vital-signs", "Vital Signs"), _loinc(code, display)
        )
        obs.value_quantity = _quantity(value, "min")
        observations.append(obs)
    return observations


def _activity(sample, patient_id, device_name, timestamp) -> list[Observation]:
    activity_type = str(sample.get("type") or sample.get("activity_type") or "walking")
    components = []
    for keys, code, display, unit, ucum in (
        (("duration",), SLEEP_DURATION_CODE, "Duration", "min", "min"),
        (("distance",), DISTANCE_CODE, "Distance walked", "km", "km"),
        (("calories",), EXERCISE_CODE, "Calories burned", "kcal", "kcal"),
        (("average_heart_rate", "avg_hr", "averageHeartRate"), HEART_RATE_CODE, "Heart rate", "beats/min", "/min"),
    ):
        value = _number(sample, *keys)
        if value is not None:
            components.append(
                ObservationComponent(code=_loinc(code, display), value_quantity=_quantity(value, unit, ucum))
            )
    if not components:
        return []
    obs = _base_observation(
        patient_id,
        device_name,
        timestamp,
        _category("activity", "Activity"),
        CodeableConcept(
            coding=[Coding(system=LOINC_SYSTEM, code=EXERCISE_CODE, display="Exercise activity")],
            text=f"{activity_type.capitalize()} activity",
        ),
    )
    obs.component = components
    return [obs]


def _glucose(sample, patient_id, device_name, timestamp) -> list[Observation]:
    value = _number(sample, "value", "glucose", "glucose_value")
    if value is None:
        return []
    obs = _base_observation(
        patient_id,
        device_name,
        timestamp,
        _category("laboratory", "Laboratory"),
        _loinc(GLUCOSE_CODE, "Glucose [Mass/volume] in Blood"),
    )
    obs.value_quantity = _quantity(value, "mg/dL")
    return [obs]


_SAMPLE_CONVERTERS = {
    "heart_rate": _heart_rate,
    "steps": _steps,
    "sleep": _sleep,
    "activity": _activity,
    "glucose": _glucose,
}


def _summarize(category: str, samples: list[dict[str, Any]]) -> dict[str, Any] | None:
    if category in ("heart_rate", "glucose"):
        keys = ("value", "bpm", "heart_rate", "heartRate") if category == "heart_rate" else (
            "value", "glucose", "glucose_value"
        )
        values = [v for v in (_number(s, *keys) for s in samples) if v is not None]
        return _min_max_avg(values) if values else None
    if category == "steps":
        values = [v for v in (_number(s, "steps", "value", "step_count") for s in samples) if v is not None]
        if not values:
            return None
        return {"total": sum(values), "avg": round(sum(values) / len(values)), "days": len(values)}
    if category == "sleep":
        nights = [s for s in samples if _number(s, "duration", "total", "minutes") is not None]
        if not nights:
            return None

        def avg(*keys: str) -> float:
            return round(sum(_number(s, *keys) or 0.0 for s in nights) / len(nights), 1)

        return {
            "avg_duration": avg("duration", "total", "minutes"),
            "avg_deep": avg("deep"),
            "avg_rem": avg("rem"),
            "avg_light": avg("light"),
            "nights": len(nights),
        }
    if category == "activity":
        if not samples:
            return None
        types = sorted({str(s["type"]) for s in samples if s.get("type")})
        return {
            "count": len(samples),
            "total_duration": sum(_number(s, "duration") or 0.0 for s in samples),
            "total_calories": sum(_number(s, "calories") or 0.0 for s in samples),
            "types": types,
        }
    return None


# =============================================================================
# Public API
# =============================================================================


@dataclass
class WearableCategoryResult:
    """Observations converted from one category, with its summary metadata."""

    category: str
    observations: list[Observation]
    stats: dict[str, Any] | None
    summary_code: str
    summary_display: str


@dataclass
class WearableConversion:
    """Result of converting one device export."""

    categories: list[WearableCategoryResult] = field(default_factory=list)
    generic: list[GenericResource] = field(default_factory=list)
    summary: WearableSummary = field(default_factory=WearableSummary)
    skipped: int = 0

    @property
    def observation_count(self) -> int:
        return sum(len(c.observations) for c in self.categories)


def convert_device_data(
    data: dict[str, list[dict[str, Any]]],
    device_name: str,
    patient_id: str,
    *,
    now: datetime | None = None,
) -> WearableConversion:
    """Convert a category-keyed device export.

    Args:
        data: Category name -> list of samples.
        device_name: Device label recorded on every Observation.
        patient_id: Subject patient id.
        now: Clock override for generic entries without dates.

    Returns:
        WearableConversion grouping observations per category, generic
        pass-through resources for unknown categories, and aggregates.
    """
    result = WearableConversion()
    merged: dict[str, list[dict[str, Any]]] = {}
    for raw_category, samples in data.items():
        if not isinstance(samples, list):
            samples = [samples]
        category = CATEGORY_ALIASES.get(raw_category.lower())
        if category is None:
            for sample in samples:
                entry = sample if isinstance(sample, dict) else {"value": sample}
                result.generic.append(
                    convert_generic(
                        GenericInput(
                            label=f"{device_name} {raw_category}",
                            data={"category": raw_category, "device": device_name, "data": entry},
                        ),
                        patient_id,
                        now=now,
                    )
                )
            continue
        merged.setdefault(category, []).extend(s for s in samples if isinstance(s, dict))

    for category, samples in merged.items():
        converter = _SAMPLE_CONVERTERS[category]
        observations: list[Observation] = []
        valid_samples = []
        for sample in samples:
            timestamp = sample_timestamp(sample)
            converted = converter(sample, patient_id, device_name, timestamp) if timestamp else []
            if not converted:
                result.skipped += 1
                logger.debug(f"Skipping invalid {category} sample from {device_name}: {sample!r}")
                continue
            observations.extend(converted)
            valid_samples.append(sample)

        if not observations:
            continue
        stats = _summarize(category, valid_samples)
        setattr(result.summary, category, stats)
        code, display = SUMMARY_CODES[category]
        result.categories.append(
            WearableCategoryResult(
                category=category,
                observations=observations,
                stats=stats,
                summary_code=code,
                summary_display=display,
            )
        )

    if result.skipped:
        logger.warning(f"Skipped {result.skipped} invalid samples from {device_name}")
    return result


def build_summary_report(
    group: WearableCategoryResult,
    patient_id: str,
    device_name: str,
    observation_ids: list[str],
    *,
    now: datetime | None = None,
) -> DiagnosticReport:
    """Summary DiagnosticReport for one category, linking its Observations."""
    now = now or utc_now()
    dates = [o.effective_date_time for o in group.observations if o.effective_date_time]
    report = DiagnosticReport(
        meta=wearable_tags(summary=True),
        status="final",
        category=[_category("vital-signs" if group.category != "activity" else "activity", "Wearable summary")],
        code=CodeableConcept(
            coding=[Coding(system=WEARABLE_SUMMARY_SYSTEM, code=group.summary_code, display=group.summary_display)],
            text=group.summary_display,
        ),
        subject=patient_reference(patient_id),
        effective_date_time=max(dates) if dates else normalize_instant(None, now),
        issued=normalize_instant(None, now),
        result=[Reference(reference=make_reference("Observation", oid)) for oid in observation_ids],
        conclusion=f"{device_name}: {_describe(group.category, group.stats)}" if group.stats else None,
    )
    if dates:
        report.effective_period = Period(start=min(dates), end=max(dates))
    return report


def convert_wearable_sample(
    sample: WearableSampleInput,
    patient_id: str,
    *,
    now: datetime | None = None,
) -> Observation | GenericResource:
    """Convert a single tagged wearable sample.

    Falls back to the generic converter for unknown categories or samples
    without a usable timestamp/value.
    """
    category = CATEGORY_ALIASES.get(sample.category.lower())
    payload = {**sample.data}
    if sample.value is not None:
        payload.setdefault("value", sample.value)
    if sample.timestamp is not None:
        payload.setdefault("timestamp", sample.timestamp)

    if category is not None:
        timestamp = sample_timestamp(payload)
        converted = _SAMPLE_CONVERTERS[category](payload, patient_id, sample.device_name, timestamp) if timestamp else []
        if converted:
            return converted[0]

    return convert_generic(
        GenericInput(
            id=sample.id,
            label=f"{sample.device_name} {sample.category}",
            data={"category": sample.category, "device": sample.device_name, "data": payload},
        ),
        patient_id,
        now=now,
    )
