"""Wearable-origin classification and index-build filtering.

Raw wearable samples can outnumber clinical resources by orders of
magnitude. The index build therefore selects one of three modes:

- include_all: index everything
- exclude: drop every wearable-origin resource
- summary_only: keep wearable summary reports, drop raw samples
"""

import logging
from enum import Enum
from typing import Any

from app.services.wearable_converter import (
    DEEP_SLEEP_CODE,
    DISTANCE_CODE,
    EXERCISE_CODE,
    HEART_RATE_CODE,
    LIGHT_SLEEP_CODE,
    REM_SLEEP_CODE,
    SLEEP_DURATION_CODE,
    STEPS_CODE,
    SUMMARY_TAG_CODE,
    WEARABLE_TAG_CODE,
)
from app.utils.fhir_helpers import extract_code, get_path, has_tag

logger = logging.getLogger(__name__)


class WearableMode(str, Enum):
    INCLUDE_ALL = "include_all"
    EXCLUDE = "exclude"
    SUMMARY_ONLY = "summary_only"


# Device vendor name substrings (matched lowercase)
WEARABLE_VENDORS = (
    "fitbit",
    "garmin",
    "apple watch",
    "samsung",
    "whoop",
    "withings",
    "oura",
    "dexcom",
    "polar",
)

# Measurement codes recorded by consumer wearables
WEARABLE_CODES = frozenset(
    {
        HEART_RATE_CODE,
        STEPS_CODE,
        SLEEP_DURATION_CODE,
        DEEP_SLEEP_CODE,
        REM_SLEEP_CODE,
        LIGHT_SLEEP_CODE,
        EXERCISE_CODE,
        DISTANCE_CODE,
        "41982-0",  # percentage of body fat
        "85530-4",  # flights climbed
    }
)

SUMMARY_CODE_SUFFIX = "-summary"


def _codes(resource: dict[str, Any]) -> list[str]:
    concept = extract_code(resource)
    return [c.get("code") for c in concept.get("coding") or [] if c.get("code")]


def _device_names(resource: dict[str, Any]) -> list[str]:
    names = [
        get_path(resource, "device.display"),
        get_path(resource, "data.device"),
        get_path(resource, "performer.display"),
    ]
    return [n.lower() for n in names if isinstance(n, str)]


def is_wearable(resource: dict[str, Any]) -> bool:
    """Whether a resource originated from a consumer wearable device."""
    if has_tag(resource, WEARABLE_TAG_CODE):
        return True
    if any(vendor in name for name in _device_names(resource) for vendor in WEARABLE_VENDORS):
        return True
    if resource.get("resourceType") == "Observation":
        return any(code in WEARABLE_CODES for code in _codes(resource))
    return False


def is_wearable_summary(resource: dict[str, Any]) -> bool:
    """Whether a resource is a report-level summary of wearable samples."""
    if has_tag(resource, SUMMARY_TAG_CODE):
        return True
    return any(code.endswith(SUMMARY_CODE_SUFFIX) for code in _codes(resource))


def filter_resources(
    resources: list[dict[str, Any]],
    mode: WearableMode | str = WearableMode.SUMMARY_ONLY,
) -> list[dict[str, Any]]:
    """Apply a wearable mode to a resource set, preserving order."""
    mode = WearableMode(mode)
    if mode is WearableMode.INCLUDE_ALL:
        return list(resources)

    kept = []
    for resource in resources:
        if not is_wearable(resource) and not is_wearable_summary(resource):
            kept.append(resource)
        elif mode is WearableMode.SUMMARY_ONLY and is_wearable_summary(resource):
            kept.append(resource)

    dropped = len(resources) - len(kept)
    if dropped:
        logger.debug(f"Wearable filter ({mode.value}) dropped {dropped} of {len(resources)} resources")
    return kept
