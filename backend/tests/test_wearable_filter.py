"""Tests for wearable-origin classification and index filtering."""

import pytest

from app.services.wearable_converter import HEART_RATE_CODE, TAG_SYSTEM
from app.services.wearable_filter import WearableMode, filter_resources, is_wearable, is_wearable_summary


def heart_rate_sample(i: int) -> dict:
    return {
        "resourceType": "Observation",
        "id": f"hr-{i}",
        "code": {"coding": [{"system": "http://loinc.org", "code": HEART_RATE_CODE}]},
        "valueQuantity": {"value": 60 + i % 20, "unit": "beats/min"},
        "meta": {"tag": [{"system": TAG_SYSTEM, "code": "wearable"}]},
    }


HEART_RATE_SUMMARY = {
    "resourceType": "DiagnosticReport",
    "id": "hr-summary",
    "code": {"coding": [{"code": "heart-rate-summary", "display": "Heart Rate Summary"}]},
    "meta": {"tag": [{"system": TAG_SYSTEM, "code": "wearable"}, {"system": TAG_SYSTEM, "code": "summary"}]},
}

CONDITION = {"resourceType": "Condition", "id": "c1", "code": {"text": "Asthma"}}


@pytest.fixture
def mixed_resources() -> list[dict]:
    return [heart_rate_sample(i) for i in range(100)] + [HEART_RATE_SUMMARY, CONDITION]


class TestIsWearable:
    def test_tagged(self):
        assert is_wearable(heart_rate_sample(0))

    def test_vendor_device(self):
        resource = {"resourceType": "Observation", "device": {"display": "Oura Ring Gen3"}}
        assert is_wearable(resource)

    def test_untagged_wearable_code(self):
        resource = {"resourceType": "Observation", "code": {"coding": [{"code": HEART_RATE_CODE}]}}
        assert is_wearable(resource)

    def test_clinical_resource(self):
        assert not is_wearable(CONDITION)
        assert not is_wearable({"resourceType": "Observation", "code": {"coding": [{"code": "718-7"}]}})

    def test_generic_device_entry(self):
        assert is_wearable({"resourceType": "Basic", "data": {"device": "Whoop 4.0"}})


class TestIsWearableSummary:
    def test_summary_tag(self):
        assert is_wearable_summary(HEART_RATE_SUMMARY)

    def test_summary_code_without_tag(self):
        assert is_wearable_summary({"resourceType": "DiagnosticReport", "code": {"coding": [{"code": "sleep-summary"}]}})

    def test_raw_sample(self):
        assert not is_wearable_summary(heart_rate_sample(0))


class TestFilterResources:
    def test_summary_only(self, mixed_resources):
        kept = filter_resources(mixed_resources, WearableMode.SUMMARY_ONLY)
        assert [r["id"] for r in kept] == ["hr-summary", "c1"]

    def test_exclude(self, mixed_resources):
        kept = filter_resources(mixed_resources, "exclude")
        assert [r["id"] for r in kept] == ["c1"]

    def test_include_all(self, mixed_resources):
        assert len(filter_resources(mixed_resources, "include_all")) == 102

    def test_unknown_mode(self, mixed_resources):
        with pytest.raises(ValueError):
            filter_resources(mixed_resources, "most")
