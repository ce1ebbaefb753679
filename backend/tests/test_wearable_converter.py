"""Tests for device export -> FHIR conversion."""

from datetime import datetime, timezone

from app.schemas.fhir import to_fhir_dict
from app.schemas.raw_inputs import WearableSampleInput
from app.services.wearable_converter import (
    HEART_RATE_CODE,
    SUMMARY_TAG_CODE,
    WEARABLE_TAG_CODE,
    build_summary_report,
    convert_device_data,
    convert_wearable_sample,
    sample_timestamp,
)

PATIENT_ID = "patient-1"
DEVICE = "Fitbit Charge 6"
NOW = datetime(2024, 6, 1, 12, 0, tzinfo=timezone.utc)


def tag_codes(resource: dict) -> list[str]:
    return [t["code"] for t in resource.get("meta", {}).get("tag", [])]


def device_export() -> dict:
    return {
        "hr": [
            {"dateTime": "2024-05-01T08:00:00Z", "value": 62},
            {"dateTime": "2024-05-01T09:00:00Z", "value": 80},
            {"dateTime": "2024-05-01T10:00:00Z", "bpm": 71},
        ],
        "steps": [
            {"date": "2024-05-01", "steps": 8000},
            {"date": "2024-05-02", "steps": 12000},
        ],
        "sleep": [
            {"date": "2024-05-01", "duration": 420, "deep": 90, "rem": 100, "light": 230},
        ],
    }


class TestSampleTimestamp:
    def test_field_priority(self):
        sample = {"timestamp": "2024-05-02T00:00:00Z", "dateTime": "2024-05-01T00:00:00Z"}
        assert sample_timestamp(sample) == datetime(2024, 5, 1, tzinfo=timezone.utc)

    def test_epoch_milliseconds(self):
        assert sample_timestamp({"timestamp": 1714550400000}) == datetime(2024, 5, 1, 8, 0, tzinfo=timezone.utc)

    def test_missing(self):
        assert sample_timestamp({"value": 70}) is None


class TestConvertDeviceData:
    def test_groups_by_canonical_category(self):
        result = convert_device_data(device_export(), DEVICE, PATIENT_ID, now=NOW)

        assert [c.category for c in result.categories] == ["heart_rate", "steps", "sleep"]
        counts = {c.category: len(c.observations) for c in result.categories}
        # Sleep yields one observation per stage plus the total
        assert counts == {"heart_rate": 3, "steps": 2, "sleep": 4}
        assert result.observation_count == 9
        assert result.skipped == 0

    def test_observations_are_tagged_and_linked(self):
        result = convert_device_data(device_export(), DEVICE, PATIENT_ID, now=NOW)
        obs = to_fhir_dict(result.categories[0].observations[0])

        assert obs["resourceType"] == "Observation"
        assert obs["code"]["coding"][0]["code"] == HEART_RATE_CODE
        assert obs["valueQuantity"]["value"] == 62
        assert obs["subject"]["reference"] == f"Patient/{PATIENT_ID}"
        assert obs["device"]["display"] == DEVICE
        assert obs["effectiveDateTime"] == "2024-05-01T08:00:00+00:00"
        assert tag_codes(obs) == [WEARABLE_TAG_CODE]

    def test_heart_rate_stats(self):
        result = convert_device_data(device_export(), DEVICE, PATIENT_ID, now=NOW)
        assert result.summary.heart_rate == {"min": 62.0, "max": 80.0, "avg": 71.0, "count": 3}
        assert result.summary.steps == {"total": 20000.0, "avg": 10000, "days": 2}
        assert result.summary.sleep["nights"] == 1

    def test_invalid_samples_are_skipped(self):
        data = {
            "heart_rate": [
                {"dateTime": "2024-05-01T08:00:00Z", "value": 62},
                {"value": 75},
                {"dateTime": "2024-05-01T09:00:00Z", "value": "n/a"},
            ]
        }
        result = convert_device_data(data, DEVICE, PATIENT_ID, now=NOW)
        assert result.observation_count == 1
        assert result.skipped == 2
        assert result.summary.heart_rate["count"] == 1

    def test_unknown_category_becomes_generic(self):
        data = {"spo2": [{"time": "2024-05-01T08:00:00Z", "value": 97}]}
        result = convert_device_data(data, DEVICE, PATIENT_ID, now=NOW)

        assert result.categories == []
        assert len(result.generic) == 1
        generic = to_fhir_dict(result.generic[0])
        assert generic["resourceType"] == "Basic"
        assert generic["code"]["text"] == f"{DEVICE} spo2"
        assert generic["data"]["data"] == {"time": "2024-05-01T08:00:00Z", "value": 97}

    def test_category_without_valid_samples_is_dropped(self):
        result = convert_device_data({"glucose": [{"value": 99}]}, DEVICE, PATIENT_ID, now=NOW)
        assert result.categories == []
        assert result.summary.glucose is None


class TestBuildSummaryReport:
    def test_links_observations(self):
        result = convert_device_data(device_export(), DEVICE, PATIENT_ID, now=NOW)
        group = result.categories[0]
        report = to_fhir_dict(build_summary_report(group, PATIENT_ID, DEVICE, ["hr-1", "hr-2", "hr-3"], now=NOW))

        assert report["resourceType"] == "DiagnosticReport"
        assert report["code"]["coding"][0]["code"] == "heart-rate-summary"
        assert [r["reference"] for r in report["result"]] == [
            "Observation/hr-1",
            "Observation/hr-2",
            "Observation/hr-3",
        ]
        assert report["effectivePeriod"] == {
            "start": "2024-05-01T08:00:00+00:00",
            "end": "2024-05-01T10:00:00+00:00",
        }
        assert report["conclusion"].startswith(f"{DEVICE}: Heart rate averaged 71.0 bpm")
        assert tag_codes(report) == [WEARABLE_TAG_CODE, SUMMARY_TAG_CODE]


class TestConvertWearableSample:
    def test_known_category(self):
        sample = WearableSampleInput(category="HR", timestamp="2024-05-01T08:00:00Z", value=64)
        obs = to_fhir_dict(convert_wearable_sample(sample, PATIENT_ID, now=NOW))
        assert obs["resourceType"] == "Observation"
        assert obs["valueQuantity"]["value"] == 64

    def test_unknown_category_falls_back(self):
        sample = WearableSampleInput(category="stress", timestamp="2024-05-01T08:00:00Z", value=3)
        generic = to_fhir_dict(convert_wearable_sample(sample, PATIENT_ID, now=NOW))
        assert generic["resourceType"] == "Basic"
        assert generic["data"]["category"] == "stress"
