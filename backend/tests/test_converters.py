"""Tests for raw input -> FHIR resource converters."""

from datetime import datetime, timezone

import pytest
from pydantic import ValidationError as PydanticValidationError

from app.exceptions import ValidationError
from app.schemas.fhir import to_fhir_dict
from app.schemas.raw_inputs import GenericInput, LabResultInput, parse_raw_input
from app.services.converters import (
    DEFAULT_DOCUMENT_CODE,
    content_type_for,
    convert_generic,
    convert_lab_to_observation,
    convert_raw_input,
    convert_record_to_diagnostic_report,
    convert_to_allergy_intolerance,
    convert_to_condition,
    convert_to_document_reference,
    convert_to_family_member_history,
    convert_to_imaging_report,
    convert_to_imaging_study,
    convert_to_immunization,
    convert_to_medication_statement,
    convert_to_procedure,
    create_patient_from_user,
    ensure_lab_category,
    extract_lab_results_from_text,
)

PATIENT_ID = "patient-1"
NOW = datetime(2024, 6, 1, 12, 0, tzinfo=timezone.utc)


def lab_categories(resource: dict) -> list[str]:
    return [c.get("code") for concept in resource.get("category", []) for c in concept.get("coding", [])]


# =============================================================================
# Laboratory
# =============================================================================


class TestConvertLabToObservation:
    def test_numeric_lab(self):
        obs = to_fhir_dict(
            convert_lab_to_observation(
                {"name": "Hemoglobin", "value": 13.2, "unit": "g/dL", "date": "2024-03-01"},
                PATIENT_ID,
            )
        )
        assert obs["resourceType"] == "Observation"
        assert obs["subject"] == {"reference": f"Patient/{PATIENT_ID}"}
        assert obs["code"]["text"] == "Hemoglobin"
        assert obs["code"]["coding"][0]["code"] == "718-7"
        assert obs["valueQuantity"]["value"] == 13.2
        assert obs["valueQuantity"]["unit"] == "g/dL"
        assert obs["effectiveDateTime"] == "2024-03-01T00:00:00+00:00"
        assert "laboratory" in lab_categories(obs)

    def test_unmapped_name_uses_unknown_code(self):
        obs = to_fhir_dict(convert_lab_to_observation({"name": "Zinc", "value": "90"}, PATIENT_ID))
        assert obs["code"]["coding"][0] == {
            "system": "http://loinc.org",
            "code": "unknown",
            "display": "Zinc",
        }
        assert obs["valueQuantity"]["value"] == 90.0

    def test_non_numeric_value_becomes_string(self):
        obs = to_fhir_dict(convert_lab_to_observation({"name": "Culture", "value": "Negative"}, PATIENT_ID))
        assert obs["valueString"] == "Negative"
        assert "valueQuantity" not in obs

    def test_reference_range_sets_interpretation(self):
        obs = to_fhir_dict(
            convert_lab_to_observation(
                {"name": "Glucose", "value": 130, "unit": "mg/dL", "referenceRange": {"low": 70, "high": 99}},
                PATIENT_ID,
            )
        )
        assert obs["referenceRange"][0]["high"]["value"] == 99
        assert obs["interpretation"][0]["coding"][0]["code"] == "H"

    def test_missing_date_defaults_to_conversion_time(self):
        obs = to_fhir_dict(convert_lab_to_observation({"name": "TSH", "value": 2.1}, PATIENT_ID, now=NOW))
        assert obs["effectiveDateTime"] == NOW.isoformat()

    def test_missing_everything_is_still_valid(self):
        obs = to_fhir_dict(convert_lab_to_observation({}, PATIENT_ID, now=NOW))
        assert obs["code"]["text"] == "Unknown test"
        assert obs["status"] == "final"


class TestExtractLabResultsFromText:
    def test_extracts_value_unit_and_range(self):
        results = extract_lab_results_from_text("Hemoglobin: 13.2 g/dL (12.0-15.5)")
        assert len(results) == 1
        lab = results[0]
        assert isinstance(lab, LabResultInput)
        assert lab.name == "Hemoglobin"
        assert lab.value == 13.2
        assert lab.unit == "g/dL"
        assert lab.reference_range.low == 12.0
        assert lab.reference_range.high == 15.5

    def test_a1c_is_not_hemoglobin(self):
        assert extract_lab_results_from_text("Hemoglobin A1c: 5.6 %") == []

    def test_multiple_analytes(self):
        text = "Glucose 95 mg/dL\nLDL cholesterol: 130 mg/dL\nHDL: 55"
        names = [r.name for r in extract_lab_results_from_text(text)]
        assert names == ["Glucose", "LDL", "HDL"]

    def test_default_unit(self):
        (lab,) = extract_lab_results_from_text("TSH 2.5")
        assert lab.unit == "mIU/L"

    def test_empty_text(self):
        assert extract_lab_results_from_text(None) == []
        assert extract_lab_results_from_text("No numbers here") == []


# =============================================================================
# Reports
# =============================================================================


class TestDiagnosticReports:
    def test_lab_record_gets_lab_code_and_category(self):
        report = to_fhir_dict(
            convert_record_to_diagnostic_report(
                {"recordType": "Lab Report", "recordDate": "2024-03-01", "briefSummary": "Normal CBC"},
                PATIENT_ID,
                ["obs-1", "obs-2"],
            )
        )
        assert report["code"]["coding"][0]["code"] == "11502-2"
        assert "LAB" in lab_categories(report)
        assert [r["reference"] for r in report["result"]] == ["Observation/obs-1", "Observation/obs-2"]
        assert report["conclusion"] == "Normal CBC"

    def test_zero_observations_still_produces_report(self):
        report = to_fhir_dict(convert_record_to_diagnostic_report({"recordType": "lab"}, PATIENT_ID, []))
        assert "result" not in report
        assert "LAB" in lab_categories(report)

    def test_non_lab_record_has_generic_code(self):
        report = to_fhir_dict(convert_record_to_diagnostic_report({"recordType": "Consult"}, PATIENT_ID))
        assert report["code"]["coding"][0]["code"] == "74465-6"
        assert "LAB" not in lab_categories(report)

    def test_ensure_lab_category_is_idempotent(self):
        report = convert_record_to_diagnostic_report({"recordType": "lab"}, PATIENT_ID)
        ensure_lab_category(report)
        ensure_lab_category(report)
        assert lab_categories(to_fhir_dict(report)).count("LAB") == 1

    def test_presented_form_from_file_url(self):
        report = to_fhir_dict(
            convert_record_to_diagnostic_report(
                {"recordType": "lab", "fileUrl": "https://files/report.png?sig=1"}, PATIENT_ID
            )
        )
        assert report["presentedForm"][0]["contentType"] == "image/png"

    def test_imaging_report_links_study(self):
        report = to_fhir_dict(
            convert_to_imaging_report({"name": "Chest CT", "impression": "No acute findings"}, PATIENT_ID, "study-1")
        )
        assert report["imagingStudy"] == [{"reference": "ImagingStudy/study-1"}]
        assert report["conclusion"] == "No acute findings"
        assert report["code"]["coding"][0]["code"] == "18748-4"


# =============================================================================
# Clinical entries
# =============================================================================


class TestClinicalEntries:
    def test_medication_statement(self):
        statement = to_fhir_dict(
            convert_to_medication_statement(
                {"name": "Lisinopril", "dosage": "10 mg", "frequency": "daily", "startDate": "2023-01-01"},
                PATIENT_ID,
                "med-1",
            )
        )
        assert statement["medicationCodeableConcept"]["coding"][0]["code"] == "29046"
        assert statement["medicationReference"] == {"reference": "Medication/med-1"}
        assert statement["dosage"] == [{"text": "10 mg daily"}]
        assert statement["effectivePeriod"]["start"] == "2023-01-01T00:00:00+00:00"

    def test_condition(self):
        condition = to_fhir_dict(
            convert_to_condition({"name": "Hypertension", "severity": "Moderate", "onsetDate": "2019-05-01"}, PATIENT_ID)
        )
        assert condition["code"]["coding"][0]["code"] == "I10"
        assert condition["clinicalStatus"]["coding"][0]["code"] == "active"
        assert condition["severity"]["coding"][0]["code"] == "moderate"
        assert condition["onsetDateTime"].startswith("2019-05-01")

    def test_allergy_drops_invalid_categories(self):
        allergy = to_fhir_dict(
            convert_to_allergy_intolerance(
                {"name": "Peanuts", "category": ["Food", "weird"], "criticality": "HIGH", "reaction": "Hives"},
                PATIENT_ID,
            )
        )
        assert allergy["patient"] == {"reference": f"Patient/{PATIENT_ID}"}
        assert allergy["category"] == ["food"]
        assert allergy["criticality"] == "high"
        assert "subject" not in allergy

    def test_immunization(self):
        immunization = to_fhir_dict(convert_to_immunization({"name": "COVID-19 booster", "date": "2023-10-01"}, PATIENT_ID))
        assert immunization["vaccineCode"]["coding"][0]["code"] == "213"
        assert immunization["patient"]["reference"] == f"Patient/{PATIENT_ID}"


class TestProcedure:
    def test_status_from_text(self):
        procedure = to_fhir_dict(convert_to_procedure({"name": "Colonoscopy", "status": "Scheduled"}, PATIENT_ID))
        assert procedure["status"] == "preparation"
        assert procedure["code"]["coding"][0]["code"] == "73761001"
        assert "performedDateTime" not in procedure

    def test_past_date_implies_completed(self):
        procedure = to_fhir_dict(convert_to_procedure({"name": "Biopsy", "date": "2020-01-01"}, PATIENT_ID, now=NOW))
        assert procedure["status"] == "completed"
        assert procedure["performedDateTime"] == "2020-01-01T00:00:00+00:00"

    def test_completed_without_date_is_stamped(self):
        procedure = to_fhir_dict(convert_to_procedure({"name": "Biopsy", "status": "completed"}, PATIENT_ID, now=NOW))
        assert procedure["performedDateTime"] == NOW.isoformat()

    def test_extra_elements(self):
        procedure = to_fhir_dict(
            convert_to_procedure(
                {"name": "Appendectomy", "reason": "Appendicitis", "complications": "Infection"}, PATIENT_ID
            )
        )
        assert procedure["reasonCode"] == [{"text": "Appendicitis"}]
        assert procedure["complication"] == [{"text": "Infection"}]


class TestFamilyMemberHistory:
    def test_relationship_coded(self):
        history = to_fhir_dict(
            convert_to_family_member_history(
                {"relationship": "Maternal grandmother", "conditions": ["Diabetes"], "deceased": True},
                PATIENT_ID,
            )
        )
        assert history["relationship"]["coding"][0]["display"] == "Grandmother"
        assert history["relationship"]["text"] == "Maternal grandmother"
        assert history["condition"][0]["code"]["text"] == "Diabetes"
        assert history["deceasedBoolean"] is True

    def test_missing_relationship_raises(self):
        with pytest.raises(ValidationError, match="relationship required"):
            convert_to_family_member_history({"conditions": ["Diabetes"]}, PATIENT_ID)

    def test_blank_relationship_raises(self):
        with pytest.raises(ValidationError):
            convert_to_family_member_history({"relationship": "   "}, PATIENT_ID)


class TestDocumentReference:
    def test_known_record_type(self):
        doc = to_fhir_dict(
            convert_to_document_reference(
                {"recordType": "Discharge Summary", "name": "Discharge"}, PATIENT_ID, "https://files/d.pdf"
            )
        )
        assert doc["type"]["coding"][0]["code"] == "18842-5"
        assert doc["category"][0]["coding"][0]["code"] == "DS"
        assert doc["content"][0]["attachment"]["url"] == "https://files/d.pdf"
        assert doc["content"][0]["attachment"]["contentType"] == "application/pdf"

    def test_missing_record_type_uses_default(self):
        doc = to_fhir_dict(convert_to_document_reference({}, PATIENT_ID))
        assert doc["type"]["coding"][0]["code"] == DEFAULT_DOCUMENT_CODE
        assert doc["category"][0]["coding"][0]["code"] == "DOC"
        assert "content" not in doc

    def test_content_type_for(self):
        assert content_type_for("scan.JPG") == "image/jpeg"
        assert content_type_for(None, "text/plain") == "text/plain"


class TestImagingStudy:
    def test_default_series(self):
        study = to_fhir_dict(convert_to_imaging_study({"name": "Knee MRI", "modality": "MRI"}, PATIENT_ID, now=NOW))
        assert study["numberOfSeries"] == 1
        assert study["numberOfInstances"] == 1
        assert study["series"][0]["modality"]["code"] == "MR"
        assert study["series"][0]["description"] == "Default Series"

    def test_uid_is_deterministic(self):
        first = to_fhir_dict(convert_to_imaging_study({"name": "CT", "date": "2024-01-01"}, PATIENT_ID))
        second = to_fhir_dict(convert_to_imaging_study({"name": "CT", "date": "2024-01-01"}, PATIENT_ID))
        assert first["identifier"] == second["identifier"]
        assert first["identifier"][0]["value"].startswith("urn:oid:2.25.")

    def test_explicit_series(self):
        study = to_fhir_dict(
            convert_to_imaging_study(
                {
                    "name": "Chest",
                    "series": [
                        {"modality": "CT", "instances": [{}, {}]},
                        {"modality": "x-ray"},
                    ],
                },
                PATIENT_ID,
            )
        )
        assert [s["modality"]["code"] for s in study["series"]] == ["CT", "CR"]
        assert study["numberOfInstances"] == 3


# =============================================================================
# Generic entries and dispatch
# =============================================================================


class TestGenericAndDispatch:
    def test_unknown_kind_is_preserved(self):
        raw = {"kind": "blood_pressure_diary", "name": "BP log", "readings": [120, 118]}
        resource = to_fhir_dict(convert_raw_input(raw, PATIENT_ID))
        assert resource["resourceType"] == "Basic"
        assert resource["code"]["text"] == "BP log"
        assert resource["data"]["readings"] == [120, 118]

    def test_parse_raw_input_missing_kind(self):
        parsed = parse_raw_input({"foo": "bar"})
        assert isinstance(parsed, GenericInput)
        assert parsed.data == {"foo": "bar"}

    def test_dispatch_by_kind(self):
        resource = to_fhir_dict(convert_raw_input({"kind": "condition", "name": "Asthma"}, PATIENT_ID))
        assert resource["resourceType"] == "Condition"
        assert resource["code"]["coding"][0]["code"] == "J45.909"

    def test_dispatch_propagates_identity_error(self):
        with pytest.raises(ValidationError):
            convert_raw_input({"kind": "family_history"}, PATIENT_ID)

    def test_wrong_field_types_rejected(self):
        with pytest.raises(PydanticValidationError):
            convert_raw_input({"kind": "lab_result", "referenceRange": 5}, PATIENT_ID)

    def test_wearable_sample_dispatch(self):
        resource = to_fhir_dict(
            convert_raw_input(
                {"kind": "wearable_sample", "category": "hr", "value": 72, "timestamp": "2024-01-01T08:00:00Z"},
                PATIENT_ID,
            )
        )
        assert resource["resourceType"] == "Observation"
        assert resource["valueQuantity"]["value"] == 72

    def test_convert_generic_dates(self):
        resource = to_fhir_dict(convert_generic(GenericInput(label="Note"), PATIENT_ID, now=NOW))
        assert resource["created"] == NOW.isoformat()


class TestPatient:
    def test_from_user_profile(self):
        patient = to_fhir_dict(
            create_patient_from_user(
                {"firstName": "Jane", "lastName": "Smith", "email": "jane@example.com", "birthDate": "1985-03-20"}
            )
        )
        assert patient["name"][0]["text"] == "Jane Smith"
        assert patient["birthDate"] == "1985-03-20"
        assert patient["telecom"][0]["value"] == "jane@example.com"
