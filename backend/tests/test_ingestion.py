"""Tests for the ingestion pipeline."""

import json

import pytest

from app.exceptions import ValidationError
from app.services.ingestion import (
    DocumentKind,
    IngestionPipeline,
    IngestionState,
    detect_document_kinds,
    link_patient,
    order_by_references,
    rewrite_references,
)

LAB_ANALYSIS = "Hemoglobin: 13.2 g/dL (12.0-15.5)"


@pytest.fixture
def pipeline(repository, cache_manager) -> IngestionPipeline:
    return IngestionPipeline(repository, cache_manager)


class TestDetectDocumentKinds:
    def test_keywords(self):
        assert detect_document_kinds("Lab Report") == {DocumentKind.LAB}
        assert detect_document_kinds("Radiology Report") == {DocumentKind.IMAGING}
        assert detect_document_kinds("Operative note") == {DocumentKind.PROCEDURE}
        assert detect_document_kinds("Family History Questionnaire") == {DocumentKind.FAMILY_HISTORY}

    def test_no_hint(self):
        assert detect_document_kinds(None) == set()
        assert detect_document_kinds("Discharge Summary") == set()


class TestLinkPatient:
    def test_subject_by_default(self):
        linked = link_patient({"resourceType": "Condition"}, "p1")
        assert linked["subject"] == {"reference": "Patient/p1"}

    def test_patient_field_types(self):
        linked = link_patient({"resourceType": "Immunization"}, "p1")
        assert linked["patient"] == {"reference": "Patient/p1"}
        assert "subject" not in linked

    def test_existing_link_is_kept(self):
        resource = {"resourceType": "Condition", "subject": {"reference": "Patient/other"}}
        assert link_patient(resource, "p1")["subject"]["reference"] == "Patient/other"


class TestIngestLabDocument:
    @pytest.mark.asyncio
    async def test_hemoglobin_report(self, pipeline, repository, user_id, patient_id):
        result = await pipeline.ingest_document(user_id, patient_id, LAB_ANALYSIS, {"recordType": "Lab Report"})

        assert result.state == IngestionState.PERSISTED
        assert result.transitions == [
            IngestionState.RECEIVED,
            IngestionState.TYPE_DETECTED,
            IngestionState.CONVERTED,
            IngestionState.PERSISTED,
        ]
        assert result.errors == []
        assert len(result.observation_ids) == 1

        observation = await repository.get(user_id, "Observation", result.observation_ids[0])
        assert observation["code"]["text"] == "Hemoglobin"
        assert observation["valueQuantity"]["value"] == 13.2
        assert observation["valueQuantity"]["unit"] == "g/dL"
        assert observation["subject"]["reference"] == f"Patient/{patient_id}"

        report = await repository.get(user_id, "DiagnosticReport", result.diagnostic_report_id)
        categories = [c["code"] for concept in report["category"] for c in concept.get("coding", [])]
        assert "LAB" in categories
        assert report["result"] == [{"reference": f"Observation/{result.observation_ids[0]}"}]

        assert await repository.get(user_id, "DocumentReference", result.document_reference_id) is not None

    @pytest.mark.asyncio
    async def test_lab_report_without_values(self, pipeline, repository, user_id, patient_id):
        result = await pipeline.ingest_document(
            user_id, patient_id, "Blood drawn, results pending.", {"recordType": "Lab Report"}
        )

        assert result.state == IngestionState.PERSISTED
        assert result.observation_ids == []
        report = await repository.get(user_id, "DiagnosticReport", result.diagnostic_report_id)
        assert not report.get("result")

    @pytest.mark.asyncio
    async def test_explicit_results_win_over_text(self, pipeline, repository, user_id, patient_id):
        metadata = {
            "recordType": "Lab Report",
            "recordDate": "2024-02-01",
            "results": [{"name": "Glucose", "value": 101, "unit": "mg/dL"}],
        }
        result = await pipeline.ingest_document(user_id, patient_id, LAB_ANALYSIS, metadata)

        assert len(result.observation_ids) == 1
        observation = await repository.get(user_id, "Observation", result.observation_ids[0])
        assert observation["code"]["text"] == "Glucose"
        assert observation["effectiveDateTime"].startswith("2024-02-01")

    @pytest.mark.asyncio
    async def test_invalidates_user_caches(self, pipeline, cache_manager, user_id, patient_id):
        cache = cache_manager.get_cache("indexes")
        cache.set(user_id, "stale index")

        await pipeline.ingest_document(user_id, patient_id, LAB_ANALYSIS, {"recordType": "Lab Report"})

        assert cache.get(user_id) is None

    @pytest.mark.asyncio
    async def test_on_change_callback(self, repository, user_id, patient_id):
        changed = []
        pipeline = IngestionPipeline(repository, on_change=changed.append)
        await pipeline.ingest_document(user_id, patient_id, LAB_ANALYSIS, {"recordType": "Lab Report"})
        assert changed == [user_id]


class TestIngestOtherDocuments:
    @pytest.mark.asyncio
    async def test_analysis_sections_fill_document_reference(self, pipeline, repository, user_id, patient_id):
        analysis = (
            "<BRIEF_SUMMARY>Annual physical, no concerns.</BRIEF_SUMMARY>\n"
            "<DOCUMENT_TYPE>Clinical Note</DOCUMENT_TYPE>\n"
            "<DATE>2024-04-02</DATE>"
        )
        result = await pipeline.ingest_document(user_id, patient_id, analysis, file_url="s3://bucket/note.pdf")

        assert result.record_type == "Clinical Note"
        assert result.kinds == set()
        document = await repository.get(user_id, "DocumentReference", result.document_reference_id)
        assert "Annual physical, no concerns." in json.dumps(document)
        assert "s3://bucket/note.pdf" in json.dumps(document)

    @pytest.mark.asyncio
    async def test_imaging_report_references_study(self, pipeline, repository, user_id, patient_id):
        metadata = {
            "recordType": "Radiology Report",
            "name": "Chest X-ray",
            "extractedData": {"modality": "DX", "impression": "No acute findings."},
        }
        result = await pipeline.ingest_document(user_id, patient_id, "Chest radiograph.", metadata)

        assert result.state == IngestionState.PERSISTED
        assert result.imaging_study_id is not None
        report = await repository.get(user_id, "DiagnosticReport", result.imaging_report_id)
        assert f"ImagingStudy/{result.imaging_study_id}" in json.dumps(report)

    @pytest.mark.asyncio
    async def test_procedure(self, pipeline, repository, user_id, patient_id):
        metadata = {"recordType": "Surgery Report", "name": "Appendectomy", "recordDate": "2023-11-20"}
        result = await pipeline.ingest_document(user_id, patient_id, None, metadata)

        procedure = await repository.get(user_id, "Procedure", result.procedure_id)
        assert procedure["code"]["text"] == "Appendectomy"

    @pytest.mark.asyncio
    async def test_family_history_failure_keeps_document(self, pipeline, repository, user_id, patient_id):
        metadata = {"recordType": "Family History", "extractedData": {"relationship": ""}}
        result = await pipeline.ingest_document(user_id, patient_id, "Family history form.", metadata)

        assert result.state == IngestionState.PARTIAL_FAILURE
        assert result.family_member_history_id is None
        assert [e.step for e in result.errors] == ["FamilyMemberHistory"]
        assert "relationship required" in result.errors[0].message
        assert await repository.get(user_id, "DocumentReference", result.document_reference_id) is not None

    @pytest.mark.asyncio
    async def test_family_history_default_relationship(self, pipeline, repository, user_id, patient_id):
        metadata = {"recordType": "Family History", "extractedData": {"conditions": ["Diabetes"]}}
        result = await pipeline.ingest_document(user_id, patient_id, None, metadata)

        history = await repository.get(user_id, "FamilyMemberHistory", result.family_member_history_id)
        assert history["relationship"]["text"] == "family member"
        assert history["patient"]["reference"] == f"Patient/{patient_id}"


class TestEmbeddedResources:
    @pytest.mark.asyncio
    async def test_embedded_resources_take_precedence(self, pipeline, repository, user_id, patient_id):
        analysis = """<DOCUMENT_TYPE>Lab Report</DOCUMENT_TYPE>
<FHIR_RESOURCES>
{"resourceType": "Bundle", "entry": [
  {"resource": {"resourceType": "Patient", "id": "embedded-patient"}},
  {"resource": {"resourceType": "Condition", "id": "asthma", "code": {"text": "Asthma"}}}
]}
</FHIR_RESOURCES>"""
        result = await pipeline.ingest_document(user_id, patient_id, analysis)

        assert result.state == IngestionState.PERSISTED
        assert result.embedded_ids == {"Condition": ["asthma"]}
        assert result.document_reference_id is None
        assert await repository.get(user_id, "Patient", "embedded-patient") is None

        condition = await repository.get(user_id, "Condition", "asthma")
        assert condition["subject"]["reference"] == f"Patient/{patient_id}"

    @pytest.fixture
    def lab_bundle_text(self):
        """Report listed before the observations it references."""
        bundle = {
            "resourceType": "Bundle",
            "type": "transaction",
            "entry": [
                {
                    "fullUrl": "urn:uuid:report-1",
                    "resource": {
                        "resourceType": "DiagnosticReport",
                        "status": "final",
                        "code": {"text": "CBC"},
                        "result": [{"reference": "urn:uuid:obs-1"}, {"reference": "Observation/obs-2"}],
                    },
                },
                {
                    "fullUrl": "urn:uuid:obs-1",
                    "resource": {"resourceType": "Observation", "status": "final", "code": {"text": "Hemoglobin"}},
                },
                {
                    "resource": {
                        "resourceType": "Observation",
                        "id": "obs-2",
                        "status": "final",
                        "code": {"text": "Hematocrit"},
                    }
                },
                {"fullUrl": "urn:uuid:embedded-patient", "resource": {"resourceType": "Patient"}},
                {
                    "resource": {
                        "resourceType": "Condition",
                        "id": "anemia",
                        "subject": {"reference": "urn:uuid:embedded-patient"},
                        "code": {"text": "Anemia"},
                    }
                },
            ],
        }
        return f"<FHIR_RESOURCES>\n{json.dumps(bundle)}\n</FHIR_RESOURCES>"

    @pytest.mark.asyncio
    async def test_referenced_resources_are_stored_first(
        self, pipeline, repository, monkeypatch, user_id, patient_id, lab_bundle_text
    ):
        order = []
        create = repository.create

        async def recording_create(owner, resource):
            order.append(resource["resourceType"])
            return await create(owner, resource)

        monkeypatch.setattr(repository, "create", recording_create)

        result = await pipeline.ingest_document(user_id, patient_id, lab_bundle_text)

        assert result.state == IngestionState.PERSISTED
        assert order == ["Observation", "Observation", "Condition", "DiagnosticReport"]

        report = await repository.get(user_id, "DiagnosticReport", "report-1")
        references = [r["reference"] for r in report["result"]]
        assert references == ["Observation/obs-1", "Observation/obs-2"]
        for reference in references:
            resource_type, resource_id = reference.split("/")
            assert await repository.get(user_id, resource_type, resource_id) is not None

        condition = await repository.get(user_id, "Condition", "anemia")
        assert condition["subject"]["reference"] == f"Patient/{patient_id}"

    @pytest.mark.asyncio
    async def test_references_follow_reassigned_ids(
        self, pipeline, repository, user_id, patient_id, lab_bundle_text
    ):
        await repository.create(
            user_id, {"resourceType": "Observation", "id": "obs-2", "subject": {"reference": f"Patient/{patient_id}"}}
        )
        await repository.delete(user_id, "Observation", "obs-2")

        result = await pipeline.ingest_document(user_id, patient_id, lab_bundle_text)

        hematocrit_id = next(i for i in result.embedded_ids["Observation"] if i != "obs-1")
        assert hematocrit_id != "obs-2"
        report = await repository.get(user_id, "DiagnosticReport", "report-1")
        assert report["result"][1]["reference"] == f"Observation/{hematocrit_id}"
        hematocrit = await repository.get(user_id, "Observation", hematocrit_id)
        assert hematocrit["code"]["text"] == "Hematocrit"


class TestOrderByReferences:
    def test_referenced_first(self):
        report = {"resourceType": "DiagnosticReport", "id": "r", "result": [{"reference": "Observation/o"}]}
        observation = {"resourceType": "Observation", "id": "o"}
        condition = {"resourceType": "Condition", "id": "c"}

        waves = order_by_references([report, observation, condition])

        assert waves == [[observation, condition], [report]]

    def test_cycle_is_written_in_given_order(self):
        a = {"resourceType": "Observation", "id": "a", "hasMember": [{"reference": "Observation/b"}]}
        b = {"resourceType": "Observation", "id": "b", "derivedFrom": [{"reference": "Observation/a"}]}
        standalone = {"resourceType": "Condition", "id": "c"}

        assert order_by_references([a, b, standalone]) == [[standalone], [a, b]]

    def test_rewrite_references(self):
        resource = {"resourceType": "DiagnosticReport", "result": [{"reference": "urn:uuid:o"}], "text": "urn:uuid:o"}

        rewritten = rewrite_references(resource, {"urn:uuid:o": "Observation/123"})

        assert rewritten["result"] == [{"reference": "Observation/123"}]
        assert rewritten["text"] == "urn:uuid:o"
        assert resource["result"] == [{"reference": "urn:uuid:o"}]


class TestIngestWearableData:
    @pytest.mark.asyncio
    async def test_samples_summaries_and_generic(self, pipeline, repository, user_id, patient_id):
        data = {
            "heart_rate": [
                {"dateTime": "2024-05-01T08:00:00Z", "value": 60},
                {"dateTime": "2024-05-01T09:00:00Z", "value": 70},
                {"value": 80},
            ],
            "spo2": [{"time": "2024-05-01T08:00:00Z", "value": 97}],
        }
        result = await pipeline.ingest_wearable_data(user_id, patient_id, "Garmin Venu", data)

        assert result.state == IngestionState.PERSISTED
        assert len(result.observation_ids) == 2
        assert len(result.summary_report_ids) == 1
        assert len(result.generic_ids) == 1
        assert result.skipped == 1
        assert result.summary.heart_rate["avg"] == 65.0

        report = await repository.get(user_id, "DiagnosticReport", result.summary_report_ids[0])
        assert sorted(r["reference"] for r in report["result"]) == sorted(
            f"Observation/{i}" for i in result.observation_ids
        )
        assert await repository.count(user_id) == 4


class TestIngestResources:
    @pytest.mark.asyncio
    async def test_each_resource_is_independent(self, pipeline, repository, user_id, patient_id):
        resources = [
            {"resourceType": "Condition", "id": "c1", "code": {"text": "Asthma"}},
            {"code": {"text": "no type"}},
            {"resourceType": "Patient", "id": "skipped"},
        ]
        result = await pipeline.ingest_resources(user_id, patient_id, resources)

        assert result.created == ["Condition/c1"]
        assert result.state == IngestionState.PARTIAL_FAILURE
        assert len(result.errors) == 1
        assert await repository.count(user_id) == 1


class TestIngestRaw:
    @pytest.mark.asyncio
    async def test_returns_stored_resource(self, pipeline, user_id, patient_id):
        stored = await pipeline.ingest_raw(
            user_id, patient_id, {"kind": "condition", "name": "Hypertension", "status": "active"}
        )
        assert stored["resourceType"] == "Condition"
        assert stored["id"]
        assert stored["meta"]["versionId"] == "1"

    @pytest.mark.asyncio
    async def test_unknown_kind_is_generic(self, pipeline, user_id, patient_id):
        stored = await pipeline.ingest_raw(user_id, patient_id, {"kind": "mood", "name": "Mood", "score": 7})
        assert stored["resourceType"] == "Basic"
        assert stored["data"]["score"] == 7

    @pytest.mark.asyncio
    async def test_validation_errors_propagate(self, pipeline, user_id, patient_id):
        with pytest.raises(ValidationError):
            await pipeline.ingest_raw(user_id, patient_id, {"kind": "family_history", "relationship": " "})
