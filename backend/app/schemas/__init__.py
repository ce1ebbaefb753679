"""Pydantic schemas."""

from app.schemas.fhir import (
    AllergyIntolerance,
    CodeableConcept,
    Coding,
    Condition,
    DiagnosticReport,
    DocumentReference,
    FamilyMemberHistory,
    GenericResource,
    ImagingStudy,
    Immunization,
    Medication,
    MedicationStatement,
    Observation,
    Patient,
    Procedure,
    Reference,
    Resource,
)
from app.schemas.raw_inputs import RawInput, RawInputModel, parse_raw_input

__all__ = [
    "AllergyIntolerance",
    "CodeableConcept",
    "Coding",
    "Condition",
    "DiagnosticReport",
    "DocumentReference",
    "FamilyMemberHistory",
    "GenericResource",
    "ImagingStudy",
    "Immunization",
    "Medication",
    "MedicationStatement",
    "Observation",
    "Patient",
    "Procedure",
    "RawInput",
    "RawInputModel",
    "Reference",
    "Resource",
    "parse_raw_input",
]
