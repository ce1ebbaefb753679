"""Keyword-driven code tables for LOINC, RxNorm, ICD-10, CVX, SNOMED and DICOM.

Each table is an ordered list of (predicate, coding) entries evaluated
first-match-wins against the lowercased free text. The order is part of the
table: "hdl cholesterol" resolves to the "cholesterol" entry because it is
listed before "hdl". No match yields a sentinel coding with code "unknown"
and the original text as display.

Tables are approximations for display and grouping, not an authoritative
terminology binding. Any table can be replaced from a JSON file of
``[{"keyword": ..., "code": ..., "display": ..., "category": ...}]`` rows
via ``Terminology.from_directory``.
"""

from __future__ import annotations

import json
import logging
from collections.abc import Callable, Iterable
from dataclasses import dataclass, field, replace
from functools import lru_cache
from pathlib import Path
from typing import Any

from app.config import settings

logger = logging.getLogger(__name__)

UNKNOWN_CODE = "unknown"

LOINC_SYSTEM = "http://loinc.org"
RXNORM_SYSTEM = "http://www.nlm.nih.gov/research/umls/rxnorm"
ICD10_SYSTEM = "http://hl7.org/fhir/sid/icd-10-cm"
CVX_SYSTEM = "http://hl7.org/fhir/sid/cvx"
SNOMED_SYSTEM = "http://snomed.info/sct"
DICOM_SYSTEM = "http://dicom.nema.org/resources/ontology/DCM"
ACT_CODE_SYSTEM = "http://terminology.hl7.org/CodeSystem/v3-ActCode"

Predicate = Callable[[str], bool]


def contains(keyword: str) -> Predicate:
    """Predicate matching text that contains ``keyword`` (case-insensitive)."""
    needle = keyword.lower()

    def _match(text: str) -> bool:
        return needle in text

    _match.keyword = needle  # type: ignore[attr-defined]
    return _match


@dataclass(frozen=True)
class CodeEntry:
    """One row of a code table."""

    predicate: Predicate
    code: str
    display: str
    category: str | None = None

    @property
    def keyword(self) -> str | None:
        return getattr(self.predicate, "keyword", None)


@dataclass(frozen=True)
class CodeTable:
    """Ordered, first-match-wins mapping from free text to a coding."""

    name: str
    system: str
    entries: tuple[CodeEntry, ...]
    fallback_code: str = UNKNOWN_CODE

    @classmethod
    def from_keywords(
        cls,
        name: str,
        system: str,
        rows: Iterable[tuple[str, str, str] | tuple[str, str, str, str]],
        fallback_code: str = UNKNOWN_CODE,
    ) -> CodeTable:
        """Build a table from ordered (keyword, code, display[, category]) rows."""
        entries = []
        for row in rows:
            keyword, code, display, *rest = row
            entries.append(
                CodeEntry(
                    predicate=contains(keyword),
                    code=code,
                    display=display,
                    category=rest[0] if rest else None,
                )
            )
        return cls(name=name, system=system, entries=tuple(entries), fallback_code=fallback_code)

    @classmethod
    def from_json(cls, name: str, system: str, path: Path) -> CodeTable:
        """Load a table from a JSON list of row objects, keeping file order.

        Raises:
            ValueError: If the file is not a list of rows with keyword/code/display.
        """
        rows = json.loads(path.read_text(encoding="utf-8"))
        if not isinstance(rows, list):
            raise ValueError(f"{path} must contain a JSON list")
        parsed = []
        for row in rows:
            try:
                parsed.append((row["keyword"], row["code"], row["display"], row.get("category")))
            except (KeyError, TypeError) as e:
                raise ValueError(f"Invalid code table row in {path}: {row!r}") from e
        table = cls.from_keywords(name, system, [r if r[3] else r[:3] for r in parsed])
        logger.info(f"Loaded code table '{name}' from {path} ({len(table.entries)} entries)")
        return table

    def to_rows(self) -> list[dict[str, Any]]:
        """Serialize keyword-based entries back to JSON rows."""
        rows = []
        for entry in self.entries:
            if entry.keyword is None:
                continue
            row: dict[str, Any] = {
                "keyword": entry.keyword,
                "code": entry.code,
                "display": entry.display,
            }
            if entry.category:
                row["category"] = entry.category
            rows.append(row)
        return rows

    def match(self, text: str | None) -> CodeEntry | None:
        """Return the first entry whose predicate accepts ``text``."""
        if not text:
            return None
        normalized = text.lower().strip()
        for entry in self.entries:
            if entry.predicate(normalized):
                return entry
        return None

    def lookup(self, text: str | None) -> dict[str, str]:
        """Resolve ``text`` to a coding dict, falling back to the sentinel code."""
        entry = self.match(text)
        if entry is None:
            return {
                "system": self.system,
                "code": self.fallback_code,
                "display": text or "Unknown",
            }
        return {"system": self.system, "code": entry.code, "display": entry.display}

    def prepend(self, *entries: CodeEntry) -> CodeTable:
        """Return a copy with higher-priority entries placed first."""
        return replace(self, entries=tuple(entries) + self.entries)


# =============================================================================
# Built-in tables
# =============================================================================

LAB_ROWS = [
    ("ferritin", "2276-4", "Ferritin [Mass/volume] in Serum or Plasma"),
    ("iron", "2498-4", "Iron [Mass/volume] in Serum or Plasma"),
    ("hemoglobin a1c", "4548-4", "Hemoglobin A1c/Hemoglobin.total in Blood"),
    ("hemoglobin", "718-7", "Hemoglobin [Mass/volume] in Blood"),
    ("hematocrit", "4544-3", "Hematocrit [Volume Fraction] of Blood"),
    ("wbc", "6690-2", "Leukocytes [#/volume] in Blood"),
    ("white blood", "6690-2", "Leukocytes [#/volume] in Blood"),
    ("platelet", "777-3", "Platelets [#/volume] in Blood"),
    ("glucose", "2339-0", "Glucose [Mass/volume] in Blood"),
    ("cholesterol", "2093-3", "Cholesterol [Mass/volume] in Serum or Plasma"),
    ("hdl", "2085-9", "Cholesterol in HDL [Mass/volume] in Serum or Plasma"),
    ("ldl", "2089-1", "Cholesterol in LDL [Mass/volume] in Serum or Plasma"),
    ("triglycerides", "2571-8", "Triglyceride [Mass/volume] in Serum or Plasma"),
    ("tsh", "11580-8", "Thyrotropin [Units/volume] in Serum or Plasma"),
    ("vitamin d", "35365-6", "25-hydroxyvitamin D3 [Mass/volume] in Serum or Plasma"),
    ("vitamin b12", "2132-9", "Vitamin B12 [Mass/volume] in Serum or Plasma"),
    ("creatinine", "2160-0", "Creatinine [Mass/volume] in Serum or Plasma"),
]

MEDICATION_ROWS = [
    ("aspirin", "1191", "Aspirin"),
    ("ibuprofen", "5640", "Ibuprofen"),
    ("acetaminophen", "161", "Acetaminophen"),
    ("lisinopril", "29046", "Lisinopril"),
    ("metformin", "6809", "Metformin"),
    ("atorvastatin", "83367", "Atorvastatin"),
    ("levothyroxine", "10582", "Levothyroxine"),
    ("metoprolol", "6918", "Metoprolol"),
    ("amlodipine", "17767", "Amlodipine"),
    ("omeprazole", "7646", "Omeprazole"),
]

CONDITION_ROWS = [
    ("hypertension", "I10", "Essential (primary) hypertension"),
    ("diabetes", "E11.9", "Type 2 diabetes mellitus without complications"),
    ("asthma", "J45.909", "Unspecified asthma, uncomplicated"),
    ("depression", "F32.9", "Major depressive disorder, single episode, unspecified"),
    ("anxiety", "F41.9", "Anxiety disorder, unspecified"),
    ("migraine", "G43.909", "Migraine, unspecified, not intractable, without status migrainosus"),
    ("hypothyroidism", "E03.9", "Hypothyroidism, unspecified"),
    ("arthritis", "M19.90", "Unspecified osteoarthritis, unspecified site"),
]

_COVID_DISPLAY = (
    "SARS-COV-2 (COVID-19) vaccine, mRNA, spike protein, LNP, preservative free, 30 mcg/0.3mL dose"
)

VACCINE_ROWS = [
    ("flu", "141", "Influenza, seasonal, injectable, preservative free"),
    ("influenza", "141", "Influenza, seasonal, injectable, preservative free"),
    ("covid", "213", _COVID_DISPLAY),
    ("tetanus", "115", "Tdap vaccine"),
    ("tdap", "115", "Tdap vaccine"),
    ("pneumococcal", "33", "pneumococcal polysaccharide vaccine, 23 valent"),
    ("shingles", "187", "recombinant zoster vaccine"),
    ("zoster", "187", "recombinant zoster vaccine"),
    ("hpv", "165", "HPV9, 9 valent vaccine, preservative free"),
]

PROCEDURE_ROWS = [
    ("colonoscopy", "73761001", "Colonoscopy"),
    ("appendectomy", "80146002", "Appendectomy"),
    ("cataract surgery", "83895000", "Cataract extraction"),
    ("hysterectomy", "236886002", "Hysterectomy"),
    ("cholecystectomy", "38102005", "Cholecystectomy"),
    ("tonsillectomy", "59108006", "Tonsillectomy"),
    ("endoscopy", "71651007", "Endoscopic procedure"),
    ("biopsy", "86273004", "Biopsy"),
    ("mri", "113091000", "Magnetic resonance imaging"),
    ("ct scan", "77477000", "Computerized tomography"),
]

# Grandparents come first so "grandmother" does not resolve to "mother"
RELATIONSHIP_ROWS = [
    ("grandmother", "113157001", "Grandmother"),
    ("grandfather", "48385004", "Grandfather"),
    ("mother", "72705000", "Mother"),
    ("father", "66839005", "Father"),
    ("sister", "27733009", "Sister"),
    ("brother", "70924004", "Brother"),
    ("daughter", "66089001", "Daughter"),
    ("son", "65616008", "Son"),
    ("aunt", "25211005", "Aunt"),
    ("uncle", "38048003", "Uncle"),
]

DOCUMENT_TYPE_ROWS = [
    ("laboratory report", "11502-2", "Laboratory report", "LAB"),
    ("lab report", "11502-2", "Laboratory report", "LAB"),
    ("radiology report", "18748-4", "Diagnostic imaging report", "RAD"),
    ("pathology report", "60567-5", "Comprehensive pathology report", "PAT"),
    ("discharge summary", "18842-5", "Discharge summary", "DS"),
    ("progress note", "11506-3", "Progress note", "PN"),
    ("consultation note", "11488-4", "Consultation note", "CN"),
    ("history and physical", "34117-2", "History and physical note", "HP"),
    ("procedure note", "28570-0", "Procedure note", "PN"),
    ("operative report", "11504-8", "Surgical operation note", "OPN"),
]

MODALITY_ROWS = [
    ("mri", "MR", "Magnetic Resonance"),
    ("ct", "CT", "Computed Tomography"),
    ("mr", "MR", "Magnetic Resonance"),
    ("ultrasound", "US", "Ultrasound"),
    ("us", "US", "Ultrasound"),
    ("x-ray", "CR", "Computed Radiography"),
    ("xray", "CR", "Computed Radiography"),
    ("xr", "CR", "Computed Radiography"),
    ("pet", "PT", "Positron Emission Tomography"),
    ("nm", "NM", "Nuclear Medicine"),
    ("dx", "DX", "Digital Radiography"),
]

# Table name -> (coding system, built-in rows, fallback code)
_TABLE_SPECS: dict[str, tuple[str, list, str]] = {
    "labs": (LOINC_SYSTEM, LAB_ROWS, UNKNOWN_CODE),
    "medications": (RXNORM_SYSTEM, MEDICATION_ROWS, UNKNOWN_CODE),
    "conditions": (ICD10_SYSTEM, CONDITION_ROWS, UNKNOWN_CODE),
    "vaccines": (CVX_SYSTEM, VACCINE_ROWS, UNKNOWN_CODE),
    "procedures": (SNOMED_SYSTEM, PROCEDURE_ROWS, UNKNOWN_CODE),
    "relationships": (SNOMED_SYSTEM, RELATIONSHIP_ROWS, UNKNOWN_CODE),
    "document_types": (LOINC_SYSTEM, DOCUMENT_TYPE_ROWS, UNKNOWN_CODE),
    # DICOM defines "OT" (Other) for unrecognised modalities
    "modalities": (DICOM_SYSTEM, MODALITY_ROWS, "OT"),
}


@dataclass(frozen=True)
class Terminology:
    """The full set of code tables used by the converters."""

    labs: CodeTable
    medications: CodeTable
    conditions: CodeTable
    vaccines: CodeTable
    procedures: CodeTable
    relationships: CodeTable
    document_types: CodeTable
    modalities: CodeTable
    sources: dict[str, str] = field(default_factory=dict, compare=False)

    @classmethod
    def default(cls) -> Terminology:
        """Terminology built from the in-code tables."""
        tables = {
            name: CodeTable.from_keywords(name, system, rows, fallback_code=fallback)
            for name, (system, rows, fallback) in _TABLE_SPECS.items()
        }
        return cls(**tables, sources={name: "builtin" for name in tables})

    @classmethod
    def from_directory(cls, directory: str | Path) -> Terminology:
        """Built-in tables, with any ``<table>.json`` in ``directory`` swapped in."""
        base = cls.default()
        path = Path(directory)
        overrides: dict[str, CodeTable] = {}
        sources = dict(base.sources)
        for name, (system, _rows, fallback) in _TABLE_SPECS.items():
            table_file = path / f"{name}.json"
            if table_file.is_file():
                table = CodeTable.from_json(name, system, table_file)
                overrides[name] = replace(table, fallback_code=fallback)
                sources[name] = str(table_file)
        return replace(base, **overrides, sources=sources)


@lru_cache(maxsize=1)
def get_terminology() -> Terminology:
    """Process-wide terminology, honoring ``settings.terminology_dir``."""
    if settings.terminology_dir:
        return Terminology.from_directory(settings.terminology_dir)
    return Terminology.default()
