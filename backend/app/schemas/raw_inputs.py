"""Raw input shapes accepted by the converter layer.

Inputs arrive as loosely-typed JSON (user-entered data, document analysis
extractions, device exports). They are modeled as a tagged union on ``kind``;
any payload whose ``kind`` is missing or unrecognised becomes a
``GenericInput`` carrying the original map under ``data``.

Field names accept both snake_case and camelCase.
"""

from __future__ import annotations

from typing import Annotated, Any, Literal, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, field_validator
from pydantic.alias_generators import to_camel


class RawInputModel(BaseModel):
    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        extra="allow",
    )

    id: str | None = None


class ReferenceRangeInput(RawInputModel):
    low: float | None = None
    high: float | None = None
    text: str | None = None


class LabResultInput(RawInputModel):
    kind: Literal["lab_result"] = "lab_result"
    name: str | None = None
    value: float | str | None = None
    unit: str | None = None
    date: str | None = None
    status: str | None = None
    reference_range: ReferenceRangeInput | None = None
    interpretation: str | None = None

    @field_validator("reference_range", mode="before")
    @classmethod
    def _range_from_text(cls, v: Any) -> Any:
        if isinstance(v, str):
            return {"text": v}
        return v


class MedicationInput(RawInputModel):
    kind: Literal["medication"] = "medication"
    name: str | None = None
    dosage: str | None = None
    frequency: str | None = None
    route: str | None = None
    form: str | None = None
    start_date: str | None = None
    end_date: str | None = None
    status: str | None = None


class ConditionInput(RawInputModel):
    kind: Literal["condition"] = "condition"
    name: str | None = None
    status: str | None = None
    onset_date: str | None = None
    severity: str | None = None
    note: str | None = None


class AllergyReactionInput(RawInputModel):
    manifestation: str | None = None
    description: str | None = None
    severity: str | None = None


class AllergyInput(RawInputModel):
    kind: Literal["allergy"] = "allergy"
    name: str | None = None
    type: str | None = None
    category: list[str] = Field(default_factory=list)
    criticality: str | None = None
    onset_date: str | None = None
    reaction: list[AllergyReactionInput] = Field(default_factory=list)

    @field_validator("category", "reaction", mode="before")
    @classmethod
    def _listify(cls, v: Any) -> Any:
        if v is None:
            return []
        if isinstance(v, (str, dict)):
            return [v]
        return v

    @field_validator("reaction", mode="before")
    @classmethod
    def _reaction_from_text(cls, v: Any) -> Any:
        # A bare reaction string is its manifestation
        if isinstance(v, (str, dict)):
            v = [v]
        if isinstance(v, list):
            return [{"manifestation": r} if isinstance(r, str) else r for r in v]
        return v


class ImmunizationInput(RawInputModel):
    kind: Literal["immunization"] = "immunization"
    name: str | None = None
    date: str | None = None
    lot_number: str | None = None
    site: str | None = None
    expiration_date: str | None = None


class ProcedureInput(RawInputModel):
    kind: Literal["procedure"] = "procedure"
    name: str | None = None
    status: str | None = None
    date: str | None = None
    location: str | None = None
    performer: str | None = None
    reason: str | None = None
    outcome: str | None = None
    body_site: str | None = None
    complications: list[str] = Field(default_factory=list)

    @field_validator("complications", mode="before")
    @classmethod
    def _listify(cls, v: Any) -> Any:
        if v is None:
            return []
        if isinstance(v, str):
            return [v]
        return v


class FamilyConditionInput(RawInputModel):
    name: str | None = None
    onset_age: str | int | None = None
    outcome: str | None = None
    contributed_to_death: bool | None = None


class FamilyHistoryInput(RawInputModel):
    kind: Literal["family_history"] = "family_history"
    relationship: str | None = None
    name: str | None = None
    sex: str | None = None
    age: str | int | None = None
    deceased: bool | None = None
    conditions: list[FamilyConditionInput] = Field(default_factory=list)

    @field_validator("conditions", mode="before")
    @classmethod
    def _coerce_conditions(cls, v: Any) -> Any:
        if v is None:
            return []
        if isinstance(v, (str, dict)):
            v = [v]
        return [{"name": c} if isinstance(c, str) else c for c in v]


class ImagingSeriesInput(RawInputModel):
    uid: str | None = None
    modality: str | None = None
    description: str | None = None
    body_site: str | None = None
    instances: list[dict[str, Any]] = Field(default_factory=list)


class ImagingInput(RawInputModel):
    kind: Literal["imaging"] = "imaging"
    name: str | None = None
    description: str | None = None
    modality: str | None = None
    date: str | None = None
    study_uid: str | None = None
    series: list[ImagingSeriesInput] = Field(default_factory=list)


class ImagingReportInput(RawInputModel):
    kind: Literal["imaging_report"] = "imaging_report"
    name: str | None = None
    date: str | None = None
    issued: str | None = None
    conclusion: str | None = None
    impression: str | None = None
    brief_summary: str | None = None
    url: str | None = None
    file_type: str | None = None
    observation_ids: list[str] = Field(default_factory=list)


class DocumentInput(RawInputModel):
    kind: Literal["document"] = "document"
    name: str | None = None
    record_type: str | None = None
    record_date: str | None = None
    comment: str | None = None
    brief_summary: str | None = None
    detailed_analysis: str | None = None
    file_url: str | None = None
    file_type: str | None = None
    created_at: str | None = None
    results: list[LabResultInput] = Field(default_factory=list)
    extracted_data: dict[str, Any] = Field(default_factory=dict)


class WearableSampleInput(RawInputModel):
    kind: Literal["wearable_sample"] = "wearable_sample"
    category: str
    device_name: str = "Wearable device"
    timestamp: str | int | float | None = None
    value: float | None = None
    unit: str | None = None
    data: dict[str, Any] = Field(default_factory=dict)


class GenericInput(RawInputModel):
    kind: Literal["generic"] = "generic"
    label: str | None = None
    date: str | None = None
    data: dict[str, Any] = Field(default_factory=dict)


RawInput = Annotated[
    Union[
        LabResultInput,
        MedicationInput,
        ConditionInput,
        AllergyInput,
        ImmunizationInput,
        ProcedureInput,
        FamilyHistoryInput,
        ImagingInput,
        ImagingReportInput,
        DocumentInput,
        WearableSampleInput,
        GenericInput,
    ],
    Field(discriminator="kind"),
]

_RAW_INPUT_ADAPTER: TypeAdapter[RawInput] = TypeAdapter(RawInput)

KNOWN_KINDS = frozenset(
    {
        "lab_result",
        "medication",
        "condition",
        "allergy",
        "immunization",
        "procedure",
        "family_history",
        "imaging",
        "imaging_report",
        "document",
        "wearable_sample",
        "generic",
    }
)


def parse_raw_input(payload: dict[str, Any] | RawInputModel) -> RawInputModel:
    """Validate a raw payload into its tagged input shape.

    Payloads with a missing or unknown ``kind`` become ``GenericInput`` with
    the whole payload preserved under ``data``.

    Raises:
        pydantic.ValidationError: If a known kind has fields of the wrong type.
    """
    if isinstance(payload, RawInputModel):
        return payload
    if payload.get("kind") not in KNOWN_KINDS:
        label = payload.get("name") or payload.get("label") or payload.get("kind")
        raw_date = payload.get("date")
        return GenericInput(
            label=str(label) if label else None,
            date=str(raw_date) if raw_date else None,
            data=dict(payload),
        )
    return _RAW_INPUT_ADAPTER.validate_python(payload)
