"""
Type-specific preparation and main-phase records.

Each encounter type owns one prep variant and one main variant. The variants
form tagged unions keyed by ``type`` so consumers dispatch on the tag instead
of probing loosely-typed dicts.
"""
from __future__ import annotations

from datetime import datetime
from typing import Annotated, Literal, Union

from pydantic import ConfigDict, Field, TypeAdapter

from .common import ApiModel


class _Record(ApiModel):
    model_config = ConfigDict(extra="forbid")

    def fields(self) -> dict:
        """JSON-safe, camelCase field values without the tag."""
        return self.model_dump(mode="json", by_alias=True, exclude={"type"})


# ── Preparation ──────────────────────────────────────────────────────────


class LabPrep(_Record):
    type: Literal["LAB"] = "LAB"
    specimen_type: str | None = None
    collected_at: datetime | None = None
    collector_name: str | None = None
    received_at: datetime | None = None


class RadPrep(_Record):
    type: Literal["RAD"] = "RAD"
    fasting_required: bool | None = None
    fasting_confirmed: bool | None = None
    contrast_planned: bool | None = None
    creatinine_checked: bool | None = None
    pregnancy_screen_done: bool | None = None
    notes: str | None = None


class OpdPrep(_Record):
    type: Literal["OPD"] = "OPD"
    systolic_bp: int | None = Field(default=None, ge=0)
    diastolic_bp: int | None = Field(default=None, ge=0)
    pulse: int | None = Field(default=None, ge=0)
    temperature_c: float | None = None
    respiratory_rate: int | None = Field(default=None, ge=0)
    weight_kg: float | None = Field(default=None, ge=0)
    spo2: int | None = Field(default=None, ge=0, le=100)
    triage_notes: str | None = None


class BbPrep(_Record):
    type: Literal["BB"] = "BB"
    sample_received_at: datetime | None = None
    abo_group: Literal["A", "B", "AB", "O"] | None = None
    rh_type: Literal["POS", "NEG"] | None = None
    component_requested: str | None = None
    units_requested: int | None = Field(default=None, ge=0)
    urgency: Literal["ROUTINE", "URGENT"] | None = None


class IpdPrep(_Record):
    type: Literal["IPD"] = "IPD"
    admission_reason: str | None = None
    ward: str | None = None
    bed: str | None = None
    admitting_notes: str | None = None


PrepRecord = Annotated[
    Union[LabPrep, RadPrep, OpdPrep, BbPrep, IpdPrep],
    Field(discriminator="type"),
]


# ── Main phase ───────────────────────────────────────────────────────────


class LabMain(_Record):
    type: Literal["LAB"] = "LAB"
    result_summary: str | None = None


class RadMain(_Record):
    type: Literal["RAD"] = "RAD"
    report_text: str | None = None
    impression: str | None = None
    radiologist_name: str | None = None
    reported_at: datetime | None = None


class OpdMain(_Record):
    type: Literal["OPD"] = "OPD"
    chief_complaint: str | None = None
    assessment: str | None = None
    plan: str | None = None
    prescription_text: str | None = None


class BbMain(_Record):
    type: Literal["BB"] = "BB"
    crossmatch_result: Literal["COMPATIBLE", "INCOMPATIBLE"] | None = None
    component_issued: str | None = None
    units_issued: int | None = Field(default=None, ge=0)
    issued_at: datetime | None = None
    issue_notes: str | None = None

    def has_issue_signal(self) -> bool:
        return any(
            value not in (None, "")
            for value in (self.component_issued, self.units_issued, self.issued_at, self.issue_notes)
        )


class IpdMain(_Record):
    type: Literal["IPD"] = "IPD"
    daily_note: str | None = None
    orders: str | None = None


MainRecord = Annotated[
    Union[LabMain, RadMain, OpdMain, BbMain, IpdMain],
    Field(discriminator="type"),
]


_prep_adapter: TypeAdapter = TypeAdapter(PrepRecord)
_main_adapter: TypeAdapter = TypeAdapter(MainRecord)


def load_prep(data: dict | None):
    """Rehydrate a stored prep record; None when nothing was saved."""
    if not data:
        return None
    return _prep_adapter.validate_python(data)


def load_main(data: dict | None):
    """Rehydrate a stored main-phase record; None when nothing was saved."""
    if not data:
        return None
    return _main_adapter.validate_python(data)
