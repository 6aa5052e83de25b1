"""
Projections returned by the workflow services and exposed over the API.
"""
from __future__ import annotations

from typing import Any

from .common import ApiModel
from .enums import (
    DocumentStatus,
    EncounterStatus,
    EncounterType,
    LabEncounterStatus,
    LabOrderItemStatus,
    LabResultFlag,
)


class PatientResponse(ApiModel):
    id: str
    reg_no: str
    name: str
    dob: str | None = None
    gender: str | None = None
    phone: str | None = None
    mrn: str | None = None
    created_at: str | None = None


class EncounterResponse(ApiModel):
    id: str
    patient_id: str
    type: EncounterType
    status: EncounterStatus
    encounter_code: str
    started_at: str | None = None
    ended_at: str | None = None
    created_at: str | None = None
    updated_at: str | None = None
    lab_encounter_status: LabEncounterStatus | None = None


class EncounterListResponse(ApiModel):
    data: list[EncounterResponse]
    total: int
    page: int
    page_size: int


class EncounterRecordResponse(ApiModel):
    """A stored prep or main-phase record."""

    encounter_id: str
    type: EncounterType
    data: dict[str, Any] | None = None
    updated_at: str | None = None


class LabResultResponse(ApiModel):
    id: str
    parameter_id: str
    parameter_name: str
    unit: str | None = None
    reference: str
    value: str
    value_numeric: float | None = None
    flag: LabResultFlag
    entered_by: str | None = None
    entered_at: str | None = None
    verified_by: str | None = None
    verified_at: str | None = None


class LabOrderItemResponse(ApiModel):
    id: str
    encounter_id: str
    test_id: str
    test_code: str
    test_name: str
    department: str
    status: LabOrderItemStatus
    results: list[LabResultResponse]
    created_at: str | None = None
    updated_at: str | None = None


class LabOrderItemListResponse(ApiModel):
    data: list[LabOrderItemResponse]
    total: int


class VerificationQueueItem(ApiModel):
    order_item_id: str
    encounter_id: str
    encounter_code: str
    encounter_status: EncounterStatus
    lab_encounter_status: LabEncounterStatus
    patient_id: str
    patient_name: str
    test_code: str
    test_name: str
    status: LabOrderItemStatus
    updated_at: str | None = None


class VerificationQueueResponse(ApiModel):
    data: list[VerificationQueueItem]
    total: int


class DocumentResponse(ApiModel):
    id: str
    encounter_id: str
    type: str
    template_key: str
    status: DocumentStatus
    payload_version: int
    template_version: int
    payload_hash: str
    pdf_hash: str | None = None
    storage_key: str | None = None
    error_code: str | None = None
    error_message: str | None = None
    created_at: str | None = None
    rendered_at: str | None = None
