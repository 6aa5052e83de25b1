"""
Central document-type registry for the API, the render worker and tests.

Every requested type is persisted under one generic stored type; the requested
type travels in the payload ``meta`` block and in ``Document.requested_type``.
"""
from __future__ import annotations

from packages.shared.errors import INVALID_DOCUMENT_TYPE, DomainError
from packages.shared.models.enums import DocumentType, EncounterType

STORED_DOCUMENT_TYPE = "ENCOUNTER_SUMMARY"

DEFAULT_PAYLOAD_VERSION = 1
DEFAULT_TEMPLATE_VERSION = 1
PAYLOAD_SCHEMA_VERSION = 1

# Module-specific documents are only valid for their own encounter type.
DOCUMENT_ENCOUNTER_TYPE: dict[DocumentType, EncounterType | None] = {
    DocumentType.ENCOUNTER_SUMMARY: None,
    DocumentType.LAB_REPORT: EncounterType.LAB,
    DocumentType.RAD_REPORT: EncounterType.RAD,
    DocumentType.OPD_CLINICAL_NOTE: EncounterType.OPD,
    DocumentType.BB_TRANSFUSION_NOTE: EncounterType.BB,
    DocumentType.IPD_DISCHARGE_SUMMARY: EncounterType.IPD,
}

DOCUMENT_TITLES: dict[str, str] = {
    DocumentType.ENCOUNTER_SUMMARY.value: "Encounter Summary",
    DocumentType.LAB_REPORT.value: "Laboratory Report",
    DocumentType.RAD_REPORT.value: "Radiology Report",
    DocumentType.OPD_CLINICAL_NOTE.value: "Outpatient Clinical Note",
    DocumentType.BB_TRANSFUSION_NOTE.value: "Transfusion Note",
    DocumentType.IPD_DISCHARGE_SUMMARY.value: "Discharge Summary",
}


def parse_document_type(value: str | DocumentType) -> DocumentType:
    try:
        return DocumentType(getattr(value, "value", value))
    except ValueError as exc:
        raise DomainError(
            INVALID_DOCUMENT_TYPE,
            f"Unsupported document type: {value}",
            {"supported": [t.value for t in DocumentType]},
        ) from exc


def assert_document_type_for_encounter(
    document_type: DocumentType, encounter_type: str | EncounterType
) -> None:
    required = DOCUMENT_ENCOUNTER_TYPE[document_type]
    actual = EncounterType(getattr(encounter_type, "value", encounter_type))
    if required is not None and required != actual:
        raise DomainError(
            INVALID_DOCUMENT_TYPE,
            f"{document_type.value} is only valid for {required.value} encounters",
            {"document_type": document_type.value, "encounter_type": actual.value},
        )


def to_stored_document_type(document_type: DocumentType) -> str:
    return STORED_DOCUMENT_TYPE


def requested_type_from_payload(payload: dict | None, fallback: str) -> str:
    meta = (payload or {}).get("meta") or {}
    requested = meta.get("requestedDocumentType")
    if isinstance(requested, str) and requested in DOCUMENT_TITLES:
        return requested
    return fallback


def template_key_from_payload(payload: dict | None, fallback: str) -> str:
    meta = (payload or {}).get("meta") or {}
    key = meta.get("templateKey")
    return key if isinstance(key, str) and key else fallback


def document_title(requested_type: str) -> str:
    return DOCUMENT_TITLES.get(requested_type, "Clinical Document")
