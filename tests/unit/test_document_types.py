from __future__ import annotations

import pytest

from packages.shared.document_types import (
    STORED_DOCUMENT_TYPE,
    assert_document_type_for_encounter,
    document_title,
    parse_document_type,
    requested_type_from_payload,
    template_key_from_payload,
    to_stored_document_type,
)
from packages.shared.errors import INVALID_DOCUMENT_TYPE, DomainError
from packages.shared.models import DocumentType, EncounterType


def test_parse_known_and_unknown_types():
    assert parse_document_type("LAB_REPORT") == DocumentType.LAB_REPORT
    assert parse_document_type(DocumentType.RAD_REPORT) == DocumentType.RAD_REPORT
    with pytest.raises(DomainError) as exc:
        parse_document_type("DISCHARGE_LETTER")
    assert exc.value.code == INVALID_DOCUMENT_TYPE


def test_summary_is_valid_for_every_encounter_type():
    for encounter_type in EncounterType:
        assert_document_type_for_encounter(DocumentType.ENCOUNTER_SUMMARY, encounter_type)


@pytest.mark.parametrize(
    "document_type,encounter_type",
    [
        (DocumentType.LAB_REPORT, "LAB"),
        (DocumentType.RAD_REPORT, "RAD"),
        (DocumentType.OPD_CLINICAL_NOTE, "OPD"),
        (DocumentType.BB_TRANSFUSION_NOTE, "BB"),
        (DocumentType.IPD_DISCHARGE_SUMMARY, "IPD"),
    ],
)
def test_module_documents_match_their_encounter_type(document_type, encounter_type):
    assert_document_type_for_encounter(document_type, encounter_type)


def test_module_document_on_wrong_encounter_type():
    with pytest.raises(DomainError) as exc:
        assert_document_type_for_encounter(DocumentType.LAB_REPORT, EncounterType.RAD)
    assert exc.value.code == INVALID_DOCUMENT_TYPE
    assert exc.value.message == "LAB_REPORT is only valid for LAB encounters"


def test_every_type_is_stored_under_one_generic_type():
    assert {to_stored_document_type(t) for t in DocumentType} == {STORED_DOCUMENT_TYPE}


def test_requested_type_and_template_key_come_from_payload_meta():
    payload = {"meta": {"requestedDocumentType": "LAB_REPORT", "templateKey": "LAB_REPORT"}}
    assert requested_type_from_payload(payload, "ENCOUNTER_SUMMARY") == "LAB_REPORT"
    assert template_key_from_payload(payload, "ENCOUNTER_SUMMARY") == "LAB_REPORT"
    assert requested_type_from_payload({"meta": {"requestedDocumentType": "BOGUS"}}, "X") == "X"
    assert template_key_from_payload(None, "ENCOUNTER_SUMMARY") == "ENCOUNTER_SUMMARY"


def test_document_title():
    assert document_title("LAB_REPORT") == "Laboratory Report"
    assert document_title("unknown") == "Clinical Document"
