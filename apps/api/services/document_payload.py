"""
Deterministic document payloads.

The payload is everything a renderer needs and nothing that changes between
two requests for the same clinical content: no request ids, no wall-clock
times, and the encounter status is always reported as FINALIZED so a document
requested after the worker moved the encounter to DOCUMENTED hashes the same.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any

from sqlalchemy.orm import Session

from apps.api.services.encounters import load_encounter
from packages.db.models import (
    Encounter,
    EncounterMain,
    EncounterPrep,
    LabOrderItem,
    LabResultItem,
    LabTestDefinition,
    LabTestParameter,
    Patient,
)
from packages.shared.document_types import (
    DEFAULT_PAYLOAD_VERSION,
    DEFAULT_TEMPLATE_VERSION,
    PAYLOAD_SCHEMA_VERSION,
)
from packages.shared.errors import LAB_PUBLISH_BLOCKED_NO_VERIFIED_TESTS, DomainError
from packages.shared.models import (
    DocumentType,
    EncounterStatus,
    EncounterType,
    LabOrderItemStatus,
    RequestContext,
    iso_utc,
    load_main,
    load_prep,
)
from packages.shared.schema_validator import ensure_valid_document_payload
from packages.shared.utils.reference_range import ReferenceRange, build_reference_text


@dataclass
class EncounterSnapshot:
    encounter: Encounter
    patient: Patient
    prep: Any = None
    main: Any = None
    order_items: list[LabOrderItem] = field(default_factory=list)
    tests: dict[str, LabTestDefinition] = field(default_factory=dict)
    parameters: dict[str, list[LabTestParameter]] = field(default_factory=dict)
    results: dict[str, dict[str, LabResultItem]] = field(default_factory=dict)


def load_encounter_snapshot(session: Session, ctx: RequestContext, encounter_id: str) -> EncounterSnapshot:
    encounter = load_encounter(session, ctx, encounter_id)
    patient = (
        session.query(Patient)
        .filter(Patient.id == encounter.patient_id, Patient.tenant_id == ctx.tenant_id)
        .one()
    )
    prep_row = (
        session.query(EncounterPrep)
        .filter(EncounterPrep.tenant_id == ctx.tenant_id, EncounterPrep.encounter_id == encounter.id)
        .first()
    )
    main_row = (
        session.query(EncounterMain)
        .filter(EncounterMain.tenant_id == ctx.tenant_id, EncounterMain.encounter_id == encounter.id)
        .first()
    )
    snapshot = EncounterSnapshot(
        encounter=encounter,
        patient=patient,
        prep=load_prep(prep_row.data_json) if prep_row else None,
        main=load_main(main_row.data_json) if main_row else None,
    )
    if encounter.type != EncounterType.LAB.value:
        return snapshot

    snapshot.order_items = (
        session.query(LabOrderItem)
        .filter(LabOrderItem.tenant_id == ctx.tenant_id, LabOrderItem.encounter_id == encounter.id)
        .all()
    )
    test_ids = sorted({item.test_id for item in snapshot.order_items})
    item_ids = [item.id for item in snapshot.order_items]
    if not test_ids:
        return snapshot

    snapshot.tests = {
        test.id: test
        for test in session.query(LabTestDefinition)
        .filter(LabTestDefinition.tenant_id == ctx.tenant_id, LabTestDefinition.id.in_(test_ids))
        .all()
    }
    for parameter in (
        session.query(LabTestParameter)
        .filter(
            LabTestParameter.tenant_id == ctx.tenant_id,
            LabTestParameter.test_id.in_(test_ids),
            LabTestParameter.active.is_(True),
        )
        .all()
    ):
        snapshot.parameters.setdefault(parameter.test_id, []).append(parameter)
    for result in (
        session.query(LabResultItem)
        .filter(LabResultItem.tenant_id == ctx.tenant_id, LabResultItem.order_item_id.in_(item_ids))
        .all()
    ):
        snapshot.results.setdefault(result.order_item_id, {})[result.parameter_id] = result
    return snapshot


def _patient_section(patient: Patient) -> dict:
    return {
        "id": patient.id,
        "regNo": patient.reg_no,
        "name": patient.name,
        "dob": iso_utc(patient.dob),
        "gender": patient.gender,
        "phone": patient.phone,
    }


def _encounter_section(encounter: Encounter) -> dict:
    return {
        "id": encounter.id,
        "encounterCode": encounter.encounter_code,
        "type": encounter.type,
        "status": EncounterStatus.FINALIZED.value,
        "startedAt": iso_utc(encounter.started_at),
        "endedAt": iso_utc(encounter.ended_at),
        "createdAt": iso_utc(encounter.created_at),
    }


def _stage_section(record, document_type: DocumentType) -> dict | None:
    """
    A summary lists every module slot, filled only for the encounter's own
    type. Module documents carry just their own record.
    """
    if document_type == DocumentType.ENCOUNTER_SUMMARY:
        return {
            encounter_type.value.lower(): (
                record.fields() if record is not None and record.type == encounter_type.value else None
            )
            for encounter_type in EncounterType
        }
    return record.fields() if record is not None else None


def _sorted_parameters(parameters: list[LabTestParameter]) -> list[LabTestParameter]:
    return sorted(parameters, key=lambda p: (p.display_order or 0, p.name))


def _is_publishable(snapshot: EncounterSnapshot, item: LabOrderItem) -> bool:
    if item.status != LabOrderItemStatus.VERIFIED.value:
        return False
    results = snapshot.results.get(item.id, {})
    for parameter in snapshot.parameters.get(item.test_id, []):
        result = results.get(parameter.id)
        if result is None or result.verified_at is None or not (result.value or "").strip():
            return False
    return True


def _lab_section(snapshot: EncounterSnapshot) -> dict:
    publishable = [item for item in snapshot.order_items if _is_publishable(snapshot, item)]
    if not publishable:
        raise DomainError(
            LAB_PUBLISH_BLOCKED_NO_VERIFIED_TESTS,
            "LAB report requires at least one fully verified test",
            {"order_item_count": len(snapshot.order_items)},
        )

    def _test_key(item: LabOrderItem):
        test = snapshot.tests[item.test_id]
        return (test.department or "", test.name, test.code, item.id)

    latest = None
    tests = []
    for item in sorted(publishable, key=_test_key):
        test = snapshot.tests[item.test_id]
        results = snapshot.results.get(item.id, {})
        rows = []
        for parameter in _sorted_parameters(snapshot.parameters.get(item.test_id, [])):
            result = results[parameter.id]
            reference = ReferenceRange(
                id=parameter.id,
                ref_low=parameter.ref_low,
                ref_high=parameter.ref_high,
                ref_text=parameter.ref_text,
            )
            rows.append(
                {
                    "parameterId": parameter.id,
                    "name": parameter.name,
                    "value": result.value.strip(),
                    "unit": parameter.unit,
                    "flag": result.flag,
                    "reference": build_reference_text(reference),
                }
            )
            if latest is None or result.verified_at > latest.verified_at:
                latest = result
        tests.append(
            {
                "orderItemId": item.id,
                "testId": test.id,
                "code": test.code,
                "name": test.name,
                "department": test.department or "",
                "parameters": rows,
            }
        )

    verified_summary = None
    if latest is not None:
        verified_summary = {
            "verifiedBy": latest.verified_by,
            "verifiedAt": iso_utc(latest.verified_at),
        }
    return {"tests": tests, "verifiedSummary": verified_summary}


def build_document_payload(
    snapshot: EncounterSnapshot,
    document_type: DocumentType,
    *,
    payload_version: int = DEFAULT_PAYLOAD_VERSION,
    template_version: int = DEFAULT_TEMPLATE_VERSION,
) -> dict:
    payload: dict[str, Any] = {
        "meta": {
            "requestedDocumentType": document_type.value,
            "templateKey": document_type.value,
            "templateVersion": template_version,
            "payloadVersion": payload_version,
            "schemaVersion": PAYLOAD_SCHEMA_VERSION,
        },
        "tenant": {"id": snapshot.encounter.tenant_id},
        "patient": _patient_section(snapshot.patient),
        "encounter": _encounter_section(snapshot.encounter),
        "prep": _stage_section(snapshot.prep, document_type),
        "main": _stage_section(snapshot.main, document_type),
    }
    if document_type == DocumentType.LAB_REPORT:
        payload["lab"] = _lab_section(snapshot)

    ensure_valid_document_payload(payload)
    return payload
