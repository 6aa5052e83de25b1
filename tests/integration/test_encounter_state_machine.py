"""
Integration tests: encounter registration, prep/main records and the
forward-only state machine with its gates.
"""
from __future__ import annotations

from datetime import datetime, timezone

import pytest

from apps.api.services import encounters as encounter_service
from apps.api.services import lab_workflow
from packages.db.database import get_session
from packages.db.models import AuditEvent, Encounter
from packages.shared.errors import (
    ENCOUNTER_FINALIZE_BLOCKED_UNVERIFIED_LAB,
    ENCOUNTER_STATE_INVALID,
    INVALID_ENCOUNTER_TYPE,
    LAB_ORDER_EMPTY,
    MAIN_INCOMPLETE,
    PATIENT_NOT_FOUND,
    PREP_INCOMPLETE,
    DomainError,
    NotFoundError,
)
from packages.shared.models import (
    BbMain,
    EncounterStatus,
    EncounterType,
    LabEncounterStatus,
    LabPrep,
    OpdMain,
    OpdPrep,
    RadMain,
    RadPrep,
)


def _events(event_type: str) -> list[dict]:
    with get_session() as session:
        return [
            e.payload_json
            for e in session.query(AuditEvent)
            .filter(AuditEvent.event_type == event_type)
            .order_by(AuditEvent.created_at)
            .all()
        ]


def _status(encounter_id: str) -> str:
    with get_session() as session:
        return session.get(Encounter, encounter_id).status


def _in_progress(ctx, builders, encounter_type: EncounterType) -> str:
    encounter_id = builders.make_encounter(ctx, encounter_type)
    encounter_service.start_prep(ctx, encounter_id)
    encounter_service.start_main(ctx, encounter_id)
    return encounter_id


class TestRegistration:
    def test_encounter_codes_are_sequential_per_type_and_year(self, ctx, builders):
        patient_id = builders.make_patient(ctx)
        started = datetime(2026, 5, 1, 9, 0, tzinfo=timezone.utc)
        first = encounter_service.create_encounter(ctx, patient_id, EncounterType.LAB, started)
        second = encounter_service.create_encounter(ctx, patient_id, EncounterType.LAB, started)
        rad = encounter_service.create_encounter(ctx, patient_id, EncounterType.RAD, started)

        assert first.encounter_code == "LAB-2026-000001"
        assert second.encounter_code == "LAB-2026-000002"
        assert rad.encounter_code == "RAD-2026-000001"
        assert first.status == EncounterStatus.CREATED
        assert first.lab_encounter_status == LabEncounterStatus.DRAFT
        assert rad.lab_encounter_status is None
        assert len(_events("encounter.created")) == 3

    def test_patient_of_another_tenant_is_not_found(self, ctx, other_ctx, builders):
        foreign_patient = builders.make_patient(other_ctx)
        with pytest.raises(DomainError) as exc:
            encounter_service.create_encounter(ctx, foreign_patient, EncounterType.OPD)
        assert exc.value.code == PATIENT_NOT_FOUND
        [blocked] = _events("encounter.create_blocked")
        assert blocked["failure_reason_code"] == PATIENT_NOT_FOUND

    def test_list_filters_and_pages(self, ctx, builders):
        patient_id = builders.make_patient(ctx)
        lab = encounter_service.create_encounter(ctx, patient_id, EncounterType.LAB)
        encounter_service.create_encounter(ctx, patient_id, EncounterType.OPD)
        encounter_service.start_prep(ctx, lab.id)

        everything = encounter_service.list_encounters(ctx)
        assert everything.total == 2
        assert everything.page == 1
        assert everything.page_size == encounter_service.PAGE_SIZE

        only_lab = encounter_service.list_encounters(ctx, encounter_type=EncounterType.LAB)
        assert [e.id for e in only_lab.data] == [lab.id]
        assert only_lab.data[0].lab_encounter_status == LabEncounterStatus.DRAFT

        in_prep = encounter_service.list_encounters(ctx, status=EncounterStatus.PREP)
        assert [e.id for e in in_prep.data] == [lab.id]

        assert encounter_service.list_encounters(ctx, page=2).data == []


class TestTransitions:
    def test_forward_path(self, ctx, builders):
        encounter_id = builders.make_encounter(ctx, EncounterType.OPD)
        assert encounter_service.start_prep(ctx, encounter_id).status == EncounterStatus.PREP
        assert encounter_service.start_main(ctx, encounter_id).status == EncounterStatus.IN_PROGRESS
        done = encounter_service.finalize(ctx, encounter_id, idempotency_key="fin-1")
        assert done.status == EncounterStatus.FINALIZED
        assert done.ended_at is not None

        transitions = _events("encounter.transitioned")
        assert [(e["prev_status"], e["next_status"]) for e in transitions] == [
            ("CREATED", "PREP"),
            ("PREP", "IN_PROGRESS"),
            ("IN_PROGRESS", "FINALIZED"),
        ]
        assert transitions[-1]["idempotency_key"] == "fin-1"
        assert transitions[-1]["correlation_id"] == ctx.correlation_id

    def test_skipping_a_stage_is_rejected_and_leaves_status(self, ctx, builders):
        encounter_id = builders.make_encounter(ctx, EncounterType.OPD)
        with pytest.raises(DomainError) as exc:
            encounter_service.start_main(ctx, encounter_id)
        assert exc.value.code == ENCOUNTER_STATE_INVALID
        assert exc.value.details["current_status"] == "CREATED"
        assert _status(encounter_id) == "CREATED"

        [blocked] = _events("encounter.transition_blocked")
        assert blocked["prev_status"] == "CREATED"
        assert blocked["next_status"] == "IN_PROGRESS"
        assert blocked["failure_reason_code"] == ENCOUNTER_STATE_INVALID

    def test_transitions_never_go_backwards(self, ctx, builders):
        encounter_id = _in_progress(ctx, builders, EncounterType.OPD)
        encounter_service.finalize(ctx, encounter_id)
        for command in (encounter_service.start_prep, encounter_service.start_main, encounter_service.finalize):
            with pytest.raises(DomainError) as exc:
                command(ctx, encounter_id)
            assert exc.value.code == ENCOUNTER_STATE_INVALID
        assert _status(encounter_id) == "FINALIZED"

    def test_unknown_encounter(self, ctx):
        with pytest.raises(NotFoundError):
            encounter_service.start_prep(ctx, "missing")


class TestGates:
    def test_lab_start_main_needs_specimen_type(self, ctx, builders):
        encounter_id = builders.make_encounter(ctx, EncounterType.LAB)
        encounter_service.start_prep(ctx, encounter_id)
        with pytest.raises(DomainError) as exc:
            encounter_service.start_main(ctx, encounter_id)
        assert exc.value.code == PREP_INCOMPLETE
        assert _status(encounter_id) == "PREP"

        encounter_service.save_prep(ctx, encounter_id, LabPrep(specimen_type="Whole blood"))
        assert encounter_service.start_main(ctx, encounter_id).status == EncounterStatus.IN_PROGRESS

    def test_lab_finalize_needs_ordered_tests(self, ctx, builders):
        encounter_id = builders.make_encounter(ctx, EncounterType.LAB)
        encounter_service.start_prep(ctx, encounter_id)
        encounter_service.save_prep(ctx, encounter_id, LabPrep(specimen_type="Serum"))
        encounter_service.start_main(ctx, encounter_id)
        with pytest.raises(DomainError) as exc:
            encounter_service.finalize(ctx, encounter_id)
        assert exc.value.code == LAB_ORDER_EMPTY
        assert _status(encounter_id) == "IN_PROGRESS"

    def test_lab_finalize_blocked_until_verified(self, ctx, builders):
        flow = builders.lab_encounter_in_progress(ctx)
        lab_workflow.enter_results(
            ctx,
            flow.encounter_id,
            flow.order.order_item_id,
            [lab_workflow.ResultEntry(parameter_id=flow.order.parameter_id, value="4.5")],
        )
        with pytest.raises(DomainError) as exc:
            encounter_service.finalize(ctx, flow.encounter_id)
        assert exc.value.code == ENCOUNTER_FINALIZE_BLOCKED_UNVERIFIED_LAB
        assert exc.value.details == {
            "unverified_order_items": [{"order_id": flow.order.order_item_id, "status": "RESULTS_ENTERED"}]
        }
        assert _status(flow.encounter_id) == "IN_PROGRESS"

        lab_workflow.verify_results(ctx, flow.encounter_id, flow.order.order_item_id)
        done = encounter_service.finalize(ctx, flow.encounter_id)
        assert done.status == EncounterStatus.FINALIZED
        assert done.lab_encounter_status == LabEncounterStatus.VERIFIED

    def test_rad_finalize_needs_report_text(self, ctx, builders):
        encounter_id = _in_progress(ctx, builders, EncounterType.RAD)
        with pytest.raises(DomainError) as exc:
            encounter_service.finalize(ctx, encounter_id)
        assert exc.value.code == MAIN_INCOMPLETE

        encounter_service.save_main(ctx, encounter_id, RadMain(report_text="   "))
        with pytest.raises(DomainError):
            encounter_service.finalize(ctx, encounter_id)

        encounter_service.save_main(ctx, encounter_id, RadMain(report_text="No acute findings."))
        assert encounter_service.finalize(ctx, encounter_id).status == EncounterStatus.FINALIZED

    def test_bb_issue_needs_component_and_units(self, ctx, builders):
        encounter_id = _in_progress(ctx, builders, EncounterType.BB)
        encounter_service.save_main(
            ctx, encounter_id, BbMain(crossmatch_result="COMPATIBLE", issue_notes="Issued to ward 4")
        )
        with pytest.raises(DomainError) as exc:
            encounter_service.finalize(ctx, encounter_id)
        assert exc.value.code == MAIN_INCOMPLETE
        assert exc.value.details == {"missing_fields": ["component_issued", "units_issued"]}

        encounter_service.save_main(
            ctx,
            encounter_id,
            BbMain(crossmatch_result="COMPATIBLE", component_issued="PRBC", units_issued=2),
        )
        assert encounter_service.finalize(ctx, encounter_id).status == EncounterStatus.FINALIZED

    def test_bb_without_issue_finalizes(self, ctx, builders):
        encounter_id = _in_progress(ctx, builders, EncounterType.BB)
        encounter_service.save_main(ctx, encounter_id, BbMain(crossmatch_result="INCOMPATIBLE"))
        assert encounter_service.finalize(ctx, encounter_id).status == EncounterStatus.FINALIZED


class TestRecords:
    def test_prep_and_main_round_trip(self, ctx, builders):
        encounter_id = builders.make_encounter(ctx, EncounterType.OPD)
        encounter_service.save_prep(ctx, encounter_id, OpdPrep(systolic_bp=120, diastolic_bp=80))
        encounter_service.start_prep(ctx, encounter_id)
        encounter_service.start_main(ctx, encounter_id)
        encounter_service.save_main(ctx, encounter_id, OpdMain(chief_complaint="Cough", plan="Rest"))

        prep = encounter_service.get_prep(ctx, encounter_id)
        assert prep.type == EncounterType.OPD
        assert prep.data["systolicBp"] == 120
        main = encounter_service.get_main(ctx, encounter_id)
        assert main.data["chiefComplaint"] == "Cough"
        assert len(_events("encounter.main_saved")) == 1

    def test_empty_records(self, ctx, builders):
        encounter_id = builders.make_encounter(ctx, EncounterType.IPD)
        record = encounter_service.get_main(ctx, encounter_id)
        assert record.data is None
        assert record.updated_at is None

    def test_record_of_another_type_is_rejected(self, ctx, builders):
        encounter_id = builders.make_encounter(ctx, EncounterType.LAB)
        with pytest.raises(DomainError) as exc:
            encounter_service.save_prep(ctx, encounter_id, RadPrep(contrast_planned=True))
        assert exc.value.code == INVALID_ENCOUNTER_TYPE
        assert _events("encounter.prep_save_blocked")[0]["failure_reason_code"] == INVALID_ENCOUNTER_TYPE

    def test_main_only_while_in_progress(self, ctx, builders):
        encounter_id = builders.make_encounter(ctx, EncounterType.OPD)
        with pytest.raises(DomainError) as exc:
            encounter_service.save_main(ctx, encounter_id, OpdMain(assessment="Stable"))
        assert exc.value.code == ENCOUNTER_STATE_INVALID

    def test_prep_is_frozen_after_finalize(self, ctx, builders):
        encounter_id = _in_progress(ctx, builders, EncounterType.OPD)
        encounter_service.finalize(ctx, encounter_id)
        with pytest.raises(DomainError) as exc:
            encounter_service.save_prep(ctx, encounter_id, OpdPrep(pulse=70))
        assert exc.value.code == ENCOUNTER_STATE_INVALID
