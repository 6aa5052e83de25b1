"""
Integration tests: every read and write is scoped to the caller's tenant.
"""
from __future__ import annotations

import pytest

from apps.api.services import encounters as encounter_service
from apps.api.services import lab_workflow
from apps.api.services.patients import get_patient, register_patient
from packages.db.database import get_session
from packages.shared.errors import LAB_TEST_NOT_FOUND, PATIENT_NOT_FOUND, DomainError, NotFoundError
from packages.shared.models import EncounterType, OpdMain


def test_sequences_are_per_tenant(ctx, other_ctx, builders):
    with get_session() as session:
        a = register_patient(session, ctx, name="A One")
        b = register_patient(session, other_ctx, name="B One")
    assert a.reg_no == b.reg_no == "REG-00000001"

    enc_a = encounter_service.create_encounter(ctx, a.id, EncounterType.OPD)
    enc_b = encounter_service.create_encounter(other_ctx, b.id, EncounterType.OPD)
    assert enc_a.encounter_code == enc_b.encounter_code
    assert enc_a.encounter_code.startswith("OPD-")


def test_patient_of_another_tenant_is_invisible(ctx, other_ctx, builders):
    patient_id = builders.make_patient(ctx)
    with get_session() as session:
        with pytest.raises(NotFoundError):
            get_patient(session, other_ctx, patient_id)

    with pytest.raises(DomainError) as exc:
        encounter_service.create_encounter(other_ctx, patient_id, EncounterType.OPD)
    assert exc.value.code == PATIENT_NOT_FOUND


def test_encounters_are_listed_per_tenant(ctx, other_ctx, builders):
    builders.make_encounter(ctx, EncounterType.OPD)
    builders.make_encounter(ctx, EncounterType.LAB)
    builders.make_encounter(other_ctx, EncounterType.OPD)

    assert encounter_service.list_encounters(ctx).total == 2
    assert encounter_service.list_encounters(other_ctx).total == 1


@pytest.mark.parametrize(
    "action",
    [
        lambda c, eid: encounter_service.get_encounter(c, eid),
        lambda c, eid: encounter_service.start_prep(c, eid),
        lambda c, eid: encounter_service.get_prep(c, eid),
        lambda c, eid: encounter_service.save_main(c, eid, OpdMain(chief_complaint="cough")),
        lambda c, eid: lab_workflow.list_encounter_lab_tests(c, eid),
    ],
)
def test_foreign_encounter_is_not_found(ctx, other_ctx, builders, action):
    encounter_id = builders.make_encounter(ctx, EncounterType.LAB)
    with pytest.raises(NotFoundError):
        action(other_ctx, encounter_id)
    assert encounter_service.get_encounter(ctx, encounter_id).status == "CREATED"


def test_lab_writes_on_a_foreign_encounter(ctx, other_ctx, builders):
    flow = builders.lab_encounter_in_progress(ctx)
    with pytest.raises(NotFoundError):
        lab_workflow.enter_results(
            other_ctx,
            flow.encounter_id,
            flow.order.order_item_id,
            [lab_workflow.ResultEntry(parameter_id=flow.order.parameter_id, value="4.1")],
        )
    with pytest.raises(NotFoundError):
        lab_workflow.verify_results(other_ctx, flow.encounter_id, flow.order.order_item_id)


def test_catalog_is_per_tenant(ctx, other_ctx, builders):
    foreign = builders.seed_test(other_ctx.tenant_id)
    flow = builders.lab_encounter_in_progress(ctx)
    with pytest.raises(DomainError) as exc:
        lab_workflow.add_test_to_encounter(ctx, flow.encounter_id, foreign.test_id)
    assert exc.value.code == LAB_TEST_NOT_FOUND


def test_verification_queue_is_per_tenant(ctx, other_ctx, builders):
    for context in (ctx, other_ctx):
        flow = builders.lab_encounter_in_progress(context)
        lab_workflow.enter_results(
            context,
            flow.encounter_id,
            flow.order.order_item_id,
            [lab_workflow.ResultEntry(parameter_id=flow.order.parameter_id, value="4.0")],
        )

    queue_a = lab_workflow.get_verification_queue(ctx)
    queue_b = lab_workflow.get_verification_queue(other_ctx)
    assert queue_a.total == queue_b.total == 1
    assert queue_a.data[0].order_item_id != queue_b.data[0].order_item_id
