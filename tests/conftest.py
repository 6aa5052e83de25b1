"""
Shared test setup: a throwaway sqlite database and data directory, fresh
tables per test and small builders for the clinical workflow.
"""
from __future__ import annotations

import os
import tempfile
from datetime import datetime, timezone
from pathlib import Path
from types import SimpleNamespace

# Setup test environment before imports
_TEST_ROOT = Path(tempfile.mkdtemp(prefix="clinflow-tests-"))
os.environ["DATABASE_URL"] = f"sqlite:///{(_TEST_ROOT / 'clinflow_test.db').as_posix()}"
os.environ["DATA_DIR"] = str(_TEST_ROOT / "data")

import pytest  # noqa: E402
from fastapi.testclient import TestClient  # noqa: E402

from apps.api.services import encounters as encounter_service  # noqa: E402
from apps.api.services import lab_workflow  # noqa: E402
from apps.api.services.patients import register_patient  # noqa: E402
from packages.db.database import engine, get_session  # noqa: E402
from packages.db.models import Base, LabTestParameter  # noqa: E402
from packages.shared.models import EncounterType, LabPrep, RequestContext  # noqa: E402
from scripts.seed_lab_catalog import seed_catalog  # noqa: E402

TENANT_A = "tenant-a"
TENANT_B = "tenant-b"

POTASSIUM = {
    "code": "K",
    "name": "Potassium",
    "department": "Chemistry",
    "parameters": [{"name": "Potassium", "unit": "mmol/L", "refLow": 3.5, "refHigh": 5.2}],
}

COLLECTED_AT = datetime(2026, 3, 2, 8, 30, tzinfo=timezone.utc)


@pytest.fixture(autouse=True)
def setup_db():
    """Create fresh tables for each test."""
    Base.metadata.create_all(bind=engine)
    yield
    Base.metadata.drop_all(bind=engine)


@pytest.fixture
def client():
    from apps.api.main import app

    return TestClient(app)


@pytest.fixture
def ctx() -> RequestContext:
    return RequestContext(tenant_id=TENANT_A, actor_id="tech-1", correlation_id="corr-a")


@pytest.fixture
def other_ctx() -> RequestContext:
    return RequestContext(tenant_id=TENANT_B, actor_id="tech-9", correlation_id="corr-b")


def seed_test(tenant_id: str, entry: dict = POTASSIUM) -> SimpleNamespace:
    """Seed one catalog test; returns its id and its parameter ids in display order."""
    with get_session() as session:
        [test] = seed_catalog(session, tenant_id, [entry])
        parameter_ids = [
            p.id
            for p in session.query(LabTestParameter)
            .filter(LabTestParameter.test_id == test.id)
            .order_by(LabTestParameter.display_order)
            .all()
        ]
        return SimpleNamespace(test_id=test.id, parameter_ids=parameter_ids, parameter_id=parameter_ids[0])


def make_patient(ctx: RequestContext, name: str = "Jane Roe") -> str:
    with get_session() as session:
        return register_patient(session, ctx, name=name).id


def make_encounter(ctx: RequestContext, encounter_type: EncounterType = EncounterType.LAB) -> str:
    patient_id = make_patient(ctx)
    return encounter_service.create_encounter(ctx, patient_id, encounter_type).id


def lab_encounter_in_progress(ctx: RequestContext, *test_entries: dict) -> SimpleNamespace:
    """A LAB encounter with a collected sample, IN_PROGRESS, with the given tests ordered."""
    encounter_id = make_encounter(ctx, EncounterType.LAB)
    encounter_service.start_prep(ctx, encounter_id)
    encounter_service.save_prep(
        ctx, encounter_id, LabPrep(specimen_type="Serum", collected_at=COLLECTED_AT, collector_name="R. Diaz")
    )
    encounter_service.start_main(ctx, encounter_id)
    orders = []
    for entry in test_entries or (POTASSIUM,):
        seeded = seed_test(ctx.tenant_id, entry)
        item = lab_workflow.add_test_to_encounter(ctx, encounter_id, seeded.test_id)
        orders.append(SimpleNamespace(order_item_id=item.id, **vars(seeded)))
    return SimpleNamespace(encounter_id=encounter_id, orders=orders, order=orders[0])


def finalized_lab_encounter(ctx: RequestContext, value: str = "4.5") -> SimpleNamespace:
    """A LAB encounter whose single potassium test is verified and finalized."""
    flow = lab_encounter_in_progress(ctx)
    lab_workflow.enter_results(
        ctx,
        flow.encounter_id,
        flow.order.order_item_id,
        [lab_workflow.ResultEntry(parameter_id=flow.order.parameter_id, value=value)],
    )
    lab_workflow.verify_results(ctx, flow.encounter_id, flow.order.order_item_id)
    encounter_service.finalize(ctx, flow.encounter_id)
    return flow


@pytest.fixture
def builders() -> SimpleNamespace:
    return SimpleNamespace(
        seed_test=seed_test,
        make_patient=make_patient,
        make_encounter=make_encounter,
        lab_encounter_in_progress=lab_encounter_in_progress,
        finalized_lab_encounter=finalized_lab_encounter,
    )
