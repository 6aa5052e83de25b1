"""
Encounter lifecycle: registration, type-specific prep/main records and the
forward-only state machine CREATED -> PREP -> IN_PROGRESS -> FINALIZED.

FINALIZED -> DOCUMENTED belongs to the render worker.

Every status write is a guarded update on the expected current status, so two
racing commands cannot both move the same encounter.
"""
from __future__ import annotations

import logging
from collections import defaultdict
from datetime import datetime
from typing import Callable, Iterable

from sqlalchemy.orm import Session

from apps.api.services.audit import build_audit_payload, record_blocked_attempt, write_audit_event
from packages.db.database import get_session
from packages.db.models import (
    Document,
    Encounter,
    EncounterMain,
    EncounterPrep,
    EncounterSequence,
    LabOrderItem,
    Patient,
    utcnow,
)
from packages.db.upserts import next_sequence_value
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
    EncounterListResponse,
    EncounterRecordResponse,
    EncounterResponse,
    EncounterStatus,
    EncounterType,
    LabOrderItemStatus,
    RadMain,
    RequestContext,
    iso_utc,
    load_main,
    load_prep,
)
from packages.shared.models.enums import DocumentStatus
from packages.shared.utils.lab_status import derive_lab_encounter_status

logger = logging.getLogger(__name__)

PAGE_SIZE = 20

START_PREP_REASON = "Cannot start preparation before encounter registration"
START_MAIN_REASON = "Cannot start main phase before preparation"
FINALIZE_REASON = "Cannot finalize before main phase starts"

CLOSED_STATUSES = (EncounterStatus.FINALIZED.value, EncounterStatus.DOCUMENTED.value)

EncounterGuard = Callable[[Session, RequestContext, Encounter], None]


# ── Loading and projection ──────────────────────────────────────────────


def load_encounter(session: Session, ctx: RequestContext, encounter_id: str) -> Encounter:
    encounter = (
        session.query(Encounter)
        .filter(Encounter.id == encounter_id, Encounter.tenant_id == ctx.tenant_id)
        .first()
    )
    if encounter is None:
        raise NotFoundError("Encounter", encounter_id)
    return encounter


def lab_snapshot(
    session: Session, ctx: RequestContext, encounter_ids: Iterable[str]
) -> tuple[dict[str, list[str]], set[str]]:
    ids = list(encounter_ids)
    statuses: dict[str, list[str]] = defaultdict(list)
    if not ids:
        return statuses, set()
    rows = (
        session.query(LabOrderItem.encounter_id, LabOrderItem.status)
        .filter(LabOrderItem.tenant_id == ctx.tenant_id, LabOrderItem.encounter_id.in_(ids))
        .all()
    )
    for encounter_id, status in rows:
        statuses[encounter_id].append(status)
    rendered = {
        row[0]
        for row in session.query(Document.encounter_id)
        .filter(
            Document.tenant_id == ctx.tenant_id,
            Document.encounter_id.in_(ids),
            Document.status == DocumentStatus.RENDERED.value,
        )
        .distinct()
        .all()
    }
    return statuses, rendered


def to_encounter_response(
    encounter: Encounter,
    lab_statuses: list[str] | None = None,
    has_rendered_document: bool = False,
) -> EncounterResponse:
    lab_status = None
    if encounter.type == EncounterType.LAB.value:
        lab_status = derive_lab_encounter_status(lab_statuses or [], has_rendered_document)
    return EncounterResponse(
        id=encounter.id,
        patient_id=encounter.patient_id,
        type=encounter.type,
        status=encounter.status,
        encounter_code=encounter.encounter_code,
        started_at=iso_utc(encounter.started_at),
        ended_at=iso_utc(encounter.ended_at),
        created_at=iso_utc(encounter.created_at),
        updated_at=iso_utc(encounter.updated_at),
        lab_encounter_status=lab_status,
    )


def project_encounter(session: Session, ctx: RequestContext, encounter: Encounter) -> EncounterResponse:
    statuses, rendered = lab_snapshot(session, ctx, [encounter.id])
    return to_encounter_response(encounter, statuses.get(encounter.id), encounter.id in rendered)


# ── Guarded writes ───────────────────────────────────────────────────────


def lock_encounter_for_write(
    session: Session,
    ctx: RequestContext,
    encounter: Encounter,
    allowed_statuses: Iterable[str],
    reason: str,
) -> None:
    """
    Touch the encounter row on the condition that it is still in one of
    *allowed_statuses*. The row lock serializes the caller with status
    transitions until commit.
    """
    allowed = [str(getattr(s, "value", s)) for s in allowed_statuses]
    rows_updated = (
        session.query(Encounter)
        .filter(
            Encounter.id == encounter.id,
            Encounter.tenant_id == ctx.tenant_id,
            Encounter.status.in_(allowed),
        )
        .update({"updated_at": utcnow()}, synchronize_session=False)
    )
    if rows_updated != 1:
        session.refresh(encounter)
        raise DomainError(
            ENCOUNTER_STATE_INVALID,
            reason,
            {"current_status": encounter.status, "allowed_statuses": allowed},
        )


def transition_encounter(
    session: Session,
    ctx: RequestContext,
    encounter_id: str,
    expected: EncounterStatus,
    next_status: EncounterStatus,
    reason: str,
    *,
    mark_ended_at: bool = False,
    guard: EncounterGuard | None = None,
) -> Encounter:
    """
    Move an encounter from *expected* to *next_status*.

    *guard* runs after the guarded update, while the row is locked, and vetoes
    the transition by raising.
    """
    encounter = load_encounter(session, ctx, encounter_id)
    if encounter.status != expected.value:
        raise DomainError(
            ENCOUNTER_STATE_INVALID,
            reason,
            {"current_status": encounter.status, "expected_status": expected.value},
        )

    values: dict = {"status": next_status.value, "updated_at": utcnow()}
    if mark_ended_at:
        values["ended_at"] = utcnow()
    rows_updated = (
        session.query(Encounter)
        .filter(
            Encounter.id == encounter_id,
            Encounter.tenant_id == ctx.tenant_id,
            Encounter.status == expected.value,
        )
        .update(values, synchronize_session=False)
    )
    if rows_updated != 1:
        session.refresh(encounter)
        raise DomainError(
            ENCOUNTER_STATE_INVALID,
            reason,
            {"current_status": encounter.status, "expected_status": expected.value},
        )
    session.refresh(encounter)
    if guard is not None:
        guard(session, ctx, encounter)
    return encounter


def _run_transition(
    ctx: RequestContext,
    encounter_id: str,
    *,
    expected: EncounterStatus,
    next_status: EncounterStatus,
    reason: str,
    idempotency_key: str | None,
    mark_ended_at: bool = False,
    guard: EncounterGuard | None = None,
) -> EncounterResponse:
    try:
        with get_session() as session:
            encounter = transition_encounter(
                session,
                ctx,
                encounter_id,
                expected,
                next_status,
                reason,
                mark_ended_at=mark_ended_at,
                guard=guard,
            )
            write_audit_event(
                session,
                ctx,
                event_type="encounter.transitioned",
                entity_type="encounter",
                entity_id=encounter.id,
                payload=build_audit_payload(
                    ctx,
                    encounter_id=encounter.id,
                    idempotency_key=idempotency_key,
                    prev_status=expected,
                    next_status=next_status,
                ),
            )
            session.flush()
            logger.info(
                "Encounter %s moved %s -> %s (tenant=%s)",
                encounter.id,
                expected.value,
                next_status.value,
                ctx.tenant_id,
            )
            return project_encounter(session, ctx, encounter)
    except DomainError as exc:
        record_blocked_attempt(
            ctx,
            exc,
            event_type="encounter.transition_blocked",
            entity_type="encounter",
            entity_id=encounter_id,
            encounter_id=encounter_id,
            idempotency_key=idempotency_key,
            prev_status=(exc.details or {}).get("current_status", expected.value),
            next_status=next_status,
        )
        raise


# ── Gates ────────────────────────────────────────────────────────────────


def _start_main_gate(session: Session, ctx: RequestContext, encounter: Encounter) -> None:
    if encounter.type != EncounterType.LAB.value:
        return
    prep = _load_prep_record(session, ctx, encounter.id)
    if prep is None or not (prep.specimen_type or "").strip():
        raise DomainError(
            PREP_INCOMPLETE,
            "LAB prep requires specimenType before starting main",
            {"missing_fields": ["specimen_type"]},
        )


def _finalize_gate(session: Session, ctx: RequestContext, encounter: Encounter) -> None:
    if encounter.type == EncounterType.LAB.value:
        items = (
            session.query(LabOrderItem.id, LabOrderItem.status)
            .filter(
                LabOrderItem.tenant_id == ctx.tenant_id,
                LabOrderItem.encounter_id == encounter.id,
            )
            .order_by(LabOrderItem.created_at, LabOrderItem.id)
            .all()
        )
        if not items:
            raise DomainError(
                LAB_ORDER_EMPTY,
                "Cannot finalize a LAB encounter without ordered tests",
            )
        unverified = [
            {"order_id": item_id, "status": status}
            for item_id, status in items
            if status != LabOrderItemStatus.VERIFIED.value
        ]
        if unverified:
            raise DomainError(
                ENCOUNTER_FINALIZE_BLOCKED_UNVERIFIED_LAB,
                "Cannot finalize LAB encounter until all ordered tests are verified",
                {"unverified_order_items": unverified},
            )
        return

    main = _load_main_record(session, ctx, encounter.id)
    if encounter.type == EncounterType.RAD.value:
        if not isinstance(main, RadMain) or not (main.report_text or "").strip():
            raise DomainError(
                MAIN_INCOMPLETE,
                "RAD main requires reportText before finalize",
                {"missing_fields": ["report_text"]},
            )
    elif isinstance(main, BbMain):
        if main.crossmatch_result == "COMPATIBLE" and main.has_issue_signal():
            missing = []
            if not (main.component_issued or "").strip():
                missing.append("component_issued")
            if not main.units_issued or main.units_issued <= 0:
                missing.append("units_issued")
            if missing:
                raise DomainError(
                    MAIN_INCOMPLETE,
                    "BB issue requires componentIssued and unitsIssued before finalize",
                    {"missing_fields": missing},
                )


# ── Commands ─────────────────────────────────────────────────────────────


def create_encounter(
    ctx: RequestContext,
    patient_id: str,
    encounter_type: EncounterType,
    started_at: datetime | None = None,
) -> EncounterResponse:
    try:
        return _create_encounter(ctx, patient_id, encounter_type, started_at)
    except DomainError as exc:
        record_blocked_attempt(
            ctx,
            exc,
            event_type="encounter.create_blocked",
            entity_type="patient",
            entity_id=patient_id,
            next_status=EncounterStatus.CREATED,
        )
        raise


def _create_encounter(
    ctx: RequestContext,
    patient_id: str,
    encounter_type: EncounterType,
    started_at: datetime | None,
) -> EncounterResponse:
    with get_session() as session:
        patient = (
            session.query(Patient)
            .filter(Patient.id == patient_id, Patient.tenant_id == ctx.tenant_id)
            .first()
        )
        if patient is None:
            raise DomainError(PATIENT_NOT_FOUND, "Patient not found in tenant")

        started = started_at or utcnow()
        seq = next_sequence_value(
            session,
            EncounterSequence,
            tenant_id=ctx.tenant_id,
            encounter_type=encounter_type.value,
            year=started.year,
        )
        encounter = Encounter(
            tenant_id=ctx.tenant_id,
            patient_id=patient.id,
            type=encounter_type.value,
            status=EncounterStatus.CREATED.value,
            encounter_code=f"{encounter_type.value}-{started.year}-{seq:06d}",
            started_at=started,
        )
        session.add(encounter)
        session.flush()
        write_audit_event(
            session,
            ctx,
            event_type="encounter.created",
            entity_type="encounter",
            entity_id=encounter.id,
            payload=build_audit_payload(
                ctx, encounter_id=encounter.id, next_status=EncounterStatus.CREATED
            ),
        )
        session.flush()
        session.refresh(encounter)
        logger.info("Created encounter %s (%s)", encounter.id, encounter.encounter_code)
        return to_encounter_response(encounter)


def list_encounters(
    ctx: RequestContext,
    page: int = 1,
    patient_id: str | None = None,
    encounter_type: EncounterType | None = None,
    status: EncounterStatus | None = None,
) -> EncounterListResponse:
    page = max(page, 1)
    with get_session() as session:
        query = session.query(Encounter).filter(Encounter.tenant_id == ctx.tenant_id)
        if patient_id:
            query = query.filter(Encounter.patient_id == patient_id)
        if encounter_type:
            query = query.filter(Encounter.type == encounter_type.value)
        if status:
            query = query.filter(Encounter.status == status.value)
        total = query.count()
        encounters = (
            query.order_by(Encounter.created_at.desc(), Encounter.id.desc())
            .offset((page - 1) * PAGE_SIZE)
            .limit(PAGE_SIZE)
            .all()
        )
        lab_ids = [e.id for e in encounters if e.type == EncounterType.LAB.value]
        statuses, rendered = lab_snapshot(session, ctx, lab_ids)
        return EncounterListResponse(
            data=[to_encounter_response(e, statuses.get(e.id), e.id in rendered) for e in encounters],
            total=total,
            page=page,
            page_size=PAGE_SIZE,
        )


def get_encounter(ctx: RequestContext, encounter_id: str) -> EncounterResponse:
    with get_session() as session:
        encounter = load_encounter(session, ctx, encounter_id)
        return project_encounter(session, ctx, encounter)


def start_prep(ctx: RequestContext, encounter_id: str, idempotency_key: str | None = None) -> EncounterResponse:
    return _run_transition(
        ctx,
        encounter_id,
        expected=EncounterStatus.CREATED,
        next_status=EncounterStatus.PREP,
        reason=START_PREP_REASON,
        idempotency_key=idempotency_key,
    )


def start_main(ctx: RequestContext, encounter_id: str, idempotency_key: str | None = None) -> EncounterResponse:
    return _run_transition(
        ctx,
        encounter_id,
        expected=EncounterStatus.PREP,
        next_status=EncounterStatus.IN_PROGRESS,
        reason=START_MAIN_REASON,
        idempotency_key=idempotency_key,
        guard=_start_main_gate,
    )


def finalize(ctx: RequestContext, encounter_id: str, idempotency_key: str | None = None) -> EncounterResponse:
    return _run_transition(
        ctx,
        encounter_id,
        expected=EncounterStatus.IN_PROGRESS,
        next_status=EncounterStatus.FINALIZED,
        reason=FINALIZE_REASON,
        idempotency_key=idempotency_key,
        mark_ended_at=True,
        guard=_finalize_gate,
    )


# ── Prep / main records ──────────────────────────────────────────────────


def _load_prep_record(session: Session, ctx: RequestContext, encounter_id: str):
    row = (
        session.query(EncounterPrep)
        .filter(EncounterPrep.tenant_id == ctx.tenant_id, EncounterPrep.encounter_id == encounter_id)
        .first()
    )
    return load_prep(row.data_json) if row else None


def _load_main_record(session: Session, ctx: RequestContext, encounter_id: str):
    row = (
        session.query(EncounterMain)
        .filter(EncounterMain.tenant_id == ctx.tenant_id, EncounterMain.encounter_id == encounter_id)
        .first()
    )
    return load_main(row.data_json) if row else None


def _assert_record_type(encounter: Encounter, record, stage: str) -> None:
    if record.type != encounter.type:
        raise DomainError(
            INVALID_ENCOUNTER_TYPE,
            f"{record.type} {stage} cannot be saved on a {encounter.type} encounter",
            {"encounter_type": encounter.type, "record_type": record.type},
        )


def _save_record(session: Session, ctx: RequestContext, model, encounter: Encounter, record):
    row = (
        session.query(model)
        .filter(model.tenant_id == ctx.tenant_id, model.encounter_id == encounter.id)
        .first()
    )
    data = record.model_dump(mode="json")
    if row is None:
        row = model(
            tenant_id=ctx.tenant_id,
            encounter_id=encounter.id,
            encounter_type=encounter.type,
            data_json=data,
        )
        session.add(row)
    else:
        row.data_json = data
        row.updated_at = utcnow()
    session.flush()
    return row


def _record_response(encounter: Encounter, row, record) -> EncounterRecordResponse:
    return EncounterRecordResponse(
        encounter_id=encounter.id,
        type=encounter.type,
        data=record.fields() if record is not None else None,
        updated_at=iso_utc(row.updated_at) if row is not None else None,
    )


def _save_stage(
    ctx: RequestContext,
    encounter_id: str,
    record,
    *,
    stage: str,
    model,
    allowed_statuses: list[EncounterStatus],
    reason: str,
    idempotency_key: str | None,
) -> EncounterRecordResponse:
    try:
        with get_session() as session:
            encounter = load_encounter(session, ctx, encounter_id)
            _assert_record_type(encounter, record, stage)
            lock_encounter_for_write(session, ctx, encounter, allowed_statuses, reason)
            row = _save_record(session, ctx, model, encounter, record)
            write_audit_event(
                session,
                ctx,
                event_type=f"encounter.{stage}_saved",
                entity_type="encounter",
                entity_id=encounter.id,
                payload=build_audit_payload(
                    ctx,
                    encounter_id=encounter.id,
                    idempotency_key=idempotency_key,
                    prev_status=encounter.status,
                    next_status=encounter.status,
                ),
            )
            return _record_response(encounter, row, record)
    except DomainError as exc:
        record_blocked_attempt(
            ctx,
            exc,
            event_type=f"encounter.{stage}_save_blocked",
            entity_type="encounter",
            entity_id=encounter_id,
            encounter_id=encounter_id,
            idempotency_key=idempotency_key,
        )
        raise


def save_prep(
    ctx: RequestContext, encounter_id: str, prep, idempotency_key: str | None = None
) -> EncounterRecordResponse:
    return _save_stage(
        ctx,
        encounter_id,
        prep,
        stage="prep",
        model=EncounterPrep,
        allowed_statuses=[s for s in EncounterStatus if s.value not in CLOSED_STATUSES],
        reason="Cannot change preparation after finalize",
        idempotency_key=idempotency_key,
    )


def save_main(
    ctx: RequestContext, encounter_id: str, main, idempotency_key: str | None = None
) -> EncounterRecordResponse:
    return _save_stage(
        ctx,
        encounter_id,
        main,
        stage="main",
        model=EncounterMain,
        allowed_statuses=[EncounterStatus.IN_PROGRESS],
        reason="Main phase can only be saved while encounter is IN_PROGRESS",
        idempotency_key=idempotency_key,
    )


def get_prep(ctx: RequestContext, encounter_id: str) -> EncounterRecordResponse:
    with get_session() as session:
        encounter = load_encounter(session, ctx, encounter_id)
        row = (
            session.query(EncounterPrep)
            .filter(EncounterPrep.tenant_id == ctx.tenant_id, EncounterPrep.encounter_id == encounter.id)
            .first()
        )
        return _record_response(encounter, row, load_prep(row.data_json) if row else None)


def get_main(ctx: RequestContext, encounter_id: str) -> EncounterRecordResponse:
    with get_session() as session:
        encounter = load_encounter(session, ctx, encounter_id)
        row = (
            session.query(EncounterMain)
            .filter(EncounterMain.tenant_id == ctx.tenant_id, EncounterMain.encounter_id == encounter.id)
            .first()
        )
        return _record_response(encounter, row, load_main(row.data_json) if row else None)
