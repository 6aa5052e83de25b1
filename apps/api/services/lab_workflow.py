"""
Lab order workflow: ORDERED -> RESULTS_ENTERED -> VERIFIED per ordered test.

Each command runs in one tenant-scoped transaction and writes its success
audit event inside it. Domain failures are recorded afterwards as "blocked"
audit events.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Iterable

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from apps.api.services.audit import build_audit_payload, record_blocked_attempt, write_audit_event
from apps.api.services.documents import queue_document_in_session, to_document_response
from apps.api.services.encounters import (
    CLOSED_STATUSES,
    lab_snapshot,
    load_encounter,
    lock_encounter_for_write,
)
from packages.db.database import get_session
from packages.db.models import (
    Encounter,
    EncounterPrep,
    LabOrderItem,
    LabResultItem,
    LabTestDefinition,
    LabTestParameter,
    Patient,
    utcnow,
)
from packages.db.render_queue import RenderQueue
from packages.db.upserts import upsert
from packages.shared.errors import (
    ENCOUNTER_STATE_INVALID,
    INVALID_ENCOUNTER_TYPE,
    LAB_ALREADY_VERIFIED,
    LAB_PARAMETER_NOT_FOUND,
    LAB_PUBLISH_BLOCKED_NOT_FINALIZED,
    LAB_RESULTS_INCOMPLETE,
    LAB_RESULTS_LOCKED,
    LAB_RESULTS_NOT_READY,
    LAB_TEST_ALREADY_ORDERED,
    LAB_TEST_NOT_FOUND,
    PREP_INCOMPLETE,
    DomainError,
    NotFoundError,
)
from packages.shared.models import (
    DocumentResponse,
    DocumentType,
    EncounterStatus,
    EncounterType,
    LabOrderItemListResponse,
    LabOrderItemResponse,
    LabOrderItemStatus,
    LabResultFlag,
    LabResultResponse,
    RequestContext,
    VerificationQueueItem,
    VerificationQueueResponse,
    iso_utc,
    load_prep,
)
from packages.shared.utils.lab_status import derive_lab_encounter_status
from packages.shared.utils.reference_range import (
    ReferenceRange,
    build_reference_text,
    compute_flag,
    ensure_single_reference_range_match,
    parse_numeric_value,
)

logger = logging.getLogger(__name__)

SYSTEM_ACTOR = "system"
VERIFICATION_QUEUE_DEFAULT_LIMIT = 50
VERIFICATION_QUEUE_MAX_LIMIT = 100


@dataclass(frozen=True)
class ResultEntry:
    parameter_id: str
    value: str | None


# ── Loading ──────────────────────────────────────────────────────────────


def _load_lab_encounter(session: Session, ctx: RequestContext, encounter_id: str) -> Encounter:
    encounter = load_encounter(session, ctx, encounter_id)
    if encounter.type != EncounterType.LAB.value:
        raise DomainError(
            INVALID_ENCOUNTER_TYPE,
            "Lab workflow is only available for LAB encounters",
            {"encounter_type": encounter.type},
        )
    return encounter


def _require_in_progress(encounter: Encounter, action: str) -> None:
    if encounter.status != EncounterStatus.IN_PROGRESS.value:
        raise DomainError(
            ENCOUNTER_STATE_INVALID,
            f"Cannot {action} unless encounter is IN_PROGRESS",
            {"current_status": encounter.status},
        )


def _load_order_item(
    session: Session, ctx: RequestContext, encounter_id: str, order_item_id: str
) -> LabOrderItem:
    item = (
        session.query(LabOrderItem)
        .filter(
            LabOrderItem.id == order_item_id,
            LabOrderItem.tenant_id == ctx.tenant_id,
            LabOrderItem.encounter_id == encounter_id,
        )
        .first()
    )
    if item is None:
        raise NotFoundError("LabOrderItem", order_item_id)
    return item


def _reload_order_item(session: Session, ctx: RequestContext, order_item_id: str) -> LabOrderItem:
    return (
        session.query(LabOrderItem)
        .filter(LabOrderItem.id == order_item_id, LabOrderItem.tenant_id == ctx.tenant_id)
        .populate_existing()
        .one()
    )


def _active_parameters(session: Session, ctx: RequestContext, test_id: str) -> list[LabTestParameter]:
    return (
        session.query(LabTestParameter)
        .filter(
            LabTestParameter.tenant_id == ctx.tenant_id,
            LabTestParameter.test_id == test_id,
            LabTestParameter.active.is_(True),
        )
        .order_by(LabTestParameter.display_order, LabTestParameter.name)
        .all()
    )


def _results_by_parameter(
    session: Session, ctx: RequestContext, order_item_id: str
) -> dict[str, LabResultItem]:
    rows = (
        session.query(LabResultItem)
        .filter(LabResultItem.tenant_id == ctx.tenant_id, LabResultItem.order_item_id == order_item_id)
        .populate_existing()
        .all()
    )
    return {row.parameter_id: row for row in rows}


def _reference_candidates(parameter: LabTestParameter) -> list[ReferenceRange]:
    if parameter.ref_low is None and parameter.ref_high is None and not parameter.ref_text:
        return []
    return [
        ReferenceRange(
            id=parameter.id,
            ref_low=parameter.ref_low,
            ref_high=parameter.ref_high,
            ref_text=parameter.ref_text,
        )
    ]


def _missing_parameters(
    parameters: Iterable[LabTestParameter], results: dict[str, LabResultItem]
) -> list[LabTestParameter]:
    missing = []
    for parameter in parameters:
        result = results.get(parameter.id)
        if result is None or not (result.value or "").strip():
            missing.append(parameter)
    return missing


def build_order_item_response(
    session: Session, ctx: RequestContext, item: LabOrderItem
) -> LabOrderItemResponse:
    test = (
        session.query(LabTestDefinition)
        .filter(LabTestDefinition.id == item.test_id, LabTestDefinition.tenant_id == ctx.tenant_id)
        .one()
    )
    results = _results_by_parameter(session, ctx, item.id)
    rows = []
    for parameter in _active_parameters(session, ctx, item.test_id):
        result = results.get(parameter.id)
        reference = ensure_single_reference_range_match(_reference_candidates(parameter))
        rows.append(
            LabResultResponse(
                id=result.id if result else "",
                parameter_id=parameter.id,
                parameter_name=parameter.name,
                unit=parameter.unit,
                reference=build_reference_text(reference),
                value=result.value if result else "",
                value_numeric=result.value_numeric if result else None,
                flag=result.flag if result else LabResultFlag.UNKNOWN,
                entered_by=result.entered_by if result else None,
                entered_at=iso_utc(result.entered_at) if result else None,
                verified_by=result.verified_by if result else None,
                verified_at=iso_utc(result.verified_at) if result else None,
            )
        )
    return LabOrderItemResponse(
        id=item.id,
        encounter_id=item.encounter_id,
        test_id=test.id,
        test_code=test.code,
        test_name=test.name,
        department=test.department or "",
        status=item.status,
        results=rows,
        created_at=iso_utc(item.created_at),
        updated_at=iso_utc(item.updated_at),
    )


# ── add test ─────────────────────────────────────────────────────────────


def _assert_sample_collected(session: Session, ctx: RequestContext, encounter: Encounter) -> None:
    row = (
        session.query(EncounterPrep)
        .filter(EncounterPrep.tenant_id == ctx.tenant_id, EncounterPrep.encounter_id == encounter.id)
        .first()
    )
    prep = load_prep(row.data_json) if row else None
    if prep is None or getattr(prep, "collected_at", None) is None:
        raise DomainError(
            PREP_INCOMPLETE,
            "Sample collection must be recorded before ordering tests",
            {"missing_fields": ["sample_collected_at"]},
        )


def add_test_to_encounter(
    ctx: RequestContext,
    encounter_id: str,
    test_id: str,
    idempotency_key: str | None = None,
) -> LabOrderItemResponse:
    try:
        with get_session() as session:
            encounter = _load_lab_encounter(session, ctx, encounter_id)
            _assert_sample_collected(session, ctx, encounter)
            lock_encounter_for_write(
                session,
                ctx,
                encounter,
                [s for s in EncounterStatus if s.value not in CLOSED_STATUSES],
                "Cannot add tests after encounter is finalized",
            )
            test = (
                session.query(LabTestDefinition)
                .filter(
                    LabTestDefinition.id == test_id,
                    LabTestDefinition.tenant_id == ctx.tenant_id,
                    LabTestDefinition.active.is_(True),
                )
                .first()
            )
            if test is None:
                raise DomainError(LAB_TEST_NOT_FOUND, "Lab test not found", {"test_id": test_id})

            item = LabOrderItem(
                tenant_id=ctx.tenant_id,
                encounter_id=encounter.id,
                test_id=test.id,
                status=LabOrderItemStatus.ORDERED.value,
            )
            try:
                with session.begin_nested():
                    session.add(item)
                    session.flush()
            except IntegrityError as exc:
                raise DomainError(
                    LAB_TEST_ALREADY_ORDERED,
                    "Test is already ordered for this encounter",
                    {"test_id": test.id},
                ) from exc

            for parameter in _active_parameters(session, ctx, test.id):
                session.add(
                    LabResultItem(
                        tenant_id=ctx.tenant_id,
                        order_item_id=item.id,
                        parameter_id=parameter.id,
                        value="",
                        value_numeric=None,
                        flag=LabResultFlag.UNKNOWN.value,
                    )
                )
            write_audit_event(
                session,
                ctx,
                event_type="lims.order.created",
                entity_type="lab_order_item",
                entity_id=item.id,
                payload=build_audit_payload(
                    ctx,
                    encounter_id=encounter.id,
                    order_id=item.id,
                    idempotency_key=idempotency_key,
                    prev_status=None,
                    next_status=LabOrderItemStatus.ORDERED,
                    test_id=test.id,
                ),
            )
            session.flush()
            logger.info("Ordered lab test %s on encounter %s", test.code, encounter.id)
            return build_order_item_response(session, ctx, item)
    except DomainError as exc:
        record_blocked_attempt(
            ctx,
            exc,
            event_type="lims.order.create_blocked",
            entity_type="encounter",
            entity_id=encounter_id,
            encounter_id=encounter_id,
            idempotency_key=idempotency_key,
            next_status=LabOrderItemStatus.ORDERED,
        )
        raise


# ── enter results ────────────────────────────────────────────────────────


def enter_results(
    ctx: RequestContext,
    encounter_id: str,
    order_item_id: str,
    results: list[ResultEntry],
    idempotency_key: str | None = None,
) -> LabOrderItemResponse:
    prev_status = None
    try:
        with get_session() as session:
            encounter = _load_lab_encounter(session, ctx, encounter_id)
            _require_in_progress(encounter, "enter results")
            item = _load_order_item(session, ctx, encounter.id, order_item_id)
            prev_status = item.status
            if item.status == LabOrderItemStatus.VERIFIED.value:
                raise DomainError(LAB_RESULTS_LOCKED, "Cannot edit results after verification")

            parameters = {p.id: p for p in _active_parameters(session, ctx, item.test_id)}
            unknown = sorted({entry.parameter_id for entry in results if entry.parameter_id not in parameters})
            if unknown:
                raise DomainError(
                    LAB_PARAMETER_NOT_FOUND,
                    "Parameter is not active for this test",
                    {"parameter_ids": unknown},
                )

            now = utcnow()
            for entry in results:
                parameter = parameters[entry.parameter_id]
                value = (entry.value or "").strip()
                numeric = parse_numeric_value(value)
                reference = ensure_single_reference_range_match(_reference_candidates(parameter))
                flag = compute_flag(reference, numeric)
                upsert(
                    session,
                    LabResultItem,
                    conflict_columns=["tenant_id", "order_item_id", "parameter_id"],
                    values={
                        "tenant_id": ctx.tenant_id,
                        "order_item_id": item.id,
                        "parameter_id": parameter.id,
                        "value": value,
                        "value_numeric": numeric,
                        "flag": flag.value,
                        "entered_by": ctx.actor_id,
                        "entered_at": now,
                        "verified_by": None,
                        "verified_at": None,
                        "updated_at": now,
                    },
                    update_columns=[
                        "value",
                        "value_numeric",
                        "flag",
                        "entered_by",
                        "entered_at",
                        "verified_by",
                        "verified_at",
                        "updated_at",
                    ],
                )

            stored = _results_by_parameter(session, ctx, item.id)
            all_present = not _missing_parameters(parameters.values(), stored)
            next_status = (
                LabOrderItemStatus.RESULTS_ENTERED if all_present else LabOrderItemStatus.ORDERED
            )
            rows_updated = (
                session.query(LabOrderItem)
                .filter(
                    LabOrderItem.id == item.id,
                    LabOrderItem.tenant_id == ctx.tenant_id,
                    LabOrderItem.status != LabOrderItemStatus.VERIFIED.value,
                )
                .update({"status": next_status.value, "updated_at": now}, synchronize_session=False)
            )
            if rows_updated != 1:
                raise DomainError(LAB_RESULTS_LOCKED, "Cannot edit results after verification")

            write_audit_event(
                session,
                ctx,
                event_type="lims.results.entered",
                entity_type="lab_order_item",
                entity_id=item.id,
                payload=build_audit_payload(
                    ctx,
                    encounter_id=encounter.id,
                    order_id=item.id,
                    idempotency_key=idempotency_key,
                    prev_status=prev_status,
                    next_status=next_status,
                    parameter_ids=[entry.parameter_id for entry in results],
                ),
            )
            session.flush()
            return build_order_item_response(session, ctx, _reload_order_item(session, ctx, item.id))
    except DomainError as exc:
        record_blocked_attempt(
            ctx,
            exc,
            event_type="lims.results.enter_blocked",
            entity_type="lab_order_item",
            entity_id=order_item_id,
            encounter_id=encounter_id,
            order_id=order_item_id,
            idempotency_key=idempotency_key,
            prev_status=prev_status,
            next_status=LabOrderItemStatus.RESULTS_ENTERED,
        )
        raise


# ── verify ───────────────────────────────────────────────────────────────


def _handle_already_verified(session: Session, ctx: RequestContext, order_item_id: str, actor: str) -> None:
    """Same verifier replays successfully; anyone else is told who won."""
    row = (
        session.query(LabResultItem.verified_by, LabResultItem.verified_at)
        .filter(
            LabResultItem.tenant_id == ctx.tenant_id,
            LabResultItem.order_item_id == order_item_id,
            LabResultItem.verified_by.isnot(None),
            LabResultItem.verified_at.isnot(None),
        )
        .order_by(LabResultItem.verified_at.desc())
        .first()
    )
    if row is None:
        raise DomainError(LAB_RESULTS_NOT_READY, "Lab results are not ready for verification")
    verified_by, verified_at = row
    if verified_by == actor:
        return
    raise DomainError(
        LAB_ALREADY_VERIFIED,
        "LAB results already verified by another user",
        {"verified_by": verified_by, "verified_at": iso_utc(verified_at)},
    )


def verify_results(
    ctx: RequestContext,
    encounter_id: str,
    order_item_id: str,
    idempotency_key: str | None = None,
) -> LabOrderItemResponse:
    actor = ctx.actor_id or SYSTEM_ACTOR
    prev_status = None
    try:
        with get_session() as session:
            encounter = _load_lab_encounter(session, ctx, encounter_id)
            _require_in_progress(encounter, "verify results")
            item = _load_order_item(session, ctx, encounter.id, order_item_id)
            prev_status = item.status
            parameters = _active_parameters(session, ctx, item.test_id)

            replay = False
            if item.status == LabOrderItemStatus.VERIFIED.value:
                _handle_already_verified(session, ctx, item.id, actor)
                replay = True
            else:
                if item.status != LabOrderItemStatus.RESULTS_ENTERED.value:
                    raise DomainError(
                        LAB_RESULTS_NOT_READY,
                        "Lab results are not ready for verification",
                        {"current_status": item.status},
                    )
                missing = _missing_parameters(parameters, _results_by_parameter(session, ctx, item.id))
                if missing:
                    raise DomainError(
                        LAB_RESULTS_INCOMPLETE,
                        "All parameters need a value before verification",
                        {"missing": [{"parameter_id": p.id, "parameter_name": p.name} for p in missing]},
                    )

                now = utcnow()
                rows_updated = (
                    session.query(LabOrderItem)
                    .filter(
                        LabOrderItem.id == item.id,
                        LabOrderItem.tenant_id == ctx.tenant_id,
                        LabOrderItem.status == LabOrderItemStatus.RESULTS_ENTERED.value,
                    )
                    .update(
                        {"status": LabOrderItemStatus.VERIFIED.value, "updated_at": now},
                        synchronize_session=False,
                    )
                )
                if rows_updated != 1:
                    # Lost the race; report against whatever state won.
                    current = _reload_order_item(session, ctx, item.id)
                    if current.status != LabOrderItemStatus.VERIFIED.value:
                        raise DomainError(
                            LAB_RESULTS_NOT_READY,
                            "Lab results are not ready for verification",
                            {"current_status": current.status},
                        )
                    _handle_already_verified(session, ctx, item.id, actor)
                    replay = True
                else:
                    session.query(LabResultItem).filter(
                        LabResultItem.tenant_id == ctx.tenant_id,
                        LabResultItem.order_item_id == item.id,
                        LabResultItem.parameter_id.in_([p.id for p in parameters]),
                    ).update(
                        {"verified_by": actor, "verified_at": now, "updated_at": now},
                        synchronize_session=False,
                    )

            write_audit_event(
                session,
                ctx,
                event_type="lims.results.verified",
                entity_type="lab_order_item",
                entity_id=item.id,
                payload=build_audit_payload(
                    ctx,
                    encounter_id=encounter.id,
                    order_id=item.id,
                    idempotency_key=idempotency_key,
                    prev_status=prev_status,
                    next_status=LabOrderItemStatus.VERIFIED,
                    verified_by=actor,
                    replay=replay,
                ),
            )
            session.flush()
            if not replay:
                logger.info("Verified lab order item %s by %s", item.id, actor)
            return build_order_item_response(session, ctx, _reload_order_item(session, ctx, item.id))
    except DomainError as exc:
        record_blocked_attempt(
            ctx,
            exc,
            event_type="lims.results.verify_blocked",
            entity_type="lab_order_item",
            entity_id=order_item_id,
            encounter_id=encounter_id,
            order_id=order_item_id,
            idempotency_key=idempotency_key,
            prev_status=prev_status,
            next_status=LabOrderItemStatus.VERIFIED,
        )
        raise


# ── publish ──────────────────────────────────────────────────────────────


def publish_lab_report(
    ctx: RequestContext,
    encounter_id: str,
    idempotency_key: str | None = None,
    queue: RenderQueue | None = None,
) -> DocumentResponse:
    prev_status = None
    try:
        with get_session() as session:
            encounter = _load_lab_encounter(session, ctx, encounter_id)
            prev_status = encounter.status
            if encounter.status not in CLOSED_STATUSES:
                raise DomainError(
                    LAB_PUBLISH_BLOCKED_NOT_FINALIZED,
                    "Cannot publish LAB report before encounter is finalized",
                    {"current_status": encounter.status},
                )
            document, enqueued = queue_document_in_session(
                session, ctx, encounter.id, DocumentType.LAB_REPORT, queue
            )
            write_audit_event(
                session,
                ctx,
                event_type="lims.report.publish.requested",
                entity_type="encounter",
                entity_id=encounter.id,
                payload=build_audit_payload(
                    ctx,
                    encounter_id=encounter.id,
                    idempotency_key=idempotency_key,
                    prev_status=prev_status,
                    next_status=document.status,
                    document_id=document.id,
                    payload_hash=document.payload_hash,
                    pdf_hash=document.pdf_hash,
                    enqueued=enqueued,
                ),
            )
            return to_document_response(document)
    except DomainError as exc:
        record_blocked_attempt(
            ctx,
            exc,
            event_type="lims.report.publish_blocked",
            entity_type="encounter",
            entity_id=encounter_id,
            encounter_id=encounter_id,
            idempotency_key=idempotency_key,
            prev_status=prev_status,
        )
        raise


# ── reads ────────────────────────────────────────────────────────────────


def list_encounter_lab_tests(ctx: RequestContext, encounter_id: str) -> LabOrderItemListResponse:
    with get_session() as session:
        encounter = _load_lab_encounter(session, ctx, encounter_id)
        items = (
            session.query(LabOrderItem)
            .filter(LabOrderItem.tenant_id == ctx.tenant_id, LabOrderItem.encounter_id == encounter.id)
            .order_by(LabOrderItem.created_at, LabOrderItem.id)
            .all()
        )
        data = [build_order_item_response(session, ctx, item) for item in items]
        return LabOrderItemListResponse(data=data, total=len(data))


def get_verification_queue(
    ctx: RequestContext, limit: int = VERIFICATION_QUEUE_DEFAULT_LIMIT
) -> VerificationQueueResponse:
    limit = min(max(limit, 1), VERIFICATION_QUEUE_MAX_LIMIT)
    with get_session() as session:
        rows = (
            session.query(LabOrderItem, Encounter, Patient, LabTestDefinition)
            .join(Encounter, Encounter.id == LabOrderItem.encounter_id)
            .join(Patient, Patient.id == Encounter.patient_id)
            .join(LabTestDefinition, LabTestDefinition.id == LabOrderItem.test_id)
            .filter(
                LabOrderItem.tenant_id == ctx.tenant_id,
                Encounter.tenant_id == ctx.tenant_id,
                LabOrderItem.status == LabOrderItemStatus.RESULTS_ENTERED.value,
            )
            .order_by(LabOrderItem.updated_at.desc(), LabOrderItem.id)
            .limit(limit)
            .all()
        )
        statuses, rendered = lab_snapshot(session, ctx, {encounter.id for _, encounter, _, _ in rows})
        data = [
            VerificationQueueItem(
                order_item_id=item.id,
                encounter_id=encounter.id,
                encounter_code=encounter.encounter_code,
                encounter_status=encounter.status,
                lab_encounter_status=derive_lab_encounter_status(
                    statuses.get(encounter.id, []), encounter.id in rendered
                ),
                patient_id=patient.id,
                patient_name=patient.name,
                test_code=test.code,
                test_name=test.name,
                status=item.status,
                updated_at=iso_utc(item.updated_at),
            )
            for item, encounter, patient, test in rows
        ]
        return VerificationQueueResponse(data=data, total=len(data))
