"""
Content-addressed document pipeline.

A document is identified by (tenant, encounter, stored type, template version,
payload hash). Requesting the same clinical content any number of times,
concurrently or not, yields one row and at most one render job.
"""
from __future__ import annotations

import logging

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from apps.api.services.audit import build_audit_payload, record_blocked_attempt, write_audit_event
from apps.api.services.document_payload import build_document_payload, load_encounter_snapshot
from packages.db.database import get_session
from packages.db.models import Document, utcnow
from packages.db.render_queue import RenderQueue, render_queue
from packages.shared import storage
from packages.shared.document_types import (
    DEFAULT_PAYLOAD_VERSION,
    DEFAULT_TEMPLATE_VERSION,
    assert_document_type_for_encounter,
    parse_document_type,
    requested_type_from_payload,
    template_key_from_payload,
    to_stored_document_type,
)
from packages.shared.errors import (
    DOCUMENT_NOT_RENDERED,
    ENCOUNTER_STATE_INVALID,
    DomainError,
    NotFoundError,
)
from packages.shared.hashing import payload_hash as compute_payload_hash
from packages.shared.models import (
    DocumentResponse,
    DocumentStatus,
    DocumentType,
    EncounterStatus,
    RequestContext,
    iso_utc,
)

logger = logging.getLogger(__name__)

DOCUMENT_READY_STATUSES = (EncounterStatus.FINALIZED.value, EncounterStatus.DOCUMENTED.value)


def to_document_response(document: Document) -> DocumentResponse:
    requested = requested_type_from_payload(document.payload_json, document.requested_type)
    return DocumentResponse(
        id=document.id,
        encounter_id=document.encounter_id,
        type=requested,
        template_key=template_key_from_payload(document.payload_json, requested),
        status=document.status,
        payload_version=document.payload_version,
        template_version=document.template_version,
        payload_hash=document.payload_hash,
        pdf_hash=document.pdf_hash,
        storage_key=document.storage_key,
        error_code=document.error_code,
        error_message=document.error_message,
        created_at=iso_utc(document.created_at),
        rendered_at=iso_utc(document.rendered_at),
    )


def _find_document(
    session: Session,
    ctx: RequestContext,
    encounter_id: str,
    stored_type: str,
    template_version: int,
    payload_hash: str,
) -> Document | None:
    return (
        session.query(Document)
        .filter(
            Document.tenant_id == ctx.tenant_id,
            Document.encounter_id == encounter_id,
            Document.document_type == stored_type,
            Document.template_version == template_version,
            Document.payload_hash == payload_hash,
        )
        .populate_existing()
        .first()
    )


def _reset_failed(
    session: Session, ctx: RequestContext, document: Document, payload: dict, document_type: DocumentType
) -> bool:
    """Guarded FAILED -> QUEUED. False when another request got there first."""
    rows_updated = (
        session.query(Document)
        .filter(
            Document.id == document.id,
            Document.tenant_id == ctx.tenant_id,
            Document.status == DocumentStatus.FAILED.value,
        )
        .update(
            {
                "status": DocumentStatus.QUEUED.value,
                "requested_type": document_type.value,
                "payload_json": payload,
                "payload_version": DEFAULT_PAYLOAD_VERSION,
                "error_code": None,
                "error_message": None,
                "rendered_at": None,
                "pdf_hash": None,
                "storage_key": None,
                "updated_at": utcnow(),
            },
            synchronize_session=False,
        )
    )
    session.refresh(document)
    return rows_updated == 1


def queue_document_in_session(
    session: Session,
    ctx: RequestContext,
    encounter_id: str,
    document_type: DocumentType,
    queue: RenderQueue | None = None,
) -> tuple[Document, bool]:
    """
    Build, hash and dedup a document inside the caller's transaction.
    Returns the document and whether this call enqueued a render job.
    """
    queue = queue or render_queue
    snapshot = load_encounter_snapshot(session, ctx, encounter_id)
    encounter = snapshot.encounter
    assert_document_type_for_encounter(document_type, encounter.type)
    if encounter.status not in DOCUMENT_READY_STATUSES:
        raise DomainError(
            ENCOUNTER_STATE_INVALID,
            "Documents can only be generated for finalized encounters",
            {"current_status": encounter.status},
        )

    template_version = DEFAULT_TEMPLATE_VERSION
    payload = build_document_payload(
        snapshot,
        document_type,
        payload_version=DEFAULT_PAYLOAD_VERSION,
        template_version=template_version,
    )
    content_hash = compute_payload_hash(payload)
    stored_type = to_stored_document_type(document_type)

    fresh_queued = False
    document = _find_document(session, ctx, encounter.id, stored_type, template_version, content_hash)
    if document is None:
        candidate = Document(
            tenant_id=ctx.tenant_id,
            encounter_id=encounter.id,
            document_type=stored_type,
            requested_type=document_type.value,
            status=DocumentStatus.QUEUED.value,
            payload_version=DEFAULT_PAYLOAD_VERSION,
            template_version=template_version,
            payload_json=payload,
            payload_hash=content_hash,
            storage_backend=storage.STORAGE_BACKEND,
        )
        try:
            with session.begin_nested():
                session.add(candidate)
                session.flush()
            document = candidate
            fresh_queued = True
        except IntegrityError:
            logger.info(
                "Concurrent insert for payload %s on encounter %s; using existing row",
                content_hash,
                encounter.id,
            )
            document = _find_document(session, ctx, encounter.id, stored_type, template_version, content_hash)
            if document is None:
                raise
    elif document.status == DocumentStatus.FAILED.value:
        fresh_queued = _reset_failed(session, ctx, document, payload, document_type)
        if fresh_queued:
            logger.info("Re-queued failed document %s", document.id)

    enqueued = False
    if fresh_queued and document.status == DocumentStatus.QUEUED.value:
        enqueued = queue.enqueue(session, ctx.tenant_id, document.id)
    return document, enqueued


def queue_document(
    ctx: RequestContext,
    encounter_id: str,
    document_type: DocumentType | str = DocumentType.ENCOUNTER_SUMMARY,
    idempotency_key: str | None = None,
    queue: RenderQueue | None = None,
) -> DocumentResponse:
    try:
        requested = parse_document_type(document_type)
        with get_session() as session:
            document, enqueued = queue_document_in_session(session, ctx, encounter_id, requested, queue)
            write_audit_event(
                session,
                ctx,
                event_type="document.requested",
                entity_type="document",
                entity_id=document.id,
                payload=build_audit_payload(
                    ctx,
                    encounter_id=encounter_id,
                    idempotency_key=idempotency_key,
                    next_status=document.status,
                    document_id=document.id,
                    document_type=requested.value,
                    payload_hash=document.payload_hash,
                    enqueued=enqueued,
                ),
            )
            return to_document_response(document)
    except DomainError as exc:
        record_blocked_attempt(
            ctx,
            exc,
            event_type="document.request_blocked",
            entity_type="encounter",
            entity_id=encounter_id,
            encounter_id=encounter_id,
            idempotency_key=idempotency_key,
        )
        raise


def _load_document(session: Session, ctx: RequestContext, document_id: str) -> Document:
    document = (
        session.query(Document)
        .filter(Document.id == document_id, Document.tenant_id == ctx.tenant_id)
        .first()
    )
    if document is None:
        raise NotFoundError("Document", document_id)
    return document


def get_document(ctx: RequestContext, document_id: str) -> DocumentResponse:
    with get_session() as session:
        return to_document_response(_load_document(session, ctx, document_id))


def get_document_file(ctx: RequestContext, document_id: str) -> tuple[DocumentResponse, bytes]:
    with get_session() as session:
        document = _load_document(session, ctx, document_id)
        response = to_document_response(document)
    if response.status != DocumentStatus.RENDERED or not response.storage_key:
        raise DomainError(
            DOCUMENT_NOT_RENDERED,
            "Document has not been rendered yet",
            {"status": response.status.value},
        )
    try:
        data = storage.get_pdf(ctx.tenant_id, response.storage_key)
    except FileNotFoundError as exc:
        logger.error("Rendered file for document %s is missing at %s", document_id, response.storage_key)
        raise NotFoundError("DocumentFile", document_id) from exc
    return response, data
