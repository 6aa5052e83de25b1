"""
Render one queued document: payload -> PDF bytes -> storage -> RENDERED.

The final status writes are guarded updates, so a document that is no longer
QUEUED (rendered by a reclaimed job, for instance) is left untouched.
"""
from __future__ import annotations

import logging

from packages.db.database import get_session
from packages.db.models import Document, Encounter, utcnow
from packages.shared import storage
from packages.shared.hashing import sha256_bytes
from packages.shared.models import DocumentStatus, EncounterStatus
from apps.worker.pdf_render import render_document_pdf

logger = logging.getLogger(__name__)

OUTCOME_RENDERED = "rendered"
OUTCOME_SKIPPED = "skipped"
OUTCOME_MISSING = "missing"


def render_document(tenant_id: str, document_id: str) -> str:
    """Render a QUEUED document. Raises on failure so the caller can retry."""
    with get_session() as session:
        document = (
            session.query(Document)
            .filter(Document.id == document_id, Document.tenant_id == tenant_id)
            .first()
        )
        if document is None:
            logger.warning("Document %s not found for tenant %s; dropping job", document_id, tenant_id)
            return OUTCOME_MISSING
        if document.status != DocumentStatus.QUEUED.value:
            logger.info("Document %s is %s; nothing to render", document_id, document.status)
            return OUTCOME_SKIPPED
        payload = dict(document.payload_json)
        payload_hash = document.payload_hash
        encounter_id = document.encounter_id

    pdf_bytes = render_document_pdf(payload)
    pdf_hash = sha256_bytes(pdf_bytes)
    storage_key = storage.put_pdf(tenant_id, document_id, pdf_bytes)

    with get_session() as session:
        now = utcnow()
        rows_updated = (
            session.query(Document)
            .filter(
                Document.id == document_id,
                Document.tenant_id == tenant_id,
                Document.status == DocumentStatus.QUEUED.value,
                Document.payload_hash == payload_hash,
            )
            .update(
                {
                    "status": DocumentStatus.RENDERED.value,
                    "storage_key": storage_key,
                    "pdf_hash": pdf_hash,
                    "rendered_at": now,
                    "error_code": None,
                    "error_message": None,
                    "updated_at": now,
                },
                synchronize_session=False,
            )
        )
        if rows_updated != 1:
            logger.info("Document %s changed while rendering; leaving it as is", document_id)
            return OUTCOME_SKIPPED

        advanced = (
            session.query(Encounter)
            .filter(
                Encounter.id == encounter_id,
                Encounter.tenant_id == tenant_id,
                Encounter.status == EncounterStatus.FINALIZED.value,
            )
            .update(
                {"status": EncounterStatus.DOCUMENTED.value, "updated_at": now},
                synchronize_session=False,
            )
        )
        if advanced:
            logger.info("Encounter %s moved FINALIZED -> DOCUMENTED", encounter_id)

    logger.info("Rendered document %s (%d bytes, sha256=%s)", document_id, len(pdf_bytes), pdf_hash)
    return OUTCOME_RENDERED


def mark_document_failed(tenant_id: str, document_id: str, error_code: str, error_message: str) -> bool:
    with get_session() as session:
        rows_updated = (
            session.query(Document)
            .filter(
                Document.id == document_id,
                Document.tenant_id == tenant_id,
                Document.status == DocumentStatus.QUEUED.value,
            )
            .update(
                {
                    "status": DocumentStatus.FAILED.value,
                    "error_code": error_code,
                    "error_message": error_message[:2000],
                    "updated_at": utcnow(),
                },
                synchronize_session=False,
            )
        )
    if rows_updated:
        logger.error("Document %s marked FAILED: %s", document_id, error_message)
    return rows_updated == 1
