"""
API route: Documents
"""
from __future__ import annotations

from fastapi import APIRouter, Depends
from fastapi.responses import Response

from apps.api.authz import get_idempotency_key, get_request_context
from apps.api.services import documents as document_service
from packages.shared.models import ApiModel, DocumentResponse, DocumentType, RequestContext

router = APIRouter(tags=["documents"])


class RequestDocumentRequest(ApiModel):
    document_type: str = DocumentType.ENCOUNTER_SUMMARY.value


@router.post("/encounters/{encounter_id}:document", response_model=DocumentResponse)
def request_document(
    encounter_id: str,
    req: RequestDocumentRequest = RequestDocumentRequest(),
    ctx: RequestContext = Depends(get_request_context),
    idempotency_key: str | None = Depends(get_idempotency_key),
):
    """Queue (or return the existing) document for the encounter's current content."""
    return document_service.queue_document(ctx, encounter_id, req.document_type, idempotency_key)


@router.get("/documents/{document_id}", response_model=DocumentResponse)
def get_document(document_id: str, ctx: RequestContext = Depends(get_request_context)):
    return document_service.get_document(ctx, document_id)


@router.get("/documents/{document_id}/file")
def download_document(document_id: str, ctx: RequestContext = Depends(get_request_context)):
    """Download the rendered PDF."""
    document, data = document_service.get_document_file(ctx, document_id)
    return Response(
        content=data,
        media_type="application/pdf",
        headers={
            "Content-Disposition": f'attachment; filename="{document.type.lower()}_{document.id}.pdf"',
            "X-Document-Sha256": document.pdf_hash or "",
        },
    )
