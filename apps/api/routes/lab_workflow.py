"""
API route: Lab workflow
"""
from __future__ import annotations

from fastapi import APIRouter, Depends, Query
from pydantic import Field

from apps.api.authz import get_idempotency_key, get_request_context
from apps.api.services import lab_workflow
from packages.shared.models import (
    ApiModel,
    DocumentResponse,
    LabOrderItemListResponse,
    LabOrderItemResponse,
    RequestContext,
    VerificationQueueResponse,
)

router = APIRouter(tags=["lab"])


class AddTestRequest(ApiModel):
    test_id: str


class ResultValue(ApiModel):
    parameter_id: str
    value: str | None = None


class EnterResultsRequest(ApiModel):
    order_item_id: str
    results: list[ResultValue] = Field(min_length=1)


class VerifyResultsRequest(ApiModel):
    order_item_id: str


@router.post("/encounters/{encounter_id}:lab-add-test", response_model=LabOrderItemResponse, status_code=201)
def add_test(
    encounter_id: str,
    req: AddTestRequest,
    ctx: RequestContext = Depends(get_request_context),
    idempotency_key: str | None = Depends(get_idempotency_key),
):
    """Order a catalog test on a LAB encounter."""
    return lab_workflow.add_test_to_encounter(ctx, encounter_id, req.test_id, idempotency_key)


@router.post("/encounters/{encounter_id}:lab-enter-results", response_model=LabOrderItemResponse)
def enter_results(
    encounter_id: str,
    req: EnterResultsRequest,
    ctx: RequestContext = Depends(get_request_context),
    idempotency_key: str | None = Depends(get_idempotency_key),
):
    entries = [lab_workflow.ResultEntry(parameter_id=r.parameter_id, value=r.value) for r in req.results]
    return lab_workflow.enter_results(ctx, encounter_id, req.order_item_id, entries, idempotency_key)


@router.post("/encounters/{encounter_id}:lab-verify", response_model=LabOrderItemResponse)
def verify_results(
    encounter_id: str,
    req: VerifyResultsRequest,
    ctx: RequestContext = Depends(get_request_context),
    idempotency_key: str | None = Depends(get_idempotency_key),
):
    return lab_workflow.verify_results(ctx, encounter_id, req.order_item_id, idempotency_key)


@router.post("/encounters/{encounter_id}:lab-publish", response_model=DocumentResponse)
def publish(
    encounter_id: str,
    ctx: RequestContext = Depends(get_request_context),
    idempotency_key: str | None = Depends(get_idempotency_key),
):
    """Queue the LAB report of a finalized encounter."""
    return lab_workflow.publish_lab_report(ctx, encounter_id, idempotency_key)


@router.get("/encounters/{encounter_id}/lab-tests", response_model=LabOrderItemListResponse)
def list_lab_tests(encounter_id: str, ctx: RequestContext = Depends(get_request_context)):
    return lab_workflow.list_encounter_lab_tests(ctx, encounter_id)


@router.get("/lab/verification-queue", response_model=VerificationQueueResponse)
def verification_queue(
    limit: int = Query(default=lab_workflow.VERIFICATION_QUEUE_DEFAULT_LIMIT, ge=1, le=100),
    ctx: RequestContext = Depends(get_request_context),
):
    return lab_workflow.get_verification_queue(ctx, limit)
