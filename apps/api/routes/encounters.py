"""
API route: Encounters
"""
from __future__ import annotations

from datetime import datetime

from fastapi import APIRouter, Body, Depends, Query

from apps.api.authz import get_idempotency_key, get_request_context
from apps.api.services import encounters as encounter_service
from packages.shared.models import (
    ApiModel,
    EncounterListResponse,
    EncounterRecordResponse,
    EncounterResponse,
    EncounterStatus,
    EncounterType,
    MainRecord,
    PrepRecord,
    RequestContext,
)

router = APIRouter(tags=["encounters"])


class CreateEncounterRequest(ApiModel):
    patient_id: str
    type: EncounterType
    started_at: datetime | None = None


@router.post("/encounters", response_model=EncounterResponse, status_code=201)
def create_encounter(
    req: CreateEncounterRequest,
    ctx: RequestContext = Depends(get_request_context),
):
    """Register an encounter for a patient of the caller's tenant."""
    return encounter_service.create_encounter(ctx, req.patient_id, req.type, req.started_at)


@router.get("/encounters", response_model=EncounterListResponse)
def list_encounters(
    page: int = Query(default=1, ge=1),
    patient_id: str | None = Query(default=None, alias="patientId"),
    type: EncounterType | None = Query(default=None),
    status: EncounterStatus | None = Query(default=None),
    ctx: RequestContext = Depends(get_request_context),
):
    return encounter_service.list_encounters(
        ctx, page=page, patient_id=patient_id, encounter_type=type, status=status
    )


@router.get("/encounters/{encounter_id}", response_model=EncounterResponse)
def get_encounter(encounter_id: str, ctx: RequestContext = Depends(get_request_context)):
    return encounter_service.get_encounter(ctx, encounter_id)


@router.post("/encounters/{encounter_id}:start-prep", response_model=EncounterResponse)
def start_prep(
    encounter_id: str,
    ctx: RequestContext = Depends(get_request_context),
    idempotency_key: str | None = Depends(get_idempotency_key),
):
    return encounter_service.start_prep(ctx, encounter_id, idempotency_key)


@router.post("/encounters/{encounter_id}:start-main", response_model=EncounterResponse)
def start_main(
    encounter_id: str,
    ctx: RequestContext = Depends(get_request_context),
    idempotency_key: str | None = Depends(get_idempotency_key),
):
    return encounter_service.start_main(ctx, encounter_id, idempotency_key)


@router.post("/encounters/{encounter_id}:finalize", response_model=EncounterResponse)
def finalize(
    encounter_id: str,
    ctx: RequestContext = Depends(get_request_context),
    idempotency_key: str | None = Depends(get_idempotency_key),
):
    return encounter_service.finalize(ctx, encounter_id, idempotency_key)


@router.put("/encounters/{encounter_id}/prep", response_model=EncounterRecordResponse)
def save_prep(
    encounter_id: str,
    prep: PrepRecord = Body(...),
    ctx: RequestContext = Depends(get_request_context),
    idempotency_key: str | None = Depends(get_idempotency_key),
):
    return encounter_service.save_prep(ctx, encounter_id, prep, idempotency_key)


@router.get("/encounters/{encounter_id}/prep", response_model=EncounterRecordResponse)
def get_prep(encounter_id: str, ctx: RequestContext = Depends(get_request_context)):
    return encounter_service.get_prep(ctx, encounter_id)


@router.put("/encounters/{encounter_id}/main", response_model=EncounterRecordResponse)
def save_main(
    encounter_id: str,
    main: MainRecord = Body(...),
    ctx: RequestContext = Depends(get_request_context),
    idempotency_key: str | None = Depends(get_idempotency_key),
):
    return encounter_service.save_main(ctx, encounter_id, main, idempotency_key)


@router.get("/encounters/{encounter_id}/main", response_model=EncounterRecordResponse)
def get_main(encounter_id: str, ctx: RequestContext = Depends(get_request_context)):
    return encounter_service.get_main(ctx, encounter_id)
