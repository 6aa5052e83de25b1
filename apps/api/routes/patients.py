"""
API route: Patients
"""
from __future__ import annotations

from datetime import date

from fastapi import APIRouter, Depends
from pydantic import Field
from sqlalchemy.orm import Session

from apps.api.authz import get_request_context
from apps.api.services import patients as patient_service
from packages.db.database import get_db
from packages.shared.models import ApiModel, PatientResponse, RequestContext

router = APIRouter(tags=["patients"])


class CreatePatientRequest(ApiModel):
    name: str = Field(min_length=1, max_length=200)
    dob: date | None = None
    gender: str | None = Field(default=None, max_length=20)
    phone: str | None = Field(default=None, max_length=40)
    mrn: str | None = Field(default=None, max_length=64)


@router.post("/patients", response_model=PatientResponse, status_code=201)
def create_patient(
    req: CreatePatientRequest,
    db: Session = Depends(get_db),
    ctx: RequestContext = Depends(get_request_context),
):
    """Register a patient; the registration number is allocated per tenant."""
    return patient_service.register_patient(
        db,
        ctx,
        name=req.name,
        dob=req.dob,
        gender=req.gender,
        phone=req.phone,
        mrn=req.mrn,
    )


@router.get("/patients/{patient_id}", response_model=PatientResponse)
def get_patient(
    patient_id: str,
    db: Session = Depends(get_db),
    ctx: RequestContext = Depends(get_request_context),
):
    return patient_service.get_patient(db, ctx, patient_id)
