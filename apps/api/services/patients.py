"""
Patient registration within a tenant.
"""
from __future__ import annotations

import logging
from datetime import date

from sqlalchemy.orm import Session

from packages.db.models import Patient, PatientSequence
from packages.db.upserts import next_sequence_value
from packages.shared.errors import NotFoundError
from packages.shared.models import PatientResponse, RequestContext, iso_utc

logger = logging.getLogger(__name__)


def to_patient_response(patient: Patient) -> PatientResponse:
    return PatientResponse(
        id=patient.id,
        reg_no=patient.reg_no,
        name=patient.name,
        dob=iso_utc(patient.dob),
        gender=patient.gender,
        phone=patient.phone,
        mrn=patient.mrn,
        created_at=iso_utc(patient.created_at),
    )


def register_patient(
    session: Session,
    ctx: RequestContext,
    *,
    name: str,
    dob: date | None = None,
    gender: str | None = None,
    phone: str | None = None,
    mrn: str | None = None,
) -> PatientResponse:
    seq = next_sequence_value(session, PatientSequence, tenant_id=ctx.tenant_id)
    patient = Patient(
        tenant_id=ctx.tenant_id,
        reg_no=f"REG-{seq:08d}",
        name=name.strip(),
        dob=dob,
        gender=gender,
        phone=phone,
        mrn=mrn,
    )
    session.add(patient)
    session.flush()
    logger.info("Registered patient %s (%s) for tenant %s", patient.id, patient.reg_no, ctx.tenant_id)
    return to_patient_response(patient)


def get_patient(session: Session, ctx: RequestContext, patient_id: str) -> PatientResponse:
    patient = (
        session.query(Patient)
        .filter(Patient.id == patient_id, Patient.tenant_id == ctx.tenant_id)
        .first()
    )
    if patient is None:
        raise NotFoundError("Patient", patient_id)
    return to_patient_response(patient)
