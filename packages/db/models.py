"""
SQLAlchemy ORM models for clinflow persistence.

Every table carries ``tenant_id``; callers always filter on it.
"""
from __future__ import annotations

import uuid
from datetime import datetime, timezone as dt_timezone

from sqlalchemy import (
    Boolean,
    Column,
    Date,
    DateTime,
    Float,
    ForeignKey,
    Index,
    Integer,
    JSON,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import DeclarativeBase, relationship

def _uuid():
    return uuid.uuid4().hex

def utcnow():
    return datetime.now(dt_timezone.utc)

class Base(DeclarativeBase):
    pass


class Patient(Base):
    __tablename__ = "patients"
    __table_args__ = (
        UniqueConstraint("tenant_id", "reg_no", name="uq_patients_tenant_reg_no"),
    )

    id = Column(String(120), primary_key=True, default=_uuid)
    tenant_id = Column(String(120), nullable=False, index=True)
    reg_no = Column(String(32), nullable=False)
    name = Column(String(200), nullable=False)
    dob = Column(Date, nullable=True)
    gender = Column(String(20), nullable=True)
    phone = Column(String(40), nullable=True)
    mrn = Column(String(64), nullable=True)
    created_at = Column(DateTime, default=utcnow)

    encounters = relationship("Encounter", back_populates="patient")


class PatientSequence(Base):
    __tablename__ = "patient_sequences"

    tenant_id = Column(String(120), primary_key=True)
    last_value = Column(Integer, nullable=False, default=0)


class Encounter(Base):
    __tablename__ = "encounters"
    __table_args__ = (
        UniqueConstraint("tenant_id", "encounter_code", name="uq_encounters_tenant_code"),
        Index("ix_encounters_tenant_status", "tenant_id", "status"),
    )

    id = Column(String(120), primary_key=True, default=_uuid)
    tenant_id = Column(String(120), nullable=False, index=True)
    patient_id = Column(String(120), ForeignKey("patients.id"), nullable=False)
    type = Column(String(8), nullable=False)
    status = Column(String(20), nullable=False, default="CREATED")
    encounter_code = Column(String(40), nullable=False)
    started_at = Column(DateTime, nullable=False, default=utcnow)
    ended_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)

    patient = relationship("Patient", back_populates="encounters")
    prep = relationship("EncounterPrep", back_populates="encounter", uselist=False)
    main = relationship("EncounterMain", back_populates="encounter", uselist=False)
    lab_order_items = relationship("LabOrderItem", back_populates="encounter")
    documents = relationship("Document", back_populates="encounter")


class EncounterSequence(Base):
    __tablename__ = "encounter_sequences"

    tenant_id = Column(String(120), primary_key=True)
    encounter_type = Column(String(8), primary_key=True)
    year = Column(Integer, primary_key=True)
    last_value = Column(Integer, nullable=False, default=0)


class EncounterPrep(Base):
    __tablename__ = "encounter_preps"
    __table_args__ = (
        UniqueConstraint("tenant_id", "encounter_id", name="uq_encounter_preps_encounter"),
    )

    id = Column(String(120), primary_key=True, default=_uuid)
    tenant_id = Column(String(120), nullable=False, index=True)
    encounter_id = Column(String(120), ForeignKey("encounters.id"), nullable=False)
    encounter_type = Column(String(8), nullable=False)
    data_json = Column(JSON, nullable=False)
    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)

    encounter = relationship("Encounter", back_populates="prep")


class EncounterMain(Base):
    __tablename__ = "encounter_mains"
    __table_args__ = (
        UniqueConstraint("tenant_id", "encounter_id", name="uq_encounter_mains_encounter"),
    )

    id = Column(String(120), primary_key=True, default=_uuid)
    tenant_id = Column(String(120), nullable=False, index=True)
    encounter_id = Column(String(120), ForeignKey("encounters.id"), nullable=False)
    encounter_type = Column(String(8), nullable=False)
    data_json = Column(JSON, nullable=False)
    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)

    encounter = relationship("Encounter", back_populates="main")


class LabTestDefinition(Base):
    __tablename__ = "lab_test_definitions"
    __table_args__ = (
        UniqueConstraint("tenant_id", "code", name="uq_lab_tests_tenant_code"),
    )

    id = Column(String(120), primary_key=True, default=_uuid)
    tenant_id = Column(String(120), nullable=False, index=True)
    code = Column(String(40), nullable=False)
    name = Column(String(200), nullable=False)
    department = Column(String(100), nullable=False, default="General")
    active = Column(Boolean, nullable=False, default=True)
    created_at = Column(DateTime, default=utcnow)

    parameters = relationship(
        "LabTestParameter",
        back_populates="test",
        order_by="LabTestParameter.display_order",
    )


class LabTestParameter(Base):
    __tablename__ = "lab_test_parameters"

    id = Column(String(120), primary_key=True, default=_uuid)
    tenant_id = Column(String(120), nullable=False, index=True)
    test_id = Column(String(120), ForeignKey("lab_test_definitions.id"), nullable=False)
    name = Column(String(200), nullable=False)
    unit = Column(String(40), nullable=True)
    ref_low = Column(Float, nullable=True)
    ref_high = Column(Float, nullable=True)
    ref_text = Column(String(200), nullable=True)
    display_order = Column(Integer, nullable=False, default=0)
    active = Column(Boolean, nullable=False, default=True)

    test = relationship("LabTestDefinition", back_populates="parameters")


class LabOrderItem(Base):
    __tablename__ = "lab_order_items"
    __table_args__ = (
        UniqueConstraint("tenant_id", "encounter_id", "test_id", name="uq_lab_order_items_encounter_test"),
        Index("ix_lab_order_items_tenant_status", "tenant_id", "status"),
    )

    id = Column(String(120), primary_key=True, default=_uuid)
    tenant_id = Column(String(120), nullable=False, index=True)
    encounter_id = Column(String(120), ForeignKey("encounters.id"), nullable=False)
    test_id = Column(String(120), ForeignKey("lab_test_definitions.id"), nullable=False)
    status = Column(String(20), nullable=False, default="ORDERED")
    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)

    encounter = relationship("Encounter", back_populates="lab_order_items")
    test = relationship("LabTestDefinition")
    results = relationship("LabResultItem", back_populates="order_item")


class LabResultItem(Base):
    __tablename__ = "lab_result_items"
    __table_args__ = (
        UniqueConstraint("tenant_id", "order_item_id", "parameter_id", name="uq_lab_result_items_parameter"),
    )

    id = Column(String(120), primary_key=True, default=_uuid)
    tenant_id = Column(String(120), nullable=False, index=True)
    order_item_id = Column(String(120), ForeignKey("lab_order_items.id"), nullable=False)
    parameter_id = Column(String(120), ForeignKey("lab_test_parameters.id"), nullable=False)
    value = Column(Text, nullable=False, default="")
    value_numeric = Column(Float, nullable=True)
    flag = Column(String(10), nullable=False, default="UNKNOWN")
    entered_by = Column(String(120), nullable=True)
    entered_at = Column(DateTime, nullable=True)
    verified_by = Column(String(120), nullable=True)
    verified_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)

    order_item = relationship("LabOrderItem", back_populates="results")
    parameter = relationship("LabTestParameter")


class Document(Base):
    __tablename__ = "documents"
    __table_args__ = (
        UniqueConstraint(
            "tenant_id",
            "encounter_id",
            "document_type",
            "template_version",
            "payload_hash",
            name="uq_documents_content_address",
        ),
    )

    id = Column(String(120), primary_key=True, default=_uuid)
    tenant_id = Column(String(120), nullable=False, index=True)
    encounter_id = Column(String(120), ForeignKey("encounters.id"), nullable=False)
    document_type = Column(String(40), nullable=False)
    requested_type = Column(String(40), nullable=False)
    status = Column(String(20), nullable=False, default="QUEUED")
    payload_version = Column(Integer, nullable=False, default=1)
    template_version = Column(Integer, nullable=False, default=1)
    payload_json = Column(JSON, nullable=False)
    payload_hash = Column(String(64), nullable=False)
    storage_backend = Column(String(20), nullable=False, default="local")
    storage_key = Column(String(500), nullable=True)
    pdf_hash = Column(String(64), nullable=True)
    error_code = Column(String(64), nullable=True)
    error_message = Column(Text, nullable=True)
    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)
    rendered_at = Column(DateTime, nullable=True)

    encounter = relationship("Encounter", back_populates="documents")


class RenderJob(Base):
    __tablename__ = "render_jobs"

    id = Column(String(300), primary_key=True)
    queue_name = Column(String(64), nullable=False, default="document-render")
    tenant_id = Column(String(120), nullable=False, index=True)
    document_id = Column(String(120), nullable=False)
    status = Column(String(20), nullable=False, default="pending")
    attempts = Column(Integer, nullable=False, default=0)
    max_attempts = Column(Integer, nullable=False, default=5)
    available_at = Column(DateTime, nullable=False, default=utcnow)
    claimed_at = Column(DateTime, nullable=True)
    heartbeat_at = Column(DateTime, nullable=True)
    worker_id = Column(String(120), nullable=True)
    last_error = Column(Text, nullable=True)
    created_at = Column(DateTime, default=utcnow)


class AuditEvent(Base):
    __tablename__ = "audit_events"
    __table_args__ = (
        Index("ix_audit_events_tenant_entity", "tenant_id", "entity_type", "entity_id"),
    )

    id = Column(String(120), primary_key=True, default=_uuid)
    tenant_id = Column(String(120), nullable=False)
    actor_user_id = Column(String(120), nullable=True)
    event_type = Column(String(80), nullable=False)
    entity_type = Column(String(40), nullable=False)
    entity_id = Column(String(120), nullable=False)
    payload_json = Column(JSON, nullable=False)
    correlation_id = Column(String(120), nullable=True)
    created_at = Column(DateTime, default=utcnow)
