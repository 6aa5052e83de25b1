from enum import Enum


class EncounterType(str, Enum):
    LAB = "LAB"
    RAD = "RAD"
    OPD = "OPD"
    BB = "BB"  # Blood bank
    IPD = "IPD"


class EncounterStatus(str, Enum):
    CREATED = "CREATED"
    PREP = "PREP"
    IN_PROGRESS = "IN_PROGRESS"
    FINALIZED = "FINALIZED"
    DOCUMENTED = "DOCUMENTED"  # Reached only by the render worker


class LabOrderItemStatus(str, Enum):
    ORDERED = "ORDERED"
    RESULTS_ENTERED = "RESULTS_ENTERED"
    VERIFIED = "VERIFIED"


class LabResultFlag(str, Enum):
    LOW = "LOW"
    HIGH = "HIGH"
    NORMAL = "NORMAL"
    UNKNOWN = "UNKNOWN"


class LabEncounterStatus(str, Enum):
    DRAFT = "DRAFT"
    ORDERED = "ORDERED"
    RESULTS_ENTERED = "RESULTS_ENTERED"
    VERIFIED = "VERIFIED"
    PUBLISHED = "PUBLISHED"


class DocumentStatus(str, Enum):
    QUEUED = "QUEUED"
    RENDERED = "RENDERED"
    FAILED = "FAILED"


class DocumentType(str, Enum):
    ENCOUNTER_SUMMARY = "ENCOUNTER_SUMMARY"
    LAB_REPORT = "LAB_REPORT"
    RAD_REPORT = "RAD_REPORT"
    OPD_CLINICAL_NOTE = "OPD_CLINICAL_NOTE"
    BB_TRANSFUSION_NOTE = "BB_TRANSFUSION_NOTE"
    IPD_DISCHARGE_SUMMARY = "IPD_DISCHARGE_SUMMARY"


class RenderJobStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
