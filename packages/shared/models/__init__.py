from .clinical import (
    BbMain,
    BbPrep,
    IpdMain,
    IpdPrep,
    LabMain,
    LabPrep,
    MainRecord,
    OpdMain,
    OpdPrep,
    PrepRecord,
    RadMain,
    RadPrep,
    load_main,
    load_prep,
)
from .common import ApiModel, RequestContext, iso_utc
from .domain import (
    DocumentResponse,
    EncounterListResponse,
    EncounterRecordResponse,
    EncounterResponse,
    LabOrderItemListResponse,
    LabOrderItemResponse,
    LabResultResponse,
    PatientResponse,
    VerificationQueueItem,
    VerificationQueueResponse,
)
from .enums import (
    DocumentStatus,
    DocumentType,
    EncounterStatus,
    EncounterType,
    LabEncounterStatus,
    LabOrderItemStatus,
    LabResultFlag,
    RenderJobStatus,
)
