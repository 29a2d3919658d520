from schemaflow.schemas.migrations import (
    ApplyRequest,
    ApplyResponse,
    BackfillAcknowledgeRequest,
    BackfillRequirementRead,
    DiffRequest,
    DiffResponse,
    DriftAcknowledgeResponse,
    DriftRead,
    NoteRequest,
    OperationRead,
    PlanRequest,
    PlanResponse,
    RecordRead,
    StatusResponse,
    UnitRead,
    UnitStatusResponse,
)

__all__ = [
    "ApplyRequest",
    "ApplyResponse",
    "BackfillAcknowledgeRequest",
    "BackfillRequirementRead",
    "DiffRequest",
    "DiffResponse",
    "DriftAcknowledgeResponse",
    "DriftRead",
    "NoteRequest",
    "OperationRead",
    "PlanRequest",
    "PlanResponse",
    "RecordRead",
    "StatusResponse",
    "UnitRead",
    "UnitStatusResponse",
]
