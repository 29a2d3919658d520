from __future__ import annotations

from datetime import datetime
from typing import List, Optional

from pydantic import BaseModel, Field


class DiffRequest(BaseModel):
    desired: str = Field(..., description="Schema source the database should end up matching.")
    current: Optional[str] = Field(
        default=None,
        description="Schema source to diff from; defaults to the model reconstructed from history.",
    )


class PlanRequest(BaseModel):
    source: str = Field(..., description="Desired schema source.")
    phased: Optional[bool] = None
    skip_drift_check: bool = Field(
        default=False,
        description="Plan without comparing the live schema with history when the target can be introspected.",
    )
    label: str = "migration"


class ApplyRequest(PlanRequest):
    confirm_data_loss: bool = False


class OperationRead(BaseModel):
    kind: str
    description: str
    inverse: str
    tables: List[str] = Field(default_factory=list)
    tier: Optional[str] = None


class BackfillRequirementRead(BaseModel):
    table: str
    column: str
    predicate: str
    expected_violations: int = 0
    verification_query: str


class UnitRead(BaseModel):
    identifier: str
    sequence: int
    label: str
    phase: Optional[str] = None
    checksum: str
    prerequisite: Optional[str] = None
    operations: List[OperationRead] = Field(default_factory=list)
    backfill: Optional[BackfillRequirementRead] = None


class DiffResponse(BaseModel):
    operations: List[OperationRead] = Field(default_factory=list)


class PlanResponse(BaseModel):
    base_checksum: str
    target_checksum: str
    phased: bool
    has_data_loss: bool
    operations: List[OperationRead] = Field(default_factory=list)
    units: List[UnitRead] = Field(default_factory=list)


class ApplyResponse(BaseModel):
    result_code: int
    result: str
    applied: List[str] = Field(default_factory=list)
    awaiting: Optional[str] = None


class RecordRead(BaseModel):
    unit_id: str
    sequence: int
    label: str
    phase: Optional[str] = None
    checksum: str
    status: str
    recorded_at: Optional[datetime] = None
    error_detail: Optional[str] = None
    completed_operations: int = 0
    resolved: bool = False


class DriftRead(BaseModel):
    expected_checksum: str
    actual_checksum: str
    differences: List[str] = Field(default_factory=list)


class StatusResponse(BaseModel):
    result_code: int
    result: str
    records: List[RecordRead] = Field(default_factory=list)
    pending: List[UnitRead] = Field(default_factory=list)
    blocking: Optional[RecordRead] = None
    drift: Optional[DriftRead] = None


class BackfillAcknowledgeRequest(BaseModel):
    remaining_violations: Optional[int] = Field(
        default=None,
        ge=0,
        description="Rows still violating the requirement; measured on the target when omitted.",
    )
    checksum: Optional[str] = None
    note: Optional[str] = None


class NoteRequest(BaseModel):
    note: Optional[str] = None


class UnitStatusResponse(BaseModel):
    unit_id: str
    status: str


class DriftAcknowledgeResponse(BaseModel):
    acknowledged: bool
    drift: Optional[DriftRead] = None
