from __future__ import annotations

from datetime import datetime
from typing import List

from pydantic import BaseModel, Field

from vision.decision import DecisionState
from vision.errors import FailureReport
from vision.history import ConfidenceSample

from .logging_utils import DiagnosticRecord
from .session import SessionSnapshot


class DecisionStateModel(BaseModel):
    label: str
    confidence_percent: int = Field(..., ge=0, le=100)
    status: str


class ConfidenceSampleModel(BaseModel):
    timestamp: float = Field(..., description="Monotonic seconds at acceptance")
    value: float = Field(..., ge=0.0, le=100.0)


class FailureModel(BaseModel):
    stage: str
    message: str
    fatal: bool
    occurred_at: datetime


class SnapshotResponse(BaseModel):
    status: str
    state: DecisionStateModel
    history: List[ConfidenceSampleModel] = Field(default_factory=list)
    cycles: int = 0
    accepted: int = 0
    rejected: int = 0
    skipped: int = 0
    suppressed: int = 0
    last_failure: FailureModel | None = None


class LifecycleResponse(BaseModel):
    status: str
    running: bool


class DiagnosticModel(BaseModel):
    logged_at: datetime
    level: str
    logger: str
    message: str


def state_model(state: DecisionState) -> DecisionStateModel:
    return DecisionStateModel(
        label=state.label,
        confidence_percent=state.confidence_percent,
        status=state.status.value,
    )


def sample_models(history: tuple[ConfidenceSample, ...]) -> list[ConfidenceSampleModel]:
    return [ConfidenceSampleModel(timestamp=s.timestamp, value=s.value) for s in history]


def failure_model(report: FailureReport | None) -> FailureModel | None:
    if report is None:
        return None
    return FailureModel(
        stage=report.stage.value,
        message=report.message,
        fatal=report.fatal,
        occurred_at=report.occurred_at,
    )


def snapshot_response(snapshot: SessionSnapshot) -> SnapshotResponse:
    return SnapshotResponse(
        status=snapshot.status.value,
        state=state_model(snapshot.state),
        history=sample_models(snapshot.history),
        cycles=snapshot.cycles,
        accepted=snapshot.accepted,
        rejected=snapshot.rejected,
        skipped=snapshot.skipped,
        suppressed=snapshot.suppressed,
        last_failure=failure_model(snapshot.last_failure),
    )


def diagnostic_models(records: list[DiagnosticRecord]) -> list[DiagnosticModel]:
    return [
        DiagnosticModel(
            logged_at=r.logged_at, level=r.level, logger=r.logger, message=r.message
        )
        for r in records
    ]


__all__ = [
    "ConfidenceSampleModel",
    "DecisionStateModel",
    "DiagnosticModel",
    "FailureModel",
    "LifecycleResponse",
    "SnapshotResponse",
    "diagnostic_models",
    "sample_models",
    "snapshot_response",
    "state_model",
]
