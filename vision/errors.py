from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum


class FailureStage(str, Enum):
    CAPTURE_INIT = "capture-init"
    MODEL_LOAD = "model-load"
    CAPTURE_REFRESH = "capture-refresh"
    CLASSIFY = "per-frame-classify"


class ClassificationLoopError(Exception):
    """Base class for failures raised by the capture/classify pipeline."""

    stage: FailureStage = FailureStage.CLASSIFY
    fatal: bool = False


class InitializationError(ClassificationLoopError):
    """The loop cannot start. Never retried automatically."""

    fatal = True


class CaptureUnavailableError(InitializationError):
    stage = FailureStage.CAPTURE_INIT


class ModelLoadError(InitializationError):
    stage = FailureStage.MODEL_LOAD


class ClassificationError(ClassificationLoopError):
    """A single classify call failed; only the current cycle is skipped."""

    stage = FailureStage.CLASSIFY


@dataclass(frozen=True)
class FailureReport:
    stage: FailureStage
    message: str
    fatal: bool
    occurred_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    @classmethod
    def from_exception(
        cls,
        exc: BaseException,
        *,
        stage: FailureStage | None = None,
        fatal: bool | None = None,
    ) -> "FailureReport":
        resolved_stage = stage or getattr(exc, "stage", FailureStage.CLASSIFY)
        resolved_fatal = fatal if fatal is not None else bool(getattr(exc, "fatal", False))
        message = str(exc) or type(exc).__name__
        return cls(stage=resolved_stage, message=message, fatal=resolved_fatal)


__all__ = [
    "FailureStage",
    "ClassificationLoopError",
    "InitializationError",
    "CaptureUnavailableError",
    "ModelLoadError",
    "ClassificationError",
    "FailureReport",
]
