from __future__ import annotations

import logging
import math
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Callable

from .history import ConfidenceSample
from .types import (
    DEFAULT_ACCEPTANCE_THRESHOLD,
    DEFAULT_REJECT_CATEGORY,
    ClassificationResult,
    Prediction,
)

logger = logging.getLogger(__name__)

PENDING_LABEL = "Initializing..."
SCANNING_LABEL = "Scanning..."
ERROR_LABEL = "Error Loading Model"


class DecisionStatus(str, Enum):
    PENDING = "pending"
    SCANNING = "scanning"
    CLASSIFIED = "classified"
    ERROR = "error"


@dataclass(frozen=True)
class DecisionState:
    label: str
    confidence_percent: int
    status: DecisionStatus

    @classmethod
    def pending(cls) -> "DecisionState":
        return cls(label=PENDING_LABEL, confidence_percent=0, status=DecisionStatus.PENDING)

    @classmethod
    def error(cls, label: str = ERROR_LABEL) -> "DecisionState":
        return cls(label=label, confidence_percent=0, status=DecisionStatus.ERROR)

    @property
    def accepted(self) -> bool:
        return self.status is DecisionStatus.CLASSIFIED


@dataclass(frozen=True)
class Decision:
    state: DecisionState
    sample: ConfidenceSample | None = None


def select_top_pick(result: ClassificationResult) -> Prediction:
    """Return the most probable prediction.

    Ties keep the earliest entry in category-declaration order. Non-finite
    probabilities raise ``ValueError``.
    """
    top: Prediction | None = None
    for prediction in result:
        if not math.isfinite(prediction.probability):
            raise ValueError(
                f"Non-finite probability {prediction.probability!r} for {prediction.category!r}"
            )
        if top is None or prediction.probability > top.probability:
            top = prediction
    if top is None:
        raise ValueError("Classification result contained no predictions")
    return top


def to_percent(probability: float) -> int:
    # half-up rounding; round() would send 82.5 to 82
    percent = int(math.floor(probability * 100.0 + 0.5))
    return max(0, min(100, percent))


@dataclass
class DecisionEngine:
    """Turn one classification result into the displayed state.

    Every call is evaluated from scratch: a result is rejected when its top
    pick is the reject category or falls below ``acceptance_threshold``.
    Only accepted results produce a confidence sample.
    """

    acceptance_threshold: float = DEFAULT_ACCEPTANCE_THRESHOLD
    reject_category: str = DEFAULT_REJECT_CATEGORY
    scanning_label: str = SCANNING_LABEL
    clock: Callable[[], float] = field(default=time.monotonic, repr=False)

    def __post_init__(self) -> None:
        if not 0.0 <= self.acceptance_threshold <= 1.0:
            raise ValueError(
                f"Acceptance threshold must be within [0, 1], got {self.acceptance_threshold!r}"
            )

    def rejected_state(self) -> DecisionState:
        return DecisionState(
            label=self.scanning_label,
            confidence_percent=0,
            status=DecisionStatus.SCANNING,
        )

    def decide(self, result: ClassificationResult) -> Decision:
        top = select_top_pick(result)
        if top.category == self.reject_category or top.probability < self.acceptance_threshold:
            logger.debug(
                "Rejected top pick category=%s probability=%.4f threshold=%.2f",
                top.category,
                top.probability,
                self.acceptance_threshold,
            )
            return Decision(state=self.rejected_state())

        state = DecisionState(
            label=top.category,
            confidence_percent=to_percent(top.probability),
            status=DecisionStatus.CLASSIFIED,
        )
        sample = ConfidenceSample(timestamp=self.clock(), value=top.probability * 100.0)
        return Decision(state=state, sample=sample)


__all__ = [
    "Decision",
    "DecisionEngine",
    "DecisionState",
    "DecisionStatus",
    "select_top_pick",
    "to_percent",
    "PENDING_LABEL",
    "SCANNING_LABEL",
    "ERROR_LABEL",
]
