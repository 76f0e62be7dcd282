from __future__ import annotations

from dataclasses import dataclass
from typing import TYPE_CHECKING, Protocol, Sequence

if TYPE_CHECKING:  # pragma: no cover - typing only
    from device.capture import Frame

# Top picks below this probability are shown as "scanning".
DEFAULT_ACCEPTANCE_THRESHOLD: float = 0.65

# Category the model uses for "no recognizable object".
DEFAULT_REJECT_CATEGORY: str = "Others"


@dataclass(frozen=True)
class Prediction:
    category: str
    probability: float


ClassificationResult = Sequence[Prediction]


class Classifier(Protocol):
    def classify(self, frame: "Frame") -> ClassificationResult: ...


def predictions_from_pairs(pairs: Sequence[tuple[str, float]]) -> tuple[Prediction, ...]:
    """Build a result from ``(category, probability)`` pairs, keeping their order."""
    return tuple(Prediction(category=str(name), probability=float(p)) for name, p in pairs)


__all__ = [
    "Classifier",
    "ClassificationResult",
    "Prediction",
    "predictions_from_pairs",
    "DEFAULT_ACCEPTANCE_THRESHOLD",
    "DEFAULT_REJECT_CATEGORY",
]
