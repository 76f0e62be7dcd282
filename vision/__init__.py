from __future__ import annotations

from .types import Classifier, ClassificationResult, Prediction

__all__ = [
    "Classifier",
    "ClassificationResult",
    "Prediction",
    "DecisionEngine",
    "HistoryWindow",
    "TeachableMachineClassifier",
    "load_classifier",
]


def __getattr__(name: str):
    if name == "DecisionEngine":
        from .decision import DecisionEngine

        return DecisionEngine
    if name == "HistoryWindow":
        from .history import HistoryWindow

        return HistoryWindow
    if name == "TeachableMachineClassifier":
        from .teachable import TeachableMachineClassifier

        return TeachableMachineClassifier
    if name == "load_classifier":
        from .teachable import load_classifier

        return load_classifier
    raise AttributeError(f"module 'vision' has no attribute {name!r}")
