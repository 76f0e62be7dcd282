"""On-device classifier for Teachable Machine image models.

Loads the TensorFlow Lite export (``model_unquant.tflite`` or the quantized
``model.tflite``) together with its label metadata, either ``labels.txt``
(``"0 paper"`` per line) or the ``metadata.json`` written by the web export
(``{"labels": [...]}``). Label order is the category-declaration order used for
tie-breaking downstream.
"""
from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import Any, Callable

import numpy as np
from PIL import Image, ImageOps

from device.capture import Frame

from .assets import AssetFetcher
from .errors import ClassificationError, ModelLoadError
from .types import Prediction

_RESAMPLE = Image.Resampling.BILINEAR

logger = logging.getLogger(__name__)

InterpreterFactory = Callable[..., Any]


def parse_labels(path: Path) -> list[str]:
    try:
        text = path.read_text(encoding="utf-8")
    except OSError as exc:
        raise ModelLoadError(f"Unable to read model metadata {path}: {exc}") from exc

    if path.suffix.lower() == ".json":
        try:
            payload = json.loads(text)
        except json.JSONDecodeError as exc:
            raise ModelLoadError(f"Model metadata {path} is not valid JSON") from exc
        raw_labels = payload.get("labels") if isinstance(payload, dict) else None
        if not isinstance(raw_labels, list):
            raise ModelLoadError(f"Model metadata {path} has no 'labels' list")
        labels = [str(label).strip() for label in raw_labels]
    else:
        labels = []
        for line in text.splitlines():
            line = line.strip()
            if not line:
                continue
            parts = line.split(maxsplit=1)
            if len(parts) == 2 and parts[0].isdigit():
                line = parts[1].strip()
            labels.append(line)

    if not labels or any(not label for label in labels):
        raise ModelLoadError(f"Model metadata {path} contains no usable labels")
    return labels


def _default_interpreter_factory() -> InterpreterFactory:
    try:
        from tflite_runtime.interpreter import Interpreter  # type: ignore
    except ImportError:
        try:
            from tensorflow.lite.python.interpreter import Interpreter  # type: ignore
        except ImportError as exc:  # pragma: no cover - depends on optional dep
            raise ModelLoadError(
                "tflite-runtime or tensorflow is required to run Teachable Machine models"
            ) from exc
    return Interpreter


class TeachableMachineClassifier:
    """Run a TFLite image classifier over captured frames."""

    def __init__(self, interpreter: Any, labels: list[str]) -> None:
        self._interpreter = interpreter
        self._labels = list(labels)
        self._input = interpreter.get_input_details()[0]
        self._output = interpreter.get_output_details()[0]

        shape = [int(dim) for dim in self._input["shape"]]
        if len(shape) != 4 or shape[-1] != 3:
            raise ModelLoadError(f"Unsupported model input shape {shape}; expected [1, H, W, 3]")
        self._input_size = (shape[2], shape[1])

        output_classes = int(self._output["shape"][-1])
        if output_classes != len(self._labels):
            raise ModelLoadError(
                f"Model predicts {output_classes} classes but metadata lists {len(self._labels)} labels"
            )

    @property
    def labels(self) -> list[str]:
        return list(self._labels)

    @property
    def input_size(self) -> tuple[int, int]:
        return self._input_size

    def classify(self, frame: Frame) -> tuple[Prediction, ...]:
        tensor = self._prepare_input(frame)
        try:
            self._interpreter.set_tensor(self._input["index"], tensor)
            self._interpreter.invoke()
            raw = self._interpreter.get_tensor(self._output["index"])[0]
        except (RuntimeError, ValueError) as exc:
            raise ClassificationError(f"Model inference failed: {exc}") from exc

        scores = np.asarray(raw)
        if self._output.get("dtype") in (np.uint8, np.int8):
            scale, zero_point = self._output.get("quantization", (0.0, 0))
            if scale:
                scores = scale * (scores.astype(np.float32) - zero_point)
        probabilities = scores.astype(np.float64).reshape(-1)

        return tuple(
            Prediction(category=label, probability=float(probabilities[idx]))
            for idx, label in enumerate(self._labels)
        )

    def _prepare_input(self, frame: Frame) -> np.ndarray:
        image = getattr(frame, "image", None)
        if not isinstance(image, Image.Image):
            raise ClassificationError(
                f"Incompatible frame format: expected a PIL image, got {type(image).__name__}"
            )
        if image.mode != "RGB":
            image = image.convert("RGB")
        # Teachable Machine crops the centre square before resizing
        fitted = ImageOps.fit(image, self._input_size, method=_RESAMPLE, centering=(0.5, 0.5))
        pixels = np.asarray(fitted, dtype=np.float32)

        if self._input.get("dtype") == np.uint8:
            tensor = pixels.astype(np.uint8)
        else:
            tensor = (pixels / 127.5) - 1.0
        return np.expand_dims(tensor, axis=0)


def load_classifier(
    model_location: str,
    metadata_location: str,
    *,
    fetcher: AssetFetcher | None = None,
    num_threads: int | None = None,
    interpreter_factory: InterpreterFactory | None = None,
) -> TeachableMachineClassifier:
    fetcher = fetcher or AssetFetcher()
    model_path = fetcher.fetch(model_location)
    metadata_path = fetcher.fetch(metadata_location)
    labels = parse_labels(metadata_path)

    factory = interpreter_factory or _default_interpreter_factory()
    kwargs: dict[str, Any] = {"model_path": str(model_path)}
    if num_threads:
        kwargs["num_threads"] = num_threads
    try:
        interpreter = factory(**kwargs)
        interpreter.allocate_tensors()
    except (RuntimeError, ValueError) as exc:
        raise ModelLoadError(f"Malformed model {model_location}: {exc}") from exc

    classifier = TeachableMachineClassifier(interpreter, labels)
    logger.info(
        "Loaded classifier model=%s labels=%s input=%dx%d",
        model_location,
        ",".join(labels),
        *classifier.input_size,
    )
    return classifier


__all__ = ["TeachableMachineClassifier", "load_classifier", "parse_labels"]
