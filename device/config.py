"""JSON configuration for the EcoSort device.

Configuration is read from ``config/ecosort.json`` (see
``config/ecosort.example.json``). Every section is optional; missing or
invalid values fall back to defaults with a warning so a half-edited file never
keeps the device from starting. CLI flags override file values.
"""

from __future__ import annotations

import json
import logging
import os
from dataclasses import asdict, dataclass, field
from pathlib import Path
from typing import Any

from vision.assets import DEFAULT_METADATA_FILENAME, DEFAULT_MODEL_FILENAME
from vision.history import DEFAULT_HISTORY_CAPACITY
from vision.types import DEFAULT_ACCEPTANCE_THRESHOLD, DEFAULT_REJECT_CATEGORY

logger = logging.getLogger(__name__)

MODEL_LOCATION_ENV = "ECOSORT_MODEL_LOCATION"


@dataclass
class CameraSettings:
    kind: str = "opencv"
    source: int | str = 0
    backend: str | int | None = None
    width: int = 400
    height: int = 400
    mirrored: bool = True
    warmup_frames: int = 2


@dataclass
class ModelSettings:
    location: str = "models/"
    model_filename: str = DEFAULT_MODEL_FILENAME
    metadata_filename: str = DEFAULT_METADATA_FILENAME
    cache_dir: str | None = None
    fetch_timeout: float = 20.0
    num_threads: int | None = None


@dataclass
class DecisionSettings:
    acceptance_threshold: float = DEFAULT_ACCEPTANCE_THRESHOLD
    reject_category: str = DEFAULT_REJECT_CATEGORY
    scanning_label: str = "Scanning..."


@dataclass
class LoopSettings:
    tick_hz: float = 30.0
    history_capacity: int = DEFAULT_HISTORY_CAPACITY
    autostart: bool = True


@dataclass
class ServerSettings:
    host: str = "127.0.0.1"
    port: int = 8000


@dataclass
class AppConfig:
    camera: CameraSettings = field(default_factory=CameraSettings)
    model: ModelSettings = field(default_factory=ModelSettings)
    decision: DecisionSettings = field(default_factory=DecisionSettings)
    loop: LoopSettings = field(default_factory=LoopSettings)
    server: ServerSettings = field(default_factory=ServerSettings)

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> AppConfig:
        config = cls()
        camera = _section(data, "camera")
        config.camera.kind = _choice(camera, "kind", {"opencv", "stub"}, config.camera.kind)
        config.camera.source = _source(camera.get("source", config.camera.source))
        backend = camera.get("backend")
        config.camera.backend = backend if isinstance(backend, (str, int)) else None
        config.camera.width = _positive_int(camera, "width", config.camera.width)
        config.camera.height = _positive_int(camera, "height", config.camera.height)
        config.camera.mirrored = bool(camera.get("mirrored", config.camera.mirrored))
        config.camera.warmup_frames = _positive_int(
            camera, "warmup_frames", config.camera.warmup_frames, allow_zero=True
        )

        model = _section(data, "model")
        config.model.location = _string(model, "location", config.model.location)
        config.model.model_filename = _string(model, "model_filename", config.model.model_filename)
        config.model.metadata_filename = _string(
            model, "metadata_filename", config.model.metadata_filename
        )
        cache_dir = model.get("cache_dir")
        config.model.cache_dir = cache_dir if isinstance(cache_dir, str) and cache_dir else None
        config.model.fetch_timeout = _positive_float(
            model, "fetch_timeout", config.model.fetch_timeout
        )
        threads = model.get("num_threads")
        config.model.num_threads = threads if isinstance(threads, int) and threads > 0 else None

        decision = _section(data, "decision")
        threshold = _float(decision, "acceptance_threshold", config.decision.acceptance_threshold)
        if not 0.0 <= threshold <= 1.0:
            logger.warning(
                "acceptance_threshold %.3f outside [0, 1]; using %.2f",
                threshold,
                DEFAULT_ACCEPTANCE_THRESHOLD,
            )
            threshold = DEFAULT_ACCEPTANCE_THRESHOLD
        config.decision.acceptance_threshold = threshold
        config.decision.reject_category = _string(
            decision, "reject_category", config.decision.reject_category
        )
        config.decision.scanning_label = _string(
            decision, "scanning_label", config.decision.scanning_label
        )

        loop = _section(data, "loop")
        config.loop.tick_hz = _positive_float(loop, "tick_hz", config.loop.tick_hz)
        config.loop.history_capacity = _positive_int(
            loop, "history_capacity", config.loop.history_capacity
        )
        config.loop.autostart = bool(loop.get("autostart", config.loop.autostart))

        server = _section(data, "server")
        config.server.host = _string(server, "host", config.server.host)
        config.server.port = _positive_int(server, "port", config.server.port)
        return config


def _section(data: dict[str, Any], name: str) -> dict[str, Any]:
    value = data.get(name, {})
    if not isinstance(value, dict):
        logger.warning("Config section '%s' is not an object; using defaults", name)
        return {}
    return value


def _string(section: dict[str, Any], key: str, default: str) -> str:
    value = section.get(key)
    if value is None:
        return default
    if not isinstance(value, str) or not value.strip():
        logger.warning("Config value '%s' must be a non-empty string; using %r", key, default)
        return default
    return value.strip()


def _choice(section: dict[str, Any], key: str, allowed: set[str], default: str) -> str:
    value = _string(section, key, default).lower()
    if value not in allowed:
        logger.warning("Config value '%s'=%r not in %s; using %r", key, value, sorted(allowed), default)
        return default
    return value


def _float(section: dict[str, Any], key: str, default: float) -> float:
    value = section.get(key)
    if value is None:
        return default
    try:
        return float(value)
    except (TypeError, ValueError):
        logger.warning("Config value '%s'=%r is not numeric; using %s", key, value, default)
        return default


def _positive_float(section: dict[str, Any], key: str, default: float) -> float:
    value = _float(section, key, default)
    if value <= 0:
        logger.warning("Config value '%s' must be positive; using %s", key, default)
        return default
    return value


def _positive_int(
    section: dict[str, Any], key: str, default: int, *, allow_zero: bool = False
) -> int:
    value = section.get(key)
    if value is None:
        return default
    try:
        number = int(value)
    except (TypeError, ValueError):
        logger.warning("Config value '%s'=%r is not an integer; using %s", key, value, default)
        return default
    if number < 0 or (number == 0 and not allow_zero):
        logger.warning("Config value '%s'=%d out of range; using %s", key, number, default)
        return default
    return number


def _source(value: Any) -> int | str:
    if isinstance(value, int):
        return value
    text = str(value).strip()
    try:
        return int(text)
    except ValueError:
        return text


def load_config(path: Path | None) -> AppConfig:
    """Load configuration from ``path``; ``None`` or a missing file yields defaults.

    Raises ``ValueError`` when the file exists but is not a JSON object.
    """
    if path is None or not path.exists():
        if path is not None:
            logger.info("No config file at %s; using defaults", path)
        config = AppConfig()
    else:
        try:
            data = json.loads(path.read_text(encoding="utf-8"))
        except json.JSONDecodeError as exc:
            raise ValueError(f"Config file {path} is not valid JSON: {exc}") from exc
        if not isinstance(data, dict):
            raise ValueError(f"Config file {path} must contain a JSON object")
        config = AppConfig.from_dict(data)
        logger.info("Loaded config from %s", path)

    override = os.environ.get(MODEL_LOCATION_ENV)
    if override:
        config.model.location = override.strip()
        logger.info("Model location overridden by %s", MODEL_LOCATION_ENV)
    return config


__all__ = [
    "AppConfig",
    "CameraSettings",
    "DecisionSettings",
    "LoopSettings",
    "ModelSettings",
    "ServerSettings",
    "load_config",
    "MODEL_LOCATION_ENV",
]
