from __future__ import annotations

import hashlib
import logging
import tempfile
from dataclasses import dataclass, field
from pathlib import Path
from urllib.parse import urlparse

import requests

from .errors import ModelLoadError

logger = logging.getLogger(__name__)

# File names used by the Teachable Machine TensorFlow Lite export.
DEFAULT_MODEL_FILENAME = "model_unquant.tflite"
DEFAULT_METADATA_FILENAME = "labels.txt"


@dataclass(frozen=True)
class ModelAssets:
    model_location: str
    metadata_location: str


def is_remote(location: str) -> bool:
    return urlparse(location).scheme in {"http", "https"}


def resolve_model_locations(
    base_location: str,
    model_filename: str = DEFAULT_MODEL_FILENAME,
    metadata_filename: str = DEFAULT_METADATA_FILENAME,
) -> ModelAssets:
    """Join the opaque base location with the model and metadata file names."""
    base = base_location.strip()
    if not base:
        raise ModelLoadError("Model location is empty")
    if is_remote(base):
        prefix = base if base.endswith("/") else f"{base}/"
        return ModelAssets(
            model_location=prefix + model_filename,
            metadata_location=prefix + metadata_filename,
        )
    root = Path(base).expanduser()
    return ModelAssets(
        model_location=str(root / model_filename),
        metadata_location=str(root / metadata_filename),
    )


@dataclass
class AssetFetcher:
    """Make model assets available as local files, downloading remote ones."""

    cache_dir: Path | None = None
    timeout: float = 20.0
    session: requests.Session = field(default_factory=requests.Session)

    def fetch(self, location: str) -> Path:
        if not is_remote(location):
            path = Path(location).expanduser()
            if not path.is_file():
                raise ModelLoadError(f"Model asset not found: {location}")
            return path
        return self._download(location)

    def _download(self, location: str) -> Path:
        cache_dir = self.cache_dir or Path(tempfile.gettempdir()) / "ecosort-models"
        digest = hashlib.sha1(location.encode("utf-8")).hexdigest()[:12]
        name = Path(urlparse(location).path).name or "asset"
        target = cache_dir / f"{digest}_{name}"
        logger.info("Fetching model asset %s", location)
        try:
            response = self.session.get(location, timeout=self.timeout)
            response.raise_for_status()
        except requests.Timeout as exc:
            raise ModelLoadError(f"Timed out fetching model asset {location}") from exc
        except requests.RequestException as exc:
            raise ModelLoadError(f"Failed to fetch model asset {location}: {exc}") from exc
        try:
            cache_dir.mkdir(parents=True, exist_ok=True)
            target.write_bytes(response.content)
        except OSError as exc:
            raise ModelLoadError(f"Failed to cache model asset {location}: {exc}") from exc
        logger.debug("Cached %s at %s (%d bytes)", location, target, len(response.content))
        return target


__all__ = [
    "AssetFetcher",
    "ModelAssets",
    "resolve_model_locations",
    "is_remote",
    "DEFAULT_MODEL_FILENAME",
    "DEFAULT_METADATA_FILENAME",
]
