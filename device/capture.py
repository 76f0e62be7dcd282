from __future__ import annotations

from dataclasses import dataclass
import pathlib
import time
from typing import Protocol

from PIL import Image, ImageOps, UnidentifiedImageError

from vision.errors import CaptureUnavailableError


@dataclass(frozen=True)
class Frame:
    """Latest RGB image pulled from a capture source."""

    image: Image.Image
    captured_at: float


class CaptureSource(Protocol):
    def initialize(self, width: int, height: int, mirrored: bool) -> None: ...

    def refresh(self) -> None: ...

    def current_frame(self) -> Frame: ...

    def release(self) -> None: ...


class StubCamera:
    """Capture stub that serves a sample image or a flat placeholder."""

    def __init__(
        self,
        sample_path: pathlib.Path | None = None,
        color: tuple[int, int, int] = (128, 128, 128),
    ) -> None:
        self._sample_path = sample_path
        self._color = color
        self._image: Image.Image | None = None
        self._frame: Frame | None = None
        self.refresh_count = 0

    def initialize(self, width: int, height: int, mirrored: bool) -> None:
        if self._sample_path is not None:
            try:
                with Image.open(self._sample_path) as sample:
                    image = sample.convert("RGB")
            except (OSError, UnidentifiedImageError) as exc:
                raise CaptureUnavailableError(
                    f"Unable to read sample image {self._sample_path}: {exc}"
                ) from exc
            image = image.resize((width, height))
        else:
            image = Image.new("RGB", (width, height), self._color)
        self._image = ImageOps.mirror(image) if mirrored else image
        self._frame = Frame(image=self._image, captured_at=time.monotonic())

    def refresh(self) -> None:
        if self._image is None:
            raise RuntimeError("Camera has not been initialized")
        self.refresh_count += 1
        self._frame = Frame(image=self._image, captured_at=time.monotonic())

    def current_frame(self) -> Frame:
        if self._frame is None:
            raise RuntimeError("No frame available; camera has not been initialized")
        return self._frame

    def release(self) -> None:
        self._image = None
        self._frame = None


class OpenCVCamera:
    """Capture frames from an OpenCV-compatible source (USB/RTSP)."""

    _BACKEND_ALIASES = {
        "any": "CAP_ANY",
        "auto": "CAP_ANY",
        "v4l2": "CAP_V4L2",
        "dshow": "CAP_DSHOW",
        "directshow": "CAP_DSHOW",
        "msmf": "CAP_MSMF",
        "mediafoundation": "CAP_MSMF",
        "avfoundation": "CAP_AVFOUNDATION",
        "opencv": "CAP_ANY",
    }

    def __init__(
        self,
        source: int | str = 0,
        *,
        backend: str | int | None = None,
        warmup_frames: int = 2,
    ) -> None:
        self._source = source
        self._backend = backend
        self._warmup_frames = warmup_frames
        self._cv2 = None
        self._cap = None
        self._mirrored = False
        self._frame: Frame | None = None

    def initialize(self, width: int, height: int, mirrored: bool) -> None:
        try:
            import cv2  # type: ignore
        except ImportError as exc:  # pragma: no cover - depends on optional dep
            raise CaptureUnavailableError("opencv-python is required for OpenCVCamera") from exc

        self._cv2 = cv2
        self._mirrored = mirrored
        self._cap = cv2.VideoCapture(self._source, self._resolve_backend(self._backend, cv2))
        if not self._cap.isOpened():
            self._cap = None
            raise CaptureUnavailableError(
                f"Unable to open camera source {self._source!r} (no device or permission denied)"
            )
        self._cap.set(cv2.CAP_PROP_FRAME_WIDTH, float(width))
        self._cap.set(cv2.CAP_PROP_FRAME_HEIGHT, float(height))
        if self._warmup_frames > 0:
            self._warmup(self._warmup_frames)

    def _resolve_backend(self, backend: str | int | None, cv2_module) -> int:
        if backend is None:
            return cv2_module.CAP_ANY
        if isinstance(backend, int):
            return backend
        key = backend.strip().lower()
        attr_name = self._BACKEND_ALIASES.get(key)
        if attr_name is None:
            raise ValueError(f"Unknown OpenCV backend alias: {backend!r}")
        return getattr(cv2_module, attr_name, cv2_module.CAP_ANY)

    def _warmup(self, warmup_frames: int) -> None:
        for _ in range(warmup_frames):
            ok, _ = self._cap.read()
            if not ok:
                break

    def refresh(self) -> None:
        if self._cap is None:
            raise RuntimeError("Camera has not been initialized")
        ok, frame = self._cap.read()
        if not ok or frame is None:
            raise RuntimeError("Failed to capture frame from camera")
        if self._mirrored:
            frame = self._cv2.flip(frame, 1)
        rgb = self._cv2.cvtColor(frame, self._cv2.COLOR_BGR2RGB)
        self._frame = Frame(image=Image.fromarray(rgb), captured_at=time.monotonic())

    def current_frame(self) -> Frame:
        if self._frame is None:
            raise RuntimeError("No frame captured yet")
        return self._frame

    def release(self) -> None:
        if getattr(self, "_cap", None) is not None:
            self._cap.release()
            self._cap = None
        self._frame = None

    def __del__(self) -> None:  # pragma: no cover - destructor best effort
        try:
            self.release()
        except Exception:
            pass


__all__ = ["Frame", "CaptureSource", "StubCamera", "OpenCVCamera"]
