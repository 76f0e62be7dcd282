"""Owned capture -> classify -> decide loop.

A :class:`ClassificationSession` holds the capture source, the loaded
classifier, the displayed :class:`DecisionState` and the confidence
:class:`HistoryWindow`. All mutation happens on the event loop at the end of a
cycle; readers only ever get frozen :class:`SessionSnapshot` objects.

Camera calls (open, refresh, release) run on their own worker thread so a
blocking ``VideoCapture.read()`` never holds up the event loop that also serves
the status API. ``start()`` and ``stop()`` are serialized by a lifecycle lock.

The classifier call runs on a second single worker thread and has no timeout.
A classifier that never returns stalls classification for good: ticks keep
refreshing the camera and are counted as suppressed, but no new request is
issued until the pending one completes.
"""
from __future__ import annotations

import asyncio
import contextlib
import logging
import time
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable

from vision.decision import Decision, DecisionEngine, DecisionState
from vision.errors import (
    CaptureUnavailableError,
    ClassificationLoopError,
    FailureReport,
    FailureStage,
    InitializationError,
    ModelLoadError,
)
from vision.history import DEFAULT_HISTORY_CAPACITY, ConfidenceSample, HistoryWindow
from vision.types import Classifier

from .capture import CaptureSource, Frame

logger = logging.getLogger(__name__)

ClassifierLoader = Callable[[], Classifier]


class SessionStatus(str, Enum):
    IDLE = "idle"
    INITIALIZING = "initializing"
    READY = "ready"
    RUNNING = "running"
    STOPPED = "stopped"
    FAILED = "failed"


@dataclass
class SessionConfig:
    width: int = 400
    height: int = 400
    mirrored: bool = True
    tick_interval: float = 1.0 / 30.0
    history_capacity: int = DEFAULT_HISTORY_CAPACITY


@dataclass(frozen=True)
class SessionSnapshot:
    status: SessionStatus
    state: DecisionState
    history: tuple[ConfidenceSample, ...]
    cycles: int = 0
    accepted: int = 0
    rejected: int = 0
    skipped: int = 0
    suppressed: int = 0
    last_failure: FailureReport | None = None
    published_at: float = 0.0


class ClassificationSession:
    def __init__(
        self,
        capture: CaptureSource,
        loader: ClassifierLoader,
        engine: DecisionEngine | None = None,
        config: SessionConfig | None = None,
    ) -> None:
        self._capture = capture
        self._loader = loader
        self._engine = engine or DecisionEngine()
        self._config = config or SessionConfig()
        self._history = HistoryWindow(self._config.history_capacity)
        self._executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix="classifier")
        self._capture_executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix="capture")
        self._lifecycle = asyncio.Lock()
        self._classifier: Classifier | None = None
        self._state = DecisionState.pending()
        self._status = SessionStatus.IDLE
        self._run_task: asyncio.Task[None] | None = None
        self._inflight: asyncio.Future[None] | None = None
        self._generation = 0
        self._reset_counters()
        self._publish()

    @property
    def status(self) -> SessionStatus:
        return self._status

    @property
    def config(self) -> SessionConfig:
        return self._config

    @property
    def classifying(self) -> bool:
        return self._inflight is not None and not self._inflight.done()

    def snapshot(self) -> SessionSnapshot:
        return self._snapshot

    async def initialize(self) -> None:
        """Load the classifier, then open the camera.

        Raises :class:`InitializationError` after publishing the error state.
        """
        self._generation += 1
        self._status = SessionStatus.INITIALIZING
        self._classifier = None
        self._state = DecisionState.pending()
        self._history.reset()
        self._reset_counters()
        self._publish()

        loop = asyncio.get_running_loop()
        try:
            classifier = await loop.run_in_executor(None, self._loader)
        except InitializationError as exc:
            await self._fail(exc)
            raise
        except Exception as exc:
            error = ModelLoadError(f"Classifier failed to load: {exc}")
            await self._fail(error)
            raise error from exc

        cfg = self._config
        try:
            await self._on_camera(self._capture.initialize, cfg.width, cfg.height, cfg.mirrored)
        except InitializationError as exc:
            await self._fail(exc)
            raise
        except Exception as exc:
            error = CaptureUnavailableError(f"Camera failed to initialize: {exc}")
            await self._fail(error)
            raise error from exc

        self._classifier = classifier
        self._status = SessionStatus.READY
        self._publish()
        logger.info(
            "Session initialized size=%dx%d mirrored=%s history=%d",
            cfg.width,
            cfg.height,
            cfg.mirrored,
            self._history.capacity,
        )

    async def start(self) -> bool:
        """Initialize and schedule the loop. Returns False if initialization failed."""
        async with self._lifecycle:
            if self._run_task is not None and not self._run_task.done():
                return True
            try:
                await self.initialize()
            except InitializationError:
                return False
            self._status = SessionStatus.RUNNING
            self._publish()
            self._run_task = asyncio.create_task(self.run(), name="classification-loop")
            logger.info("Classification loop started tick=%.3fs", self._config.tick_interval)
            return True

    async def run(self) -> None:
        """Tick forever; only cancellation ends the loop."""
        if self._classifier is None:
            raise RuntimeError("Session has not been initialized")
        while True:
            await self.tick()
            await asyncio.sleep(self._config.tick_interval)

    async def tick(self) -> bool:
        """Refresh the camera and launch a classification unless one is pending.

        Returns True when a new classification request was issued.
        """
        if not self._accepting_ticks():
            return False

        generation = self._generation
        try:
            await self._on_camera(self._capture.refresh)
        except Exception as exc:
            if generation == self._generation:
                self._skip_cycle(exc, FailureStage.CAPTURE_REFRESH)
            return False
        if generation != self._generation or not self._accepting_ticks():
            return False
        if self._failing_stage is FailureStage.CAPTURE_REFRESH:
            logger.info("Camera refresh recovered")
            self._failing_stage = None

        if self.classifying:
            self._suppressed += 1
            logger.debug("Classification still pending; tick suppressed")
            self._publish()
            return False

        try:
            frame = self._capture.current_frame()
        except Exception as exc:
            self._skip_cycle(exc, FailureStage.CAPTURE_REFRESH)
            return False

        self._inflight = asyncio.ensure_future(
            self._classify(self._classifier, frame, generation)
        )
        return True

    async def wait_idle(self) -> None:
        inflight = self._inflight
        if inflight is not None and not inflight.done():
            await inflight

    async def stop(self) -> None:
        """Stop scheduling cycles and release the camera.

        Waits for a ``start()`` that is still initializing. A pending
        classification keeps running on its worker thread; its result is
        dropped when it arrives.
        """
        async with self._lifecycle:
            self._generation += 1
            task, self._run_task = self._run_task, None
            if task is not None and not task.done():
                task.cancel()
                with contextlib.suppress(asyncio.CancelledError):
                    await task
            if self._status is not SessionStatus.FAILED:
                self._status = SessionStatus.STOPPED
            self._classifier = None
            await self._release_capture()
            self._publish()
            logger.info("Classification session stopped")

    def close(self) -> None:
        self._executor.shutdown(wait=False)
        self._capture_executor.shutdown(wait=False)

    def _accepting_ticks(self) -> bool:
        return self._classifier is not None and self._status in (
            SessionStatus.READY,
            SessionStatus.RUNNING,
        )

    async def _on_camera(self, func: Callable[..., Any], *args: Any) -> Any:
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(self._capture_executor, func, *args)

    async def _classify(self, classifier: Classifier, frame: Frame, generation: int) -> None:
        loop = asyncio.get_running_loop()
        try:
            result = await loop.run_in_executor(self._executor, classifier.classify, frame)
        except Exception as exc:
            if generation != self._generation:
                logger.debug("Ignoring failure from a stale classification: %s", exc)
                return
            self._skip_cycle(exc, FailureStage.CLASSIFY)
            return

        if generation != self._generation:
            logger.info("Discarding classification that finished after stop")
            return

        try:
            decision = self._engine.decide(result)
        except (ValueError, ArithmeticError) as exc:
            self._skip_cycle(exc, FailureStage.CLASSIFY)
            return
        self._apply(decision)

    def _apply(self, decision: Decision) -> None:
        if self._failing_stage is not None:
            logger.info("Classification recovered after %d skipped cycles", self._skipped)
            self._failing_stage = None
        self._state = decision.state
        self._cycles += 1
        if decision.sample is not None:
            self._history.append(decision.sample)
            self._accepted += 1
        else:
            self._rejected += 1
        self._publish()

    def _skip_cycle(self, exc: BaseException, stage: FailureStage) -> None:
        self._skipped += 1
        self._last_failure = FailureReport.from_exception(exc, stage=stage, fatal=False)
        if stage is self._failing_stage:
            # already reported; a dead camera would otherwise log on every tick
            logger.debug("Skipping cycle stage=%s again: %s", stage.value, exc)
        else:
            self._failing_stage = stage
            if isinstance(exc, ClassificationLoopError):
                logger.warning("Skipping cycle stage=%s: %s", stage.value, exc)
            else:
                logger.warning("Skipping cycle stage=%s", stage.value, exc_info=exc)
        self._publish()

    async def _fail(self, exc: InitializationError) -> None:
        self._status = SessionStatus.FAILED
        self._state = DecisionState.error()
        self._last_failure = FailureReport.from_exception(exc)
        logger.error("Initialization failed stage=%s: %s", exc.stage.value, exc)
        await self._release_capture()
        self._publish()

    async def _release_capture(self) -> None:
        try:
            await self._on_camera(self._capture.release)
        except Exception:
            logger.warning("Failed to release capture source", exc_info=True)

    def _reset_counters(self) -> None:
        self._cycles = 0
        self._accepted = 0
        self._rejected = 0
        self._skipped = 0
        self._suppressed = 0
        self._last_failure: FailureReport | None = None
        self._failing_stage: FailureStage | None = None

    def _publish(self) -> None:
        self._snapshot = SessionSnapshot(
            status=self._status,
            state=self._state,
            history=self._history.snapshot(),
            cycles=self._cycles,
            accepted=self._accepted,
            rejected=self._rejected,
            skipped=self._skipped,
            suppressed=self._suppressed,
            last_failure=self._last_failure,
            published_at=time.monotonic(),
        )


__all__ = [
    "ClassificationSession",
    "ClassifierLoader",
    "SessionConfig",
    "SessionSnapshot",
    "SessionStatus",
]
