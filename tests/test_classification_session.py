import asyncio
import threading
import time
import unittest

from device.capture import Frame, StubCamera
from device.session import ClassificationSession, SessionConfig, SessionStatus
from vision.decision import ERROR_LABEL, PENDING_LABEL, DecisionEngine, DecisionStatus
from vision.errors import (
    CaptureUnavailableError,
    ClassificationError,
    FailureStage,
    ModelLoadError,
)
from vision.types import predictions_from_pairs

PAPER = predictions_from_pairs([("paper", 0.9), ("plastic", 0.05), ("metal", 0.05)])
BACKGROUND = predictions_from_pairs([("background", 0.99), ("paper", 0.005), ("metal", 0.005)])
METAL = predictions_from_pairs([("metal", 0.7), ("paper", 0.2), ("plastic", 0.1)])


class _ScriptedClassifier:
    """Returns queued results in order, repeating the last one."""

    def __init__(self, *results) -> None:
        self._results = list(results)
        self.calls = 0

    def classify(self, frame: Frame):
        self.calls += 1
        item = self._results.pop(0) if len(self._results) > 1 else self._results[0]
        if isinstance(item, Exception):
            raise item
        return item


class _GatedClassifier:
    """Blocks inside classify until the test releases it."""

    def __init__(self, result) -> None:
        self.result = result
        self.started = threading.Event()
        self.release = threading.Event()
        self.calls = 0

    def classify(self, frame: Frame):
        self.calls += 1
        self.started.set()
        self.release.wait(5.0)
        return self.result


class _BrokenCamera(StubCamera):
    def initialize(self, width: int, height: int, mirrored: bool) -> None:
        raise CaptureUnavailableError("permission denied")


class _FlakyCamera(StubCamera):
    def __init__(self) -> None:
        super().__init__()
        self.fail_next = False

    def refresh(self) -> None:
        if self.fail_next:
            self.fail_next = False
            raise RuntimeError("Failed to capture frame from camera")
        super().refresh()


class _CountingCamera(StubCamera):
    """Records how often and on which thread the session drives it."""

    def __init__(self) -> None:
        super().__init__()
        self.initialize_count = 0
        self.dead = False
        self.threads: set[int] = set()

    def initialize(self, width: int, height: int, mirrored: bool) -> None:
        self.initialize_count += 1
        self.threads.add(threading.get_ident())
        super().initialize(width, height, mirrored)

    def refresh(self) -> None:
        self.threads.add(threading.get_ident())
        if self.dead:
            raise RuntimeError("Failed to capture frame from camera")
        super().refresh()


def _loop_tasks() -> list[asyncio.Task]:
    return [t for t in asyncio.all_tasks() if t.get_name() == "classification-loop"]


async def _wait_for(predicate, timeout: float = 2.0) -> None:
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not met before timeout")
        await asyncio.sleep(0.005)


class ClassificationSessionTests(unittest.IsolatedAsyncioTestCase):
    async def asyncSetUp(self) -> None:
        self._sessions: list[ClassificationSession] = []
        self._gates: list[_GatedClassifier] = []

    async def asyncTearDown(self) -> None:
        for gate in self._gates:
            gate.release.set()
        for session in self._sessions:
            await session.stop()
            session.close()

    def _session(self, classifier=None, *, camera=None, loader=None, **config) -> ClassificationSession:
        if isinstance(classifier, _GatedClassifier):
            self._gates.append(classifier)
        session = ClassificationSession(
            capture=camera or StubCamera(),
            loader=loader or (lambda: classifier),
            engine=DecisionEngine(reject_category="background"),
            config=SessionConfig(width=32, height=32, **config),
        )
        self._sessions.append(session)
        return session

    async def _cycle(self, session: ClassificationSession) -> None:
        self.assertTrue(await session.tick())
        await session.wait_idle()

    async def test_initial_state_is_pending(self) -> None:
        session = self._session(_ScriptedClassifier(PAPER))
        snapshot = session.snapshot()
        self.assertEqual(snapshot.status, SessionStatus.IDLE)
        self.assertEqual(snapshot.state.label, PENDING_LABEL)
        self.assertEqual(snapshot.state.status, DecisionStatus.PENDING)
        self.assertEqual(snapshot.history, ())

    async def test_accept_reject_accept_sequence(self) -> None:
        session = self._session(_ScriptedClassifier(PAPER, BACKGROUND, METAL))
        await session.initialize()

        states = []
        for _ in range(3):
            await self._cycle(session)
            states.append(session.snapshot().state)

        self.assertEqual([(s.label, s.confidence_percent) for s in states],
                         [("paper", 90), ("Scanning...", 0), ("metal", 70)])
        self.assertEqual(
            [s.status for s in states],
            [DecisionStatus.CLASSIFIED, DecisionStatus.SCANNING, DecisionStatus.CLASSIFIED],
        )
        history = session.snapshot().history
        self.assertEqual(len(history), 2)
        self.assertAlmostEqual(history[0].value, 90.0)
        self.assertAlmostEqual(history[1].value, 70.0)
        self.assertLessEqual(history[0].timestamp, history[1].timestamp)

        snapshot = session.snapshot()
        self.assertEqual((snapshot.cycles, snapshot.accepted, snapshot.rejected), (3, 2, 1))

    async def test_overlapping_tick_does_not_issue_second_request(self) -> None:
        gated = _GatedClassifier(PAPER)
        session = self._session(gated)
        await session.initialize()

        self.assertTrue(await session.tick())
        await _wait_for(gated.started.is_set)
        self.assertTrue(session.classifying)
        self.assertFalse(await session.tick())
        self.assertFalse(await session.tick())
        self.assertEqual(gated.calls, 1)
        self.assertEqual(session.snapshot().suppressed, 2)

        gated.release.set()
        await session.wait_idle()
        self.assertEqual(session.snapshot().state.label, "paper")

        self.assertTrue(await session.tick())
        await session.wait_idle()
        self.assertEqual(gated.calls, 2)

    async def test_rejected_result_never_touches_history(self) -> None:
        below = predictions_from_pairs([("plastic", 0.6), ("paper", 0.4)])
        session = self._session(_ScriptedClassifier(below))
        await session.initialize()

        for _ in range(4):
            await self._cycle(session)
            self.assertEqual(session.snapshot().state.label, "Scanning...")
        self.assertEqual(session.snapshot().history, ())
        self.assertEqual(session.snapshot().rejected, 4)

    async def test_transient_failure_keeps_previous_state(self) -> None:
        classifier = _ScriptedClassifier(
            PAPER, ClassificationError("incompatible frame"), RuntimeError("boom"), METAL
        )
        session = self._session(classifier)
        await session.initialize()

        await self._cycle(session)
        await self._cycle(session)
        snapshot = session.snapshot()
        self.assertEqual(snapshot.state.label, "paper")
        self.assertEqual(len(snapshot.history), 1)
        self.assertEqual(snapshot.skipped, 1)
        self.assertEqual(snapshot.last_failure.stage, FailureStage.CLASSIFY)
        self.assertFalse(snapshot.last_failure.fatal)

        await self._cycle(session)
        self.assertEqual(session.snapshot().skipped, 2)
        self.assertIn("boom", session.snapshot().last_failure.message)

        await self._cycle(session)
        self.assertEqual(session.snapshot().state.label, "metal")
        self.assertEqual(len(session.snapshot().history), 2)

    async def test_capture_refresh_failure_skips_cycle(self) -> None:
        camera = _FlakyCamera()
        classifier = _ScriptedClassifier(PAPER)
        session = self._session(classifier, camera=camera)
        await session.initialize()

        camera.fail_next = True
        self.assertFalse(await session.tick())
        snapshot = session.snapshot()
        self.assertEqual(classifier.calls, 0)
        self.assertEqual(snapshot.last_failure.stage, FailureStage.CAPTURE_REFRESH)
        self.assertEqual(snapshot.state.label, PENDING_LABEL)

        await self._cycle(session)
        self.assertEqual(session.snapshot().state.label, "paper")

    async def test_model_load_failure_never_starts_loop(self) -> None:
        camera = StubCamera()

        def loader():
            raise ModelLoadError("metadata missing")

        session = self._session(camera=camera, loader=loader)
        started = await session.start()

        self.assertFalse(started)
        snapshot = session.snapshot()
        self.assertEqual(snapshot.status, SessionStatus.FAILED)
        self.assertEqual(snapshot.state.label, ERROR_LABEL)
        self.assertEqual(snapshot.state.status, DecisionStatus.ERROR)
        self.assertEqual(snapshot.last_failure.stage, FailureStage.MODEL_LOAD)
        self.assertTrue(snapshot.last_failure.fatal)
        self.assertFalse(await session.tick())
        self.assertEqual(camera.refresh_count, 0)

    async def test_unexpected_loader_error_is_reported_as_model_load(self) -> None:
        def loader():
            raise OSError("network unreachable")

        session = self._session(loader=loader)
        with self.assertRaises(ModelLoadError):
            await session.initialize()
        self.assertEqual(session.snapshot().last_failure.stage, FailureStage.MODEL_LOAD)

    async def test_capture_failure_sets_error_state(self) -> None:
        session = self._session(_ScriptedClassifier(PAPER), camera=_BrokenCamera())
        self.assertFalse(await session.start())
        snapshot = session.snapshot()
        self.assertEqual(snapshot.state.status, DecisionStatus.ERROR)
        self.assertEqual(snapshot.last_failure.stage, FailureStage.CAPTURE_INIT)
        self.assertIn("permission denied", snapshot.last_failure.message)

    async def test_stop_discards_inflight_result(self) -> None:
        camera = StubCamera()
        gated = _GatedClassifier(PAPER)
        session = self._session(gated, camera=camera)
        await session.initialize()

        self.assertTrue(await session.tick())
        await _wait_for(gated.started.is_set)
        await session.stop()
        gated.release.set()
        await session.wait_idle()

        snapshot = session.snapshot()
        self.assertEqual(snapshot.status, SessionStatus.STOPPED)
        self.assertEqual(snapshot.state.label, PENDING_LABEL)
        self.assertEqual(snapshot.history, ())
        self.assertFalse(await session.tick())
        with self.assertRaises(RuntimeError):
            camera.current_frame()

    async def test_running_loop_bounds_history(self) -> None:
        classifier = _ScriptedClassifier(PAPER)
        session = self._session(classifier, tick_interval=0.001, history_capacity=2)

        self.assertTrue(await session.start())
        self.assertEqual(session.status, SessionStatus.RUNNING)
        await _wait_for(lambda: session.snapshot().accepted >= 4)
        await session.stop()

        snapshot = session.snapshot()
        self.assertEqual(len(snapshot.history), 2)
        accepted = snapshot.accepted
        await asyncio.sleep(0.02)
        self.assertEqual(session.snapshot().accepted, accepted)

    async def test_restart_resets_history(self) -> None:
        session = self._session(_ScriptedClassifier(PAPER), tick_interval=0.001)
        self.assertTrue(await session.start())
        await _wait_for(lambda: session.snapshot().accepted >= 1)
        await session.stop()
        await session.wait_idle()

        await session.initialize()
        snapshot = session.snapshot()
        self.assertEqual(snapshot.history, ())
        self.assertEqual(snapshot.state.label, PENDING_LABEL)
        self.assertEqual(snapshot.status, SessionStatus.READY)

    async def test_concurrent_starts_open_camera_once(self) -> None:
        camera = _CountingCamera()
        classifier = _ScriptedClassifier(PAPER)

        def slow_loader():
            time.sleep(0.05)
            return classifier

        session = self._session(camera=camera, loader=slow_loader)
        results = await asyncio.gather(session.start(), session.start())

        self.assertEqual(results, [True, True])
        self.assertEqual(camera.initialize_count, 1)
        self.assertEqual(len(_loop_tasks()), 1)

        await session.stop()
        self.assertEqual(_loop_tasks(), [])
        self.assertEqual(session.status, SessionStatus.STOPPED)

    async def test_stop_during_start_leaves_session_stopped(self) -> None:
        camera = _CountingCamera()
        classifier = _ScriptedClassifier(PAPER)
        gate = threading.Event()

        def gated_loader():
            gate.wait(5.0)
            return classifier

        session = self._session(camera=camera, loader=gated_loader, tick_interval=0.001)
        starting = asyncio.create_task(session.start())
        try:
            await _wait_for(lambda: session.status is SessionStatus.INITIALIZING)
            stopping = asyncio.create_task(session.stop())
            await asyncio.sleep(0.01)
            self.assertFalse(stopping.done())
        finally:
            gate.set()

        self.assertTrue(await starting)
        await stopping
        await session.wait_idle()

        self.assertEqual(session.status, SessionStatus.STOPPED)
        self.assertEqual(_loop_tasks(), [])
        cycles = session.snapshot().cycles
        await asyncio.sleep(0.02)
        self.assertEqual(session.snapshot().cycles, cycles)
        with self.assertRaises(RuntimeError):
            camera.current_frame()

    async def test_camera_is_driven_off_the_event_loop_thread(self) -> None:
        camera = _CountingCamera()
        session = self._session(_ScriptedClassifier(PAPER), camera=camera)
        await session.initialize()
        await self._cycle(session)

        self.assertTrue(camera.threads)
        self.assertNotIn(threading.get_ident(), camera.threads)
        self.assertEqual(session.snapshot().state.label, "paper")

    async def test_non_finite_probability_skips_cycle(self) -> None:
        broken = predictions_from_pairs([("metal", float("inf")), ("paper", 0.1)])
        session = self._session(_ScriptedClassifier(broken, PAPER))
        await session.initialize()

        await self._cycle(session)
        snapshot = session.snapshot()
        self.assertEqual(snapshot.skipped, 1)
        self.assertEqual(snapshot.last_failure.stage, FailureStage.CLASSIFY)
        self.assertEqual(snapshot.state.label, PENDING_LABEL)
        self.assertEqual(snapshot.history, ())

        await self._cycle(session)
        self.assertEqual(session.snapshot().state.label, "paper")

    async def test_repeated_capture_failure_is_logged_once(self) -> None:
        camera = _CountingCamera()
        session = self._session(_ScriptedClassifier(PAPER), camera=camera)
        await session.initialize()

        camera.dead = True
        with self.assertLogs("device.session", level="WARNING") as logs:
            for _ in range(3):
                self.assertFalse(await session.tick())
            camera.dead = False
            await self._cycle(session)
            camera.dead = True
            self.assertFalse(await session.tick())

        warnings = [r for r in logs.records if "capture-refresh" in r.getMessage()]
        self.assertEqual(len(warnings), 2)
        self.assertEqual(len(logs.records), 2)
        self.assertEqual(session.snapshot().skipped, 4)
        self.assertEqual(session.snapshot().state.label, "paper")


if __name__ == "__main__":
    unittest.main()
