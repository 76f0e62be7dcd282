"""Read-only status API over a running :class:`ClassificationSession`.

Routes only ever read the session's published snapshot; the sole calls back
into the session are the lifecycle ``start`` and ``stop`` endpoints.
"""
from __future__ import annotations

import logging
from typing import List

from fastapi import FastAPI, HTTPException

from .logging_utils import DiagnosticLogHandler
from .schemas import (
    ConfidenceSampleModel,
    DecisionStateModel,
    DiagnosticModel,
    LifecycleResponse,
    SnapshotResponse,
    diagnostic_models,
    sample_models,
    snapshot_response,
    state_model,
)
from .session import ClassificationSession, SessionStatus


logger = logging.getLogger(__name__)


def create_app(
    session: ClassificationSession,
    diagnostics: DiagnosticLogHandler | None = None,
    autostart: bool = False,
) -> FastAPI:
    app = FastAPI(title="EcoSort Device API", version="0.1.0")
    app.state.session = session
    app.state.diagnostics = diagnostics

    def _lifecycle() -> LifecycleResponse:
        status = session.status
        return LifecycleResponse(
            status=status.value, running=status is SessionStatus.RUNNING
        )

    @app.get("/health", response_model=dict[str, str])
    def healthcheck() -> dict[str, str]:
        return {"status": "ok"}

    @app.get("/v1/state", response_model=DecisionStateModel)
    def read_state() -> DecisionStateModel:
        return state_model(session.snapshot().state)

    @app.get("/v1/history", response_model=List[ConfidenceSampleModel])
    def read_history() -> List[ConfidenceSampleModel]:
        return sample_models(session.snapshot().history)

    @app.get("/v1/snapshot", response_model=SnapshotResponse)
    def read_snapshot() -> SnapshotResponse:
        return snapshot_response(session.snapshot())

    @app.get("/v1/diagnostics", response_model=List[DiagnosticModel])
    def read_diagnostics() -> List[DiagnosticModel]:
        handler: DiagnosticLogHandler | None = app.state.diagnostics
        if handler is None:
            return []
        return diagnostic_models(handler.records())

    @app.post("/v1/session/start", response_model=LifecycleResponse)
    async def start_session() -> LifecycleResponse:
        logger.info("Session start requested")
        started = await session.start()
        if not started:
            failure = session.snapshot().last_failure
            detail = failure.message if failure is not None else "Session failed to start"
            raise HTTPException(status_code=503, detail=detail)
        return _lifecycle()

    @app.post("/v1/session/stop", response_model=LifecycleResponse)
    async def stop_session() -> LifecycleResponse:
        logger.info("Session stop requested")
        await session.stop()
        return _lifecycle()

    @app.on_event("startup")
    async def _autostart() -> None:
        if autostart and not await session.start():
            logger.error("Classification session did not start; see /v1/snapshot")

    @app.on_event("shutdown")
    async def _shutdown_session() -> None:
        await session.stop()
        session.close()

    return app


__all__ = ["create_app"]
