from __future__ import annotations

import argparse
import logging
import sys
from pathlib import Path
from typing import Sequence

import uvicorn
from dotenv import load_dotenv

from vision.assets import AssetFetcher, resolve_model_locations
from vision.decision import DecisionEngine
from vision.teachable import TeachableMachineClassifier, load_classifier

from .capture import OpenCVCamera, StubCamera
from .config import AppConfig, CameraSettings, ModelSettings, load_config
from .logging_utils import install_diagnostic_log
from .server import create_app
from .session import ClassificationSession, ClassifierLoader, SessionConfig

logger = logging.getLogger(__name__)


def parse_backend(value: str | None) -> str | int | None:
    if value is None:
        return None
    value = value.strip()
    if not value:
        return None
    try:
        return int(value)
    except ValueError:
        return value


def build_camera(settings: CameraSettings) -> OpenCVCamera | StubCamera:
    if settings.kind == "opencv":
        return OpenCVCamera(
            source=settings.source,
            backend=settings.backend,
            warmup_frames=settings.warmup_frames,
        )
    sample = Path(str(settings.source)) if settings.source not in ("", 0) else None
    return StubCamera(sample_path=sample if sample and sample.exists() else None)


def build_loader(settings: ModelSettings) -> ClassifierLoader:
    fetcher = AssetFetcher(
        cache_dir=Path(settings.cache_dir) if settings.cache_dir else None,
        timeout=settings.fetch_timeout,
    )

    def load() -> TeachableMachineClassifier:
        assets = resolve_model_locations(
            settings.location, settings.model_filename, settings.metadata_filename
        )
        return load_classifier(
            assets.model_location,
            assets.metadata_location,
            fetcher=fetcher,
            num_threads=settings.num_threads,
        )

    return load


def build_session(cfg: AppConfig) -> ClassificationSession:
    engine = DecisionEngine(
        acceptance_threshold=cfg.decision.acceptance_threshold,
        reject_category=cfg.decision.reject_category,
        scanning_label=cfg.decision.scanning_label,
    )
    session_config = SessionConfig(
        width=cfg.camera.width,
        height=cfg.camera.height,
        mirrored=cfg.camera.mirrored,
        tick_interval=1.0 / cfg.loop.tick_hz,
        history_capacity=cfg.loop.history_capacity,
    )
    return ClassificationSession(
        capture=build_camera(cfg.camera),
        loader=build_loader(cfg.model),
        engine=engine,
        config=session_config,
    )


def build_parser() -> argparse.ArgumentParser:
    """Build argument parser with override flags.

    Most settings come from the JSON config file; flags win over it.
    """
    parser = argparse.ArgumentParser(
        description="Run the EcoSort live waste classifier",
        epilog="Configuration is loaded from config/ecosort.json. "
        "CLI arguments override config file settings.",
    )
    parser.add_argument(
        "--config",
        type=str,
        default="config/ecosort.json",
        help="Path to JSON configuration file (default: config/ecosort.json)",
    )
    parser.add_argument("--host", type=str, default=None, help="Override API host")
    parser.add_argument("--port", type=int, default=None, help="Override API port")
    parser.add_argument(
        "--camera",
        choices=["stub", "opencv"],
        default=None,
        help="camera backend to use",
    )
    parser.add_argument(
        "--camera-source",
        default=None,
        help="camera index or URL (OpenCV) or sample image path (stub)",
    )
    parser.add_argument(
        "--camera-backend",
        default=None,
        help="preferred OpenCV backend (e.g. v4l2, dshow, msmf, 700)",
    )
    parser.add_argument(
        "--model-location",
        default=None,
        help="directory or http(s) URL holding the Teachable Machine export",
    )
    parser.add_argument(
        "--threshold",
        type=float,
        default=None,
        help="minimum top-pick probability to accept a classification",
    )
    parser.add_argument(
        "--no-autostart",
        action="store_true",
        help="wait for POST /v1/session/start instead of starting immediately",
    )
    parser.add_argument("--verbose", action="store_true", help="enable debug logging")
    return parser


def apply_overrides(cfg: AppConfig, args: argparse.Namespace) -> AppConfig:
    if args.host:
        cfg.server.host = args.host
    if args.port:
        cfg.server.port = args.port
    if args.camera:
        cfg.camera.kind = args.camera
    if args.camera_source is not None:
        source = args.camera_source.strip()
        cfg.camera.source = int(source) if source.isdigit() else source
    backend = parse_backend(args.camera_backend)
    if backend is not None:
        cfg.camera.backend = backend
    if args.model_location:
        cfg.model.location = args.model_location
    if args.threshold is not None:
        cfg.decision.acceptance_threshold = args.threshold
    if args.no_autostart:
        cfg.loop.autostart = False
    return cfg


def main(argv: Sequence[str] | None = None) -> None:
    load_dotenv()
    parser = build_parser()
    args = parser.parse_args(argv)
    if not logging.getLogger().handlers:
        logging.basicConfig(
            level=logging.DEBUG if args.verbose else logging.INFO,
            format="%(levelname)s [%(name)s] %(message)s",
        )
    diagnostics = install_diagnostic_log()

    try:
        cfg = apply_overrides(load_config(Path(args.config)), args)
        session = build_session(cfg)
    except ValueError as exc:
        logger.error("Invalid configuration: %s", exc)
        sys.exit(1)

    logger.info("API listening on %s:%d", cfg.server.host, cfg.server.port)
    logger.info("Camera backend: %s source=%r", cfg.camera.kind, cfg.camera.source)
    logger.info("Model location: %s", cfg.model.location)

    app = create_app(session, diagnostics=diagnostics, autostart=cfg.loop.autostart)
    try:
        uvicorn.run(app, host=cfg.server.host, port=cfg.server.port, log_level="info")
    except KeyboardInterrupt:
        logger.info("Stopped by user")


if __name__ == "__main__":
    main()
