"""
Console application for Lustre Shop.

This module is the orchestration hub for a command-line fit:
    1. The entry point parses arguments into a FitRequest
    2. This module resolves settings, creates a workspace, an engine
       and a worker
    3. Worker signals are connected to the log for live stage updates
    4. When the worker finishes, fails or is cancelled, the Qt event loop
       is told to quit with the matching exit code

The fit itself runs on the worker's background thread; the main thread
only runs the QCoreApplication event loop that delivers the signals.
"""

import logging
import signal
from dataclasses import dataclass, replace
from pathlib import Path

from PySide6.QtCore import QCoreApplication, QTimer

from lustre_shop.core.fitter import SpecularFitEngine
from lustre_shop.core.pipeline import BASIS_PRESETS, DEFAULT_PRESET, STAGE_DISPLAY_NAMES
from lustre_shop.core.settings import ReconstructionSettings, SpecularFitSettings, load_settings
from lustre_shop.core.worker import FitWorker
from lustre_shop.core.workspace import WorkspacePaths, create_workspace

logger = logging.getLogger(__name__)


EXIT_OK = 0
EXIT_FAILED = 1
EXIT_CANCELLED = 130


@dataclass
class FitRequest:
    """Everything the command line asked for."""
    capture_dir: Path
    output_dir: Path | None = None
    settings_path: Path | None = None
    preset: str | None = None
    reconstruct_all: bool = False


def build_settings(request: FitRequest) -> SpecularFitSettings:
    """
    Resolve the run settings: settings file (or defaults), then the preset's
    basis shape, then the reconstruct_all flag.
    """
    if request.settings_path is not None:
        settings = load_settings(request.settings_path)
    else:
        settings = replace(SpecularFitSettings(), basis=BASIS_PRESETS[DEFAULT_PRESET])

    if request.preset is not None:
        if request.preset not in BASIS_PRESETS:
            raise ValueError(
                f"Unknown preset {request.preset!r}; choose one of {', '.join(BASIS_PRESETS)}"
            )
        settings = replace(settings, basis=BASIS_PRESETS[request.preset])

    if request.reconstruct_all:
        settings = replace(settings, reconstruction=ReconstructionSettings(reconstruct_all=True))
    return settings


class LustreShopApp:
    """Runs one fit under a Qt event loop and reports its progress to the log."""

    def __init__(self, qt_app: QCoreApplication, settings: SpecularFitSettings,
                 workspace: WorkspacePaths):
        self._qt_app = qt_app
        self._settings = settings
        self._workspace = workspace
        self._exit_code = EXIT_OK

        # Keep a reference to the worker; a QThread that goes out of scope
        # while running is destroyed.
        self._worker: FitWorker | None = None

    @property
    def workspace(self) -> WorkspacePaths:
        return self._workspace

    def start(self) -> None:
        """Create the engine and worker, then start the worker."""
        engine = SpecularFitEngine(self._settings)
        self._worker = FitWorker(engine, self._workspace)

        self._worker.stage_started.connect(
            lambda stage: logger.info("Running: %s", STAGE_DISPLAY_NAMES.get(stage, stage))
        )
        self._worker.stage_completed.connect(
            lambda stage: logger.info("Done: %s", STAGE_DISPLAY_NAMES.get(stage, stage))
        )
        self._worker.progress.connect(
            lambda stage, message: logger.info("  %s", message)
        )
        self._worker.error.connect(self._on_error)
        self._worker.cancelled.connect(self._on_cancelled)
        self._worker.fit_finished.connect(self._on_finished)
        self._worker.finished.connect(lambda: self._qt_app.exit(self._exit_code))

        self._worker.start()

    def cancel(self) -> None:
        if self._worker is not None:
            logger.warning("Cancelling fit...")
            self._worker.cancel()

    def _on_error(self, stage: str, message: str) -> None:
        logger.error("%s failed: %s", STAGE_DISPLAY_NAMES.get(stage, stage), message)
        self._exit_code = EXIT_FAILED

    def _on_cancelled(self, stage: str) -> None:
        logger.warning("Fit cancelled during %s", STAGE_DISPLAY_NAMES.get(stage, stage))
        self._exit_code = EXIT_CANCELLED

    def _on_finished(self) -> None:
        logger.info("Fit complete. Artifacts in %s", self._workspace.artifacts)


def run(request: FitRequest, argv: list[str] | None = None) -> int:
    """
    Run one fit to completion and return the process exit code.

    Raises:
        ValueError: the settings file or preset is invalid.
        OSError:    the workspace cannot be created.
    """
    settings = build_settings(request)
    workspace = create_workspace(request.capture_dir, root=request.output_dir)
    logger.info("Workspace: %s", workspace.root)

    qt_app = QCoreApplication.instance() or QCoreApplication(argv or [])
    app = LustreShopApp(qt_app, settings, workspace)

    # Ctrl+C requests a cooperative cancel. The timer wakes the event loop
    # periodically so Python gets a chance to run the signal handler.
    signal.signal(signal.SIGINT, lambda *_: app.cancel())
    timer = QTimer()
    timer.start(200)
    timer.timeout.connect(lambda: None)

    QTimer.singleShot(0, app.start)
    return qt_app.exec()
