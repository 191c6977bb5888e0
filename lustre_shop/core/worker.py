"""
Background fit worker for Lustre Shop.

This module provides the QThread subclass that runs the specular fit on a
background thread. A fit over a full capture takes minutes; running it off
the main thread keeps an event loop (the CLI's QCoreApplication, or any
host UI) responsive.

Communication with the main thread goes entirely through Qt signals. Qt
marshals cross-thread signals via QueuedConnection, so slots always run on
the receiver's thread and the worker never needs an explicit lock.

The worker receives a SpecularFitEngine via constructor injection rather
than creating one itself, which keeps it testable with stub engines.
"""

from PySide6.QtCore import QThread, Signal

from lustre_shop.core.errors import FitCancelled
from lustre_shop.core.fitter import SpecularFitEngine
from lustre_shop.core.pipeline import STAGE_ORDER, FitStage
from lustre_shop.core.progress import CallbackMonitor
from lustre_shop.core.workspace import WorkspacePaths


class FitWorker(QThread):
    """
    Runs every fit stage in STAGE_ORDER on a background thread.

    Signals:
        stage_started(str)     stage name, when a stage begins.
        stage_completed(str)   stage name, when a stage finishes successfully.
        progress(str, str)     (stage, message) status updates within a stage.
        fraction(str, float)   (stage, 0..1) iteration progress within a stage.
        error(str, str)        (stage, message) when a stage fails.
        cancelled(str)         stage name, when the run stopped on request.
        fit_finished()         when ALL stages complete successfully.
    """

    stage_started = Signal(str)
    stage_completed = Signal(str)
    progress = Signal(str, str)
    fraction = Signal(str, float)
    error = Signal(str, str)
    cancelled = Signal(str)
    fit_finished = Signal()

    def __init__(self, engine: SpecularFitEngine, workspace: WorkspacePaths):
        super().__init__()
        self._engine = engine
        self._workspace = workspace
        self._current_stage = ""

        # Checked between stages by the worker and at iteration and block
        # boundaries by the engine, through the monitor below.
        self._cancelled = False

        # on_stage/on_complete come from the numerical stages themselves and
        # bracket their fraction at 0 and 1.
        self._engine.monitor = CallbackMonitor(
            on_stage=lambda stage: self.fraction.emit(stage, 0.0),
            on_progress=lambda value: self.fraction.emit(self._current_stage, value),
            on_complete=lambda: self.fraction.emit(self._current_stage, 1.0),
            on_message=lambda message: self.progress.emit(self._current_stage, message),
            cancelled=lambda: self._cancelled,
        )

    @property
    def engine(self) -> SpecularFitEngine:
        return self._engine

    def cancel(self):
        """Request cancellation. Takes effect at the next stage, iteration or block boundary."""
        self._cancelled = True

    def run(self):
        """
        Execute each stage in sequence.

        Runs on the BACKGROUND THREAD. On error the run stops at the failing
        stage and emits the error signal; later stages are not attempted.
        """
        stage_methods = {
            FitStage.LOAD_CAPTURE: self._engine.load_capture,
            FitStage.SAMPLE_OBSERVATIONS: self._engine.sample_observations,
            FitStage.DECOMPOSITION: self._engine.decompose,
            FitStage.FINAL_DIFFUSE: self._engine.estimate_diffuse,
            FitStage.RECONSTRUCTION: self._engine.reconstruct,
            FitStage.EXPORT: self._engine.export,
        }

        for stage in STAGE_ORDER:
            if self._cancelled:
                self.cancelled.emit(stage)
                return

            self._current_stage = stage
            self.stage_started.emit(stage)

            try:
                stage_methods[stage](self._workspace, self._make_progress_callback(stage))
                self.stage_completed.emit(stage)
            except FitCancelled:
                self.cancelled.emit(stage)
                return
            except Exception as e:
                self.error.emit(stage, str(e))
                return

        self.fit_finished.emit()

    def _make_progress_callback(self, stage: str):
        """Return a callback that emits progress messages tagged with the stage name."""
        def callback(message: str):
            self.progress.emit(stage, message)
        return callback
