"""
Progress reporting and cooperative cancellation for the fit.

The numerical stages report through a ProgressMonitor instead of talking to
any UI toolkit. They call it synchronously at iteration and block
boundaries, never in the middle of a texel solve, so checking
is_cancelled() there can never leave a texel half-updated.

Each numerical stage (decomposition, final diffuse, reconstruction) calls
on_stage() once when it starts and on_complete() once when it finishes;
on_progress() fractions in between run from 0 to 1 within that stage.

The Qt worker (core/worker.py) wraps its signals in a CallbackMonitor;
tests and scripts can use the base class, which ignores everything.
"""

import logging
from typing import Callable

from lustre_shop.core.errors import FitCancelled

logger = logging.getLogger(__name__)


class ProgressMonitor:
    """
    Observer interface for a running fit. Every method is optional to
    override; the defaults do nothing and never cancel.
    """

    def on_stage(self, stage: str) -> None:
        pass

    def on_progress(self, fraction: float) -> None:
        pass

    def on_message(self, message: str) -> None:
        pass

    def on_complete(self) -> None:
        pass

    def is_cancelled(self) -> bool:
        return False

    def check_cancelled(self, stage: str | None = None) -> None:
        """Raise FitCancelled if cancellation was requested."""
        if self.is_cancelled():
            logger.info("Fit cancelled during %s", stage or "fit")
            raise FitCancelled("Fit cancelled by user", stage)


class CallbackMonitor(ProgressMonitor):
    """
    ProgressMonitor built from plain callables.

    Any callback left as None is simply not called. The cancel callable is
    polled at every boundary check.
    """

    def __init__(self,
                 on_progress: Callable[[float], None] | None = None,
                 on_message: Callable[[str], None] | None = None,
                 on_complete: Callable[[], None] | None = None,
                 on_stage: Callable[[str], None] | None = None,
                 cancelled: Callable[[], bool] | None = None):
        self._on_progress = on_progress
        self._on_message = on_message
        self._on_complete = on_complete
        self._on_stage = on_stage
        self._cancelled = cancelled

    def on_stage(self, stage: str) -> None:
        if self._on_stage is not None:
            self._on_stage(stage)

    def on_progress(self, fraction: float) -> None:
        if self._on_progress is not None:
            self._on_progress(min(max(fraction, 0.0), 1.0))

    def on_message(self, message: str) -> None:
        if self._on_message is not None:
            self._on_message(message)

    def on_complete(self) -> None:
        if self._on_complete is not None:
            self._on_complete()

    def is_cancelled(self) -> bool:
        return self._cancelled is not None and bool(self._cancelled())
