"""
Error taxonomy and run diagnostics for the specular fit.

Two separate channels carry failures out of the fit:

    Exceptions       stage-fatal conditions (no usable observations, rasters
                     that disagree in size, user cancellation) and image-store
                     failures. The fitter stops on the fatal ones; the worker
                     forwards them to the UI via its error signal.
    FitDiagnostics   per-texel conditions that are recovered locally (a texel
                     whose normal refinement never improved, a texel whose
                     weight solve came back all zero, an image that could not
                     be written). These never abort the batch; they are
                     counted and summarized at the end of the run.
"""

from dataclasses import dataclass, field


class FitError(Exception):
    """
    Base class for errors raised by the specular fit.

    Carries the pipeline stage in which the failure happened so the worker
    and log output can say where the fit stopped, not just why.
    """

    def __init__(self, message: str, stage: str | None = None):
        super().__init__(message)
        self.stage = stage

    def __str__(self):
        message = super().__str__()
        if self.stage:
            return f"[{self.stage}] {message}"
        return message


class InsufficientDataError(FitError):
    """Raised when no texel has a single valid observation in any view."""
    pass


class DimensionMismatchError(FitError):
    """Raised when two texture-space rasters disagree in size."""
    pass


class TextureIOError(FitError):
    """
    Raised when an image or mesh artifact cannot be read or written.

    Wraps the OSError coming out of Pillow or trimesh together with the
    offending path. The fitter catches this during export and reconstruction,
    logs it and records it in FitDiagnostics, so a failed write does not
    throw away an otherwise successful fit.
    """

    def __init__(self, path, message: str, stage: str | None = None):
        super().__init__(f"{path}: {message}", stage)
        self.path = path


class FitCancelled(FitError):
    """Raised at an iteration boundary after the user requested cancellation."""
    pass


@dataclass
class FitDiagnostics:
    """
    Counters for failures that were recovered locally.

    divergent_texels:         texels whose normal refinement never accepted a
                              step and kept their prior normal.
    degenerate_weight_texels: texels whose weight solve returned all zeros and
                              are shaded diffuse-only.
    io_failures:              human-readable descriptions of artifacts that
                              could not be written.
    """
    divergent_texels: int = 0
    degenerate_weight_texels: int = 0
    io_failures: list[str] = field(default_factory=list)

    def record_io_failure(self, error: TextureIOError) -> None:
        self.io_failures.append(str(error))

    def summary_lines(self) -> list[str]:
        """Return report lines for the non-fatal failure counters."""
        return [
            f"Texels that failed normal refinement, {self.divergent_texels}",
            f"Texels with degenerate weights, {self.degenerate_weight_texels}",
            f"Artifacts that failed to write, {len(self.io_failures)}",
        ]
