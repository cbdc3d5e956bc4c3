"""
errors.py — Error taxonomy for the cosmogony → administrative_regions pipeline.

Fatal errors (MalformedInput, StructuralError, LoadFailure, RunAborted) halt
the run before the destination transaction commits. ResolutionWarning is a
plain record: it is collected into the run report, never raised.
"""

from dataclasses import dataclass


class PipelineError(RuntimeError):
    """Base class for every fatal pipeline error.

    `stage` is filled in by the pipeline driver when the error crosses a
    stage boundary, so the end-of-run report can say where the run failed.
    """

    def __init__(self, message: str, stage: str | None = None):
        super().__init__(message)
        self.stage = stage


class MalformedInput(PipelineError):
    """Unreadable or incomplete source record, or an unparsable geometry."""


class StructuralError(PipelineError):
    """Cyclic or dangling parent references in the zone hierarchy."""


class LoadFailure(PipelineError):
    """The destination rejected a row, or the spatial index could not be built."""


class RunAborted(PipelineError):
    """Cancellation was requested before the destination transaction committed."""


@dataclass(frozen=True)
class ResolutionWarning:
    """A per-zone problem that was recovered from by policy."""

    kind:    str
    message: str
    zone_id: int | None = None
    key:     str | None = None

    def __str__(self) -> str:
        where = f"zone {self.zone_id}" if self.zone_id is not None else self.key or "-"
        return f"[{self.kind}] {where}: {self.message}"
