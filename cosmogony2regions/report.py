"""
report.py — End-of-run report and its summary table.
"""

import logging
from collections import Counter
from dataclasses import dataclass, field

from .errors import PipelineError, ResolutionWarning


@dataclass
class RunReport:
    input_path:      str = ""
    zones_read:      int = 0
    groups:          int = 0
    rows_written:    int = 0
    dropped:         dict[str, int] = field(default_factory=dict)
    warnings:        list[ResolutionWarning] = field(default_factory=list)
    committed:       bool = False
    failed_stage:    str | None = None
    error:           PipelineError | None = None
    elapsed:         float = 0.0

    def fail(self, error: PipelineError) -> None:
        self.error = error
        self.failed_stage = error.stage
        self.committed = False

    @property
    def exit_status(self) -> int:
        return 0 if self.committed else 1

    def warning_counts(self) -> dict[str, int]:
        return dict(sorted(Counter(warning.kind for warning in self.warnings).items()))

    def raise_for_status(self) -> None:
        if self.error is not None:
            raise self.error


def _fmt_elapsed(elapsed: float) -> str:
    return f"{int(elapsed // 3600)}h {int((elapsed % 3600) // 60)}m {int(elapsed % 60)}s"


def log_summary(report: RunReport, log: logging.Logger) -> None:
    """Log a summary table of what the run did."""
    status = "COMMITTED" if report.committed else f"FAILED ({report.failed_stage or 'unknown'})"
    lines = [
        "",
        "╔══════════════════════════════════════════════╗",
        "║     cosmogony2regions — Final Summary         ║",
        "╠══════════════════════════════════════════════╣",
        f"║  Status:                 {status:<20}║",
        f"║  Zones read:             {report.zones_read:<20}║",
        f"║  Consolidated groups:    {report.groups:<20}║",
        f"║  Regions written:        {report.rows_written:<20}║",
        f"║  Regions dropped:        {sum(report.dropped.values()):<20}║",
    ]
    for reason, count in sorted(report.dropped.items()):
        lines.append(f"║    {reason:<22}{count:<20}║")
    lines.append(f"║  Warnings:               {len(report.warnings):<20}║")
    for kind, count in report.warning_counts().items():
        lines.append(f"║    {kind:<22}{count:<20}║")
    lines += [
        "╠══════════════════════════════════════════════╣",
        f"║  Total elapsed: {_fmt_elapsed(report.elapsed):<29}║",
        "╚══════════════════════════════════════════════╝",
        "",
    ]
    for line in lines:
        log.info(line)
    if report.error is not None:
        log.error("Run failed in stage '%s': %s", report.failed_stage, report.error)
