"""
pipeline.py — Run the full cosmogony → administrative_regions pipeline.

Stages, strictly in sequence:
  hierarchy      decode the cosmogony file and validate the zone forest
  consolidation  group fragments and merge their geometry
  resolution     resolve names, codes and uris (streamed into the load)
  load           replace the destination table in one transaction

A fatal error in any stage stops the run before the destination commits.
Warnings never stop it; they are collected in the RunReport.
"""

import logging
import time
from pathlib import Path

from .attributes import DroppedRegion, iter_regions
from .config import PipelineConfig
from .consolidation import consolidate, get_policy
from .cosmogony import iter_zones
from .errors import PipelineError
from .hierarchy import load_hierarchy
from .loader import BulkLoader, CancellationToken, RegionStore
from .report import RunReport

logger = logging.getLogger(__name__)


def run_pipeline(
    input_path: Path,
    store: RegionStore,
    config: PipelineConfig | None = None,
    cancel: CancellationToken | None = None,
) -> RunReport:
    """
    Import one cosmogony file into `store`.

    Always returns the RunReport: when a stage fails, report.error and
    report.failed_stage say why. Unexpected exceptions (GEOS, a broken
    worker pool) are wrapped in a PipelineError tagged with the stage.
    report.committed is True only once the destination transaction has
    committed.
    """
    config = config or PipelineConfig()
    cancel = cancel or CancellationToken()
    policy = get_policy(config.policy)
    report = RunReport(input_path=str(input_path))
    started = time.monotonic()

    stage = "hierarchy"
    try:
        cancel.check("before reading input")
        logger.info("Reading cosmogony zones from %s", input_path)
        forest = load_hierarchy(
            iter_zones(Path(input_path)),
            strict_levels=config.strict_levels,
            warnings=report.warnings,
        )
        report.zones_read = len(forest)

        stage = "consolidation"
        cancel.check("before consolidation")
        groups = consolidate(
            forest,
            policy=policy,
            workers=config.workers,
            zone_types=set(config.zone_types) if config.zone_types else None,
        )
        report.groups = len(groups)

        stage = "load"
        cancel.check("before load")
        dropped: list[DroppedRegion] = []
        regions = iter_regions(forest, groups, dropped, report.warnings)
        load_report = BulkLoader(config.batch_size).load(store, regions, dropped, cancel)

        report.rows_written = load_report.rows_written
        report.dropped = load_report.dropped
        report.committed = True
    except PipelineError as exc:
        if exc.stage is None:
            exc.stage = stage
        report.fail(exc)
        logger.error("Stage '%s' failed: %s", exc.stage, exc)
    except Exception as exc:
        error = PipelineError(f"{type(exc).__name__}: {exc}", stage=stage)
        error.__cause__ = exc
        report.fail(error)
        logger.error("Stage '%s' failed unexpectedly: %s", stage, error, exc_info=exc)
    finally:
        report.elapsed = time.monotonic() - started

    return report
