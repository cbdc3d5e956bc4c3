"""
loader.py — All-or-nothing load of resolved regions into the destination store.

The destination store is anything with a `transaction()` context manager
yielding an object with:

    replace_contents()        empty the table (and drop its spatial index)
    insert_regions(batch)     insert a list of AdministrativeRegion, return count
    rebuild_spatial_index()   (re)create the boundary index, fail if missing
    count_rows()              current row count

Leaving the context commits; an exception rolls back. db.PostgisRegionStore
is the production implementation.

Regions are pulled from the resolver lazily, `batch_size` at a time, so peak
memory is bounded by one batch plus whatever the resolver holds, while every
batch still lands in the same transaction.
"""

import logging
import threading
import time
from collections import Counter
from dataclasses import dataclass, field
from itertools import islice
from typing import Iterable, Iterator, Protocol

from .attributes import AdministrativeRegion, DroppedRegion
from .config import DEFAULT_BATCH_SIZE
from .errors import LoadFailure, PipelineError, RunAborted

logger = logging.getLogger(__name__)


class RegionTransaction(Protocol):
    def replace_contents(self) -> None: ...
    def insert_regions(self, regions: list[AdministrativeRegion]) -> int: ...
    def rebuild_spatial_index(self) -> None: ...
    def count_rows(self) -> int: ...


class RegionStore(Protocol):
    def transaction(self): ...
    def count_rows(self) -> int: ...


# ─── Cancellation ─────────────────────────────────────────────────────────────

class CancellationToken:
    """
    Abort-before-commit flag, safe to set from a signal handler.

    check() raises RunAborted while the run has not started committing.
    Once the loader begins its commit, cancellation requests are recorded
    but no longer honoured: the transaction finishes one way or the other.
    """

    def __init__(self):
        self._event = threading.Event()
        self._committing = False
        self.reason = ""

    def cancel(self, reason: str = "cancellation requested") -> None:
        self.reason = reason
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def begin_commit(self) -> None:
        self._committing = True

    def check(self, where: str) -> None:
        if self._event.is_set() and not self._committing:
            raise RunAborted(f"Run aborted {where}: {self.reason}")


# ─── Loader ───────────────────────────────────────────────────────────────────

@dataclass
class LoadReport:
    rows_written: int = 0
    dropped:      dict[str, int] = field(default_factory=dict)
    elapsed:      float = 0.0

    @property
    def dropped_total(self) -> int:
        return sum(self.dropped.values())


def _batches(items: Iterable, size: int) -> Iterator[list]:
    iterator = iter(items)
    while True:
        batch = list(islice(iterator, size))
        if not batch:
            return
        yield batch


class BulkLoader:
    def __init__(self, batch_size: int = DEFAULT_BATCH_SIZE):
        if batch_size < 1:
            raise ValueError("batch_size must be >= 1")
        self.batch_size = batch_size

    def load(
        self,
        store: RegionStore,
        regions: Iterable[AdministrativeRegion],
        dropped: list[DroppedRegion] | None = None,
        cancel: CancellationToken | None = None,
    ) -> LoadReport:
        """
        Replace the store's contents with `regions` in one transaction.

        Args:
            store:   Destination store
            regions: Resolved regions; may be a generator that fills `dropped`
                     as it goes
            dropped: Regions excluded upstream, counted by reason in the report
            cancel:  Checked before every batch and before commit

        Returns:
            LoadReport with rows written, dropped counts and elapsed seconds.

        Raises:
            LoadFailure if the store rejects anything; the transaction is
            rolled back and the previous contents stay in place.
            RunAborted if cancelled before commit (also rolled back).
        """
        cancel = cancel or CancellationToken()
        started = time.monotonic()
        written = 0

        cancel.check("before load")
        try:
            with store.transaction() as tx:
                tx.replace_contents()
                for batch in _batches(regions, self.batch_size):
                    cancel.check("during load")
                    written += tx.insert_regions(batch)
                    logger.info("bulk inserted %d regions (%d total)", len(batch), written)
                tx.rebuild_spatial_index()
                cancel.check("before commit")
                cancel.begin_commit()
                logger.info("Committing %d regions", written)
        except PipelineError:
            raise
        except Exception as exc:
            raise LoadFailure(
                f"Load rolled back after {written} row(s): {exc}"
            ) from exc

        report = LoadReport(
            rows_written = written,
            dropped      = dict(Counter(item.reason for item in dropped or ())),
            elapsed      = time.monotonic() - started,
        )
        logger.info(
            "Load committed: %d rows written, %d dropped, %.1fs",
            report.rows_written, report.dropped_total, report.elapsed,
        )
        return report
