from __future__ import annotations

import logging
import threading
from datetime import datetime
from typing import Dict, Iterable, Iterator, List, Sequence, Tuple

from .aggregates import KWH_COLUMN, HierarchyAggregator, slot_window
from .errors import ConfigurationError, StoreWriteError, SystemicError, UnreadableFileError
from .hierarchy import MeterCatalog
from .models import AggregationResult, ImportItem, ImportOutcome, ImportStatus, ParsedSeries
from .parsing import parse_upload
from .store import ReadingStore

logger = logging.getLogger(__name__)

IMPORT_SOURCE = "csv_import"


class ImportControl:
    """Cooperative pause and cancel for a running import.

    Both take effect between files; a file already being stored finishes.
    """

    def __init__(self) -> None:
        self._runnable = threading.Event()
        self._runnable.set()
        self._cancelled = threading.Event()

    def pause(self) -> None:
        self._runnable.clear()

    def resume(self) -> None:
        self._runnable.set()

    def cancel(self) -> None:
        self._cancelled.set()
        self._runnable.set()

    @property
    def paused(self) -> bool:
        return not self._runnable.is_set()

    @property
    def cancelled(self) -> bool:
        return self._cancelled.is_set()

    def wait_until_runnable(self, timeout: float | None = None) -> bool:
        """Block while paused; False if still paused after ``timeout``."""

        return self._runnable.wait(timeout)


class ImportOrchestrator:
    """Runs a queue of uploads through parse then store, one file at a time."""

    def __init__(self, store: ReadingStore) -> None:
        self.store = store

    def process_files(
        self,
        items: Iterable[ImportItem],
        control: ImportControl | None = None,
    ) -> List[ImportOutcome]:
        return list(self.iter_outcomes(items, control))

    def iter_outcomes(
        self,
        items: Iterable[ImportItem],
        control: ImportControl | None = None,
    ) -> Iterator[ImportOutcome]:
        """Yield one outcome per item, in submission order, as each finishes."""

        queue = list(items)
        control = control or ImportControl()
        for index, item in enumerate(queue):
            control.wait_until_runnable()
            if control.cancelled:
                logger.info("Import cancelled with %d files remaining", len(queue) - index)
                for remaining in queue[index:]:
                    yield _unprocessed(remaining, ImportStatus.CANCELLED, "Import cancelled")
                return

            try:
                outcome = self.process_file(item)
            except SystemicError as exc:
                logger.error("Aborting import at %s: %s", item.file_name, exc)
                yield ImportOutcome(
                    file_name=item.file_name,
                    meter_id=item.meter_id,
                    status=ImportStatus.FAILED,
                    error=str(exc),
                )
                for remaining in queue[index + 1 :]:
                    yield _unprocessed(
                        remaining, ImportStatus.NOT_PROCESSED, f"Import aborted: {exc}"
                    )
                return
            yield outcome

    def process_file(self, item: ImportItem) -> ImportOutcome:
        """Parse and store one file; systemic failures propagate."""

        try:
            parsed = parse_upload(item.data, item.file_name, item.layout)
        except (ConfigurationError, UnreadableFileError) as exc:
            logger.warning("Could not parse %s for meter %s: %s", item.file_name, item.meter_id, exc)
            return _unprocessed(item, ImportStatus.FAILED, str(exc))

        if parsed.total_rows and not parsed.samples:
            logger.warning("No valid rows in %s for meter %s", item.file_name, item.meter_id)
            return _outcome(item, parsed, ImportStatus.FAILED, error="No valid rows in file")

        try:
            result = self.store.insert_batch(
                item.meter_id,
                parsed.samples,
                unit=item.layout.unit,
                metadata={"source": IMPORT_SOURCE, "file_name": item.file_name},
            )
        except StoreWriteError as exc:
            logger.warning("Storing %s for meter %s failed: %s", item.file_name, item.meter_id, exc)
            return _outcome(
                item,
                parsed,
                ImportStatus.FAILED,
                inserted=exc.inserted_before_failure,
                error=str(exc),
            )

        logger.info(
            "Imported %s for meter %s: %d rows, %d inserted, %d duplicates, %d parse errors",
            item.file_name,
            item.meter_id,
            parsed.total_rows,
            result.inserted,
            result.duplicates_skipped,
            parsed.error_count,
        )
        return _outcome(
            item,
            parsed,
            ImportStatus.COMPLETED,
            inserted=result.inserted,
            duplicates_skipped=result.duplicates_skipped,
        )


def refresh_ancestors(
    outcomes: Iterable[ImportOutcome],
    catalog: MeterCatalog,
    aggregator: HierarchyAggregator,
    columns: Sequence[str] = (KWH_COLUMN,),
) -> List[AggregationResult]:
    """Re-aggregate every ancestor of meters that gained readings, deepest first.

    Each ancestor is rebuilt over the union of the imported windows below it.
    """

    windows: Dict[str, Tuple[datetime, datetime]] = {}
    for outcome in outcomes:
        if not outcome.inserted or outcome.first_timestamp is None or outcome.last_timestamp is None:
            continue
        for ancestor in catalog.ancestors(outcome.meter_id):
            start, end = outcome.first_timestamp, outcome.last_timestamp
            if ancestor in windows:
                current_start, current_end = windows[ancestor]
                start, end = min(start, current_start), max(end, current_end)
            windows[ancestor] = (start, end)

    results: List[AggregationResult] = []
    for parent in catalog.parents_bottom_up():
        if parent not in windows:
            continue
        start, end = slot_window(*windows[parent])
        results.append(aggregator.aggregate_meter(catalog, parent, start, end, columns))
    return results


def _outcome(
    item: ImportItem,
    parsed: ParsedSeries,
    status: ImportStatus,
    *,
    inserted: int = 0,
    duplicates_skipped: int = 0,
    error: str | None = None,
) -> ImportOutcome:
    timestamps = [sample.timestamp for sample in parsed.samples]
    return ImportOutcome(
        file_name=item.file_name,
        meter_id=item.meter_id,
        status=status,
        total_rows=parsed.total_rows,
        inserted=inserted,
        duplicates_skipped=duplicates_skipped,
        parse_errors=parsed.error_count,
        sample_error_messages=parsed.sample_error_messages,
        error=error,
        first_timestamp=min(timestamps) if timestamps else None,
        last_timestamp=max(timestamps) if timestamps else None,
    )


def _unprocessed(item: ImportItem, status: ImportStatus, error: str) -> ImportOutcome:
    return ImportOutcome(
        file_name=item.file_name,
        meter_id=item.meter_id,
        status=status,
        error=error,
    )
