from __future__ import annotations

import logging
import threading
from collections import defaultdict
from contextlib import contextmanager
from datetime import datetime
from typing import Dict, Iterable, Iterator, List, Mapping, Protocol, Sequence, Set, Tuple

from .errors import StoreUnavailableError, StoreWriteError
from .models import InsertResult, Reading, Sample, Unit, ensure_utc, timestamp_key

logger = logging.getLogger(__name__)

BATCH_SIZE = 1000
PAGE_SIZE = 1000


class ReadingBackend(Protocol):
    """Persistence operations the store needs from a concrete database."""

    def existing_keys(self, meter_id: str) -> Set[str]: ...

    def insert(self, readings: Sequence[Reading]) -> None: ...

    def delete(self, meter_id: str, start: datetime, end: datetime) -> int: ...

    def fetch_page(
        self,
        meter_ids: Sequence[str],
        start: datetime,
        end: datetime,
        offset: int,
        limit: int,
    ) -> List[Reading]: ...


class MemoryBackend:
    """Process-local backend keyed by meter and millisecond timestamp."""

    def __init__(self) -> None:
        self._readings: Dict[str, Dict[str, Reading]] = defaultdict(dict)
        self._lock = threading.Lock()

    def existing_keys(self, meter_id: str) -> Set[str]:
        with self._lock:
            return set(self._readings.get(meter_id, {}))

    def insert(self, readings: Sequence[Reading]) -> None:
        with self._lock:
            for reading in readings:
                if reading.timestamp_key in self._readings[reading.meter_id]:
                    raise ValueError(
                        f"Duplicate reading for {reading.meter_id} at {reading.timestamp_key}"
                    )
            for reading in readings:
                self._readings[reading.meter_id][reading.timestamp_key] = reading

    def delete(self, meter_id: str, start: datetime, end: datetime) -> int:
        with self._lock:
            stored = self._readings.get(meter_id, {})
            doomed = [key for key, reading in stored.items() if start <= reading.timestamp <= end]
            for key in doomed:
                del stored[key]
            return len(doomed)

    def fetch_page(
        self,
        meter_ids: Sequence[str],
        start: datetime,
        end: datetime,
        offset: int,
        limit: int,
    ) -> List[Reading]:
        with self._lock:
            matched: List[Reading] = []
            for meter_id in sorted(set(meter_ids)):
                readings = self._readings.get(meter_id, {}).values()
                matched.extend(
                    sorted(
                        (r for r in readings if start <= r.timestamp <= end),
                        key=lambda r: r.timestamp,
                    )
                )
        return matched[offset : offset + limit]


class ReadingStore:
    """Canonical per-meter reading set with idempotent bulk insert.

    Dedup and insert for one meter run under that meter's lock, so two
    writers for the same meter cannot both pass the duplicate check.
    """

    def __init__(self, backend: ReadingBackend | None = None, *, batch_size: int = BATCH_SIZE) -> None:
        if batch_size <= 0:
            raise ValueError("batch_size must be positive")
        self.backend: ReadingBackend = backend if backend is not None else MemoryBackend()
        self.batch_size = batch_size
        self._meter_locks: Dict[str, threading.RLock] = {}
        self._locks_guard = threading.Lock()

    @contextmanager
    def meter_lock(self, meter_id: str) -> Iterator[None]:
        with self._locks_guard:
            lock = self._meter_locks.setdefault(meter_id, threading.RLock())
        with lock:
            yield

    def insert_batch(
        self,
        meter_id: str,
        samples: Iterable[Sample],
        *,
        unit: Unit = Unit.KWH,
        metadata: Mapping[str, object] | None = None,
    ) -> InsertResult:
        base = dict(metadata or {})
        readings = [
            Reading(
                meter_id=meter_id,
                timestamp=ensure_utc(sample.timestamp),
                value=sample.value,
                unit=unit,
                metadata={**base, "imported_fields": dict(sample.fields)},
            )
            for sample in samples
        ]
        return self.insert_readings(meter_id, readings)

    def insert_readings(self, meter_id: str, readings: Sequence[Reading]) -> InsertResult:
        """Insert readings not already stored; exact timestamp match only."""

        with self.meter_lock(meter_id):
            existing = self._call(self.backend.existing_keys, meter_id)
            fresh: List[Reading] = []
            skipped = 0
            for reading in readings:
                key = reading.timestamp_key
                if key in existing:
                    skipped += 1
                    continue
                existing.add(key)
                fresh.append(reading)

            inserted = self._insert_in_batches(meter_id, fresh)

        logger.info(
            "Stored %d readings for meter %s (%d duplicates skipped)", inserted, meter_id, skipped
        )
        return InsertResult(inserted=inserted, duplicates_skipped=skipped)

    def delete_range(self, meter_id: str, start: datetime, end: datetime) -> int:
        """Delete readings in ``[start, end]`` inclusive."""

        with self.meter_lock(meter_id):
            return self._call(self.backend.delete, meter_id, ensure_utc(start), ensure_utc(end))

    def replace_range(
        self,
        meter_id: str,
        start: datetime,
        end: datetime,
        readings: Sequence[Reading],
    ) -> Tuple[int, int]:
        """Delete the window then insert ``readings``; returns (deleted, inserted)."""

        with self.meter_lock(meter_id):
            deleted = self.delete_range(meter_id, start, end)
            result = self.insert_readings(meter_id, readings)
        return deleted, result.inserted

    def iter_readings(
        self,
        meter_ids: Sequence[str],
        start: datetime,
        end: datetime,
        *,
        page_size: int = PAGE_SIZE,
    ) -> Iterator[Reading]:
        """Yield readings ordered by meter then timestamp, one page at a time."""

        start, end = ensure_utc(start), ensure_utc(end)
        offset = 0
        while True:
            page = self._call(self.backend.fetch_page, list(meter_ids), start, end, offset, page_size)
            yield from page
            if len(page) < page_size:
                return
            offset += page_size

    def readings(self, meter_id: str, start: datetime, end: datetime) -> List[Reading]:
        return list(self.iter_readings([meter_id], start, end))

    def _insert_in_batches(self, meter_id: str, readings: Sequence[Reading]) -> int:
        inserted = 0
        for offset in range(0, len(readings), self.batch_size):
            batch = readings[offset : offset + self.batch_size]
            try:
                self.backend.insert(batch)
            except (ConnectionError, TimeoutError) as exc:
                raise StoreUnavailableError(
                    f"Reading store unreachable after {inserted} readings for meter {meter_id}: {exc}"
                ) from exc
            except Exception as exc:
                logger.error("Insert failed for meter %s at batch offset %d: %s", meter_id, offset, exc)
                raise StoreWriteError(
                    f"Insert failed at batch {offset // self.batch_size + 1} after {inserted} readings: {exc}",
                    inserted_before_failure=inserted,
                ) from exc
            inserted += len(batch)
            logger.debug("Inserted batch for meter %s: %d/%d", meter_id, inserted, len(readings))
        return inserted

    @staticmethod
    def _call(operation, *args):
        try:
            return operation(*args)
        except (ConnectionError, TimeoutError) as exc:
            raise StoreUnavailableError(f"Reading store unreachable: {exc}") from exc
