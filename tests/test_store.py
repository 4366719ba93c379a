import threading
import time
from datetime import datetime, timedelta, timezone

import pytest

from meter_reconciliation.errors import StoreUnavailableError, StoreWriteError
from meter_reconciliation.models import Sample
from meter_reconciliation.store import MemoryBackend, ReadingStore

START = datetime(2024, 1, 1, tzinfo=timezone.utc)


def _samples(count, step_minutes=30, value=1.0):
    return [Sample(timestamp=START + timedelta(minutes=step_minutes * i), value=value) for i in range(count)]


class FailingBackend(MemoryBackend):
    def __init__(self, fail_on_call, error):
        super().__init__()
        self.fail_on_call = fail_on_call
        self.error = error
        self.calls = 0

    def insert(self, readings):
        self.calls += 1
        if self.calls == self.fail_on_call:
            raise self.error
        super().insert(readings)


class SlowKeysBackend(MemoryBackend):
    def existing_keys(self, meter_id):
        keys = super().existing_keys(meter_id)
        time.sleep(0.05)
        return keys


def test_insert_batch_is_idempotent():
    store = ReadingStore()

    first = store.insert_batch("m1", _samples(3))
    second = store.insert_batch("m1", _samples(3))

    assert (first.inserted, first.duplicates_skipped) == (3, 0)
    assert (second.inserted, second.duplicates_skipped) == (0, 3)
    assert len(store.readings("m1", START, START + timedelta(days=1))) == 3


def test_duplicates_within_one_batch_are_skipped():
    store = ReadingStore()
    samples = [Sample(START, 1.0), Sample(START, 2.0)]

    result = store.insert_batch("m1", samples)

    assert (result.inserted, result.duplicates_skipped) == (1, 1)
    assert store.readings("m1", START, START)[0].value == 1.0


def test_dedup_is_per_meter():
    store = ReadingStore()

    store.insert_batch("m1", _samples(2))
    result = store.insert_batch("m2", _samples(2))

    assert result.inserted == 2


def test_timestamps_are_compared_at_millisecond_precision():
    store = ReadingStore()
    store.insert_batch("m1", [Sample(START, 1.0)])

    sub_millisecond = store.insert_batch("m1", [Sample(START + timedelta(microseconds=400), 1.0)])
    one_millisecond = store.insert_batch("m1", [Sample(START + timedelta(milliseconds=1), 1.0)])

    assert sub_millisecond.duplicates_skipped == 1
    assert one_millisecond.inserted == 1


def test_insert_batch_keeps_imported_fields_and_metadata():
    store = ReadingStore()
    sample = Sample(START, 1.0, fields={"P1": 0.4})

    store.insert_batch("m1", [sample], metadata={"source": "csv_import", "file_name": "a.csv"})

    reading = store.readings("m1", START, START)[0]
    assert reading.imported_fields == {"P1": 0.4}
    assert reading.metadata["file_name"] == "a.csv"


def test_delete_range_is_inclusive():
    store = ReadingStore()
    store.insert_batch("m1", _samples(5))

    deleted = store.delete_range("m1", START + timedelta(minutes=30), START + timedelta(minutes=90))

    assert deleted == 3
    remaining = store.readings("m1", START, START + timedelta(days=1))
    assert [reading.timestamp for reading in remaining] == [START, START + timedelta(minutes=120)]


def test_iter_readings_pages_in_meter_then_time_order():
    store = ReadingStore()
    store.insert_batch("b", _samples(3))
    store.insert_batch("a", list(reversed(_samples(2))))

    readings = list(store.iter_readings(["b", "a"], START, START + timedelta(days=1), page_size=2))

    assert [(reading.meter_id, reading.timestamp) for reading in readings] == [
        ("a", START),
        ("a", START + timedelta(minutes=30)),
        ("b", START),
        ("b", START + timedelta(minutes=30)),
        ("b", START + timedelta(minutes=60)),
    ]


def test_failed_batch_reports_rows_inserted_before_it():
    backend = FailingBackend(fail_on_call=2, error=RuntimeError("disk full"))
    store = ReadingStore(backend, batch_size=2)

    with pytest.raises(StoreWriteError) as excinfo:
        store.insert_batch("m1", _samples(5))

    assert excinfo.value.inserted_before_failure == 2
    assert len(store.readings("m1", START, START + timedelta(days=1))) == 2


def test_unreachable_backend_is_systemic():
    backend = FailingBackend(fail_on_call=1, error=ConnectionError("refused"))
    store = ReadingStore(backend)

    with pytest.raises(StoreUnavailableError):
        store.insert_batch("m1", _samples(1))


def test_replace_range_swaps_the_window():
    store = ReadingStore()
    store.insert_batch("m1", _samples(3, value=1.0))
    replacement = [reading for reading in store.readings("m1", START, START)]

    deleted, inserted = store.replace_range("m1", START, START + timedelta(hours=2), replacement)

    assert (deleted, inserted) == (3, 1)


def test_batch_size_must_be_positive():
    with pytest.raises(ValueError):
        ReadingStore(batch_size=0)


def test_concurrent_inserts_for_one_meter_do_not_duplicate():
    store = ReadingStore(SlowKeysBackend())
    batches = [_samples(6), [Sample(START + timedelta(minutes=30 * i), 2.0) for i in range(3, 9)]]
    results = []
    errors = []
    start = threading.Barrier(len(batches))

    def insert(samples):
        start.wait()
        try:
            results.append(store.insert_batch("m1", samples))
        except Exception as exc:
            errors.append(exc)

    threads = [threading.Thread(target=insert, args=(samples,)) for samples in batches]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    stored = store.readings("m1", START, START + timedelta(days=1))
    assert errors == []
    assert sum(result.inserted for result in results) == 9
    assert sum(result.duplicates_skipped for result in results) == 3
    assert len({reading.timestamp_key for reading in stored}) == len(stored) == 9
