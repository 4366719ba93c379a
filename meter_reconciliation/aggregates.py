from __future__ import annotations

import logging
import re
from collections import defaultdict
from datetime import datetime, timedelta
from typing import Dict, Iterable, Iterator, List, Mapping, Sequence, Tuple

from .errors import ConfigurationError
from .hierarchy import MeterCatalog
from .models import (
    AggregationResult,
    AggregationStatus,
    ColumnSetting,
    Correction,
    MeterTotals,
    Polarity,
    Reading,
    SlotValue,
    Unit,
    ensure_utc,
)
from .store import PAGE_SIZE, ReadingStore

logger = logging.getLogger(__name__)

SLOT_MINUTES = 30
KWH_COLUMN = "kWh"
AGGREGATION_SOURCE = "hierarchical_aggregation"

ENERGY_LIMIT = 10_000.0
DEMAND_LIMIT = 50_000.0
OTHER_LIMIT = 100_000.0

COLUMN_OPERATIONS = ("sum", "average", "max", "min")

_PHASE_ENERGY = re.compile(r"^p\d", re.IGNORECASE)


def round_to_slot(timestamp: datetime) -> datetime:
    """Round to the nearest half hour: <15 down, [15, 45) to :30, >=45 up."""

    utc = ensure_utc(timestamp)
    base = utc.replace(minute=0, second=0, microsecond=0)
    minute = utc.minute
    if minute < 15:
        return base
    if minute < 45:
        return base + timedelta(minutes=SLOT_MINUTES)
    return base + timedelta(hours=1)


def slot_window(start: datetime, end: datetime) -> Tuple[datetime, datetime]:
    """Widen ``[start, end]`` to every reading that rounds into the slots it touches."""

    half = timedelta(minutes=SLOT_MINUTES // 2)
    return round_to_slot(start) - half, round_to_slot(end) + half - timedelta(microseconds=1)


def is_max_tracked(column: str) -> bool:
    """kVA-like columns track their peak instead of a sum."""

    lowered = column.lower()
    return "kva" in lowered or lowered == "s"


def is_energy_column(column: str) -> bool:
    if is_max_tracked(column):
        return False
    return "kwh" in column.lower() or bool(_PHASE_ENERGY.match(column))


def outlier_limit(column: str) -> float:
    lowered = column.lower()
    if "kwh" in lowered or re.fullmatch(r"p\d+", lowered):
        return ENERGY_LIMIT
    if is_max_tracked(column):
        return DEMAND_LIMIT
    return OTHER_LIMIT


def column_value(reading: Reading, column: str) -> float | None:
    if column == KWH_COLUMN:
        return reading.value
    raw = reading.imported_fields.get(column)
    if raw is None:
        return None
    try:
        return float(raw)
    except (TypeError, ValueError):
        return None


class HierarchyAggregator:
    """Builds a parent meter's series from its children's stored readings."""

    def __init__(
        self,
        store: ReadingStore,
        *,
        page_size: int = PAGE_SIZE,
        correct_outliers: bool = False,
    ) -> None:
        self.store = store
        self.page_size = page_size
        self.correct_outliers = correct_outliers

    def aggregate(
        self,
        parent_meter_id: str,
        child_ids: Sequence[str],
        polarities: Mapping[str, Polarity],
        start: datetime,
        end: datetime,
        columns: Sequence[str] = (KWH_COLUMN,),
    ) -> AggregationResult:
        start, end = ensure_utc(start), ensure_utc(end)
        slots: Dict[datetime, Dict[str, float]] = defaultdict(dict)
        corrections: List[Correction] = []
        readings_used = 0

        readings = self.store.iter_readings(child_ids, start, end, page_size=self.page_size)
        for previous, reading, following in _with_neighbours(readings):
            readings_used += 1
            sign = polarities.get(reading.meter_id, Polarity.LOAD).sign
            bucket = slots[round_to_slot(reading.timestamp)]
            for column in columns:
                value = column_value(reading, column)
                if value is None:
                    continue
                if self.correct_outliers:
                    value = self._checked(reading, column, value, previous, following, corrections)
                bucket[column] = bucket.get(column, 0.0) + value * sign

        if not readings_used:
            deleted = self.store.delete_range(parent_meter_id, start, end)
            logger.info(
                "No child readings for parent %s between %s and %s", parent_meter_id, start, end
            )
            return AggregationResult(
                parent_meter_id=parent_meter_id,
                status=AggregationStatus.EMPTY,
                deleted=deleted,
            )

        ordered = tuple(SlotValue(slot=slot, values=dict(slots[slot])) for slot in sorted(slots))
        column_totals, column_max_values = summarize_columns(ordered, columns)
        total_kwh = sum(value for column, value in column_totals.items() if is_energy_column(column))

        synthetic = [_synthetic_reading(parent_meter_id, slot) for slot in ordered]
        window_start = min(start, ordered[0].slot)
        window_end = max(end, ordered[-1].slot)
        deleted, inserted = self.store.replace_range(parent_meter_id, window_start, window_end, synthetic)

        logger.info(
            "Aggregated %d readings from %d children into %d slots for parent %s (replaced %d)",
            readings_used,
            len(child_ids),
            inserted,
            parent_meter_id,
            deleted,
        )
        return AggregationResult(
            parent_meter_id=parent_meter_id,
            status=AggregationStatus.COMPLETED,
            slots=ordered,
            column_totals=column_totals,
            column_max_values=column_max_values,
            total_kwh=total_kwh,
            readings_used=readings_used,
            deleted=deleted,
            corrections=tuple(corrections),
        )

    def aggregate_meter(
        self,
        catalog: MeterCatalog,
        parent_meter_id: str,
        start: datetime,
        end: datetime,
        columns: Sequence[str] = (KWH_COLUMN,),
    ) -> AggregationResult:
        children = catalog.children(parent_meter_id)
        if not children:
            raise ConfigurationError(f"Meter {parent_meter_id} has no child meters to aggregate")
        polarities = {child: catalog.polarity(child) for child in children}
        return self.aggregate(parent_meter_id, children, polarities, start, end, columns)

    def aggregate_all(
        self,
        catalog: MeterCatalog,
        start: datetime,
        end: datetime,
        columns: Sequence[str] = (KWH_COLUMN,),
    ) -> List[AggregationResult]:
        """Aggregate every parent, deepest first, so nested parents are fresh."""

        return [
            self.aggregate_meter(catalog, parent, start, end, columns)
            for parent in catalog.parents_bottom_up()
        ]

    def _checked(
        self,
        reading: Reading,
        column: str,
        value: float,
        previous: Reading | None,
        following: Reading | None,
        corrections: List[Correction],
    ) -> float:
        limit = outlier_limit(column)
        if abs(value) <= limit:
            return value

        before = column_value(previous, column) if previous is not None else None
        after = column_value(following, column) if following is not None else None
        before = before if before is not None and abs(before) <= limit else None
        after = after if after is not None and abs(after) <= limit else None

        if before is not None and after is not None:
            corrected = (before + after) / 2
            reason = f"Interpolated from neighbours ({before:.2f}, {after:.2f})"
        elif before is not None:
            corrected = before
            reason = f"Used previous value ({before:.2f})"
        elif after is not None:
            corrected = after
            reason = f"Used next value ({after:.2f})"
        else:
            corrected = 0.0
            reason = "Zeroed out (no valid neighbours)"

        logger.warning(
            "Corrupt value for meter %s at %s in %s: %s -> %.2f (%s)",
            reading.meter_id,
            reading.timestamp.isoformat(),
            column,
            value,
            corrected,
            reason,
        )
        corrections.append(
            Correction(
                meter_id=reading.meter_id,
                timestamp=reading.timestamp,
                column=column,
                original_value=value,
                corrected_value=corrected,
                reason=reason,
            )
        )
        return corrected


def summarize_columns(
    slots: Iterable[SlotValue],
    columns: Sequence[str],
) -> Tuple[Dict[str, float], Dict[str, float]]:
    """Column sums for summed quantities and peaks for kVA-like ones."""

    column_totals: Dict[str, float] = {}
    column_max_values: Dict[str, float] = {}
    for slot in slots:
        for column in columns:
            if column not in slot.values:
                continue
            value = slot.values[column]
            if is_max_tracked(column):
                current = column_max_values.get(column)
                column_max_values[column] = value if current is None else max(current, value)
            else:
                column_totals[column] = column_totals.get(column, 0.0) + value
    return column_totals, column_max_values


def apply_column_settings(
    column_totals: Mapping[str, float],
    column_max_values: Mapping[str, float],
    row_count: int,
    settings: Mapping[str, ColumnSetting],
) -> MeterTotals:
    """Reduce raw column sums and peaks to a meter's reported totals.

    Only columns named in ``settings`` survive. ``average`` divides the raw
    sum by ``row_count``, ``max`` takes the tracked peak (the column is
    dropped when there is none) and ``min`` falls back to the sum. Every
    result is scaled by the column factor. Summed non-kVA columns feed the
    signed kWh totals.
    """

    processed_totals: Dict[str, float] = {}
    processed_max_values: Dict[str, float] = {}
    positive = negative = total = 0.0

    for column, raw_sum in column_totals.items():
        setting = settings.get(column)
        if setting is None:
            continue
        operation = setting.operation
        if operation not in COLUMN_OPERATIONS:
            raise ConfigurationError(f"Unknown operation {operation!r} for column {column}")
        if operation == "max":
            if column not in column_max_values:
                continue
            processed_max_values[column] = column_max_values[column] * setting.factor
            continue
        if operation == "average":
            result = raw_sum / row_count if row_count > 0 else 0.0
        else:
            result = raw_sum
        result *= setting.factor
        processed_totals[column] = result
        if "kva" in column.lower():
            continue
        if result > 0:
            positive += result
        elif result < 0:
            negative += result
        total += result

    for column, raw_value in column_max_values.items():
        setting = settings.get(column)
        if setting is not None:
            processed_max_values[column] = raw_value * setting.factor

    return MeterTotals(
        column_totals=processed_totals,
        column_max_values=processed_max_values,
        total_kwh_positive=positive,
        total_kwh_negative=negative,
        total_kwh=total,
    )


def totals_for_result(
    result: AggregationResult,
    settings: Mapping[str, ColumnSetting] | None = None,
) -> MeterTotals:
    """Meter totals for an aggregation; every column is summed when no settings are given."""

    if settings is None:
        columns = [*result.column_totals, *result.column_max_values]
        settings = {column: ColumnSetting() for column in columns}
    return apply_column_settings(
        result.column_totals, result.column_max_values, len(result.slots), settings
    )


def _synthetic_reading(parent_meter_id: str, slot: SlotValue) -> Reading:
    energy = [value for column, value in slot.values.items() if is_energy_column(column)]
    peaks = [value for column, value in slot.values.items() if is_max_tracked(column)]
    # a demand-only aggregation stores its slot peak as kVA
    if not energy and peaks:
        value, unit = max(peaks), Unit.KVA
    else:
        value, unit = sum(energy), Unit.KWH
    return Reading(
        meter_id=parent_meter_id,
        timestamp=slot.slot,
        value=value,
        unit=unit,
        metadata={"source": AGGREGATION_SOURCE, "imported_fields": dict(slot.values)},
    )


def _with_neighbours(
    readings: Iterable[Reading],
) -> Iterator[Tuple[Reading | None, Reading, Reading | None]]:
    """Yield (previous, current, next) with neighbours limited to the same meter."""

    previous: Reading | None = None
    current: Reading | None = None
    for reading in readings:
        if current is not None:
            following = reading if reading.meter_id == current.meter_id else None
            yield previous, current, following
            previous = current if reading.meter_id == current.meter_id else None
        current = reading
    if current is not None:
        yield previous, current, None
