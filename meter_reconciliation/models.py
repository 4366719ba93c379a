from __future__ import annotations

import enum
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Dict, Mapping, Tuple, Union


class Polarity(str, enum.Enum):
    """Whether a meter measures consumption or on-site production."""

    LOAD = "load"
    GENERATION = "generation"

    @property
    def sign(self) -> int:
        return -1 if self is Polarity.GENERATION else 1


class Unit(str, enum.Enum):
    KWH = "kWh"
    KVA = "kVA"


@dataclass(frozen=True)
class ColumnLayout:
    """Describes where date, time and value live in a meter export.

    ``time_column`` of ``None`` means the date column carries a combined
    date-time. ``delimiter`` and ``header_rows`` of ``None`` are detected
    from the text.
    """

    date_column: int = 0
    time_column: int | None = 1
    value_column: int = 2
    decimal_separator: str = ","
    delimiter: str | None = None
    header_rows: int | None = None
    timezone: str = "UTC"
    unit: Unit = Unit.KWH


@dataclass(frozen=True)
class Sample:
    """A parsed candidate reading, not yet stored."""

    timestamp: datetime
    value: float
    fields: Mapping[str, float] = field(default_factory=dict)


@dataclass(frozen=True)
class ParseSuccess:
    row: int
    sample: Sample


@dataclass(frozen=True)
class ParseError:
    row: int
    code: str
    message: str

    def describe(self) -> str:
        return f"Line {self.row}: {self.message}"


ParseResult = Union[ParseSuccess, ParseError]


@dataclass(frozen=True)
class ParsedSeries:
    samples: Tuple[Sample, ...]
    errors: Tuple[ParseError, ...]
    error_count: int
    total_rows: int
    header_rows: int = 0
    columns: Tuple[str, ...] = ()

    @property
    def sample_error_messages(self) -> Tuple[str, ...]:
        return tuple(error.describe() for error in self.errors)


@dataclass(frozen=True)
class Reading:
    """A stored reading; unique per ``(meter_id, timestamp)``."""

    meter_id: str
    timestamp: datetime
    value: float
    unit: Unit = Unit.KWH
    metadata: Mapping[str, object] = field(default_factory=dict)

    @property
    def imported_fields(self) -> Mapping[str, float]:
        fields = self.metadata.get("imported_fields")
        if isinstance(fields, Mapping):
            return fields
        return {}

    @property
    def timestamp_key(self) -> str:
        return timestamp_key(self.timestamp)


@dataclass(frozen=True)
class InsertResult:
    inserted: int
    duplicates_skipped: int


@dataclass(frozen=True)
class TariffBlock:
    from_kwh: float
    to_kwh: float | None
    cents_per_kwh: float

    @property
    def unbounded(self) -> bool:
        return self.to_kwh is None


CADENCE_DAYS: Dict[str, int] = {
    "daily": 1,
    "weekly": 7,
    "monthly": 30,
    "annual": 365,
}


@dataclass(frozen=True)
class FixedCharge:
    kind: str
    amount: float
    cadence: str = "monthly"

    @property
    def cadence_days(self) -> int:
        return CADENCE_DAYS[self.cadence]


@dataclass(frozen=True)
class TouPeriod:
    season: str
    day_type: str
    start_hour: int
    end_hour: int
    cents_per_kwh: float


@dataclass(frozen=True)
class TariffDefinition:
    """A published tariff: stepped blocks, optional TOU table, fixed charges.

    ``seasonal_rates`` holds flat cents/kWh keyed by ``all_year``,
    ``low_demand`` or ``high_demand`` and is used when there are no blocks.
    ``demand_charges`` holds currency per kVA keyed by the same seasons.
    """

    tariff_id: str
    name: str = ""
    blocks: Tuple[TariffBlock, ...] = ()
    fixed_charges: Tuple[FixedCharge, ...] = ()
    tou_periods: Tuple[TouPeriod, ...] = ()
    uses_tou: bool = False
    seasonal_rates: Mapping[str, float] = field(default_factory=dict)
    demand_charges: Mapping[str, float] = field(default_factory=dict)


@dataclass(frozen=True)
class CostResult:
    total_kwh: float
    energy_cost: float
    fixed_charges: float
    total_cost: float
    avg_cost_per_kwh: float
    demand_charges: float = 0.0


@dataclass(frozen=True)
class ImportItem:
    meter_id: str
    file_name: str
    data: bytes
    layout: ColumnLayout = ColumnLayout()


class ImportStatus(str, enum.Enum):
    COMPLETED = "completed"
    FAILED = "failed"
    NOT_PROCESSED = "not_processed"
    CANCELLED = "cancelled"


@dataclass(frozen=True)
class ImportOutcome:
    file_name: str
    meter_id: str
    status: ImportStatus
    total_rows: int = 0
    inserted: int = 0
    duplicates_skipped: int = 0
    parse_errors: int = 0
    sample_error_messages: Tuple[str, ...] = ()
    error: str | None = None
    first_timestamp: datetime | None = None
    last_timestamp: datetime | None = None


class AggregationStatus(str, enum.Enum):
    COMPLETED = "completed"
    EMPTY = "empty"


@dataclass(frozen=True)
class SlotValue:
    slot: datetime
    values: Mapping[str, float]


@dataclass(frozen=True)
class Correction:
    meter_id: str
    timestamp: datetime
    column: str
    original_value: float
    corrected_value: float
    reason: str


@dataclass(frozen=True)
class AggregationResult:
    parent_meter_id: str
    status: AggregationStatus
    slots: Tuple[SlotValue, ...] = ()
    column_totals: Mapping[str, float] = field(default_factory=dict)
    column_max_values: Mapping[str, float] = field(default_factory=dict)
    total_kwh: float = 0.0
    readings_used: int = 0
    deleted: int = 0
    corrections: Tuple[Correction, ...] = ()


@dataclass(frozen=True)
class ColumnSetting:
    """How one selected column feeds a meter's totals."""

    operation: str = "sum"
    factor: float = 1.0


@dataclass(frozen=True)
class MeterTotals:
    column_totals: Mapping[str, float] = field(default_factory=dict)
    column_max_values: Mapping[str, float] = field(default_factory=dict)
    total_kwh_positive: float = 0.0
    total_kwh_negative: float = 0.0
    total_kwh: float = 0.0

    @classmethod
    def from_total(cls, total_kwh: float) -> MeterTotals:
        return cls(
            total_kwh_positive=max(total_kwh, 0.0),
            total_kwh_negative=min(total_kwh, 0.0),
            total_kwh=total_kwh,
        )


def ensure_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def timestamp_key(value: datetime) -> str:
    """ISO-8601 UTC string at millisecond precision, used for dedup."""

    utc = ensure_utc(value)
    return utc.isoformat(timespec="milliseconds").replace("+00:00", "Z")
