"""Meter reading reconciliation: parsing, storage, hierarchy aggregation and tariff costing."""

from .aggregates import HierarchyAggregator, apply_column_settings, round_to_slot, totals_for_result
from .costs import compute_cost, compute_cost_for_range
from .errors import (
    ConfigurationError,
    ReconciliationError,
    StoreUnavailableError,
    StoreWriteError,
    SystemicError,
    UnreadableFileError,
)
from .hierarchy import MeterCatalog, load_catalog
from .imports import ImportControl, ImportOrchestrator, refresh_ancestors
from .models import (
    AggregationResult,
    ColumnLayout,
    ColumnSetting,
    CostResult,
    ImportItem,
    ImportOutcome,
    ImportStatus,
    MeterTotals,
    Polarity,
    Reading,
    TariffDefinition,
)
from .parsing import parse_text, parse_upload
from .reporting import reconciliation_summary, seasonal_averages
from .store import MemoryBackend, ReadingStore
from .tariffs import TariffCatalog, read_tariff_from_mapping, read_tariffs_from_json
from .time_of_use import compute_tou_cost

__all__ = [
    "AggregationResult",
    "apply_column_settings",
    "ColumnLayout",
    "ColumnSetting",
    "compute_cost",
    "compute_cost_for_range",
    "compute_tou_cost",
    "ConfigurationError",
    "CostResult",
    "HierarchyAggregator",
    "ImportControl",
    "ImportItem",
    "ImportOrchestrator",
    "ImportOutcome",
    "ImportStatus",
    "load_catalog",
    "MemoryBackend",
    "MeterCatalog",
    "MeterTotals",
    "parse_text",
    "parse_upload",
    "Polarity",
    "read_tariff_from_mapping",
    "read_tariffs_from_json",
    "Reading",
    "ReadingStore",
    "reconciliation_summary",
    "ReconciliationError",
    "refresh_ancestors",
    "round_to_slot",
    "seasonal_averages",
    "StoreUnavailableError",
    "StoreWriteError",
    "SystemicError",
    "TariffCatalog",
    "TariffDefinition",
    "totals_for_result",
    "UnreadableFileError",
]
