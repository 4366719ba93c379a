from __future__ import annotations

from dataclasses import dataclass
from datetime import date
from typing import Iterable, List, Tuple

from .models import MeterTotals, Reading
from .tariffs import HIGH_DEMAND_MONTHS


@dataclass(frozen=True)
class SeasonalAverages:
    winter_average: float | None
    summer_average: float | None


@dataclass(frozen=True)
class ReconciliationSummary:
    bulk_total_kwh: float
    solar_meter_total_kwh: float
    grid_negative_kwh: float
    other_total_kwh: float
    tenant_total_kwh: float
    total_supply_kwh: float
    recovery_rate_pct: float
    discrepancy_kwh: float


def seasonal_averages(points: Iterable[Tuple[date, float]]) -> SeasonalAverages:
    """Mean per season, winter being June to August.

    Zero and negative values are left out; a season without data is ``None``.
    """

    winter: List[float] = []
    summer: List[float] = []
    for day, value in points:
        if value <= 0:
            continue
        if day.month in HIGH_DEMAND_MONTHS:
            winter.append(value)
        else:
            summer.append(value)
    return SeasonalAverages(
        winter_average=_mean(winter),
        summer_average=_mean(summer),
    )


def reconciliation_summary(
    grid_supply: Iterable[MeterTotals],
    solar: Iterable[MeterTotals],
    tenants: Iterable[MeterTotals],
) -> ReconciliationSummary:
    """Compare what came in (grid plus solar) with what tenants consumed.

    A grid meter supplies its positive kWh, or its net total floored at zero
    when nothing positive was recorded. Grid export joins solar as other
    supply, which only counts toward total supply when positive.
    """

    grid_supply = list(grid_supply)
    bulk_total = sum(
        meter.total_kwh_positive if meter.total_kwh_positive > 0 else max(0.0, meter.total_kwh)
        for meter in grid_supply
    )
    solar_total = sum(meter.total_kwh for meter in solar)
    grid_negative = sum(meter.total_kwh_negative for meter in grid_supply)
    other_total = solar_total + grid_negative
    tenant_total = sum(meter.total_kwh for meter in tenants)
    total_supply = bulk_total + max(0.0, other_total)
    return ReconciliationSummary(
        bulk_total_kwh=bulk_total,
        solar_meter_total_kwh=solar_total,
        grid_negative_kwh=grid_negative,
        other_total_kwh=other_total,
        tenant_total_kwh=tenant_total,
        total_supply_kwh=total_supply,
        recovery_rate_pct=_recovery_rate(tenant_total, total_supply),
        discrepancy_kwh=total_supply - tenant_total,
    )


def total_usage(readings: Iterable[Reading]) -> float:
    return sum(reading.value for reading in readings)


def _recovery_rate(tenant_total: float, total_supply: float) -> float:
    if total_supply <= 0:
        return 0.0
    return (tenant_total / total_supply) * 100.0


def _mean(values: List[float]) -> float | None:
    if not values:
        return None
    return sum(values) / len(values)
