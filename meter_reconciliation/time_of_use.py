from __future__ import annotations

from datetime import date, datetime
from typing import AbstractSet, Iterable, List, Sequence, Tuple
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from .costs import build_result, demand_cost, fixed_charges_for_days
from .errors import ConfigurationError
from .models import CostResult, Reading, TariffDefinition, TouPeriod
from .tariffs import ALL_YEAR, HIGH_DEMAND_MONTHS, season_for_month

DEFAULT_TIMEZONE = "Africa/Johannesburg"

UsagePoint = Tuple[datetime, float]


def compute_tou_cost(
    tariff: TariffDefinition,
    usage_series: Iterable[UsagePoint],
    *,
    holidays: AbstractSet[date] = frozenset(),
    timezone: str = DEFAULT_TIMEZONE,
    period_days: int | None = None,
    max_kva: float = 0.0,
) -> CostResult:
    """Rate every ``(timestamp, kwh)`` slot at the TOU period it falls in.

    Slots are classified in local time: season by month, day type by
    weekday or holiday, and hour of day.
    """

    if not tariff.tou_periods:
        raise ConfigurationError(f"Tariff {tariff.tariff_id} has no TOU periods")
    try:
        tzinfo = ZoneInfo(timezone)
    except ZoneInfoNotFoundError as exc:
        raise ConfigurationError(f"Unknown timezone: {timezone}") from exc

    total_kwh = 0.0
    energy_cost = 0.0
    local_dates: List[date] = []
    for timestamp, kwh in usage_series:
        local_dt = timestamp.astimezone(tzinfo)
        period = match_period(tariff.tou_periods, local_dt, holidays)
        energy_cost += kwh * period.cents_per_kwh / 100
        total_kwh += kwh
        local_dates.append(local_dt.date())

    if period_days is None:
        period_days = (max(local_dates) - min(local_dates)).days + 1 if local_dates else 0
    fixed = fixed_charges_for_days(tariff.fixed_charges, period_days)
    high_demand = any(day.month in HIGH_DEMAND_MONTHS for day in local_dates)
    demand = demand_cost(tariff, max_kva, high_demand=high_demand)
    return build_result(total_kwh, energy_cost, fixed, demand)


def usage_from_readings(readings: Iterable[Reading]) -> List[UsagePoint]:
    return [(reading.timestamp, reading.value) for reading in readings]


def day_type_for(day: date, holidays: AbstractSet[date] = frozenset()) -> str:
    if day in holidays:
        return "public_holiday"
    weekday = day.weekday()
    if weekday == 5:
        return "saturday"
    if weekday == 6:
        return "sunday"
    return "weekday"


def match_period(
    periods: Sequence[TouPeriod],
    local_dt: datetime,
    holidays: AbstractSet[date] = frozenset(),
) -> TouPeriod:
    """Most specific period covering ``local_dt``.

    A public holiday without its own row is rated as a Sunday.
    """

    season = season_for_month(local_dt.month)
    day_type = day_type_for(local_dt.date(), holidays)
    period = _best_match(periods, season, day_type, local_dt.hour)
    if day_type == "public_holiday" and (period is None or period.day_type != day_type):
        period = _best_match(periods, season, "sunday", local_dt.hour) or period
    if period is None:
        raise ConfigurationError(
            f"No TOU period covers {local_dt.isoformat()} ({season}, {day_type}, hour {local_dt.hour})"
        )
    return period


def _best_match(
    periods: Sequence[TouPeriod], season: str, day_type: str, hour: int
) -> TouPeriod | None:
    best: TouPeriod | None = None
    best_score = -1
    for period in periods:
        if not _covers_hour(period, hour):
            continue
        if period.season == season:
            season_score = 1
        elif period.season == ALL_YEAR:
            season_score = 0
        else:
            continue
        day_score = _day_score(period.day_type, day_type)
        if day_score < 0:
            continue
        score = day_score * 2 + season_score
        if score > best_score:
            best, best_score = period, score
    return best


def _day_score(period_day_type: str, day_type: str) -> int:
    if period_day_type == day_type:
        return 2
    if period_day_type == "weekend" and day_type in {"saturday", "sunday"}:
        return 1
    if period_day_type == "all_days":
        return 0
    return -1


def _covers_hour(period: TouPeriod, hour: int) -> bool:
    if period.start_hour < period.end_hour:
        return period.start_hour <= hour < period.end_hour
    # wraps past midnight, e.g. 22-6
    return hour >= period.start_hour or hour < period.end_hour
