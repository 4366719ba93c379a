from __future__ import annotations

import calendar
import logging
from datetime import date, timedelta
from typing import Iterable, List, Sequence

from .errors import ConfigurationError
from .models import CostResult, FixedCharge, TariffBlock, TariffDefinition
from .tariffs import (
    ALL_YEAR,
    HIGH_DEMAND,
    HIGH_DEMAND_MONTHS,
    LOW_DEMAND,
    PERIODIC_CHARGE_KINDS,
    validate_blocks,
)

logger = logging.getLogger(__name__)


def compute_cost(
    tariff: TariffDefinition,
    usage_kwh: float,
    period_days: int,
    *,
    max_kva: float = 0.0,
    season: str = LOW_DEMAND,
) -> CostResult:
    """Cost of ``usage_kwh`` over a billing period of ``period_days`` days.

    Fixed charges are pro-rated by day against their cadence. ``season``
    selects seasonal flat rates and demand rates when the tariff has them.
    """

    if tariff.uses_tou:
        raise ConfigurationError(
            f"Tariff {tariff.tariff_id} is time-of-use; cost it from a usage series"
        )
    if period_days < 0:
        raise ValueError("period_days must not be negative")

    energy_cost = energy_cost_for(tariff, usage_kwh, high_demand=season == HIGH_DEMAND)
    fixed = fixed_charges_for_days(tariff.fixed_charges, period_days)
    demand = demand_cost(tariff, max_kva, high_demand=season == HIGH_DEMAND)
    return build_result(usage_kwh, energy_cost, fixed, demand)


def compute_cost_for_range(
    tariff: TariffDefinition,
    usage_kwh: float,
    date_from: date,
    date_to: date,
    *,
    max_kva: float = 0.0,
) -> CostResult:
    """Cost over the inclusive calendar range ``[date_from, date_to]``.

    Monthly charges are pro-rated per calendar month actually covered.
    """

    if tariff.uses_tou:
        raise ConfigurationError(
            f"Tariff {tariff.tariff_id} is time-of-use; cost it from a usage series"
        )
    if date_to < date_from:
        raise ValueError("date_to must not be before date_from")

    # one winter: both ends in the same June to August window
    entirely_high = (
        date_from.year == date_to.year
        and date_from.month in HIGH_DEMAND_MONTHS
        and date_to.month in HIGH_DEMAND_MONTHS
    )
    touches_high = date_from.month in HIGH_DEMAND_MONTHS or date_to.month in HIGH_DEMAND_MONTHS

    energy_cost = energy_cost_for(tariff, usage_kwh, high_demand=entirely_high)
    fixed = prorated_fixed_charges(tariff.fixed_charges, date_from, date_to)
    demand = demand_cost(tariff, max_kva, high_demand=touches_high)
    return build_result(usage_kwh, energy_cost, fixed, demand)


def energy_cost_for(tariff: TariffDefinition, usage_kwh: float, *, high_demand: bool) -> float:
    if tariff.blocks:
        return block_energy_cost(tariff.blocks, usage_kwh)
    rates = tariff.seasonal_rates
    if rates:
        if ALL_YEAR in rates:
            rate = rates[ALL_YEAR]
        elif high_demand and HIGH_DEMAND in rates:
            rate = rates[HIGH_DEMAND]
        else:
            rate = rates.get(LOW_DEMAND, rates.get(HIGH_DEMAND, 0.0))
        return max(usage_kwh, 0.0) * rate / 100
    raise ConfigurationError(
        f"Tariff {tariff.tariff_id} has no pricing structure (no blocks, TOU periods or seasonal rates)"
    )


def block_energy_cost(blocks: Iterable[TariffBlock], usage_kwh: float) -> float:
    """Walk the block ladder from the bottom, filling each block in turn.

    Usage above a bounded top block is left unpriced.
    """

    remaining = usage_kwh
    cost = 0.0
    for block in validate_blocks(blocks):
        if remaining <= 0:
            break
        capacity = remaining if block.unbounded else block.to_kwh - block.from_kwh
        consumed = min(remaining, capacity)
        cost += consumed * block.cents_per_kwh / 100
        remaining -= consumed
    if remaining > 1e-9:
        logger.warning(
            "Usage of %s kWh exceeds the top tariff block by %.3f kWh", usage_kwh, remaining
        )
    return cost


def fixed_charges_for_days(charges: Sequence[FixedCharge], period_days: int) -> float:
    total = 0.0
    for charge in periodic_charges(charges):
        if period_days == charge.cadence_days:
            total += charge.amount
        else:
            total += charge.amount * period_days / charge.cadence_days
    return total


def prorated_fixed_charges(charges: Sequence[FixedCharge], date_from: date, date_to: date) -> float:
    period_days = (date_to - date_from).days + 1
    total = 0.0
    for charge in periodic_charges(charges):
        if charge.cadence == "monthly":
            total += prorated_monthly_charge(charge.amount, date_from, date_to)
        else:
            total += charge.amount * period_days / charge.cadence_days
    return total


def is_periodic_charge(charge: FixedCharge) -> bool:
    return charge.kind.strip().lower() in PERIODIC_CHARGE_KINDS


def periodic_charges(charges: Iterable[FixedCharge]) -> List[FixedCharge]:
    """Charges billed per period; demand and network tags are priced elsewhere."""

    return [charge for charge in charges if is_periodic_charge(charge)]


def prorated_monthly_charge(monthly_amount: float, date_from: date, date_to: date) -> float:
    """Charge each calendar month for the share of its days inside the range."""

    total = 0.0
    current = date_from
    while current <= date_to:
        days_in_month = calendar.monthrange(current.year, current.month)[1]
        month_end = date(current.year, current.month, days_in_month)
        period_end = min(month_end, date_to)
        days = (period_end - current).days + 1
        total += monthly_amount * days / days_in_month
        current = month_end + timedelta(days=1)
    return total


def demand_cost(tariff: TariffDefinition, max_kva: float, *, high_demand: bool) -> float:
    if max_kva <= 0 or not tariff.demand_charges:
        return 0.0
    season = HIGH_DEMAND if high_demand else LOW_DEMAND
    rate = tariff.demand_charges.get(season, tariff.demand_charges.get(ALL_YEAR, 0.0))
    return max_kva * rate


def build_result(
    usage_kwh: float,
    energy_cost: float,
    fixed_charges: float,
    demand_charges: float = 0.0,
) -> CostResult:
    total = energy_cost + fixed_charges + demand_charges
    return CostResult(
        total_kwh=usage_kwh,
        energy_cost=energy_cost,
        fixed_charges=fixed_charges,
        demand_charges=demand_charges,
        total_cost=total,
        avg_cost_per_kwh=total / usage_kwh if usage_kwh > 0 else 0.0,
    )
