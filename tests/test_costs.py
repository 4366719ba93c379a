from datetime import date

import pytest

from meter_reconciliation.costs import (
    compute_cost,
    compute_cost_for_range,
    fixed_charges_for_days,
    prorated_monthly_charge,
)
from meter_reconciliation.errors import ConfigurationError
from meter_reconciliation.models import FixedCharge, TariffBlock, TariffDefinition, TouPeriod

BLOCKS = (TariffBlock(0, 600, 192), TariffBlock(600, None, 250))


def _tariff(**overrides):
    values = {"tariff_id": "t", "blocks": BLOCKS}
    values.update(overrides)
    return TariffDefinition(**values)


def test_block_boundaries():
    tariff = _tariff()

    assert compute_cost(tariff, 600, 30).energy_cost == pytest.approx(1152.0)
    assert compute_cost(tariff, 700, 30).energy_cost == pytest.approx(1402.0)


def test_unsorted_blocks_cost_the_same():
    tariff = _tariff(blocks=tuple(reversed(BLOCKS)))

    assert compute_cost(tariff, 700, 30).energy_cost == pytest.approx(1402.0)


def test_zero_usage_has_zero_average():
    tariff = _tariff(fixed_charges=(FixedCharge("basic", 300.0),))

    result = compute_cost(tariff, 0, 30)

    assert result.energy_cost == 0.0
    assert result.total_cost == pytest.approx(300.0)
    assert result.avg_cost_per_kwh == 0.0


def test_average_cost_includes_fixed_charges():
    tariff = _tariff(fixed_charges=(FixedCharge("basic", 48.0),))

    result = compute_cost(tariff, 600, 30)

    assert result.total_cost == pytest.approx(1200.0)
    assert result.avg_cost_per_kwh == pytest.approx(2.0)


def test_fixed_charges_prorate_by_day():
    charges = (FixedCharge("basic", 300.0, "monthly"), FixedCharge("service", 2.0, "daily"))

    assert fixed_charges_for_days(charges, 30) == pytest.approx(360.0)
    assert fixed_charges_for_days(charges, 15) == pytest.approx(180.0)
    assert fixed_charges_for_days((FixedCharge("basic_charge", 365.0, "annual"),), 10) == pytest.approx(10.0)


def test_only_periodic_charges_are_billed():
    tariff = _tariff(
        fixed_charges=(
            FixedCharge("basic_monthly", 100.0, "monthly"),
            FixedCharge("demand_charge", 999.0, "monthly"),
            FixedCharge("network_charge", 50.0, "monthly"),
        )
    )

    assert compute_cost(tariff, 0, 30).fixed_charges == pytest.approx(100.0)
    ranged = compute_cost_for_range(tariff, 0, date(2024, 1, 1), date(2024, 1, 31))
    assert ranged.fixed_charges == pytest.approx(100.0)


def test_monthly_charge_prorates_per_calendar_month():
    assert prorated_monthly_charge(310.0, date(2024, 1, 1), date(2024, 1, 31)) == pytest.approx(310.0)
    assert prorated_monthly_charge(310.0, date(2024, 1, 15), date(2024, 2, 14)) == pytest.approx(
        310.0 * 17 / 31 + 310.0 * 14 / 29
    )


def test_cost_for_range_uses_calendar_proration():
    tariff = _tariff(fixed_charges=(FixedCharge("basic", 310.0),))

    result = compute_cost_for_range(tariff, 600, date(2024, 1, 1), date(2024, 1, 31))

    assert result.fixed_charges == pytest.approx(310.0)
    assert result.total_cost == pytest.approx(1462.0)


def test_seasonal_rates_without_blocks():
    tariff = _tariff(blocks=(), seasonal_rates={"low_demand": 100.0, "high_demand": 200.0})

    winter = compute_cost_for_range(tariff, 10, date(2024, 6, 1), date(2024, 7, 31))
    mixed = compute_cost_for_range(tariff, 10, date(2024, 5, 1), date(2024, 6, 30))
    flagged = compute_cost(tariff, 10, 30, season="high_demand")

    assert winter.energy_cost == pytest.approx(20.0)
    assert mixed.energy_cost == pytest.approx(10.0)
    assert flagged.energy_cost == pytest.approx(20.0)


def test_range_spanning_two_winters_is_not_high_demand():
    tariff = _tariff(blocks=(), seasonal_rates={"low_demand": 100.0, "high_demand": 300.0})

    result = compute_cost_for_range(tariff, 1, date(2024, 8, 1), date(2025, 6, 30))

    assert result.energy_cost == pytest.approx(1.0)


def test_all_year_rate_wins():
    tariff = _tariff(blocks=(), seasonal_rates={"all_year": 150.0, "high_demand": 300.0})

    result = compute_cost_for_range(tariff, 10, date(2024, 6, 1), date(2024, 6, 30))

    assert result.energy_cost == pytest.approx(15.0)


def test_demand_charge_uses_high_rate_when_range_touches_winter():
    tariff = _tariff(demand_charges={"low_demand": 50.0, "high_demand": 80.0})

    touching = compute_cost_for_range(tariff, 0, date(2024, 5, 20), date(2024, 6, 5), max_kva=10)
    summer = compute_cost_for_range(tariff, 0, date(2024, 1, 1), date(2024, 1, 31), max_kva=10)

    assert touching.demand_charges == pytest.approx(800.0)
    assert summer.demand_charges == pytest.approx(500.0)
    assert touching.total_cost == pytest.approx(800.0)


def test_tariff_without_pricing_is_rejected():
    with pytest.raises(ConfigurationError):
        compute_cost(_tariff(blocks=()), 10, 30)


def test_usage_beyond_top_block_is_not_priced():
    tariff = _tariff(blocks=(TariffBlock(0, 600, 192), TariffBlock(600, 1000, 250)))

    assert compute_cost(tariff, 1200, 30).energy_cost == pytest.approx(2152.0)
    assert compute_cost(tariff, 1000, 30).energy_cost == pytest.approx(2152.0)


def test_tou_tariff_needs_a_series():
    tariff = _tariff(
        uses_tou=True,
        tou_periods=(TouPeriod("all_year", "all_days", 0, 24, 100.0),),
    )

    with pytest.raises(ConfigurationError):
        compute_cost(tariff, 10, 30)


def test_reversed_range_is_rejected():
    with pytest.raises(ValueError):
        compute_cost_for_range(_tariff(), 10, date(2024, 2, 1), date(2024, 1, 1))
