from __future__ import annotations

import json
import math
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, Iterable, Mapping, Tuple

from .errors import ConfigurationError
from .models import CADENCE_DAYS, FixedCharge, TariffBlock, TariffDefinition, TouPeriod

ALL_YEAR = "all_year"
HIGH_DEMAND = "high_demand"
LOW_DEMAND = "low_demand"
SEASONS = (ALL_YEAR, HIGH_DEMAND, LOW_DEMAND)
HIGH_DEMAND_MONTHS = frozenset({6, 7, 8})

DAY_TYPES = ("weekday", "saturday", "sunday", "weekend", "public_holiday", "all_days")
# fixed charge kinds billed per period; other kinds (demand, network) are ignored
PERIODIC_CHARGE_KINDS = frozenset(
    {"basic", "basic_monthly", "basic_charge", "service", "service_charge", "fixed", "periodic"}
)


def season_for_month(month: int) -> str:
    """High demand is June to August (southern hemisphere winter)."""

    return HIGH_DEMAND if month in HIGH_DEMAND_MONTHS else LOW_DEMAND


def validate_blocks(blocks: Iterable[TariffBlock]) -> Tuple[TariffBlock, ...]:
    """Return blocks sorted by ``from_kwh`` after checking they form one ladder.

    Blocks must be contiguous and non-overlapping, and only the last one may
    be unbounded.
    """

    ordered = tuple(sorted(blocks, key=lambda block: block.from_kwh))
    for index, block in enumerate(ordered):
        if block.from_kwh < 0:
            raise ConfigurationError(f"Block starting at {block.from_kwh} kWh is negative")
        if block.to_kwh is not None and block.to_kwh <= block.from_kwh:
            raise ConfigurationError(
                f"Block {block.from_kwh}-{block.to_kwh} kWh ends before it starts"
            )
        if block.unbounded and index != len(ordered) - 1:
            raise ConfigurationError("Only the last block may be unbounded")
        if index == 0:
            continue
        previous = ordered[index - 1]
        if math.isclose(previous.to_kwh, block.from_kwh):
            continue
        if block.from_kwh < previous.to_kwh:
            raise ConfigurationError(
                f"Blocks {previous.from_kwh}-{previous.to_kwh} and "
                f"{block.from_kwh}-{block.to_kwh} overlap"
            )
        raise ConfigurationError(
            f"Gap between blocks ending at {previous.to_kwh} and starting at {block.from_kwh} kWh"
        )
    return ordered


def read_tariff_from_mapping(data: Mapping[str, object]) -> TariffDefinition:
    """Build a validated tariff from a JSON-like mapping."""

    try:
        tariff_id = str(data["id"])
        blocks = tuple(
            TariffBlock(
                from_kwh=float(row["from_kwh"]),
                to_kwh=None if row.get("to_kwh") is None else float(row["to_kwh"]),
                cents_per_kwh=float(row["cents_per_kwh"]),
            )
            for row in data.get("blocks", [])
        )
        fixed_charges = tuple(
            FixedCharge(
                kind=str(row["kind"]),
                amount=float(row["amount"]),
                cadence=str(row.get("cadence", "monthly")),
            )
            for row in data.get("fixed_charges", [])
        )
        tou_periods = tuple(
            TouPeriod(
                season=str(row.get("season", ALL_YEAR)),
                day_type=str(row.get("day_type", "all_days")),
                start_hour=int(row["start_hour"]),
                end_hour=int(row["end_hour"]),
                cents_per_kwh=float(row["cents_per_kwh"]),
            )
            for row in data.get("tou_periods", [])
        )
        seasonal_rates = {str(k): float(v) for k, v in dict(data.get("seasonal_rates", {})).items()}
        demand_charges = {str(k): float(v) for k, v in dict(data.get("demand_charges", {})).items()}
    except (KeyError, TypeError, ValueError) as exc:
        raise ConfigurationError(f"Malformed tariff definition: {exc}") from exc

    tariff = TariffDefinition(
        tariff_id=tariff_id,
        name=str(data.get("name", tariff_id)),
        blocks=validate_blocks(blocks),
        fixed_charges=fixed_charges,
        tou_periods=tou_periods,
        uses_tou=bool(data.get("uses_tou", bool(tou_periods))),
        seasonal_rates=seasonal_rates,
        demand_charges=demand_charges,
    )
    validate_tariff(tariff)
    return tariff


def validate_tariff(tariff: TariffDefinition) -> None:
    validate_blocks(tariff.blocks)
    for charge in tariff.fixed_charges:
        if charge.cadence not in CADENCE_DAYS:
            raise ConfigurationError(f"Unknown charge cadence: {charge.cadence}")
    for period in tariff.tou_periods:
        if period.season not in SEASONS:
            raise ConfigurationError(f"Unknown TOU season: {period.season}")
        if period.day_type not in DAY_TYPES:
            raise ConfigurationError(f"Unknown TOU day type: {period.day_type}")
        if not (0 <= period.start_hour <= 24 and 0 <= period.end_hour <= 24):
            raise ConfigurationError(
                f"TOU hours must be within 0-24, got {period.start_hour}-{period.end_hour}"
            )
        if period.start_hour == period.end_hour:
            raise ConfigurationError(f"TOU period {period.start_hour}-{period.end_hour} is empty")
    for key in (*tariff.seasonal_rates, *tariff.demand_charges):
        if key not in SEASONS:
            raise ConfigurationError(f"Unknown season: {key}")
    if tariff.uses_tou and not tariff.tou_periods:
        raise ConfigurationError(f"Tariff {tariff.tariff_id} uses TOU but has no periods")


@dataclass
class TariffCatalog:
    tariffs: Dict[str, TariffDefinition] = field(default_factory=dict)

    def add(self, tariff: TariffDefinition) -> None:
        self.tariffs[tariff.tariff_id] = tariff

    def get(self, tariff_id: str) -> TariffDefinition:
        try:
            return self.tariffs[tariff_id]
        except KeyError:
            raise ConfigurationError(f"Unknown tariff: {tariff_id}") from None


def read_tariffs_from_json(path: str | Path) -> TariffCatalog:
    """Read ``{"tariffs": [...]}`` from a JSON file."""

    with Path(path).open(encoding="utf-8") as handle:
        data = json.load(handle)
    return read_tariffs_from_rows(data.get("tariffs", []))


def read_tariffs_from_rows(rows: Iterable[Mapping[str, object]]) -> TariffCatalog:
    catalog = TariffCatalog()
    for row in rows:
        catalog.add(read_tariff_from_mapping(row))
    return catalog
