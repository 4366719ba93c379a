from __future__ import annotations

import json
from dataclasses import dataclass
from datetime import date, datetime, timezone
from pathlib import Path
from typing import Any, Dict, List, Mapping
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from flask import Flask, current_app, jsonify, request
from werkzeug.exceptions import RequestEntityTooLarge

from meter_reconciliation.aggregates import (
    COLUMN_OPERATIONS,
    KWH_COLUMN,
    HierarchyAggregator,
    totals_for_result,
)
from meter_reconciliation.costs import compute_cost, compute_cost_for_range
from meter_reconciliation.errors import ConfigurationError, StoreUnavailableError
from meter_reconciliation.hierarchy import MeterCatalog, catalog_from_mapping
from meter_reconciliation.imports import ImportOrchestrator, refresh_ancestors
from meter_reconciliation.models import (
    AggregationResult,
    ColumnLayout,
    ColumnSetting,
    CostResult,
    ImportItem,
    ImportOutcome,
    MeterTotals,
    TariffDefinition,
    Unit,
)
from meter_reconciliation.reporting import total_usage
from meter_reconciliation.store import ReadingStore
from meter_reconciliation.tariffs import (
    LOW_DEMAND,
    SEASONS,
    TariffCatalog,
    read_tariff_from_mapping,
    read_tariffs_from_rows,
)
from meter_reconciliation.time_of_use import DEFAULT_TIMEZONE, compute_tou_cost, usage_from_readings

MAX_UPLOAD_MB = 10


@dataclass
class Services:
    store: ReadingStore
    catalog: MeterCatalog
    tariffs: TariffCatalog


def create_app(
    *,
    store: ReadingStore | None = None,
    catalog: MeterCatalog | None = None,
    tariffs: TariffCatalog | None = None,
    config: Mapping[str, Any] | None = None,
) -> Flask:
    app = Flask(__name__, static_folder=None)
    app.config["MAX_CONTENT_LENGTH"] = MAX_UPLOAD_MB * 1024 * 1024
    app.config["DEFAULT_TIMEZONE"] = DEFAULT_TIMEZONE
    app.config["CATALOG_PATH"] = None
    app.config.from_prefixed_env("METER_RECON")
    if config:
        app.config.update(config)

    if catalog is None or tariffs is None:
        loaded_catalog, loaded_tariffs = load_catalog_file(app.config["CATALOG_PATH"])
        catalog = catalog if catalog is not None else loaded_catalog
        tariffs = tariffs if tariffs is not None else loaded_tariffs
    app.extensions["meter_reconciliation"] = Services(
        store=store if store is not None else ReadingStore(),
        catalog=catalog,
        tariffs=tariffs,
    )

    app.post("/api/meters/<meter_id>/readings")(upload_readings)
    app.get("/api/meters/<meter_id>/readings")(list_readings)
    app.post("/api/meters/<meter_id>/aggregate")(aggregate_meter)
    app.post("/api/cost")(cost)
    app.post("/api/cost/tou")(tou_cost)

    app.register_error_handler(RequestEntityTooLarge, handle_file_too_large)
    app.register_error_handler(ConfigurationError, handle_configuration_error)
    app.register_error_handler(StoreUnavailableError, handle_store_unavailable)
    app.register_error_handler(ValueError, handle_invalid_input)
    return app


def load_catalog_file(path: str | None) -> tuple[MeterCatalog, TariffCatalog]:
    """Read ``{"meters": [...], "tariffs": [...]}``; empty catalogs without a path."""

    if not path:
        return MeterCatalog(), TariffCatalog()
    with Path(path).open(encoding="utf-8") as handle:
        data = json.load(handle)
    return catalog_from_mapping(data), read_tariffs_from_rows(data.get("tariffs", []))


def upload_readings(meter_id: str) -> object:
    files = [file for file in request.files.getlist("file") if file.filename]
    if not files:
        return jsonify({"error": "No file received."}), 400

    layout = _parse_layout()
    items = [
        ImportItem(meter_id=meter_id, file_name=file.filename, data=file.read(), layout=layout)
        for file in files
    ]
    services = _services()
    outcomes = ImportOrchestrator(services.store).process_files(items)

    aggregations: List[AggregationResult] = []
    if _parse_bool(request.form.get("refresh_parents"), default=True):
        aggregator = HierarchyAggregator(services.store)
        aggregations = refresh_ancestors(outcomes, services.catalog, aggregator)

    return jsonify(
        {
            "outcomes": [_outcome_json(outcome) for outcome in outcomes],
            "aggregations": [_aggregation_json(result) for result in aggregations],
        }
    )


def list_readings(meter_id: str) -> object:
    start = _parse_timestamp(_required(request.args, "from"))
    end = _parse_timestamp(_required(request.args, "to"))
    readings = _services().store.readings(meter_id, start, end)
    return jsonify(
        {
            "meter_id": meter_id,
            "readings": [
                {
                    "timestamp": _iso(reading.timestamp),
                    "value": reading.value,
                    "unit": reading.unit.value,
                    "fields": dict(reading.imported_fields),
                }
                for reading in readings
            ],
        }
    )


def aggregate_meter(meter_id: str) -> object:
    body = _json_body()
    start = _parse_timestamp(_required(body, "from"))
    end = _parse_timestamp(_required(body, "to"))
    columns = body.get("columns") or [KWH_COLUMN]
    if not isinstance(columns, list) or not all(isinstance(column, str) for column in columns):
        raise ValueError("columns must be a list of column names.")

    services = _services()
    aggregator = HierarchyAggregator(
        services.store, correct_outliers=bool(body.get("correct_outliers", False))
    )
    settings = _column_settings(body)
    result = aggregator.aggregate_meter(services.catalog, meter_id, start, end, columns)
    payload = _aggregation_json(result)
    payload["totals"] = _totals_json(totals_for_result(result, settings))
    return jsonify(payload)


def cost() -> object:
    body = _json_body()
    tariff = _tariff_from_body(body)
    max_kva = _parse_number(body, "max_kva", default=0.0, minimum=0.0)

    if "from" in body or "to" in body:
        start = _parse_timestamp(_required(body, "from"))
        end = _parse_timestamp(_required(body, "to"))
        usage = _usage_from_body(body, start, end)
        result = compute_cost_for_range(tariff, usage, start.date(), end.date(), max_kva=max_kva)
    else:
        period_days = int(_parse_number(body, "period_days", default=30, minimum=0))
        season = str(body.get("season", LOW_DEMAND))
        if season not in SEASONS:
            raise ValueError(f"Unknown season: {season}")
        usage = _parse_number(body, "usage_kwh", default=None, minimum=0.0)
        result = compute_cost(tariff, usage, period_days, max_kva=max_kva, season=season)
    return jsonify(_cost_json(tariff, result))


def tou_cost() -> object:
    body = _json_body()
    tariff = _tariff_from_body(body)
    timezone_name = _parse_timezone(body.get("timezone") or current_app.config["DEFAULT_TIMEZONE"])
    holidays = {date.fromisoformat(str(raw)) for raw in body.get("holidays", [])}
    max_kva = _parse_number(body, "max_kva", default=0.0, minimum=0.0)
    period_days = body.get("period_days")

    if "series" in body:
        points = body["series"]
        if not isinstance(points, list) or not all(isinstance(point, dict) for point in points):
            raise ValueError("series must be a list of objects with timestamp and kwh.")
        series = [
            (_parse_timestamp(_required(point, "timestamp")), _parse_number(point, "kwh", default=None))
            for point in points
        ]

    else:
        meter_id = str(_required(body, "meter_id"))
        start = _parse_timestamp(_required(body, "from"))
        end = _parse_timestamp(_required(body, "to"))
        series = usage_from_readings(_services().store.readings(meter_id, start, end))

    result = compute_tou_cost(
        tariff,
        series,
        holidays=holidays,
        timezone=timezone_name,
        period_days=None if period_days is None else int(period_days),
        max_kva=max_kva,
    )
    return jsonify(_cost_json(tariff, result))


def handle_file_too_large(_: RequestEntityTooLarge) -> object:
    return jsonify({"error": f"File is too large. At most {MAX_UPLOAD_MB} MB allowed."}), 413


def handle_configuration_error(exc: ConfigurationError) -> object:
    return jsonify({"error": str(exc)}), 422


def handle_store_unavailable(exc: StoreUnavailableError) -> object:
    return jsonify({"error": str(exc)}), 503


def handle_invalid_input(exc: ValueError) -> object:
    return jsonify({"error": str(exc)}), 400


def _services() -> Services:
    return current_app.extensions["meter_reconciliation"]


def _json_body() -> Dict[str, Any]:
    body = request.get_json(silent=True)
    if not isinstance(body, dict):
        raise ValueError("Expected a JSON object body.")
    return body


def _required(source: Mapping[str, Any], name: str) -> Any:
    value = source.get(name)
    if value is None or value == "":
        raise ValueError(f"Missing value for {name}.")
    return value


def _tariff_from_body(body: Mapping[str, Any]) -> TariffDefinition:
    if isinstance(body.get("tariff"), dict):
        return read_tariff_from_mapping(body["tariff"])
    return _services().tariffs.get(str(_required(body, "tariff_id")))


def _usage_from_body(body: Mapping[str, Any], start: datetime, end: datetime) -> float:
    if "usage_kwh" in body:
        return _parse_number(body, "usage_kwh", default=None, minimum=0.0)
    meter_id = str(_required(body, "meter_id"))
    return total_usage(_services().store.iter_readings([meter_id], start, end))


def _parse_layout() -> ColumnLayout:
    defaults = ColumnLayout()
    time_raw = request.form.get("time_column", "").strip()
    header_raw = request.form.get("header_rows", "").strip()
    return ColumnLayout(
        date_column=_parse_int_field("date_column", default=defaults.date_column, minimum=0),
        time_column=None
        if time_raw.lower() == "none"
        else _parse_int_field("time_column", default=defaults.time_column, minimum=0),
        value_column=_parse_int_field("value_column", default=defaults.value_column, minimum=0),
        decimal_separator=request.form.get("decimal_separator", "").strip() or defaults.decimal_separator,
        delimiter=request.form.get("delimiter") or None,
        header_rows=int(header_raw) if header_raw else None,
        timezone=_parse_timezone(request.form.get("timezone", defaults.timezone)),
        unit=_parse_unit(request.form.get("unit")),
    )


def _parse_int_field(name: str, *, default: int | None, minimum: int | None = None) -> int | None:
    raw = request.form.get(name, "").strip()
    if not raw:
        return default
    try:
        value = int(raw)
    except ValueError as exc:
        raise ValueError(f"Value for {name.replace('_', ' ')} is invalid.") from exc
    if minimum is not None and value < minimum:
        raise ValueError(f"Value for {name.replace('_', ' ')} must be at least {minimum}.")
    return value


def _parse_number(
    source: Mapping[str, Any], name: str, *, default: float | None, minimum: float | None = None
) -> float:
    raw = source.get(name)
    if raw is None or raw == "":
        if default is None:
            raise ValueError(f"Missing value for {name}.")
        return default
    try:
        value = float(raw)
    except (TypeError, ValueError) as exc:
        raise ValueError(f"Value for {name.replace('_', ' ')} is invalid.") from exc
    if minimum is not None and value < minimum:
        raise ValueError(f"Value for {name.replace('_', ' ')} must be at least {minimum}.")
    return value


def _column_settings(body: Mapping[str, Any]) -> Dict[str, ColumnSetting] | None:
    raw = body.get("column_settings")
    if raw is None:
        return None
    if not isinstance(raw, dict):
        raise ValueError("column_settings must map column names to settings.")
    settings = {}
    for column, entry in raw.items():
        if not isinstance(entry, dict):
            raise ValueError(f"Settings for column {column} must be an object.")
        operation = str(entry.get("operation") or "sum")
        if operation not in COLUMN_OPERATIONS:
            raise ValueError(f"Unknown operation {operation} for column {column}.")
        settings[column] = ColumnSetting(operation, _parse_number(entry, "factor", default=1.0))
    return settings


def _parse_unit(raw: str | None) -> Unit:
    if raw is None or not raw.strip():
        return Unit.KWH
    try:
        return Unit(raw.strip())
    except ValueError as exc:
        raise ValueError(f"Unknown unit: {raw}") from exc


def _parse_bool(
raw: str | None, *, default: bool) -> bool:
    if raw is None or not raw.strip():
        return default
    return raw.strip().lower() in {"1", "true", "yes", "on"}


def _parse_timestamp(raw: str | datetime) -> datetime:
    if isinstance(raw, datetime):
        parsed = raw
    else:
        try:
            parsed = datetime.fromisoformat(str(raw).replace("Z", "+00:00"))
        except ValueError as exc:
            raise ValueError(f"Invalid timestamp: {raw}") from exc
    if parsed.tzinfo is None:
        return parsed.replace(tzinfo=timezone.utc)
    return parsed


def _parse_timezone(value: str | None) -> str:
    timezone_name = (value or "").strip() or "UTC"
    if timezone_name.upper() == "UTC":
        return "UTC"
    try:
        ZoneInfo(timezone_name)
    except ZoneInfoNotFoundError as exc:
        raise ValueError("Unknown timezone given.") from exc
    return timezone_name


def _iso(value: datetime | None) -> str | None:
    if value is None:
        return None
    return value.isoformat().replace("+00:00", "Z")


def _outcome_json(outcome: ImportOutcome) -> Dict[str, object]:
    return {
        "file_name": outcome.file_name,
        "meter_id": outcome.meter_id,
        "status": outcome.status.value,
        "total_rows": outcome.total_rows,
        "inserted": outcome.inserted,
        "duplicates_skipped": outcome.duplicates_skipped,
        "parse_errors": outcome.parse_errors,
        "sample_error_messages": list(outcome.sample_error_messages),
        "error": outcome.error,
        "first_timestamp": _iso(outcome.first_timestamp),
        "last_timestamp": _iso(outcome.last_timestamp),
    }


def _aggregation_json(result: AggregationResult) -> Dict[str, object]:
    return {
        "parent_meter_id": result.parent_meter_id,
        "status": result.status.value,
        "slots": len(result.slots),
        "readings_used": result.readings_used,
        "deleted": result.deleted,
        "total_kwh": round(result.total_kwh, 4),
        "column_totals": dict(result.column_totals),
        "column_max_values": dict(result.column_max_values),
        "corrections": [
            {
                "meter_id": correction.meter_id,
                "timestamp": _iso(correction.timestamp),
                "column": correction.column,
                "original_value": correction.original_value,
                "corrected_value": correction.corrected_value,
                "reason": correction.reason,
            }
            for correction in result.corrections
        ],
    }


def _totals_json(totals: MeterTotals) -> Dict[str, object]:
    return {
        "column_totals": dict(totals.column_totals),
        "column_max_values": dict(totals.column_max_values),
        "total_kwh_positive": round(totals.total_kwh_positive, 4),
        "total_kwh_negative": round(totals.total_kwh_negative, 4),
        "total_kwh": round(totals.total_kwh, 4),
    }


def _cost_json(tariff: TariffDefinition, result: CostResult) -> Dict[str, object]:
    return {
        "tariff_id": tariff.tariff_id,
        "total_kwh": round(result.total_kwh, 4),
        "energy_cost": round(result.energy_cost, 2),
        "fixed_charges": round(result.fixed_charges, 2),
        "demand_charges": round(result.demand_charges, 2),
        "total_cost": round(result.total_cost, 2),
        "avg_cost_per_kwh": round(result.avg_cost_per_kwh, 4),
    }


if __name__ == "__main__":
    create_app().run(host="0.0.0.0", port=5000, debug=True)
