import io
import json

import pytest

from app import create_app, load_catalog_file
from meter_reconciliation.hierarchy import catalog_from_mapping
from meter_reconciliation.store import ReadingStore
from meter_reconciliation.tariffs import read_tariffs_from_rows

CATALOG = {
    "meters": [
        {"id": "site"},
        {"id": "t1", "parent": "site"},
        {"id": "solar", "parent": "site", "polarity": "generation"},
    ],
    "tariffs": [
        {
            "id": "domestic",
            "blocks": [
                {"from_kwh": 0, "to_kwh": 600, "cents_per_kwh": 192},
                {"from_kwh": 600, "to_kwh": None, "cents_per_kwh": 250},
            ],
            "fixed_charges": [{"kind": "basic", "amount": 310, "cadence": "monthly"}],
        },
        {
            "id": "tou",
            "tou_periods": [
                {"day_type": "weekday", "start_hour": 7, "end_hour": 22, "cents_per_kwh": 300},
                {"day_type": "weekday", "start_hour": 22, "end_hour": 7, "cents_per_kwh": 100},
                {"day_type": "weekend", "start_hour": 0, "end_hour": 24, "cents_per_kwh": 150},
            ],
        },
    ],
}

CSV = b"Date;Time;kWh\n2024-01-08;10:00;1,5\n2024-01-08;10:30;2,5\n2024-01-08;bad;1\n"


@pytest.fixture
def store():
    return ReadingStore()


@pytest.fixture
def client(store):
    app = create_app(
        store=store,
        catalog=catalog_from_mapping(CATALOG),
        tariffs=read_tariffs_from_rows(CATALOG["tariffs"]),
        config={"TESTING": True},
    )
    return app.test_client()


def _upload(client, meter_id="t1", files=None, **form):
    data = dict(form)
    data["file"] = files if files is not None else [(io.BytesIO(CSV), "export.csv")]
    return client.post(
        f"/api/meters/{meter_id}/readings", data=data, content_type="multipart/form-data"
    )


def test_upload_reports_outcomes_and_refreshes_parents(client):
    response = _upload(client)

    assert response.status_code == 200
    payload = response.get_json()
    outcome = payload["outcomes"][0]
    assert outcome["status"] == "completed"
    assert outcome["inserted"] == 2
    assert outcome["parse_errors"] == 1
    assert outcome["sample_error_messages"] == ['Line 4: Invalid time format "bad"']
    assert [item["parent_meter_id"] for item in payload["aggregations"]] == ["site"]
    assert payload["aggregations"][0]["total_kwh"] == pytest.approx(4.0)


def test_upload_accepts_several_files(client):
    second = b"2024-01-09;10:00;3\n"
    response = _upload(
        client,
        files=[(io.BytesIO(CSV), "one.csv"), (io.BytesIO(second), "two.csv")],
        refresh_parents="false",
    )

    payload = response.get_json()
    assert [outcome["file_name"] for outcome in payload["outcomes"]] == ["one.csv", "two.csv"]
    assert payload["aggregations"] == []


def test_upload_without_file_is_rejected(client):
    response = client.post("/api/meters/t1/readings", data={}, content_type="multipart/form-data")

    assert response.status_code == 400
    assert "error" in response.get_json()


def test_upload_with_bad_layout_field_is_rejected(client):
    response = _upload(client, value_column="x")

    assert response.status_code == 400


def test_upload_too_large_returns_413(store):
    app = create_app(
        store=store,
        catalog=catalog_from_mapping(CATALOG),
        tariffs=read_tariffs_from_rows(CATALOG["tariffs"]),
        config={"TESTING": True, "MAX_CONTENT_LENGTH": 64},
    )
    client = app.test_client()

    response = _upload(client, files=[(io.BytesIO(CSV * 10), "big.csv")])

    assert response.status_code == 413
    assert "error" in response.get_json()


def test_list_readings(client):
    _upload(client)

    response = client.get(
        "/api/meters/t1/readings?from=2024-01-08T00:00:00Z&to=2024-01-09T00:00:00Z"
    )

    readings = response.get_json()["readings"]
    assert [reading["timestamp"] for reading in readings] == [
        "2024-01-08T10:00:00Z",
        "2024-01-08T10:30:00Z",
    ]
    assert readings[0]["value"] == pytest.approx(1.5)


def test_upload_unit_is_stored_on_readings(client):
    _upload(client, unit="kVA")

    response = client.get(
        "/api/meters/t1/readings?from=2024-01-08T00:00:00Z&to=2024-01-09T00:00:00Z"
    )

    assert {reading["unit"] for reading in response.get_json()["readings"]} == {"kVA"}


def test_upload_with_unknown_unit_is_rejected(client):
    response = _upload(client, unit="MWh")

    assert response.status_code == 400


def test_list_readings_requires_range(client):
    response = client.get("/api/meters/t1/readings")

    assert response.status_code == 400


def test_aggregate_endpoint(client):
    _upload(client, refresh_parents="false")
    _upload(client, meter_id="solar", files=[(io.BytesIO(b"2024-01-08;10:00;0,5\n"), "solar.csv")])

    response = client.post(
        "/api/meters/site/aggregate",
        json={"from": "2024-01-08T00:00:00Z", "to": "2024-01-08T23:59:59Z"},
    )

    payload = response.get_json()
    assert payload["status"] == "completed"
    assert payload["total_kwh"] == pytest.approx(3.5)


def test_aggregate_endpoint_applies_column_settings(client):
    _upload(client, refresh_parents="false")

    response = client.post(
        "/api/meters/site/aggregate",
        json={
            "from": "2024-01-08T00:00:00Z",
            "to": "2024-01-08T23:59:59Z",
            "column_settings": {"kWh": {"operation": "average", "factor": 2}},
        },
    )

    totals = response.get_json()["totals"]
    assert totals["column_totals"] == {"kWh": pytest.approx(4.0)}
    assert totals["total_kwh_positive"] == pytest.approx(4.0)


def test_aggregate_endpoint_rejects_unknown_operation(client):
    response = client.post(
        "/api/meters/site/aggregate",
        json={
            "from": "2024-01-08T00:00:00Z",
            "to": "2024-01-08T23:59:59Z",
            "column_settings": {"kWh": {"operation": "median"}},
        },
    )

    assert response.status_code == 400


def test_aggregate_leaf_meter_is_unprocessable(client):
    response = client.post(
        "/api/meters/t1/aggregate",
        json={"from": "2024-01-08T00:00:00Z", "to": "2024-01-08T23:59:59Z"},
    )

    assert response.status_code == 422


def test_cost_by_tariff_id(client):
    response = client.post(
        "/api/cost", json={"tariff_id": "domestic", "usage_kwh": 700, "period_days": 30}
    )

    payload = response.get_json()
    assert response.status_code == 200
    assert payload["energy_cost"] == pytest.approx(1402.0)
    assert payload["fixed_charges"] == pytest.approx(310.0)


def test_cost_for_range_from_stored_readings(client):
    _upload(client, refresh_parents="false")

    response = client.post(
        "/api/cost",
        json={
            "tariff_id": "domestic",
            "meter_id": "t1",
            "from": "2024-01-01T00:00:00Z",
            "to": "2024-01-31T23:59:59Z",
        },
    )

    payload = response.get_json()
    assert payload["total_kwh"] == pytest.approx(4.0)
    assert payload["energy_cost"] == pytest.approx(7.68)
    assert payload["fixed_charges"] == pytest.approx(310.0)


def test_cost_with_inline_tariff(client):
    tariff = {"id": "flat", "seasonal_rates": {"all_year": 200}}

    response = client.post("/api/cost", json={"tariff": tariff, "usage_kwh": 10, "period_days": 30})

    assert response.get_json()["total_cost"] == pytest.approx(20.0)


def test_unknown_tariff_is_unprocessable(client):
    response = client.post("/api/cost", json={"tariff_id": "missing", "usage_kwh": 1})

    assert response.status_code == 422


def test_cost_without_usage_is_bad_request(client):
    response = client.post("/api/cost", json={"tariff_id": "domestic", "period_days": 30})

    assert response.status_code == 400


def test_cost_requires_json_body(client):
    response = client.post("/api/cost", data="not json", content_type="text/plain")

    assert response.status_code == 400


def test_tou_cost_from_series(client):
    response = client.post(
        "/api/cost/tou",
        json={
            "tariff_id": "tou",
            "timezone": "Africa/Johannesburg",
            "holidays": ["2024-01-01"],
            "series": [
                {"timestamp": "2024-01-08T06:00:00Z", "kwh": 2},
                {"timestamp": "2024-01-01T08:00:00Z", "kwh": 1},
            ],
        },
    )

    assert response.status_code == 200
    assert response.get_json()["energy_cost"] == pytest.approx(7.5)


def test_tou_cost_rejects_malformed_series_points(client):
    response = client.post(
        "/api/cost/tou",
        json={"tariff_id": "tou", "series": [{"timestamp": "2024-01-08T06:00:00Z", "kwh": 2}, 5]},
    )

    assert response.status_code == 400
    assert "error" in response.get_json()


def test_tou_cost_from_stored_readings(client):
    _upload(client, refresh_parents="false")

    response = client.post(
        "/api/cost/tou",
        json={
            "tariff_id": "tou",
            "meter_id": "t1",
            "from": "2024-01-08T00:00:00Z",
            "to": "2024-01-08T23:59:59Z",
        },
    )

    assert response.get_json()["energy_cost"] == pytest.approx(12.0)


def test_load_catalog_file(tmp_path):
    path = tmp_path / "catalog.json"
    path.write_text(json.dumps(CATALOG), encoding="utf-8")

    catalog, tariffs = load_catalog_file(str(path))

    assert catalog.children("site") == ["solar", "t1"]
    assert tariffs.get("tou").uses_tou


def test_catalog_path_from_config(tmp_path):
    path = tmp_path / "catalog.json"
    path.write_text(json.dumps(CATALOG), encoding="utf-8")

    app = create_app(config={"TESTING": True, "CATALOG_PATH": str(path)})
    response = app.test_client().post(
        "/api/cost", json={"tariff_id": "domestic", "usage_kwh": 600, "period_days": 30}
    )

    assert response.get_json()["energy_cost"] == pytest.approx(1152.0)
