"""
test_api.py - HTTP endpoint tests against a temporary JSON store.

Usage: pytest test_api.py
"""

from __future__ import annotations

import asyncio
import io
import json
import os
import sys

sys.path.insert(0, os.path.dirname(os.path.abspath(__file__)))

import pytest
from fastapi import UploadFile
from fastapi.testclient import TestClient

import api
import export
from models import ExportFormat
from trip_store import JsonTripStore

USER = {"user_id": "u1"}

TRIP = {
    "quarter": "2024-Q1",
    "vehicle_id": "TRK-1",
    "start_date": "2024-01-10",
    "end_date": "2024-01-10",
    "start_jurisdiction": "CA",
    "end_jurisdiction": "CA",
    "total_miles": 100.0,
    "gallons": 10.0,
}

FUEL = {
    "vehicle_id": "TRK-1",
    "date": "2024-01-10",
    "jurisdiction": "CA",
    "gallons": 15.0,
    "total_amount": 60.0,
}


@pytest.fixture
def client(tmp_path, monkeypatch):
    monkeypatch.setattr(api, "trip_store", JsonTripStore(str(tmp_path / "store.json")))
    monkeypatch.delenv("IFTA_RATES_FILE", raising=False)
    return TestClient(api.app)


@pytest.fixture
def seeded(client):
    assert client.post("/ifta/trips", params=USER, json=TRIP).status_code == 200
    assert client.post("/ifta/fuel-purchases", params=USER, json=FUEL).status_code == 200
    return client


def test_health(client):
    response = client.get("/health")
    assert response.status_code == 200
    assert response.json() == {"status": "ok"}


def test_create_trip_assigns_id(client):
    response = client.post("/ifta/trips", params=USER, json=TRIP)
    assert response.status_code == 200
    body = response.json()
    assert body["id"].startswith("trip_")
    assert body["user_id"] == "u1"


def test_invalid_trip_is_400(client):
    response = client.post("/ifta/trips", params=USER, json={**TRIP, "vehicle_id": " "})
    assert response.status_code == 400


def test_user_id_is_required(client):
    assert client.get("/ifta/2024-Q1/summary").status_code == 422


def test_summary(seeded):
    response = seeded.get("/ifta/2024-Q1/summary", params=USER)
    assert response.status_code == 200
    body = response.json()
    assert body["quarter"] == "2024-Q1"
    assert body["locked"] is False
    assert [item["jurisdiction"] for item in body["jurisdictions"]] == ["CA"]
    assert body["fleet_mpg"] == pytest.approx(100.0 / 15.0)


def test_bad_quarter_is_400(client):
    response = client.get("/ifta/2024-Q9/summary", params=USER)
    assert response.status_code == 400
    assert "YYYY-QN" in response.json()["detail"]


def test_discrepancies(seeded):
    body = seeded.get("/ifta/2024-Q1/discrepancies", params=USER).json()
    assert body["is_balanced"] is False
    assert body["discrepancies"][0]["jurisdiction"] == "CA"
    assert body["discrepancies"][0]["discrepancy"] == pytest.approx(5.0)


def test_corrections_resolve_discrepancies(seeded):
    response = seeded.post("/ifta/2024-Q1/corrections", params=USER)
    assert response.status_code == 200
    body = response.json()
    assert len(body["created"]) == 1
    assert body["created"][0]["source"] == "fuel_only"
    assert body["errors"] == []
    assert body["sync"]["discrepancies"] == []

    # Running again finds nothing left to correct.
    again = seeded.post("/ifta/2024-Q1/corrections", params=USER).json()
    assert again["created"] == []


def test_locked_quarter_rejects_writes(seeded):
    assert seeded.post("/ifta/2024-Q1/lock", params=USER).json() == {"quarter": "2024-Q1", "locked": True}
    assert seeded.get("/ifta/2024-Q1/lock", params=USER).json()["locked"] is True

    assert seeded.post("/ifta/trips", params=USER, json=TRIP).status_code == 409
    assert seeded.post("/ifta/2024-Q1/corrections", params=USER).status_code == 409
    assert seeded.get("/ifta/2024-Q1/summary", params=USER).json()["trip_count"] == 1

    assert seeded.delete("/ifta/2024-Q1/lock", params=USER).json()["locked"] is False
    assert seeded.post("/ifta/trips", params=USER, json=TRIP).status_code == 200


def test_delete_trip(client):
    trip_id = client.post("/ifta/trips", params=USER, json=TRIP).json()["id"]
    assert client.delete(f"/ifta/trips/{trip_id}", params=USER).status_code == 200
    assert client.delete(f"/ifta/trips/{trip_id}", params=USER).status_code == 404


def test_export_download(seeded):
    response = seeded.get("/ifta/2024-Q1/export", params={**USER, "format": "csv"})
    assert response.status_code == 200
    assert response.headers["content-type"].startswith("text/csv")
    assert (
        response.headers["content-disposition"]
        == 'attachment; filename="ifta_summary_2024_Q1_all_vehicles.csv"'
    )
    assert "TOTAL" in response.text


def test_export_detailed_json_for_one_vehicle(seeded):
    response = seeded.get(
        "/ifta/2024-Q1/export",
        params={**USER, "format": "json", "export_type": "detailed", "vehicle_id": "TRK-1"},
    )
    assert response.status_code == 200
    assert "ifta_detailed_2024_Q1_vehicle_TRK-1.json" in response.headers["content-disposition"]
    assert len(json.loads(response.content)["trips"]) == 1


def test_export_unknown_format_is_400(seeded):
    response = seeded.get("/ifta/2024-Q1/export", params={**USER, "format": "docx"})
    assert response.status_code == 400


def test_export_query_param_is_named_format(client):
    operation = client.get("/openapi.json").json()["paths"]["/ifta/{quarter}/export"]["get"]
    names = [param["name"] for param in operation["parameters"]]
    assert "format" in names
    assert "export_format" not in names


def test_export_render_failure_is_422(seeded, monkeypatch):
    def broken(data, export_type):
        raise RuntimeError("layout exploded")

    monkeypatch.setitem(export.RENDERERS, ExportFormat.PDF, broken)
    response = seeded.get("/ifta/2024-Q1/export", params={**USER, "format": "pdf"})
    assert response.status_code == 422
    assert response.json()["detail"] == "Could not generate the PDF report."


def test_report_missing_is_404(client):
    assert client.get("/ifta/2024-Q1/report", params=USER).status_code == 404


def test_draft_report_snapshot(seeded):
    response = seeded.put("/ifta/2024-Q1/report", params=USER)
    assert response.status_code == 200
    body = response.json()
    assert body["status"] == "draft"
    assert body["year"] == 2024
    assert body["total_miles"] == pytest.approx(100.0)
    assert body["total_gallons"] == pytest.approx(15.0)
    assert [item["jurisdiction"] for item in body["jurisdictions"]] == ["CA"]

    assert seeded.get("/ifta/2024-Q1/report", params=USER).json()["id"] == body["id"]
    assert seeded.get("/ifta/2024-Q1/lock", params=USER).json()["locked"] is False


def test_submitted_report_locks_quarter(seeded):
    draft = seeded.put("/ifta/2024-Q1/report", params=USER).json()
    response = seeded.put("/ifta/2024-Q1/report", params=USER, json={"status": "submitted"})
    assert response.status_code == 200
    body = response.json()
    assert body["id"] == draft["id"]
    assert body["status"] == "submitted"
    assert body["submitted_at"]

    assert seeded.get("/ifta/2024-Q1/lock", params=USER).json()["locked"] is True
    assert seeded.post("/ifta/trips", params=USER, json=TRIP).status_code == 409


def test_report_unknown_status_is_400(seeded):
    response = seeded.put("/ifta/2024-Q1/report", params=USER, json={"status": "filed"})
    assert response.status_code == 400


def test_import_loads_skips_already_imported(client):
    loads = [
        {
            "id": "load_1",
            "load_number": "1001",
            "vehicle_id": "TRK-1",
            "origin": "Fresno, CA",
            "destination": "Reno, NV",
            "distance": 220.0,
            "pickup_date": "2024-02-01",
            "delivery_date": "2024-02-02",
        },
        {"id": "load_2", "origin": "Nowhere", "destination": "Reno, NV", "pickup_date": "2024-02-01"},
    ]
    first = client.post("/ifta/import/loads", params=USER, json=loads).json()
    assert len(first["created"]) == 1
    assert first["created"][0]["source"] == "load"
    assert len(first["errors"]) == 1

    second = client.post("/ifta/import/loads", params=USER, json=loads[:1]).json()
    assert second["created"] == []


def test_import_state_mileage(client):
    tracked = {
        "id": "mt_1",
        "vehicle_id": "TRK-1",
        "start_date": "2024-03-01",
        "states": [
            {"state": "CA", "state_name": "California", "miles": 40.0},
            {"state": "OR", "state_name": "Oregon", "miles": 60.0},
        ],
    }
    first = client.post("/ifta/import/state-mileage", params=USER, json=tracked).json()
    assert [trip["start_jurisdiction"] for trip in first["created"]] == ["CA", "OR"]
    second = client.post("/ifta/import/state-mileage", params=USER, json=tracked).json()
    assert second["created"] == []


def test_save_upload_streams_to_disk_and_closes(tmp_path):
    payload = b"vehicle_id,date\n" + b"TRK-1,2024-01-10\n" * 100_000
    upload = UploadFile(file=io.BytesIO(payload), filename="fuel.csv")
    target = tmp_path / "fuel.csv"

    asyncio.run(api._save_upload(upload, target))

    assert target.read_bytes() == payload
    assert upload.file.closed


def test_reconcile_upload(client):
    trips_csv = (
        "vehicle_id,start_date,start_jurisdiction,end_jurisdiction,total_miles,gallons\n"
        "TRK-1,2024-01-10,CA,NV,200,20\n"
    )
    fuel_csv = "vehicle_id,date,jurisdiction,gallons\nTRK-1,2024-01-10,CA,10\nTRK-1,2024-01-11,NV,10\n"
    response = client.post(
        "/ifta/reconcile-upload",
        data={"quarter": "2024-Q1"},
        files={
            "trips_csv": ("trips.csv", trips_csv, "text/csv"),
            "fuel_csv": ("fuel.csv", fuel_csv, "text/csv"),
        },
    )
    assert response.status_code == 200
    body = response.json()
    assert body["summary"]["total_miles"] == pytest.approx(200.0)
    assert body["sync"]["is_balanced"] is True


def test_reconcile_upload_bad_csv_is_400(client):
    response = client.post(
        "/ifta/reconcile-upload",
        data={"quarter": "2024-Q1"},
        files={
            "trips_csv": ("trips.csv", "vehicle_id\nTRK-1\n", "text/csv"),
            "fuel_csv": ("fuel.csv", "vehicle_id\nTRK-1\n", "text/csv"),
        },
    )
    assert response.status_code == 400


if __name__ == "__main__":
    raise SystemExit(pytest.main([__file__]))
