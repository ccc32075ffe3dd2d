from __future__ import annotations

from customs_backend.schemas import TrackingEntry
from customs_backend.services.documents import LocalDocumentStore
from customs_backend.services.tracking import TrackingLog


def test_newest_entry_first(tmp_path):
    log = TrackingLog(LocalDocumentStore(tmp_path), "tracking-data.json")
    log.record("25BE1", {"step": "accepted"})
    log.record("25BE1", {"step": "released"})

    assert log.history("25BE1") == [{"step": "released"}, {"step": "accepted"}]
    assert log.history("unknown") == []


def test_bulk_groups_by_mrn(tmp_path):
    log = TrackingLog(LocalDocumentStore(tmp_path), "tracking-data.json")
    count = log.record_bulk(
        [
            TrackingEntry(mrn="A", tracking_data={"n": 1}),
            TrackingEntry(mrn="B", tracking_data={"n": 2}),
            TrackingEntry(mrn="A", tracking_data={"n": 3}),
        ]
    )

    assert count == 3
    records = log.all_records()
    assert [r["MRN"] for r in records] == ["A", "B"]
    assert records[0]["tracking_records"] == [{"n": 3}, {"n": 1}]


def test_tracking_endpoints(client):
    assert client.get("/tracking").json() == {"records": []}

    response = client.post("/tracking", json={"mrn": "25BE1", "tracking_data": {"step": "accepted"}})
    assert response.json() == {"success": True, "message": "Tracking recorded"}

    bulk = client.post(
        "/tracking/bulk",
        json={"records": [{"mrn": "25BE1", "tracking_data": {"step": "released"}}]},
    )
    assert bulk.json()["message"] == "1 records updated successfully"

    history = client.get("/tracking/25BE1").json()["tracking_records"]
    assert history == [{"step": "released"}, {"step": "accepted"}]


def test_tracking_requires_fields(client):
    assert client.post("/tracking", json={"mrn": "X"}).status_code == 400
