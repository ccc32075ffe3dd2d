from __future__ import annotations

import threading
from typing import Any, Iterable

from customs_backend.schemas import TrackingEntry
from customs_backend.services.documents import DocumentStore, read_json, write_json


class TrackingLog:
    """Per-MRN tracking history, newest entry first."""

    def __init__(self, documents: DocumentStore, path: str):
        self.documents = documents
        self.path = path
        self._lock = threading.Lock()

    def _load(self) -> dict:
        data = read_json(self.documents, self.path, {"records": []})
        data.setdefault("records", [])
        return data

    def all_records(self) -> list[dict[str, Any]]:
        return self._load()["records"]

    def history(self, mrn: str) -> list[dict[str, Any]]:
        for record in self.all_records():
            if record.get("MRN") == mrn:
                return record.get("tracking_records", [])
        return []

    def record(self, mrn: str, tracking_data: dict[str, Any]) -> None:
        self.record_bulk([TrackingEntry(mrn=mrn, tracking_data=tracking_data)])

    def record_bulk(self, entries: Iterable[TrackingEntry]) -> int:
        with self._lock:
            data = self._load()
            by_mrn = {r.get("MRN"): r for r in data["records"]}
            count = 0
            for entry in entries:
                record = by_mrn.get(entry.mrn)
                if record is None:
                    record = {"MRN": entry.mrn, "tracking_records": []}
                    data["records"].append(record)
                    by_mrn[entry.mrn] = record
                record.setdefault("tracking_records", []).insert(0, entry.tracking_data)
                count += 1
            write_json(self.documents, self.path, data)
        return count
