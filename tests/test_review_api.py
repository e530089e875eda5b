from __future__ import annotations

import asyncio

from starlette.testclient import TestClient

from card_digitizer.domain.errors import ExtractionFailed, RemoteWriteFailed
from card_digitizer.domain.models import Lifecycle
from card_digitizer.orchestrator.batch import BatchReconciler
from card_digitizer.orchestrator.store import MemoryRecordStore
from card_digitizer.review import create_app

from conftest import FakeExtractor, make_record


def _client(store, sink, replies=()):
    rec = BatchReconciler(store, FakeExtractor(replies), sink)
    return rec, TestClient(create_app(rec))


def test_health_and_schema(store, sink):
    _, client = _client(store, sink)
    assert client.get("/api/health").json()["status"] == "ok"
    schema = client.get("/api/schema").json()
    assert schema["timestamp_key"] == "dateAdded"
    assert schema["fields"][0]["key"] == "name"


def test_batch_run_then_review_and_save(store, sink, png_data_url):
    store.save_all([make_record("A", png_data_url), make_record("B", png_data_url)])
    rec, client = _client(store, sink, [{"name": "Ann"}, {"name": "Ben"}])

    pending = client.get("/api/records", params={"view": "pending_analysis"}).json()
    assert [item["id"] for item in pending["items"]] == ["A", "B"]
    assert pending["items"][0]["imageRef"] is None

    run = client.post("/api/batch/run")
    assert run.status_code == 200
    assert run.json()["processed"] == ["A", "B"]

    listed = client.get("/api/records", params={"view": "pending_save"}).json()
    assert [item["id"] for item in listed["items"]] == ["A", "B"]

    edited = client.patch("/api/records/A", json={"company": "Acme"})
    assert edited.status_code == 200
    assert edited.json()["fields"]["company"] == "Acme"

    saved = client.post("/api/records/A/save")
    assert saved.status_code == 200
    assert saved.json()["remoteId"] == "row-1"
    assert sink.inserted[0]["company"] == "Acme"
    assert client.post("/api/records/A/save").json()["already_saved"] is True

    detail = client.get("/api/records/A").json()
    assert detail["lifecycle"] == Lifecycle.SAVED.value
    assert detail["imageRef"].startswith("data:")

    status = client.get("/api/batch/status").json()
    assert status["running"] is False
    assert status["pending_save"] == ["B"]


def test_failed_run_reports_502_with_position(store, sink, png_data_url):
    store.save_all([make_record("A", png_data_url)])
    _, client = _client(store, sink, [ExtractionFailed("HTTP 500")])
    resp = client.post("/api/batch/run")
    assert resp.status_code == 502
    assert resp.json()["failed_index"] == 0
    assert resp.json()["failed_record_id"] == "A"


def test_error_mapping(store, sink):
    store.save_all([make_record("U", "u.png"), make_record("A", "a.png", Lifecycle.ANALYZED_UNSAVED, name="A")])
    _, client = _client(store, sink)
    assert client.get("/api/records/missing").status_code == 404
    assert client.post("/api/records/U/save").status_code == 409
    assert client.patch("/api/records/U", json={"name": "x"}).status_code == 409
    assert client.patch("/api/records/A", json={"id": "x"}).status_code == 400
    assert client.patch("/api/records/A", content=b"[1, 2]").status_code == 400
    assert client.get("/api/records", params={"view": "bogus"}).status_code == 400

    sink.fail_with = RemoteWriteFailed("HTTP 503")
    resp = client.post("/api/records/A/save")
    assert resp.status_code == 502
    assert "A" in resp.json()["detail"]


def test_delete_route(store, sink):
    s = make_record("S", "s.png", Lifecycle.SAVED, name="S")
    s.remote_id = "9"
    store.save_all([s])
    _, client = _client(store, sink)
    assert client.delete("/api/records/S", params={"remote": "1"}).json() == {"removed": 1}
    assert sink.deleted == [{"9"}]
    assert client.delete("/api/records/S").status_code == 404


def test_cancel_route(store, sink):
    rec, client = _client(store, sink)
    assert client.post("/api/batch/cancel").json() == {"cancel_requested": True, "running": False}


class _LoopCheckingStore(MemoryRecordStore):
    """Records whether each read ran on the event loop thread."""

    def __init__(self):
        super().__init__()
        self.reads_on_loop = []

    def _read_blob(self):
        try:
            asyncio.get_running_loop()
            self.reads_on_loop.append(True)
        except RuntimeError:
            self.reads_on_loop.append(False)
        return super()._read_blob()


def test_store_reads_stay_off_the_event_loop(sink, png_data_url):
    store = _LoopCheckingStore()
    store.save_all([make_record("A", png_data_url, Lifecycle.ANALYZED_UNSAVED, name="A"), make_record("B", "b.png")])
    _, client = _client(store, sink)

    assert client.get("/api/records", params={"view": "all"}).status_code == 200
    assert client.get("/api/records/A").status_code == 200
    assert client.delete("/api/records/B").json() == {"removed": 1}

    assert store.reads_on_loop
    assert not any(store.reads_on_loop)


def test_analyze_route(store, sink, png_data_url):
    store.save_all(
        [
            make_record("A", png_data_url),
            make_record("B", png_data_url),
            make_record("X", "data:image/png;base64,"),
        ]
    )
    rec, client = _client(store, sink, [{"name": "Bea"}])

    resp = client.post("/api/records/B/analyze")

    assert resp.status_code == 200
    assert resp.json()["lifecycle"] == "ANALYZED_UNSAVED"
    assert resp.json()["fields"]["name"] == "Bea"
    assert store.get("A").lifecycle is Lifecycle.UNANALYZED
    assert [r.id for r in rec.pending_save] == ["B"]
    assert client.post("/api/records/B/analyze").status_code == 409
    assert client.post("/api/records/missing/analyze").status_code == 404
    assert client.post("/api/records/X/analyze").status_code == 422


def test_remote_row_routes(store, sink):
    saved = make_record("S", "s.png", Lifecycle.SAVED, name="Old")
    saved.remote_id = "9"
    store.save_all([saved])
    sink.rows = [{"id": 9, "name": "Old"}, {"id": 10, "name": "Other"}]
    _, client = _client(store, sink)

    listed = client.get("/api/remote", params={"from": "2024-05-01"}).json()
    assert [row["id"] for row in listed["items"]] == [9, 10]
    assert sink.list_calls == [("2024-05-01", None)]

    edited = client.patch("/api/remote/9", json={"fields": {"name": "New"}})
    assert edited.status_code == 200
    assert edited.json()["synced_records"] == ["S"]
    assert sink.updated == [("9", {"name": "New"})]
    assert client.patch("/api/remote/9", json={"stray": "x"}).status_code == 400

    assert client.delete("/api/remote/10").json() == {"deleted": ["10"]}
    bulk = client.post("/api/remote/delete", json={"from": "2024-05-01", "to": "2024-05-31"})
    assert bulk.json() == {"deleted": ["9", "10"]}
    assert sink.deleted == [{"10"}, {"9", "10"}]
    assert store.get("S").remote_id is None

    assert client.post("/api/remote/delete", json={}).status_code == 400
    assert client.post("/api/remote/delete", json={"ids": "9"}).status_code == 400


def test_remote_routes_without_sink(store):
    _, client = _client(store, None)
    assert client.get("/api/remote").status_code == 502
    assert client.delete("/api/remote/1").status_code == 502
