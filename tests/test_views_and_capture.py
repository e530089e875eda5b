from card_digitizer.domain.models import Lifecycle
from card_digitizer.orchestrator.batch import BatchReconciler
from card_digitizer.orchestrator.capture import capture_image, ingest_directory
from card_digitizer.orchestrator.views import ViewMode, ViewProjection

from conftest import FakeExtractor, make_record


def test_projection_toggles_and_reads_fresh(store):
    store.save_all(
        [
            make_record("U", "u.png"),
            make_record("A", "a.png", Lifecycle.ANALYZED_UNSAVED, name="A"),
            make_record("S", "s.png", Lifecycle.SAVED, name="S"),
        ]
    )
    view = ViewProjection(store)
    assert view.mode is ViewMode.PENDING_ANALYSIS
    assert [r.id for r in view.current()] == ["U"]
    assert [r.id for r in view.toggle()] == ["A"]
    store.upsert(make_record("B", "b.png", Lifecycle.ANALYZED_UNSAVED, name="B"))
    assert [r.id for r in view.current()] == ["A", "B"]
    assert view.counts() == {"pending_analysis": 1, "pending_save": 2, "saved": 1, "total": 4}


def test_corrupt_store_projects_empty(store):
    store.set_raw_blob("[{")
    assert ViewProjection(store).current() == []


def test_reconciler_toggle_view(store):
    store.save_all([make_record("U", "u.png"), make_record("A", "a.png", Lifecycle.ANALYZED_UNSAVED, name="A")])
    rec = BatchReconciler(store, FakeExtractor([]))
    assert [r.id for r in rec.toggle_view()] == ["A"]
    assert [r.id for r in rec.toggle_view()] == ["U"]


def test_capture_bytes_becomes_data_url(store, png_bytes):
    record = capture_image(store, png_bytes, created_at="2024-05-01T00:00:00.000Z")
    stored = store.get(record.id)
    assert stored.lifecycle is Lifecycle.UNANALYZED
    assert stored.image_ref.startswith("data:image/png;base64,")
    assert stored.created_at == "2024-05-01T00:00:00.000Z"


def test_ingest_directory_is_idempotent(store, tmp_path, png_bytes):
    for name in ("b.png", "a.jpg", "notes.txt"):
        (tmp_path / name).write_bytes(png_bytes)
    first = ingest_directory(store, str(tmp_path))
    assert [r.image_ref for r in first] == [str(tmp_path / "a.jpg"), str(tmp_path / "b.png")]
    assert ingest_directory(store, str(tmp_path)) == []
    assert len(store.load_all()) == 2


def test_captured_records_flow_through_a_run(store, tmp_path, png_bytes):
    (tmp_path / "card.png").write_bytes(png_bytes)
    ingest_directory(store, str(tmp_path))
    capture_image(store, png_bytes)
    result = BatchReconciler(store, FakeExtractor([{"name": "One"}, {"name": "Two"}])).run_batch_extraction()
    assert len(result.processed) == 2
    assert all(r.lifecycle is Lifecycle.ANALYZED_UNSAVED for r in store.load_all())
