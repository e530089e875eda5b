import pytest

from card_digitizer.domain.models import (
    DEFAULT_FIELD_SCHEMA,
    FieldSchema,
    Lifecycle,
    Record,
    merge_fields,
    new_record_id,
)


def test_merge_is_additive():
    merged = merge_fields({"company": "X"}, {"name": "Y"})
    assert merged == {"company": "X", "name": "Y"}


def test_merge_last_write_wins_and_drops_none():
    merged = merge_fields({"name": "Old", "phone": "1"}, {"name": "New", "phone": None, "tags": ["a"]})
    assert merged == {"name": "New", "phone": "1"}


def test_merge_stamp_key_always_overwritten():
    merged = merge_fields({"dateAdded": "old"}, {"dateAdded": "model"}, stamp_key="dateAdded", stamp="now")
    assert merged["dateAdded"] == "now"


def test_lifecycle_flags_round_trip():
    for lc in Lifecycle:
        assert Lifecycle.from_flags(*lc.flags()) is lc
    assert Lifecycle.UNANALYZED.flags() == (False, False)
    assert Lifecycle.SAVED.flags() == (True, True)


def test_lifecycle_only_moves_forward():
    assert Lifecycle.UNANALYZED.can_advance_to(Lifecycle.ANALYZED_UNSAVED)
    assert Lifecycle.ANALYZED_UNSAVED.can_advance_to(Lifecycle.SAVED)
    assert not Lifecycle.SAVED.can_advance_to(Lifecycle.ANALYZED_UNSAVED)
    assert not Lifecycle.ANALYZED_UNSAVED.can_advance_to(Lifecycle.UNANALYZED)


def test_with_extraction_stamps_and_advances():
    rec = Record(id="1", image_ref="x", fields={"company": "X"})
    out = rec.with_extraction({"name": "Y"}, stamp_key="dateAdded", stamp="2024-01-01T00:00:00.000Z")
    assert out.lifecycle is Lifecycle.ANALYZED_UNSAVED
    assert out.fields == {"company": "X", "name": "Y", "dateAdded": "2024-01-01T00:00:00.000Z"}
    assert rec.lifecycle is Lifecycle.UNANALYZED


def test_with_extraction_refuses_saved_record():
    rec = Record(id="1", image_ref="x", lifecycle=Lifecycle.SAVED, fields={"name": "A"})
    with pytest.raises(ValueError):
        rec.with_extraction({"name": "B"}, stamp_key="dateAdded")


def test_mark_saved_requires_fields():
    rec = Record(id="1", image_ref="x", lifecycle=Lifecycle.ANALYZED_UNSAVED)
    with pytest.raises(ValueError):
        rec.mark_saved("r1")
    saved = Record(id="1", image_ref="x", lifecycle=Lifecycle.ANALYZED_UNSAVED, fields={"name": "A"}).mark_saved("r1")
    assert saved.lifecycle is Lifecycle.SAVED
    assert saved.remote_id == "r1"


def test_new_record_ids_are_unique_and_increasing():
    ids = [int(new_record_id()) for _ in range(50)]
    assert ids == sorted(ids)
    assert len(set(ids)) == len(ids)


def test_default_schema_shape():
    assert DEFAULT_FIELD_SCHEMA.timestamp_key == "dateAdded"
    assert "dateAdded" not in DEFAULT_FIELD_SCHEMA.extractable_keys()
    assert DEFAULT_FIELD_SCHEMA.remote_key_for("dateAdded") == "date_added"
    assert "address" not in [f.key for f in DEFAULT_FIELD_SCHEMA.visible()]


def test_schema_from_list_validates():
    schema = FieldSchema.from_list([{"key": "name", "header": "Name"}, {"key": "email", "visible": False}])
    assert schema.keys() == ["name", "email"]
    assert schema.get("email").label == "email"
    with pytest.raises(ValueError):
        FieldSchema.from_list([{"key": "name"}, {"key": "name"}])
    with pytest.raises(ValueError):
        FieldSchema.from_list([{"key": "id"}])
    with pytest.raises(ValueError):
        FieldSchema.from_list([])
