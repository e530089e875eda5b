"""Durable local record collection: one named blob holding every captured record."""

from __future__ import annotations

import json
import os
import sqlite3
import tempfile
import threading
from typing import Any, Dict, Iterable, List, Optional, Sequence

from ..domain.errors import RecordNotFound, StorageCorrupt
from ..domain.models import Lifecycle, Record, is_scalar, utc_now_iso
from ..logging import get_logger

LOG = get_logger("orchestrator-store")

DEFAULT_BLOB_NAME = "visual-text-extractor-db"
LEGACY_STAMP_KEY = "dateAdded"

# Keys of the persisted object that are record attributes, not fields.
RESERVED_KEYS = ("id", "imageRef", "imageSrc", "analyzed", "saved", "createdAt", "updatedAt", "remoteId")


# ---------------- codec ----------------
def record_to_dict(record: Record) -> Dict[str, Any]:
    analyzed, saved = record.lifecycle.flags()
    out: Dict[str, Any] = {
        "id": record.id,
        "imageRef": record.image_ref,
        "analyzed": analyzed,
        "saved": saved,
        "createdAt": record.created_at,
    }
    if record.updated_at:
        out["updatedAt"] = record.updated_at
    if record.remote_id is not None:
        out["remoteId"] = record.remote_id
    for key, value in record.fields.items():
        if key in RESERVED_KEYS:
            continue
        out[key] = value
    return out


def record_from_dict(data: Dict[str, Any]) -> Record:
    """Build a Record from its persisted object.

    Older layouts lack `saved` (treated as false) and `createdAt` (the capture
    stamp lived in `dateAdded`).
    """
    if not isinstance(data, dict):
        raise StorageCorrupt(f"record entry is {type(data).__name__}, expected object")
    record_id = data.get("id")
    if record_id is None or str(record_id) == "":
        raise StorageCorrupt("record entry without id")
    record_id = str(record_id)

    analyzed = bool(data.get("analyzed", False))
    saved = bool(data.get("saved", False))
    fields = {
        str(k): v for k, v in data.items() if k not in RESERVED_KEYS and v is not None and is_scalar(v)
    }
    created_at = data.get("createdAt") or data.get(LEGACY_STAMP_KEY) or utc_now_iso()
    if not analyzed and "createdAt" not in data:
        fields.pop(LEGACY_STAMP_KEY, None)

    lifecycle = Lifecycle.from_flags(analyzed, saved)
    if saved and not analyzed:
        if fields:
            LOG.warning(f"Record {record_id} flagged saved but not analyzed; reading it as SAVED")
        else:
            LOG.warning(f"Record {record_id} flagged saved without fields; reading it as UNANALYZED")
            lifecycle = Lifecycle.UNANALYZED
    elif lifecycle is Lifecycle.SAVED and not fields:
        LOG.warning(f"Record {record_id} flagged saved without fields; reading it as ANALYZED_UNSAVED")
        lifecycle = Lifecycle.ANALYZED_UNSAVED

    remote_id = data.get("remoteId")
    return Record(
        id=record_id,
        image_ref=str(data.get("imageRef") or data.get("imageSrc") or ""),
        lifecycle=lifecycle,
        fields=fields,
        created_at=str(created_at),
        updated_at=data.get("updatedAt"),
        remote_id=str(remote_id) if remote_id is not None else None,
    )


def encode_records(records: Sequence[Record]) -> str:
    return json.dumps([record_to_dict(r) for r in records], ensure_ascii=False)


def decode_records(blob: Optional[str]) -> List[Record]:
    if blob is None or not blob.strip():
        return []
    try:
        data = json.loads(blob)
    except ValueError as exc:
        raise StorageCorrupt(f"invalid JSON: {exc}") from exc
    if not isinstance(data, list):
        raise StorageCorrupt(f"top-level value is {type(data).__name__}, expected array")
    records: List[Record] = []
    seen: Dict[str, int] = {}
    for entry in data:
        record = record_from_dict(entry)
        if record.id in seen:
            # Keep the later copy in the earlier slot so ids stay unique.
            LOG.warning(f"Duplicate record id {record.id} in persisted blob; keeping the last copy")
            records[seen[record.id]] = record
            continue
        seen[record.id] = len(records)
        records.append(record)
    return records


def _check_unique(records: Sequence[Record]) -> None:
    seen = set()
    for r in records:
        if r.id in seen:
            raise ValueError(f"duplicate record id: {r.id}")
        seen.add(r.id)


# ---------------- stores ----------------
class RecordStore:
    """Read-full / modify / write-full access to the persisted record collection."""

    location: str = "<unknown>"

    def _read_blob(self) -> Optional[str]:
        raise NotImplementedError

    def _write_blob(self, blob: str) -> None:
        raise NotImplementedError

    def load_all(self) -> List[Record]:
        return decode_records(self._read_blob())

    def save_all(self, records: Iterable[Record]) -> None:
        items = list(records)
        _check_unique(items)
        self._write_blob(encode_records(items))
        LOG.debug(f"Persisted {len(items)} record(s) to {self.location}")

    def upsert(self, record: Record) -> Record:
        records = self.load_all()
        for i, existing in enumerate(records):
            if existing.id == record.id:
                records[i] = record
                break
        else:
            records.append(record)
        self.save_all(records)
        return record

    def get(self, record_id: str) -> Record:
        for r in self.load_all():
            if r.id == record_id:
                return r
        raise RecordNotFound(record_id)

    def remove(self, record_ids: Iterable[str]) -> int:
        wanted = set(record_ids)
        records = self.load_all()
        kept = [r for r in records if r.id not in wanted]
        removed = len(records) - len(kept)
        if removed:
            self.save_all(kept)
            LOG.info(f"Removed {removed} record(s) from local store")
        return removed


class JsonFileRecordStore(RecordStore):
    """The blob is a JSON file replaced atomically via a same-directory temp file."""

    def __init__(self, path: str) -> None:
        self.path = os.path.abspath(path)
        self.location = self.path
        os.makedirs(os.path.dirname(self.path), exist_ok=True)
        LOG.info(f"JSON record store at {self.path}")

    def _read_blob(self) -> Optional[str]:
        try:
            with open(self.path, "r", encoding="utf-8") as f:
                return f.read()
        except FileNotFoundError:
            return None
        except (OSError, UnicodeDecodeError) as exc:
            raise StorageCorrupt(f"cannot read {self.path}: {exc}") from exc

    def _write_blob(self, blob: str) -> None:
        folder = os.path.dirname(self.path)
        fd, tmp_path = tempfile.mkstemp(prefix=".records-", suffix=".tmp", dir=folder)
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                f.write(blob)
                f.flush()
                os.fsync(f.fileno())
            os.replace(tmp_path, self.path)
        except BaseException:
            try:
                os.remove(tmp_path)
            except OSError:
                pass
            raise


BLOB_TABLE = "record_blobs"


class SqliteRecordStore(RecordStore):
    """Key/value table with one row per named blob; a write is a single upsert."""

    def __init__(self, db_path: str, blob_name: str = DEFAULT_BLOB_NAME) -> None:
        self.db_path = os.path.abspath(db_path)
        self.blob_name = blob_name
        self.location = f"{self.db_path}#{blob_name}"
        os.makedirs(os.path.dirname(self.db_path), exist_ok=True)
        self._ensure_schema()
        LOG.info(f"SQLite record store ready at {self.db_path} (blob '{blob_name}')")

    def _connect(self) -> sqlite3.Connection:
        return sqlite3.connect(self.db_path)

    def _ensure_schema(self) -> None:
        conn = self._connect()
        try:
            cur = conn.cursor()
            try:
                cur.execute("PRAGMA journal_mode=WAL;")
                cur.execute("PRAGMA synchronous=NORMAL;")
            except sqlite3.DatabaseError:
                pass
            cur.execute(
                f"""
                CREATE TABLE IF NOT EXISTS {BLOB_TABLE} (
                    name TEXT PRIMARY KEY,
                    payload TEXT NOT NULL,
                    updated_at TEXT DEFAULT (datetime('now'))
                );
                """
            )
            conn.commit()
        finally:
            conn.close()

    def _read_blob(self) -> Optional[str]:
        try:
            conn = self._connect()
        except sqlite3.DatabaseError as exc:
            raise StorageCorrupt(f"cannot open {self.db_path}: {exc}") from exc
        try:
            cur = conn.cursor()
            cur.execute(f"SELECT payload FROM {BLOB_TABLE} WHERE name=?", (self.blob_name,))
            row = cur.fetchone()
            return row[0] if row else None
        except sqlite3.DatabaseError as exc:
            raise StorageCorrupt(f"cannot read blob '{self.blob_name}': {exc}") from exc
        finally:
            conn.close()

    def _write_blob(self, blob: str) -> None:
        conn = self._connect()
        try:
            with conn:
                conn.execute(
                    f"""
                    INSERT INTO {BLOB_TABLE} (name, payload, updated_at)
                    VALUES (?, ?, datetime('now'))
                    ON CONFLICT(name) DO UPDATE SET
                        payload=excluded.payload,
                        updated_at=excluded.updated_at;
                    """,
                    (self.blob_name, blob),
                )
        finally:
            conn.close()


class MemoryRecordStore(RecordStore):
    """In-process store holding the encoded blob, so it exercises the same codec."""

    location = "<memory>"

    def __init__(self, records: Optional[Iterable[Record]] = None) -> None:
        self._lock = threading.Lock()
        self._blob: Optional[str] = None
        self.writes = 0
        if records is not None:
            self.save_all(records)
            self.writes = 0

    def _read_blob(self) -> Optional[str]:
        with self._lock:
            return self._blob

    def _write_blob(self, blob: str) -> None:
        with self._lock:
            self._blob = blob
            self.writes += 1

    def set_raw_blob(self, blob: Optional[str]) -> None:
        """Replace the stored blob verbatim (used to simulate legacy or damaged data)."""
        with self._lock:
            self._blob = blob
