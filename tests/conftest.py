import base64
import io
import os
import struct
import sys
import zlib
from typing import Any, Dict, Iterable, List, Optional

import pytest
from PIL import Image

# Ensure the repository's src/ is importable
sys.path.insert(0, os.path.abspath(os.path.join(os.path.dirname(__file__), "..", "src")))

from card_digitizer.domain.errors import ExtractionFailed, RemoteWriteFailed
from card_digitizer.domain.models import FieldSchema, Lifecycle, Record
from card_digitizer.orchestrator.extract import ExtractionClient
from card_digitizer.orchestrator.remote import RemoteSink
from card_digitizer.orchestrator.store import MemoryRecordStore


def _png(color: str = "white") -> bytes:
    buf = io.BytesIO()
    Image.new("RGB", (8, 8), color).save(buf, format="PNG")
    return buf.getvalue()


def _png_chunk(kind: bytes, data: bytes) -> bytes:
    return struct.pack(">I", len(data)) + kind + data + struct.pack(">I", zlib.crc32(kind + data) & 0xFFFFFFFF)


def oversized_png() -> bytes:
    """A PNG whose header declares 50000x50000 pixels, well past Pillow's bomb limit."""
    header = struct.pack(">IIBBBBB", 50000, 50000, 8, 2, 0, 0, 0)
    return b"\x89PNG\r\n\x1a\n" + _png_chunk(b"IHDR", header) + _png_chunk(b"IEND", b"")


@pytest.fixture
def png_bytes() -> bytes:
    return _png()


@pytest.fixture
def png_data_url(png_bytes) -> str:
    return "data:image/png;base64," + base64.b64encode(png_bytes).decode("ascii")


def make_record(record_id: str, image_ref: str, lifecycle: Lifecycle = Lifecycle.UNANALYZED, **fields) -> Record:
    return Record(
        id=record_id,
        image_ref=image_ref,
        lifecycle=lifecycle,
        fields=dict(fields),
        created_at="2024-05-01T10:00:00.000Z",
    )


class FakeExtractor(ExtractionClient):
    """Replays scripted replies in call order; an exception entry is raised instead."""

    name = "fake"

    def __init__(self, replies: Iterable[Any]) -> None:
        self.replies: List[Any] = list(replies)
        self.calls = 0
        self.before_reply = None

    def _request(self, image_bytes: bytes, schema: FieldSchema) -> Dict[str, Any]:
        self.calls += 1
        if self.before_reply is not None:
            self.before_reply(self.calls)
        if not self.replies:
            raise ExtractionFailed("no scripted reply left")
        reply = self.replies.pop(0)
        if isinstance(reply, BaseException):
            raise reply
        return reply


class FakeSink(RemoteSink):
    def __init__(self) -> None:
        self.inserted: List[Dict[str, Any]] = []
        self.updated: List[tuple] = []
        self.deleted: List[set] = []
        self.fail_with: Optional[RemoteWriteFailed] = None
        self.rows: List[Dict[str, Any]] = []
        self.list_calls: List[tuple] = []

    def insert(self, payload):
        if self.fail_with is not None:
            raise self.fail_with
        self.inserted.append(dict(payload))
        return f"row-{len(self.inserted)}"

    def update(self, remote_id, fields):
        if self.fail_with is not None:
            raise self.fail_with
        self.updated.append((remote_id, dict(fields)))

    def delete(self, remote_ids):
        if self.fail_with is not None:
            raise self.fail_with
        self.deleted.append(set(remote_ids))

    def list_rows(self, *, date_from=None, date_to=None):
        self.list_calls.append((date_from, date_to))
        return list(self.rows)


@pytest.fixture
def store() -> MemoryRecordStore:
    return MemoryRecordStore()


@pytest.fixture
def sink() -> FakeSink:
    return FakeSink()
