"""Create UNANALYZED records from captured images or a folder of scans."""

from __future__ import annotations

import os
from typing import Iterable, List, Optional, Set, Union

from ..domain.images import to_data_url
from ..domain.models import Lifecycle, Record, new_record_id, utc_now_iso
from ..logging import get_logger
from .store import RecordStore

LOG = get_logger("orchestrator-capture")

IMAGE_EXTS: Set[str] = {".jpg", ".jpeg", ".png", ".webp"}


def capture_image(store: RecordStore, image: Union[bytes, str], *, created_at: Optional[str] = None) -> Record:
    """Append one new UNANALYZED record; raw bytes are stored as a data URL."""
    if isinstance(image, (bytes, bytearray)):
        if not image:
            raise ValueError("captured image is empty")
        image_ref = to_data_url(bytes(image))
    else:
        image_ref = str(image).strip()
        if not image_ref:
            raise ValueError("image reference is empty")

    record = Record(
        id=new_record_id(),
        image_ref=image_ref,
        lifecycle=Lifecycle.UNANALYZED,
        created_at=created_at or utc_now_iso(),
    )
    store.upsert(record)
    LOG.info(f"Captured record {record.id}")
    return record


def list_image_files(directory: str, exts: Iterable[str] = IMAGE_EXTS) -> List[str]:
    wanted = {e.lower() for e in exts}
    try:
        names = sorted(os.listdir(directory))
    except FileNotFoundError:
        LOG.error(f"Directory not found: {directory}")
        return []
    return [
        os.path.abspath(os.path.join(directory, n))
        for n in names
        if os.path.splitext(n)[1].lower() in wanted and os.path.isfile(os.path.join(directory, n))
    ]


def ingest_directory(store: RecordStore, directory: str, exts: Iterable[str] = IMAGE_EXTS) -> List[Record]:
    """Capture every image file in `directory` not yet referenced by a record.

    Records are appended in one write, in file-name order.
    """
    files = list_image_files(directory, exts)
    records = store.load_all()
    known = {r.image_ref for r in records}
    created: List[Record] = []
    for path in files:
        if path in known:
            LOG.debug(f"Already captured: {path}")
            continue
        created.append(Record(id=new_record_id(), image_ref=path))
        known.add(path)
    if created:
        store.save_all(records + created)
    LOG.info(f"Ingested {len(created)} new image(s) from {directory} ({len(files) - len(created)} already known)")
    return created
