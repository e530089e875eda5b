from __future__ import annotations

import threading
import time
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Iterable, List, Mapping, Optional, Tuple, Union

Scalar = Union[str, int, float, bool]

# Attributes that live only on the device and never reach the remote table.
LOCAL_ONLY_ATTRIBUTES = frozenset(
    {"id", "imageRef", "imageSrc", "lifecycle", "analyzed", "saved", "remoteId", "createdAt", "updatedAt"}
)


class Lifecycle(str, Enum):
    UNANALYZED = "UNANALYZED"
    ANALYZED_UNSAVED = "ANALYZED_UNSAVED"
    SAVED = "SAVED"

    @property
    def rank(self) -> int:
        return _LIFECYCLE_ORDER.index(self)

    def can_advance_to(self, target: "Lifecycle") -> bool:
        return target.rank >= self.rank

    def flags(self) -> Tuple[bool, bool]:
        """Return the persisted (analyzed, saved) pair."""
        return self is not Lifecycle.UNANALYZED, self is Lifecycle.SAVED

    @classmethod
    def from_flags(cls, analyzed: bool, saved: bool) -> "Lifecycle":
        if saved:
            return cls.SAVED
        if analyzed:
            return cls.ANALYZED_UNSAVED
        return cls.UNANALYZED


_LIFECYCLE_ORDER = (Lifecycle.UNANALYZED, Lifecycle.ANALYZED_UNSAVED, Lifecycle.SAVED)


def utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat(timespec="milliseconds").replace("+00:00", "Z")


_ID_LOCK = threading.Lock()
_LAST_ID = 0


def new_record_id() -> str:
    """Millisecond timestamp id, bumped when two ids land in the same millisecond."""
    global _LAST_ID
    with _ID_LOCK:
        candidate = time.time_ns() // 1_000_000
        if candidate <= _LAST_ID:
            candidate = _LAST_ID + 1
        _LAST_ID = candidate
        return str(candidate)


def is_scalar(value: Any) -> bool:
    return isinstance(value, (str, int, float, bool))


def merge_fields(
    existing: Mapping[str, Scalar],
    incoming: Mapping[str, Any],
    *,
    stamp_key: Optional[str] = None,
    stamp: Optional[str] = None,
) -> Dict[str, Scalar]:
    """Additive merge: keys missing from `incoming` survive, last write wins per key.

    `None` and non-scalar values in `incoming` are dropped. When `stamp_key` is
    given it is always overwritten with `stamp`.
    """
    merged: Dict[str, Scalar] = dict(existing)
    for key, value in incoming.items():
        if value is None or not is_scalar(value):
            continue
        merged[str(key)] = value
    if stamp_key:
        merged[stamp_key] = stamp or utc_now_iso()
    return merged


@dataclass(frozen=True)
class FieldSpec:
    key: str
    label: str
    visible: bool = True
    remote_key: Optional[str] = None

    @property
    def remote_name(self) -> str:
        return self.remote_key or self.key


@dataclass(frozen=True)
class FieldSchema:
    """Ordered field configuration shared by extraction, review and remote save."""

    fields: Tuple[FieldSpec, ...]
    timestamp_key: str = "dateAdded"

    def keys(self) -> List[str]:
        return [f.key for f in self.fields]

    def visible(self) -> List[FieldSpec]:
        return [f for f in self.fields if f.visible]

    def extractable_keys(self) -> List[str]:
        return [f.key for f in self.fields if f.key != self.timestamp_key]

    def get(self, key: str) -> Optional[FieldSpec]:
        for spec in self.fields:
            if spec.key == key:
                return spec
        return None

    def remote_key_for(self, key: str) -> str:
        spec = self.get(key)
        return spec.remote_name if spec else key

    def as_list(self) -> List[Dict[str, Any]]:
        return [
            {"key": f.key, "header": f.label, "visible": f.visible, "remote_key": f.remote_key}
            for f in self.fields
        ]

    @classmethod
    def from_list(cls, data: Iterable[Mapping[str, Any]], *, timestamp_key: str = "dateAdded") -> "FieldSchema":
        specs: List[FieldSpec] = []
        seen = set()
        for item in data:
            key = str(item.get("key") or "").strip()
            if not key:
                raise ValueError("field schema entry without a key")
            if key in seen:
                raise ValueError(f"duplicate field key in schema: {key}")
            if key in LOCAL_ONLY_ATTRIBUTES:
                raise ValueError(f"field key is reserved for local attributes: {key}")
            seen.add(key)
            label = item.get("header") or item.get("label") or key
            remote_key = item.get("remote_key") or None
            specs.append(
                FieldSpec(
                    key=key,
                    label=str(label),
                    visible=bool(item.get("visible", True)),
                    remote_key=str(remote_key) if remote_key else None,
                )
            )
        if not specs:
            raise ValueError("field schema is empty")
        return cls(fields=tuple(specs), timestamp_key=timestamp_key)


DEFAULT_FIELD_SCHEMA = FieldSchema(
    fields=(
        FieldSpec("name", "Name"),
        FieldSpec("company", "Company"),
        FieldSpec("phone", "Phone"),
        FieldSpec("dateAdded", "Date Added", remote_key="date_added"),
        FieldSpec("address", "Address", visible=False),
        FieldSpec("delivery_Amt", "Delivery Amount"),
        FieldSpec("product_Amt", "Product Amount"),
        FieldSpec("mode", "Payment Mode"),
    ),
    timestamp_key="dateAdded",
)


@dataclass
class Record:
    id: str
    image_ref: str
    lifecycle: Lifecycle = Lifecycle.UNANALYZED
    fields: Dict[str, Scalar] = field(default_factory=dict)
    created_at: str = field(default_factory=utc_now_iso)
    updated_at: Optional[str] = None
    remote_id: Optional[str] = None

    @property
    def is_pending_analysis(self) -> bool:
        return self.lifecycle is Lifecycle.UNANALYZED and bool(self.image_ref)

    def with_extraction(self, extracted: Mapping[str, Any], *, stamp_key: str, stamp: Optional[str] = None) -> "Record":
        """Return a copy carrying the merged extraction result, now ANALYZED_UNSAVED."""
        if not self.lifecycle.can_advance_to(Lifecycle.ANALYZED_UNSAVED):
            raise ValueError(f"record {self.id} is {self.lifecycle.value}; extraction would move it backwards")
        now = stamp or utc_now_iso()
        merged = merge_fields(self.fields, extracted, stamp_key=stamp_key, stamp=now)
        return replace(self, fields=merged, lifecycle=Lifecycle.ANALYZED_UNSAVED, updated_at=now)

    def with_edits(self, changes: Mapping[str, Any]) -> "Record":
        merged = merge_fields(self.fields, changes)
        return replace(self, fields=merged, updated_at=utc_now_iso())

    def mark_saved(self, remote_id: Optional[str] = None) -> "Record":
        if not self.fields:
            raise ValueError(f"record {self.id} has no fields; refusing to mark it saved")
        return replace(
            self,
            lifecycle=Lifecycle.SAVED,
            remote_id=remote_id if remote_id is not None else self.remote_id,
        )

    def detach_remote(self) -> "Record":
        """Forget the remote row id after that row was deleted remotely."""
        return replace(self, remote_id=None)
