"""Remote table sink for finalized records."""

from __future__ import annotations

from typing import Any, Dict, Iterable, List, Mapping, Optional

import requests

from ..domain.errors import RemoteReadFailed, RemoteWriteFailed
from ..domain.models import LOCAL_ONLY_ATTRIBUTES, FieldSchema, Record, Scalar
from ..logging import get_logger
from ..supabase.client import SupabaseClient

LOG = get_logger("orchestrator-remote")


def build_remote_payload(record: Record, schema: FieldSchema) -> Dict[str, Scalar]:
    """Flat row for the remote table: schema fields only, local attributes stripped."""
    return remote_fields(record.fields, schema)


def remote_fields(fields: Mapping[str, Any], schema: FieldSchema) -> Dict[str, Scalar]:
    out: Dict[str, Scalar] = {}
    for spec in schema.fields:
        if spec.key in LOCAL_ONLY_ATTRIBUTES or spec.key not in fields:
            continue
        value = fields[spec.key]
        if value is None:
            continue
        out[spec.remote_name] = value
    return out


class RemoteSink:
    """Contract: row-level insert/update/delete; failures raise RemoteWriteFailed."""

    def insert(self, payload: Dict[str, Scalar]) -> Optional[str]:
        raise NotImplementedError

    def update(self, remote_id: str, fields: Dict[str, Scalar]) -> None:
        raise NotImplementedError

    def delete(self, remote_ids: Iterable[str]) -> None:
        raise NotImplementedError

    def list_rows(self, *, date_from: Optional[str] = None, date_to: Optional[str] = None) -> List[Dict[str, Any]]:
        raise NotImplementedError


def _status_of(exc: requests.RequestException) -> Optional[int]:
    response = getattr(exc, "response", None)
    return getattr(response, "status_code", None)


def _describe(exc: requests.RequestException) -> str:
    response = getattr(exc, "response", None)
    preview = ""
    if response is not None:
        try:
            preview = (response.text or "")[:300]
        except (AttributeError, UnicodeDecodeError):
            preview = ""
    return f"{exc} {preview}".strip()


class SupabaseSink(RemoteSink):
    """RemoteSink over a Supabase table."""

    def __init__(self, client: SupabaseClient, *, date_column: str = "date_added") -> None:
        self.client = client
        self.date_column = date_column

    def insert(self, payload: Dict[str, Scalar]) -> Optional[str]:
        try:
            row = self.client.insert_row(payload)
        except requests.RequestException as exc:
            LOG.error(f"Supabase insert failed: {exc}")
            raise RemoteWriteFailed(_describe(exc), status_code=_status_of(exc)) from exc
        row_id = row.get("id") if isinstance(row, dict) else None
        return str(row_id) if row_id is not None else None

    def update(self, remote_id: str, fields: Dict[str, Scalar]) -> None:
        try:
            self.client.update_row(remote_id, fields)
        except requests.RequestException as exc:
            LOG.error(f"Supabase update of row {remote_id} failed: {exc}")
            raise RemoteWriteFailed(_describe(exc), status_code=_status_of(exc)) from exc

    def delete(self, remote_ids: Iterable[str]) -> None:
        ids = set(remote_ids)
        try:
            self.client.delete_rows(ids)
        except requests.RequestException as exc:
            LOG.error(f"Supabase delete of {len(ids)} row(s) failed: {exc}")
            raise RemoteWriteFailed(_describe(exc), status_code=_status_of(exc)) from exc

    def list_rows(self, *, date_from: Optional[str] = None, date_to: Optional[str] = None) -> List[Dict[str, Any]]:
        try:
            return self.client.select_rows(order_column=self.date_column, date_from=date_from, date_to=date_to)
        except requests.RequestException as exc:
            raise RemoteReadFailed(_describe(exc), status_code=_status_of(exc)) from exc
