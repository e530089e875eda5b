from typing import Any, Dict, Iterable, List, Optional

import requests

from ..logging import get_logger


class SupabaseClient:
    """Thin PostgREST client for one Supabase table with session, timeouts, and logging.

    Only implements what the card workflow uses: insert, update by id,
    delete by id set, and an ordered select with an optional date range.
    """

    def __init__(
        self,
        base_url: str,
        api_key: str,
        table: str = "contacts",
        *,
        timeout: int = 30,
        verify_tls: bool = True,
    ) -> None:
        self.base = base_url.rstrip("/")
        self.table = table
        self.timeout = int(timeout)
        self.verify = bool(verify_tls)
        self.log = get_logger("supabase-client")
        self.s = requests.Session()
        self.s.headers.update({
            "apikey": api_key,
            "Authorization": f"Bearer {api_key}",
            "Accept": "application/json",
            "Content-Type": "application/json",
        })

    # ---------- helpers ----------
    def _url(self) -> str:
        return f"{self.base}/rest/v1/{self.table}"

    def _json(self, r: requests.Response) -> Any:
        r.raise_for_status()
        if not r.content:
            return None
        try:
            return r.json()
        except ValueError:
            return None

    # ---------- rows ----------
    def insert_row(self, row: Dict[str, Any]) -> Optional[Dict[str, Any]]:
        """Insert one row and return the stored representation when the server sends it."""
        self.log.info(f"INSERT into {self.table}: keys={list(row.keys())}")
        r = self.s.post(
            self._url(),
            json=[row],
            headers={"Prefer": "return=representation"},
            timeout=self.timeout,
            verify=self.verify,
        )
        body = self._json(r)
        if isinstance(body, list) and body and isinstance(body[0], dict):
            return body[0]
        if isinstance(body, dict):
            return body
        return None

    def update_row(self, row_id: str, fields: Dict[str, Any]) -> None:
        self.log.info(f"UPDATE {self.table} id={row_id}: keys={list(fields.keys())}")
        r = self.s.patch(
            self._url(),
            params={"id": f"eq.{row_id}"},
            json=fields,
            headers={"Prefer": "return=minimal"},
            timeout=self.timeout,
            verify=self.verify,
        )
        self._json(r)

    def delete_rows(self, row_ids: Iterable[str]) -> None:
        ids = sorted({str(i) for i in row_ids})
        if not ids:
            return
        self.log.info(f"DELETE from {self.table}: {len(ids)} row(s)")
        r = self.s.delete(
            self._url(),
            params={"id": f"in.({','.join(ids)})"},
            headers={"Prefer": "return=minimal"},
            timeout=self.timeout,
            verify=self.verify,
        )
        self._json(r)

    def select_rows(
        self,
        *,
        order_column: str = "date_added",
        descending: bool = True,
        date_from: Optional[str] = None,
        date_to: Optional[str] = None,
        limit: Optional[int] = None,
    ) -> List[Dict[str, Any]]:
        params: List[tuple] = [
            ("select", "*"),
            ("order", f"{order_column}.{'desc' if descending else 'asc'}"),
        ]
        if date_from:
            params.append((order_column, f"gte.{date_from}"))
        if date_to:
            params.append((order_column, f"lte.{date_to}"))
        if limit:
            params.append(("limit", str(int(limit))))
        r = self.s.get(self._url(), params=params, timeout=self.timeout, verify=self.verify)
        body = self._json(r)
        return [row for row in body if isinstance(row, dict)] if isinstance(body, list) else []
