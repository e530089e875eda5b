"""Batch reconciliation: drive extraction over unanalyzed records and save the results.

Per record the lifecycle only moves forward:

    UNANALYZED --extraction ok--> ANALYZED_UNSAVED --remote insert ok--> SAVED

Failures leave the record where it was. Every successful step is written
back to the store before the next one starts.
"""

from __future__ import annotations

import threading
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Iterable, List, Mapping, Optional, Union

from ..domain.errors import (
    AlreadyAnalyzed,
    BatchAlreadyRunning,
    CardDigitizerError,
    ExtractionFailed,
    InvalidImage,
    NotAnalyzed,
    RecordNotFound,
    RemoteReadFailed,
    RemoteWriteFailed,
    StorageCorrupt,
)
from ..domain.images import decode_image_ref
from ..domain.models import (
    DEFAULT_FIELD_SCHEMA,
    LOCAL_ONLY_ATTRIBUTES,
    FieldSchema,
    Lifecycle,
    Record,
    is_scalar,
)
from ..logging import get_logger, record_logger
from .extract import ExtractionClient
from .remote import RemoteSink, build_remote_payload, remote_fields
from .store import RecordStore
from .views import ViewProjection, pending_save

LOG = get_logger("orchestrator-batch")

ProgressCallback = Callable[[int, int, Record], None]


@dataclass
class BatchRunResult:
    total: int = 0
    processed: List[str] = field(default_factory=list)
    skipped: List[str] = field(default_factory=list)
    failed_index: Optional[int] = None
    failed_record_id: Optional[str] = None
    error: Optional[CardDigitizerError] = None
    cancelled: bool = False
    warnings: List[str] = field(default_factory=list)
    pending_save: List[Record] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return self.error is None

    def raise_for_error(self) -> None:
        if self.error is not None:
            raise self.error

    def summary(self) -> Dict[str, Any]:
        return {
            "total": self.total,
            "processed": list(self.processed),
            "skipped": list(self.skipped),
            "failed_index": self.failed_index,
            "failed_record_id": self.failed_record_id,
            "error": str(self.error) if self.error else None,
            "cancelled": self.cancelled,
            "warnings": list(self.warnings),
            "pending_save": [r.id for r in self.pending_save],
        }


@dataclass
class SaveResult:
    record_id: str
    saved: bool
    already_saved: bool = False
    remote_id: Optional[str] = None
    error: Optional[CardDigitizerError] = None


class BatchReconciler:
    """Owns the batch cursor and the live pending-save view for one record store.

    One batch run at a time per reconciler; a second concurrent call raises
    BatchAlreadyRunning. Cancellation is honored between records only.
    """

    def __init__(
        self,
        store: RecordStore,
        extractor: Optional[ExtractionClient],
        sink: Optional[RemoteSink] = None,
        schema: FieldSchema = DEFAULT_FIELD_SCHEMA,
        *,
        on_progress: Optional[ProgressCallback] = None,
    ) -> None:
        self.store = store
        self.extractor = extractor
        self.sink = sink
        self.schema = schema
        self.on_progress = on_progress
        self.views = ViewProjection(store)
        self.current_index = 0
        self.total = 0
        self.pending_save: List[Record] = []
        self.warnings: List[str] = []
        self.last_result: Optional[BatchRunResult] = None
        self._run_lock = threading.Lock()
        self._cancel = threading.Event()
        # Serializes load-modify-save sequences issued from different threads.
        self._store_lock = threading.RLock()

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------
    def _load_or_empty(self, warnings: List[str]) -> List[Record]:
        try:
            return self.store.load_all()
        except StorageCorrupt as exc:
            message = f"{exc}; treating the store as empty"
            LOG.warning(message)
            warnings.append(message)
            return []

    def _publish_pending_save(self, warnings: List[str]) -> List[Record]:
        self.pending_save = pending_save(self._load_or_empty(warnings))
        return self.pending_save

    def _commit_extraction(self, record_id: str, extracted: Mapping[str, Any], warnings: List[str]) -> Optional[Record]:
        """Merge into the freshly loaded copy and write the whole collection back."""
        records = self.store.load_all()
        for i, fresh in enumerate(records):
            if fresh.id != record_id:
                continue
            if fresh.lifecycle is not Lifecycle.UNANALYZED:
                message = f"Record {record_id} is already {fresh.lifecycle.value}; extraction result discarded"
                LOG.warning(message)
                warnings.append(message)
                return None
            updated = fresh.with_extraction(extracted, stamp_key=self.schema.timestamp_key)
            records[i] = updated
            self.store.save_all(records)
            return updated
        message = f"Record {record_id} disappeared during the run; extraction result discarded"
        LOG.warning(message)
        warnings.append(message)
        return None

    def _commit_saved(self, record_id: str, remote_id: Optional[str]) -> Optional[Record]:
        records = self.store.load_all()
        for i, fresh in enumerate(records):
            if fresh.id == record_id:
                if fresh.lifecycle is Lifecycle.SAVED:
                    return fresh
                records[i] = fresh.mark_saved(remote_id)
                self.store.save_all(records)
                return records[i]
        LOG.warning(f"Record {record_id} was removed locally while its remote save was in flight")
        return None

    def _drop_from_pending(self, record_ids: Iterable[str]) -> None:
        gone = set(record_ids)
        self.pending_save = [r for r in self.pending_save if r.id not in gone]

    # ------------------------------------------------------------------
    # Batch extraction
    # ------------------------------------------------------------------
    @property
    def is_running(self) -> bool:
        return self._run_lock.locked()

    def cancel(self) -> None:
        """Stop before the next record; an in-flight extraction call is not interrupted."""
        if self.is_running:
            LOG.info("Cancel requested; the run stops at the next record boundary")
        self._cancel.set()

    def run_batch_extraction(self) -> BatchRunResult:
        if self.extractor is None:
            raise ExtractionFailed("no extraction backend configured")
        if not self._run_lock.acquire(blocking=False):
            raise BatchAlreadyRunning()
        try:
            self._cancel.clear()
            result = self._run()
            self.last_result = result
            return result
        finally:
            self._run_lock.release()

    def _run(self) -> BatchRunResult:
        result = BatchRunResult()
        records = self._load_or_empty(result.warnings)
        # Work queue is fixed here; records captured mid-run wait for the next run.
        queue = [r for r in records if r.is_pending_analysis]
        self.total = result.total = len(queue)
        self.current_index = 0
        LOG.info(f"Batch run started: {len(queue)} of {len(records)} record(s) need extraction")

        for index, record in enumerate(queue):
            if self._cancel.is_set():
                result.cancelled = True
                LOG.info(f"Batch run cancelled before record {index + 1}/{len(queue)}")
                break
            self.current_index = index
            if self.on_progress is not None:
                self.on_progress(index, len(queue), record)
            rlog = record_logger(LOG, record.id, index=index, total=len(queue))
            rlog.info("analyzing")

            try:
                extracted = self._extract(record)
            except InvalidImage as exc:
                rlog.warning(f"skipped, {exc.reason}")
                result.skipped.append(record.id)
                continue
            except ExtractionFailed as exc:
                self._abort(result, exc.at(record_id=record.id, index=index), index, record.id)
                break

            try:
                with self._store_lock:
                    committed = self._commit_extraction(record.id, extracted, result.warnings)
            except (StorageCorrupt, OSError) as exc:
                err = exc if isinstance(exc, StorageCorrupt) else StorageCorrupt(f"write failed: {exc}")
                self._abort(result, err, index, record.id)
                break
            if committed is not None:
                result.processed.append(record.id)
                rlog.info(f"analyzed with {len(extracted)} field(s)")
        else:
            self.current_index = len(queue)

        result.pending_save = list(self._publish_pending_save(result.warnings))
        self.warnings = list(result.warnings)
        LOG.info(
            f"Batch run finished: processed={len(result.processed)} skipped={len(result.skipped)} "
            f"pending_save={len(result.pending_save)} error={'yes' if result.error else 'no'}"
        )
        return result

    @staticmethod
    def _abort(result: BatchRunResult, error: CardDigitizerError, index: int, record_id: str) -> None:
        LOG.error(f"Batch run aborted at index {index} (record {record_id}): {error}")
        result.error = error
        result.failed_index = index
        result.failed_record_id = record_id

    def _extract(self, record: Record) -> Dict[str, Any]:
        image_bytes = decode_image_ref(record.image_ref, record_id=record.id)
        try:
            return self.extractor.extract(image_bytes, self.schema)
        except TimeoutError as exc:
            raise ExtractionFailed(f"timed out: {exc}", record_id=record.id) from exc

    def analyze_record(self, record_id: Optional[str] = None) -> Optional[Record]:
        """Analyze one record outside a full run.

        Without an id the first pending record in store order is taken; None
        is returned when nothing is pending. Errors propagate to the caller
        and leave the record UNANALYZED. Shares the run lock with batch runs.
        """
        if self.extractor is None:
            raise ExtractionFailed("no extraction backend configured")
        if not self._run_lock.acquire(blocking=False):
            raise BatchAlreadyRunning()
        try:
            records = self.store.load_all()
            if record_id is None:
                target = next((r for r in records if r.is_pending_analysis), None)
                if target is None:
                    LOG.info("No unanalyzed record left to analyze")
                    return None
            else:
                target = next((r for r in records if r.id == record_id), None)
                if target is None:
                    raise RecordNotFound(record_id)
                if target.lifecycle is not Lifecycle.UNANALYZED:
                    raise AlreadyAnalyzed(target.id, target.lifecycle.value)

            rlog = record_logger(LOG, target.id)
            rlog.info("analyzing single record")
            try:
                extracted = self._extract(target)
            except ExtractionFailed as exc:
                exc.record_id = target.id
                rlog.error(str(exc))
                raise

            warnings: List[str] = []
            with self._store_lock:
                committed = self._commit_extraction(target.id, extracted, warnings)
            self.warnings = warnings
            if committed is None:
                raise RecordNotFound(target.id)
            self._publish_pending_save(warnings)
            rlog.info(f"analyzed with {len(extracted)} field(s)")
            return committed
        finally:
            self._run_lock.release()

    # ------------------------------------------------------------------
    # Remote save
    # ------------------------------------------------------------------
    def _require_sink(self, record_id: Optional[str] = None) -> RemoteSink:
        if self.sink is None:
            raise RemoteWriteFailed("no remote sink configured", record_id=record_id)
        return self.sink

    def save_record_to_remote(self, record: Union[str, Record]) -> SaveResult:
        record_id = record.id if isinstance(record, Record) else str(record)
        current = self.store.get(record_id)

        if current.lifecycle is Lifecycle.SAVED:
            LOG.info(f"Record {record_id} is already saved; no remote write")
            self._drop_from_pending([record_id])
            return SaveResult(record_id=record_id, saved=True, already_saved=True, remote_id=current.remote_id)
        if current.lifecycle is Lifecycle.UNANALYZED:
            raise NotAnalyzed(record_id)

        payload = build_remote_payload(current, self.schema)
        if not payload:
            raise NotAnalyzed(record_id, "record carries no schema fields to save")

        sink = self._require_sink(record_id)
        try:
            remote_id = sink.insert(payload)
        except RemoteWriteFailed as exc:
            exc.record_id = record_id
            LOG.error(str(exc))
            raise

        with self._store_lock:
            updated = self._commit_saved(record_id, remote_id)
        self._drop_from_pending([record_id])
        LOG.info(f"Record {record_id} saved remotely (remote id {remote_id})")
        return SaveResult(
            record_id=record_id,
            saved=True,
            remote_id=updated.remote_id if updated else remote_id,
        )

    def save_all_pending(self) -> List[SaveResult]:
        """Save every ANALYZED_UNSAVED record; failures are collected per record."""
        results: List[SaveResult] = []
        for record in pending_save(self.store.load_all()):
            try:
                results.append(self.save_record_to_remote(record.id))
            except (RemoteWriteFailed, NotAnalyzed, RecordNotFound) as exc:
                results.append(SaveResult(record_id=record.id, saved=False, error=exc))
        failed = sum(1 for r in results if r.error is not None)
        LOG.info(f"Saved {len(results) - failed} record(s); {failed} failure(s)")
        return results

    # ------------------------------------------------------------------
    # Remote rows
    # ------------------------------------------------------------------
    def list_remote_rows(self, *, date_from: Optional[str] = None, date_to: Optional[str] = None) -> List[Dict[str, Any]]:
        if self.sink is None:
            raise RemoteReadFailed("no remote sink configured")
        return self.sink.list_rows(date_from=date_from, date_to=date_to)

    def update_remote_row(self, remote_id: str, changes: Mapping[str, Any]) -> Dict[str, Any]:
        """Push field edits to one remote row by its row id.

        Keys are local field keys; they are renamed to remote columns. A local
        SAVED record pointing at the same row receives the same edits.
        """
        unknown = sorted(k for k in changes if self.schema.get(k) is None or k in LOCAL_ONLY_ATTRIBUTES)
        if unknown:
            raise ValueError(f"not remote fields: {unknown}")
        bad = sorted(k for k, v in changes.items() if v is not None and not is_scalar(v))
        if bad:
            raise ValueError(f"field values must be strings or numbers: {bad}")
        delta = remote_fields(changes, self.schema)
        if not delta:
            raise ValueError("no field values to update")

        self._require_sink().update(remote_id, delta)
        LOG.info(f"Updated remote row {remote_id}: {sorted(delta)}")

        synced: List[str] = []
        with self._store_lock:
            records = self.store.load_all()
            for i, current in enumerate(records):
                if current.lifecycle is Lifecycle.SAVED and current.remote_id == str(remote_id):
                    records[i] = current.with_edits(changes)
                    synced.append(current.id)
            if synced:
                self.store.save_all(records)
        return {"remote_id": str(remote_id), "fields": delta, "synced_records": synced}

    def delete_remote_rows(
        self,
        remote_ids: Optional[Iterable[str]] = None,
        *,
        date_from: Optional[str] = None,
        date_to: Optional[str] = None,
    ) -> List[str]:
        """Delete remote rows by id, or every row inside a date range.

        Local records that pointed at a deleted row keep their fields and
        lifecycle but lose the row id.
        """
        by_date = date_from is not None or date_to is not None
        if remote_ids is not None and by_date:
            raise ValueError("give either row ids or a date range, not both")
        if remote_ids is None and not by_date:
            raise ValueError("give row ids or a date range")
        sink = self._require_sink()
        if remote_ids is None:
            rows = sink.list_rows(date_from=date_from, date_to=date_to)
            ids = [str(row["id"]) for row in rows if isinstance(row, dict) and row.get("id") is not None]
        else:
            ids = list(dict.fromkeys(str(i) for i in remote_ids))
        if not ids:
            LOG.info("No remote rows matched; nothing deleted")
            return []

        sink.delete(ids)
        LOG.info(f"Deleted {len(ids)} remote row(s)")

        gone = set(ids)
        with self._store_lock:
            records = self.store.load_all()
            detached = False
            for i, current in enumerate(records):
                if current.remote_id in gone:
                    records[i] = current.detach_remote()
                    detached = True
            if detached:
                self.store.save_all(records)
        return ids

    # ------------------------------------------------------------------
    # Review edits and deletion
    # ------------------------------------------------------------------
    def edit_record(self, record_id: str, changes: Mapping[str, Any]) -> Record:
        """Apply user edits to an analyzed record; lifecycle is unchanged.

        SAVED records with a known remote row get the changed fields pushed
        first; the local copy is only written when that succeeds.
        """
        reserved = sorted(set(changes) & LOCAL_ONLY_ATTRIBUTES)
        if reserved:
            raise ValueError(f"cannot edit local attributes: {reserved}")
        bad = sorted(k for k, v in changes.items() if v is not None and not is_scalar(v))
        if bad:
            raise ValueError(f"field values must be strings or numbers: {bad}")
        with self._store_lock:
            return self._edit_locked(record_id, changes)

    def _edit_locked(self, record_id: str, changes: Mapping[str, Any]) -> Record:
        records = self.store.load_all()
        for i, current in enumerate(records):
            if current.id == record_id:
                break
        else:
            raise RecordNotFound(record_id)

        if current.lifecycle is Lifecycle.UNANALYZED:
            raise NotAnalyzed(record_id)

        updated = current.with_edits(changes)
        if current.lifecycle is Lifecycle.SAVED:
            if current.remote_id and self.sink is not None:
                delta = remote_fields({k: updated.fields[k] for k in changes if k in updated.fields}, self.schema)
                if delta:
                    try:
                        self.sink.update(current.remote_id, delta)
                    except RemoteWriteFailed as exc:
                        exc.record_id = record_id
                        raise
            else:
                LOG.info(f"Record {record_id} has no remote row id; edit stays local")

        records[i] = updated
        self.store.save_all(records)
        self.pending_save = [updated if r.id == record_id else r for r in self.pending_save]
        return updated

    def delete_records(self, record_ids: Iterable[str], *, remote: bool = False) -> int:
        ids = {str(i) for i in record_ids}
        records = self.store.load_all()
        targets = [r for r in records if r.id in ids]
        missing = ids - {r.id for r in targets}
        if missing:
            LOG.warning(f"Ignoring unknown record id(s): {sorted(missing)}")

        if remote:
            remote_ids = {r.remote_id for r in targets if r.lifecycle is Lifecycle.SAVED and r.remote_id}
            if remote_ids:
                self._require_sink().delete(remote_ids)
                LOG.info(f"Deleted {len(remote_ids)} remote row(s)")

        with self._store_lock:
            removed = self.store.remove(r.id for r in targets)
        self._drop_from_pending(ids)
        return removed

    # ------------------------------------------------------------------
    # Views
    # ------------------------------------------------------------------
    def toggle_view(self) -> List[Record]:
        return self.views.toggle()

    def status(self) -> Dict[str, Any]:
        return {
            "running": self.is_running,
            "current_index": self.current_index,
            "total": self.total,
            "pending_save": [r.id for r in self.pending_save],
            "warnings": list(self.warnings),
            "view": self.views.mode.value,
            "last_result": self.last_result.summary() if self.last_result else None,
        }
