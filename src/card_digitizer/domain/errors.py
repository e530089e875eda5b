from __future__ import annotations

from typing import Optional


class CardDigitizerError(Exception):
    """Base class for every error the reconciliation core raises."""


class StorageCorrupt(CardDigitizerError):
    def __init__(self, detail: str) -> None:
        super().__init__(f"persisted record collection is unreadable: {detail}")
        self.detail = detail


class InvalidImage(CardDigitizerError):
    def __init__(self, reason: str, record_id: Optional[str] = None) -> None:
        prefix = f"record {record_id}: " if record_id else ""
        super().__init__(f"{prefix}invalid image ({reason})")
        self.reason = reason
        self.record_id = record_id


class ExtractionFailed(CardDigitizerError):
    """The extraction call failed; carries the queue position once the batch knows it."""

    def __init__(self, reason: str, *, record_id: Optional[str] = None, index: Optional[int] = None) -> None:
        super().__init__(reason)
        self.reason = reason
        self.record_id = record_id
        self.index = index

    def at(self, *, record_id: str, index: int) -> "ExtractionFailed":
        self.record_id = record_id
        self.index = index
        return self

    def __str__(self) -> str:
        if self.record_id is None:
            return f"extraction failed: {self.reason}"
        return f"extraction failed at index {self.index} (record {self.record_id}): {self.reason}"


class NotAnalyzed(CardDigitizerError):
    def __init__(self, record_id: str, detail: str = "record has not been analyzed yet") -> None:
        super().__init__(f"record {record_id}: {detail}")
        self.record_id = record_id


class RemoteWriteFailed(CardDigitizerError):
    def __init__(self, reason: str, *, record_id: Optional[str] = None, status_code: Optional[int] = None) -> None:
        super().__init__(reason)
        self.reason = reason
        self.record_id = record_id
        self.status_code = status_code

    def __str__(self) -> str:
        if self.record_id is None:
            return f"remote write failed: {self.reason}"
        return f"remote write failed for record {self.record_id}: {self.reason}"


class RecordNotFound(CardDigitizerError):
    def __init__(self, record_id: str) -> None:
        super().__init__(record_id)
        self.record_id = record_id

    def __str__(self) -> str:
        return f"record not found: {self.record_id}"


class BatchAlreadyRunning(CardDigitizerError):
    def __init__(self) -> None:
        super().__init__("a batch extraction run is already in progress")


class RemoteReadFailed(CardDigitizerError):
    def __init__(self, reason: str, *, status_code: Optional[int] = None) -> None:
        super().__init__(f"remote read failed: {reason}")
        self.reason = reason
        self.status_code = status_code


class AlreadyAnalyzed(CardDigitizerError):
    def __init__(self, record_id: str, lifecycle: str) -> None:
        super().__init__(f"record {record_id}: already {lifecycle}; only unanalyzed records can be analyzed")
        self.record_id = record_id
        self.lifecycle = lifecycle
