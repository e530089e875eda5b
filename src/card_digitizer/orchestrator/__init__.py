"""Batch reconciliation core for captured business cards."""

from .store import RecordStore, JsonFileRecordStore, SqliteRecordStore, MemoryRecordStore
from .extract import (
    ExtractionClient,
    OllamaExtractionClient,
    OpenAIExtractionClient,
    OpenRouterConfig,
    OpenRouterExtractionClient,
)
from .remote import RemoteSink, SupabaseSink, build_remote_payload
from .views import ViewMode, ViewProjection, pending_analysis, pending_save
from .batch import BatchReconciler, BatchRunResult, SaveResult
from .capture import capture_image, ingest_directory
from .flow import FlowConfig, build_flow_config, build_reconciler, log_environment_banner

__all__ = [
    "RecordStore",
    "JsonFileRecordStore",
    "SqliteRecordStore",
    "MemoryRecordStore",
    "ExtractionClient",
    "OllamaExtractionClient",
    "OpenAIExtractionClient",
    "OpenRouterConfig",
    "OpenRouterExtractionClient",
    "RemoteSink",
    "SupabaseSink",
    "build_remote_payload",
    "ViewMode",
    "ViewProjection",
    "pending_analysis",
    "pending_save",
    "BatchReconciler",
    "BatchRunResult",
    "SaveResult",
    "capture_image",
    "ingest_directory",
    "FlowConfig",
    "build_flow_config",
    "build_reconciler",
    "log_environment_banner",
]
