"""Configuration and wiring for the card digitizer."""

from __future__ import annotations

import os
import sys
from dataclasses import dataclass
from typing import Optional

from ..config import (
    load_extraction_backend as _cfg_load_extraction_backend,
    load_extraction_timeout as _cfg_load_extraction_timeout,
    load_field_schema as _cfg_load_field_schema,
    load_ollama as _cfg_load_ollama,
    load_openai as _cfg_load_openai,
    load_openrouter as _cfg_load_openrouter,
    load_store_settings as _cfg_load_store_settings,
    load_supabase as _cfg_load_supabase,
)
from ..domain.models import FieldSchema
from ..logging import get_logger
from ..paths import expand_abs, find_project_root, var_dir
from ..supabase.client import SupabaseClient
from .batch import BatchReconciler
from .extract import (
    ExtractionClient,
    OllamaExtractionClient,
    OpenAIExtractionClient,
    OpenRouterConfig,
    OpenRouterExtractionClient,
)
from .remote import RemoteSink, SupabaseSink
from .store import JsonFileRecordStore, RecordStore, SqliteRecordStore

LOG = get_logger("orchestrator-flow")


@dataclass
class FlowConfig:
    store_backend: str
    store_path: str
    extraction_backend: str
    extraction_timeout: int
    openrouter_api_key: Optional[str]
    openrouter_model: str
    ollama_url: str
    ollama_model: str
    openai_api_key: Optional[str]
    openai_model: str
    supabase_url: Optional[str]
    supabase_key: Optional[str]
    supabase_table: str
    insecure: bool
    schema: FieldSchema
    script_dir: str
    repo_root: str


def _default_store_path(repo_root: str, backend: str) -> str:
    name = "records.sqlite3" if backend == "sqlite" else "records.json"
    return os.path.join(var_dir(repo_root), "card_db", name)


def build_flow_config(args, *, script_dir: str) -> FlowConfig:
    """Create a FlowConfig from CLI args and env/.env, logging the result."""

    repo_root = find_project_root(script_dir)

    store_backend, store_path = _cfg_load_store_settings(script_dir)
    store_backend = getattr(args, "store_backend", None) or store_backend
    user_store_path = getattr(args, "store_path", None) or store_path
    store_path = expand_abs(user_store_path) if user_store_path else _default_store_path(repo_root, store_backend)

    extraction_backend = getattr(args, "backend", None) or _cfg_load_extraction_backend(script_dir)
    timeout = getattr(args, "timeout", None) or _cfg_load_extraction_timeout(script_dir)

    openrouter_key, openrouter_model = _cfg_load_openrouter(script_dir)
    ollama_url, ollama_model = _cfg_load_ollama(script_dir)
    openai_key, openai_model = _cfg_load_openai(script_dir)
    model_override = getattr(args, "model", None)
    if model_override:
        if extraction_backend == "ollama":
            ollama_model = model_override
        elif extraction_backend == "openai":
            openai_model = model_override
        else:
            openrouter_model = model_override

    supabase_url, supabase_key, supabase_table = _cfg_load_supabase(script_dir)
    schema = _cfg_load_field_schema(script_dir)

    LOG.info("Flow configuration prepared")
    LOG.info(f"Record store       : {store_backend} at {store_path}")
    LOG.info(f"Extraction backend : {extraction_backend}")
    LOG.info(f"Extraction timeout : {timeout}s")
    LOG.info(f"Supabase table     : {supabase_table if supabase_url else '(not configured)'}")
    LOG.info(f"Schema fields      : {', '.join(schema.keys())}")

    return FlowConfig(
        store_backend=store_backend,
        store_path=store_path,
        extraction_backend=extraction_backend,
        extraction_timeout=int(timeout),
        openrouter_api_key=openrouter_key,
        openrouter_model=openrouter_model,
        ollama_url=ollama_url,
        ollama_model=ollama_model,
        openai_api_key=openai_key,
        openai_model=openai_model,
        supabase_url=supabase_url,
        supabase_key=supabase_key,
        supabase_table=supabase_table,
        insecure=bool(getattr(args, "insecure", False)),
        schema=schema,
        script_dir=script_dir,
        repo_root=repo_root,
    )


def build_store(config: FlowConfig) -> RecordStore:
    if config.store_backend == "sqlite":
        return SqliteRecordStore(config.store_path)
    return JsonFileRecordStore(config.store_path)


def build_extraction_client(config: FlowConfig) -> ExtractionClient:
    backend = config.extraction_backend
    if backend == "ollama":
        return OllamaExtractionClient(
            ollama_url=config.ollama_url,
            model=config.ollama_model,
            timeout=config.extraction_timeout,
        )
    if backend == "openai":
        if not config.openai_api_key:
            LOG.error("OPENAI_API_KEY missing. Set it in env/.env or pick another EXTRACTION_BACKEND.")
            raise SystemExit(1)
        return OpenAIExtractionClient(
            api_key=config.openai_api_key,
            model=config.openai_model,
            timeout=config.extraction_timeout,
        )
    if not config.openrouter_api_key:
        LOG.error("OPEN_ROUTER_API_KEY missing. Set it in env/.env or pick another EXTRACTION_BACKEND.")
        raise SystemExit(1)
    return OpenRouterExtractionClient(
        OpenRouterConfig(
            api_key=config.openrouter_api_key,
            model_name=config.openrouter_model,
            timeout_seconds=config.extraction_timeout,
        )
    )


def build_sink(config: FlowConfig) -> Optional[RemoteSink]:
    if not config.supabase_url or not config.supabase_key:
        LOG.warning("SUPABASE_URL/SUPABASE_KEY not set; remote saves are disabled")
        return None
    client = SupabaseClient(
        config.supabase_url,
        config.supabase_key,
        config.supabase_table,
        verify_tls=not config.insecure,
    )
    date_column = config.schema.remote_key_for(config.schema.timestamp_key)
    return SupabaseSink(client, date_column=date_column)


def build_reconciler(
    config: FlowConfig,
    *,
    extractor: Optional[ExtractionClient] = None,
    with_extraction: bool = True,
) -> BatchReconciler:
    """Wire store, extraction client and sink into one reconciler.

    Commands that never analyze pass with_extraction=False so no API key is needed.
    """
    store = build_store(config)
    if extractor is None and with_extraction:
        extractor = build_extraction_client(config)
    sink = build_sink(config)
    LOG.info("BatchReconciler ready")
    return BatchReconciler(store, extractor, sink, config.schema)


def log_environment_banner() -> None:
    """Print environment information relevant for debugging runs."""

    LOG.info("Starting card digitizer")
    LOG.info(f"Working directory: {os.getcwd()}")
    LOG.info(f"Python executable: {sys.executable}")
