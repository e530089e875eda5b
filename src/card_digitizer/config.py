import json
import os
from typing import Dict, Optional, Tuple

from dotenv import dotenv_values

from .domain.models import DEFAULT_FIELD_SCHEMA, FieldSchema
from .logging import get_logger

log = get_logger("config")


def _find_upwards(start_dir: str, filename: str) -> Optional[str]:
    """Return first matching file found when walking up from start_dir.

    This makes running tools from subdirectories (e.g., `src/`) still find
    repository-level config files like `.env` and `field_schema.json`.
    """
    d = os.path.abspath(start_dir or ".")
    while True:
        candidate = os.path.join(d, filename)
        if os.path.isfile(candidate):
            return candidate
        parent = os.path.dirname(d)
        if parent == d:
            return None
        d = parent


def _read_dotenv(dotenv_dir: str) -> Dict[str, str]:
    """Read the nearest .env upwards from dotenv_dir without touching os.environ."""
    path = _find_upwards(dotenv_dir, ".env")
    if not path:
        log.debug(f"No .env found starting from: {os.path.abspath(dotenv_dir)}")
        return {}
    values = {k: (v or "").strip() for k, v in dotenv_values(path).items() if k}
    log.debug(f"Loaded {len(values)} key(s) from .env at {path}")
    return values


def get_setting(dotenv_dir: str, *names: str, default: Optional[str] = None) -> Optional[str]:
    """Return the first non-empty value among `names`: environment first, then .env."""
    for name in names:
        v = os.environ.get(name)
        if v and v.strip():
            return v.strip()
    env = _read_dotenv(dotenv_dir)
    for name in names:
        v = env.get(name)
        if v:
            return v
    return default


def load_store_settings(dotenv_dir: str) -> Tuple[str, Optional[str]]:
    """Return (backend, path) for the local record store; path None means default location."""
    backend = (get_setting(dotenv_dir, "CARD_STORE_BACKEND", default="json") or "json").lower()
    if backend not in {"json", "sqlite"}:
        log.warning(f"Unknown CARD_STORE_BACKEND={backend!r}; falling back to 'json'")
        backend = "json"
    return backend, get_setting(dotenv_dir, "CARD_STORE_PATH")


def load_extraction_backend(dotenv_dir: str) -> str:
    backend = (get_setting(dotenv_dir, "EXTRACTION_BACKEND", default="openrouter") or "openrouter").lower()
    if backend not in {"openrouter", "ollama", "openai"}:
        log.warning(f"Unknown EXTRACTION_BACKEND={backend!r}; defaulting to 'openrouter'")
        backend = "openrouter"
    return backend


def load_ollama(dotenv_dir: str) -> Tuple[str, str]:
    """Return (ollama_url, ollama_model) with sensible defaults."""
    url = get_setting(dotenv_dir, "OLLAMA_URL", default="http://localhost:11434")
    model = get_setting(dotenv_dir, "OLLAMA_MODEL", default="qwen2.5vl:7b")
    return url, model


def load_openai(dotenv_dir: str) -> Tuple[Optional[str], str]:
    """Return (api_key, model) for the OpenAI backend."""
    api_key = get_setting(dotenv_dir, "OPENAI_API_KEY", "openai_api_key")
    model = get_setting(dotenv_dir, "OPENAI_MODEL", default="gpt-4o-mini")
    return api_key, model


def load_openrouter(dotenv_dir: str) -> Tuple[Optional[str], str]:
    """Return (api_key, model) for the OpenRouter backend.

    Looks for OPEN_ROUTER_API_KEY (or OPENROUTER_API_KEY / lowercase variant).
    """
    api_key = get_setting(dotenv_dir, "OPEN_ROUTER_API_KEY", "OPENROUTER_API_KEY", "open_router_api_key")
    model = get_setting(dotenv_dir, "OPENROUTER_MODEL", default="google/gemini-2.0-flash-001")
    return api_key, model


def load_extraction_timeout(dotenv_dir: str, fallback: int = 120) -> int:
    raw = get_setting(dotenv_dir, "EXTRACTION_TIMEOUT")
    if not raw:
        return fallback
    try:
        return max(1, int(raw))
    except ValueError:
        log.warning(f"EXTRACTION_TIMEOUT={raw!r} is not an integer; using {fallback}s")
        return fallback


def load_supabase(dotenv_dir: str) -> Tuple[Optional[str], Optional[str], str]:
    """Return (url, key, table) for the hosted table."""
    url = get_setting(dotenv_dir, "SUPABASE_URL")
    key = get_setting(dotenv_dir, "SUPABASE_KEY", "SUPABASE_ANON_KEY")
    table = get_setting(dotenv_dir, "SUPABASE_TABLE", default="contacts")
    return url, key, table


def load_field_schema(script_dir: str) -> FieldSchema:
    path = _find_upwards(script_dir, "field_schema.json")
    if not path:
        log.info("No field_schema.json found; using the default card schema")
        return DEFAULT_FIELD_SCHEMA
    try:
        with open(path, "r", encoding="utf-8") as f:
            data = json.load(f)
        if isinstance(data, dict):
            schema = FieldSchema.from_list(
                data.get("fields") or [],
                timestamp_key=str(data.get("timestamp_key") or DEFAULT_FIELD_SCHEMA.timestamp_key),
            )
        else:
            schema = FieldSchema.from_list(data)
        log.info(f"Loaded field_schema.json with {len(schema.fields)} field(s) from {path}")
        return schema
    except (OSError, ValueError, TypeError, AttributeError) as e:
        log.warning(f"Failed to read field_schema.json ({e}); using the default card schema")
        return DEFAULT_FIELD_SCHEMA
