"""Vision-LLM extraction of card fields.

Every backend takes raw image bytes plus the field schema and returns a flat
mapping of schema keys to scalars, or raises ExtractionFailed. No retries
happen here; the batch decides what to do with a failure.
"""

from __future__ import annotations

import base64
import json
import re
import time
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

import httpx
import requests
from openai import APIConnectionError, APIStatusError, APITimeoutError, OpenAI

from ..domain.errors import ExtractionFailed, InvalidImage
from ..domain.images import sniff_mime
from ..domain.models import FieldSchema, Scalar, is_scalar
from ..logging import get_logger

LOG = get_logger("orchestrator-extract")


def build_prompt(schema: FieldSchema) -> str:
    lines = []
    for spec in schema.fields:
        if spec.key == schema.timestamp_key:
            continue
        lines.append(f'- "{spec.key}": {spec.label}')
    keys = "\n".join(lines)
    return (
        "Extract the following fields from this business card / delivery slip image.\n"
        f"{keys}\n"
        "Return ONLY a single JSON object using exactly these keys. Use strings or numbers as values. "
        "Use null for anything that is not visible on the image. No prose, no markdown fences."
    )


def _scavenge_json_block(s: str) -> Optional[Any]:
    if not s:
        return None

    candidates: List[str] = []

    # Fenced code blocks first (```json ... ```)
    fenced = re.search(r"```(?:json)?\s*(.*?)```", s, re.DOTALL)
    if fenced and fenced.group(1):
        candidates.append(fenced.group(1).strip())

    start_obj = s.find("{")
    end_obj = s.rfind("}")
    if start_obj != -1 and end_obj != -1 and end_obj > start_obj:
        candidates.append(s[start_obj : end_obj + 1])

    for candidate in candidates:
        try:
            return json.loads(candidate)
        except ValueError:
            continue

    return None


def parse_model_json(text: Optional[str]) -> Dict[str, Any]:
    """Parse a model reply into a JSON object, tolerating fences and surrounding prose."""
    if not text or not text.strip():
        raise ExtractionFailed("model returned empty content")
    try:
        data = json.loads(text)
    except ValueError:
        LOG.debug("Strict JSON parse failed; scavenging (first 300 chars: %r)", text[:300])
        data = _scavenge_json_block(text)
    if isinstance(data, list) and len(data) == 1 and isinstance(data[0], dict):
        data = data[0]
    if not isinstance(data, dict):
        raise ExtractionFailed(f"malformed response: expected a JSON object, got {type(data).__name__}")
    return data


def filter_to_schema(raw: Dict[str, Any], schema: FieldSchema) -> Dict[str, Scalar]:
    """Keep only schema keys with scalar values, in schema order.

    Raises ExtractionFailed when the response shares no key with the schema.
    """
    wanted = schema.extractable_keys()
    recognized = [k for k in wanted if k in raw]
    if not recognized:
        raise ExtractionFailed(f"schema mismatch: none of {wanted} present in response keys {sorted(raw)}")
    out: Dict[str, Scalar] = {}
    for key in recognized:
        value = raw[key]
        if value is None:
            continue
        if isinstance(value, str):
            value = value.strip()
            if not value:
                continue
        if not is_scalar(value):
            LOG.debug("Dropping non-scalar value for key %s: %r", key, value)
            continue
        out[key] = value
    ignored = sorted(set(raw) - set(wanted))
    if ignored:
        LOG.debug("Ignoring keys outside the field schema: %s", ignored)
    return out


def _mime_for(image_bytes: bytes) -> str:
    try:
        return sniff_mime(image_bytes)
    except InvalidImage:
        return "image/jpeg"


def _data_url(image_bytes: bytes) -> str:
    b64 = base64.b64encode(image_bytes).decode("ascii")
    return f"data:{_mime_for(image_bytes)};base64,{b64}"


class ExtractionClient:
    """Contract: extract(image_bytes, schema) -> mapping of schema keys to scalars."""

    name = "extraction"

    def extract(self, image_bytes: bytes, schema: FieldSchema) -> Dict[str, Scalar]:
        if not image_bytes:
            raise InvalidImage("image decodes to zero bytes")
        t0 = time.perf_counter()
        raw = self._request(image_bytes, schema)
        fields = filter_to_schema(raw, schema)
        LOG.info(
            "%s extraction finished in %.2fs with %d field(s)",
            self.name,
            time.perf_counter() - t0,
            len(fields),
        )
        return fields

    def _request(self, image_bytes: bytes, schema: FieldSchema) -> Dict[str, Any]:
        raise NotImplementedError


@dataclass
class OpenRouterConfig:
    api_key: str
    model_name: str
    timeout_seconds: int = 120
    temperature: float = 0.0
    max_tokens: int = 1000


class OpenRouterExtractionClient(ExtractionClient):
    """Chat completions against OpenRouter with the image inlined as a data URL."""

    ENDPOINT = "https://openrouter.ai/api/v1/chat/completions"
    name = "openrouter"

    def __init__(self, config: OpenRouterConfig) -> None:
        self.config = config

    def _request(self, image_bytes: bytes, schema: FieldSchema) -> Dict[str, Any]:
        payload = {
            "model": self.config.model_name,
            "messages": [
                {
                    "role": "user",
                    "content": [
                        {"type": "text", "text": build_prompt(schema)},
                        {"type": "image_url", "image_url": {"url": _data_url(image_bytes)}},
                    ],
                }
            ],
            "temperature": self.config.temperature,
            "max_tokens": self.config.max_tokens,
            "response_format": {"type": "json_object"},
        }
        headers = {
            "Authorization": f"Bearer {self.config.api_key}",
            "Content-Type": "application/json",
        }
        LOG.info("Calling OpenRouter model='%s'", self.config.model_name)
        try:
            resp = requests.post(
                self.ENDPOINT,
                headers=headers,
                json=payload,
                timeout=self.config.timeout_seconds,
            )
        except requests.Timeout as exc:
            raise ExtractionFailed(f"OpenRouter request timed out: {exc}") from exc
        except requests.RequestException as exc:
            raise ExtractionFailed(f"OpenRouter request failed: {exc}") from exc

        if resp.status_code >= 400:
            LOG.error("OpenRouter HTTP %s: %s", resp.status_code, resp.text[:500])
            raise ExtractionFailed(f"OpenRouter HTTP {resp.status_code}")

        try:
            body = resp.json()
        except ValueError as exc:
            raise ExtractionFailed("OpenRouter returned a non-JSON body") from exc
        choices = body.get("choices") if isinstance(body, dict) else None
        if not choices or not isinstance(choices, list):
            raise ExtractionFailed(f"OpenRouter returned no choices: {str(body)[:300]}")
        message = choices[0].get("message") if isinstance(choices[0], dict) else None
        if not isinstance(message, dict):
            raise ExtractionFailed(f"malformed response: no message in first choice: {str(choices[0])[:300]}")
        return parse_model_json(message.get("content"))


class OllamaExtractionClient(ExtractionClient):
    """Non-streaming /api/chat call against a local Ollama vision model."""

    name = "ollama"

    def __init__(self, *, ollama_url: str, model: str, timeout: int = 300) -> None:
        self.url = ollama_url if ollama_url.endswith("/api/chat") else ollama_url.rstrip("/") + "/api/chat"
        self.model = model
        self.timeout = timeout

    def _request(self, image_bytes: bytes, schema: FieldSchema) -> Dict[str, Any]:
        payload = {
            "model": self.model,
            "messages": [
                {
                    "role": "user",
                    "content": build_prompt(schema),
                    "images": [base64.b64encode(image_bytes).decode("ascii")],
                }
            ],
            "stream": False,
            "format": "json",
            "options": {"temperature": 0},
        }
        LOG.info("Calling Ollama model='%s'", self.model)
        LOG.debug(f"Ollama URL: {self.url}; timeout: {self.timeout}s")
        try:
            resp = requests.post(self.url, json=payload, timeout=self.timeout)
            resp.raise_for_status()
            body = resp.json()
        except requests.Timeout as exc:
            raise ExtractionFailed(f"Ollama request timed out: {exc}") from exc
        except requests.RequestException as exc:
            raise ExtractionFailed(f"Ollama request failed: {exc}") from exc
        except ValueError as exc:
            raise ExtractionFailed("Ollama returned a non-JSON body") from exc

        if isinstance(body, dict) and body.get("error"):
            raise ExtractionFailed(f"Ollama error: {body['error']}")
        msg = body.get("message") if isinstance(body, dict) else None
        content = msg.get("content") if isinstance(msg, dict) else None
        if not content and isinstance(body, dict):
            # /api/generate-style replies
            content = body.get("response")
        return parse_model_json(content)


class OpenAIExtractionClient(ExtractionClient):
    """OpenAI chat completions (vision) in JSON-object mode, SDK retries disabled."""

    name = "openai"

    def __init__(
        self,
        *,
        api_key: str,
        model: str,
        base_url: Optional[str] = None,
        timeout: int = 120,
        client: Optional[OpenAI] = None,
    ) -> None:
        self.model = model
        self.timeout = float(timeout)
        self._http_client: Optional[httpx.Client] = None
        if client is None:
            self._http_client = httpx.Client(
                timeout=httpx.Timeout(connect=10.0, read=self.timeout, write=30.0, pool=10.0),
                limits=httpx.Limits(max_keepalive_connections=5, max_connections=10),
            )
            client = OpenAI(api_key=api_key, base_url=base_url, http_client=self._http_client, max_retries=0)
        self.client = client

    def close(self) -> None:
        if self._http_client is not None:
            self._http_client.close()
            self._http_client = None

    def _request(self, image_bytes: bytes, schema: FieldSchema) -> Dict[str, Any]:
        messages = [
            {
                "role": "system",
                "content": (
                    "You are a strict JSON generator. Output ONLY a single JSON object. "
                    "No prose, no markdown fences, no trailing text."
                ),
            },
            {
                "role": "user",
                "content": [
                    {"type": "text", "text": build_prompt(schema)},
                    {"type": "image_url", "image_url": {"url": _data_url(image_bytes)}},
                ],
            },
        ]
        LOG.info("Calling OpenAI Chat Completions (vision) model='%s'", self.model)
        try:
            completion = self.client.chat.completions.create(
                model=self.model,
                messages=messages,
                response_format={"type": "json_object"},
                timeout=self.timeout,
            )
        except (APIConnectionError, APITimeoutError) as exc:
            raise ExtractionFailed(f"network/timeout while calling OpenAI: {exc}") from exc
        except APIStatusError as exc:
            body = getattr(getattr(exc, "response", None), "text", None)
            LOG.error("OpenAI API returned %s. Body preview: %r", exc.status_code, body[:300] if body else None)
            raise ExtractionFailed(f"OpenAI HTTP {exc.status_code}") from exc

        choice = completion.choices[0] if getattr(completion, "choices", None) else None
        text = choice.message.content if choice and getattr(choice, "message", None) else None
        usage = getattr(completion, "usage", None)
        LOG.debug(
            "Chat completion id=%s usage=%s",
            getattr(completion, "id", None),
            {k: getattr(usage, k, None) for k in ("prompt_tokens", "completion_tokens", "total_tokens")} if usage else None,
        )
        return parse_model_json(text)
