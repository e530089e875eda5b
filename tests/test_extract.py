import json
from types import SimpleNamespace

import pytest
import requests

from card_digitizer.domain.errors import ExtractionFailed, InvalidImage
from card_digitizer.domain.models import DEFAULT_FIELD_SCHEMA, Lifecycle
from card_digitizer.orchestrator import extract as extract_mod
from card_digitizer.orchestrator.batch import BatchReconciler
from card_digitizer.orchestrator.extract import (
    OllamaExtractionClient,
    OpenAIExtractionClient,
    OpenRouterConfig,
    OpenRouterExtractionClient,
    build_prompt,
    filter_to_schema,
    parse_model_json,
)

from conftest import make_record


class _Resp:
    def __init__(self, status_code=200, body=None, text=""):
        self.status_code = status_code
        self._body = body
        self.text = text or json.dumps(body)

    def json(self):
        if self._body is None:
            raise ValueError("no json")
        return self._body

    def raise_for_status(self):
        if self.status_code >= 400:
            raise requests.HTTPError(f"HTTP {self.status_code}")


def test_prompt_lists_extractable_keys_only():
    prompt = build_prompt(DEFAULT_FIELD_SCHEMA)
    assert '"name"' in prompt and '"mode"' in prompt
    assert '"dateAdded"' not in prompt


def test_parse_model_json_tolerates_fences_and_prose():
    assert parse_model_json('```json\n{"name": "A"}\n```') == {"name": "A"}
    assert parse_model_json('Sure! {"name": "A"} hope that helps') == {"name": "A"}
    assert parse_model_json('[{"name": "A"}]') == {"name": "A"}
    with pytest.raises(ExtractionFailed):
        parse_model_json("")
    with pytest.raises(ExtractionFailed):
        parse_model_json("no json here")


def test_filter_to_schema():
    out = filter_to_schema(
        {"phone": " 123 ", "name": "Ann", "company": "", "mode": None, "address": ["x"], "extra": 1},
        DEFAULT_FIELD_SCHEMA,
    )
    assert out == {"name": "Ann", "phone": "123"}
    assert list(out) == ["name", "phone"]
    with pytest.raises(ExtractionFailed):
        filter_to_schema({"foo": "bar"}, DEFAULT_FIELD_SCHEMA)


def test_zero_bytes_is_invalid_image_not_extraction_failure():
    client = OllamaExtractionClient(ollama_url="http://ollama", model="m")
    with pytest.raises(InvalidImage):
        client.extract(b"", DEFAULT_FIELD_SCHEMA)


def test_openrouter_success(monkeypatch, png_bytes):
    captured = {}

    def fake_post(url, headers=None, json=None, timeout=None):
        captured.update(url=url, headers=headers, payload=json, timeout=timeout)
        body = {"choices": [{"message": {"content": '{"name": "Ann", "company": "Acme"}'}}]}
        return _Resp(200, body)

    monkeypatch.setattr(extract_mod.requests, "post", fake_post)
    client = OpenRouterExtractionClient(OpenRouterConfig(api_key="k", model_name="m", timeout_seconds=7))
    out = client.extract(png_bytes, DEFAULT_FIELD_SCHEMA)
    assert out == {"name": "Ann", "company": "Acme"}
    assert captured["url"] == OpenRouterExtractionClient.ENDPOINT
    assert captured["headers"]["Authorization"] == "Bearer k"
    assert captured["timeout"] == 7
    image_part = captured["payload"]["messages"][0]["content"][1]
    assert image_part["image_url"]["url"].startswith("data:image/png;base64,")


def test_openrouter_http_error_and_timeout(monkeypatch, png_bytes):
    client = OpenRouterExtractionClient(OpenRouterConfig(api_key="k", model_name="m"))
    monkeypatch.setattr(extract_mod.requests, "post", lambda *a, **k: _Resp(500, {"error": "x"}))
    with pytest.raises(ExtractionFailed):
        client.extract(png_bytes, DEFAULT_FIELD_SCHEMA)

    def boom(*a, **k):
        raise requests.Timeout("read timed out")

    monkeypatch.setattr(extract_mod.requests, "post", boom)
    with pytest.raises(ExtractionFailed) as exc_info:
        client.extract(png_bytes, DEFAULT_FIELD_SCHEMA)
    assert "timed out" in str(exc_info.value)


@pytest.mark.parametrize(
    "body",
    [
        {"choices": [None]},
        {"choices": ["x"]},
        {"choices": [{"message": "plain text"}]},
        {"choices": {"message": {}}},
    ],
)
def test_openrouter_malformed_choices_are_extraction_failures(monkeypatch, png_bytes, body):
    client = OpenRouterExtractionClient(OpenRouterConfig(api_key="k", model_name="m"))
    monkeypatch.setattr(extract_mod.requests, "post", lambda *a, **k: _Resp(200, body))
    with pytest.raises(ExtractionFailed):
        client.extract(png_bytes, DEFAULT_FIELD_SCHEMA)


def test_malformed_reply_aborts_batch_and_releases_it(monkeypatch, store, png_data_url):
    store.save_all([make_record("A", png_data_url)])
    client = OpenRouterExtractionClient(OpenRouterConfig(api_key="k", model_name="m"))
    monkeypatch.setattr(extract_mod.requests, "post", lambda *a, **k: _Resp(200, {"choices": [None]}))
    rec = BatchReconciler(store, client)

    result = rec.run_batch_extraction()

    assert not result.ok
    assert isinstance(result.error, ExtractionFailed)
    assert result.failed_record_id == "A"
    assert not rec.is_running
    assert store.get("A").lifecycle is Lifecycle.UNANALYZED


def test_ollama_success(monkeypatch, png_bytes):
    seen = {}

    def fake_post(url, json=None, timeout=None):
        seen.update(url=url, payload=json)
        return _Resp(200, {"message": {"content": '{"name": "Ann", "phone": 12345}'}})

    monkeypatch.setattr(extract_mod.requests, "post", fake_post)
    client = OllamaExtractionClient(ollama_url="http://ollama:11434/", model="qwen")
    assert client.extract(png_bytes, DEFAULT_FIELD_SCHEMA) == {"name": "Ann", "phone": 12345}
    assert seen["url"] == "http://ollama:11434/api/chat"
    assert seen["payload"]["format"] == "json"
    assert seen["payload"]["stream"] is False


def test_openai_client_uses_injected_sdk_client(png_bytes):
    calls = []

    def create(**kwargs):
        calls.append(kwargs)
        message = SimpleNamespace(content='{"name": "Ann"}')
        return SimpleNamespace(id="c1", choices=[SimpleNamespace(message=message)], usage=None)

    fake = SimpleNamespace(chat=SimpleNamespace(completions=SimpleNamespace(create=create)))
    client = OpenAIExtractionClient(api_key="k", model="gpt-4o-mini", client=fake)
    assert client.extract(png_bytes, DEFAULT_FIELD_SCHEMA) == {"name": "Ann"}
    assert calls[0]["response_format"] == {"type": "json_object"}
    assert calls[0]["model"] == "gpt-4o-mini"
