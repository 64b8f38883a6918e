"""ModelClient against a stub HTTP session; no network."""

from __future__ import annotations

import json
from typing import Any, Dict, List

import pytest
import requests

from inbox_sweep.config import ModelDefinition
from inbox_sweep.errors import ErrorKind, TriageError
from inbox_sweep.model_client import ModelClient, to_gemini_schema
from inbox_sweep.schema_validator import load_schema


class StubSession:
    def __init__(self, status: int, payload: Dict[str, Any]) -> None:
        self.status = status
        self.payload = payload
        self.calls: List[Dict[str, Any]] = []

    def post(self, url, json=None, headers=None, timeout=None):
        self.calls.append({"url": url, "json": json, "headers": headers, "timeout": timeout})
        response = requests.Response()
        response.status_code = self.status
        response._content = _dumps(self.payload)
        response.url = url
        return response


def _dumps(payload: Dict[str, Any]) -> bytes:
    return json.dumps(payload).encode("utf-8")


def _gemini(session) -> ModelClient:
    definition = ModelDefinition(name="gemini-flash", provider="gemini", model="gemini-2.5-flash")
    return ModelClient(definition=definition, session=session)


def test_gemini_schema_is_inlined_and_trimmed():
    converted = to_gemini_schema(load_schema("batch_classification"))

    item = converted["properties"]["results"]["items"]
    assert item["required"] == ["id", "label"]
    assert "$schema" not in converted
    assert "additionalProperties" not in item
    assert "maxLength" not in item["properties"]["reasoning"]


def test_nullable_types_collapse():
    converted = to_gemini_schema({"type": "object", "properties": {"x": {"type": ["string", "null"]}}})
    assert converted["properties"]["x"] == {"type": "string", "nullable": True}


def test_gemini_request_and_reply():
    session = StubSession(200, {"candidates": [{"content": {"parts": [{"text": '{"results": []}'}]}}]})
    text = _gemini(session).generate("prompt", load_schema("batch_classification"), api_key="AIzaTESTKEY")

    assert text == '{"results": []}'
    call = session.calls[0]
    assert call["url"].endswith("/models/gemini-2.5-flash:generateContent")
    assert call["headers"]["x-goog-api-key"] == "AIzaTESTKEY"
    assert call["json"]["generationConfig"]["responseMimeType"] == "application/json"
    assert "responseSchema" in call["json"]["generationConfig"]


def test_gemini_blocked_prompt_is_invalid_response():
    session = StubSession(200, {"promptFeedback": {"blockReason": "SAFETY"}})
    with pytest.raises(TriageError) as info:
        _gemini(session).generate("prompt", api_key="k")
    assert info.value.kind is ErrorKind.INVALID_RESPONSE
    assert "SAFETY" in info.value.message


def test_gemini_http_error_propagates():
    session = StubSession(429, {"error": {"status": "RESOURCE_EXHAUSTED", "message": "quota"}})
    with pytest.raises(requests.HTTPError):
        _gemini(session).generate("prompt", api_key="k")


def test_missing_key(monkeypatch):
    monkeypatch.delenv("SWEEP_TEST_KEY", raising=False)
    definition = ModelDefinition(name="m", api_key_env="SWEEP_TEST_KEY")
    with pytest.raises(TriageError) as info:
        ModelClient(definition=definition).resolve_api_key()
    assert info.value.kind is ErrorKind.MISSING_CREDENTIAL


def test_key_from_environment(monkeypatch):
    monkeypatch.setenv("SWEEP_TEST_KEY", " abc ")
    definition = ModelDefinition(name="m", api_key_env="SWEEP_TEST_KEY")
    assert ModelClient(definition=definition).resolve_api_key() == "abc"


def test_unknown_provider():
    definition = ModelDefinition(name="m", provider="carrier-pigeon")
    with pytest.raises(ValueError):
        ModelClient(definition=definition).generate("prompt", api_key="k")
