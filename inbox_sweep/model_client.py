from __future__ import annotations

import copy
import logging
import os
from dataclasses import dataclass, field
from typing import Any, Dict, Optional

import requests  # type: ignore[import]
from openai import OpenAI  # type: ignore[import]

from .config import ModelDefinition
from .errors import ErrorKind, TriageError
from .interfaces import ClassificationService
from .utils import load_env_file

logger = logging.getLogger("inbox_sweep.model")

GEMINI_BASE_URL = "https://generativelanguage.googleapis.com/v1beta"

# Subset of JSON Schema keywords Gemini accepts in responseSchema.
_GEMINI_SCHEMA_KEYS = {
    "type",
    "format",
    "description",
    "nullable",
    "enum",
    "properties",
    "required",
    "items",
    "minItems",
    "maxItems",
    "minimum",
    "maximum",
    "propertyOrdering",
}


def to_gemini_schema(schema: Dict[str, Any]) -> Dict[str, Any]:
    """Inline local $refs and drop keywords Gemini rejects."""
    definitions = schema.get("definitions", {})

    def convert(node: Any) -> Any:
        if isinstance(node, list):
            return [convert(n) for n in node]
        if not isinstance(node, dict):
            return node
        if "$ref" in node:
            name = node["$ref"].rsplit("/", 1)[-1]
            return convert(copy.deepcopy(definitions[name]))
        out: Dict[str, Any] = {}
        for key, value in node.items():
            if key not in _GEMINI_SCHEMA_KEYS:
                continue
            if key == "type" and isinstance(value, list):
                kinds = [v for v in value if v != "null"]
                out["type"] = kinds[0] if kinds else "string"
                if "null" in value:
                    out["nullable"] = True
            elif key == "properties":
                out[key] = {k: convert(v) for k, v in value.items()}
            else:
                out[key] = convert(value)
        return out

    return convert(schema)


@dataclass
class ModelClient(ClassificationService):
    """Calls one configured model and hands back its raw text.

    - gemini: generateContent over plain HTTP with a JSON response schema.
    - openai / openai-compatible: chat completions in JSON mode.
    """

    definition: ModelDefinition
    session: requests.Session = field(default_factory=requests.Session)

    def resolve_api_key(self) -> str:
        load_env_file()
        api_key = os.environ.get(self.definition.api_key_env, "").strip()
        if not api_key:
            raise TriageError(
                ErrorKind.MISSING_CREDENTIAL,
                f"Environment variable {self.definition.api_key_env} is not set. "
                f"Cannot authenticate for model {self.definition.name}.",
                {"model": self.definition.name},
            )
        return api_key

    def generate(
        self,
        prompt: str,
        response_schema: Optional[Dict[str, Any]] = None,
        api_key: Optional[str] = None,
    ) -> str:
        provider = (self.definition.provider or "").strip().lower()
        key = api_key or self.resolve_api_key()

        if provider == "gemini":
            return self._generate_gemini(prompt, response_schema, key)
        if provider in {"openai", "openai-compatible"}:
            return self._generate_openai(prompt, key)

        raise ValueError(
            f"Unknown model provider '{self.definition.provider}' for model '{self.definition.name}'. "
            "Supported: gemini, openai, openai-compatible"
        )

    # -----------------------------
    # Gemini (HTTP)
    # -----------------------------

    def _generate_gemini(
        self, prompt: str, response_schema: Optional[Dict[str, Any]], api_key: str
    ) -> str:
        base = (self.definition.base_url or GEMINI_BASE_URL).rstrip("/")
        url = f"{base}/models/{self.definition.model}:generateContent"
        generation: Dict[str, Any] = {
            "temperature": self.definition.temperature,
            "responseMimeType": "application/json",
        }
        if response_schema:
            generation["responseSchema"] = to_gemini_schema(response_schema)

        body = {
            "contents": [{"role": "user", "parts": [{"text": prompt}]}],
            "generationConfig": generation,
        }
        logger.debug("Calling Gemini model %s", self.definition.model)
        resp = self.session.post(
            url,
            json=body,
            headers={"x-goog-api-key": api_key, "Content-Type": "application/json"},
            timeout=self.definition.timeout_seconds,
        )
        if not resp.ok:
            logger.error("Gemini call failed (%s): %s", resp.status_code, resp.text[:500])
            resp.raise_for_status()

        data = resp.json()
        candidates = data.get("candidates") or []
        if not candidates:
            reason = (data.get("promptFeedback") or {}).get("blockReason", "no candidates")
            raise TriageError(
                ErrorKind.INVALID_RESPONSE,
                f"Gemini returned no candidates ({reason})",
                {"model": self.definition.model},
            )
        parts = (candidates[0].get("content") or {}).get("parts") or []
        text = "".join(p.get("text", "") for p in parts)
        if not text.strip():
            raise TriageError(ErrorKind.INVALID_RESPONSE, "Model returned empty content")
        return text

    # -----------------------------
    # OpenAI API
    # -----------------------------

    def _generate_openai(self, prompt: str, api_key: str) -> str:
        kwargs: Dict[str, Any] = {
            "api_key": api_key,
            "timeout": self.definition.timeout_seconds,
        }
        if self.definition.base_url:
            kwargs["base_url"] = self.definition.base_url

        client = OpenAI(**kwargs)
        logger.debug(
            "Calling OpenAI model %s (provider=%s, base_url=%s)",
            self.definition.model,
            self.definition.provider,
            self.definition.base_url or "https://api.openai.com/v1",
        )
        completion = client.chat.completions.create(
            model=self.definition.model,
            messages=[{"role": "user", "content": prompt}],
            response_format={"type": "json_object"},
            temperature=self.definition.temperature,
        )
        content = completion.choices[0].message.content
        if not content:
            raise TriageError(ErrorKind.INVALID_RESPONSE, "Model returned empty content")
        return content

