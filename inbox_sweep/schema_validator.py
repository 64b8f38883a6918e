from __future__ import annotations

import json
import logging
import re
from dataclasses import dataclass, field
from functools import lru_cache
from pathlib import Path
from typing import Any, Dict, List

from jsonschema import Draft7Validator  # type: ignore[import]

from .errors import ErrorKind, TriageError

logger = logging.getLogger("inbox_sweep.schema")

SCHEMA_DIR = Path(__file__).parent / "json_schemas"

_FENCE_RE = re.compile(r"^```[a-zA-Z0-9_-]*\s*|\s*```$")


@dataclass
class ValidationResult:
    valid: bool
    errors: List[str] = field(default_factory=list)


@lru_cache(maxsize=None)
def _load_schema_text(name: str) -> str:
    path = SCHEMA_DIR / f"{name}.schema.json"
    if not path.exists():
        raise FileNotFoundError(f"Schema file not found: {path}")
    return path.read_text(encoding="utf-8")


def load_schema(name: str) -> Dict[str, Any]:
    """Load ``json_schemas/<name>.schema.json`` (fresh copy each call)."""
    return json.loads(_load_schema_text(name))


def definition_schema(schema: Dict[str, Any], name: str) -> Dict[str, Any]:
    """A schema validating against one entry of ``schema['definitions']``."""
    return {"definitions": schema.get("definitions", {}), "$ref": f"#/definitions/{name}"}


def validate(data: Any, schema: Dict[str, Any]) -> ValidationResult:
    """Check ``data`` against a draft-7 schema without raising."""
    validator = Draft7Validator(schema)
    errors = []
    for err in sorted(validator.iter_errors(data), key=lambda e: list(e.absolute_path)):
        where = "/".join(str(p) for p in err.absolute_path) or "<root>"
        errors.append(f"{where}: {err.message}")
    return ValidationResult(valid=not errors, errors=errors)


def sanitize_json_response(text: str) -> str:
    """Trim code fences and chatter around the JSON a model was asked for."""
    raw = (text or "").strip()
    if not raw:
        return raw
    raw = _FENCE_RE.sub("", raw).strip()

    starts = [i for i in (raw.find("{"), raw.find("[")) if i != -1]
    if not starts:
        return raw
    start = min(starts)
    closer = "}" if raw[start] == "{" else "]"
    end = raw.rfind(closer)
    if end <= start:
        return raw[start:]
    return raw[start : end + 1]


def parse_json_lenient(text: str) -> Any:
    """Parse model output that *should* be JSON."""
    raw = (text or "").strip()
    if not raw:
        raise TriageError(ErrorKind.INVALID_RESPONSE, "Model returned empty output")
    try:
        return json.loads(raw)
    except json.JSONDecodeError:
        pass

    cleaned = sanitize_json_response(raw)
    try:
        return json.loads(cleaned)
    except json.JSONDecodeError as exc:
        logger.error("Failed to parse model JSON. Raw=%s", raw[:1000])
        raise TriageError(
            ErrorKind.INVALID_RESPONSE,
            f"Model returned invalid JSON: {exc.msg}",
            {"preview": raw[:200]},
        ) from exc
