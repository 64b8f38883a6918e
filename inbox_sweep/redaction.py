"""Best-effort masking of sensitive substrings before mail text leaves the box.

Matches are swapped for ``{{tokenN}}`` placeholders and the mapping is parked
in a short-lived cache so model output mentioning a token can be restored
before anything is written back to the mailbox.
"""

from __future__ import annotations

import json
import logging
import re
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Pattern, Tuple

logger = logging.getLogger("inbox_sweep.redaction")

REDACTION_LIMITATION_WARNING = (
    "Redaction is best-effort: pattern matching covers common formats only and "
    "will miss many kinds of personal data. Do not rely on it for compliance."
)

DEFAULT_MAPPING_TTL_SECONDS = 6 * 60 * 60
CACHE_KEY_PREFIX = "redaction_"

_TOKEN_RE = re.compile(r"\{\{token(\d+)\}\}")

# Applied in order against the original text; earlier patterns win overlaps.
PII_PATTERNS: List[Tuple[str, Pattern[str]]] = [
    (
        "sensitive_url",
        re.compile(
            r"https?://[^\s<>\"']*(?:token|key|password|passwd|auth|session|api|login|sig)[^\s<>\"']*",
            re.IGNORECASE,
        ),
    ),
    ("email", re.compile(r"\b[A-Za-z0-9._%+-]+@[A-Za-z0-9.-]+\.[A-Za-z]{2,}\b")),
    ("card", re.compile(r"(?<!\d)(?:\d[ -]?){12,18}\d(?!\d)")),
    ("ssn", re.compile(r"\b\d{3}-\d{2}-\d{4}\b")),
    (
        "phone",
        re.compile(r"(?<![\w.])(?:\+?1[-.\s]?)?\(?\d{3}\)?[-.\s]?\d{3}[-.\s]?\d{4}(?!\d)(?!\.\d)"),
    ),
    ("order_number", re.compile(r"#(?=[0-9A-Z]*\d)[0-9A-Z]{6,}\b", re.IGNORECASE)),
    (
        "account_number",
        re.compile(
            r"\b(?:acct|account|a/c)\s*(?:no\.?|number|#)?\s*:?\s*\d[\d-]{5,}\b",
            re.IGNORECASE,
        ),
    ),
    ("ip_address", re.compile(r"\b(?:\d{1,3}\.){3}\d{1,3}\b")),
    ("id_token", re.compile(r"\b[A-Z]{1,2}[0-9]{6,8}\b")),
]

_CREDENTIAL_PATTERNS: List[Tuple[Pattern[str], str]] = [
    (re.compile(r"sk-ant-[A-Za-z0-9_\-]{8,}"), "sk-ant-***"),
    (re.compile(r"\bsk-[A-Za-z0-9_\-]{8,}"), "sk-***"),
    (re.compile(r"AIza[0-9A-Za-z_\-]{8,}"), "AIza***"),
    (re.compile(r"\bBearer\s+[A-Za-z0-9\-._~+/]+=*", re.IGNORECASE), "Bearer ***"),
    (
        re.compile(
            r"\b(api[_-]?key|key|access_token|token|client_secret)=([^&\s\"']+)",
            re.IGNORECASE,
        ),
        r"\1=***",
    ),
    (
        re.compile(
            r"([\"'](?:api[_-]?key|key|token|secret|password)[\"']\s*:\s*[\"'])[^\"']*([\"'])",
            re.IGNORECASE,
        ),
        r"\1***\2",
    ),
]


def mask_credentials(text: str) -> str:
    """Mask API keys, bearer tokens and key=... parameters in free text."""
    if not text:
        return text
    masked = text
    for pattern, replacement in _CREDENTIAL_PATTERNS:
        masked = pattern.sub(replacement, masked)
    return masked


@dataclass
class RedactionResult:
    redacted_text: str
    mapping: Dict[str, str] = field(default_factory=dict)
    count: int = 0


def _collect_spans(text: str) -> List[Tuple[int, int, str]]:
    taken: List[Tuple[int, int, str]] = []
    for kind, pattern in PII_PATTERNS:
        for match in pattern.finditer(text):
            start, end = match.span()
            if start == end:
                continue
            if any(start < t_end and t_start < end for t_start, t_end, _ in taken):
                continue
            taken.append((start, end, kind))
    taken.sort()
    return taken


class Redactor:
    """Replaces sensitive substrings with per-item tokens and restores them."""

    def __init__(self, cache, ttl_seconds: int = DEFAULT_MAPPING_TTL_SECONDS) -> None:
        self.cache = cache
        self.ttl_seconds = ttl_seconds
        self._warned = False

    def _warn_once(self) -> None:
        if not self._warned:
            logger.warning(REDACTION_LIMITATION_WARNING)
            self._warned = True

    @staticmethod
    def _cache_key(item_id: str) -> str:
        return f"{CACHE_KEY_PREFIX}{item_id}"

    def redact(self, text: str, item_id: str) -> RedactionResult:
        redacted, mapping = self._substitute([text or ""], item_id)
        return RedactionResult(redacted_text=redacted[0], mapping=mapping, count=len(mapping))

    def redact_fields(self, item_id: str, *texts: str) -> List[str]:
        """Redact several fields of one item under a single token mapping."""
        redacted, _mapping = self._substitute([t or "" for t in texts], item_id)
        return redacted

    def _substitute(self, texts: List[str], item_id: str) -> Tuple[List[str], Dict[str, str]]:
        self._warn_once()
        # Token numbers already spelled out in any field are never reused.
        reserved = {int(n) for text in texts for n in _TOKEN_RE.findall(text)}
        mapping: Dict[str, str] = {}
        out: List[str] = []
        counter = 0
        for text in texts:
            parts: List[str] = []
            cursor = 0
            for start, end, _kind in _collect_spans(text):
                counter += 1
                while counter in reserved:
                    counter += 1
                token = f"{{{{token{counter}}}}}"
                mapping[token] = text[start:end]
                parts.append(text[cursor:start])
                parts.append(token)
                cursor = end
            parts.append(text[cursor:])
            out.append("".join(parts))

        if mapping:
            self.cache.put(self._cache_key(item_id), json.dumps(mapping), self.ttl_seconds)
            logger.debug("Redacted %d value(s) for item %s", len(mapping), item_id)
        return out, mapping

    def load_mapping(self, item_id: str) -> Optional[Dict[str, str]]:
        raw = self.cache.get(self._cache_key(item_id))
        if not raw:
            return None
        try:
            mapping = json.loads(raw)
        except json.JSONDecodeError:
            logger.warning("Discarding unreadable redaction mapping for %s", item_id)
            self.cache.remove(self._cache_key(item_id))
            return None
        return mapping if isinstance(mapping, dict) else None

    def restore(self, text: str, item_id: str) -> str:
        """Put original values back. Returns the input unchanged without a mapping."""
        if not text:
            return text
        mapping = self.load_mapping(item_id)
        if not mapping:
            if _TOKEN_RE.search(text):
                logger.info("No redaction mapping for %s; leaving tokens in place", item_id)
            return text
        return _TOKEN_RE.sub(lambda m: mapping.get(m.group(0), m.group(0)), text)

    def clear(self, item_id: str) -> None:
        self.cache.remove(self._cache_key(item_id))

    @staticmethod
    def analyze(text: str) -> Dict[str, object]:
        counts: Dict[str, int] = {}
        for _start, _end, kind in _collect_spans(text or ""):
            counts[kind] = counts.get(kind, 0) + 1
        return {
            "total": sum(counts.values()),
            "by_type": counts,
            "disclaimer": REDACTION_LIMITATION_WARNING,
        }
