from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from typing import List, Optional

logger = logging.getLogger("inbox_sweep.guardrails")

MAX_REPLY_CHARS = 1000
MAX_URLS = 2

_PROFANITY = [
    re.compile(r"\b(fuck|shit|damn|hell|ass|bitch|bastard|crap)\b", re.IGNORECASE),
    re.compile(r"\b(wtf|omg|lol|lmao)\b", re.IGNORECASE),
]

_RISKY_HTML = [
    re.compile(r"<script[^>]*>", re.IGNORECASE),
    re.compile(r"<iframe[^>]*>", re.IGNORECASE),
    re.compile(r"<object[^>]*>", re.IGNORECASE),
    re.compile(r"<embed[^>]*>", re.IGNORECASE),
    re.compile(r"javascript:", re.IGNORECASE),
    re.compile(r"\bon\w+\s*=", re.IGNORECASE),
]

_SUSPICIOUS = [
    re.compile(r"ignore (previous|all) instructions", re.IGNORECASE),
    re.compile(r"system prompt", re.IGNORECASE),
    re.compile(r"\[INST\]", re.IGNORECASE),
    re.compile(r"\{\{.*?\}\}"),
    re.compile(r"###+\s*(system|assistant|user)", re.IGNORECASE),
]

_LINK_RE = re.compile(r"<a\s+[^>]*href[^>]*>", re.IGNORECASE)
_URL_RE = re.compile(r"https?://[^\s<>\"{}|\\^`\[\]]+", re.IGNORECASE)
_REPEAT_RE = re.compile(r"(.)\1{4,}")


@dataclass
class ReplyCheck:
    is_valid: bool
    failure_reasons: List[str] = field(default_factory=list)
    sanitized_content: Optional[str] = None


def validate_reply(content: str) -> ReplyCheck:
    """Screen a generated reply before it becomes a draft or is sent."""
    reasons: List[str] = []
    if not content or not content.strip():
        return ReplyCheck(is_valid=False, failure_reasons=["Reply is empty"])

    if len(content) > MAX_REPLY_CHARS:
        reasons.append(f"Reply exceeds {MAX_REPLY_CHARS} characters ({len(content)} chars)")

    for pattern in _RISKY_HTML:
        match = pattern.search(content)
        if match:
            reasons.append(f"Contains risky HTML: {match.group(0)[:50]}")

    links = _LINK_RE.findall(content)
    if links:
        reasons.append(f"Contains <a href> links ({len(links)} found)")

    urls = _URL_RE.findall(content)
    if len(urls) > MAX_URLS:
        reasons.append(f"Contains too many URLs ({len(urls)} found)")

    for pattern in _PROFANITY:
        words = [m.group(0) for m in pattern.finditer(content)]
        if words:
            reasons.append("Contains inappropriate language: " + ", ".join(words))

    for pattern in _SUSPICIOUS:
        match = pattern.search(content)
        if match:
            reasons.append(f"Contains suspicious pattern: {match.group(0)}")

    upper = sum(1 for ch in content if "A" <= ch <= "Z")
    if len(content) > 20 and upper / len(content) > 0.5:
        reasons.append("Excessive capitalization (shouting)")

    repeated = _REPEAT_RE.search(content)
    if repeated:
        reasons.append(f"Contains repeated characters: {repeated.group(0)}")

    non_ascii = sum(1 for ch in content if ord(ch) > 0x7F)
    if non_ascii > len(content) * 0.1:
        reasons.append("Contains too many non-ASCII characters")

    if reasons:
        logger.warning("Reply failed guardrails: %s", "; ".join(reasons))
        return ReplyCheck(is_valid=False, failure_reasons=reasons)
    return ReplyCheck(is_valid=True, sanitized_content=content)
