"""Masking of credential-like substrings in user-facing text."""

import re
from typing import Any

MASK = "***"

_KEY_VALUE_RE = re.compile(
    r"(?P<key>\b[\w-]*(?:api[_-]?key|apikey|token|secret|password|passwd|pwd|authorization|credential)s?\b)"
    r"(?P<sep>\s*[:=]\s*)"
    r"(?P<quote>[\"']?)(?P<value>[^\s\"',;&]+)",
    re.IGNORECASE,
)
_BEARER_RE = re.compile(r"\b(Bearer|Basic)\s+[A-Za-z0-9._~+/=-]+", re.IGNORECASE)
_API_KEY_RE = re.compile(r"\b(?:sk|pk|rk|ghp|gho|xox[abp])[-_][A-Za-z0-9_-]{12,}\b")
_QUERY_RE = re.compile(
    r"([?&](?:token|key|auth|api_key|apikey|access_token|password)=)[^&#\s]+",
    re.IGNORECASE,
)


def redact_secrets(text: str) -> str:
    """Replace keys, tokens and passwords in `text` with a mask."""
    if not text:
        return text
    cleaned = _QUERY_RE.sub(lambda m: m.group(1) + MASK, text)
    cleaned = _BEARER_RE.sub(lambda m: f"{m.group(1)} {MASK}", cleaned)
    cleaned = _KEY_VALUE_RE.sub(
        lambda m: f"{m.group('key')}{m.group('sep')}{m.group('quote')}{MASK}",
        cleaned,
    )
    cleaned = _API_KEY_RE.sub(MASK, cleaned)
    return cleaned


def redact_event_dict(_logger: Any, _method: str, event_dict: dict[str, Any]) -> dict[str, Any]:
    """structlog processor masking secrets in string values."""
    for key, value in event_dict.items():
        if isinstance(value, str):
            event_dict[key] = redact_secrets(value)
        elif isinstance(value, BaseException):
            event_dict[key] = redact_secrets(str(value))
    return event_dict
