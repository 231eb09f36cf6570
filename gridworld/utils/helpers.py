"""
General helper utilities shared by services and routes.
"""

from __future__ import annotations

import hashlib
import json
import logging
import re
from typing import Any, Optional

_INT_RE = re.compile(r"^[+-]?\d+$")


def prompt_hash(prompt: str) -> str:
    """Short, stable hash of a prompt (first 8 hex chars of its MD5)."""
    return hashlib.md5(prompt.encode("utf-8")).hexdigest()[:8]


def chunk_key(x: int, y: int, prompt: str) -> str:
    """Queue/log key of a chunk: ``"x,y,prompt"``."""
    return f"{x},{y},{prompt}"


def parse_int(value: Any) -> Optional[int]:
    """
    Strict integer parsing for query parameters.
    Returns None for missing, fractional or non-numeric input.
    """
    if value is None:
        return None
    if isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value
    raw = str(value).strip()
    if not _INT_RE.match(raw):
        return None
    return int(raw)


_logger = logging.getLogger("gridworld.events")

# Request fields whose values never reach the log
_SECRET_FIELDS = ("api_key", "apikey", "token", "secret", "authorization", "password")
# Inline payloads that are logged by size only
_BLOB_FIELDS = ("data_base64", "image_base64")


def redact(payload: Any) -> Any:
    """Copy of a JSON-like payload with credentials masked and inline blobs summarized."""
    if isinstance(payload, list):
        return [redact(item) for item in payload]
    if not isinstance(payload, dict):
        return payload
    out = {}
    for name, value in payload.items():
        lowered = str(name).lower()
        if lowered in _BLOB_FIELDS:
            out[name] = f"<{len(str(value))} chars>"
        elif any(marker in lowered for marker in _SECRET_FIELDS):
            out[name] = "***"
        else:
            out[name] = redact(value)
    return out


def summarize(payload: Any, limit: int = 400) -> str:
    try:
        text = json.dumps(payload, ensure_ascii=False, sort_keys=True)
    except (TypeError, ValueError):
        text = repr(payload)
    return text if len(text) <= limit else f"{text[:limit]}... (+{len(text) - limit} chars)"


def log_event(event_name: str, data: Any) -> None:
    _logger.info("[event] %s %s", event_name, summarize(redact(data)))
