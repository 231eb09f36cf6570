"""Utility helpers for the gridworld server and client."""

from .helpers import (
    chunk_key,
    log_event,
    parse_int,
    prompt_hash,
    redact,
)

__all__ = [
    "chunk_key",
    "log_event",
    "parse_int",
    "prompt_hash",
    "redact",
]
