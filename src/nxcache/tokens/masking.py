"""Redaction of token values for display."""

from __future__ import annotations


def mask_token(token: str, keep_start: int, keep_end: int) -> str:
    if not token:
        return ""
    if len(token) <= keep_start + keep_end:
        return "*" * len(token)

    start = token[:keep_start]
    end = token[len(token) - keep_end:] if keep_end > 0 else ""
    return start + "*" * (len(token) - keep_start - keep_end) + end
