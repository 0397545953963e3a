"""Cache key validation."""

from __future__ import annotations

import re
from typing import Any


_HASH_PATTERN = re.compile(r"[A-Za-z0-9._-]+")


def is_valid_hash(candidate: Any) -> bool:
    """Return True when ``candidate`` is a non-empty key of ASCII letters, digits, ``.``, ``_`` or ``-``."""

    return isinstance(candidate, str) and _HASH_PATTERN.fullmatch(candidate) is not None
