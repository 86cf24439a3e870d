"""
Version extraction from artifact titles and file names.
"""

from __future__ import annotations

import re
from typing import List, Pattern

from .models import UNKNOWN_VERSION

# Order matters: the first pattern that matches wins.
VERSION_PATTERNS: List[Pattern[str]] = [
    re.compile(r"v?(\d+\.\d+\.\d+)", re.IGNORECASE),  # semantic version
    re.compile(r"(\d+\.\d+)"),                        # two-part version
    re.compile(r"(\d{4}-\d{2})"),                     # ISO year-month
    re.compile(r"(\d{8})"),                           # compact date
    re.compile(r"_(\d+)_"),                           # underscore-delimited number
]


def extract_version(text: str) -> str:
    """Return the first version-like token in ``text`` or ``"unknown"``."""
    for pattern in VERSION_PATTERNS:
        match = pattern.search(text)
        if match:
            return match.group(1)
    return UNKNOWN_VERSION
