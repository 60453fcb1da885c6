"""
String slugification for baseline and report filenames.
"""

from __future__ import annotations

import re
from typing import Optional

# Dots and underscores survive so that "1.0.0" and "1_0_0" stay distinct files
UNSAFE_CHARS_PATTERN = re.compile(r"[^A-Za-z0-9._\-]")

WINDOWS_RESERVED_NAMES = {"CON", "PRN", "AUX", "NUL"} | {f"COM{i}" for i in range(1, 10)} | {
    f"LPT{i}" for i in range(1, 10)
}


def slugify(text: str, replacement: str = "-", max_length: Optional[int] = 200, lowercase: bool = True) -> str:
    """
    Convert a string to a filesystem-safe slug.

    Examples:
        >>> slugify("CI/CD Performance Regression Test")
        'ci-cd-performance-regression-test'

        >>> slugify("1.0.0")
        '1.0.0'

        >>> slugify("CON")
        'con-reserved'
    """
    if not text or not text.strip():
        return ""

    result = UNSAFE_CHARS_PATTERN.sub(replacement, text.strip())
    if len(replacement) == 1:
        result = re.sub(f"{re.escape(replacement)}+", replacement, result)
    # Leading dots would hide the file
    result = result.strip(replacement).lstrip(".")

    if lowercase:
        result = result.lower()

    base = result.split(".")[0].split(replacement)[0]
    if base.upper() in WINDOWS_RESERVED_NAMES:
        result = f"{result}{replacement}reserved"

    if max_length and len(result) > max_length:
        result = result[:max_length].rstrip(replacement)

    return result


def is_safe_filename(filename: str) -> bool:
    if not filename or filename in (".", ".."):
        return False
    if UNSAFE_CHARS_PATTERN.search(filename):
        return False
    if filename.split(".")[0].upper() in WINDOWS_RESERVED_NAMES:
        return False
    return not filename.endswith((" ", "."))
