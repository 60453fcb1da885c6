"""Utility modules for surgecore."""

from .atomic import atomic_write_json, atomic_write_text
from .slugify import is_safe_filename, slugify

__all__ = ["atomic_write_json", "atomic_write_text", "is_safe_filename", "slugify"]
