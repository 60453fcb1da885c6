"""
Atomic file writing for baselines and reports.

Content is written to a temporary file in the target directory, flushed to
disk and moved over the target with `os.replace`, so readers never observe a
half-written baseline or report.
"""

from __future__ import annotations

import json
import os
import shutil
import tempfile
from pathlib import Path
from typing import Any

import structlog

logger = structlog.get_logger(__name__)


def atomic_write_text(target_path: Path, content: str, encoding: str = "utf-8") -> None:
    """
    Atomically write text content to a file.

    Raises:
        OSError: If the temporary file cannot be written or moved into place
    """
    target_path = Path(target_path)
    target_path.parent.mkdir(parents=True, exist_ok=True)
    temp_file_path = None

    try:
        with tempfile.NamedTemporaryFile(
            mode="w",
            dir=target_path.parent,
            prefix=f".{target_path.name}.",
            suffix=".tmp",
            delete=False,
            encoding=encoding,
        ) as temp_file:
            temp_file_path = Path(temp_file.name)
            temp_file.write(content)
            temp_file.flush()
            os.fsync(temp_file.fileno())

        try:
            os.replace(str(temp_file_path), str(target_path))
        except OSError as rename_error:
            logger.warning("Atomic rename failed, falling back to shutil.move", error=str(rename_error))
            shutil.move(str(temp_file_path), str(target_path))
        logger.debug("Atomic write completed", target=str(target_path), size=len(content))

    except OSError as e:
        raise OSError(f"Failed to atomically write {target_path}: {e}") from e

    finally:
        if temp_file_path and temp_file_path.exists():
            try:
                temp_file_path.unlink()
            except OSError:
                pass


def atomic_write_json(target_path: Path, data: Any) -> None:
    """
    Atomically write JSON data to a file.

    Raises:
        ValueError: If the data cannot be serialized
        OSError: If writing fails
    """
    try:
        content = json.dumps(data, indent=2, ensure_ascii=False, default=str)
    except (TypeError, ValueError) as e:
        logger.error("Failed to serialize data to JSON", error=str(e))
        raise ValueError(f"Cannot serialize data to JSON: {e}") from e
    atomic_write_text(target_path, content)
