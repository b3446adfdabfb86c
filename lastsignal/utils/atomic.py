"""Atomic file write utilities.

Provides ``atomic_write_json`` for every JSON file LastSignal persists (the
state file, provider token files) and ``atomic_write_text`` for the default
message template.

Guarantees:
- File is written to a temporary sibling first, flushed to disk, then
  atomically renamed over the target.
- ``os.replace`` is atomic on both POSIX and Windows.
- Parent directories are created on demand.
- Encoding is always UTF-8.
"""

from __future__ import annotations

import json
import logging
import os
from pathlib import Path
from typing import Any

logger = logging.getLogger(__name__)


def atomic_write_text(path: Path, text: str) -> None:
    """Atomically replace *path* with *text*.

    1. Write a ``.tmp`` sibling and fsync it.
    2. ``os.replace`` the target.
    3. On failure the tmp file is removed; the original is untouched.
    """
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    tmp = path.with_suffix(path.suffix + ".tmp")

    try:
        with open(tmp, "w", encoding="utf-8") as handle:
            handle.write(text)
            handle.flush()
            os.fsync(handle.fileno())
        os.replace(str(tmp), str(path))
    except BaseException:
        try:
            tmp.unlink(missing_ok=True)
        except OSError as cleanup_exc:
            logger.warning("Could not remove temp file %s: %s", tmp, cleanup_exc)
        raise


def atomic_write_json(
    path: Path,
    data: Any,
    *,
    indent: int = 2,
    ensure_ascii: bool = False,
) -> None:
    """Atomically write *data* as JSON to *path*."""
    payload = json.dumps(data, indent=indent, ensure_ascii=ensure_ascii, default=str)
    atomic_write_text(path, payload)
