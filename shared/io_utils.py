"""Shared I/O utilities used by the reporting layer."""

import json
import logging
import os
import tempfile
from pathlib import Path

logger = logging.getLogger(__name__)


def atomic_json_write(filepath: Path, data, *, mkdir: bool = True):
    """Write JSON atomically: write to temp file then rename.

    Non-finite floats (e.g. an infinite Sortino ratio) are written as JSON
    ``null`` so the file stays valid for strict parsers.

    Args:
        filepath: Destination file path.
        data: JSON-serialisable data to write.
        mkdir: If *True* (default), create parent directories as needed.
    """
    filepath = Path(filepath)
    if mkdir:
        filepath.parent.mkdir(parents=True, exist_ok=True)

    fd, tmp_path = tempfile.mkstemp(dir=filepath.parent, suffix=".tmp")
    try:
        with os.fdopen(fd, "w") as f:
            json.dump(_finite_or_none(data), f, indent=2, default=str)
        os.replace(tmp_path, filepath)
    except BaseException:
        try:
            os.unlink(tmp_path)
        except OSError:
            pass
        raise


def _finite_or_none(obj):
    """Recursively replace NaN / +-inf floats with None."""
    if isinstance(obj, float):
        return obj if obj == obj and obj not in (float('inf'), float('-inf')) else None
    if isinstance(obj, dict):
        return {k: _finite_or_none(v) for k, v in obj.items()}
    if isinstance(obj, (list, tuple)):
        return [_finite_or_none(v) for v in obj]
    return obj
