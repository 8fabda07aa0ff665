"""Atomic JSON persistence helpers shared by the file-backed stores."""

from __future__ import annotations

import json
import logging
import os
import tempfile
from pathlib import Path
from typing import Any

__all__ = ["write_text", "read_json", "write_json"]

LOGGER = logging.getLogger(__name__)


def write_text(path: Path | str, content: str, *, encoding: str = "utf-8") -> Path:
    """Write ``content`` next to ``path`` and swap it into place."""

    target = Path(path)
    target.parent.mkdir(parents=True, exist_ok=True)
    descriptor, tmp_name = tempfile.mkstemp(
        dir=str(target.parent), prefix=f".{target.name}.", suffix=".tmp"
    )
    try:
        with os.fdopen(descriptor, "w", encoding=encoding, newline="") as handle:
            handle.write(content)
            handle.flush()
            os.fsync(handle.fileno())
        os.replace(tmp_name, target)
    finally:
        if os.path.exists(tmp_name):  # pragma: no cover - cleanup path
            try:
                os.unlink(tmp_name)
            except OSError:
                pass
    return target


def read_json(path: Path | str, *, default: Any = None) -> Any:
    """Return the decoded payload at ``path`` or ``default`` when unreadable.

    Missing files are silent. Malformed JSON or undecodable bytes are logged
    and treated as missing.
    """

    target = Path(path)
    try:
        return json.loads(target.read_text(encoding="utf-8"))
    except FileNotFoundError:
        return default
    except (json.JSONDecodeError, UnicodeDecodeError) as exc:
        LOGGER.warning("File %s is not valid JSON: %s", target, exc)
        return default


def write_json(path: Path | str, payload: Any) -> Path:
    body = json.dumps(payload, indent=2, sort_keys=True, ensure_ascii=False)
    return write_text(path, body + "\n")
