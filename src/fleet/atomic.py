"""Crash-safe JSON file writes."""

from __future__ import annotations

import json
import logging
import os
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

log = logging.getLogger(__name__)


def tmp_path_for(path: Path) -> Path:
    return path.with_name(path.name + ".tmp")


def file_timestamp(now: datetime | None = None) -> str:
    """Filesystem-safe UTC timestamp used in backup and archive names."""
    return (now or datetime.now(UTC)).strftime("%Y%m%dT%H%M%S%fZ")


def write_json_atomic(
    path: Path,
    payload: Any,
    *,
    fallback_direct: bool = True,
) -> None:
    """Write *payload* as JSON to *path* through a ``.tmp`` sibling.

    The temp file is renamed over the target.  When the rename fails
    (cross-device, permission quirks on some filesystems) and
    *fallback_direct* is set, the payload is written to the target
    directly instead.  The temp file never survives this call; failing
    to remove it is logged and otherwise ignored.

    Raises OSError only when no write reached the target.
    """
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    data = json.dumps(payload, indent=2, sort_keys=False) + "\n"
    tmp = tmp_path_for(path)
    try:
        tmp.write_text(data, encoding="utf-8")
        try:
            os.replace(tmp, path)
        except OSError as exc:
            if not fallback_direct:
                raise
            log.warning("Atomic rename onto %s failed (%s); writing directly", path, exc)
            path.write_text(data, encoding="utf-8")
    finally:
        try:
            tmp.unlink(missing_ok=True)
        except OSError as exc:
            log.debug("Could not remove temp file %s: %s", tmp, exc)
