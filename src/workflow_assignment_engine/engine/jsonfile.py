"""Helpers shared by the JSON-file backed stores.

Writes go to a temporary sibling and are swapped in with `Path.replace`, so a
failed write never leaves a half-written state file behind. Read-check-write
sequences run under `file_lock`, an exclusive `flock` on a sibling `.lock` file,
so processes sharing the state directory serialize on it.
"""

from __future__ import annotations

import fcntl
import json
import logging
import os
import uuid
from collections.abc import Iterator
from contextlib import contextmanager
from pathlib import Path

logger = logging.getLogger(__name__)


def load_json_list(path: Path) -> list[dict[str, object]]:
    if not path.exists():
        return []
    try:
        raw = json.loads(path.read_text(encoding="utf-8"))
    except json.JSONDecodeError:
        logger.warning("State file is not valid JSON; treating as empty", extra={"path": str(path)})
        return []
    if not isinstance(raw, list):
        logger.warning(
            "State file has unexpected shape; treating as empty", extra={"path": str(path)}
        )
        return []
    return [item for item in raw if isinstance(item, dict)]


def load_json_object(path: Path) -> dict[str, object] | None:
    if not path.exists():
        return None
    try:
        raw = json.loads(path.read_text(encoding="utf-8"))
    except json.JSONDecodeError:
        logger.warning("State file is not valid JSON; ignoring", extra={"path": str(path)})
        return None
    return raw if isinstance(raw, dict) else None


def dump_json(payload: object) -> str:
    return json.dumps(payload, indent=2, ensure_ascii=False) + "\n"


def write_json_atomic(path: Path, payload: object) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    tmp = path.with_name(f".{path.name}.{uuid.uuid4().hex}.tmp")
    try:
        tmp.write_text(dump_json(payload), encoding="utf-8")
        tmp.replace(path)
    finally:
        if tmp.exists():
            os.unlink(tmp)


@contextmanager
def file_lock(path: Path) -> Iterator[None]:
    """Hold an exclusive lock for `path` across processes."""

    path.parent.mkdir(parents=True, exist_ok=True)
    lock_path = path.with_name(path.name + ".lock")
    with lock_path.open("a+") as fh:
        fcntl.flock(fh.fileno(), fcntl.LOCK_EX)
        try:
            yield
        finally:
            fcntl.flock(fh.fileno(), fcntl.LOCK_UN)
