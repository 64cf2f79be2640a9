"""On-disk files: the token store and task exports under the data directory."""

from __future__ import annotations

import json
import os
from pathlib import Path
from typing import Any, Iterable

from .models import ExportMeta, Task

EXPORTS_DIR = "exports"
TASKS_FILE = "tasks.json"
META_FILE = "meta.json"


def ensure_dir(path: Path) -> Path:
    path.mkdir(parents=True, exist_ok=True)
    return path


def write_json(path: Path, data: Any, private: bool = False) -> None:
    """Write ``data`` next to ``path`` and move it into place.

    Readers never see a half-written file. ``private`` restricts the file to
    its owner (the token store holds refresh tokens).
    """
    ensure_dir(path.parent)
    tmp = path.with_suffix(".tmp")
    tmp.write_text(json.dumps(data, indent=2, ensure_ascii=False), "utf-8")
    os.replace(tmp, path)
    if private:
        try:
            os.chmod(path, 0o600)
        except OSError:
            # Not supported on every filesystem.
            pass


def read_json(path: Path) -> Any:
    return json.loads(path.read_text("utf-8"))


def remove_file(path: Path) -> bool:
    if not path.exists():
        return False
    path.unlink()
    return True


def export_dir(base_dir: Path, timestamp: str) -> Path:
    return base_dir / EXPORTS_DIR / timestamp


def write_tasks(path: Path, tasks: Iterable[Task]) -> int:
    rows = [task.model_dump(mode="json") for task in tasks]
    write_json(path, rows)
    return len(rows)


def write_export(base_dir: Path, tasks: list[Task], meta: ExportMeta) -> Path:
    """Write ``meta.json`` and ``tasks.json`` into a fresh export directory."""
    out_dir = ensure_dir(export_dir(base_dir, meta.timestamp))
    write_json(out_dir / META_FILE, meta.model_dump())
    write_tasks(out_dir / TASKS_FILE, tasks)
    return out_dir
