import json
import stat
import sys
from datetime import datetime, timezone

import pytest

from donelog.models import ExportMeta, Task
from donelog.storage import read_json, remove_file, write_export, write_json, write_tasks


def test_write_json_replaces_existing_file(tmp_path):
    path = tmp_path / "nested" / "token.json"
    write_json(path, {"account": "old"})
    write_json(path, {"account": "new", "note": "ü"})

    assert read_json(path) == {"account": "new", "note": "ü"}
    assert sorted(p.name for p in path.parent.iterdir()) == ["token.json"]


@pytest.mark.skipif(sys.platform == "win32", reason="POSIX permissions")
def test_private_files_are_owner_only(tmp_path):
    path = tmp_path / "token.json"
    write_json(path, {"token": {}}, private=True)
    assert stat.S_IMODE(path.stat().st_mode) == 0o600


def test_remove_file(tmp_path):
    path = tmp_path / "token.json"
    path.write_text("{}")
    assert remove_file(path) is True
    assert remove_file(path) is False


def test_write_export_layout(tmp_path):
    tasks = [Task(id="1", title="Ship", completed_at=datetime(2024, 2, 1, tzinfo=timezone.utc), list_id="a")]
    meta = ExportMeta(timestamp="2024-02-01_0900", tool_version="0.1.0", counts={"tasks": 1, "lists": 1})

    out_dir = write_export(tmp_path, tasks, meta)

    assert out_dir == tmp_path / "exports" / "2024-02-01_0900"
    assert json.loads((out_dir / "meta.json").read_text())["counts"] == {"tasks": 1, "lists": 1}
    saved = json.loads((out_dir / "tasks.json").read_text())
    assert [(row["id"], row["title"], row["list_id"]) for row in saved] == [("1", "Ship", "a")]
    assert saved[0]["completed_at"].startswith("2024-02-01T00:00:00")
    assert write_tasks(tmp_path / "plain.json", tasks) == 1
