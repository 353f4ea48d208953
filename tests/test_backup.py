from pathlib import Path

from devsentinel.backup import create_backup, new_backup_dir, restore_from_backup
from devsentinel.concurrency import CancellationToken


def _snapshot(root: Path) -> dict[str, bytes]:
    snapshot: dict[str, bytes] = {}
    for path in sorted(root.rglob("*")):
        rel = path.relative_to(root)
        if "node_modules" in rel.parts:
            continue
        snapshot[rel.as_posix()] = path.read_bytes() if path.is_file() else b"<dir>"
    return snapshot


def test_restore_is_byte_identical(tmp_path: Path):
    project = tmp_path / "project"
    (project / "src" / "nested").mkdir(parents=True)
    (project / "src" / "app.js").write_bytes(b"const a = 1;\r\n")
    (project / "src" / "nested" / "util.py").write_text("x = 1\n")
    (project / "README.md").write_text("hello\n")
    (project / "node_modules" / "dep").mkdir(parents=True)
    (project / "node_modules" / "dep" / "index.js").write_text("module.exports = 1;\n")
    before = _snapshot(project)

    backup = new_backup_dir(tmp_path)
    assert create_backup(project, backup) is True
    assert not (backup / "node_modules").exists()

    (project / "src" / "app.js").write_text("patched\n")
    (project / "README.md").unlink()
    (project / "src" / "added.js").write_text("new\n")
    (project / "extra").mkdir()

    assert restore_from_backup(backup, project) is True
    assert _snapshot(project) == before
    assert (project / "node_modules" / "dep" / "index.js").read_text() == "module.exports = 1;\n"


def test_backup_refuses_location_inside_project(tmp_path: Path):
    (tmp_path / "a.js").write_text("x\n")
    assert create_backup(tmp_path, tmp_path / ".backup") is False
    assert not (tmp_path / ".backup").exists()


def test_cancelled_backup_is_discarded(tmp_path: Path):
    project = tmp_path / "project"
    project.mkdir()
    (project / "a.js").write_text("x\n")
    token = CancellationToken()
    token.cancel()
    backup = tmp_path / "backup"

    assert create_backup(project, backup, token) is False
    assert not backup.exists()


def test_restore_from_missing_backup(tmp_path: Path):
    assert restore_from_backup(tmp_path / "missing", tmp_path / "project") is False
