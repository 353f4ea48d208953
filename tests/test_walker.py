from pathlib import Path

from devsentinel.walker import read_source_lines, walk_project


def test_walk_project_filters_extensions_and_ignored_dirs(tmp_path: Path):
    (tmp_path / "src").mkdir()
    (tmp_path / "src" / "app.js").write_text("const a = 1;\n")
    (tmp_path / "src" / "notes.md").write_text("# notes\n")
    (tmp_path / "node_modules" / "lib").mkdir(parents=True)
    (tmp_path / "node_modules" / "lib" / "index.js").write_text("eval(x)\n")
    (tmp_path / "main.PY").write_text("print('hi')\n")

    assert walk_project(tmp_path, [".js", ".py"], ["node_modules"]) == ["main.PY", "src/app.js"]


def test_walk_project_missing_root(tmp_path: Path):
    assert walk_project(tmp_path / "missing") == []


def test_read_source_lines_skips_binary_and_large(tmp_path: Path):
    (tmp_path / "bin.js").write_bytes(b"abc\x00def")
    (tmp_path / "big.js").write_text("x" * 100)
    (tmp_path / "ok.js").write_bytes(b"one\r\ntwo\n")

    assert read_source_lines(tmp_path, "bin.js") is None
    assert read_source_lines(tmp_path, "big.js", max_file_bytes=10) is None
    assert read_source_lines(tmp_path, "missing.js") is None
    assert read_source_lines(tmp_path, "ok.js") == ["one", "two", ""]
