import json
from pathlib import Path

import pytest

from devsentinel.cli import main

SQL_LINE = 'const q = "SELECT * FROM users WHERE id = " + userId;'


def test_main_writes_reports_and_fails_on_severity(tmp_path: Path, monkeypatch: pytest.MonkeyPatch):
    monkeypatch.chdir(tmp_path)
    project = tmp_path / "project"
    project.mkdir()
    (project / "db.js").write_text(SQL_LINE + "\n")
    out = tmp_path / "report.json"
    sarif = tmp_path / "report.sarif"
    metrics = tmp_path / "runs" / "metrics.jsonl"

    code = main(
        [
            "--repo", str(project),
            "--out", str(out),
            "--sarif-out", str(sarif),
            "--metrics-jsonl", str(metrics),
            "--no-validate",
            "--fail-on-severity", "high",
        ]
    )

    assert code == 2
    report = json.loads(out.read_text())
    assert report["severity_counts"]["high"] == 1
    assert report["patchStats"]["applied"] == 1
    assert report["is_secure"] is True
    assert json.loads(sarif.read_text())["runs"][0]["results"][0]["ruleId"] == "devsentinel/potential-sql-injection"
    assert len(metrics.read_text().splitlines()) == 1


def test_main_no_apply_passes_without_threshold(tmp_path: Path, monkeypatch: pytest.MonkeyPatch):
    monkeypatch.chdir(tmp_path)
    (tmp_path / "app.js").write_text("const a = 1;\n")
    code = main(["--repo", str(tmp_path), "--out", "out.json", "--metrics-jsonl", "", "--no-apply"])
    assert code == 0
    assert json.loads((tmp_path / "out.json").read_text())["findings"] == []
    assert not (tmp_path / ".devsentinel_runs").exists()


def test_main_llm_flags_require_api_key(tmp_path: Path, monkeypatch: pytest.MonkeyPatch):
    monkeypatch.chdir(tmp_path)
    monkeypatch.delenv("OPENROUTER_API_KEY", raising=False)
    with pytest.raises(RuntimeError, match="OPENROUTER_API_KEY"):
        main(["--repo", str(tmp_path), "--classify"])
