import json
from pathlib import Path

from devsentinel.benchmark import run_fixture

FIXTURES = Path(__file__).resolve().parents[1] / "benchmarks" / "fixtures"


def test_run_fixture_missing_expected(tmp_path: Path):
    fixture = tmp_path / "fx"
    fixture.mkdir()
    result = run_fixture(fixture)
    assert result["skipped"] is True


def test_run_fixture_reports_missing_types(tmp_path: Path):
    fixture = tmp_path / "fx"
    fixture.mkdir()
    (fixture / "app.js").write_text("el.innerHTML = value;\n")
    (fixture / "expected.json").write_text(json.dumps({"expected_types": ["Potential XSS", "Unsafe eval()"]}))
    result = run_fixture(fixture)
    assert result["ok"] is False
    assert result["missing_types"] == ["Unsafe eval()"]
    assert result["found_types"] == ["Potential XSS"]


def test_bundled_fixtures_pass():
    for fixture in sorted(p for p in FIXTURES.iterdir() if p.is_dir()):
        result = run_fixture(fixture)
        assert result["ok"], result


def test_run_fixture_checks_expected_exploits(tmp_path: Path):
    fixture = tmp_path / "fx"
    fixture.mkdir()
    (fixture / "db.js").write_text('query = "SELECT * FROM x WHERE id=" + req.query.id\n')
    (fixture / "expected.json").write_text(
        json.dumps({"expected_types": ["Potential SQL Injection"], "expected_exploits": ["SQL Injection", "Remote Code Execution (RCE)"]})
    )
    result = run_fixture(fixture)
    assert result["confirmed_exploits"] == ["SQL Injection"]
    assert result["missing_exploits"] == ["Remote Code Execution (RCE)"]
    assert result["ok"] is False
