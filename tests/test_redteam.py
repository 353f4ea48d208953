from pathlib import Path

import pytest

from devsentinel.detector import SQLI_TYPE
from devsentinel.models import ExploitResult
from devsentinel.redteam import (
    SECRET_EXPLOIT,
    SQLI_EXPLOIT,
    XSS_EXPLOIT,
    ExploitEngine,
    build_result,
    carries_todo_marker,
    exploit_to_finding,
    parse_target,
    render_report,
)


def _engine(tmp_path: Path, files: dict[str, str]) -> ExploitEngine:
    for name, content in files.items():
        path = tmp_path / name
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(content)
    return ExploitEngine(tmp_path, max_workers=2)


def test_sql_injection_concatenating_request_input_succeeds(tmp_path: Path):
    engine = _engine(tmp_path, {"db.js": 'query = "SELECT * FROM x WHERE id=" + req.query.id\n'})
    [exploit] = engine.test_sql_injection()
    assert exploit.success is True
    assert exploit.exploit_type == SQLI_EXPLOIT
    assert exploit.target == "db.js:1"

    result = engine.run_validation()
    assert result.is_secure is False
    assert result.unmitigated == [exploit]


def test_is_secure_iff_no_successful_exploit(tmp_path: Path):
    engine = _engine(tmp_path, {"view.js": "el.innerHTML = template;\n"})
    [exploit] = engine.test_xss()
    assert exploit.exploit_type == XSS_EXPLOIT
    assert exploit.success is False

    result = engine.run_validation()
    assert result.is_secure is True
    assert len(result.exploits) == 1


def test_secrets_always_succeed_and_marked_lines_are_skipped(tmp_path: Path):
    engine = _engine(
        tmp_path,
        {
            "config.js": 'const password = "hunter22";\n',
            "db.js": 'const q = "SELECT * FROM t WHERE id = ?"; // TODO(devsentinel): bind id as a query parameter\n',
            "calc.js": "const r = /* TODO(devsentinel): replace eval */ safeEval(req.body.expr);\n",
            "safe.js": "const v = safeEval(input);\n",
        },
    )
    result = engine.run_validation()
    assert [(e.exploit_type, e.target, e.success) for e in result.exploits] == [(SECRET_EXPLOIT, "config.js:1", True)]


def test_ignored_dirs_and_extensions(tmp_path: Path):
    engine = _engine(
        tmp_path,
        {
            "node_modules/lib/index.js": 'const password = "hunter22";\n',
            "notes.md": 'password = "hunter22"\n',
        },
    )
    assert engine.run_validation().exploits == []


def test_targeted_scan(tmp_path: Path):
    engine = _engine(tmp_path, {"run.py": "os.system('ls ' + request.args['dir'])\n"})
    result = engine.targeted_scan("RCE")
    assert result.is_secure is False
    assert engine.targeted_scan("sqli").exploits == []
    with pytest.raises(ValueError):
        engine.targeted_scan("ldap")


def test_render_report_format():
    hit = ExploitResult(
        success=True,
        exploit_type=SQLI_EXPLOIT,
        target="db.js:3",
        payload="' OR '1'='1' --",
        output="Potential SQL injection vulnerability detected in db.js:3",
        severity="high",
    )
    miss = ExploitResult(
        success=False,
        exploit_type=XSS_EXPLOIT,
        target="view.js:9",
        payload="<script>alert('XSS')</script>",
        output="Potential XSS vulnerability detected in view.js:9",
        severity="high",
    )
    assert render_report([hit, miss], False) == (
        "=== RED TEAM VALIDATION REPORT ===\n\n"
        "Security Status: VULNERABLE\n"
        "Total Exploits Attempted: 2\n"
        "Successful Exploits: 1\n"
        "Failed Exploits: 1\n\n"
        "SUCCESSFUL EXPLOITS:\n"
        "=====================\n"
        "Type: SQL Injection\n"
        "Target: db.js:3\n"
        "Payload: ' OR '1'='1' --\n"
        "Output: Potential SQL injection vulnerability detected in db.js:3\n"
        "Severity: high\n\n"
        "FAILED EXPLOITS:\n"
        "================\n"
        "Type: Cross-Site Scripting (XSS)\n"
        "Target: view.js:9\n"
        "Output: Potential XSS vulnerability detected in view.js:9\n\n"
    )
    assert build_result([]).report.startswith("=== RED TEAM VALIDATION REPORT ===\n\nSecurity Status: SECURE\n")


def test_exploit_to_finding_and_markers(tmp_path: Path):
    line = 'const sql = "SELECT * FROM u WHERE id = " + req.params.id;'
    (tmp_path / "db.js").write_text(f"// header\n{line}\n// TODO(devsentinel): review\nrun(x);\n")
    exploit = ExploitResult(
        success=True,
        exploit_type=SQLI_EXPLOIT,
        target="db.js:2",
        payload="p",
        output="Potential SQL injection vulnerability detected in db.js:2",
        severity="high",
    )
    finding = exploit_to_finding(tmp_path, exploit)
    assert finding.type == SQLI_TYPE
    assert finding.source == "red-team"
    assert finding.snippet == line
    assert finding.recommendation

    gone = exploit.model_copy(update={"target": "db.js:40"})
    assert exploit_to_finding(tmp_path, gone) is None

    assert parse_target("src/a:b.js:12") == ("src/a:b.js", 12)
    assert parse_target("nowhere") is None
    assert carries_todo_marker(tmp_path, "db.js", 2) is False
    assert carries_todo_marker(tmp_path, "db.js", 4) is True
