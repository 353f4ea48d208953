from pathlib import Path

from devsentinel.detector import (
    DESERIALIZATION_TYPE,
    EVAL_TYPE,
    EXEC_TYPE,
    SECRET_TYPE,
    SQLI_TYPE,
    XSS_TYPE,
    detect_line,
    merge_classifier_findings,
    scan_file,
    scan_project,
)
from devsentinel.models import Finding


def _types(text: str) -> set[str]:
    return {finding.type for finding in detect_line("f.js", 1, text)}


def test_detect_line_rules():
    assert _types("const r = eval(userInput);") == {EVAL_TYPE}
    assert _types("child_process.exec(cmd);") == {EXEC_TYPE}
    assert _types('const password = "hunter22";') == {SECRET_TYPE}
    assert _types('const q = "SELECT * FROM users WHERE id = " + userId;') == {SQLI_TYPE}
    assert _types("el.innerHTML = html;") == {XSS_TYPE}
    assert _types("data = pickle.loads(blob)") == {DESERIALIZATION_TYPE}


def test_detect_line_ignores_safe_code():
    assert _types("const r = safeEval(userInput);") == set()
    assert _types("value = ast.literal_eval(text)") == set()
    assert _types("data = yaml.load(text, Loader=yaml.SafeLoader)") == set()
    assert _types("if (el.innerHTML == other) {}") == set()
    assert _types("   ") == set()


def test_detect_line_skips_marked_lines():
    line = 'const q = "SELECT * FROM t WHERE id = ?"; // TODO(devsentinel): bind userId as a query parameter'
    assert detect_line("db.js", 1, line) == []


def test_xss_escalates_with_user_input():
    [finding] = detect_line("f.js", 1, "el.innerHTML = req.query.name;")
    assert finding.severity == "high"
    [finding] = detect_line("f.js", 1, "el.innerHTML = template;")
    assert finding.severity == "medium"


def test_scan_file_scenario(tmp_path: Path):
    lines = ["// header"] * 9 + ['const q = "SELECT * FROM users WHERE id = " + userId;']
    (tmp_path / "db.js").write_text("\n".join(lines) + "\n")

    [finding] = scan_file(tmp_path, "db.js")
    assert finding.type == SQLI_TYPE
    assert finding.severity == "high"
    assert finding.file == "db.js"
    assert finding.line == 10


def test_scan_is_idempotent(tmp_path: Path):
    (tmp_path / "a.js").write_text('eval(x);\nconst token = "abcdef";\n')
    (tmp_path / "b.py").write_text("import os\nos.system(cmd)\n")
    files = ["a.js", "b.py"]

    first = scan_project(tmp_path, files, max_workers=4)
    second = scan_project(tmp_path, files, max_workers=2)
    assert first == second
    assert [f.id for f in first] == [f.id for f in second]
    assert [(f.file, f.line) for f in first] == [("a.js", 1), ("a.js", 2), ("b.py", 2)]


def test_merge_classifier_findings_keeps_strongest_severity():
    rule = Finding(type=XSS_TYPE, severity="high", file="a.js", line=3, snippet="el.innerHTML = q")
    other = Finding(type=EVAL_TYPE, severity="high", file="a.js", line=8, snippet="eval(x)")
    classified = Finding(
        type="DOM XSS", severity="medium", file="a.js", line=3, snippet="el.innerHTML = q", source="classifier"
    )

    merged = merge_classifier_findings([rule, other], [classified])
    assert [(f.line, f.type, f.severity) for f in merged] == [(3, "DOM XSS", "high"), (8, EVAL_TYPE, "high")]
    assert merged[0].source == "classifier"
