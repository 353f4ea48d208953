from devsentinel.models import Finding
from devsentinel.selection import (
    filter_by_min_severity,
    meets_severity,
    rank_findings,
    severity_counts,
    summarize_findings_by_type,
)


def _finding(finding_type: str, severity: str, file: str = "app.js", line: int = 1) -> Finding:
    return Finding(type=finding_type, severity=severity, file=file, line=line, snippet=f"{finding_type}-{line}")


def test_meets_severity():
    assert meets_severity(_finding("Potential XSS", "high"), "medium")
    assert meets_severity(_finding("Potential XSS", "medium"), "medium")
    assert not meets_severity(_finding("Potential XSS", "low"), "medium")


def test_filter_and_rank_findings():
    findings = [
        _finding("Potential XSS", "medium", "b.js", 4),
        _finding("Hardcoded Secret", "low", "a.js", 1),
        _finding("Unsafe eval()", "high", "c.js", 9),
        _finding("Potential SQL Injection", "high", "a.js", 2),
    ]

    selected = filter_by_min_severity(findings, "medium")
    assert [f.type for f in selected] == ["Potential XSS", "Unsafe eval()", "Potential SQL Injection"]

    ranked = rank_findings(findings)
    assert [(f.file, f.line) for f in ranked] == [("a.js", 2), ("c.js", 9), ("b.js", 4), ("a.js", 1)]


def test_severity_counts_and_type_summary():
    findings = [
        _finding("Potential XSS", "high", line=1),
        _finding("Potential XSS", "medium", line=2),
        _finding("Unsafe eval()", "high", line=3),
    ]
    assert severity_counts(findings) == {"high": 2, "medium": 1, "low": 0}

    summary = summarize_findings_by_type(findings)
    assert summary["Potential XSS"]["total"] == 2
    assert summary["Potential XSS"]["high"] == 1
    assert summary["Unsafe eval()"]["high"] == 1
