from __future__ import annotations

from typing import Iterable

from devsentinel.models import Finding

SEVERITY_ORDER = {"low": 1, "medium": 2, "high": 3}


def meets_severity(finding: Finding, threshold: str) -> bool:
    return SEVERITY_ORDER[finding.severity] >= SEVERITY_ORDER[threshold]


def filter_by_min_severity(findings: Iterable[Finding], min_severity: str) -> list[Finding]:
    return [finding for finding in findings if meets_severity(finding, min_severity)]


def severity_counts(findings: Iterable[Finding]) -> dict[str, int]:
    counts = {"high": 0, "medium": 0, "low": 0}
    for finding in findings:
        counts[finding.severity] += 1
    return counts


def summarize_findings_by_type(findings: Iterable[Finding]) -> dict[str, dict[str, int]]:
    summary: dict[str, dict[str, int]] = {}
    for finding in findings:
        if finding.type not in summary:
            summary[finding.type] = {"low": 0, "medium": 0, "high": 0, "total": 0}
        summary[finding.type][finding.severity] += 1
        summary[finding.type]["total"] += 1
    return summary


def rank_findings(findings: Iterable[Finding]) -> list[Finding]:
    return sorted(findings, key=lambda f: (-SEVERITY_ORDER[f.severity], f.file, f.line))
