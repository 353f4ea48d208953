from __future__ import annotations

from datetime import datetime, timezone
from pathlib import Path
import re
from typing import Any
import uuid

from devsentinel.models import AuditOutput, Finding, OrchestratorResult
from devsentinel.selection import severity_counts, summarize_findings_by_type


def _normalize_severity(sev: str) -> str:
    value = (sev or "").lower()
    if value == "high":
        return "error"
    if value == "medium":
        return "warning"
    return "note"


def _slug(value: str) -> str:
    return re.sub(r"[^a-z0-9]+", "-", value.lower()).strip("-") or "unknown"


def _help_uri_for_type(finding_type: str) -> str:
    name = finding_type.lower()
    if "xss" in name:
        return "https://owasp.org/www-community/attacks/xss/"
    if "sql" in name:
        return "https://owasp.org/www-community/attacks/SQL_Injection"
    if "eval" in name or "exec" in name:
        return "https://owasp.org/www-community/attacks/Code_Injection"
    if "secret" in name:
        return "https://owasp.org/www-community/vulnerabilities/Use_of_hard-coded_password"
    if "deserialization" in name:
        return "https://owasp.org/www-community/vulnerabilities/Deserialization_of_untrusted_data"
    return "https://owasp.org/www-project-top-ten/"


def _cwe_tags_for_type(finding_type: str) -> list[str]:
    name = finding_type.lower()
    tags = ["security"]
    if "eval" in name:
        tags.extend(["CWE-95", "CWE-94"])
    if "exec" in name:
        tags.append("CWE-78")
    if "secret" in name:
        tags.append("CWE-798")
    if "sql" in name:
        tags.append("CWE-89")
    if "xss" in name:
        tags.append("CWE-79")
    if "deserialization" in name:
        tags.append("CWE-502")
    return list(dict.fromkeys(tags))


def findings_to_sarif(findings: list[Finding], tool_name: str = "devsentinel") -> dict[str, Any]:
    rules: dict[str, dict[str, Any]] = {}
    results: list[dict[str, Any]] = []

    for finding in findings:
        rule_id = f"devsentinel/{_slug(finding.type)}"
        help_text = (finding.recommendation or "").strip() or "Review input handling and use safe APIs."

        if rule_id not in rules:
            rules[rule_id] = {
                "id": rule_id,
                "name": finding.type,
                "shortDescription": {"text": finding.type},
                "fullDescription": {"text": finding.description or f"{finding.type} detected by devsentinel."},
                "helpUri": _help_uri_for_type(finding.type),
                "help": {"text": f"Finding type: {finding.type}. Default remediation: {help_text}"},
                "properties": {
                    "tags": _cwe_tags_for_type(finding.type) + [finding.type],
                    "precision": "medium" if finding.source == "rule" else "low",
                    "problem.severity": "warning",
                },
            }

        message = finding.description or finding.type
        result: dict[str, Any] = {
            "ruleId": rule_id,
            "level": _normalize_severity(finding.severity),
            "message": {"text": f"[{finding.id}] {finding.type}: {message}"},
            "partialFingerprints": {"primaryLocationLineHash": finding.id},
            "properties": {
                "security-severity": finding.severity,
                "finding-id": finding.id,
                "finding-type": finding.type,
                "source": finding.source,
            },
        }
        if finding.file:
            region: dict[str, Any] = {"startLine": max(finding.line, 1)}
            if finding.snippet:
                region["snippet"] = {"text": finding.snippet}
            result["locations"] = [
                {
                    "physicalLocation": {
                        "artifactLocation": {"uri": finding.file},
                        "region": region,
                    }
                }
            ]
        results.append(result)

    return {
        "$schema": "https://json.schemastore.org/sarif-2.1.0.json",
        "version": "2.1.0",
        "runs": [
            {
                "tool": {
                    "driver": {
                        "name": tool_name,
                        "rules": list(rules.values()),
                    }
                },
                "results": results,
            }
        ],
    }


def build_report(
    result: OrchestratorResult,
    root: str | Path,
    run_id: str | None = None,
    generated_at: str | None = None,
    profile_name: str | None = None,
    audit: AuditOutput | None = None,
) -> dict[str, Any]:
    final_pass = result.revalidation or result.red_team
    payload: dict[str, Any] = {
        "run_id": run_id or uuid.uuid4().hex[:12],
        "generated_at": generated_at or datetime.now(timezone.utc).isoformat(),
        "repo": str(root),
        "profile_name": profile_name,
        "scanned_file_count": len(result.scanned_files),
        "severity_counts": severity_counts(result.findings),
        "type_summary": summarize_findings_by_type(result.findings),
        "is_secure": None if final_pass is None else final_pass.is_secure,
    }
    payload.update(result.model_dump(mode="json", by_alias=True))
    if audit is not None:
        payload["audit"] = audit.model_dump(mode="json")
    return payload
