from __future__ import annotations

from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
import logging
from pathlib import Path
import re
from typing import Iterable, Pattern

from devsentinel.models import Finding, Severity
from devsentinel.selection import SEVERITY_ORDER
from devsentinel.walker import read_source_lines

LOGGER = logging.getLogger("devsentinel")

TODO_MARKER = "TODO(devsentinel)"

EVAL_TYPE = "Unsafe eval()"
EXEC_TYPE = "Unsafe exec()"
SECRET_TYPE = "Hardcoded Secret"
SQLI_TYPE = "Potential SQL Injection"
XSS_TYPE = "Potential XSS"
DESERIALIZATION_TYPE = "Insecure Deserialization"

USER_INPUT_RE = re.compile(
    r"\b(?:req|request)\.(?:query|params|body|cookies|headers|args|form|GET|POST)\b"
    r"|\blocation\.(?:search|hash|href)\b"
    r"|\buserInput\b"
    r"|\$_(?:GET|POST|REQUEST|COOKIE)\b"
)

EVAL_CALL_RE = re.compile(r"(?<![\w$.])eval\s*\(|\bwindow\.eval\s*\(")
SECRET_ASSIGNMENT_RE = re.compile(
    r"(?P<name>[\w$.-]*(?:password|passwd|secret|token|api[_-]?key|key)[\w$-]*)[\"']?"
    r"\s*(?::|=)(?!=)\s*"
    r"(?P<quote>[\"'`])(?!\$\{)(?P<value>[^\"'`]{3,})(?P=quote)",
    re.IGNORECASE,
)
# A quoted SQL fragment followed by `+ variable`; the fragment may hold the other quote kinds.
_IN_QUOTE = r"(?:(?!(?P=quote)).)"
SQL_CONCAT_PATTERN = (
    r"(?P<quote>[\"'`])"
    rf"(?P<sql>{_IN_QUOTE}*?\b(?:select\b{_IN_QUOTE}*?\bfrom|insert\s+into|update\b{_IN_QUOTE}*?\bset|delete\s+from)\b{_IN_QUOTE}*)"
    r"(?P=quote)\s*\+\s*(?P<var>[\w$.\[\]]+)"
)
SQL_CONCAT_RE = re.compile(SQL_CONCAT_PATTERN, re.IGNORECASE)


@dataclass(frozen=True)
class DetectionRule:
    finding_type: str
    severity: Severity
    patterns: tuple[Pattern[str], ...]
    description: str
    recommendation: str
    escalation: Pattern[str] | None = None
    escalated_severity: Severity | None = None

    def matches(self, text: str) -> bool:
        return any(pattern.search(text) for pattern in self.patterns)

    def severity_for(self, text: str) -> Severity:
        if self.escalation is not None and self.escalated_severity and self.escalation.search(text):
            return self.escalated_severity
        return self.severity


def _compile(*patterns: str, flags: int = 0) -> tuple[Pattern[str], ...]:
    return tuple(re.compile(p, flags) for p in patterns)


DETECTION_RULES: tuple[DetectionRule, ...] = (
    DetectionRule(
        finding_type=EVAL_TYPE,
        severity="high",
        patterns=(EVAL_CALL_RE,) + _compile(r"\bnew\s+Function\s*\("),
        description="Use of eval() or dynamic code construction can lead to code injection",
        recommendation="Replace with JSON.parse(), ast.literal_eval() or an explicit dispatch table",
    ),
    DetectionRule(
        finding_type=EXEC_TYPE,
        severity="high",
        patterns=_compile(
            r"(?<![\w$])(?:exec|execSync|spawn|spawnSync|shell_exec|system|popen|passthru|proc_open)\s*\(",
            r"\bsubprocess\.(?:run|call|Popen|check_call|check_output)\s*\(.*\bshell\s*=\s*True",
        ),
        description="Process execution can lead to command injection when arguments are attacker controlled",
        recommendation="Validate inputs and use argument-vector APIs such as execFile() or subprocess.run([...])",
    ),
    DetectionRule(
        finding_type=SECRET_TYPE,
        severity="high",
        patterns=(SECRET_ASSIGNMENT_RE,),
        description="Hardcoded credentials pose a significant security risk",
        recommendation="Move secrets to environment variables or a secret manager",
    ),
    DetectionRule(
        finding_type=SQLI_TYPE,
        severity="high",
        patterns=(SQL_CONCAT_RE,)
        + _compile(
            r"\bf[\"'][^\"']*\b(?:select\b[^\"']*\bfrom|insert\s+into|update\b[^\"']*\bset|delete\s+from)\b[^\"']*\{",
            r"[\"'][^\"']*\b(?:select|insert|update|delete)\b[^\"']*%[sd][^\"']*[\"']\s*%\s*[\w(]",
            r"[\"'][^\"']*\b(?:select|insert|update|delete)\b[^\"']*\{[^\"']*\}[^\"']*[\"']\s*\.format\s*\(",
            r"`[^`]*\b(?:select\b[^`]*\bfrom|insert\s+into|update\b[^`]*\bset|delete\s+from)\b[^`]*\$\{",
            flags=re.IGNORECASE,
        ),
        description="SQL built from string concatenation or interpolation is injectable",
        recommendation="Use parameterized queries or prepared statements",
    ),
    DetectionRule(
        finding_type=XSS_TYPE,
        severity="medium",
        patterns=_compile(
            r"\.(?:innerHTML|outerHTML)\s*\+?=(?!=)",
            r"\bdocument\.write(?:ln)?\s*\(",
            r"\.insertAdjacentHTML\s*\(",
            r"\bdangerouslySetInnerHTML\b",
        ),
        description="Writing markup into the DOM can execute attacker-supplied script",
        recommendation="Use textContent or sanitize markup with a library such as DOMPurify",
        escalation=USER_INPUT_RE,
        escalated_severity="high",
    ),
    DetectionRule(
        finding_type=DESERIALIZATION_TYPE,
        severity="high",
        patterns=_compile(
            r"\bJSON\.parse\s*\(\s*(?:req|request)\.",
            r"\b(?:c?[Pp]ickle|marshal|dill|shelve)\.loads?\s*\(",
            r"\byaml\.load\s*\((?!.*Loader\s*=\s*(?:yaml\.)?C?SafeLoader)",
            r"\bjsonpickle\.decode\s*\(",
            r"\bunserialize\s*\(",
            r"\bObjectInputStream\b",
        ),
        description="Deserializing untrusted data can lead to remote code execution",
        recommendation="Deserialize only trusted data with safe loaders and validate the schema",
    ),
)


def detect_line(file: str, line_number: int, text: str) -> list[Finding]:
    if not text.strip() or TODO_MARKER in text:
        return []
    findings: list[Finding] = []
    snippet = text.strip()
    for rule in DETECTION_RULES:
        try:
            if not rule.matches(text):
                continue
            severity = rule.severity_for(text)
        except Exception as exc:  # pragma: no cover - defensive
            LOGGER.warning("Rule %s failed on %s:%d: %s", rule.finding_type, file, line_number, exc)
            continue
        findings.append(
            Finding(
                type=rule.finding_type,
                severity=severity,
                file=file,
                line=line_number,
                snippet=snippet,
                description=rule.description,
                recommendation=rule.recommendation,
            )
        )
    return findings


def scan_file(root: str | Path, rel_path: str, max_file_bytes: int = 1_000_000) -> list[Finding]:
    lines = read_source_lines(root, rel_path, max_file_bytes)
    if lines is None:
        return []
    findings: list[Finding] = []
    for index, text in enumerate(lines, start=1):
        findings.extend(detect_line(rel_path, index, text))
    return findings


def scan_project(
    root: str | Path,
    files: Iterable[str],
    max_workers: int = 8,
    max_file_bytes: int = 1_000_000,
) -> list[Finding]:
    ordered = list(files)
    if not ordered:
        return []
    with ThreadPoolExecutor(max_workers=max(1, max_workers)) as pool:
        per_file = pool.map(lambda rel: scan_file(root, rel, max_file_bytes), ordered)
        return [finding for findings in per_file for finding in findings]


def merge_classifier_findings(rule_findings: list[Finding], classifier_findings: list[Finding]) -> list[Finding]:
    """Classifier judgement wins per (file, line) and keeps the highest severity seen there."""
    if not classifier_findings:
        return list(rule_findings)

    rule_by_location: dict[tuple[str, int], list[Finding]] = {}
    for finding in rule_findings:
        rule_by_location.setdefault((finding.file, finding.line), []).append(finding)

    merged: list[Finding] = []
    classified: set[tuple[str, int]] = set()
    for finding in classifier_findings:
        location = (finding.file, finding.line)
        if location in classified:
            continue
        classified.add(location)
        severities = [finding.severity] + [f.severity for f in rule_by_location.get(location, [])]
        strongest = max(severities, key=lambda s: SEVERITY_ORDER[s])
        if strongest != finding.severity:
            finding = finding.model_copy(update={"severity": strongest})
        merged.append(finding)

    merged.extend(f for f in rule_findings if (f.file, f.line) not in classified)
    return sorted(merged, key=lambda f: (f.file, f.line))
