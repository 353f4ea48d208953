from __future__ import annotations

from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
import logging
from pathlib import Path
import re
from typing import Iterable, Pattern

from devsentinel.config import DEFAULT_IGNORED_DIRS
from devsentinel.detector import (
    DESERIALIZATION_TYPE,
    DETECTION_RULES,
    EXEC_TYPE,
    SECRET_TYPE,
    SQLI_TYPE,
    TODO_MARKER,
    XSS_TYPE,
)
from devsentinel.models import ExploitResult, Finding, RedTeamValidationResult
from devsentinel.walker import read_source_lines, walk_project

LOGGER = logging.getLogger("devsentinel")

SQLI_EXPLOIT = "SQL Injection"
XSS_EXPLOIT = "Cross-Site Scripting (XSS)"
RCE_EXPLOIT = "Remote Code Execution (RCE)"
SECRET_EXPLOIT = "Hardcoded Secret"
DESERIALIZATION_EXPLOIT = "Insecure Deserialization"

EXPLOIT_FINDING_TYPES = {
    SQLI_EXPLOIT: SQLI_TYPE,
    XSS_EXPLOIT: XSS_TYPE,
    RCE_EXPLOIT: EXEC_TYPE,
    SECRET_EXPLOIT: SECRET_TYPE,
    DESERIALIZATION_EXPLOIT: DESERIALIZATION_TYPE,
}

SQL_EXTENSIONS = (".js", ".ts", ".py", ".php", ".java")
XSS_EXTENSIONS = (".js", ".ts", ".html", ".jsx", ".tsx")
RCE_EXTENSIONS = (".js", ".ts", ".py", ".php", ".java")
OTHER_EXTENSIONS = (".js", ".ts", ".py", ".php", ".java", ".json", ".yaml", ".yml")
ALL_EXTENSIONS = tuple(sorted(set(SQL_EXTENSIONS + XSS_EXTENSIONS + RCE_EXTENSIONS + OTHER_EXTENSIONS)))

UNTRUSTED = r"(?:req\.|request\.|params\.|query\.|body\.|userInput)"
UNTRUSTED_SQL = r"(?:req\.|request\.|params\.|query\.|body\.)"


def _patterns(*patterns: str) -> tuple[Pattern[str], ...]:
    return tuple(re.compile(p, re.IGNORECASE) for p in patterns)


@dataclass(frozen=True)
class ExploitCheck:
    """Two tiers: `broad` decides whether a line is reported, `narrow` whether the exploit succeeds."""

    exploit_type: str
    extensions: tuple[str, ...]
    broad: tuple[Pattern[str], ...]
    narrow: tuple[Pattern[str], ...]
    payload: str
    output: str
    severity: str = "high"
    always_succeeds: bool = False

    def attempt(self, file: str, line_number: int, text: str) -> ExploitResult | None:
        if not any(p.search(text) for p in self.broad):
            return None
        success = self.always_succeeds or any(p.search(text) for p in self.narrow)
        return ExploitResult(
            success=success,
            exploit_type=self.exploit_type,
            target=f"{file}:{line_number}",
            payload=self.payload,
            output=self.output.format(target=f"{file}:{line_number}"),
            severity=self.severity,
        )


SQLI_CHECK = ExploitCheck(
    exploit_type=SQLI_EXPLOIT,
    extensions=SQL_EXTENSIONS,
    broad=_patterns(
        r"select.*\+.*from",
        r"insert.*\+.*values",
        r"update.*\+.*set",
        r"delete.*\+.*from",
        r"where.*\+.*=",
        r"query.*\+.*\(",
        r"execute.*\+.*\(",
        r"sql.*\+.*=",
        r"\b(?:select|insert|update|delete)\b.*[\"'`]\s*\+",
    ),
    narrow=_patterns(
        rf"query.*\+.*{UNTRUSTED_SQL}",
        rf"sql.*\+.*{UNTRUSTED_SQL}",
    ),
    payload="' OR '1'='1' --",
    output="Potential SQL injection vulnerability detected in {target}",
)

XSS_CHECK = ExploitCheck(
    exploit_type=XSS_EXPLOIT,
    extensions=XSS_EXTENSIONS,
    broad=_patterns(
        r"innerHTML.*=",
        r"outerHTML.*=",
        r"document\.write",
        r"\beval\(",
        r"new Function",
        r"setTimeout\(.*\+.*\)",
        r"setInterval\(.*\+.*\)",
    ),
    narrow=_patterns(
        rf"(?:innerHTML|outerHTML|document\.write).*\+.*{UNTRUSTED}",
        rf"\beval\(.*{UNTRUSTED}",
    ),
    payload="<script>alert('XSS')</script>",
    output="Potential XSS vulnerability detected in {target}",
)

RCE_CHECK = ExploitCheck(
    exploit_type=RCE_EXPLOIT,
    extensions=RCE_EXTENSIONS,
    broad=_patterns(
        r"exec\(",
        r"spawn\(",
        r"child_process",
        r"shell_exec\(",
        r"system\(",
        r"popen\(",
        r"os\.system",
        r"os\.popen",
        r"subprocess\.",
        r"Runtime\.getRuntime",
        r"ProcessBuilder",
    ),
    narrow=_patterns(
        rf"(?:exec|spawn|shell_exec|system|popen|os\.system|os\.popen|subprocess).*\+.*{UNTRUSTED}",
        rf"(?:Runtime\.getRuntime|ProcessBuilder).*\+.*{UNTRUSTED}",
    ),
    payload="; cat /etc/passwd",
    output="Potential RCE vulnerability detected in {target}",
)

SECRET_CHECK = ExploitCheck(
    exploit_type=SECRET_EXPLOIT,
    extensions=OTHER_EXTENSIONS,
    broad=_patterns(
        r"password\s*[:=]\s*['\"][^'\"]+['\"]",
        r"secret\s*[:=]\s*['\"][^'\"]+['\"]",
        r"key\s*[:=]\s*['\"][^'\"]+['\"]",
        r"token\s*[:=]\s*['\"][^'\"]+['\"]",
        r"api[_-]?key\s*[:=]\s*['\"][^'\"]+['\"]",
        r"auth[_-]?token\s*[:=]\s*['\"][^'\"]+['\"]",
        r"client[_-]?secret\s*[:=]\s*['\"][^'\"]+['\"]",
    ),
    narrow=(),
    payload="Extract hardcoded credentials",
    output="Hardcoded secret detected in {target}",
    always_succeeds=True,
)

DESERIALIZATION_CHECK = ExploitCheck(
    exploit_type=DESERIALIZATION_EXPLOIT,
    extensions=OTHER_EXTENSIONS,
    broad=_patterns(
        r"JSON\.parse\(.*req\.",
        r"pickle\.loads\(",
        r"marshal\.loads\(",
        r"\beval\(.*JSON\.parse",
        r"deserialize",
        r"unserialize",
    ),
    narrow=_patterns(
        r"JSON\.parse\(.*req\.",
        r"pickle\.loads\(.*req\.",
        r"marshal\.loads\(.*req\.",
    ),
    payload="Malicious serialized object",
    output="Potential insecure deserialization vulnerability detected in {target}",
)


def render_report(exploits: list[ExploitResult], is_secure: bool) -> str:
    successful = [e for e in exploits if e.success]
    failed = [e for e in exploits if not e.success]

    report = "=== RED TEAM VALIDATION REPORT ===\n\n"
    report += f"Security Status: {'SECURE' if is_secure else 'VULNERABLE'}\n"
    report += f"Total Exploits Attempted: {len(exploits)}\n"
    report += f"Successful Exploits: {len(successful)}\n"
    report += f"Failed Exploits: {len(failed)}\n\n"

    if successful:
        report += "SUCCESSFUL EXPLOITS:\n"
        report += "=====================\n"
        for exploit in successful:
            report += f"Type: {exploit.exploit_type}\n"
            report += f"Target: {exploit.target}\n"
            report += f"Payload: {exploit.payload}\n"
            report += f"Output: {exploit.output}\n"
            report += f"Severity: {exploit.severity}\n\n"

    if failed:
        report += "FAILED EXPLOITS:\n"
        report += "================\n"
        for exploit in failed:
            report += f"Type: {exploit.exploit_type}\n"
            report += f"Target: {exploit.target}\n"
            report += f"Output: {exploit.output}\n\n"

    return report


def build_result(exploits: list[ExploitResult]) -> RedTeamValidationResult:
    is_secure = not any(e.success for e in exploits)
    return RedTeamValidationResult(exploits=exploits, is_secure=is_secure, report=render_report(exploits, is_secure))


class ExploitEngine:
    def __init__(
        self,
        root: str | Path,
        max_workers: int = 8,
        max_file_bytes: int = 1_000_000,
        ignored_dirs: Iterable[str] = DEFAULT_IGNORED_DIRS,
    ) -> None:
        self.root = Path(root)
        self.max_workers = max(1, max_workers)
        self.max_file_bytes = max_file_bytes
        self.ignored_dirs = list(ignored_dirs)
        self._files: list[str] | None = None

    @property
    def files(self) -> list[str]:
        if self._files is None:
            self._files = walk_project(self.root, ALL_EXTENSIONS, self.ignored_dirs)
        return self._files

    def refresh(self) -> None:
        self._files = None

    def _scan_file(self, rel_path: str, checks: tuple[ExploitCheck, ...]) -> list[ExploitResult]:
        lines = read_source_lines(self.root, rel_path, self.max_file_bytes)
        if lines is None:
            return []
        suffix = Path(rel_path).suffix.lower()
        applicable = [check for check in checks if suffix in check.extensions]
        results: list[ExploitResult] = []
        for index, text in enumerate(lines, start=1):
            if TODO_MARKER in text:
                continue
            for check in applicable:
                result = check.attempt(rel_path, index, text)
                if result is not None:
                    results.append(result)
        return results

    def _run_checks(self, *checks: ExploitCheck) -> list[ExploitResult]:
        extensions = {ext for check in checks for ext in check.extensions}
        targets = [f for f in self.files if Path(f).suffix.lower() in extensions]
        if not targets:
            return []
        with ThreadPoolExecutor(max_workers=self.max_workers) as pool:
            per_file = pool.map(lambda rel: self._scan_file(rel, checks), targets)
            return [result for results in per_file for result in results]

    def test_sql_injection(self) -> list[ExploitResult]:
        return self._run_checks(SQLI_CHECK)

    def test_xss(self) -> list[ExploitResult]:
        return self._run_checks(XSS_CHECK)

    def test_rce(self) -> list[ExploitResult]:
        return self._run_checks(RCE_CHECK)

    def test_other_vulnerabilities(self) -> list[ExploitResult]:
        return self._run_checks(SECRET_CHECK, DESERIALIZATION_CHECK)

    def run_validation(self) -> RedTeamValidationResult:
        exploits: list[ExploitResult] = []
        exploits.extend(self.test_sql_injection())
        exploits.extend(self.test_xss())
        exploits.extend(self.test_rce())
        exploits.extend(self.test_other_vulnerabilities())
        result = build_result(exploits)
        LOGGER.info(
            "Red team pass over %s: %d attempted, %d successful",
            self.root,
            len(exploits),
            len(result.unmitigated),
        )
        return result

    def targeted_scan(self, scan_type: str) -> RedTeamValidationResult:
        scans = {
            "sqli": self.test_sql_injection,
            "xss": self.test_xss,
            "rce": self.test_rce,
        }
        kind = scan_type.strip().lower()
        if kind == "all":
            return self.run_validation()
        if kind not in scans:
            raise ValueError(f"Unknown scan type '{scan_type}' (expected sqli, xss, rce or all)")
        return build_result(scans[kind]())


def parse_target(target: str) -> tuple[str, int] | None:
    file, sep, line = target.rpartition(":")
    if not sep or not file or not line.isdigit():
        return None
    return file, int(line)


def exploit_to_finding(root: str | Path, exploit: ExploitResult, max_file_bytes: int = 1_000_000) -> Finding | None:
    """Finding for an unmitigated exploit, anchored on the current text of its target line."""
    location = parse_target(exploit.target)
    if location is None:
        LOGGER.warning("Unparseable red team target '%s'", exploit.target)
        return None
    file, line = location
    lines = read_source_lines(root, file, max_file_bytes)
    if lines is None or not 0 < line <= len(lines) or not lines[line - 1].strip():
        LOGGER.warning("Red team target %s no longer exists", exploit.target)
        return None
    finding_type = EXPLOIT_FINDING_TYPES.get(exploit.exploit_type, exploit.exploit_type)
    rule = next((r for r in DETECTION_RULES if r.finding_type == finding_type), None)
    return Finding(
        type=finding_type,
        severity=exploit.severity,
        file=file,
        line=line,
        snippet=lines[line - 1].strip(),
        description=exploit.output,
        recommendation=rule.recommendation if rule else None,
        source="red-team",
    )


def carries_todo_marker(root: str | Path, file: str, line: int, max_file_bytes: int = 1_000_000) -> bool:
    """True when the line, or the line above it, already holds a remediation marker."""
    lines = read_source_lines(root, file, max_file_bytes)
    if lines is None or not 0 < line <= len(lines):
        return False
    if TODO_MARKER in lines[line - 1]:
        return True
    return line > 1 and TODO_MARKER in lines[line - 2]
