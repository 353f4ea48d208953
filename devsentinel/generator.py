from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
import logging
from pathlib import Path
import re
from typing import Callable, Iterable, Protocol

from devsentinel.detector import (
    DESERIALIZATION_TYPE,
    EVAL_CALL_RE,
    EVAL_TYPE,
    SECRET_ASSIGNMENT_RE,
    SECRET_TYPE,
    SQL_CONCAT_PATTERN,
    SQLI_TYPE,
    TODO_MARKER,
    XSS_TYPE,
)
from devsentinel.llm import LLMClient, strip_code_fences
from devsentinel.models import Finding, Patch
from devsentinel.prompts import FIXER_SYSTEM, fixer_user_prompt
from devsentinel.walker import read_source_lines

LOGGER = logging.getLogger("devsentinel")

HASH_COMMENT_SUFFIXES = {".py", ".rb", ".sh", ".yaml", ".yml", ".toml", ".pl"}
MARKUP_SUFFIXES = {".html", ".htm", ".xml"}

# `"... WHERE name = '" + name + "'"`: the optional tail closes the inner quote.
SQL_FIX_RE = re.compile(
    SQL_CONCAT_PATTERN + r"(?P<tail>\s*\+\s*(?P<q2>[\"'`])[\"']?(?P=q2))?",
    re.IGNORECASE,
)
INNER_HTML_RE = re.compile(r"\.innerHTML(\s*\+?=)(?!=)")
YAML_LOAD_RE = re.compile(r"\byaml\.load\s*\(")
YAML_LOADER_ARG_RE = re.compile(r",\s*Loader\s*=\s*[\w.]+")

ENV_LOOKUPS: dict[str, Callable[[str], str]] = {
    ".py": lambda name: f'os.environ.get("{name}")',
    ".java": lambda name: f'System.getenv("{name}")',
    ".kt": lambda name: f'System.getenv("{name}")',
    ".go": lambda name: f'os.Getenv("{name}")',
    ".php": lambda name: f"getenv('{name}')",
    ".rb": lambda name: f'ENV["{name}"]',
    ".cs": lambda name: f'Environment.GetEnvironmentVariable("{name}")',
}


def _suffix(file: str) -> str:
    return Path(file).suffix.lower()


def _indent_of(line: str) -> str:
    return line[: len(line) - len(line.lstrip())]


def _label(finding_type: str) -> str:
    # Comment text stays free of call syntax so it never matches a detection pattern.
    return finding_type.replace("()", "").strip()


def _comment(file: str, text: str) -> str:
    suffix = _suffix(file)
    if suffix in HASH_COMMENT_SUFFIXES:
        return f"# {text}"
    if suffix in MARKUP_SUFFIXES:
        return f"<!-- {text} -->"
    return f"// {text}"


def env_var_name(identifier: str) -> str:
    last = re.split(r"[.\[\]]", identifier.strip())
    segment = next((part for part in reversed(last) if part), identifier)
    segment = re.sub(r"(?<=[a-z0-9])(?=[A-Z])", "_", segment)
    name = re.sub(r"[^A-Za-z0-9]+", "_", segment).strip("_").upper()
    return name or "SECRET"


@dataclass
class Rewrite:
    text: str
    change: str


def _rewrite_eval(file: str, line: str, line_number: int) -> Rewrite | None:
    if not EVAL_CALL_RE.search(line):
        return None
    if _suffix(file) == ".py":
        rewritten = EVAL_CALL_RE.sub("safe_eval(", line)
        return Rewrite(
            f"{rewritten.rstrip()}  # {TODO_MARKER}: replace eval with ast.literal_eval or a parser",
            f"Replaced eval() with safe_eval() on line {line_number}",
        )
    rewritten = EVAL_CALL_RE.sub(f"/* {TODO_MARKER}: replace eval with a safer alternative */ safeEval(", line)
    return Rewrite(rewritten, f"Replaced eval() with safeEval() on line {line_number}")


def _rewrite_secret(file: str, line: str, line_number: int) -> Rewrite | None:
    match = SECRET_ASSIGNMENT_RE.search(line)
    if not match:
        return None
    name = env_var_name(match.group("name"))
    lookup = ENV_LOOKUPS.get(_suffix(file), lambda value: f"process.env.{value}")(name)
    rewritten = line[: match.start("quote")] + lookup + line[match.end() :]
    return Rewrite(rewritten, f"Replaced hardcoded secret with environment variable {name} on line {line_number}")


def _rewrite_sql(file: str, line: str, line_number: int) -> Rewrite | None:
    if _suffix(file) in MARKUP_SUFFIXES:
        return None
    match = SQL_FIX_RE.search(line)
    if not match:
        return None
    sql = match.group("sql")
    if sql.endswith(("'", '"')):
        sql = sql[:-1]
    quote = match.group("quote")
    variable = match.group("var")
    rewritten = line[: match.start()] + f"{quote}{sql}?{quote}" + line[match.end() :]
    note = _comment(file, f"{TODO_MARKER}: bind {variable} as a query parameter")
    return Rewrite(f"{rewritten.rstrip()} {note}", f"Parameterized SQL query on line {line_number} (bind {variable})")


def _rewrite_xss(file: str, line: str, line_number: int) -> Rewrite | None:
    if not INNER_HTML_RE.search(line):
        return None
    return Rewrite(
        INNER_HTML_RE.sub(r".textContent\1", line),
        f"Replaced innerHTML with textContent on line {line_number}",
    )


def _rewrite_deserialization(file: str, line: str, line_number: int) -> Rewrite | None:
    if not YAML_LOAD_RE.search(line):
        return None
    rewritten = YAML_LOAD_RE.sub("yaml.safe_load(", YAML_LOADER_ARG_RE.sub("", line))
    return Rewrite(rewritten, f"Replaced yaml.load with yaml.safe_load on line {line_number}")


REWRITES: dict[str, Callable[[str, str, int], Rewrite | None]] = {
    EVAL_TYPE: _rewrite_eval,
    SECRET_TYPE: _rewrite_secret,
    SQLI_TYPE: _rewrite_sql,
    XSS_TYPE: _rewrite_xss,
    DESERIALIZATION_TYPE: _rewrite_deserialization,
}


def _rewrite_group(findings: list[Finding], source_line: str, newline: str) -> tuple[str, list[str]]:
    primary = findings[0]
    text = source_line
    changes: list[str] = []
    needs_review: list[str] = []
    for finding in findings:
        rewrite = REWRITES.get(finding.type)
        result = rewrite(primary.file, text, primary.line) if rewrite else None
        if result is None:
            if _label(finding.type) not in needs_review:
                needs_review.append(_label(finding.type))
            changes.append(f"Added TODO comment for {finding.type} on line {primary.line}")
            continue
        text = result.text
        changes.append(result.change)
    if needs_review:
        todo = _comment(primary.file, f"{TODO_MARKER}: review {', '.join(needs_review)} and remediate")
        text = f"{_indent_of(source_line)}{todo}{newline}{text}"
    return text, changes


def fallback_patch(finding: Finding, source_line: str | None = None, newline: str = "\n") -> Patch:
    return _fallback_group([finding], source_line, newline)


def _fallback_group(findings: list[Finding], source_line: str | None, newline: str) -> Patch:
    primary = findings[0]
    anchor = source_line if source_line and source_line.strip() else primary.snippet
    if not anchor:
        # Nothing to anchor on: the note goes above the existing content.
        return Patch(
            file=primary.file,
            change=f"Manual review required for {primary.type} (no source line available)",
            before=None,
            after=_comment(primary.file, f"{TODO_MARKER}: review {_label(primary.type)} and remediate"),
            finding_ids=[f.id for f in findings],
            origin="red-team" if primary.source == "red-team" else "rule",
            mode="prepend",
        )
    after, changes = _rewrite_group(findings, anchor, newline)
    return Patch(
        file=primary.file,
        change="; ".join(changes),
        before=anchor,
        after=after,
        finding_ids=[f.id for f in findings],
        origin="red-team" if primary.source == "red-team" else "rule",
    )


@dataclass
class FixContext:
    findings: list[Finding]
    source_line: str
    newline: str = "\n"

    @property
    def primary(self) -> Finding:
        return self.findings[0]

    @property
    def finding_types(self) -> str:
        return ", ".join(dict.fromkeys(f.type for f in self.findings))


class FixGenerator(Protocol):
    async def generate_fix(self, context: FixContext) -> str: ...


class LLMFixGenerator:
    def __init__(self, client: LLMClient) -> None:
        self.client = client

    async def generate_fix(self, context: FixContext) -> str:
        primary = context.primary
        prompt = fixer_user_prompt(
            context.finding_types,
            primary.file,
            primary.line,
            context.source_line,
            primary.description,
            primary.recommendation,
        )
        text = await self.client.complete_text(FIXER_SYSTEM, prompt)
        return strip_code_fences(text)


def _normalize_fix(fix: str, source_line: str, newline: str) -> str:
    lines = fix.replace("\r\n", "\n").split("\n")
    indent = _indent_of(source_line)
    if indent and lines and not _indent_of(lines[0]):
        lines = [f"{indent}{line}" if line else line for line in lines]
    return newline.join(lines)


def _newline_of(root: str | Path, rel_path: str) -> str:
    try:
        head = (Path(root) / rel_path).read_bytes()[:65536]
    except OSError:
        return "\n"
    return "\r\n" if b"\r\n" in head else "\n"


@dataclass
class _Group:
    findings: list[Finding] = field(default_factory=list)


class PatchGenerator:
    def __init__(
        self,
        fix_generator: FixGenerator | None = None,
        max_concurrency: int = 4,
        timeout_seconds: float = 30.0,
    ) -> None:
        self.fix_generator = fix_generator
        self.max_concurrency = max(1, max_concurrency)
        self.timeout_seconds = timeout_seconds

    async def _generate_group(self, findings: list[Finding], source_line: str | None, newline: str) -> Patch:
        primary = findings[0]
        if self.fix_generator is None or not source_line or not source_line.strip():
            return _fallback_group(findings, source_line, newline)

        context = FixContext(findings=findings, source_line=source_line, newline=newline)
        try:
            fix = await asyncio.wait_for(self.fix_generator.generate_fix(context), timeout=self.timeout_seconds)
        except asyncio.TimeoutError:
            LOGGER.warning("Fix generation timed out for %s:%d; using fallback", primary.file, primary.line)
            return _fallback_group(findings, source_line, newline)
        except Exception as exc:
            LOGGER.warning("Fix generation failed for %s:%d: %s; using fallback", primary.file, primary.line, exc)
            return _fallback_group(findings, source_line, newline)

        if not fix or not fix.strip() or fix.strip() == source_line.strip():
            LOGGER.warning("Fix generator returned no usable change for %s:%d; using fallback", primary.file, primary.line)
            return _fallback_group(findings, source_line, newline)

        return Patch(
            file=primary.file,
            change=f"LLM-generated fix for {context.finding_types} on line {primary.line}",
            before=source_line,
            after=_normalize_fix(fix, source_line, newline),
            finding_ids=[f.id for f in findings],
            origin="llm",
        )

    async def generate(self, finding: Finding, source_line: str | None = None, newline: str = "\n") -> Patch:
        return await self._generate_group([finding], source_line, newline)

    def generate_sync(self, finding: Finding, source_line: str | None = None, newline: str = "\n") -> Patch:
        return asyncio.run(self.generate(finding, source_line, newline))

    async def generate_all(
        self,
        root: str | Path,
        findings: Iterable[Finding],
        max_file_bytes: int = 1_000_000,
    ) -> list[Patch]:
        groups: dict[tuple[str, int], _Group] = {}
        for finding in findings:
            group = groups.setdefault((finding.file, finding.line), _Group())
            if all(existing.id != finding.id for existing in group.findings):
                group.findings.append(finding)

        sources: dict[str, list[str] | None] = {}
        newlines: dict[str, str] = {}
        jobs: list[tuple[list[Finding], str, str]] = []
        for (file, line), group in groups.items():
            if file not in sources:
                sources[file] = read_source_lines(root, file, max_file_bytes)
                newlines[file] = _newline_of(root, file)
            lines = sources[file]
            if lines is None or not 0 < line <= len(lines) or not lines[line - 1].strip():
                LOGGER.warning("No source line for %s:%d; skipping patch generation", file, line)
                continue
            jobs.append((group.findings, lines[line - 1], newlines[file]))

        semaphore = asyncio.Semaphore(self.max_concurrency)

        async def _bounded(job: tuple[list[Finding], str, str]) -> Patch:
            async with semaphore:
                return await self._generate_group(*job)

        patches = await asyncio.gather(*(_bounded(job) for job in jobs))
        return _merge_duplicate_anchors(list(patches))


def _merge_duplicate_anchors(patches: list[Patch]) -> list[Patch]:
    """Identical lines in one file share a patch; the applier only rewrites the first occurrence."""
    merged: dict[tuple[str, str | None], Patch] = {}
    for patch in patches:
        key = (patch.file, patch.before)
        existing = merged.get(key)
        if existing is None:
            merged[key] = patch
            continue
        ids = existing.finding_ids + [i for i in patch.finding_ids if i not in existing.finding_ids]
        merged[key] = existing.model_copy(update={"finding_ids": ids})
    return list(merged.values())
