from __future__ import annotations

import asyncio
from dataclasses import dataclass
import json
import logging
from pathlib import Path
from typing import Iterable, Protocol

from pydantic import ValidationError

from devsentinel.detector import TODO_MARKER
from devsentinel.errors import LLMError
from devsentinel.llm import LLMClient, strip_code_fences
from devsentinel.models import Finding, LineClassification
from devsentinel.prompts import CLASSIFIER_SYSTEM, classifier_user_prompt
from devsentinel.walker import read_source_lines

LOGGER = logging.getLogger("devsentinel")

COMMENT_PREFIXES = ("//", "#", "/*", "*", "<!--", "--")
SEVERITY_ALIASES = {"critical": "high", "moderate": "medium", "info": "low", "informational": "low"}


@dataclass(frozen=True)
class CandidateLine:
    file: str
    line: int
    snippet: str


class LineClassifier(Protocol):
    async def classify(self, file: str, line: int, snippet: str) -> LineClassification: ...


def parse_classification(text: str) -> LineClassification:
    try:
        payload = json.loads(strip_code_fences(text))
    except json.JSONDecodeError as exc:
        raise LLMError(f"Classifier returned invalid JSON: {exc}") from exc
    if not isinstance(payload, dict):
        raise LLMError("Classifier returned a non-object JSON value")
    severity = str(payload.get("severity") or "medium").strip().lower()
    severity = SEVERITY_ALIASES.get(severity, severity)
    payload["severity"] = severity if severity in ("low", "medium", "high") else "medium"
    try:
        return LineClassification.model_validate(payload)
    except ValidationError as exc:
        raise LLMError(f"Classifier response did not match the expected shape: {exc}") from exc


class LLMLineClassifier:
    def __init__(self, client: LLMClient) -> None:
        self.client = client

    async def classify(self, file: str, line: int, snippet: str) -> LineClassification:
        text = await self.client.complete_text(CLASSIFIER_SYSTEM, classifier_user_prompt(file, line, snippet))
        return parse_classification(text)


def candidate_lines(
    root: str | Path,
    files: Iterable[str],
    max_lines: int,
    max_file_bytes: int = 1_000_000,
) -> list[CandidateLine]:
    candidates: list[CandidateLine] = []
    for rel_path in files:
        lines = read_source_lines(root, rel_path, max_file_bytes)
        if lines is None:
            continue
        for index, text in enumerate(lines, start=1):
            stripped = text.strip()
            if not stripped or stripped.startswith(COMMENT_PREFIXES) or TODO_MARKER in stripped:
                continue
            candidates.append(CandidateLine(rel_path, index, stripped))
            if len(candidates) >= max_lines:
                return candidates
    return candidates


async def classify_lines(
    classifier: LineClassifier,
    candidates: list[CandidateLine],
    max_concurrency: int = 4,
    timeout_seconds: float = 30.0,
) -> list[Finding]:
    semaphore = asyncio.Semaphore(max(1, max_concurrency))

    async def _one(candidate: CandidateLine) -> Finding | None:
        async with semaphore:
            try:
                verdict = await asyncio.wait_for(
                    classifier.classify(candidate.file, candidate.line, candidate.snippet),
                    timeout=timeout_seconds,
                )
            except asyncio.TimeoutError:
                LOGGER.warning("Classifier timed out on %s:%d", candidate.file, candidate.line)
                return None
            except Exception as exc:
                LOGGER.warning("Classifier failed on %s:%d: %s", candidate.file, candidate.line, exc)
                return None
        if not verdict.is_vulnerable or not verdict.type.strip():
            return None
        return Finding(
            type=verdict.type.strip(),
            severity=verdict.severity,
            file=candidate.file,
            line=candidate.line,
            snippet=candidate.snippet,
            description=verdict.description or None,
            recommendation=verdict.recommendation or None,
            source="classifier",
        )

    results = await asyncio.gather(*(_one(candidate) for candidate in candidates))
    return [finding for finding in results if finding is not None]
