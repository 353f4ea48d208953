from __future__ import annotations

import asyncio
from datetime import date
import logging
from pathlib import Path
import time

from devsentinel.classifier import LineClassifier, candidate_lines, classify_lines
from devsentinel.concurrency import CancellationToken, async_project_lock
from devsentinel.config import AppConfig
from devsentinel.detector import merge_classifier_findings, scan_project
from devsentinel.generator import FixGenerator, PatchGenerator
from devsentinel.models import Finding, OrchestratorResult, Patch, PatchStats, RedTeamValidationResult
from devsentinel.redteam import ExploitEngine, carries_todo_marker, exploit_to_finding, parse_target
from devsentinel.selection import filter_by_min_severity
from devsentinel.suppression import SuppressionRule, apply_suppressions
from devsentinel.validation import (
    ProjectValidator,
    RollbackOutcome,
    ValidationState,
    Validator,
    apply_with_rollback,
)
from devsentinel.walker import walk_project

LOGGER = logging.getLogger("devsentinel")


def _elapsed(start: float) -> float:
    return round(time.monotonic() - start, 3)


def _record(stats: PatchStats, outcome: RollbackOutcome) -> PatchStats:
    return PatchStats(applied=stats.applied + outcome.applied, errors=stats.errors + outcome.errors)


def _second_round_findings(root: Path, red_team: RedTeamValidationResult, max_file_bytes: int) -> list[Finding]:
    findings: list[Finding] = []
    seen: set[str] = set()
    for exploit in red_team.unmitigated:
        location = parse_target(exploit.target)
        if location is not None and carries_todo_marker(root, *location, max_file_bytes=max_file_bytes):
            LOGGER.debug("Skipping %s; already marked for remediation", exploit.target)
            continue
        finding = exploit_to_finding(root, exploit, max_file_bytes)
        if finding is None or finding.id in seen:
            continue
        seen.add(finding.id)
        findings.append(finding)
    return findings


async def run_orchestrator_async(
    root: str | Path,
    config: AppConfig,
    classifier: LineClassifier | None = None,
    fix_generator: FixGenerator | None = None,
    validator: Validator | None = None,
    suppressions: list[SuppressionRule] | None = None,
    cancel: CancellationToken | None = None,
    today: date | None = None,
) -> OrchestratorResult:
    root = Path(root)
    cancel = cancel or CancellationToken()
    scan, pipeline, llm = config.scan, config.pipeline, config.llm
    if pipeline.validate:
        validator = validator or ProjectValidator(config.validation, cancel)
    else:
        validator = None

    result = OrchestratorResult()
    timing = result.stage_timing

    async with async_project_lock(root):
        cancel.raise_if_cancelled("scan")
        t0 = time.monotonic()
        files = await asyncio.to_thread(walk_project, root, scan.extensions, scan.ignored_dirs)
        findings = await asyncio.to_thread(scan_project, root, files, scan.max_workers, scan.max_file_bytes)
        timing["scan_seconds"] = _elapsed(t0)
        result.scanned_files = files
        LOGGER.info("Scanned %d files under %s: %d rule findings", len(files), root, len(findings))

        if classifier is not None:
            cancel.raise_if_cancelled("classify")
            t1 = time.monotonic()
            candidates = candidate_lines(root, files, llm.max_classified_lines, scan.max_file_bytes)
            classified = await classify_lines(classifier, candidates, llm.max_concurrency, llm.timeout_seconds)
            findings = merge_classifier_findings(findings, classified)
            timing["classify_seconds"] = _elapsed(t1)
            LOGGER.info("Classifier flagged %d of %d candidate lines", len(classified), len(candidates))

        findings, suppressed = apply_suppressions(findings, suppressions or [], today)
        result.findings = findings
        result.suppressed = suppressed

        cancel.raise_if_cancelled("generate")
        t2 = time.monotonic()
        generator = PatchGenerator(fix_generator, llm.max_concurrency, llm.timeout_seconds)
        targets = filter_by_min_severity(findings, pipeline.min_patch_severity)
        patches: list[Patch] = await generator.generate_all(root, targets, scan.max_file_bytes)
        result.generated_patches = list(patches)
        result.patches = patches
        timing["generate_seconds"] = _elapsed(t2)

        if pipeline.apply_patches and patches:
            cancel.raise_if_cancelled("apply")
            t3 = time.monotonic()
            outcome = await asyncio.to_thread(apply_with_rollback, root, patches, validator, None, cancel)
            result.validation_state = outcome.state.value
            result.patch_stats = _record(result.patch_stats, outcome)
            result.patches = outcome.patches
            result.discarded_patches.extend(outcome.discarded)
            if outcome.state is ValidationState.ABORTED:
                result.errors.append(f"patch application aborted: {'; '.join(outcome.errors)}")
            timing["apply_seconds"] = _elapsed(t3)
            LOGGER.info(
                "Patch transaction %s: %d applied, %d discarded",
                outcome.state.value,
                outcome.applied,
                len(outcome.discarded),
            )

        if not pipeline.red_team:
            return result

        cancel.raise_if_cancelled("red-team")
        t4 = time.monotonic()
        engine = ExploitEngine(root, scan.max_workers, scan.max_file_bytes, scan.ignored_dirs)
        result.red_team = await asyncio.to_thread(engine.run_validation)
        timing["red_team_seconds"] = _elapsed(t4)

        if result.red_team.is_secure or not pipeline.revalidate:
            return result

        cancel.raise_if_cancelled("revalidate")
        t5 = time.monotonic()
        second_round = _second_round_findings(root, result.red_team, scan.max_file_bytes)
        supplemental = await generator.generate_all(root, second_round, scan.max_file_bytes)
        result.generated_patches.extend(supplemental)
        result.supplemental_patches = supplemental

        if pipeline.apply_patches:
            if supplemental:
                cancel.raise_if_cancelled("apply-supplemental")
                outcome = await asyncio.to_thread(apply_with_rollback, root, supplemental, validator, None, cancel)
                result.supplemental_validation_state = outcome.state.value
                result.patch_stats = _record(result.patch_stats, outcome)
                result.supplemental_patches = outcome.patches
                result.discarded_patches.extend(outcome.discarded)
                if outcome.state is ValidationState.ABORTED:
                    result.errors.append(f"supplemental patch application aborted: {'; '.join(outcome.errors)}")
            cancel.raise_if_cancelled("revalidate")
            engine.refresh()
            result.revalidation = await asyncio.to_thread(engine.run_validation)
            if not result.revalidation.is_secure:
                LOGGER.warning(
                    "%d exploits remain after the second patch round",
                    len(result.revalidation.unmitigated),
                )
        timing["revalidation_seconds"] = _elapsed(t5)

    return result


def run_orchestrator(
    root: str | Path,
    config: AppConfig,
    classifier: LineClassifier | None = None,
    fix_generator: FixGenerator | None = None,
    validator: Validator | None = None,
    suppressions: list[SuppressionRule] | None = None,
    cancel: CancellationToken | None = None,
    today: date | None = None,
) -> OrchestratorResult:
    return asyncio.run(
        run_orchestrator_async(
            root,
            config,
            classifier=classifier,
            fix_generator=fix_generator,
            validator=validator,
            suppressions=suppressions,
            cancel=cancel,
            today=today,
        )
    )
