from __future__ import annotations

import argparse
import asyncio
import json
from datetime import datetime, timezone
import logging
from pathlib import Path
import uuid

from devsentinel.auditor import run_security_audit
from devsentinel.classifier import LLMLineClassifier
from devsentinel.config import API_KEY_ENV, SEVERITIES, AppConfig, load_config
from devsentinel.errors import RestoreError, ScanCancelled
from devsentinel.generator import LLMFixGenerator
from devsentinel.llm import LLMClient
from devsentinel.models import AuditOutput
from devsentinel.orchestrator import run_orchestrator
from devsentinel.reporting import build_report, findings_to_sarif
from devsentinel.selection import meets_severity, severity_counts
from devsentinel.suppression import load_suppressions
from devsentinel.telemetry import append_metrics_jsonl, run_metrics

LOGGER = logging.getLogger("devsentinel")


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Scan, patch, validate and red-team a local project")
    parser.add_argument("--repo", default=".", help="Path to the project to scan")
    parser.add_argument("--config", default=None, help="Path to YAML config (defaults to ./devsentinel.yaml when present)")
    parser.add_argument("--suppressions", default="devsentinel.ignore.yaml", help="Suppression file path.")
    parser.add_argument("--out", default="devsentinel_report.json", help="Output JSON file")
    parser.add_argument("--sarif-out", default=None, help="Optional SARIF output path (e.g. devsentinel.sarif).")
    parser.add_argument(
        "--metrics-jsonl",
        default=".devsentinel_runs/metrics.jsonl",
        help="JSONL path for run metrics; empty string disables.",
    )
    parser.add_argument("--no-apply", action="store_true", help="Generate patches without applying them.")
    parser.add_argument("--no-validate", action="store_true", help="Skip the build/test gate after applying patches.")
    parser.add_argument("--no-red-team", action="store_true", help="Skip the red-team exploit confirmation pass.")
    parser.add_argument(
        "--no-revalidate",
        action="store_true",
        help="Do not synthesize a second patch round from unmitigated exploits.",
    )
    parser.add_argument("--classify", action="store_true", help="Consult the configured LLM line classifier.")
    parser.add_argument("--llm-fixes", action="store_true", help="Ask the configured LLM for fixes before falling back.")
    parser.add_argument("--audit", action="store_true", help="Run the agent-based security auditor after the pipeline.")
    parser.add_argument(
        "--min-severity",
        choices=list(SEVERITIES),
        default=None,
        help="Only generate patches for findings at or above this severity.",
    )
    parser.add_argument(
        "--fail-on-severity",
        choices=list(SEVERITIES),
        default=None,
        help="Exit non-zero if any finding is at or above this severity.",
    )
    parser.add_argument("--log-level", default="INFO", help="Logging level (DEBUG, INFO, WARNING, ERROR).")
    parser.add_argument("--log-file", default=None, help="Optional log file path.")
    return parser.parse_args(argv)


def setup_logging(level: str, log_file: str | None = None) -> None:
    numeric_level = getattr(logging, level.upper(), logging.INFO)

    LOGGER.handlers.clear()
    LOGGER.setLevel(numeric_level)
    LOGGER.propagate = False

    console_handler = logging.StreamHandler()
    console_handler.setLevel(numeric_level)
    console_handler.setFormatter(logging.Formatter("%(levelname)s: %(message)s"))
    LOGGER.addHandler(console_handler)

    if log_file:
        path = Path(log_file)
        path.parent.mkdir(parents=True, exist_ok=True)
        file_handler = logging.FileHandler(path, encoding="utf-8")
        file_handler.setFormatter(logging.Formatter("%(asctime)s %(levelname)s %(name)s %(message)s"))
        LOGGER.addHandler(file_handler)


def apply_overrides(config: AppConfig, args: argparse.Namespace) -> AppConfig:
    if args.no_apply:
        config.pipeline.apply_patches = False
    if args.no_validate:
        config.pipeline.validate = False
    if args.no_red_team:
        config.pipeline.red_team = False
    if args.no_revalidate:
        config.pipeline.revalidate = False
    if args.classify:
        config.llm.classify_lines = True
    if args.llm_fixes:
        config.llm.generate_fixes = True
    if args.min_severity:
        config.pipeline.min_patch_severity = args.min_severity
    return config


def main(argv: list[str] | None = None) -> int:
    args = parse_args(argv)
    setup_logging(args.log_level, args.log_file)

    repo = Path(args.repo).resolve()
    if not repo.is_dir():
        raise RuntimeError(f"--repo must be an existing directory: {repo}")
    config = apply_overrides(load_config(args.config), args)
    suppressions = load_suppressions(args.suppressions)

    uses_llm = config.llm.classify_lines or config.llm.generate_fixes
    if uses_llm and not config.llm.api_key:
        raise RuntimeError(
            f"--classify/--llm-fixes need an API key for {config.llm.provider.value}; "
            f"set {API_KEY_ENV[config.llm.provider]}"
        )
    client = LLMClient(config.llm) if uses_llm else None
    classifier = LLMLineClassifier(client) if client and config.llm.classify_lines else None
    fix_generator = LLMFixGenerator(client) if client and config.llm.generate_fixes else None

    try:
        result = run_orchestrator(
            repo,
            config,
            classifier=classifier,
            fix_generator=fix_generator,
            suppressions=suppressions,
        )
    except RestoreError as exc:
        LOGGER.error("%s; the backup at %s was kept for manual recovery", exc, exc.backup)
        return 3
    except ScanCancelled as exc:
        LOGGER.warning("%s", exc)
        return 130

    audit: AuditOutput | None = None
    if args.audit:
        audit = asyncio.run(run_security_audit(repo, config.auditor.model, config.auditor.timeout_seconds))

    run_id = uuid.uuid4().hex[:12]
    generated_at = datetime.now(timezone.utc).isoformat()
    payload = build_report(
        result,
        repo,
        run_id=run_id,
        generated_at=generated_at,
        profile_name=config.profile_name,
        audit=audit,
    )

    out_path = Path(args.out)
    out_path.write_text(json.dumps(payload, indent=2))
    if args.sarif_out:
        Path(args.sarif_out).write_text(json.dumps(findings_to_sarif(result.findings), indent=2))
    if args.metrics_jsonl:
        append_metrics_jsonl(args.metrics_jsonl, run_metrics(run_id, generated_at, result))

    counts = severity_counts(result.findings)
    print(f"Run ID: {run_id}")
    print(f"Wrote report: {out_path}")
    if args.sarif_out:
        print(f"Wrote SARIF: {args.sarif_out}")
    print(f"Scanned files: {len(result.scanned_files)}")
    print(f"Findings: {len(result.findings)} (suppressed: {len(result.suppressed)})")
    print(
        f"Patches: {len(result.generated_patches)} generated, {result.patch_stats.applied} applied, "
        f"{len(result.discarded_patches)} discarded"
    )
    if result.validation_state:
        print(f"Patch transaction: {result.validation_state}")
    final_pass = result.revalidation or result.red_team
    if final_pass is not None:
        status = "SECURE" if final_pass.is_secure else "VULNERABLE"
        print(f"Red team: {status} ({len(final_pass.unmitigated)} unmitigated)")
    if audit is not None:
        print(f"Audit vulnerabilities: {len(audit.vulnerabilities)}")
    print(f"Severity counts: {counts}")

    if args.fail_on_severity:
        if any(meets_severity(finding, args.fail_on_severity) for finding in result.findings):
            print(f"Failing because finding severity meets threshold: {args.fail_on_severity}")
            return 2
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
