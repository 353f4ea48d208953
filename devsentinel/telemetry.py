from __future__ import annotations

from pathlib import Path
import json

from devsentinel.models import OrchestratorResult


def run_metrics(run_id: str, generated_at: str, result: OrchestratorResult) -> dict:
    final_pass = result.revalidation or result.red_team
    return {
        "run_id": run_id,
        "generated_at": generated_at,
        "scanned_files": len(result.scanned_files),
        "findings": len(result.findings),
        "suppressed": len(result.suppressed),
        "patches_generated": len(result.generated_patches),
        "patches": len(result.patches) + len(result.supplemental_patches),
        "patches_discarded": len(result.discarded_patches),
        "patches_applied": result.patch_stats.applied,
        "patch_errors": len(result.patch_stats.errors),
        "validation_state": result.validation_state,
        "unmitigated_exploits": len(final_pass.unmitigated) if final_pass else None,
        "stage_timing": result.stage_timing,
    }


def append_metrics_jsonl(path: str | Path, payload: dict) -> None:
    p = Path(path)
    p.parent.mkdir(parents=True, exist_ok=True)
    with p.open("a", encoding="utf-8") as handle:
        handle.write(json.dumps(payload, separators=(",", ":")) + "\n")
