from __future__ import annotations

import argparse
import json
from pathlib import Path

from devsentinel.config import ScanConfig
from devsentinel.detector import scan_project
from devsentinel.redteam import ExploitEngine
from devsentinel.walker import walk_project


def parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Check detector and red-team coverage against fixture projects")
    parser.add_argument("--fixtures-root", default="benchmarks/fixtures", help="Benchmarks fixtures root")
    parser.add_argument("--strict", action="store_true", help="Exit non-zero when a fixture misses an expected type")
    return parser.parse_args()


def run_fixture(fixture_dir: Path, scan: ScanConfig | None = None) -> dict:
    """Compare one fixture's findings (and, when listed, successful exploits) with expected.json."""
    expected_path = fixture_dir / "expected.json"
    if not expected_path.exists():
        return {"fixture": fixture_dir.name, "skipped": True, "reason": "missing expected.json"}

    scan = scan or ScanConfig()
    expected = json.loads(expected_path.read_text())
    expected_types = set(expected.get("expected_types", []))
    expected_exploits = set(expected.get("expected_exploits", []))

    files = walk_project(fixture_dir, scan.extensions, scan.ignored_dirs)
    findings = scan_project(fixture_dir, files, scan.max_workers, scan.max_file_bytes)
    found_types = {finding.type for finding in findings}
    missing = sorted(expected_types - found_types)

    summary = {
        "fixture": fixture_dir.name,
        "expected_types": sorted(expected_types),
        "found_types": sorted(found_types),
        "missing_types": missing,
        "finding_count": len(findings),
    }
    if expected_exploits:
        engine = ExploitEngine(fixture_dir, scan.max_workers, scan.max_file_bytes, scan.ignored_dirs)
        confirmed = {exploit.exploit_type for exploit in engine.run_validation().unmitigated}
        summary["confirmed_exploits"] = sorted(confirmed)
        summary["missing_exploits"] = sorted(expected_exploits - confirmed)
    summary["ok"] = not summary["missing_types"] and not summary.get("missing_exploits")
    return summary


def main() -> int:
    args = parse_args()
    fixtures_root = Path(args.fixtures_root)
    fixtures = sorted([p for p in fixtures_root.iterdir() if p.is_dir()]) if fixtures_root.exists() else []

    if not fixtures:
        print("No fixtures found")
        return 1

    results = [run_fixture(fixture) for fixture in fixtures]
    failing = [r for r in results if not r.get("ok", False) and not r.get("skipped", False)]
    print(json.dumps({"results": results, "failing": len(failing)}, indent=2))

    if args.strict and failing:
        return 2
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
