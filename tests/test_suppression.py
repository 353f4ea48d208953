from datetime import date
from pathlib import Path

import pytest

from devsentinel.models import Finding
from devsentinel.suppression import SuppressionRule, apply_suppressions, load_suppressions


def _findings() -> list[Finding]:
    return [
        Finding(type="Potential SQL Injection", severity="high", file="app/a.js", line=3, snippet="x"),
        Finding(type="Potential XSS", severity="medium", file="app/b.js", line=7, snippet="y"),
    ]


def test_apply_suppressions_by_type():
    rules = [
        SuppressionRule(
            id=None,
            finding_type="Potential XSS",
            path_prefix=None,
            expires_on=date(2099, 1, 1),
            reason="accepted risk",
        )
    ]
    kept, suppressed = apply_suppressions(_findings(), rules, today=date(2026, 2, 23))
    assert len(kept) == 1
    assert kept[0].type == "Potential SQL Injection"
    assert len(suppressed) == 1
    assert suppressed[0]["file"] == "app/b.js"
    assert suppressed[0]["reason"] == "accepted risk"


def test_apply_suppressions_by_id_and_expiry():
    findings = _findings()
    target = findings[0]
    rules = [SuppressionRule(id=target.id, finding_type=None, path_prefix=None, expires_on=None, reason="fp")]
    kept, suppressed = apply_suppressions(findings, rules, today=date(2026, 2, 23))
    assert [f.id for f in kept] == [findings[1].id]
    assert suppressed[0]["id"] == target.id

    expired = [SuppressionRule(id=None, finding_type=None, path_prefix="app/", expires_on=date(2020, 1, 1), reason="old")]
    kept, suppressed = apply_suppressions(findings, expired, today=date(2026, 2, 23))
    assert len(kept) == 2
    assert suppressed == []


def test_rule_without_criteria_matches_nothing():
    rules = [SuppressionRule(id=None, finding_type=None, path_prefix=None, expires_on=None, reason="blank")]
    kept, suppressed = apply_suppressions(_findings(), rules)
    assert len(kept) == 2
    assert suppressed == []


def test_load_suppressions(tmp_path: Path):
    path = tmp_path / "devsentinel.ignore.yaml"
    path.write_text(
        "suppressions:\n"
        "  - finding_type: Potential XSS\n"
        "    path_prefix: legacy/\n"
        "    expires_on: 2099-01-01\n"
        "    reason: scheduled rewrite\n"
    )
    rules = load_suppressions(path)
    assert len(rules) == 1
    assert rules[0].finding_type == "Potential XSS"
    assert rules[0].expires_on == date(2099, 1, 1)
    assert load_suppressions(tmp_path / "missing.yaml") == []


def test_load_suppressions_rejects_non_mapping(tmp_path: Path):
    path = tmp_path / "bad.yaml"
    path.write_text("- just\n- a list\n")
    with pytest.raises(ValueError):
        load_suppressions(path)
