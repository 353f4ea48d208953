from __future__ import annotations

from dataclasses import dataclass
from datetime import date
import logging
from pathlib import Path
from typing import Any

import yaml

from devsentinel.models import Finding

LOGGER = logging.getLogger("devsentinel")


@dataclass
class SuppressionRule:
    id: str | None
    finding_type: str | None
    path_prefix: str | None
    expires_on: date | None
    reason: str


def _parse_date(value: Any) -> date | None:
    if not value:
        return None
    if isinstance(value, date):
        return value
    try:
        return date.fromisoformat(str(value))
    except ValueError:
        LOGGER.warning("Ignoring invalid suppression expiry '%s'", value)
        return None


def _optional(item: dict[str, Any], key: str) -> str | None:
    value = item.get(key)
    return str(value) if value is not None else None


def load_suppressions(path: str | Path | None) -> list[SuppressionRule]:
    if not path:
        return []
    p = Path(path)
    if not p.exists():
        return []
    raw = yaml.safe_load(p.read_text()) or {}
    if not isinstance(raw, dict):
        raise ValueError(f"Suppressions file {p} must contain a mapping")
    rules: list[SuppressionRule] = []
    for item in raw.get("suppressions") or []:
        if not isinstance(item, dict):
            raise ValueError(f"Suppression entries in {p} must be mappings")
        rules.append(
            SuppressionRule(
                id=_optional(item, "id"),
                finding_type=_optional(item, "finding_type"),
                path_prefix=_optional(item, "path_prefix"),
                expires_on=_parse_date(item.get("expires_on")),
                reason=str(item.get("reason", "no reason provided")),
            )
        )
    return rules


def _rule_matches(rule: SuppressionRule, finding: Finding, today: date) -> bool:
    if rule.expires_on and today > rule.expires_on:
        return False
    if not (rule.id or rule.finding_type or rule.path_prefix):
        return False
    if rule.id and rule.id != finding.id:
        return False
    if rule.finding_type and rule.finding_type != finding.type:
        return False
    if rule.path_prefix and not finding.file.startswith(rule.path_prefix):
        return False
    return True


def apply_suppressions(
    findings: list[Finding],
    rules: list[SuppressionRule],
    today: date | None = None,
) -> tuple[list[Finding], list[dict[str, str | None]]]:
    if not rules:
        return findings, []

    current_day = today or date.today()
    kept: list[Finding] = []
    suppressed: list[dict[str, str | None]] = []

    for finding in findings:
        matched_rule = next((rule for rule in rules if _rule_matches(rule, finding, current_day)), None)
        if matched_rule is None:
            kept.append(finding)
            continue
        suppressed.append(
            {
                "id": finding.id,
                "type": finding.type,
                "file": finding.file,
                "reason": matched_rule.reason,
            }
        )

    return kept, suppressed
