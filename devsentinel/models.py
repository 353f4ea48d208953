from __future__ import annotations

import hashlib
from typing import Literal

from pydantic import BaseModel, ConfigDict, Field, computed_field

Severity = Literal["low", "medium", "high"]
FindingSource = Literal["rule", "classifier", "red-team"]
PatchOrigin = Literal["rule", "llm", "red-team"]
PatchMode = Literal["replace", "prepend"]


def finding_fingerprint(finding_type: str, file: str, line: int, snippet: str) -> str:
    raw = "|".join([finding_type, file, str(line), snippet])
    return hashlib.sha256(raw.encode("utf-8")).hexdigest()[:16]


class Finding(BaseModel):
    model_config = ConfigDict(frozen=True)

    type: str
    severity: Severity
    file: str
    line: int = Field(ge=0, description="1-based line number, 0 when not line-scoped")
    snippet: str = ""
    description: str | None = None
    recommendation: str | None = None
    source: FindingSource = "rule"

    @computed_field  # type: ignore[prop-decorator]
    @property
    def id(self) -> str:
        return finding_fingerprint(self.type, self.file, self.line, self.snippet)


class Patch(BaseModel):
    model_config = ConfigDict(frozen=True)

    file: str = ""
    change: str = ""
    before: str | None = None
    after: str | None = None
    finding_ids: list[str] = Field(default_factory=list)
    origin: PatchOrigin = "rule"
    mode: PatchMode = "replace"

    @property
    def replaces_whole_file(self) -> bool:
        return self.mode == "replace" and not self.before


class PatchOutcome(BaseModel):
    file: str
    status: Literal["created", "applied", "error"]
    error: str | None = None


class ApplyResult(BaseModel):
    success: bool
    applied: int
    errors: list[str] = Field(default_factory=list)
    outcomes: list[PatchOutcome] = Field(default_factory=list)


class PatchStats(BaseModel):
    applied: int = 0
    errors: list[str] = Field(default_factory=list)


class ExploitResult(BaseModel):
    model_config = ConfigDict(frozen=True, populate_by_name=True)

    success: bool
    exploit_type: str = Field(alias="exploitType")
    target: str
    payload: str
    output: str
    severity: Severity


class RedTeamValidationResult(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    exploits: list[ExploitResult] = Field(default_factory=list)
    is_secure: bool = Field(alias="isSecure")
    report: str

    @property
    def unmitigated(self) -> list[ExploitResult]:
        return [exploit for exploit in self.exploits if exploit.success]


class LineClassification(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    is_vulnerable: bool = Field(alias="isVulnerable")
    type: str = ""
    severity: Severity = "medium"
    description: str | None = None
    recommendation: str | None = None


class OrchestratorResult(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    findings: list[Finding] = Field(default_factory=list)
    patches: list[Patch] = Field(default_factory=list)
    generated_patches: list[Patch] = Field(default_factory=list, alias="generatedPatches")
    discarded_patches: list[Patch] = Field(default_factory=list, alias="discardedPatches")
    patch_stats: PatchStats = Field(default_factory=PatchStats, alias="patchStats")
    validation_state: str | None = Field(default=None, alias="validationState")
    red_team: RedTeamValidationResult | None = Field(default=None, alias="redTeam")
    revalidation: RedTeamValidationResult | None = None
    supplemental_patches: list[Patch] = Field(default_factory=list, alias="supplementalPatches")
    supplemental_validation_state: str | None = Field(default=None, alias="supplementalValidationState")
    suppressed: list[dict[str, str | None]] = Field(default_factory=list)
    scanned_files: list[str] = Field(default_factory=list, alias="scannedFiles")
    stage_timing: dict[str, float] = Field(default_factory=dict, alias="stageTiming")
    errors: list[str] = Field(default_factory=list)


class AuditVulnerability(BaseModel):
    type: str
    severity: Severity = "medium"
    description: str
    location: str
    exploit_details: str | None = None


class AuditOutput(BaseModel):
    vulnerabilities: list[AuditVulnerability] = Field(default_factory=list)
    recommendations: list[str] = Field(default_factory=list)
