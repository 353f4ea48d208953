from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
import os
from pathlib import Path
from typing import Any

import yaml


class Provider(str, Enum):
    OPENROUTER = "openrouter"
    GEMINI = "gemini"
    GROQ = "groq"
    TOGETHER = "together"
    AZURE = "azure"


API_KEY_ENV = {
    Provider.OPENROUTER: "OPENROUTER_API_KEY",
    Provider.GEMINI: "GEMINI_API_KEY",
    Provider.GROQ: "GROQ_API_KEY",
    Provider.TOGETHER: "TOGETHER_API_KEY",
    Provider.AZURE: "AZURE_OPENAI_API_KEY",
}

DEFAULT_EXTENSIONS = [
    ".js", ".jsx", ".ts", ".tsx", ".mjs", ".cjs",
    ".py", ".php", ".rb", ".java", ".go", ".cs",
    ".c", ".cpp", ".h", ".html", ".vue",
]
DEFAULT_IGNORED_DIRS = [
    "node_modules", ".git", "dist", "build", ".next", "coverage",
    ".venv", "venv", "__pycache__", ".tox", "vendor",
]
SEVERITIES = ("low", "medium", "high")


@dataclass
class ScanConfig:
    extensions: list[str] = field(default_factory=lambda: list(DEFAULT_EXTENSIONS))
    ignored_dirs: list[str] = field(default_factory=lambda: list(DEFAULT_IGNORED_DIRS))
    max_file_bytes: int = 1_000_000
    max_workers: int = 8


@dataclass
class PipelineConfig:
    apply_patches: bool = True
    validate: bool = True
    red_team: bool = True
    revalidate: bool = True
    min_patch_severity: str = "low"


@dataclass
class ValidationConfig:
    install_dependencies: bool = True
    install_timeout_seconds: int = 60
    test_timeout_seconds: int = 120
    build_timeout_seconds: int = 300
    test_command: str | None = None
    build_command: str | None = None


@dataclass
class LLMConfig:
    provider: Provider = Provider.OPENROUTER
    model: str = "deepseek/deepseek-chat"
    timeout_ms: int = 30_000
    max_tokens: int = 2048
    temperature: float = 0.2
    api_key: str | None = None
    endpoint: str | None = None
    deployment: str | None = None
    max_concurrency: int = 4
    classify_lines: bool = False
    generate_fixes: bool = False
    max_classified_lines: int = 200

    @property
    def timeout_seconds(self) -> float:
        return self.timeout_ms / 1000.0


@dataclass
class AuditorConfig:
    model: str = "gpt-4.1"
    timeout_seconds: int = 180


@dataclass
class AppConfig:
    profile_name: str = "default"
    scan: ScanConfig = field(default_factory=ScanConfig)
    pipeline: PipelineConfig = field(default_factory=PipelineConfig)
    validation: ValidationConfig = field(default_factory=ValidationConfig)
    llm: LLMConfig = field(default_factory=LLMConfig)
    auditor: AuditorConfig = field(default_factory=AuditorConfig)


DEFAULT_CONFIG_PATH = Path("devsentinel.yaml")


def _as_list(value: Any) -> list[str]:
    if value is None:
        return []
    if isinstance(value, list):
        return [str(v) for v in value]
    return [str(value)]


def _optional_str(value: Any) -> str | None:
    if value is None:
        return None
    text = str(value).strip()
    return text or None


def _normalize_extension(value: str) -> str:
    value = value.strip().lower()
    return value if value.startswith(".") else f".{value}"


def _parse_provider(value: Any) -> Provider:
    try:
        return Provider(str(value).strip().lower())
    except ValueError:
        choices = ", ".join(p.value for p in Provider)
        raise ValueError(f"Unknown llm.provider '{value}' (expected one of: {choices})") from None


def _positive(name: str, value: int | float) -> None:
    if value <= 0:
        raise ValueError(f"{name} must be > 0")


def _load_scan(raw: dict[str, Any]) -> ScanConfig:
    defaults = ScanConfig()
    scan = ScanConfig(
        extensions=[_normalize_extension(v) for v in _as_list(raw.get("extensions", defaults.extensions))],
        ignored_dirs=_as_list(raw.get("ignored_dirs", defaults.ignored_dirs)),
        max_file_bytes=int(raw.get("max_file_bytes", defaults.max_file_bytes)),
        max_workers=int(raw.get("max_workers", defaults.max_workers)),
    )
    if not scan.extensions:
        raise ValueError("scan.extensions must not be empty")
    _positive("scan.max_file_bytes", scan.max_file_bytes)
    _positive("scan.max_workers", scan.max_workers)
    return scan


def _load_pipeline(raw: dict[str, Any]) -> PipelineConfig:
    defaults = PipelineConfig()
    pipeline = PipelineConfig(
        apply_patches=bool(raw.get("apply_patches", defaults.apply_patches)),
        validate=bool(raw.get("validate", defaults.validate)),
        red_team=bool(raw.get("red_team", defaults.red_team)),
        revalidate=bool(raw.get("revalidate", defaults.revalidate)),
        min_patch_severity=str(raw.get("min_patch_severity", defaults.min_patch_severity)).lower(),
    )
    if pipeline.min_patch_severity not in SEVERITIES:
        raise ValueError(f"pipeline.min_patch_severity must be one of {', '.join(SEVERITIES)}")
    return pipeline


def _load_validation(raw: dict[str, Any]) -> ValidationConfig:
    defaults = ValidationConfig()
    validation = ValidationConfig(
        install_dependencies=bool(raw.get("install_dependencies", defaults.install_dependencies)),
        install_timeout_seconds=int(raw.get("install_timeout_seconds", defaults.install_timeout_seconds)),
        test_timeout_seconds=int(raw.get("test_timeout_seconds", defaults.test_timeout_seconds)),
        build_timeout_seconds=int(raw.get("build_timeout_seconds", defaults.build_timeout_seconds)),
        test_command=_optional_str(raw.get("test_command")),
        build_command=_optional_str(raw.get("build_command")),
    )
    _positive("validation.install_timeout_seconds", validation.install_timeout_seconds)
    _positive("validation.test_timeout_seconds", validation.test_timeout_seconds)
    _positive("validation.build_timeout_seconds", validation.build_timeout_seconds)
    return validation


def _load_llm(raw: dict[str, Any]) -> LLMConfig:
    defaults = LLMConfig()
    provider = _parse_provider(raw.get("provider", defaults.provider.value))
    llm = LLMConfig(
        provider=provider,
        model=os.getenv("DEVSENTINEL_MODEL", str(raw.get("model", defaults.model))),
        timeout_ms=int(raw.get("timeout_ms", defaults.timeout_ms)),
        max_tokens=int(raw.get("max_tokens", defaults.max_tokens)),
        temperature=float(raw.get("temperature", defaults.temperature)),
        api_key=_optional_str(raw.get("api_key")) or _optional_str(os.getenv(API_KEY_ENV[provider])),
        endpoint=_optional_str(raw.get("endpoint")),
        deployment=_optional_str(raw.get("deployment")),
        max_concurrency=int(raw.get("max_concurrency", defaults.max_concurrency)),
        classify_lines=bool(raw.get("classify_lines", defaults.classify_lines)),
        generate_fixes=bool(raw.get("generate_fixes", defaults.generate_fixes)),
        max_classified_lines=int(raw.get("max_classified_lines", defaults.max_classified_lines)),
    )
    if provider is Provider.AZURE:
        llm.endpoint = llm.endpoint or _optional_str(os.getenv("AZURE_OPENAI_ENDPOINT"))
        llm.deployment = llm.deployment or _optional_str(os.getenv("AZURE_OPENAI_DEPLOYMENT_NAME"))
    _positive("llm.timeout_ms", llm.timeout_ms)
    _positive("llm.max_tokens", llm.max_tokens)
    _positive("llm.max_concurrency", llm.max_concurrency)
    _positive("llm.max_classified_lines", llm.max_classified_lines)
    return llm


def _load_auditor(raw: dict[str, Any]) -> AuditorConfig:
    defaults = AuditorConfig()
    auditor = AuditorConfig(
        model=os.getenv("OPENAI_MODEL", str(raw.get("model", defaults.model))),
        timeout_seconds=int(raw.get("timeout_seconds", defaults.timeout_seconds)),
    )
    _positive("auditor.timeout_seconds", auditor.timeout_seconds)
    return auditor


def config_from_dict(raw: dict[str, Any]) -> AppConfig:
    return AppConfig(
        profile_name=str(raw.get("profile_name", "custom")),
        scan=_load_scan(raw.get("scan") or {}),
        pipeline=_load_pipeline(raw.get("pipeline") or {}),
        validation=_load_validation(raw.get("validation") or {}),
        llm=_load_llm(raw.get("llm") or {}),
        auditor=_load_auditor(raw.get("auditor") or {}),
    )


def load_config(path: str | Path | None = None) -> AppConfig:
    config_path = Path(path) if path else DEFAULT_CONFIG_PATH
    if not config_path.exists():
        if path:
            raise FileNotFoundError(f"Config file not found: {config_path}")
        return config_from_dict({"profile_name": "default"})
    raw = yaml.safe_load(config_path.read_text()) or {}
    if not isinstance(raw, dict):
        raise ValueError(f"Config file {config_path} must contain a mapping")
    return config_from_dict(raw)
