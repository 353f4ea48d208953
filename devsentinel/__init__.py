"""Scan, patch, validate and red-team pipeline for local projects."""

__all__ = [
    "config",
    "errors",
    "concurrency",
    "models",
    "walker",
    "detector",
    "classifier",
    "llm",
    "prompts",
    "generator",
    "applier",
    "backup",
    "validation",
    "redteam",
    "auditor",
    "orchestrator",
    "selection",
    "suppression",
    "reporting",
    "telemetry",
    "benchmark",
]
