from __future__ import annotations

import asyncio
import json
import logging
from pathlib import Path

from agents import Agent, Runner, function_tool

from devsentinel.models import AuditOutput, RedTeamValidationResult
from devsentinel.prompts import AUDITOR_SYSTEM, auditor_user_prompt
from devsentinel.redteam import ExploitEngine

LOGGER = logging.getLogger("devsentinel")

MAX_TOOL_EXPLOITS = 50


def summarize_for_agent(result: RedTeamValidationResult) -> str:
    successful = result.unmitigated
    payload = {
        "isSecure": result.is_secure,
        "attempted": len(result.exploits),
        "successful": len(successful),
        "exploits": [e.model_dump(by_alias=True) for e in successful[:MAX_TOOL_EXPLOITS]],
    }
    return json.dumps(payload)


def run_tool(engine: ExploitEngine, scan_type: str) -> str:
    try:
        return summarize_for_agent(engine.targeted_scan(scan_type))
    except ValueError as exc:
        return json.dumps({"error": str(exc)})


def build_auditor_tools(root: str | Path) -> list:
    engine = ExploitEngine(root)

    @function_tool
    def run_red_team_validation() -> str:
        """Run every red-team check (SQL injection, XSS, RCE, secrets, deserialization) against the project."""
        return run_tool(engine, "all")

    @function_tool
    def test_sql_injection() -> str:
        """Look for SQL built from untrusted input and report which sites are exploitable."""
        return run_tool(engine, "sqli")

    @function_tool
    def test_xss() -> str:
        """Look for markup written into the DOM from untrusted input."""
        return run_tool(engine, "xss")

    @function_tool
    def test_rce() -> str:
        """Look for process execution that concatenates untrusted input."""
        return run_tool(engine, "rce")

    return [run_red_team_validation, test_sql_injection, test_xss, test_rce]


def _auditor_agent(root: str | Path, model: str) -> Agent:
    return Agent(
        name="SecurityAuditor",
        instructions=AUDITOR_SYSTEM,
        model=model,
        tools=build_auditor_tools(root),
        output_type=AuditOutput,
    )


async def run_security_audit(
    root: str | Path,
    model: str,
    timeout_seconds: int,
    code_context: str | None = None,
) -> AuditOutput:
    agent = _auditor_agent(root, model)
    prompt = auditor_user_prompt(str(root), code_context)
    try:
        result = await asyncio.wait_for(Runner.run(agent, prompt), timeout=timeout_seconds)
    except asyncio.TimeoutError:
        LOGGER.warning("Security audit timed out after %ss", timeout_seconds)
        return AuditOutput(recommendations=[f"Security audit failed: timed out after {timeout_seconds}s"])
    except Exception as exc:
        LOGGER.warning("Security audit failed: %s", exc)
        return AuditOutput(recommendations=[f"Security audit failed: {exc}"])
    output = result.final_output
    if isinstance(output, AuditOutput):
        return output
    return AuditOutput(recommendations=[f"Security audit failed: unexpected output {output!r}"])
