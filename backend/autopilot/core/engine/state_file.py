"""
Session State File
==================

Renders a Markdown summary of the session (recent cycles, open and
resolved findings). The same text is used as project context in prompts
and written to ``SESSION-STATE.md`` in the target project.
"""

import asyncio
from pathlib import Path
from typing import Optional, Sequence

import structlog

from autopilot.core.config import settings
from autopilot.core.models import AutoCycle, AutoSession, Finding, FindingStatus

logger = structlog.get_logger()

RECENT_CYCLES = 10


def render_state(session: AutoSession, cycles: Sequence[AutoCycle], findings: Sequence[Finding]) -> str:
    open_findings = [f for f in findings if f.status in (FindingStatus.OPEN, FindingStatus.IN_PROGRESS)]
    resolved = [f for f in findings if f.status == FindingStatus.RESOLVED]
    given_up = [f for f in findings if f.status == FindingStatus.WONT_FIX]

    lines = [
        "# Session State",
        "",
        f"- Session: {session.id}",
        f"- Target: {session.target_project}",
        f"- Status: {session.status.value}",
        f"- Cycles: {session.total_cycles}",
        f"- Cost: ${session.total_cost_usd:.4f}",
    ]
    if session.initial_prompt:
        lines += ["", "## Goal", session.initial_prompt]

    lines += ["", "## Recent Cycles"]
    recent = list(cycles)[-RECENT_CYCLES:]
    if recent:
        for cycle in recent:
            tests = ""
            if cycle.test_total_count is not None:
                tests = f" tests {cycle.test_pass_count or 0}/{cycle.test_total_count}"
            lines.append(f"- #{cycle.cycle_number} {cycle.phase.value}: {cycle.status.value}{tests}")
    else:
        lines.append("- (none)")

    lines += ["", f"## Open Findings ({len(open_findings)})"]
    lines += [
        f"- [{f.priority.value}] {f.title} ({f.category.value}, attempts {f.retry_count}/{f.max_retries})"
        + (f" in {f.file_path}" if f.file_path else "")
        for f in open_findings
    ] or ["- (none)"]

    lines += ["", f"## Resolved Findings ({len(resolved)})"]
    lines += [f"- {f.title}" for f in resolved] or ["- (none)"]

    if given_up:
        lines += ["", f"## Won't Fix ({len(given_up)})"]
        lines += [f"- {f.title}" for f in given_up]

    return "\n".join(lines) + "\n"


class StateFile:
    """Writes the state summary inside the target project (best effort)."""

    def __init__(self, project_path: str, file_name: Optional[str] = None):
        self.path = Path(project_path) / (file_name or settings.STATE_FILE_NAME)

    async def write(self, content: str) -> bool:
        try:
            await asyncio.to_thread(self.path.write_text, content, encoding="utf-8")
            return True
        except OSError as e:
            logger.warning("Could not write session state file", path=str(self.path), error=str(e))
            return False
