"""
Agent Context Builder
=====================

Assembles the text handed to each pipeline persona.
"""

from dataclasses import dataclass, field
from typing import Dict, Optional, Sequence

from autopilot.core.models import AutoAgent, AutoSession, AutoUserPrompt, Finding


@dataclass
class AgentContext:
    user_prompt: str = ""
    session_state: str = ""
    previous_outputs: Dict[str, str] = field(default_factory=dict)  # display name -> output
    finding: Optional[Finding] = None
    review_feedback: str = ""
    git_diff: str = ""


def build_user_prompt(session: AutoSession, prompts: Sequence[AutoUserPrompt]) -> str:
    """Initial goal first, then mid-session instructions in the order they were added."""
    parts = []
    if session.initial_prompt:
        parts.append(f"## Project Goal\n{session.initial_prompt}")
    if prompts:
        parts.append("## Additional Instructions")
        for prompt in prompts:
            parts.append(f"- [Cycle {prompt.added_at_cycle}] {prompt.content}")
    return "\n\n".join(parts)


def build_agent_context(agent: AutoAgent, ctx: AgentContext) -> str:
    parts = [agent.system_prompt]

    if ctx.user_prompt:
        parts.append(f"[User Prompt]\n{ctx.user_prompt}")

    if ctx.session_state:
        parts.append(f"[Session State]\n{ctx.session_state}")

    if ctx.finding is not None:
        parts.append(
            "[Issue to Fix]\n"
            f"- Title: {ctx.finding.title}\n"
            f"- Description: {ctx.finding.description}\n"
            f"- File: {ctx.finding.file_path or 'N/A'}"
        )

    for name, output in ctx.previous_outputs.items():
        parts.append(f"[{name} Output]\n{output}")

    if ctx.review_feedback:
        parts.append(f"[Reviewer Feedback]\nPlease address the following issues:\n{ctx.review_feedback}")

    if ctx.git_diff:
        parts.append(f"[Code Changes (git diff)]\n{ctx.git_diff}")

    return "\n\n".join(parts)
