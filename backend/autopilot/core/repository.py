"""
Autopilot - Repository
======================

Query helpers over the autopilot tables. Callers own the ``AsyncSession``
and its transaction; helpers only flush so generated ids are available.
"""

from typing import Iterable, List, Optional, Sequence

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from autopilot.core.models import (
    AgentRun,
    AutoAgent,
    AutoCycle,
    AutoSession,
    AutoSetting,
    AutoUserPrompt,
    CyclePhase,
    Finding,
    FindingStatus,
)
from autopilot.core.schemas import AutoSettings


class BuiltinAgentError(ValueError):
    """Built-in agents cannot be deleted."""


# ==========================================================================
# Settings
# ==========================================================================

async def get_auto_settings(db: AsyncSession) -> AutoSettings:
    rows = (await db.execute(select(AutoSetting))).scalars().all()
    return AutoSettings.model_validate({row.key: row.value for row in rows})


async def upsert_setting(db: AsyncSession, key: str, value: str) -> AutoSetting:
    setting = await db.get(AutoSetting, key)
    if setting is None:
        setting = AutoSetting(key=key, value=value)
        db.add(setting)
    else:
        setting.value = value
    await db.flush()
    return setting


async def update_auto_settings(db: AsyncSession, **values) -> AutoSettings:
    """Validate the merged settings, then persist the changed keys."""
    merged = (await get_auto_settings(db)).model_copy(update=values)
    settings = AutoSettings.model_validate(merged.model_dump())
    rows = settings.to_rows()
    for key in values:
        await upsert_setting(db, key, rows[key])
    return settings


async def seed_default_settings(db: AsyncSession) -> int:
    """Insert defaults for keys that have never been set."""
    existing = set((await db.execute(select(AutoSetting.key))).scalars().all())
    created = 0
    for key, value in AutoSettings().to_rows().items():
        if key not in existing:
            db.add(AutoSetting(key=key, value=value))
            created += 1
    await db.flush()
    return created


# ==========================================================================
# Sessions
# ==========================================================================

async def create_session(
    db: AsyncSession,
    target_project: str,
    initial_prompt: Optional[str] = None,
    config: Optional[dict] = None,
) -> AutoSession:
    session = AutoSession(
        target_project=target_project,
        initial_prompt=initial_prompt,
        config=config,
    )
    db.add(session)
    await db.flush()
    return session


async def get_session(db: AsyncSession, session_id: str) -> Optional[AutoSession]:
    return await db.get(AutoSession, session_id)


async def list_sessions(db: AsyncSession, limit: int = 50) -> Sequence[AutoSession]:
    result = await db.execute(
        select(AutoSession).order_by(AutoSession.created_at.desc()).limit(limit)
    )
    return result.scalars().all()


# ==========================================================================
# Cycles
# ==========================================================================

async def create_cycle(
    db: AsyncSession,
    session_id: str,
    cycle_number: int,
    phase: CyclePhase,
    finding_id: Optional[str] = None,
    prompt_used: Optional[str] = None,
    git_checkpoint: Optional[str] = None,
) -> AutoCycle:
    cycle = AutoCycle(
        session_id=session_id,
        cycle_number=cycle_number,
        phase=phase,
        finding_id=finding_id,
        prompt_used=prompt_used,
        git_checkpoint=git_checkpoint,
    )
    db.add(cycle)
    await db.flush()
    return cycle


async def get_cycle(db: AsyncSession, cycle_id: str) -> Optional[AutoCycle]:
    return await db.get(AutoCycle, cycle_id)


async def list_cycles(db: AsyncSession, session_id: str) -> Sequence[AutoCycle]:
    result = await db.execute(
        select(AutoCycle)
        .where(AutoCycle.session_id == session_id)
        .order_by(AutoCycle.cycle_number)
    )
    return result.scalars().all()


async def sum_cycle_costs(db: AsyncSession, session_id: str) -> float:
    result = await db.execute(
        select(func.coalesce(func.sum(AutoCycle.cost_usd), 0.0))
        .where(AutoCycle.session_id == session_id)
    )
    return float(result.scalar_one())


# ==========================================================================
# Findings
# ==========================================================================

async def create_finding(db: AsyncSession, session_id: str, max_retries: int = 3, **fields) -> Finding:
    finding = Finding(session_id=session_id, max_retries=max_retries, **fields)
    db.add(finding)
    await db.flush()
    return finding


async def get_finding(db: AsyncSession, finding_id: str) -> Optional[Finding]:
    return await db.get(Finding, finding_id)


async def list_findings(
    db: AsyncSession,
    session_id: Optional[str] = None,
    statuses: Optional[Iterable[FindingStatus]] = None,
) -> List[Finding]:
    """Findings ordered by priority (P0 first), then age (oldest first)."""
    query = select(Finding)
    if session_id is not None:
        query = query.where(Finding.session_id == session_id)
    if statuses is not None:
        query = query.where(Finding.status.in_(list(statuses)))
    query = query.order_by(Finding.priority, Finding.created_at, Finding.id)
    return list((await db.execute(query)).scalars().all())


async def list_open_findings(db: AsyncSession, session_id: Optional[str] = None) -> List[Finding]:
    return await list_findings(db, session_id, statuses=[FindingStatus.OPEN])


# ==========================================================================
# Agents
# ==========================================================================

async def list_agents(db: AsyncSession, enabled_only: bool = False) -> Sequence[AutoAgent]:
    query = select(AutoAgent)
    if enabled_only:
        query = query.where(AutoAgent.enabled.is_(True))
    query = query.order_by(AutoAgent.pipeline_order, AutoAgent.name)
    return (await db.execute(query)).scalars().all()


async def delete_agent(db: AsyncSession, agent_id: str) -> bool:
    agent = await db.get(AutoAgent, agent_id)
    if agent is None:
        return False
    if agent.is_builtin:
        raise BuiltinAgentError(f"Built-in agent '{agent.name}' cannot be deleted")
    await db.delete(agent)
    await db.flush()
    return True


async def create_agent_run(
    db: AsyncSession,
    cycle_id: str,
    agent: AutoAgent,
    iteration: int,
    prompt: str,
) -> AgentRun:
    run = AgentRun(
        cycle_id=cycle_id,
        agent_id=agent.id,
        agent_name=agent.display_name,
        iteration=iteration,
        prompt=prompt,
    )
    db.add(run)
    await db.flush()
    return run


async def list_agent_runs(db: AsyncSession, cycle_id: str) -> Sequence[AgentRun]:
    result = await db.execute(
        select(AgentRun).where(AgentRun.cycle_id == cycle_id).order_by(AgentRun.started_at)
    )
    return result.scalars().all()


# ==========================================================================
# User Prompts
# ==========================================================================

async def add_user_prompt(db: AsyncSession, session_id: str, content: str, added_at_cycle: int) -> AutoUserPrompt:
    prompt = AutoUserPrompt(session_id=session_id, content=content, added_at_cycle=added_at_cycle)
    db.add(prompt)
    await db.flush()
    return prompt


async def list_user_prompts(db: AsyncSession, session_id: str) -> Sequence[AutoUserPrompt]:
    result = await db.execute(
        select(AutoUserPrompt)
        .where(AutoUserPrompt.session_id == session_id)
        .order_by(AutoUserPrompt.created_at)
    )
    return result.scalars().all()
