"""
Autopilot - Database Models
===========================

SQLAlchemy models for autonomous sessions, cycles, findings and the
agent personas that make up a pipeline cycle.
"""

import enum
from datetime import datetime, timezone
from typing import Any, Optional
from uuid import uuid4

from sqlalchemy import (
    JSON,
    Boolean,
    DateTime,
    Enum,
    Float,
    ForeignKey,
    Integer,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import Mapped, mapped_column

from autopilot.core.database import Base


def _uuid() -> str:
    return str(uuid4())


def _now() -> datetime:
    return datetime.now(timezone.utc)


# ==========================================================================
# Enums
# ==========================================================================

class SessionStatus(str, enum.Enum):
    """Lifecycle of an autonomous session."""
    RUNNING = "running"
    PAUSED = "paused"
    WAITING_FOR_LIMIT = "waiting_for_limit"
    COMPLETED = "completed"
    STOPPED = "stopped"


class CyclePhase(str, enum.Enum):
    """Kind of work a cycle performs."""
    DISCOVERY = "discovery"
    FIX = "fix"
    TEST = "test"
    IMPROVE = "improve"
    REVIEW = "review"
    PIPELINE = "pipeline"


class CycleStatus(str, enum.Enum):
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    RATE_LIMITED = "rate_limited"
    ROLLED_BACK = "rolled_back"


class FindingCategory(str, enum.Enum):
    BUG = "bug"
    IMPROVEMENT = "improvement"
    IDEA = "idea"
    TEST_FAILURE = "test_failure"
    PERFORMANCE = "performance"
    ACCESSIBILITY = "accessibility"
    SECURITY = "security"


class FindingPriority(str, enum.Enum):
    """P0 is the most urgent."""
    P0 = "P0"
    P1 = "P1"
    P2 = "P2"
    P3 = "P3"


class FindingStatus(str, enum.Enum):
    OPEN = "open"
    IN_PROGRESS = "in_progress"
    RESOLVED = "resolved"
    WONT_FIX = "wont_fix"
    DUPLICATE = "duplicate"


class AgentRunStatus(str, enum.Enum):
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    SKIPPED = "skipped"


# ==========================================================================
# Mixins
# ==========================================================================

class TimestampMixin:
    """Mixin that adds created_at and updated_at timestamps."""

    # Python-side defaults keep sub-second ordering stable on SQLite
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=_now,
        nullable=False,
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=_now,
        onupdate=_now,
        nullable=False,
    )


# ==========================================================================
# Sessions & Cycles
# ==========================================================================

class AutoSession(Base, TimestampMixin):
    """
    One autonomous run against a target project directory.

    Retained after completion for history.
    """

    __tablename__ = "auto_sessions"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    target_project: Mapped[str] = mapped_column(String(1024), nullable=False)
    status: Mapped[SessionStatus] = mapped_column(
        Enum(SessionStatus),
        default=SessionStatus.RUNNING,
        nullable=False,
        index=True,
    )
    total_cycles: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    total_cost_usd: Mapped[float] = mapped_column(Float, default=0.0, nullable=False)
    initial_prompt: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    config: Mapped[Optional[dict[str, Any]]] = mapped_column(JSON, nullable=True)

    def __repr__(self) -> str:
        return f"<AutoSession {self.id} {self.status.value}>"


class AutoCycle(Base, TimestampMixin):
    """One phase executed once within a session."""

    __tablename__ = "auto_cycles"
    __table_args__ = (
        UniqueConstraint("session_id", "cycle_number", name="uq_cycle_session_number"),
    )

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    session_id: Mapped[str] = mapped_column(
        String(36),
        ForeignKey("auto_sessions.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    cycle_number: Mapped[int] = mapped_column(Integer, nullable=False)
    phase: Mapped[CyclePhase] = mapped_column(Enum(CyclePhase), nullable=False)
    status: Mapped[CycleStatus] = mapped_column(
        Enum(CycleStatus),
        default=CycleStatus.RUNNING,
        nullable=False,
        index=True,
    )
    finding_id: Mapped[Optional[str]] = mapped_column(
        String(36),
        ForeignKey("auto_findings.id", ondelete="SET NULL"),
        nullable=True,
    )
    prompt_used: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    output: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    cost_usd: Mapped[Optional[float]] = mapped_column(Float, nullable=True)
    duration_ms: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    git_checkpoint: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)

    # Test results
    test_pass_count: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    test_fail_count: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    test_total_count: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)

    started_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_now, nullable=False)
    completed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)

    def __repr__(self) -> str:
        return f"<AutoCycle #{self.cycle_number} {self.phase.value} {self.status.value}>"


# ==========================================================================
# Findings
# ==========================================================================

class Finding(Base, TimestampMixin):
    """A unit of work discovered by analysis, review or testing."""

    __tablename__ = "auto_findings"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    session_id: Mapped[str] = mapped_column(
        String(36),
        ForeignKey("auto_sessions.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    category: Mapped[FindingCategory] = mapped_column(Enum(FindingCategory), nullable=False)
    priority: Mapped[FindingPriority] = mapped_column(
        Enum(FindingPriority),
        default=FindingPriority.P2,
        nullable=False,
        index=True,
    )
    title: Mapped[str] = mapped_column(String(500), nullable=False)
    description: Mapped[str] = mapped_column(Text, default="", nullable=False)
    file_path: Mapped[Optional[str]] = mapped_column(String(1024), nullable=True)
    status: Mapped[FindingStatus] = mapped_column(
        Enum(FindingStatus),
        default=FindingStatus.OPEN,
        nullable=False,
        index=True,
    )
    retry_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    max_retries: Mapped[int] = mapped_column(Integer, default=3, nullable=False)
    resolved_by_cycle_id: Mapped[Optional[str]] = mapped_column(String(36), nullable=True)

    @property
    def has_retries_left(self) -> bool:
        # A failure at the ceiling retires the finding, so the ceiling itself is still attemptable
        return self.retry_count <= self.max_retries

    def __repr__(self) -> str:
        return f"<Finding {self.priority.value} {self.title[:50]}>"


# ==========================================================================
# Agents
# ==========================================================================

class AutoAgent(Base, TimestampMixin):
    """A pipeline persona with its own instruction template."""

    __tablename__ = "auto_agents"

    id: Mapped[str] = mapped_column(String(64), primary_key=True, default=_uuid)
    name: Mapped[str] = mapped_column(String(100), unique=True, nullable=False)
    display_name: Mapped[str] = mapped_column(String(255), nullable=False)
    role_description: Mapped[str] = mapped_column(Text, default="", nullable=False)
    system_prompt: Mapped[str] = mapped_column(Text, nullable=False)
    pipeline_order: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    enabled: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    is_builtin: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)

    def __repr__(self) -> str:
        return f"<AutoAgent {self.name}>"


class AgentRun(Base, TimestampMixin):
    """One persona invocation within one cycle."""

    __tablename__ = "auto_agent_runs"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    cycle_id: Mapped[str] = mapped_column(
        String(36),
        ForeignKey("auto_cycles.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    agent_id: Mapped[str] = mapped_column(String(64), nullable=False)
    agent_name: Mapped[str] = mapped_column(String(255), nullable=False)
    iteration: Mapped[int] = mapped_column(Integer, default=1, nullable=False)
    status: Mapped[AgentRunStatus] = mapped_column(
        Enum(AgentRunStatus),
        default=AgentRunStatus.RUNNING,
        nullable=False,
    )
    prompt: Mapped[str] = mapped_column(Text, default="", nullable=False)
    output: Mapped[str] = mapped_column(Text, default="", nullable=False)
    cost_usd: Mapped[Optional[float]] = mapped_column(Float, nullable=True)
    duration_ms: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    started_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_now, nullable=False)
    completed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)

    def __repr__(self) -> str:
        return f"<AgentRun {self.agent_name} #{self.iteration} {self.status.value}>"


# ==========================================================================
# User Prompts & Settings
# ==========================================================================

class AutoUserPrompt(Base, TimestampMixin):
    """Instruction added by the user while a session is running."""

    __tablename__ = "auto_user_prompts"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    session_id: Mapped[str] = mapped_column(
        String(36),
        ForeignKey("auto_sessions.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    content: Mapped[str] = mapped_column(Text, nullable=False)
    added_at_cycle: Mapped[int] = mapped_column(Integer, default=0, nullable=False)


class AutoSetting(Base, TimestampMixin):
    """Key/value engine setting."""

    __tablename__ = "auto_settings"

    key: Mapped[str] = mapped_column(String(100), primary_key=True)
    value: Mapped[str] = mapped_column(Text, nullable=False)

    def __repr__(self) -> str:
        return f"<AutoSetting {self.key}={self.value}>"
