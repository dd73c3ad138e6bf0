"""
Autopilot - Event System
========================

Events emitted by the cycle engine for subscribers (WebSocket clients,
tests, loggers). Every event is a type tag, a free-form payload and an
ISO timestamp.
"""

import json
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Optional


def _timestamp() -> str:
    return datetime.now(timezone.utc).isoformat()


# ==========================================================================
# Event Types
# ==========================================================================

class AutoEventType(str, Enum):
    """Specific event types"""
    # Cycle
    CYCLE_START = "cycle_start"
    CYCLE_COMPLETE = "cycle_complete"
    CYCLE_FAILED = "cycle_failed"
    PHASE_CHANGE = "phase_change"

    # Pipeline personas
    AGENT_START = "agent_start"
    AGENT_COMPLETE = "agent_complete"
    AGENT_FAILED = "agent_failed"
    REVIEW_ITERATION = "review_iteration"

    # Findings
    FINDING_CREATED = "finding_created"
    FINDING_RESOLVED = "finding_resolved"
    FINDING_FAILED = "finding_failed"
    TEST_RESULT = "test_result"

    # Git
    GIT_CHECKPOINT = "git_checkpoint"
    GIT_ROLLBACK = "git_rollback"

    # Subprocess stream
    TEXT_DELTA = "text_delta"
    TOOL_START = "tool_start"
    TOOL_END = "tool_end"

    # Session
    RATE_LIMIT = "rate_limit"
    SESSION_STATUS = "session_status"
    USER_PROMPT_ADDED = "user_prompt_added"
    ERROR = "error"


# ==========================================================================
# Event
# ==========================================================================

@dataclass
class AutoEvent:
    """A single engine event."""
    type: AutoEventType
    data: Dict[str, Any] = field(default_factory=dict)
    timestamp: str = field(default_factory=_timestamp)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "type": self.type.value,
            "data": self.data,
            "timestamp": self.timestamp,
        }

    def to_json(self) -> str:
        return json.dumps(self.to_dict(), default=str)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "AutoEvent":
        return cls(
            type=AutoEventType(data["type"]),
            data=data.get("data") or {},
            timestamp=data.get("timestamp") or _timestamp(),
        )


# ==========================================================================
# Event Builders
# ==========================================================================

class EventBuilder:
    """Factory for the events the engine emits most often."""

    @staticmethod
    def session_status(status: str, session_id: str, reason: Optional[str] = None) -> AutoEvent:
        data: Dict[str, Any] = {"status": status, "session_id": session_id}
        if reason:
            data["reason"] = reason
        return AutoEvent(type=AutoEventType.SESSION_STATUS, data=data)

    @staticmethod
    def cycle_start(cycle_id: str, cycle_number: int, phase: str, finding_id: Optional[str]) -> AutoEvent:
        return AutoEvent(
            type=AutoEventType.CYCLE_START,
            data={
                "cycle_id": cycle_id,
                "cycle_number": cycle_number,
                "phase": phase,
                "finding_id": finding_id,
            },
        )

    @staticmethod
    def cycle_finished(
        success: bool,
        cycle_id: str,
        cycle_number: int,
        phase: str,
        cost_usd: Optional[float],
        duration_ms: Optional[int],
    ) -> AutoEvent:
        return AutoEvent(
            type=AutoEventType.CYCLE_COMPLETE if success else AutoEventType.CYCLE_FAILED,
            data={
                "cycle_id": cycle_id,
                "cycle_number": cycle_number,
                "phase": phase,
                "cost_usd": cost_usd,
                "duration_ms": duration_ms,
            },
        )

    @staticmethod
    def agent_start(agent_id: str, agent_name: str, cycle_id: str, iteration: int = 1) -> AutoEvent:
        return AutoEvent(
            type=AutoEventType.AGENT_START,
            data={
                "agent_id": agent_id,
                "agent_name": agent_name,
                "cycle_id": cycle_id,
                "iteration": iteration,
            },
        )

    @staticmethod
    def agent_finished(
        success: bool,
        agent_id: str,
        agent_name: str,
        status: str,
        cost_usd: Optional[float],
        duration_ms: Optional[int],
    ) -> AutoEvent:
        return AutoEvent(
            type=AutoEventType.AGENT_COMPLETE if success else AutoEventType.AGENT_FAILED,
            data={
                "agent_id": agent_id,
                "agent_name": agent_name,
                "status": status,
                "cost_usd": cost_usd,
                "duration_ms": duration_ms,
            },
        )

    @staticmethod
    def error(message: str, **context: Any) -> AutoEvent:
        return AutoEvent(type=AutoEventType.ERROR, data={"message": message, **context})
