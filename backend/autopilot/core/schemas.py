"""
Autopilot - Pydantic Schemas
============================

Typed views over persisted records and engine state.
"""

from datetime import datetime
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field

from autopilot.core.models import (
    CyclePhase,
    CycleStatus,
    FindingCategory,
    FindingPriority,
    FindingStatus,
)


class BaseSchema(BaseModel):
    """Base schema with common configuration."""

    model_config = ConfigDict(
        from_attributes=True,
        populate_by_name=True,
        str_strip_whitespace=True,
    )


# ==========================================================================
# Engine Settings
# ==========================================================================

class AutoSettings(BaseSchema):
    """
    Engine settings stored as key/value rows in ``auto_settings``.

    Values are persisted as strings and validated back into these types;
    unknown keys are ignored.
    """

    model_config = ConfigDict(extra="ignore")

    target_project: str = ""
    test_command: str = "npm test"
    max_cycles: int = Field(0, ge=0)  # 0 = unlimited
    budget_usd: float = Field(0.0, ge=0)  # 0 = unlimited
    discovery_interval: int = Field(10, ge=0)
    review_interval: int = Field(5, ge=0)
    auto_commit: bool = True
    branch_name: str = "auto/improvements"
    max_retries: int = Field(3, ge=0)
    max_consecutive_failures: int = Field(5, ge=1)
    review_max_iterations: int = Field(2, ge=0)
    skip_designer_for_fixes: bool = True
    require_initial_prompt: bool = False
    pipeline_mode: bool = False

    def to_rows(self) -> dict[str, str]:
        """Serialize every field to its stored string form."""
        rows = {}
        for key, value in self.model_dump().items():
            if isinstance(value, bool):
                rows[key] = "true" if value else "false"
            else:
                rows[key] = str(value)
        return rows


# ==========================================================================
# Records
# ==========================================================================

class FindingSchema(BaseSchema):
    id: str
    session_id: str
    category: FindingCategory
    priority: FindingPriority
    title: str
    description: str
    file_path: Optional[str] = None
    status: FindingStatus
    retry_count: int
    max_retries: int
    resolved_by_cycle_id: Optional[str] = None
    created_at: datetime


class CycleSchema(BaseSchema):
    id: str
    session_id: str
    cycle_number: int
    phase: CyclePhase
    status: CycleStatus
    finding_id: Optional[str] = None
    cost_usd: Optional[float] = None
    duration_ms: Optional[int] = None
    git_checkpoint: Optional[str] = None
    test_pass_count: Optional[int] = None
    test_fail_count: Optional[int] = None
    test_total_count: Optional[int] = None
    started_at: datetime
    completed_at: Optional[datetime] = None


# ==========================================================================
# Engine Status
# ==========================================================================

class CurrentFinding(BaseSchema):
    id: str
    title: str


class EngineStats(BaseSchema):
    total_cycles: int = 0
    total_cost_usd: float = 0.0
    findings_total: int = 0
    findings_resolved: int = 0
    findings_open: int = 0
    test_pass_rate: Optional[float] = None


class EngineStatus(BaseSchema):
    """Snapshot of the cycle engine for status endpoints."""

    session_id: Optional[str] = None
    status: str = "idle"
    current_cycle: int = 0
    current_phase: Optional[str] = None
    current_finding: Optional[CurrentFinding] = None
    stats: EngineStats = Field(default_factory=EngineStats)
    waiting_until: Optional[datetime] = None
    retry_count: int = 0


# ==========================================================================
# API
# ==========================================================================

class StartRequest(BaseSchema):
    target_project: Optional[str] = None
    initial_prompt: Optional[str] = None


class UserPromptRequest(BaseSchema):
    content: str = Field(..., min_length=1)


class UserPromptResponse(BaseSchema):
    id: str
    session_id: str
    content: str
    added_at_cycle: int


class ErrorResponse(BaseSchema):
    """Error response schema."""

    error: str
    detail: Optional[str] = None
    code: Optional[str] = None


class HealthResponse(BaseSchema):
    """Health check response."""

    status: str
    version: str
    environment: str
    database: str
    engine: str


class MessageResponse(BaseSchema):
    message: str
    data: Optional[dict[str, Any]] = None
