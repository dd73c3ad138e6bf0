"""
Autopilot Engine
================

Components:
- StreamParser: newline-delimited JSON framing of CLI output
- RateLimitDetector: usage-limit signatures and reset-time hints
- ClaudeExecutor: one assistant CLI invocation at a time
- GitManager: checkpoints, rollback and diffs in the target project
- select_next_phase: pure next-phase decision
- PromptBuilder: phase instructions for single-invocation cycles
- PipelineExecutor: persona pipeline with reviewer/developer loop
- CycleEngine: session state machine driving it all
"""

from autopilot.core.engine.cycle_engine import CycleEngine, EngineStateError
from autopilot.core.engine.executor import ClaudeExecutor, ExecutionResult, RateLimited, StreamUpdate
from autopilot.core.engine.git_manager import GitManager
from autopilot.core.engine.phase_selector import PhaseContext, PhaseSelection, select_next_phase
from autopilot.core.engine.pipeline_executor import PipelineExecutor, PipelineResult
from autopilot.core.engine.prompt_builder import PromptBuilder
from autopilot.core.engine.rate_limit import RateLimitDetector, RateLimitInfo
from autopilot.core.engine.stream_parser import StreamParser

__all__ = [
    "ClaudeExecutor",
    "CycleEngine",
    "EngineStateError",
    "ExecutionResult",
    "GitManager",
    "PhaseContext",
    "PhaseSelection",
    "PipelineExecutor",
    "PipelineResult",
    "PromptBuilder",
    "RateLimitDetector",
    "RateLimitInfo",
    "RateLimited",
    "StreamParser",
    "StreamUpdate",
    "select_next_phase",
]
