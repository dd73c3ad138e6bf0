"""
Cycle Engine
============

Top-level state machine for autonomous sessions.

    idle -> running <-> paused
    running -> waiting_for_limit -> running
    running -> completed | stopped

One engine drives at most one session. Cycles run strictly one after
another in a single asyncio task; a rate limit ends that task and arms a
single resumption timer. The database is the source of truth for
sessions, cycles and findings; the engine only keeps the counters and
handles needed to drive the loop.
"""

import asyncio
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Callable, List, Optional, Sequence, Union

import structlog
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from autopilot.core import repository
from autopilot.core.config import settings as app_settings
from autopilot.core.engine.executor import (
    ClaudeExecutor,
    ExecutionResult,
    RateLimited,
    StreamUpdate,
)
from autopilot.core.engine.git_manager import GitManager
from autopilot.core.engine.output_parser import (
    ExtractedFinding,
    extract_findings,
    findings_from_failures,
    is_duplicate,
    parse_verification_output,
)
from autopilot.core.engine.phase_selector import PhaseContext, select_next_phase
from autopilot.core.engine.pipeline_executor import PipelineExecutor
from autopilot.core.engine.prompt_builder import PromptBuilder
from autopilot.core.engine.rate_limit import RateLimitInfo
from autopilot.core.engine.state_file import StateFile, render_state
from autopilot.core.engine.test_runner import TestRunner
from autopilot.core.event_hub import EventHub, Listener
from autopilot.core.events import AutoEvent, AutoEventType, EventBuilder
from autopilot.core.models import (
    AutoCycle,
    AutoSession,
    AutoUserPrompt,
    CyclePhase,
    CycleStatus,
    Finding,
    FindingStatus,
    SessionStatus,
)
from autopilot.core.schemas import AutoSettings, CurrentFinding, EngineStats, EngineStatus

logger = structlog.get_logger()

CHANGE_PHASES = {CyclePhase.FIX, CyclePhase.IMPROVE, CyclePhase.PIPELINE}
RETRY_PHASES = CHANGE_PHASES | {CyclePhase.TEST}
FINDING_PHASES = {CyclePhase.DISCOVERY, CyclePhase.REVIEW}
STOP_WAIT_SECONDS = 10.0


class EngineStateError(RuntimeError):
    """Lifecycle call that is not valid in the engine's current state."""


def apply_finding_failure(finding: Finding) -> bool:
    """
    Count a failed attempt against a finding.

    Below the ceiling the retry counter goes up and the finding reopens;
    a failure at the ceiling retires it as ``wont_fix``.

    Returns:
        True if the finding was retired
    """
    if finding.retry_count >= finding.max_retries:
        finding.status = FindingStatus.WONT_FIX
        return True
    finding.retry_count += 1
    finding.status = FindingStatus.OPEN
    return False


@dataclass
class CycleOutcome:
    """Normalized result of a finished (not rate-limited) cycle."""
    success: bool
    output: str
    cost_usd: Optional[float] = None
    duration_ms: Optional[int] = None
    test_pass_count: Optional[int] = None
    test_fail_count: Optional[int] = None
    test_total_count: Optional[int] = None
    new_findings: List[ExtractedFinding] = field(default_factory=list)
    cancelled: bool = False


class CycleEngine:
    """Drives one autonomous session at a time."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        hub: Optional[EventHub] = None,
        executor_factory: Optional[Callable[[], ClaudeExecutor]] = None,
        git_manager_factory: Callable[[str], GitManager] = GitManager,
        test_runner_factory: Callable[[str], TestRunner] = TestRunner,
        manual_queue_active: Optional[Callable[[], bool]] = None,
        cycle_delay: Optional[float] = None,
        backoff_base: Optional[float] = None,
        backoff_max: Optional[float] = None,
    ):
        self.session_factory = session_factory
        self.hub = hub or EventHub(app_settings.EVENT_BUFFER_SIZE)
        self.executor_factory = executor_factory or ClaudeExecutor
        self.git_manager_factory = git_manager_factory
        self.test_runner_factory = test_runner_factory
        self.manual_queue_active = manual_queue_active
        self.cycle_delay = app_settings.CYCLE_DELAY_SECONDS if cycle_delay is None else cycle_delay
        self.backoff_base = app_settings.BACKOFF_BASE_SECONDS if backoff_base is None else backoff_base
        self.backoff_max = app_settings.BACKOFF_MAX_SECONDS if backoff_max is None else backoff_max

        self._lifecycle_lock = asyncio.Lock()
        self._loop_task: Optional[asyncio.Task] = None
        self._retry_handle: Optional[asyncio.TimerHandle] = None
        self._background: set = set()
        self._reset_state()

    def _reset_state(self) -> None:
        self.session_id: Optional[str] = None
        self.target_project: Optional[str] = None
        self.cycle_number = 0
        self.current_cycle_id: Optional[str] = None
        self.current_phase: Optional[CyclePhase] = None
        self.current_finding_id: Optional[str] = None
        self.last_phase: Optional[CyclePhase] = None
        self.last_cycle_status: Optional[CycleStatus] = None
        self.last_finding_id: Optional[str] = None
        self.consecutive_failures = 0
        self.retry_count = 0
        self.waiting_until: Optional[datetime] = None
        self._paused = False
        self._stopping = False
        self._current_output = ""
        self._rate_limited_cost: Optional[float] = None
        self._executor: Optional[ClaudeExecutor] = None
        self._pipeline: Optional[PipelineExecutor] = None

    # ======================================================================
    # Listeners
    # ======================================================================

    def add_listener(self, listener: Listener) -> Callable[[], None]:
        return self.hub.add_listener(listener)

    def remove_listener(self, listener: Listener) -> None:
        self.hub.remove_listener(listener)

    def emit(self, event: AutoEvent) -> None:
        self.hub.emit(event)

    # ======================================================================
    # Lifecycle
    # ======================================================================

    @property
    def is_active(self) -> bool:
        return self.session_id is not None

    async def start(self, target_project: Optional[str] = None, initial_prompt: Optional[str] = None) -> AutoSession:
        """
        Create a session and begin the cycle loop.

        Raises:
            EngineStateError: Already running, manual queue busy, no usable
                target project, or a required initial prompt is missing
        """
        async with self._lifecycle_lock:
            if self.is_active:
                raise EngineStateError("Autonomous mode is already running")
            if self.manual_queue_active is not None and self.manual_queue_active():
                raise EngineStateError("Cannot start autonomous mode while the manual queue is running")

            async with self.session_factory() as db:
                settings = await repository.get_auto_settings(db)
                project = target_project or settings.target_project
                if not project:
                    raise EngineStateError("Target project path is required")
                if not Path(project).is_dir():
                    raise EngineStateError(f"Target project does not exist: {project}")
                prompt = initial_prompt.strip() if initial_prompt else None
                if settings.require_initial_prompt and not prompt:
                    raise EngineStateError("An initial prompt is required to start")

                session = await repository.create_session(db, project, prompt, config=settings.model_dump())
                await db.commit()

            self._reset_state()
            self.session_id = session.id
            self.target_project = project

            if settings.auto_commit:
                git = self.git_manager_factory(project)
                if await git.is_git_repo():
                    await git.ensure_branch(settings.branch_name)

            self.hub.clear()
            self.emit(EventBuilder.session_status(SessionStatus.RUNNING.value, session.id))
            logger.info("Autonomous session started", session_id=session.id, target=project)
            self._schedule_loop()
            return session

    async def pause(self) -> None:
        async with self._lifecycle_lock:
            if not self.is_active:
                raise EngineStateError("No active autonomous session")
            session_id = self.session_id

            self._paused = True
            await self._interrupt()
            if not self.is_active:
                # The session completed while the in-flight cycle was settling
                return
            await self._set_session_status(SessionStatus.PAUSED)
            self.emit(EventBuilder.session_status(SessionStatus.PAUSED.value, session_id))
            logger.info("Autonomous session paused", session_id=session_id)

    async def resume(self) -> None:
        async with self._lifecycle_lock:
            if not self.is_active:
                raise EngineStateError("No active autonomous session to resume")
            async with self.session_factory() as db:
                session = await repository.get_session(db, self.session_id)
                if session is None or session.status != SessionStatus.PAUSED:
                    raise EngineStateError("Session is not paused")
                session.status = SessionStatus.RUNNING
                await db.commit()

            self._paused = False
            self.consecutive_failures = 0
            self.emit(EventBuilder.session_status(SessionStatus.RUNNING.value, self.session_id))
            logger.info("Autonomous session resumed", session_id=self.session_id)
            self._schedule_loop()

    async def stop(self) -> bool:
        """
        Stop the session and discard engine state.

        Returns:
            False if there was no session to stop
        """
        async with self._lifecycle_lock:
            if not self.is_active:
                return False
            session_id = self.session_id

            self._stopping = True
            await self._interrupt()
            await self._set_session_status(SessionStatus.STOPPED)
            self.emit(EventBuilder.session_status(SessionStatus.STOPPED.value, session_id))
            await self._write_state_file()
            logger.info("Autonomous session stopped", session_id=session_id)
            self._reset_state()
            return True

    async def shutdown(self) -> None:
        """Stop any active session; used on application shutdown."""
        await self.stop()

    async def add_user_prompt(self, content: str) -> AutoUserPrompt:
        """Attach an instruction to the running session's future cycles."""
        if not self.is_active:
            raise EngineStateError("No active autonomous session")
        async with self.session_factory() as db:
            prompt = await repository.add_user_prompt(db, self.session_id, content.strip(), self.cycle_number)
            await db.commit()
        self.emit(AutoEvent(
            type=AutoEventType.USER_PROMPT_ADDED,
            data={"prompt_id": prompt.id, "content": prompt.content, "cycle_number": prompt.added_at_cycle},
        ))
        return prompt

    async def get_status(self) -> EngineStatus:
        if not self.is_active:
            return EngineStatus()

        async with self.session_factory() as db:
            session = await repository.get_session(db, self.session_id)
            findings = await repository.list_findings(db, self.session_id)
            cycles = await repository.list_cycles(db, self.session_id)

        current_finding = None
        if self.current_finding_id:
            finding = next((f for f in findings if f.id == self.current_finding_id), None)
            if finding is not None:
                current_finding = CurrentFinding(id=finding.id, title=finding.title)

        test_cycles = [c for c in cycles if c.test_total_count]
        total_tests = sum(c.test_total_count for c in test_cycles)
        pass_rate = None
        if total_tests:
            pass_rate = sum(c.test_pass_count or 0 for c in test_cycles) / total_tests

        return EngineStatus(
            session_id=self.session_id,
            status=session.status.value if session else SessionStatus.RUNNING.value,
            current_cycle=self.cycle_number,
            current_phase=self.current_phase.value if self.current_phase else None,
            current_finding=current_finding,
            stats=EngineStats(
                total_cycles=session.total_cycles if session else 0,
                total_cost_usd=session.total_cost_usd if session else 0.0,
                findings_total=len(findings),
                findings_resolved=sum(1 for f in findings if f.status == FindingStatus.RESOLVED),
                findings_open=sum(
                    1 for f in findings if f.status in (FindingStatus.OPEN, FindingStatus.IN_PROGRESS)
                ),
                test_pass_rate=pass_rate,
            ),
            waiting_until=self.waiting_until,
            retry_count=self.retry_count,
        )

    async def _interrupt(self) -> None:
        """Kill the in-flight work, cancel timers and settle the running cycle."""
        if self._executor is not None:
            self._executor.kill()
        if self._pipeline is not None:
            self._pipeline.abort()
        if self._retry_handle is not None:
            self._retry_handle.cancel()
            self._retry_handle = None
        self.waiting_until = None

        task = self._loop_task
        if task is not None and not task.done() and task is not asyncio.current_task():
            try:
                await asyncio.wait_for(asyncio.shield(task), timeout=STOP_WAIT_SECONDS)
            except asyncio.TimeoutError:
                logger.warning("Cycle loop did not stop in time, cancelling", session_id=self.session_id)
                task.cancel()
                await asyncio.gather(task, return_exceptions=True)

        await self._fail_inflight_cycle()

    # ======================================================================
    # Loop
    # ======================================================================

    def _should_continue(self) -> bool:
        return (
            self.session_id is not None
            and not self._paused
            and not self._stopping
            and self._retry_handle is None
        )

    def _schedule_loop(self) -> None:
        if self._loop_task is None or self._loop_task.done():
            self._loop_task = asyncio.create_task(self._run_loop())

    async def _run_loop(self) -> None:
        while self._should_continue():
            await asyncio.sleep(self.cycle_delay)
            if not self._should_continue():
                break
            try:
                proceed = await self._process_next_cycle()
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.exception("Cycle crashed", session_id=self.session_id, cycle=self.cycle_number)
                self.emit(EventBuilder.error(str(e), cycle_number=self.cycle_number))
                await self._fail_inflight_cycle()
                self.consecutive_failures += 1
                proceed = self.session_id is not None and await self._check_safety_limits()
            if not proceed:
                break

    async def _process_next_cycle(self) -> bool:
        """
        Run one cycle end to end.

        Returns:
            Whether the loop should go on to the next cycle
        """
        if not await self._check_safety_limits():
            return False

        async with self.session_factory() as db:
            session = await repository.get_session(db, self.session_id)
            settings = await repository.get_auto_settings(db)
            findings = await repository.list_findings(db, self.session_id)
            cycles = list(await repository.list_cycles(db, self.session_id))
            instructions = list(await repository.list_user_prompts(db, self.session_id))

            selection = select_next_phase(
                PhaseContext(
                    cycle_number=self.cycle_number,
                    last_phase=self.last_phase,
                    last_cycle_status=self.last_cycle_status,
                    last_finding_id=self.last_finding_id,
                    findings=findings,
                    total_cycles=session.total_cycles,
                ),
                review_interval=settings.review_interval,
                discovery_interval=settings.discovery_interval,
            )
            phase, finding_id = selection.phase, selection.finding_id
            if settings.pipeline_mode:
                if phase not in (CyclePhase.FIX, CyclePhase.IMPROVE):
                    finding_id = None
                phase = CyclePhase.PIPELINE

            finding = next((f for f in findings if f.id == finding_id), None) if finding_id else None
            if finding is not None and phase in CHANGE_PHASES:
                finding.status = FindingStatus.IN_PROGRESS
            state_context = render_state(session, cycles, findings)
            await db.commit()

        if phase != self.last_phase:
            self.emit(AutoEvent(
                type=AutoEventType.PHASE_CHANGE,
                data={"from": self.last_phase.value if self.last_phase else None, "to": phase.value},
            ))
        self.current_phase = phase
        self.current_finding_id = finding_id

        git = self.git_manager_factory(session.target_project)
        checkpoint = None
        if settings.auto_commit:
            checkpoint = await git.create_checkpoint(f"before-cycle-{self.cycle_number}")
            if checkpoint:
                self.emit(AutoEvent(
                    type=AutoEventType.GIT_CHECKPOINT,
                    data={"checkpoint": checkpoint, "cycle_number": self.cycle_number},
                ))

        prompt = await self._build_prompt(
            phase, settings, state_context, findings, finding, cycles, git, instructions,
        )

        if not self._should_continue():
            await self._release_finding(finding_id)
            return False

        async with self.session_factory() as db:
            cycle = await repository.create_cycle(
                db,
                session_id=self.session_id,
                cycle_number=self.cycle_number,
                phase=phase,
                finding_id=finding_id,
                prompt_used=prompt,
                git_checkpoint=checkpoint,
            )
            await db.commit()
        self.current_cycle_id = cycle.id
        self._current_output = ""
        self.emit(EventBuilder.cycle_start(cycle.id, self.cycle_number, phase.value, finding_id))
        logger.info("Cycle started", cycle=self.cycle_number, phase=phase.value, finding_id=finding_id)

        if phase == CyclePhase.PIPELINE:
            result = await self._execute_pipeline(session, cycle, settings, finding, state_context, git)
        else:
            result = await self._execute_single(prompt, session.target_project)

        if self._paused or self._stopping:
            # pause()/stop() settle the cycle themselves
            return False

        if isinstance(result, RateLimitInfo):
            await self._handle_rate_limit(cycle.id, result)
            return False

        if phase == CyclePhase.TEST:
            await self._verify(result, settings, session.target_project)

        await self._handle_cycle_complete(cycle, phase, finding_id, result, settings, git)
        return True

    async def _build_prompt(
        self,
        phase: CyclePhase,
        settings: AutoSettings,
        state_context: str,
        findings: List[Finding],
        finding: Optional[Finding],
        cycles: List[AutoCycle],
        git: GitManager,
        instructions: Sequence[AutoUserPrompt] = (),
    ) -> str:
        builder = PromptBuilder(settings, instructions)
        if phase == CyclePhase.FIX and finding is not None:
            return builder.build_fix_prompt(state_context, finding)
        if phase == CyclePhase.IMPROVE and finding is not None:
            return builder.build_improve_prompt(state_context, finding)
        if phase == CyclePhase.TEST:
            return builder.build_test_prompt(state_context)
        if phase == CyclePhase.REVIEW:
            # Review everything since the oldest checkpoint in the review window
            window = cycles[-settings.review_interval:] if settings.review_interval else cycles
            since = next((c.git_checkpoint for c in window if c.git_checkpoint), None)
            diff = await git.get_diff(since) if since else ""
            return builder.build_review_prompt(state_context, diff)
        if phase == CyclePhase.PIPELINE:
            target = f": {finding.title}" if finding is not None else ""
            return f"[pipeline cycle {self.cycle_number}{target}]"
        return builder.build_discovery_prompt(state_context, findings)

    # ======================================================================
    # Execution
    # ======================================================================

    def _forward(self, update: StreamUpdate) -> None:
        self._forward_event(update.to_event())

    def _forward_event(self, event: AutoEvent) -> None:
        if event.type == AutoEventType.TEXT_DELTA:
            self._current_output += event.data.get("text") or ""
        self.emit(event)

    async def _execute_single(self, prompt: str, target_project: str) -> Union[CycleOutcome, RateLimitInfo]:
        if not self._should_continue():
            return CycleOutcome(success=False, output="", cancelled=True)
        executor = self.executor_factory()
        self._executor = executor
        try:
            outcome = await executor.run(prompt, target_project, on_event=self._forward)
        finally:
            self._executor = None

        if isinstance(outcome, RateLimited):
            self._rate_limited_cost = outcome.cost_usd
            self._current_output = outcome.output or self._current_output
            return outcome.info

        if not isinstance(outcome, ExecutionResult):
            raise TypeError(f"Unexpected executor outcome: {outcome!r}")
        return CycleOutcome(
            success=not outcome.is_error,
            output=outcome.output,
            cost_usd=outcome.cost_usd,
            duration_ms=outcome.duration_ms,
            cancelled=outcome.cancelled,
        )

    async def _execute_pipeline(
        self,
        session: AutoSession,
        cycle: AutoCycle,
        settings: AutoSettings,
        finding: Optional[Finding],
        state_context: str,
        git: GitManager,
    ) -> Union[CycleOutcome, RateLimitInfo]:
        pipeline = PipelineExecutor(
            session_factory=self.session_factory,
            session=session,
            cycle=cycle,
            settings=settings,
            emit=self._forward_event,
            executor_factory=self.executor_factory,
            git_manager=git,
            finding=finding,
            session_state=state_context,
        )
        self._pipeline = pipeline
        try:
            result = await pipeline.execute()
        finally:
            self._pipeline = None

        if result.aborted_by_rate_limit and result.rate_limit is not None:
            self._rate_limited_cost = result.total_cost_usd
            return result.rate_limit

        outcome = CycleOutcome(
            success=result.success,
            output=result.final_output,
            cost_usd=result.total_cost_usd,
            duration_ms=result.total_duration_ms,
            cancelled=result.aborted,
            new_findings=list(result.new_findings),
        )
        if result.qa_result is not None and result.qa_result.found:
            outcome.test_pass_count = result.qa_result.passed_count
            outcome.test_fail_count = result.qa_result.failed_count
            outcome.test_total_count = result.qa_result.total
        return outcome

    async def _verify(self, outcome: CycleOutcome, settings: AutoSettings, target_project: str) -> None:
        """Fill in test counts for a test cycle and decide whether it passed."""
        summary = parse_verification_output(outcome.output)
        outcome.new_findings = extract_findings(outcome.output, key="new_findings")
        if summary.found:
            outcome.test_pass_count = summary.passed_count
            outcome.test_fail_count = summary.failed_count
            outcome.test_total_count = summary.total
            outcome.success = outcome.success and summary.passed
            outcome.new_findings = findings_from_failures(summary) + outcome.new_findings
        elif outcome.success and settings.test_command:
            run = await self.test_runner_factory(target_project).run(settings.test_command)
            outcome.test_pass_count = run.pass_count
            outcome.test_fail_count = run.fail_count
            outcome.test_total_count = run.total_count
            outcome.success = run.passed

        self.emit(AutoEvent(
            type=AutoEventType.TEST_RESULT,
            data={
                "cycle_number": self.cycle_number,
                "passed": outcome.success,
                "pass_count": outcome.test_pass_count,
                "fail_count": outcome.test_fail_count,
                "total_count": outcome.test_total_count,
            },
        ))

    # ======================================================================
    # Completion
    # ======================================================================

    async def _handle_cycle_complete(
        self,
        cycle: AutoCycle,
        phase: CyclePhase,
        finding_id: Optional[str],
        outcome: CycleOutcome,
        settings: AutoSettings,
        git: GitManager,
    ) -> None:
        now = datetime.now(timezone.utc)
        status = CycleStatus.COMPLETED if outcome.success else CycleStatus.FAILED

        async with self.session_factory() as db:
            record = await repository.get_cycle(db, cycle.id)
            record.status = status
            record.output = outcome.output
            record.cost_usd = outcome.cost_usd
            record.duration_ms = outcome.duration_ms
            record.test_pass_count = outcome.test_pass_count
            record.test_fail_count = outcome.test_fail_count
            record.test_total_count = outcome.test_total_count
            record.completed_at = now

            session = await repository.get_session(db, self.session_id)
            session.total_cycles += 1
            session.total_cost_usd += outcome.cost_usd or 0.0

            if outcome.success:
                self.consecutive_failures = 0
                self.retry_count = 0
            else:
                self.consecutive_failures += 1

            if phase in FINDING_PHASES and outcome.success:
                outcome.new_findings = extract_findings(outcome.output)

            if outcome.new_findings:
                open_titles = [f.title for f in await repository.list_open_findings(db, self.session_id)]
                for extracted in extract_new(outcome.new_findings, open_titles):
                    created = await repository.create_finding(
                        db,
                        self.session_id,
                        max_retries=settings.max_retries,
                        category=extracted.category,
                        priority=extracted.priority,
                        title=extracted.title,
                        description=extracted.description,
                        file_path=extracted.file_path,
                    )
                    self.emit(AutoEvent(
                        type=AutoEventType.FINDING_CREATED,
                        data={
                            "finding_id": created.id,
                            "title": created.title,
                            "category": created.category.value,
                            "priority": created.priority.value,
                        },
                    ))

            finding = await repository.get_finding(db, finding_id) if finding_id else None
            if finding is not None and phase in CHANGE_PHASES and outcome.success:
                # Resolved pending verification by the next test cycle
                finding.status = FindingStatus.RESOLVED
                finding.resolved_by_cycle_id = cycle.id
                self.emit(AutoEvent(
                    type=AutoEventType.FINDING_RESOLVED,
                    data={"finding_id": finding.id, "cycle_id": cycle.id},
                ))
            elif finding is not None and phase in RETRY_PHASES and not outcome.success:
                # A failed test charges the finding whose change it verified
                if apply_finding_failure(finding):
                    self.emit(AutoEvent(
                        type=AutoEventType.FINDING_FAILED,
                        data={"finding_id": finding.id, "reason": "max_retries_exceeded"},
                    ))

            await db.commit()

        if not outcome.success and phase in CHANGE_PHASES and settings.auto_commit and cycle.git_checkpoint:
            if await git.rollback(cycle.git_checkpoint):
                async with self.session_factory() as db:
                    record = await repository.get_cycle(db, cycle.id)
                    record.status = CycleStatus.ROLLED_BACK
                    await db.commit()
                self.emit(AutoEvent(
                    type=AutoEventType.GIT_ROLLBACK,
                    data={"checkpoint": cycle.git_checkpoint, "cycle_id": cycle.id},
                ))

        self.emit(EventBuilder.cycle_finished(
            outcome.success,
            cycle.id,
            self.cycle_number,
            phase.value,
            outcome.cost_usd,
            outcome.duration_ms,
        ))
        logger.info(
            "Cycle finished",
            cycle=self.cycle_number,
            phase=phase.value,
            status=status.value,
            cost_usd=outcome.cost_usd,
            consecutive_failures=self.consecutive_failures,
        )

        self.last_phase = phase
        self.last_cycle_status = status
        self.last_finding_id = finding_id
        self.cycle_number += 1
        self.current_cycle_id = None
        self.current_finding_id = None

        await self._write_state_file()

    async def _handle_rate_limit(self, cycle_id: str, info: RateLimitInfo) -> None:
        cost = self._rate_limited_cost
        self._rate_limited_cost = None

        async with self.session_factory() as db:
            cycle = await repository.get_cycle(db, cycle_id)
            cycle.status = CycleStatus.RATE_LIMITED
            cycle.output = self._current_output
            cycle.cost_usd = cost
            cycle.completed_at = datetime.now(timezone.utc)

            session = await repository.get_session(db, self.session_id)
            session.status = SessionStatus.WAITING_FOR_LIMIT
            session.total_cost_usd += cost or 0.0

            if self.current_finding_id:
                finding = await repository.get_finding(db, self.current_finding_id)
                if finding is not None and finding.status == FindingStatus.IN_PROGRESS:
                    finding.status = FindingStatus.OPEN
            await db.commit()

        if info.retry_after_seconds:
            delay = info.retry_after_seconds
        else:
            delay = min(self.backoff_base * (2 ** self.retry_count), self.backoff_max)
        self.waiting_until = datetime.now(timezone.utc) + timedelta(seconds=delay)
        self.retry_count += 1
        self.cycle_number += 1
        self.current_cycle_id = None
        self.current_finding_id = None
        self._retry_handle = asyncio.get_running_loop().call_later(delay, self._on_retry_timer)

        self.emit(AutoEvent(
            type=AutoEventType.RATE_LIMIT,
            data={
                "message": info.message,
                "source": info.source,
                "retry_after_seconds": delay,
                "waiting_until": self.waiting_until.isoformat(),
                "retry_count": self.retry_count,
            },
        ))
        self.emit(EventBuilder.session_status(SessionStatus.WAITING_FOR_LIMIT.value, self.session_id))
        logger.warning(
            "Rate limited, backing off",
            session_id=self.session_id,
            delay_seconds=delay,
            retry_count=self.retry_count,
        )

    def _on_retry_timer(self) -> None:
        self._retry_handle = None
        self.waiting_until = None
        task = asyncio.ensure_future(self._resume_after_limit())
        self._background.add(task)
        task.add_done_callback(self._background.discard)

    async def _resume_after_limit(self) -> None:
        async with self._lifecycle_lock:
            if not self.is_active or self._paused or self._stopping:
                return
            async with self.session_factory() as db:
                session = await repository.get_session(db, self.session_id)
                if session is None or session.status in (SessionStatus.STOPPED, SessionStatus.PAUSED):
                    return
                session.status = SessionStatus.RUNNING
                await db.commit()
            self.emit(EventBuilder.session_status(SessionStatus.RUNNING.value, self.session_id))
            self._schedule_loop()

    # ======================================================================
    # Safety Limits
    # ======================================================================

    async def _check_safety_limits(self) -> bool:
        async with self.session_factory() as db:
            session = await repository.get_session(db, self.session_id)
            if session is None:
                return False
            settings = await repository.get_auto_settings(db)

            reason = None
            if settings.max_cycles > 0 and session.total_cycles >= settings.max_cycles:
                reason = "max_cycles_reached"
            elif settings.budget_usd > 0 and session.total_cost_usd >= settings.budget_usd:
                reason = "budget_exceeded"

            if reason is not None:
                session.status = SessionStatus.COMPLETED
                await db.commit()
            elif self.consecutive_failures >= settings.max_consecutive_failures:
                session.status = SessionStatus.PAUSED
                await db.commit()
                self._paused = True
                self.emit(EventBuilder.session_status(
                    SessionStatus.PAUSED.value, session.id, "consecutive_failures",
                ))
                logger.warning(
                    "Too many consecutive failures, pausing",
                    session_id=session.id,
                    failures=self.consecutive_failures,
                )
                return False

        if reason is None:
            return True

        self.emit(EventBuilder.session_status(SessionStatus.COMPLETED.value, self.session_id, reason))
        logger.info("Autonomous session completed", session_id=self.session_id, reason=reason)
        await self._write_state_file()
        self._reset_state()
        return False

    # ======================================================================
    # Helpers
    # ======================================================================

    async def _set_session_status(self, status: SessionStatus) -> None:
        if not self.session_id:
            return
        async with self.session_factory() as db:
            session = await repository.get_session(db, self.session_id)
            if session is not None:
                session.status = status
                await db.commit()

    async def _fail_inflight_cycle(self) -> None:
        """Mark the running cycle failed and hand its finding back to the queue."""
        if self.current_cycle_id is None:
            await self._release_finding(self.current_finding_id)
            return
        async with self.session_factory() as db:
            cycle = await repository.get_cycle(db, self.current_cycle_id)
            if cycle is not None and cycle.status == CycleStatus.RUNNING:
                cycle.status = CycleStatus.FAILED
                cycle.output = self._current_output
                cycle.completed_at = datetime.now(timezone.utc)
            await db.commit()
        await self._release_finding(self.current_finding_id)
        self.current_cycle_id = None
        self.cycle_number += 1

    async def _release_finding(self, finding_id: Optional[str]) -> None:
        if not finding_id:
            return
        async with self.session_factory() as db:
            finding = await repository.get_finding(db, finding_id)
            if finding is not None and finding.status == FindingStatus.IN_PROGRESS:
                finding.status = FindingStatus.OPEN
                await db.commit()
        if finding_id == self.current_finding_id:
            self.current_finding_id = None

    async def _write_state_file(self) -> None:
        if not self.session_id:
            return
        async with self.session_factory() as db:
            session = await repository.get_session(db, self.session_id)
            if session is None:
                return
            cycles = await repository.list_cycles(db, self.session_id)
            findings = await repository.list_findings(db, self.session_id)
        await StateFile(session.target_project).write(render_state(session, cycles, findings))


def extract_new(candidates: List[ExtractedFinding], open_titles: List[str]) -> List[ExtractedFinding]:
    """Drop candidates that duplicate an open finding or an earlier candidate."""
    seen = list(open_titles)
    fresh = []
    for candidate in candidates:
        if is_duplicate(candidate.title, seen):
            continue
        seen.append(candidate.title)
        fresh.append(candidate)
    return fresh
