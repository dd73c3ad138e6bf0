"""
Pipeline Executor
=================

Runs one pipeline cycle: the enabled personas in ``pipeline_order``,
each through its own assistant invocation, with a bounded
reviewer/developer feedback loop.

Stage flow (built-ins):
    Product Designer -> Developer -> Reviewer (<-> Developer) -> QA Engineer
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Callable, Dict, List, Optional

import structlog
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from autopilot.core import repository
from autopilot.core.engine.context_builder import AgentContext, build_agent_context, build_user_prompt
from autopilot.core.engine.executor import ClaudeExecutor, ExecutionResult, RateLimited, StreamUpdate
from autopilot.core.engine.git_manager import GitManager
from autopilot.core.engine.output_parser import (
    ExtractedFinding,
    VerificationSummary,
    extract_findings,
    findings_from_failures,
    findings_from_review,
    parse_review_output,
    parse_verification_output,
)
from autopilot.core.engine.rate_limit import RateLimitInfo
from autopilot.core.engine.seed_agents import DEVELOPER, PRODUCT_DESIGNER, QA_ENGINEER, REVIEWER
from autopilot.core.events import AutoEvent, AutoEventType, EventBuilder
from autopilot.core.models import AgentRun, AgentRunStatus, AutoAgent, AutoCycle, AutoSession, Finding
from autopilot.core.schemas import AutoSettings

logger = structlog.get_logger()

ExecutorFactory = Callable[[], ClaudeExecutor]
Emit = Callable[[AutoEvent], None]


@dataclass
class PipelineResult:
    success: bool
    agent_runs: List[AgentRun] = field(default_factory=list)
    final_output: str = ""
    total_cost_usd: float = 0.0
    total_duration_ms: int = 0
    qa_result: Optional[VerificationSummary] = None
    new_findings: List[ExtractedFinding] = field(default_factory=list)
    aborted: bool = False
    aborted_by_rate_limit: bool = False
    rate_limit: Optional[RateLimitInfo] = None


@dataclass
class _AgentOutcome:
    run: AgentRun
    rate_limit: Optional[RateLimitInfo] = None

    @property
    def completed(self) -> bool:
        return self.run.status == AgentRunStatus.COMPLETED


class PipelineExecutor:
    """Executes the persona pipeline for a single cycle."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        session: AutoSession,
        cycle: AutoCycle,
        settings: AutoSettings,
        emit: Emit,
        executor_factory: ExecutorFactory,
        git_manager: GitManager,
        finding: Optional[Finding] = None,
        session_state: str = "",
    ):
        self.session_factory = session_factory
        self.session = session
        self.cycle = cycle
        self.settings = settings
        self.emit = emit
        self.executor_factory = executor_factory
        self.git_manager = git_manager
        self.finding = finding
        self.session_state = session_state

        self.aborted = False
        self._current_executor: Optional[ClaudeExecutor] = None

        # Pipeline totals
        self.agent_runs: List[AgentRun] = []
        self.total_cost_usd = 0.0
        self.total_duration_ms = 0

    def abort(self) -> None:
        """Kill the in-flight persona and stop before the next one starts."""
        self.aborted = True
        if self._current_executor is not None:
            self._current_executor.kill()

    # ======================================================================
    # Pipeline
    # ======================================================================

    async def execute(self) -> PipelineResult:
        async with self.session_factory() as db:
            agents = list(await repository.list_agents(db, enabled_only=True))
            prompts = await repository.list_user_prompts(db, self.session.id)
        user_prompt = build_user_prompt(self.session, prompts)

        if self.finding is not None and self.settings.skip_designer_for_fixes:
            agents = [a for a in agents if a.name != PRODUCT_DESIGNER]

        logger.info(
            "Pipeline started",
            cycle_id=self.cycle.id,
            agents=[a.name for a in agents],
            finding_id=self.finding.id if self.finding else None,
        )

        previous_outputs: Dict[str, str] = {}
        latest_runs: Dict[str, _AgentOutcome] = {}

        for agent in agents:
            if self.aborted:
                break

            ctx = AgentContext(
                user_prompt=user_prompt,
                session_state=self.session_state,
                previous_outputs=previous_outputs,
                finding=self.finding,
            )
            if agent.name == REVIEWER:
                ctx.git_diff = await self._diff_since_checkpoint()

            outcome = await self._run_agent(agent, build_agent_context(agent, ctx), iteration=1)
            if outcome.rate_limit is not None:
                return self._result(False, previous_outputs, rate_limit=outcome.rate_limit)
            previous_outputs[agent.display_name] = outcome.run.output
            latest_runs[agent.name] = outcome

            if agent.name == REVIEWER and outcome.completed:
                verdict = parse_review_output(outcome.run.output)
                if not verdict.approved:
                    rate_limit = await self._review_loop(
                        agents, user_prompt, previous_outputs, latest_runs, verdict.feedback,
                    )
                    if rate_limit is not None:
                        return self._result(False, previous_outputs, rate_limit=rate_limit)

        if self.aborted:
            return self._result(False, previous_outputs)

        qa_result = None
        qa = latest_runs.get(QA_ENGINEER)
        if qa is not None and qa.completed:
            qa_result = parse_verification_output(qa.run.output)
            success = qa_result.passed
        elif qa is not None:
            success = False
        else:
            success = all(outcome.completed for outcome in latest_runs.values())

        return self._result(
            success,
            previous_outputs,
            qa_result=qa_result,
            new_findings=self._collect_findings(latest_runs, qa_result),
        )

    async def _review_loop(
        self,
        agents: List[AutoAgent],
        user_prompt: str,
        previous_outputs: Dict[str, str],
        latest_runs: Dict[str, _AgentOutcome],
        feedback: str,
    ) -> Optional[RateLimitInfo]:
        """
        Re-run developer then reviewer until approval or the iteration cap.

        Returns:
            Rate limit info if a persona hit a limit, else None
        """
        developer = next((a for a in agents if a.name == DEVELOPER), None)
        reviewer = next((a for a in agents if a.name == REVIEWER), None)
        if developer is None or reviewer is None:
            return None

        max_iterations = self.settings.review_max_iterations
        for i in range(max_iterations):
            if self.aborted:
                return None

            self.emit(AutoEvent(
                type=AutoEventType.REVIEW_ITERATION,
                data={"iteration": i + 1, "max_iterations": max_iterations, "feedback": feedback},
            ))

            dev_context = build_agent_context(developer, AgentContext(
                user_prompt=user_prompt,
                session_state=self.session_state,
                previous_outputs=previous_outputs,
                finding=self.finding,
                review_feedback=feedback,
            ))
            dev = await self._run_agent(developer, dev_context, iteration=i + 2)
            if dev.rate_limit is not None:
                return dev.rate_limit
            previous_outputs[developer.display_name] = dev.run.output
            latest_runs[developer.name] = dev

            if self.aborted:
                return None

            review_context = build_agent_context(reviewer, AgentContext(
                user_prompt=user_prompt,
                session_state=self.session_state,
                previous_outputs=previous_outputs,
                git_diff=await self._diff_since_checkpoint(),
            ))
            review = await self._run_agent(reviewer, review_context, iteration=i + 2)
            if review.rate_limit is not None:
                return review.rate_limit
            previous_outputs[reviewer.display_name] = review.run.output
            latest_runs[reviewer.name] = review

            verdict = parse_review_output(review.run.output)
            if verdict.approved:
                logger.info("Review approved", cycle_id=self.cycle.id, iteration=i + 2)
                return None
            feedback = verdict.feedback

        logger.info("Review loop exhausted, proceeding", cycle_id=self.cycle.id, iterations=max_iterations)
        return None

    # ======================================================================
    # Single Persona
    # ======================================================================

    async def _run_agent(self, agent: AutoAgent, prompt: str, iteration: int) -> _AgentOutcome:
        self.emit(EventBuilder.agent_start(agent.id, agent.display_name, self.cycle.id, iteration))

        async with self.session_factory() as db:
            run = await repository.create_agent_run(db, self.cycle.id, agent, iteration, prompt)
            await db.commit()

        def forward(update: StreamUpdate) -> None:
            self.emit(update.to_event())

        executor = self.executor_factory()
        self._current_executor = executor
        try:
            outcome = await executor.run(prompt, self.session.target_project, on_event=forward)
        finally:
            self._current_executor = None

        rate_limit = None
        if isinstance(outcome, RateLimited):
            status = AgentRunStatus.FAILED
            rate_limit = outcome.info
        elif isinstance(outcome, ExecutionResult) and not outcome.is_error:
            status = AgentRunStatus.COMPLETED
        else:
            status = AgentRunStatus.FAILED

        async with self.session_factory() as db:
            run = await db.get(AgentRun, run.id)
            run.status = status
            run.output = outcome.output
            run.cost_usd = outcome.cost_usd
            run.duration_ms = outcome.duration_ms
            run.completed_at = datetime.now(timezone.utc)
            await db.commit()

        self.agent_runs.append(run)
        self.total_cost_usd += run.cost_usd or 0.0
        self.total_duration_ms += run.duration_ms or 0

        if rate_limit is None:
            self.emit(EventBuilder.agent_finished(
                status == AgentRunStatus.COMPLETED,
                agent.id,
                agent.display_name,
                status.value,
                run.cost_usd,
                run.duration_ms,
            ))
        logger.info(
            "Agent finished",
            agent=agent.name,
            iteration=iteration,
            status=status.value,
            rate_limited=rate_limit is not None,
            cost_usd=run.cost_usd,
        )
        return _AgentOutcome(run=run, rate_limit=rate_limit)

    @staticmethod
    def _collect_findings(
        latest_runs: Dict[str, _AgentOutcome],
        qa_result: Optional[VerificationSummary],
    ) -> List[ExtractedFinding]:
        """Findings reported by personas, unresolved review issues and QA failures."""
        findings: List[ExtractedFinding] = []
        for outcome in latest_runs.values():
            if outcome.completed:
                findings += extract_findings(outcome.run.output)
        review = latest_runs.get(REVIEWER)
        if review is not None and review.completed:
            findings += findings_from_review(review.run.output)
        if qa_result is not None and qa_result.found:
            findings += findings_from_failures(qa_result)
        return findings

    async def _diff_since_checkpoint(self) -> str:
        if not self.cycle.git_checkpoint:
            return ""
        return await self.git_manager.get_diff(self.cycle.git_checkpoint)

    def _result(
        self,
        success: bool,
        previous_outputs: Dict[str, str],
        qa_result: Optional[VerificationSummary] = None,
        rate_limit: Optional[RateLimitInfo] = None,
        new_findings: Optional[List[ExtractedFinding]] = None,
    ) -> PipelineResult:
        return PipelineResult(
            success=success and not self.aborted and rate_limit is None,
            agent_runs=list(self.agent_runs),
            final_output="\n\n---\n\n".join(previous_outputs.values()),
            total_cost_usd=self.total_cost_usd,
            total_duration_ms=self.total_duration_ms,
            qa_result=qa_result,
            new_findings=new_findings or [],
            aborted=self.aborted,
            aborted_by_rate_limit=rate_limit is not None,
            rate_limit=rate_limit,
        )
