"""
Autopilot - Test Fixtures
=========================

Shared pytest fixtures for all tests.
"""

import asyncio
from collections.abc import AsyncGenerator
from typing import Any, Callable, Iterable, List, Optional, Union

import pytest
import pytest_asyncio
from fastapi import FastAPI
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

from autopilot.api.main import create_app
from autopilot.core import repository
from autopilot.core.database import Base, get_db
from autopilot.core.engine.cycle_engine import CycleEngine
from autopilot.core.engine.executor import ExecutionResult, RateLimited, StreamUpdate
from autopilot.core.engine.seed_agents import seed_builtin_agents
from autopilot.core.engine.test_runner import TestRunResult
from autopilot.core.event_hub import EventHub
from autopilot.core.events import AutoEvent, AutoEventType
from autopilot.core.models import AutoSession, Finding, FindingCategory, FindingPriority, FindingStatus


# ==========================================================================
# Test Database Setup
# ==========================================================================

# Use in-memory SQLite for tests (fast)
TEST_DATABASE_URL = "sqlite+aiosqlite:///:memory:"

test_engine = create_async_engine(
    TEST_DATABASE_URL,
    connect_args={"check_same_thread": False},
    poolclass=StaticPool,
)

TestingSessionLocal = async_sessionmaker(
    bind=test_engine,
    class_=AsyncSession,
    expire_on_commit=False,
    autoflush=False,
)


# ==========================================================================
# Database Fixtures
# ==========================================================================

@pytest_asyncio.fixture(scope="function")
async def session_factory() -> AsyncGenerator[async_sessionmaker[AsyncSession], None]:
    """
    Provide a clean, seeded database for each test.

    Creates all tables and seeds settings and built-in agents before the
    test, drops everything after.
    """
    async with test_engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    async with TestingSessionLocal() as db:
        await repository.seed_default_settings(db)
        # Tests target plain temp directories, not git repositories
        await repository.upsert_setting(db, "auto_commit", "false")
        await seed_builtin_agents(db)
        await db.commit()

    yield TestingSessionLocal

    async with test_engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)


@pytest_asyncio.fixture(scope="function")
async def db_session(session_factory) -> AsyncGenerator[AsyncSession, None]:
    async with session_factory() as session:
        yield session


# ==========================================================================
# Fake Assistant CLI
# ==========================================================================

def success(output: str = "done", cost: Optional[float] = 0.01, duration: int = 100) -> ExecutionResult:
    return ExecutionResult(cost_usd=cost, duration_ms=duration, output=output, is_error=False, exit_code=0)


def failure(output: str = "boom", cost: Optional[float] = 0.01, duration: int = 100) -> ExecutionResult:
    return ExecutionResult(
        cost_usd=cost, duration_ms=duration, output=output, is_error=True, exit_code=1, error="boom",
    )


Outcome = Union[ExecutionResult, RateLimited]


class FakeExecutor:
    """Stands in for ``ClaudeExecutor``; returns a scripted outcome."""

    def __init__(self, script: "ScriptedExecutors", outcome: Outcome, block: bool = False):
        self.script = script
        self.outcome = outcome
        self.block = block
        self.killed = False
        self._released = asyncio.Event()

    async def run(
        self,
        instructions: str,
        working_directory: str,
        on_event: Optional[Callable[[StreamUpdate], None]] = None,
    ) -> Outcome:
        self.script.prompts.append(instructions)
        self.script.running.set()
        if on_event is not None and self.outcome.output:
            on_event(StreamUpdate(AutoEventType.TEXT_DELTA, {"text": self.outcome.output}))
        if self.block:
            await self._released.wait()
            return ExecutionResult(
                cost_usd=None, duration_ms=None, output=self.outcome.output,
                is_error=True, cancelled=True,
            )
        return self.outcome

    def kill(self) -> None:
        self.killed = True
        self._released.set()


class ScriptedExecutors:
    """
    Executor factory handing out one scripted outcome per invocation.

    Once the script is exhausted every invocation returns ``default``.
    ``block=True`` makes the executor hang until killed.
    """

    def __init__(self, outcomes: Iterable[Outcome] = (), default: Optional[Outcome] = None, block: bool = False):
        self.outcomes: List[Outcome] = list(outcomes)
        self.default = default or success()
        self.block = block
        self.prompts: List[str] = []
        self.executors: List[FakeExecutor] = []
        self.running = asyncio.Event()

    def __call__(self) -> FakeExecutor:
        outcome = self.outcomes.pop(0) if self.outcomes else self.default
        executor = FakeExecutor(self, outcome, block=self.block)
        self.executors.append(executor)
        return executor


class FakeGitManager:
    """Records checkpoint and rollback calls instead of running git."""

    def __init__(self, project_path: str = ""):
        self.project_path = project_path
        self.checkpoints: List[str] = []
        self.rollbacks: List[str] = []
        self.diff = ""

    async def is_git_repo(self) -> bool:
        return True

    async def ensure_branch(self, branch_name: str) -> bool:
        return True

    async def create_checkpoint(self, label: str) -> Optional[str]:
        sha = f"{len(self.checkpoints):040d}"
        self.checkpoints.append(label)
        return sha

    async def rollback(self, sha: str) -> bool:
        self.rollbacks.append(sha)
        return True

    async def get_diff(self, from_sha: str) -> str:
        return self.diff


class FakeTestRunner:
    """Reports a fixed test-suite result instead of running a shell command."""

    def __init__(self, project_path: str = "", passed: bool = True):
        self.project_path = project_path
        self.passed = passed
        self.commands: List[str] = []

    async def run(self, command: str) -> TestRunResult:
        self.commands.append(command)
        return TestRunResult(
            passed=self.passed,
            output="",
            exit_code=0 if self.passed else 1,
            duration_ms=5,
            pass_count=3 if self.passed else 2,
            fail_count=0 if self.passed else 1,
            total_count=3,
        )


# ==========================================================================
# Engine Fixtures
# ==========================================================================

class EventRecorder:
    def __init__(self):
        self.events: List[AutoEvent] = []

    def __call__(self, event: AutoEvent) -> None:
        self.events.append(event)

    def of_type(self, event_type: AutoEventType) -> List[AutoEvent]:
        return [e for e in self.events if e.type == event_type]


@pytest.fixture
def executors() -> ScriptedExecutors:
    return ScriptedExecutors()


@pytest.fixture
def recorder() -> EventRecorder:
    return EventRecorder()


@pytest.fixture
def make_engine(session_factory, recorder) -> Callable[..., CycleEngine]:
    """Build a cycle engine over the test database with no inter-cycle delay."""

    def _make(executor_factory: Callable[[], Any], **kwargs: Any) -> CycleEngine:
        kwargs.setdefault("cycle_delay", 0)
        kwargs.setdefault("test_runner_factory", FakeTestRunner)
        engine = CycleEngine(
            session_factory=session_factory,
            hub=EventHub(buffer_size=500),
            executor_factory=executor_factory,
            **kwargs,
        )
        engine.add_listener(recorder)
        return engine

    return _make


async def attach_session(engine: CycleEngine, project_path: str) -> AutoSession:
    """Give an engine a session without starting its loop, so cycles can be stepped by hand."""
    async with engine.session_factory() as db:
        session = await repository.create_session(db, project_path, None, config={})
        await db.commit()
    engine.session_id = session.id
    engine.target_project = project_path
    return session


async def add_finding(
    session_factory,
    session_id: str,
    title: str = "Login button crashes",
    priority: FindingPriority = FindingPriority.P0,
    category: FindingCategory = FindingCategory.BUG,
    retry_count: int = 0,
    max_retries: int = 3,
    status: FindingStatus = FindingStatus.OPEN,
) -> Finding:
    async with session_factory() as db:
        finding = await repository.create_finding(
            db,
            session_id,
            max_retries=max_retries,
            category=category,
            priority=priority,
            title=title,
            description="",
            retry_count=retry_count,
            status=status,
        )
        await db.commit()
    return finding


async def wait_until(predicate: Callable[[], Any], timeout: float = 5.0) -> None:
    """Poll ``predicate`` (sync or async) until truthy or fail after ``timeout``."""
    deadline = asyncio.get_running_loop().time() + timeout
    while True:
        result = predicate()
        if asyncio.iscoroutine(result):
            result = await result
        if result:
            return
        if asyncio.get_running_loop().time() > deadline:
            raise AssertionError("Condition not reached in time")
        await asyncio.sleep(0.01)


# ==========================================================================
# API Fixtures
# ==========================================================================

@pytest_asyncio.fixture(scope="function")
async def app(session_factory, executors) -> AsyncGenerator[FastAPI, None]:
    """
    Provide the application with database override and a fake-executor engine.
    """
    app = create_app()

    async def override_get_db() -> AsyncGenerator[AsyncSession, None]:
        async with session_factory() as session:
            yield session
            await session.commit()

    app.dependency_overrides[get_db] = override_get_db
    app.state.engine = CycleEngine(
        session_factory=session_factory,
        executor_factory=executors,
        test_runner_factory=FakeTestRunner,
        cycle_delay=0,
    )

    yield app

    await app.state.engine.shutdown()
    app.dependency_overrides.clear()


@pytest_asyncio.fixture(scope="function")
async def client(app: FastAPI) -> AsyncGenerator[AsyncClient, None]:
    """Provide test HTTP client."""
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as client:
        yield client
