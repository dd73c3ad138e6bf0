"""
Subprocess Executor
===================

Owns one invocation of the assistant CLI: spawns it, streams its stdout
through the ``StreamParser``, watches for rate limits and classifies how
the run ended.

``execute()`` is an async generator yielding ``StreamUpdate`` messages
followed by exactly one terminal message, either ``RateLimited`` or
``ExecutionResult``. ``run()`` consumes it and forwards updates to a
callback, which is what the pipeline and cycle engine use.
"""

import asyncio
import codecs
import os
import shutil
import time
from contextlib import aclosing
from dataclasses import dataclass, field
from functools import lru_cache
from typing import Any, AsyncIterator, Callable, Dict, List, Optional, Union

import structlog

from autopilot.core.config import settings
from autopilot.core.engine.rate_limit import RateLimitDetector, RateLimitInfo
from autopilot.core.engine.stream_parser import StreamParser
from autopilot.core.events import AutoEvent, AutoEventType

logger = structlog.get_logger()

READ_CHUNK_SIZE = 64 * 1024

# Variables that make the CLI believe it is nested inside another session
STRIPPED_ENV_VARS = ("CLAUDECODE", "CLAUDE_CODE_ENTRYPOINT")


# ==========================================================================
# Outcomes
# ==========================================================================

@dataclass
class StreamUpdate:
    """Incremental text or tool marker from a running invocation."""
    type: AutoEventType
    data: Dict[str, Any] = field(default_factory=dict)

    def to_event(self) -> AutoEvent:
        return AutoEvent(type=self.type, data=dict(self.data))


@dataclass
class RateLimited:
    """Terminal: the invocation hit a usage limit."""
    info: RateLimitInfo
    output: str = ""
    cost_usd: Optional[float] = None
    duration_ms: Optional[int] = None


@dataclass
class ExecutionResult:
    """Terminal: the process exited (or could not be started)."""
    cost_usd: Optional[float]
    duration_ms: Optional[int]
    output: str
    is_error: bool
    cancelled: bool = False
    exit_code: Optional[int] = None
    error: Optional[str] = None


ExecutionOutcome = Union[StreamUpdate, RateLimited, ExecutionResult]
TerminalOutcome = Union[RateLimited, ExecutionResult]


class ExecutorBusyError(RuntimeError):
    """Raised when an executor is asked to run two invocations at once."""


@lru_cache(maxsize=32)
def resolve_binary(binary: str) -> Optional[str]:
    """Absolute paths are used as-is; bare names are looked up on PATH once."""
    if os.path.isabs(binary):
        return binary
    return shutil.which(binary)


@dataclass
class _InvocationState:
    output: str = ""
    cost_usd: Optional[float] = None
    duration_ms: Optional[int] = None
    in_tool_use: bool = False
    current_tool: str = "unknown"
    seen_deltas: bool = False


# ==========================================================================
# Executor
# ==========================================================================

class ClaudeExecutor:
    """Runs the assistant CLI one invocation at a time."""

    def __init__(
        self,
        binary: Optional[str] = None,
        max_turns: Optional[int] = None,
        kill_grace_seconds: Optional[float] = None,
    ):
        self.binary = binary or settings.CLAUDE_BINARY
        self.max_turns = max_turns or settings.CLAUDE_MAX_TURNS
        self.kill_grace_seconds = (
            settings.KILL_GRACE_SECONDS if kill_grace_seconds is None else kill_grace_seconds
        )
        self.detector = RateLimitDetector()
        self.process: Optional[asyncio.subprocess.Process] = None
        self._killed = False
        self._active = False
        self._force_kill_handle: Optional[asyncio.TimerHandle] = None

    def build_args(self, instructions: str) -> List[str]:
        return [
            "-p", instructions,
            "--output-format", "stream-json",
            "--include-partial-messages",
            "--verbose",
            "--max-turns", str(self.max_turns),
            "--dangerously-skip-permissions",
        ]

    @staticmethod
    def build_env() -> Dict[str, str]:
        env = dict(os.environ)
        for name in STRIPPED_ENV_VARS:
            env.pop(name, None)
        return env

    def is_running(self) -> bool:
        return self.process is not None and self.process.returncode is None and not self._killed

    # ======================================================================
    # Execution
    # ======================================================================

    async def execute(self, instructions: str, working_directory: str) -> AsyncIterator[ExecutionOutcome]:
        """
        Run one invocation.

        Args:
            instructions: Prompt passed with ``-p``
            working_directory: Directory the CLI runs in

        Yields:
            ``StreamUpdate`` items, then one ``RateLimited`` or ``ExecutionResult``

        Raises:
            ExecutorBusyError: If another invocation is still in flight
        """
        if self._active:
            raise ExecutorBusyError("Executor is already running an invocation")

        self._active = True
        self._killed = False
        try:
            async with aclosing(self._execute(instructions, working_directory)) as outcomes:
                async for outcome in outcomes:
                    yield outcome
        finally:
            self._active = False

    async def _execute(self, instructions: str, working_directory: str) -> AsyncIterator[ExecutionOutcome]:
        binary = resolve_binary(self.binary)
        if binary is None:
            message = f"Assistant CLI '{self.binary}' was not found on PATH"
            logger.error("Executor binary not found", binary=self.binary)
            yield ExecutionResult(
                cost_usd=None, duration_ms=None, output=message, is_error=True, error=message,
            )
            return

        started = time.monotonic()
        state = _InvocationState()
        parser = StreamParser()
        decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")

        try:
            self.process = await asyncio.create_subprocess_exec(
                binary,
                *self.build_args(instructions),
                cwd=working_directory,
                env=self.build_env(),
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except OSError as e:
            logger.error("Failed to spawn assistant CLI", binary=binary, error=str(e))
            yield ExecutionResult(
                cost_usd=None,
                duration_ms=None,
                output=f"Process error: {e}",
                is_error=True,
                error=str(e),
            )
            return

        process = self.process
        logger.info("Assistant CLI started", pid=process.pid, cwd=working_directory)
        stderr_task = asyncio.create_task(self._drain(process.stderr))
        if self._killed:
            # kill() arrived while the process was being spawned
            self.kill()

        def elapsed_ms() -> int:
            return int((time.monotonic() - started) * 1000)

        try:
            eof = False
            while not eof:
                chunk = await process.stdout.read(READ_CHUNK_SIZE)
                if chunk:
                    events = parser.feed(decoder.decode(chunk))
                else:
                    eof = True
                    events = parser.feed(decoder.decode(b"", final=True)) + parser.flush()

                for event in events:
                    limit = self.detector.check_event(event)
                    if limit.detected:
                        logger.warning("Rate limit in stream", source=limit.source)
                        self.kill()
                        yield RateLimited(
                            info=limit,
                            output=state.output,
                            cost_usd=state.cost_usd,
                            duration_ms=state.duration_ms or elapsed_ms(),
                        )
                        return
                    for update in self._handle_event(event, state):
                        yield update

            exit_code = await process.wait()
            stderr = await stderr_task
            duration_ms = state.duration_ms or elapsed_ms()

            if self._killed:
                yield ExecutionResult(
                    cost_usd=state.cost_usd,
                    duration_ms=duration_ms,
                    output=state.output,
                    is_error=True,
                    cancelled=True,
                    exit_code=exit_code,
                )
                return

            if exit_code != 0:
                for limit in (
                    self.detector.check_exit_code(exit_code),
                    self.detector.check_text(f"{state.output}\n{stderr}"),
                ):
                    if limit.detected:
                        logger.warning("Rate limit on exit", source=limit.source, exit_code=exit_code)
                        yield RateLimited(
                            info=limit,
                            output=state.output,
                            cost_usd=state.cost_usd,
                            duration_ms=duration_ms,
                        )
                        return

            logger.info("Assistant CLI exited", exit_code=exit_code, cost_usd=state.cost_usd)
            yield ExecutionResult(
                cost_usd=state.cost_usd,
                duration_ms=duration_ms,
                output=state.output,
                is_error=exit_code != 0,
                exit_code=exit_code,
                error=(stderr.strip()[-2000:] or None) if exit_code != 0 else None,
            )
        finally:
            if process.returncode is None:
                self.kill()
                await process.wait()
            if not stderr_task.done():
                stderr_task.cancel()
            if self._force_kill_handle is not None:
                self._force_kill_handle.cancel()
                self._force_kill_handle = None
            self.process = None

    async def run(
        self,
        instructions: str,
        working_directory: str,
        on_event: Optional[Callable[[StreamUpdate], None]] = None,
    ) -> TerminalOutcome:
        """Consume ``execute()``, forwarding updates, and return the terminal outcome."""
        terminal: Optional[TerminalOutcome] = None
        async with aclosing(self.execute(instructions, working_directory)) as outcomes:
            async for outcome in outcomes:
                if isinstance(outcome, StreamUpdate):
                    if on_event is not None:
                        on_event(outcome)
                else:
                    terminal = outcome
        if terminal is None:
            raise RuntimeError("Executor finished without a terminal outcome")
        return terminal

    def kill(self) -> None:
        """SIGTERM now, SIGKILL after the grace period if still alive."""
        self._killed = True
        process = self.process
        if process is None or process.returncode is not None:
            return
        try:
            process.terminate()
        except ProcessLookupError:
            return
        loop = asyncio.get_running_loop()
        self._force_kill_handle = loop.call_later(self.kill_grace_seconds, self._force_kill, process)

    @staticmethod
    def _force_kill(process: asyncio.subprocess.Process) -> None:
        if process.returncode is None:
            try:
                process.kill()
            except ProcessLookupError:
                pass

    # ======================================================================
    # Stream Events
    # ======================================================================

    def _handle_event(self, event: Dict[str, Any], state: _InvocationState) -> List[StreamUpdate]:
        event_type = event.get("type")

        if event_type == "content_block_delta":
            delta = event.get("delta") or {}
            text = delta.get("text")
            if delta.get("type") == "text_delta" and text:
                state.seen_deltas = True
                state.output += text
                return [StreamUpdate(AutoEventType.TEXT_DELTA, {"text": text})]

        elif event_type == "content_block_start":
            block = event.get("content_block") or {}
            if block.get("type") == "tool_use":
                state.in_tool_use = True
                state.current_tool = block.get("name") or "unknown"
                return [StreamUpdate(
                    AutoEventType.TOOL_START,
                    {"tool": state.current_tool, "id": block.get("id") or ""},
                )]

        elif event_type == "content_block_stop":
            if state.in_tool_use:
                state.in_tool_use = False
                tool, state.current_tool = state.current_tool, "unknown"
                return [StreamUpdate(AutoEventType.TOOL_END, {"tool": tool})]

        elif event_type == "assistant":
            # Full messages only count when no deltas were streamed
            if not state.seen_deltas:
                updates = []
                message = event.get("message") or {}
                for block in message.get("content") or []:
                    if isinstance(block, dict) and block.get("type") == "text" and block.get("text"):
                        state.output += block["text"]
                        updates.append(StreamUpdate(AutoEventType.TEXT_DELTA, {"text": block["text"]}))
                return updates

        elif event_type == "result":
            if event.get("cost_usd") is not None:
                state.cost_usd = float(event["cost_usd"])
            if event.get("total_cost_usd") is not None:
                state.cost_usd = float(event["total_cost_usd"])
            if event.get("duration_ms") is not None:
                state.duration_ms = int(event["duration_ms"])

        return []

    @staticmethod
    async def _drain(stream: Optional[asyncio.StreamReader]) -> str:
        if stream is None:
            return ""
        data = await stream.read()
        text = data.decode("utf-8", errors="replace")
        if text.strip():
            logger.debug("Assistant CLI stderr", stderr=text.strip()[:1000])
        return text
