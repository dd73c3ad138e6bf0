"""
Test Runner
===========

Runs the project's configured test command directly. Used when a test
cycle's assistant output carries no parseable summary.
"""

import asyncio
import re
import time
from dataclasses import dataclass
from typing import Optional, Tuple

import structlog

from autopilot.core.config import settings

logger = structlog.get_logger()

MAX_OUTPUT_CHARS = 20_000


@dataclass
class TestRunResult:
    passed: bool
    output: str
    exit_code: Optional[int]
    duration_ms: int
    pass_count: Optional[int] = None
    fail_count: Optional[int] = None
    total_count: Optional[int] = None

    # Not a test class, despite the name
    __test__ = False


def _first_int(pattern: str, output: str) -> Optional[int]:
    match = re.search(pattern, output)
    return int(match.group(1)) if match else None


def parse_test_counts(output: str) -> Tuple[Optional[int], Optional[int], Optional[int]]:
    """
    Pass/fail/total counts from common runner summaries.

    Jest, Vitest and pytest print "N passed" / "N failed" (Jest adds
    "N total"); Mocha prints "N passing" / "N failing".
    """
    passed = _first_int(r"(\d+)\s+passed", output)
    failed = _first_int(r"(\d+)\s+failed", output)
    total = _first_int(r"(\d+)\s+total", output)

    if passed is not None or failed is not None or total is not None:
        if total is None and passed is not None and failed is not None:
            total = passed + failed
        return passed, failed, total

    passed = _first_int(r"(\d+)\s+passing", output)
    failed = _first_int(r"(\d+)\s+failing", output)
    if passed is not None and failed is not None:
        total = passed + failed
    elif passed is not None:
        total = passed
    return passed, failed, total


class TestRunner:
    """Runs a shell test command inside the target project."""

    __test__ = False

    def __init__(self, project_path: str, timeout: Optional[float] = None):
        self.project_path = project_path
        self.timeout = settings.TEST_TIMEOUT_SECONDS if timeout is None else timeout

    async def run(self, command: str) -> TestRunResult:
        started = time.monotonic()

        def elapsed_ms() -> int:
            return int((time.monotonic() - started) * 1000)

        try:
            process = await asyncio.create_subprocess_shell(
                command,
                cwd=self.project_path,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except OSError as e:
            logger.error("Test command failed to start", command=command, error=str(e))
            return TestRunResult(
                passed=False, output=f"Process error: {e}", exit_code=None, duration_ms=elapsed_ms(),
            )

        try:
            stdout, stderr = await asyncio.wait_for(process.communicate(), timeout=self.timeout)
        except asyncio.TimeoutError:
            process.kill()
            await process.wait()
            logger.warning("Test command timed out", command=command, timeout=self.timeout)
            return TestRunResult(passed=False, output="Timeout", exit_code=None, duration_ms=elapsed_ms())

        output = stdout.decode("utf-8", errors="replace")
        if stderr:
            output += "\n" + stderr.decode("utf-8", errors="replace")

        pass_count, fail_count, total_count = parse_test_counts(output)
        result = TestRunResult(
            passed=process.returncode == 0,
            output=output[-MAX_OUTPUT_CHARS:],
            exit_code=process.returncode,
            duration_ms=elapsed_ms(),
            pass_count=pass_count,
            fail_count=fail_count,
            total_count=total_count,
        )
        logger.info(
            "Test command finished",
            command=command,
            exit_code=result.exit_code,
            passed=result.pass_count,
            failed=result.fail_count,
        )
        return result
