"""
Git Manager
===========

Checkpoint, diff and rollback against the target repository.

Every operation is best-effort: failures are logged and reported as
``None`` / ``False`` / ``""`` so a broken repository never fails a cycle.
"""

import asyncio
import logging
from dataclasses import dataclass
from typing import Optional

logger = logging.getLogger(__name__)

CHECKPOINT_PREFIX = "[autopilot] checkpoint"
GIT_TIMEOUT_SECONDS = 60


@dataclass
class GitResult:
    returncode: int
    stdout: str
    stderr: str

    @property
    def ok(self) -> bool:
        return self.returncode == 0


class GitError(RuntimeError):
    """A git command exited non-zero."""


class GitManager:
    """Async wrapper around the git CLI for one project directory."""

    def __init__(self, project_path: str):
        self.project_path = project_path

    async def _git(self, *args: str) -> GitResult:
        process = await asyncio.create_subprocess_exec(
            "git", *args,
            cwd=self.project_path,
            stdin=asyncio.subprocess.DEVNULL,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
        )
        try:
            stdout, stderr = await asyncio.wait_for(process.communicate(), timeout=GIT_TIMEOUT_SECONDS)
        except asyncio.TimeoutError:
            process.kill()
            await process.wait()
            raise GitError(f"git {args[0]} timed out")
        return GitResult(
            returncode=process.returncode,
            stdout=stdout.decode("utf-8", errors="replace"),
            stderr=stderr.decode("utf-8", errors="replace"),
        )

    async def _checked(self, *args: str) -> str:
        result = await self._git(*args)
        if not result.ok:
            raise GitError(f"git {' '.join(args[:2])} failed: {result.stderr.strip()}")
        return result.stdout

    async def is_git_repo(self) -> bool:
        try:
            result = await self._git("rev-parse", "--is-inside-work-tree")
        except (OSError, GitError):
            return False
        return result.ok and result.stdout.strip() == "true"

    async def get_current_sha(self) -> Optional[str]:
        try:
            return (await self._checked("rev-parse", "HEAD")).strip() or None
        except (OSError, GitError) as e:
            logger.warning(f"Could not read HEAD in {self.project_path}: {e}")
            return None

    async def ensure_branch(self, branch_name: str) -> bool:
        """Check out ``branch_name``, creating it from HEAD if missing."""
        try:
            exists = (await self._git("rev-parse", "--verify", "--quiet", branch_name)).ok
            if exists:
                await self._checked("checkout", branch_name)
            else:
                await self._checked("checkout", "-b", branch_name)
            logger.info(f"On branch {branch_name} in {self.project_path}")
            return True
        except (OSError, GitError) as e:
            logger.warning(f"Could not switch to branch {branch_name}: {e}")
            return False

    async def create_checkpoint(self, label: str) -> Optional[str]:
        """
        Commit all working-tree changes if there are any.

        Returns:
            The HEAD sha after the (possibly skipped) commit, or None on failure
        """
        try:
            await self._checked("add", "-A")
            staged = await self._git("diff", "--cached", "--quiet")
            if not staged.ok:
                await self._checked("commit", "-m", f"{CHECKPOINT_PREFIX}: {label}", "--no-verify")
            return await self.get_current_sha()
        except (OSError, GitError) as e:
            logger.warning(f"Checkpoint '{label}' failed: {e}")
            return None

    async def rollback(self, sha: str) -> bool:
        try:
            await self._checked("reset", "--hard", sha)
            logger.info(f"Rolled back {self.project_path} to {sha[:8]}")
            return True
        except (OSError, GitError) as e:
            logger.warning(f"Rollback to {sha} failed: {e}")
            return False

    async def get_diff(self, from_sha: str) -> str:
        """Changes since ``from_sha``, committed or not."""
        try:
            return await self._checked("diff", from_sha)
        except (OSError, GitError) as e:
            logger.warning(f"Diff from {from_sha} failed: {e}")
            return ""
