from __future__ import annotations

import subprocess
from pathlib import Path
from typing import Protocol

from flowwatch.observability import get_logger

logger = get_logger(__name__)


class ProjectInspector(Protocol):
    """Read-only view of the project's version-control state."""

    def current_branch(self) -> str | None: ...

    def staged_files(self) -> list[str]: ...

    def staged_content(self, path: str) -> str | None: ...


class GitInspector:
    def __init__(self, repo_root: Path) -> None:
        self.repo_root = repo_root

    def _run_git(self, args: list[str]) -> subprocess.CompletedProcess[str] | None:
        try:
            proc = subprocess.run(
                ["git", "--no-pager", *args],
                cwd=self.repo_root,
                text=True,
                capture_output=True,
                timeout=10,
            )
        except (OSError, subprocess.TimeoutExpired) as exc:
            logger.debug("git %s failed: %s", " ".join(args), exc)
            return None
        if proc.returncode != 0:
            logger.debug("git %s exited %d: %s", " ".join(args), proc.returncode, proc.stderr.strip())
            return None
        return proc

    def current_branch(self) -> str | None:
        proc = self._run_git(["branch", "--show-current"])
        if proc is None:
            return None
        return proc.stdout.strip() or None

    def staged_files(self) -> list[str]:
        proc = self._run_git(["diff", "--cached", "--name-only", "--diff-filter=ACM"])
        if proc is None:
            return []
        return [line.strip() for line in proc.stdout.splitlines() if line.strip()]

    def staged_content(self, path: str) -> str | None:
        proc = self._run_git(["show", f":{path}"])
        return proc.stdout if proc is not None else None


class StaticInspector:
    """Fixed project state, for tests and for hosts that already know it."""

    def __init__(
        self,
        *,
        branch: str | None = None,
        staged: dict[str, str] | None = None,
    ) -> None:
        self.branch = branch
        self.staged = dict(staged or {})

    def current_branch(self) -> str | None:
        return self.branch

    def staged_files(self) -> list[str]:
        return list(self.staged)

    def staged_content(self, path: str) -> str | None:
        return self.staged.get(path)
