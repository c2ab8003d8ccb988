"""Read-only git inspection used by ``git-status`` conditions."""

from __future__ import annotations

import subprocess
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional

from ..constants import GIT_CURRENT_BRANCH, GIT_STATUS, GIT_UNTRACKED_FILES


@dataclass(frozen=True)
class GitStatus:
    branch: str
    changed_files: list[str] = field(default_factory=list)
    untracked_files: list[str] = field(default_factory=list)

    @property
    def is_clean(self) -> bool:
        return not self.changed_files

    def as_dict(self) -> dict:
        return {
            "currentBranch": self.branch,
            "isClean": self.is_clean,
            "changedFiles": list(self.changed_files),
            "untrackedFiles": list(self.untracked_files),
        }


class GitInspector:
    """Shells out to ``git`` for branch and working-tree state.

    Every command goes through ``_git`` which raises
    ``subprocess.CalledProcessError`` when git fails (for example outside a
    repository) and ``subprocess.TimeoutExpired`` when it hangs.
    """

    def __init__(self, *, timeout: Optional[float] = None) -> None:
        self.timeout = timeout

    def current_branch(self, *, cwd: Path) -> str:
        return self._git(GIT_CURRENT_BRANCH, cwd=cwd).strip()

    def changed_files(self, *, cwd: Path) -> list[str]:
        out = self._git(GIT_STATUS, cwd=cwd)
        return [line[3:] for line in out.splitlines() if line.strip()]

    def untracked_files(self, *, cwd: Path) -> list[str]:
        out = self._git(GIT_UNTRACKED_FILES, cwd=cwd)
        return [line for line in out.splitlines() if line.strip()]

    def status(self, *, cwd: Path) -> GitStatus:
        return GitStatus(
            branch=self.current_branch(cwd=cwd),
            changed_files=self.changed_files(cwd=cwd),
            untracked_files=self.untracked_files(cwd=cwd),
        )

    def _git(self, args: list[str], *, cwd: Path) -> str:
        p = subprocess.run(
            ["git", *args],
            cwd=cwd,
            text=True,
            check=True,
            capture_output=True,
            timeout=self.timeout,
        )
        return p.stdout
