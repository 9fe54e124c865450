"""
PLANWRIGHT Workspace — the project checkout steps run against.

Thin wrapper over the git CLI and external binaries. Everything happens
in place: there is no sandbox, and an executed step's effects stay.
"""

from __future__ import annotations

import subprocess
from pathlib import Path

from loguru import logger


class WorkspaceError(Exception):
    pass


def run_cmd(cmd: list[str], cwd: Path, check: bool = True, timeout: int = 300) -> str:
    """Run ``cmd`` and return stdout. Raises WorkspaceError on failure when ``check``."""
    logger.debug(f"[WORKSPACE] $ {' '.join(cmd)}")
    try:
        result = subprocess.run(cmd, cwd=cwd, capture_output=True, text=True, timeout=timeout)
    except FileNotFoundError as e:
        raise WorkspaceError(f"Command not found: {cmd[0]}") from e
    except subprocess.TimeoutExpired as e:
        raise WorkspaceError(f"Timed out after {timeout}s: {' '.join(cmd)}") from e
    if check and result.returncode != 0:
        raise WorkspaceError(f"Command failed: {' '.join(cmd)}\n{(result.stderr or result.stdout).strip()}")
    return result.stdout


class Workspace:
    """Git view of the project root."""

    def __init__(self, repo_path: Path):
        self.repo_path = repo_path.resolve()

    def is_git_repo(self) -> bool:
        try:
            return self._git("rev-parse", "--is-inside-work-tree").strip() == "true"
        except WorkspaceError:
            return False

    def dirty_paths(self) -> list[str]:
        """Uncommitted changes outside .planwright/, as `git status --porcelain` lines."""
        status = self._git("status", "--porcelain")
        return [line for line in status.splitlines() if not line[3:].startswith(".planwright/")]

    def config_value(self, key: str) -> str | None:
        value = self._git("config", "--get", key, check=False).strip()
        return value or None

    def current_branch(self) -> str:
        return self._git("rev-parse", "--abbrev-ref", "HEAD").strip()

    def branch_exists(self, name: str) -> bool:
        return bool(self._git("branch", "--list", name).strip())

    def create_branch(self, name: str) -> None:
        self._git("checkout", "-b", name)
        logger.info(f"[GIT] Switched to new branch {name}")

    def commit(self, message: str) -> str | None:
        """Stage everything and commit. Returns the new sha, or None if there was nothing to commit."""
        self._git("add", "-A")
        if not self._git("status", "--porcelain").strip():
            logger.info("[GIT] Nothing to commit.")
            return None
        self._git("commit", "-m", message)
        return self._git("rev-parse", "HEAD").strip()

    def recent_log(self, count: int = 10) -> str:
        return self._git("log", f"-{count}", "--pretty=format:%s%n%b%n---", check=False)

    def changed_files(self) -> str:
        return self._git("status", "--short", check=False)

    def _git(self, *args: str, check: bool = True) -> str:
        return run_cmd(["git", *args], cwd=self.repo_path, check=check, timeout=60)
