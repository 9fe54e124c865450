"""
PLANWRIGHT Project Files — what the handlers get to see.

Uses git ls-files for discovery (respects .gitignore automatically),
falls back to a manual walk outside git, then drops anything matching
the configured exclusion wildcards. Binary and undecodable files are
skipped, not reported.
"""

from __future__ import annotations

import re
import subprocess
from functools import lru_cache
from pathlib import Path

from loguru import logger

MAX_FILE_BYTES = 1_000_000


# ---------------------------------------------------------------------------
# Wildcards
# ---------------------------------------------------------------------------

@lru_cache(maxsize=256)
def _compile_wildcard(pattern: str) -> re.Pattern[str]:
    out: list[str] = []
    i = 0
    while i < len(pattern):
        if pattern.startswith("**/", i):
            out.append("(?:.*/)?")
            i += 3
        elif pattern.startswith("/**", i) and i + 3 == len(pattern):
            out.append("(?:/.*)?")
            i += 3
        elif pattern.startswith("**", i):
            out.append(".*")
            i += 2
        elif pattern[i] == "*":
            out.append("[^/]*")
            i += 1
        elif pattern[i] == "?":
            out.append("[^/]")
            i += 1
        else:
            out.append(re.escape(pattern[i]))
            i += 1
    return re.compile("".join(out))


def match_wildcard(path: str, pattern: str) -> bool:
    """Glob match where ``*`` stays within a path segment and ``**`` spans segments."""
    return _compile_wildcard(pattern).fullmatch(path) is not None


def matches_any(path: str, patterns: list[str] | tuple[str, ...]) -> bool:
    return any(match_wildcard(path, p) for p in patterns)


# ---------------------------------------------------------------------------
# Discovery
# ---------------------------------------------------------------------------

def _discover(repo_path: Path) -> list[str]:
    try:
        raw = subprocess.check_output(
            ["git", "ls-files", "--cached", "--others", "--exclude-standard"],
            cwd=repo_path, text=True, stderr=subprocess.DEVNULL,
        ).splitlines()
        return sorted(set(raw))
    except (subprocess.CalledProcessError, FileNotFoundError):
        logger.warning("[FILES] Not a git repository, falling back to manual walk.")
        return sorted(p.relative_to(repo_path).as_posix() for p in repo_path.rglob("*") if p.is_file())


def load_project_files(repo_path: Path, excluded_patterns: list[str] | None = None) -> dict[str, str]:
    """Map of relative path → text content for every eligible project file."""
    repo_path = repo_path.resolve()
    excluded = excluded_patterns or []
    files: dict[str, str] = {}

    for rel_path in _discover(repo_path):
        if matches_any(rel_path, excluded):
            continue
        full_path = repo_path / rel_path
        if not full_path.is_file() or full_path.stat().st_size > MAX_FILE_BYTES:
            continue
        try:
            files[rel_path] = full_path.read_text(encoding="utf-8")
        except (UnicodeDecodeError, OSError) as e:
            logger.debug(f"[FILES] Skipping {rel_path}: {e}")

    logger.info(f"[FILES] {len(files)} project files loaded")
    return files
