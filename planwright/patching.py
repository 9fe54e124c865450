"""
PLANWRIGHT Patching — commits generated content to disk.

Modifications never overwrite a file wholesale. The old and new content
are turned into a unified diff, and the diff is applied to whatever is
on disk, so a file that drifted since it was analyzed fails loudly
instead of being silently clobbered.

  create  → placeholder, then full content
  modify  → diff → load → apply → verify non-empty → write
  delete  → direct removal, idempotent
"""

from __future__ import annotations

import difflib
import re
import shutil
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Generic, TypeVar, Union

from loguru import logger

T = TypeVar("T")
U = TypeVar("U")

NO_NEWLINE_MARKER = "\\ No newline at end of file"

_HUNK_HEADER = re.compile(r"^@@ -(\d+)(?:,(\d+))? \+(\d+)(?:,(\d+))? @@")
_LINE = re.compile(r"[^\n]*\n|[^\n]+")


def split_lines(text: str) -> list[str]:
    """Lines with their endings, broken on "\\n" only.

    str.splitlines also breaks on form feeds, \\x1c-\\x1e, \\x85, \\u2028 and
    \\u2029, all of which may appear inside a source line.
    """
    return _LINE.findall(text)


class PatchApplicationError(Exception):
    """A file operation could not be committed to disk."""

    def __init__(self, path: str, reason: str):
        self.path = path
        self.reason = reason
        super().__init__(f"{path}: {reason}")


# ---------------------------------------------------------------------------
# Result type
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class Ok(Generic[T]):
    value: T

    @property
    def ok(self) -> bool:
        return True

    def then(self, fn: Callable[[T], "Result[U]"]) -> "Result[U]":
        return fn(self.value)


@dataclass(frozen=True)
class Err:
    reason: str

    @property
    def ok(self) -> bool:
        return False

    def then(self, fn: Callable) -> "Err":
        return self


Result = Union[Ok[T], Err]


# ---------------------------------------------------------------------------
# Diff computation + application
# ---------------------------------------------------------------------------

def compute_patch(path: str, old_content: str, new_content: str) -> str:
    """Unified diff turning ``old_content`` into ``new_content``.

    Lines without a trailing newline are followed by the standard
    "no newline" marker so applying the diff is byte-exact.
    """
    diff = difflib.unified_diff(
        split_lines(old_content),
        split_lines(new_content),
        fromfile=f"a/{path}",
        tofile=f"b/{path}",
    )
    out: list[str] = []
    for line in diff:
        if line.endswith("\n"):
            out.append(line)
        else:
            out.append(line + "\n")
            out.append(NO_NEWLINE_MARKER + "\n")
    return "".join(out)


@dataclass
class _Hunk:
    old_start: int
    old_count: int
    lines: list[tuple[str, str]]  # (op, text) with op in " ", "-", "+"


def _parse_hunks(patch: str) -> Result[list[_Hunk]]:
    raw = split_lines(patch)
    hunks: list[_Hunk] = []
    i = 0

    while i < len(raw):
        header = _HUNK_HEADER.match(raw[i])
        if not header:
            i += 1
            continue

        old_count = int(header.group(2)) if header.group(2) is not None else 1
        new_count = int(header.group(4)) if header.group(4) is not None else 1
        hunk = _Hunk(old_start=int(header.group(1)), old_count=old_count, lines=[])
        i += 1

        old_left, new_left = old_count, new_count
        while old_left > 0 or new_left > 0:
            if i >= len(raw):
                return Err(f"truncated hunk at line {hunk.old_start}")
            line = raw[i]
            if line.startswith("\\"):
                i += 1
                continue
            # Some tools strip the leading space from blank context lines
            op, text = (" ", line) if line in ("\n", "\r\n") else (line[0], line[1:])
            if op == " ":
                old_left -= 1
                new_left -= 1
            elif op == "-":
                old_left -= 1
            elif op == "+":
                new_left -= 1
            else:
                return Err(f"unexpected line in hunk: {line.rstrip()!r}")
            hunk.lines.append((op, text))
            i += 1

            if i < len(raw) and raw[i].startswith("\\") and hunk.lines:
                last_op, last_text = hunk.lines[-1]
                hunk.lines[-1] = (last_op, last_text.rstrip("\n"))
                i += 1

        if old_left < 0 or new_left < 0:
            return Err(f"hunk at line {hunk.old_start} overruns its header counts")
        hunks.append(hunk)

    return Ok(hunks)


def apply_patch(patch: str, original: str) -> Result[str]:
    """Apply a unified diff to ``original``.

    Every context and removed line must match the original exactly;
    there is no fuzz. Returns ``Ok(patched)`` or ``Err(reason)``.
    """
    parsed = _parse_hunks(patch)
    if not parsed.ok:
        return parsed

    source = split_lines(original)
    result: list[str] = []
    pos = 0

    for number, hunk in enumerate(parsed.value, start=1):
        start = hunk.old_start if hunk.old_count == 0 else hunk.old_start - 1
        if start < pos or start > len(source):
            return Err(f"hunk #{number} starts at line {hunk.old_start}, outside the file")

        result.extend(source[pos:start])
        pos = start

        for op, text in hunk.lines:
            if op == "+":
                result.append(text)
                continue
            if pos >= len(source) or source[pos] != text:
                found = source[pos].rstrip("\n") if pos < len(source) else "<end of file>"
                return Err(
                    f"hunk #{number} does not apply at line {pos + 1}: "
                    f"expected {text.rstrip(chr(10))!r}, found {found!r}"
                )
            if op == " ":
                result.append(text)
            pos += 1

    result.extend(source[pos:])
    return Ok("".join(result))


def _verify_non_empty(content: str) -> Result[str]:
    if not content.strip():
        return Err("patched content is empty")
    return Ok(content)


# ---------------------------------------------------------------------------
# Patch Applier
# ---------------------------------------------------------------------------

class PatchApplier:
    """Creates, modifies and deletes files beneath a project root."""

    def __init__(self, root: Path):
        self.root = root.resolve()

    def _resolve(self, path: str) -> Path:
        target = (self.root / path).resolve()
        if target != self.root and not target.is_relative_to(self.root):
            raise PatchApplicationError(path, "path escapes the project root")
        return target

    def create(self, path: str, content: str) -> None:
        target = self._resolve(path)
        try:
            target.parent.mkdir(parents=True, exist_ok=True)
            target.touch()
            target.write_text(content, encoding="utf-8")
        except OSError as e:
            raise PatchApplicationError(path, f"could not create file: {e}") from e
        logger.info(f"[PATCH] Created {path}")

    def modify(self, path: str, old_content: str, new_content: str) -> None:
        target = self._resolve(path)
        patch = compute_patch(path, old_content, new_content)
        if not patch:
            logger.debug(f"[PATCH] {path} unchanged, nothing to apply")
            return

        logger.debug(f"[PATCH] Diff for {path}:\n{patch[:1000]}")

        result = (
            self._load(target)
            .then(lambda original: apply_patch(patch, original))
            .then(_verify_non_empty)
        )
        if not result.ok:
            logger.warning(f"[PATCH] {path}: {result.reason}")
            raise PatchApplicationError(path, result.reason)

        try:
            target.write_text(result.value, encoding="utf-8")
        except OSError as e:
            raise PatchApplicationError(path, f"could not write patched file: {e}") from e
        logger.info(f"[PATCH] Modified {path}")

    def delete(self, path: str) -> None:
        target = self._resolve(path)
        if not target.exists():
            logger.debug(f"[PATCH] {path} already absent")
            return
        try:
            if target.is_dir():
                shutil.rmtree(target)
            else:
                target.unlink()
        except OSError as e:
            raise PatchApplicationError(path, f"could not delete: {e}") from e
        logger.info(f"[PATCH] Deleted {path}")

    @staticmethod
    def _load(target: Path) -> Result[str]:
        try:
            return Ok(target.read_text(encoding="utf-8"))
        except FileNotFoundError:
            return Err("file not found")
        except (OSError, UnicodeDecodeError) as e:
            return Err(f"could not read file: {e}")
