"""
PLANWRIGHT History — what previous runs did.

Append-only JSONL log, one line per successfully executed step. Read
back newest-first and fed to the planner so plans can build on (or
avoid repeating) earlier work.
"""

from __future__ import annotations

import json
from collections import Counter
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

from loguru import logger
from pydantic import BaseModel, Field, ValidationError


class HistoryEntry(BaseModel):
    timestamp: str = Field(default_factory=lambda: datetime.now(timezone.utc).isoformat())
    operation: str
    description: str = ""
    data: dict[str, Any] = Field(default_factory=dict)


class RunHistory:
    def __init__(self, repo_path: Path, history_file: str = ".planwright/history.jsonl"):
        self.path = repo_path / history_file

    def record(self, operation: str, description: str = "", data: dict[str, Any] | None = None) -> HistoryEntry:
        entry = HistoryEntry(operation=operation, description=description, data=data or {})
        self.path.parent.mkdir(parents=True, exist_ok=True)
        with open(self.path, "a", encoding="utf-8") as f:
            f.write(entry.model_dump_json() + "\n")
        logger.debug(f"[HISTORY] Recorded {operation}")
        return entry

    def _read_all(self) -> list[HistoryEntry]:
        if not self.path.exists():
            return []
        entries: list[HistoryEntry] = []
        with open(self.path, "r", encoding="utf-8") as f:
            for lineno, line in enumerate(f, start=1):
                if not line.strip():
                    continue
                try:
                    entries.append(HistoryEntry.model_validate_json(line))
                except ValidationError:
                    logger.warning(f"[HISTORY] Skipping malformed entry at line {lineno}")
        return entries

    def recent(self, limit: int = 5) -> list[HistoryEntry]:
        """Most recent entries first."""
        if limit <= 0:
            return []
        return list(reversed(self._read_all()))[:limit]

    def stats(self) -> dict[str, Any]:
        entries = self._read_all()
        by_operation = Counter(e.operation for e in entries)
        return {
            "total": len(entries),
            "by_operation": dict(by_operation),
            "last": entries[-1].timestamp if entries else None,
        }

    def format_for_prompt(self, limit: int = 5) -> str:
        entries = self.recent(limit)
        if not entries:
            return ""

        lines = [f'<history showing="{len(entries)}" order="newest-first">']
        for e in entries:
            lines.append(f'  <operation name="{e.operation}" at="{e.timestamp}">')
            if e.description:
                lines.append(f"    <description>{e.description}</description>")
            if e.data:
                lines.append(f"    <data>{json.dumps(e.data, sort_keys=True)}</data>")
            lines.append("  </operation>")
        lines.append("</history>")
        return "\n".join(lines)
