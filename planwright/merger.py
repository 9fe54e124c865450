"""
PLANWRIGHT Merger — Batched Analysis

Lets an unbounded file corpus be analyzed under a fixed per-call cost.

Files are packed, in stable order, into batches whose estimated token
cost stays within budget. Each batch gets exactly one oracle call and
returns a partial AnalysisResult; the partials are deep-merged into one
composite result once every file has been analyzed.

A file that alone costs more than the budget is marked analyzed and
never sent anywhere.
"""

from __future__ import annotations

import copy
from dataclasses import dataclass, field
from typing import Any, Callable, Literal

from loguru import logger
from pydantic import BaseModel, Field

from planwright.tokens import estimate_tokens

DEFAULT_BATCH_TOKEN_BUDGET = 30_000


class AnalysisConflictError(Exception):
    """A path was classified as both a file to create and a file to modify."""

    def __init__(self, paths: list[str]):
        self.paths = paths
        super().__init__(
            "Analysis lists the same path under both files_to_create and "
            f"files_to_modify: {', '.join(paths)}"
        )


# ---------------------------------------------------------------------------
# Analysis schema
# ---------------------------------------------------------------------------

class FileReason(BaseModel):
    path: str
    why: str


class Creation(BaseModel):
    files_to_create: list[FileReason] | None = None
    files_to_modify: list[FileReason] | None = None


class Removal(BaseModel):
    file_paths_to_remove: list[FileReason] | None = None


class IndirectDependency(BaseModel):
    source_module_path: str
    dependent_modules: list[str] = Field(default_factory=list)
    why: str


class ModuleDependencies(BaseModel):
    indirect: list[IndirectDependency] | None = None


class AnalysisResult(BaseModel):
    """Which files a step needs to create, modify or remove."""
    creation: Creation | None = None
    removal: Removal | None = None
    module_dependencies: ModuleDependencies = Field(default_factory=ModuleDependencies)


class FileModificationIntent(BaseModel):
    path: str
    operation: Literal["create", "modify"]
    why: str
    content: str | None = None


# ---------------------------------------------------------------------------
# Deep merge
# ---------------------------------------------------------------------------

def deep_merge(base: Any, override: Any) -> Any:
    """Merge two JSON-like values without mutating either.

    Lists are concatenated, dicts are unioned recursively, and for
    anything else the override wins. A ``None`` override leaves the
    base untouched.
    """
    if override is None:
        return copy.deepcopy(base)
    if isinstance(base, dict) and isinstance(override, dict):
        merged = copy.deepcopy(base)
        for key, value in override.items():
            merged[key] = deep_merge(merged[key], value) if key in merged else copy.deepcopy(value)
        return merged
    if isinstance(base, list) and isinstance(override, list):
        return copy.deepcopy(base) + copy.deepcopy(override)
    return copy.deepcopy(override)


def merge_results(partials: list[AnalysisResult]) -> AnalysisResult:
    merged: dict[str, Any] = {}
    for partial in partials:
        merged = deep_merge(merged, partial.model_dump(exclude_none=True))
    return AnalysisResult.model_validate(merged)


def check_conflicts(result: AnalysisResult) -> None:
    """Reject a result that wants to both create and modify the same path."""
    if not result.creation:
        return
    to_create = {f.path for f in result.creation.files_to_create or []}
    to_modify = [f.path for f in result.creation.files_to_modify or []]
    clashes = sorted({p for p in to_modify if p in to_create})
    if clashes:
        raise AnalysisConflictError(clashes)


def intents_from_analysis(
    result: AnalysisResult,
    files: dict[str, str],
) -> list[FileModificationIntent]:
    """Turn an analysis into ordered per-file intents: modifications, then creations.

    Batches may name the same path more than once. Each path gets a single
    intent, in first-seen order, whose ``why`` joins the distinct reasons.
    """
    if not result.creation:
        return []

    modify: dict[str, FileModificationIntent] = {}
    for item in result.creation.files_to_modify or []:
        if item.path not in files:
            logger.warning(f"[MERGE] {item.path} marked for modification but not in the project, skipping")
            continue
        _add_intent(modify, item, "modify", files[item.path])

    create: dict[str, FileModificationIntent] = {}
    for item in result.creation.files_to_create or []:
        _add_intent(create, item, "create", None)

    return [*modify.values(), *create.values()]


def _add_intent(
    intents: dict[str, FileModificationIntent],
    item: FileReason,
    operation: Literal["create", "modify"],
    content: str | None,
) -> None:
    existing = intents.get(item.path)
    if existing is None:
        intents[item.path] = FileModificationIntent(
            path=item.path, operation=operation, why=item.why, content=content,
        )
        return
    logger.debug(f"[MERGE] {item.path} listed by more than one batch, merging reasons")
    if item.why and item.why not in existing.why.split("; "):
        why = f"{existing.why}; {item.why}" if existing.why else item.why
        intents[item.path] = existing.model_copy(update={"why": why})


# ---------------------------------------------------------------------------
# Batching
# ---------------------------------------------------------------------------

@dataclass
class Batch:
    files: dict[str, str] = field(default_factory=dict)
    token_count: int = 0


@dataclass
class MergeOutcome:
    result: AnalysisResult
    batches: list[Batch]
    skipped: list[str]
    analyzed: set[str]


class BatchedAnalysisMerger:
    """Drives one analysis call per budget-bounded batch and merges the partials.

    ``analyze_batch`` is called strictly sequentially. Any exception it
    raises propagates unchanged; retrying belongs to the oracle layer.
    """

    def __init__(
        self,
        budget: int = DEFAULT_BATCH_TOKEN_BUDGET,
        estimator: Callable[[str], int] = estimate_tokens,
    ):
        if budget <= 0:
            raise ValueError(f"Batch token budget must be positive, got {budget}")
        self.budget = budget
        self.estimator = estimator

    def analyze(
        self,
        files: dict[str, str],
        analyze_batch: Callable[[Batch], AnalysisResult],
    ) -> MergeOutcome:
        analyzed: set[str] = set()
        skipped: list[str] = []
        batches: list[Batch] = []
        partials: list[AnalysisResult] = []

        logger.info(f"[MERGE] Analyzing {len(files)} files (budget {self.budget:,} tokens/batch)")

        while len(analyzed) < len(files):
            batch = self._next_batch(files, analyzed, skipped)
            if not batch.files:
                # Only oversized files were left; they are already marked.
                continue

            logger.debug(
                f"[MERGE] Batch #{len(batches) + 1}: {len(batch.files)} files, "
                f"{batch.token_count:,} tokens"
            )
            partials.append(analyze_batch(batch))
            batches.append(batch)
            analyzed.update(batch.files)

        result = merge_results(partials)
        logger.info(
            f"[MERGE] Done — {len(batches)} batches, {len(skipped)} skipped as oversized"
        )
        return MergeOutcome(result=result, batches=batches, skipped=skipped, analyzed=analyzed)

    def _next_batch(self, files: dict[str, str], analyzed: set[str], skipped: list[str]) -> Batch:
        batch = Batch()
        for path, content in files.items():
            if path in analyzed:
                continue

            cost = self.estimator(content)
            if cost > self.budget:
                logger.warning(f"[MERGE] {path} is too large ({cost:,} tokens), skipping analysis")
                analyzed.add(path)
                skipped.append(path)
                continue

            if batch.token_count + cost > self.budget:
                if batch.files:
                    break
                continue

            batch.files[path] = content
            batch.token_count += cost
        return batch
