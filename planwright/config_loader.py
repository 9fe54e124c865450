"""
Configuration loader for PLANWRIGHT.
Merges defaults with per-repo .planwright/config.yaml overrides.
"""

from __future__ import annotations

import os
from pathlib import Path
from typing import Any

import yaml
from pydantic import BaseModel, Field


# ---------------------------------------------------------------------------
# Schema
# ---------------------------------------------------------------------------

class RoutingConfig(BaseModel):
    planner: str = "anthropic/claude-sonnet-4-20250514"
    matcher: str = "anthropic/claude-3-5-haiku-20241022"
    analyzer: str = "anthropic/claude-sonnet-4-20250514"
    editor: str = "anthropic/claude-sonnet-4-20250514"
    packages: str = "anthropic/claude-3-5-haiku-20241022"
    vcs: str = "anthropic/claude-3-5-haiku-20241022"


class LimitsConfig(BaseModel):
    max_regenerations: int = 3
    batch_token_budget: int = Field(default=30_000, gt=0)
    oracle_max_attempts: int = Field(default=5, ge=1)
    backoff_base_seconds: float = 1.0
    backoff_cap_seconds: float = 60.0
    history_window: int = 5
    max_tokens: int = 8192


class MatchingConfig(BaseModel):
    min_confidence: float = Field(default=0.5, ge=0.0, le=1.0)


class InterventionConfig(BaseModel):
    require_plan_approval: bool = True
    require_clean_tree: bool = True


class WorkspaceConfig(BaseModel):
    history_file: str = ".planwright/history.jsonl"


class ProjectConfig(BaseModel):
    excluded_patterns: list[str] = Field(default_factory=list)


class PlanwrightConfig(BaseModel):
    routing: RoutingConfig = Field(default_factory=RoutingConfig)
    limits: LimitsConfig = Field(default_factory=LimitsConfig)
    matching: MatchingConfig = Field(default_factory=MatchingConfig)
    intervention: InterventionConfig = Field(default_factory=InterventionConfig)
    workspace: WorkspaceConfig = Field(default_factory=WorkspaceConfig)
    project: ProjectConfig = Field(default_factory=ProjectConfig)


# ---------------------------------------------------------------------------
# Loader
# ---------------------------------------------------------------------------

_DEFAULT_CONFIG_PATH = Path(__file__).parent / "config.yaml"


def _deep_merge(base: dict, override: dict) -> dict:
    """Recursively merge override into base."""
    merged = base.copy()
    for key, value in override.items():
        if key in merged and isinstance(merged[key], dict) and isinstance(value, dict):
            merged[key] = _deep_merge(merged[key], value)
        else:
            merged[key] = value
    return merged


def _env_overrides() -> dict[str, Any]:
    overrides: dict[str, Any] = {}

    model = os.environ.get("PLANWRIGHT_MODEL")
    if model:
        overrides["routing"] = {role: model for role in RoutingConfig.model_fields}

    budget = os.environ.get("PLANWRIGHT_BATCH_TOKEN_BUDGET")
    if budget:
        overrides["limits"] = {"batch_token_budget": int(budget)}

    return overrides


def load_config(repo_path: Path | None = None) -> PlanwrightConfig:
    """
    Load config by merging:
      1. Built-in defaults (planwright/config.yaml)
      2. Repo-level overrides (<repo>/.planwright/config.yaml)
      3. Environment variable overrides (PLANWRIGHT_MODEL, PLANWRIGHT_BATCH_TOKEN_BUDGET)
    """
    with open(_DEFAULT_CONFIG_PATH, "r") as f:
        base: dict[str, Any] = yaml.safe_load(f) or {}

    if repo_path:
        repo_config = repo_path / ".planwright" / "config.yaml"
        if repo_config.exists():
            with open(repo_config, "r") as f:
                overrides: dict[str, Any] = yaml.safe_load(f) or {}
            base = _deep_merge(base, overrides)

    base = _deep_merge(base, _env_overrides())
    return PlanwrightConfig(**base)


def validate_api_keys() -> dict[str, bool]:
    """Check which API keys are available."""
    return {
        "ANTHROPIC_API_KEY": bool(os.environ.get("ANTHROPIC_API_KEY")),
        "OPENAI_API_KEY":    bool(os.environ.get("OPENAI_API_KEY")),
        "GEMINI_API_KEY":    bool(os.environ.get("GEMINI_API_KEY")),
    }
