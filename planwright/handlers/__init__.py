"""
PLANWRIGHT Handlers — the step executors.

Each handler is:
  - A name the planner refers to
  - A fixed tuple of hookable operation names (declared on the class)
  - A file requirement: explicit paths, or include/exclude wildcards
  - execute(ctx): carries out one plan step

Handlers build every oracle prompt as PromptMessages and send them
through the transform engine, so matched interceptors can rewrite them.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from pathlib import Path
from typing import TYPE_CHECKING, Any, Callable, TypeVar, Union

from loguru import logger

from planwright.project_files import matches_any
from planwright.prompting import PromptMessage, TransformEngine
from planwright.registry import MatchRecord

if TYPE_CHECKING:
    from planwright.config_loader import PlanwrightConfig
    from planwright.oracle import Oracle
    from planwright.planner import InterceptorUse, Plan, Step

T = TypeVar("T")


# ---------------------------------------------------------------------------
# Requirements
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class RequiredPaths:
    paths: tuple[str, ...] = ()


@dataclass(frozen=True)
class RequiredWildcards:
    include: tuple[str, ...] = ("**/*",)
    exclude: tuple[str, ...] = ()


Requirements = Union[RequiredPaths, RequiredWildcards]


def resolve_required_files(requirements: Requirements, files: dict[str, str]) -> dict[str, str]:
    """The subset of project files a handler asked for.

    Excludes are applied after includes, against the already included paths.
    """
    if isinstance(requirements, RequiredPaths):
        found = {p: files[p] for p in requirements.paths if p in files}
        missing = [p for p in requirements.paths if p not in files]
        if missing:
            logger.debug(f"[FILES] Required files not in project: {missing}")
        return found

    included = {p: c for p, c in files.items() if matches_any(p, requirements.include)}
    return {p: c for p, c in included.items() if not matches_any(p, requirements.exclude)}


# ---------------------------------------------------------------------------
# Context
# ---------------------------------------------------------------------------

@dataclass
class HandlerContext:
    """Everything a handler gets for one step."""
    user_request: str
    step: Step
    plan: Plan
    files: dict[str, str]
    record: MatchRecord
    root: Path
    data: dict[str, Any] = field(default_factory=dict)

    @property
    def step_description(self) -> str:
        return self.step.description

    @property
    def step_interceptors(self) -> list[InterceptorUse]:
        return list(self.step.interceptors or [])


class StepSkipped(Exception):
    """The handler decided not to run this step. Not a failure."""


# ---------------------------------------------------------------------------
# Base class
# ---------------------------------------------------------------------------

class BaseHandler(ABC):
    """
    Subclasses define:
      - name: str — how plans refer to the handler
      - description / planning_rules: shown to the planner
      - operations: hookable operation names
      - requirements: which project files execute() receives
      - is_version_control: version-control steps always run last
    """

    name: str = ""
    description: str = ""
    planning_rules: tuple[str, ...] = ()
    operations: tuple[str, ...] = ()
    requirements: Requirements = RequiredPaths()
    is_version_control: bool = False

    def __init__(self, oracle: Oracle, engine: TransformEngine, config: PlanwrightConfig):
        self.oracle = oracle
        self.engine = engine
        self.config = config

    @abstractmethod
    def execute(self, ctx: HandlerContext) -> dict[str, Any]:
        """Run one step. Returns data worth recording in run history."""
        ...

    def render(self, ctx: HandlerContext, operation: str, messages: list[PromptMessage]) -> list[dict[str, str]]:
        """Apply matched interceptors' transforms and render for the oracle."""
        if operation not in self.operations:
            raise ValueError(f"{self.name} does not expose operation '{operation}'")
        return self.engine.apply(messages, self.name, operation, ctx.record, ctx.step_interceptors)

    def run_operation(self, ctx: HandlerContext, operation: str, fn: Callable[[], T]) -> T:
        """Run ``fn`` between the before/after execution hooks of matched interceptors."""
        hooks = self.engine.registry.execution_hooks_for(self.name, operation, ctx.record, ctx.step_interceptors)
        for interceptor, h in hooks:
            if h.before:
                logger.debug(f"[HOOKS] {interceptor.name}: before {self.name}.{operation}")
                h.before()
        result = fn()
        for interceptor, h in hooks:
            if h.after:
                logger.debug(f"[HOOKS] {interceptor.name}: after {self.name}.{operation}")
                h.after()
        return result
