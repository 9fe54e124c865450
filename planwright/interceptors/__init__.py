"""
PLANWRIGHT Interceptors — behavior add-ons.

An interceptor is:
  - A name + description the matcher scores against the user request
  - A set of hooks: (handler, operation, message target, priority?)
  - Content providers: per (handler, operation), the prompt transforms to apply
  - Optional plan hooks (before/after plan determination)
  - Optional execution hooks (before/after a handler operation runs)

Interceptors are constructed once at startup and never mutated.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import TYPE_CHECKING, Callable, Literal, Union

from pydantic import BaseModel, ConfigDict

if TYPE_CHECKING:
    from planwright.planner import Plan

Role = Literal["system", "user", "assistant"]
TransformOp = Literal["append_top", "append_bottom", "replace"]


# ---------------------------------------------------------------------------
# Hooks
# ---------------------------------------------------------------------------

class MessageTarget(BaseModel):
    """A message addressed by role, optionally pinned to its position in the list."""
    model_config = ConfigDict(frozen=True)

    role: Role
    index: int | None = None


Target = Union[MessageTarget, int]


class Hook(BaseModel):
    model_config = ConfigDict(frozen=True)

    handler: str
    operation: str
    target: MessageTarget | int
    priority: int | None = None

    @property
    def signature(self) -> str:
        if isinstance(self.target, int):
            target = str(self.target)
        else:
            target = f"{self.target.role}:{'*' if self.target.index is None else self.target.index}"
        return f"{self.handler}:{self.operation}:{target}"

    def targets(self, role: str, index: int) -> bool:
        """Whether this hook addresses the message at ``index`` with ``role``."""
        if isinstance(self.target, int):
            return self.target == index
        return self.target.role == role and (self.target.index is None or self.target.index == index)


# ---------------------------------------------------------------------------
# Content providers
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class Transform:
    section: str
    op: TransformOp
    content: str


def append_top(section: str, content: str) -> Transform:
    return Transform(section=section, op="append_top", content=content)


def append_bottom(section: str, content: str) -> Transform:
    return Transform(section=section, op="append_bottom", content=content)


def replace(section: str, content: str) -> Transform:
    return Transform(section=section, op="replace", content=content)


@dataclass(frozen=True)
class ExecutionHooks:
    before: Callable[[], None] | None = None
    after: Callable[[], None] | None = None


# ---------------------------------------------------------------------------
# Plan hooks
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class PlanGate:
    proceed: bool
    message: str | None = None


@dataclass(frozen=True)
class PlanVerdict:
    keep: bool
    message: str | None = None


# ---------------------------------------------------------------------------
# Base class
# ---------------------------------------------------------------------------

class BaseInterceptor:
    """
    Subclasses define:
      - name / description: what the matcher scores
      - hooks: where in which handler's prompts this interceptor applies
      - content_providers(): {(handler, operation): [Transform, ...]}
      - execution_hooks(): {(handler, operation): ExecutionHooks}   (optional)
      - before_plan() / after_plan(plan)                           (optional)

    ``min_confidence`` is the policy threshold for activation. Interceptors
    touching security-sensitive code (auth, secrets, payments) raise it
    to 0.7 by convention.
    """

    name: str = ""
    description: str = ""
    hooks: tuple[Hook, ...] = ()
    min_confidence: float = 0.5

    def content_providers(self) -> dict[tuple[str, str], list[Transform]]:
        return {}

    def execution_hooks(self) -> dict[tuple[str, str], ExecutionHooks]:
        return {}

    def transforms_for(self, handler: str, operation: str) -> list[Transform]:
        return self.content_providers().get((handler, operation), [])

    def before_plan(self) -> PlanGate:
        return PlanGate(proceed=True)

    def after_plan(self, plan: Plan) -> PlanVerdict:
        return PlanVerdict(keep=True)

    def __repr__(self) -> str:
        return f"<{type(self).__name__} {self.name!r}>"
