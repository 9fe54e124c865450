"""
📐 The Planner

Turns a user request into a Plan: ordered steps, each naming the handler
that executes it and the interceptors it uses. Never executes anything.

Two prompts:
  - generate:   request + project file paths + recent history
  - regenerate: the same, plus the previous plan verbatim and the user's feedback

Whatever the model returns is normalized before anyone sees it:
  - interceptor uses not backed by an active match are dropped
  - version-control steps are pushed after every other step
"""

from __future__ import annotations

import json
from typing import TYPE_CHECKING

from loguru import logger
from pydantic import BaseModel, Field

from planwright.registry import MatchRecord, Registry

if TYPE_CHECKING:
    from planwright.oracle import Oracle


# ---------------------------------------------------------------------------
# Plan schema
# ---------------------------------------------------------------------------

class InterceptorUse(BaseModel):
    name: str
    description: str = ""
    reason: str = Field(default="", description="Why this interceptor matches the user's request")
    confidence: float = 0.0


class Step(BaseModel):
    description: str
    handler_name: str = Field(description="Name of the handler that executes this step")
    priority: int = Field(description="Lower runs first")
    interceptors: list[InterceptorUse] | None = None


class Plan(BaseModel):
    steps: list[Step] = Field(default_factory=list)
    analysis: str = ""


# ---------------------------------------------------------------------------
# Normalization
# ---------------------------------------------------------------------------

def sort_steps(steps: list[Step]) -> list[Step]:
    """Ascending priority; ties keep their original order."""
    return sorted(steps, key=lambda s: s.priority)


def enforce_confidence_gate(plan: Plan, registry: Registry, record: MatchRecord) -> Plan:
    """Keep only interceptor uses backed by an active match, stamped with its confidence."""
    steps = []
    for step in plan.steps:
        if step.interceptors is None:
            steps.append(step)
            continue

        kept = []
        for use in step.interceptors:
            interceptor = registry.get_interceptor(use.name)
            if interceptor is None or not registry.is_active(interceptor, record):
                logger.debug(f"[PLAN] Dropping interceptor '{use.name}' from step '{step.description}'")
                continue
            kept.append(use.model_copy(update={
                "confidence": record.confidence(use.name),
                "description": use.description or interceptor.description,
            }))
        steps.append(step.model_copy(update={"interceptors": kept}))
    return plan.model_copy(update={"steps": steps})


def enforce_version_control_last(plan: Plan, registry: Registry) -> Plan:
    """Shift version-control priorities above every other step, keeping their relative order."""
    def is_vcs(step: Step) -> bool:
        handler = registry.get_handler(step.handler_name)
        return bool(handler and handler.is_version_control)

    vcs = [s for s in plan.steps if is_vcs(s)]
    others = [s for s in plan.steps if not is_vcs(s)]
    if not vcs or not others:
        return plan

    ceiling = max(s.priority for s in others)
    floor = min(s.priority for s in vcs)
    if floor > ceiling:
        return plan

    shift = ceiling - floor + 1
    logger.debug(f"[PLAN] Moving {len(vcs)} version-control steps after the rest (+{shift})")
    steps = [
        s.model_copy(update={"priority": s.priority + shift}) if is_vcs(s) else s
        for s in plan.steps
    ]
    return plan.model_copy(update={"steps": steps})


def normalize_plan(plan: Plan, registry: Registry, record: MatchRecord) -> Plan:
    return enforce_version_control_last(enforce_confidence_gate(plan, registry, record), registry)


# ---------------------------------------------------------------------------
# Planner
# ---------------------------------------------------------------------------

SYSTEM_PROMPT = """You are a high-level execution planner. You decide which handlers should take care of each part of a user's request.

You strictly follow the rules in <rules>. Handler-specific rules in <available_handlers> take priority over general rules. Do not hallucinate handlers or interceptors."""

GENERAL_RULES = [
    "The user's request is provided in <user_request>.",
    "A plan is a list of steps. Lower priority numbers run first.",
    "Break complex requests into logical steps with a clear description each. Never duplicate a step; keep one concern per step.",
    "Consider dependencies between steps when assigning priorities.",
    "Use ONLY handlers listed in <available_handlers>, with their exact names.",
    "Attach interceptors to a step ONLY if they are listed under that step's handler. Use their exact name and description, and give a reason.",
    "Only attach interceptors that meaningfully contribute to the step.",
    "<history> (if present) describes earlier runs. Use it as a hint, not as ground truth.",
]

REGENERATION_RULES = [
    "The user's feedback on the previous plan is in <user_feedback>.",
    "The previous plan is in <previous_plan>. Reordering, removing, adding or rewording steps must operate ONLY on that plan.",
    "When the user refers to a handler by name, match it regardless of naming convention (kebab-case, snake_case, PascalCase, camelCase, SHOUTING_SNAKE_CASE) or spacing.",
    "Recognize indirect references too: 'remove the version control step' removes the steps whose handler manages version control.",
]


class Planner:
    role = "planner"

    def __init__(self, oracle: Oracle, registry: Registry):
        self.oracle = oracle
        self.registry = registry

    def generate(
        self,
        request: str,
        file_paths: list[str],
        record: MatchRecord,
        history: str = "",
    ) -> Plan:
        messages = self.build_messages(request, file_paths, record, history)
        plan = self.oracle.generate(messages, Plan, role=self.role)
        return self._finish(plan, record)

    def regenerate(
        self,
        previous: Plan,
        feedback: str,
        request: str,
        file_paths: list[str],
        record: MatchRecord,
        history: str = "",
    ) -> Plan:
        messages = self.build_messages(request, file_paths, record, history)
        messages[-1:-1] = [self._previous_plan_msg(previous)]
        messages.append({
            "role": "user",
            "content": f"<user_feedback>\n{feedback}\n</user_feedback>",
        })
        plan = self.oracle.generate(messages, Plan, role=self.role)
        return self._finish(plan, record)

    def _finish(self, plan: Plan, record: MatchRecord) -> Plan:
        plan = normalize_plan(plan, self.registry, record)
        logger.info(f"[PLAN] Plan ready — {len(plan.steps)} steps")
        return plan

    # -- prompts --

    def build_messages(
        self,
        request: str,
        file_paths: list[str],
        record: MatchRecord,
        history: str = "",
    ) -> list[dict[str, str]]:
        context = "<files>\n" + "\n".join(f"  <file>{p}</file>" for p in file_paths) + "\n</files>"
        if history:
            context += f"\n\n{history}"

        return [
            {"role": "system", "content": f"{SYSTEM_PROMPT}\n\n{self._catalog(record)}"},
            {"role": "user", "content": context},
            {"role": "user", "content": f"<user_request>\n{request}\n</user_request>"},
        ]

    def _catalog(self, record: MatchRecord) -> str:
        active = self.registry.active(record)
        parts = ["<available_handlers>"]
        for name, handler in self.registry.handlers().items():
            parts.append(f'  <handler name="{name}">')
            parts.append(f"    <description>{handler.description}</description>")
            for rule in handler.planning_rules:
                parts.append(f"    <rule>{rule}</rule>")
            for interceptor in active:
                if any(h.handler == name for h in interceptor.hooks):
                    parts.append(
                        f'    <interceptor name="{interceptor.name}">{interceptor.description}</interceptor>'
                    )
            parts.append("  </handler>")
        parts.append("</available_handlers>")

        rules = list(GENERAL_RULES)
        if active and not record.general_intent:
            rules.append("The request is fully covered by the listed interceptors. Do not add unrelated steps.")
        parts.append("<rules>")
        parts.extend(f"  <rule>{r}</rule>" for r in rules)
        parts.append("</rules>")
        return "\n".join(parts)

    @staticmethod
    def _previous_plan_msg(previous: Plan) -> dict[str, str]:
        rules = "\n".join(f"  <rule>{r}</rule>" for r in REGENERATION_RULES)
        return {
            "role": "assistant",
            "content": (
                "I am correcting the previous execution plan based on the user's feedback.\n"
                f"<rules>\n{rules}\n</rules>\n"
                f"<previous_plan>\n{json.dumps(previous.model_dump(), indent=2)}\n</previous_plan>"
            ),
        }
