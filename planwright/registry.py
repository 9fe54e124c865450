"""
PLANWRIGHT Registry — handlers, interceptors, and which hooks apply where.

One Registry is built at startup, populated with direct calls, and passed
to everything that needs to resolve a handler or an interceptor. There is
no module-level instance.

Interceptor registration validates everything up front. A hook that
points at a handler operation that does not exist, or two hooks that
collide on (handler, operation, target), stop the process before any
request is served.

Match results are never stored here. They live in a MatchRecord that the
caller threads through plan generation, prompt construction and dispatch.
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Iterable, Protocol

from loguru import logger
from pydantic import BaseModel, Field

from planwright.interceptors import BaseInterceptor, ExecutionHooks, Hook

if TYPE_CHECKING:
    from planwright.handlers import BaseHandler
    from planwright.oracle import Oracle

DEFAULT_MIN_CONFIDENCE = 0.5


class ConfigurationError(Exception):
    pass


class InterceptorSelection(Protocol):
    name: str
    confidence: float


def canonical_name(name: str) -> str:
    """Case- and separator-insensitive form: "Git_Operations" == "git-operations"."""
    return re.sub(r"[^a-z0-9]", "", name.lower())


# ---------------------------------------------------------------------------
# Match record
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class MatchEntry:
    confidence: float
    reason: str = ""


@dataclass
class MatchRecord:
    """Per-request relevance scores. Rebuilt for every user request."""
    entries: dict[str, MatchEntry] = field(default_factory=dict)
    general_intent: bool = True
    threshold: float = DEFAULT_MIN_CONFIDENCE

    def confidence(self, name: str) -> float:
        entry = self.entries.get(name)
        return entry.confidence if entry else 0.0

    def is_active(self, name: str, min_confidence: float | None = None) -> bool:
        entry = self.entries.get(name)
        if entry is None:
            return False
        return entry.confidence >= max(self.threshold, min_confidence or 0.0)


class InterceptorMatch(BaseModel):
    name: str
    confidence: float
    reason: str = ""


class InterceptorMatches(BaseModel):
    matches: list[InterceptorMatch] = Field(default_factory=list)
    has_general_intent: bool = Field(
        default=True,
        description="True when the request asks for anything beyond what the matched interceptors cover",
    )


MATCHER_PROMPT = """You score how relevant each available interceptor is to a user's request.

<rules>
- Score EVERY interceptor listed in <interceptors>, using its exact name.
- confidence is a number between 0 and 1. 1 means the request is clearly about what the interceptor does.
- reason explains the score in one sentence.
- has_general_intent is true when the request also asks for something none of the interceptors cover.
- Never invent interceptors that are not listed.
</rules>"""


# ---------------------------------------------------------------------------
# Registry
# ---------------------------------------------------------------------------

class Registry:
    def __init__(self, min_confidence: float = DEFAULT_MIN_CONFIDENCE):
        self.min_confidence = min_confidence
        self._handlers: dict[str, BaseHandler] = {}
        self._interceptors: dict[str, BaseInterceptor] = {}

    # -- handlers --

    def register_handler(self, handler: BaseHandler) -> Registry:
        name = handler.name
        if not name:
            raise ConfigurationError(f"{type(handler).__name__} has no name")
        if canonical_name(name) in {canonical_name(n) for n in self._handlers}:
            raise ConfigurationError(f"Handler '{name}' is already registered")
        self._handlers[name] = handler
        logger.debug(f"[REGISTRY] Handler '{name}' exposes {list(handler.operations)}")
        return self

    def handlers(self) -> dict[str, BaseHandler]:
        return dict(self._handlers)

    def get_handler(self, name: str) -> BaseHandler | None:
        """Exact lookup first, then case/separator-insensitive."""
        if name in self._handlers:
            return self._handlers[name]
        wanted = canonical_name(name)
        for registered, handler in self._handlers.items():
            if canonical_name(registered) == wanted:
                return handler
        return None

    # -- interceptors --

    def register_interceptor(self, interceptor: BaseInterceptor) -> Registry:
        self._validate(interceptor)
        self._interceptors[interceptor.name] = interceptor
        logger.debug(f"[REGISTRY] Interceptor '{interceptor.name}' registered ({len(interceptor.hooks)} hooks)")
        return self

    def _validate(self, interceptor: BaseInterceptor) -> None:
        label = interceptor.name or type(interceptor).__name__
        if not interceptor.name or not interceptor.description:
            raise ConfigurationError(f"Interceptor {label} needs a name and a description")
        if interceptor.name in self._interceptors:
            raise ConfigurationError(f"Interceptor '{interceptor.name}' is already registered")
        if not interceptor.hooks:
            raise ConfigurationError(f"Interceptor '{label}' declares no hooks")

        providers = interceptor.content_providers()
        execution = interceptor.execution_hooks()
        seen: set[str] = set()

        for hook in interceptor.hooks:
            if hook.signature in seen:
                raise ConfigurationError(
                    f"Interceptor '{label}' has a duplicate hook: {hook.signature}. "
                    "Each hook must be unique per handler/operation/target."
                )
            seen.add(hook.signature)

            handler = self._handlers.get(hook.handler)
            if handler is None:
                raise ConfigurationError(
                    f"Interceptor '{label}' hooks unknown handler '{hook.handler}'. "
                    f"Registered: {list(self._handlers)}"
                )
            if hook.operation not in handler.operations:
                raise ConfigurationError(
                    f"Interceptor '{label}' hooks '{hook.handler}.{hook.operation}', "
                    f"which is not exposed. Available operations: {list(handler.operations)}"
                )
            key = (hook.handler, hook.operation)
            if key not in providers and key not in execution:
                raise ConfigurationError(
                    f"Interceptor '{label}' hooks '{hook.handler}.{hook.operation}' "
                    "but provides no content or execution hooks for it"
                )

    def interceptors(self) -> dict[str, BaseInterceptor]:
        return dict(self._interceptors)

    def get_interceptor(self, name: str) -> BaseInterceptor | None:
        return self._interceptors.get(name)

    # -- matching --

    def is_active(self, interceptor: BaseInterceptor, record: MatchRecord) -> bool:
        return record.is_active(interceptor.name, interceptor.min_confidence)

    def active(self, record: MatchRecord) -> list[BaseInterceptor]:
        return [i for i in self._interceptors.values() if self.is_active(i, record)]

    def match_interceptors(self, request: str, oracle: Oracle) -> MatchRecord:
        """Score every registered interceptor against the request in one oracle call."""
        if not self._interceptors:
            return MatchRecord(threshold=self.min_confidence)

        listing = "\n".join(
            f'  <interceptor name="{i.name}">{i.description}</interceptor>'
            for i in self._interceptors.values()
        )
        messages = [
            {"role": "system", "content": MATCHER_PROMPT},
            {"role": "user", "content": f"<interceptors>\n{listing}\n</interceptors>"},
            {"role": "user", "content": f"<user_request>\n{request}\n</user_request>"},
        ]
        response = oracle.generate(messages, InterceptorMatches, role="matcher")

        entries: dict[str, MatchEntry] = {}
        for match in response.matches:
            if match.name not in self._interceptors:
                logger.debug(f"[REGISTRY] Matcher returned unknown interceptor '{match.name}', ignoring")
                continue
            entries[match.name] = MatchEntry(
                confidence=min(1.0, max(0.0, match.confidence)),
                reason=match.reason,
            )

        record = MatchRecord(
            entries=entries,
            general_intent=response.has_general_intent,
            threshold=self.min_confidence,
        )
        active = [i.name for i in self.active(record)]
        logger.info(f"[REGISTRY] Active interceptors: {active or 'none'}")
        return record

    # -- hook resolution --

    def interceptors_for(
        self,
        handler: str,
        operation: str,
        record: MatchRecord,
        step_uses: Iterable[InterceptorSelection] | None = None,
    ) -> list[BaseInterceptor]:
        """Active interceptors with at least one hook on (handler, operation).

        When the step names the interceptors it uses, only those selected
        with confidence ≥ the threshold are kept.
        """
        selected: set[str] | None = None
        if step_uses is not None:
            selected = {u.name for u in step_uses if u.confidence >= self.min_confidence}

        result = []
        for interceptor in self._interceptors.values():
            if not self.is_active(interceptor, record):
                continue
            if selected is not None and interceptor.name not in selected:
                continue
            if any(h.handler == handler and h.operation == operation for h in interceptor.hooks):
                result.append(interceptor)
        return result

    def applicable_for(
        self,
        role: str,
        index: int,
        handler: str,
        operation: str,
        candidates: list[BaseInterceptor],
    ) -> list[tuple[BaseInterceptor, Hook]]:
        """Candidates whose hooks target this message, in application order.

        Ordered by hook priority ascending; hooks without a priority go
        last, and ties keep registration order.
        """
        matched: list[tuple[BaseInterceptor, Hook]] = []
        for interceptor in candidates:
            hooks = [
                h for h in interceptor.hooks
                if h.handler == handler and h.operation == operation and h.targets(role, index)
            ]
            if hooks:
                matched.append((interceptor, min(hooks, key=_priority_key)))
        return sorted(matched, key=lambda pair: _priority_key(pair[1]))

    def execution_hooks_for(
        self,
        handler: str,
        operation: str,
        record: MatchRecord,
        step_uses: Iterable[InterceptorSelection] | None = None,
    ) -> list[tuple[BaseInterceptor, ExecutionHooks]]:
        out = []
        for interceptor in self.interceptors_for(handler, operation, record, step_uses):
            hooks = interceptor.execution_hooks().get((handler, operation))
            if hooks:
                out.append((interceptor, hooks))
        return out


def _priority_key(hook: Hook) -> tuple[bool, int]:
    return (hook.priority is None, hook.priority or 0)
