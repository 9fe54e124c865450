"""
PLANWRIGHT Prompting — tagged-section prompt documents and the transform engine.

Handlers never hand raw strings to the oracle. They build each message as
a PromptDocument: an ordered list of sections, some named ("rules",
"example", ...), some plain text. Interceptors address named sections
with explicit operations (append at top, append at bottom, replace), so
no regex surgery on rendered markup is ever needed.

Rendered form of a named section:

    <rules>
    body
    </rules>
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Iterable

from loguru import logger

from planwright.interceptors import Transform

if TYPE_CHECKING:
    from planwright.registry import InterceptorSelection, MatchRecord, Registry


# ---------------------------------------------------------------------------
# Document model
# ---------------------------------------------------------------------------

@dataclass
class Section:
    name: str | None
    body: str

    def render(self) -> str:
        if self.name is None:
            return self.body
        return f"<{self.name}>\n{self.body}\n</{self.name}>"


@dataclass
class PromptDocument:
    sections: list[Section] = field(default_factory=list)

    @classmethod
    def of(cls, *parts: str | Section) -> PromptDocument:
        """Build from plain strings (untagged) and Sections, in order."""
        return cls([p if isinstance(p, Section) else Section(None, p) for p in parts])

    def copy(self) -> PromptDocument:
        return PromptDocument([Section(s.name, s.body) for s in self.sections])

    def section(self, name: str) -> Section | None:
        for s in self.sections:
            if s.name == name:
                return s
        return None

    def append_top(self, name: str, content: str) -> bool:
        s = self.section(name)
        if s is None:
            return False
        s.body = f"{content}\n{s.body}" if s.body else content
        return True

    def append_bottom(self, name: str, content: str) -> bool:
        s = self.section(name)
        if s is None:
            return False
        s.body = f"{s.body}\n{content}" if s.body else content
        return True

    def replace(self, name: str, content: str) -> bool:
        s = self.section(name)
        if s is None:
            return False
        s.body = content
        return True

    def apply(self, transform: Transform) -> bool:
        """Apply one transform. Returns False (and changes nothing) if the section is absent."""
        op = {
            "append_top": self.append_top,
            "append_bottom": self.append_bottom,
            "replace": self.replace,
        }[transform.op]
        return op(transform.section, transform.content)

    def render(self) -> str:
        return "\n\n".join(s.render() for s in self.sections)


@dataclass
class PromptMessage:
    role: str
    document: PromptDocument

    @classmethod
    def system(cls, *parts: str | Section) -> PromptMessage:
        return cls("system", PromptDocument.of(*parts))

    @classmethod
    def user(cls, *parts: str | Section) -> PromptMessage:
        return cls("user", PromptDocument.of(*parts))

    @classmethod
    def assistant(cls, *parts: str | Section) -> PromptMessage:
        return cls("assistant", PromptDocument.of(*parts))

    def to_dict(self) -> dict[str, str]:
        return {"role": self.role, "content": self.document.render()}


# ---------------------------------------------------------------------------
# Transform engine
# ---------------------------------------------------------------------------

class TransformEngine:
    """Applies interceptor transforms to outgoing oracle messages."""

    def __init__(self, registry: Registry):
        self.registry = registry

    def apply(
        self,
        messages: list[PromptMessage],
        handler: str,
        operation: str,
        record: MatchRecord,
        step_uses: Iterable[InterceptorSelection] | None = None,
    ) -> list[dict[str, str]]:
        """Render ``messages`` with every applicable transform applied.

        The input documents are not modified.
        """
        candidates = self.registry.interceptors_for(handler, operation, record, step_uses)
        if not candidates:
            return [m.to_dict() for m in messages]

        out: list[dict[str, str]] = []
        for index, message in enumerate(messages):
            applicable = self.registry.applicable_for(message.role, index, handler, operation, candidates)
            if not applicable:
                out.append(message.to_dict())
                continue

            document = message.document.copy()
            for interceptor, hook in applicable:
                for transform in interceptor.transforms_for(handler, operation):
                    if not document.apply(transform):
                        logger.debug(
                            f"[HOOKS] {interceptor.name}: no <{transform.section}> section in "
                            f"{message.role} message #{index}, transform skipped"
                        )
                logger.debug(
                    f"[HOOKS] {interceptor.name} applied to {handler}.{operation} "
                    f"{message.role} message #{index} (priority {hook.priority})"
                )
            out.append({"role": message.role, "content": document.render()})
        return out
