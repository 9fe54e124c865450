from __future__ import annotations

from pathlib import Path
from typing import Any

import pytest
from pydantic import BaseModel

from planwright.config_loader import PlanwrightConfig
from planwright.controller import UserCancelled
from planwright.handlers import BaseHandler, HandlerContext
from planwright.oracle import UsageTracker
from planwright.prompting import PromptMessage, Section, TransformEngine
from planwright.registry import Registry


class FakeOracle:
    """Returns scripted responses in order and records every call."""

    def __init__(self, responses: list[Any] | None = None, texts: list[str] | None = None):
        self.responses = list(responses or [])
        self.texts = list(texts or [])
        self.calls: list[tuple[str, Any, list[dict[str, str]]]] = []
        self.usage = UsageTracker()

    def generate(self, messages, schema: type[BaseModel], role: str = "planner"):
        self.calls.append((role, schema, messages))
        if not self.responses:
            raise AssertionError(f"Unexpected oracle call for {schema.__name__} ({role})")
        response = self.responses.pop(0)
        if isinstance(response, Exception):
            raise response
        if isinstance(response, schema):
            return response
        return schema.model_validate(response)

    def generate_text(self, messages, role: str = "editor") -> str:
        self.calls.append((role, str, messages))
        if not self.texts:
            raise AssertionError(f"Unexpected text oracle call ({role})")
        return self.texts.pop(0)


class ScriptedPrompter:
    """Answers confirmations and questions from scripts. An exception in a script is raised."""

    def __init__(self, confirms: list[Any] | None = None, answers: list[Any] | None = None):
        self.confirms = list(confirms or [])
        self.answers = list(answers or [])
        self.questions: list[str] = []

    def confirm(self, question: str) -> bool:
        self.questions.append(question)
        return self._next(self.confirms)

    def ask(self, question: str) -> str:
        self.questions.append(question)
        return self._next(self.answers)

    @staticmethod
    def _next(script: list[Any]):
        if not script:
            raise UserCancelled()
        value = script.pop(0)
        if isinstance(value, Exception):
            raise value
        return value


class EchoHandler(BaseHandler):
    """Records the steps it executes. One hookable operation."""

    name = "echo"
    description = "Echoes the step back."
    operations = ("render_echo",)

    def __init__(self, oracle, engine, config, name: str | None = None, vcs: bool = False):
        super().__init__(oracle, engine, config)
        if name:
            self.name = name
        self.is_version_control = vcs
        self.seen: list[HandlerContext] = []
        self.rendered: list[list[dict[str, str]]] = []

    def execute(self, ctx: HandlerContext) -> dict[str, Any]:
        self.seen.append(ctx)
        messages = [
            PromptMessage.system("You echo.", Section("rules", "- be brief")),
            PromptMessage.user(Section("request", ctx.step_description)),
        ]
        self.rendered.append(self.render(ctx, "render_echo", messages))
        return {"echo": ctx.step_description}


@pytest.fixture
def config() -> PlanwrightConfig:
    return PlanwrightConfig()


@pytest.fixture
def oracle() -> FakeOracle:
    return FakeOracle()


@pytest.fixture
def registry() -> Registry:
    return Registry()


@pytest.fixture
def engine(registry: Registry) -> TransformEngine:
    return TransformEngine(registry)


@pytest.fixture
def repo(tmp_path: Path) -> Path:
    (tmp_path / "src").mkdir()
    (tmp_path / "src" / "app.ts").write_text("export const app = 1;\n")
    (tmp_path / "package.json").write_text('{"name": "demo", "dependencies": {"react": "^18.0.0"}}\n')
    return tmp_path
