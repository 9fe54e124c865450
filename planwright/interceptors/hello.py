"""
👋 Hello — the smallest possible interceptor.

Adds a hello.txt greeting file when the request asks for one. Useful as a
template for new interceptors and for checking that hooks fire at all.
"""

from __future__ import annotations

import json
from typing import TYPE_CHECKING, Callable

from rich.prompt import Confirm

from planwright.interceptors import (
    BaseInterceptor,
    Hook,
    MessageTarget,
    PlanVerdict,
    Transform,
    append_bottom,
    replace,
)

if TYPE_CHECKING:
    from planwright.planner import Plan

HELLO_RULES = """- Create hello.txt file in the root directory
- Add a friendly greeting message"""

HELLO_EXAMPLE = 'Final analysis for execution step "Add hello.txt file"\n' + json.dumps({
    "creation": {
        "files_to_create": [
            {"path": "hello.txt", "why": "Add a friendly greeting message"},
        ],
    },
}, indent=2)


class HelloInterceptor(BaseInterceptor):
    name = "hello"
    description = "Adds a simple hello.txt file to the project"
    hooks = (
        Hook(
            handler="file-modifier",
            operation="analyze_project_files",
            target=MessageTarget(role="system"),
            priority=1,
        ),
    )

    def __init__(self, confirm: Callable[[str], bool] | None = None):
        self._confirm = confirm or (lambda q: Confirm.ask(q, default=True))

    def content_providers(self) -> dict[tuple[str, str], list[Transform]]:
        return {
            ("file-modifier", "analyze_project_files"): [
                append_bottom("rules", HELLO_RULES),
                replace("example", HELLO_EXAMPLE),
            ],
        }

    def after_plan(self, plan: Plan) -> PlanVerdict:
        if self._confirm("I noticed an opportunity to add a hello.txt file to your project. Include it?"):
            return PlanVerdict(keep=True, message="Keeping the hello.txt file creation in the plan.")
        return PlanVerdict(keep=False, message="Removing the hello.txt file creation from the plan.")
