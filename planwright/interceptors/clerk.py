"""
🔐 Clerk — authentication for Next.js projects via clerk.com.

Touches two handlers:
  - package-management: only @clerk/nextjs may be added
  - file-modifier: middleware + provider wiring, with a worked example

Authentication is security-sensitive, so the activation threshold is
raised and the user confirms before the plan keeps it.
"""

from __future__ import annotations

import json
from typing import TYPE_CHECKING, Callable

from loguru import logger
from rich.prompt import Confirm

from planwright.interceptors import (
    BaseInterceptor,
    ExecutionHooks,
    Hook,
    MessageTarget,
    PlanVerdict,
    Transform,
    append_bottom,
    replace,
)

if TYPE_CHECKING:
    from planwright.planner import Plan

PACKAGE_RULES = """- ONLY add the '@clerk/nextjs' package. No other packages should be added.
- NEVER suggest other authentication packages or related dependencies.
- If other authentication packages exist, suggest removing them.
- Keep the installation minimal. Do not add optional Clerk packages unless explicitly requested."""

FILE_RULES = """- Create src/middleware.ts with Clerk middleware configuration
- Wrap the root layout with <ClerkProvider>
- Add authentication components to the layout header
- Configure the middleware matcher to protect all routes except static files"""

MIDDLEWARE = """import { clerkMiddleware } from '@clerk/nextjs/server';

export default clerkMiddleware();

export const config = {
  matcher: [
    '/((?!_next|[^?]*\\\\.(?:html?|css|js(?!on)|jpe?g|webp|png|gif|svg|ttf|woff2?|ico|csv|docx?|xlsx?|zip|webmanifest)).*)',
    '/(api|trpc)(.*)',
  ],
};
"""

FILE_EXAMPLE = 'Final analysis for execution step "Add Clerk integration"\n' + json.dumps({
    "creation": {
        "files_to_modify": [
            {"path": "app/layout.tsx", "why": "Integrate Clerk provider and auth components into root layout"},
        ],
        "files_to_create": [
            {"path": "src/middleware.ts", "why": f"Add Clerk middleware with route protection rules:\n{MIDDLEWARE}"},
        ],
    },
    "module_dependencies": {"indirect": []},
}, indent=2)


class ClerkInterceptor(BaseInterceptor):
    name = "clerk"
    description = "Integrates Clerk authentication into the Next.js project"
    min_confidence = 0.7
    hooks = (
        Hook(
            handler="package-management",
            operation="generate_package_operations",
            target=MessageTarget(role="system"),
            priority=1,
        ),
        Hook(
            handler="file-modifier",
            operation="analyze_project_files",
            target=MessageTarget(role="system"),
            priority=2,
        ),
    )

    def __init__(self, confirm: Callable[[str], bool] | None = None):
        self._confirm = confirm or (lambda q: Confirm.ask(q, default=True))

    def content_providers(self) -> dict[tuple[str, str], list[Transform]]:
        return {
            ("package-management", "generate_package_operations"): [
                replace("rules", PACKAGE_RULES),
            ],
            ("file-modifier", "analyze_project_files"): [
                append_bottom("rules", FILE_RULES),
                replace("example", FILE_EXAMPLE),
            ],
        }

    def execution_hooks(self) -> dict[tuple[str, str], ExecutionHooks]:
        return {
            ("file-modifier", "analyze_project_files"): ExecutionHooks(
                before=lambda: logger.info("[CLERK] Looking for where Clerk plugs into the project"),
                after=lambda: logger.info("[CLERK] Integration points identified"),
            ),
        }

    def after_plan(self, plan: Plan) -> PlanVerdict:
        if self._confirm("I noticed an opportunity to integrate auth using Clerk (clerk.com). Include it?"):
            return PlanVerdict(keep=True, message="Keeping the Clerk integration in the plan.")
        return PlanVerdict(keep=False, message="Removing the Clerk integration from the plan.")
