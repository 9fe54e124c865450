"""
🌿 Version Control

Creates branches and commits changes. Always the last steps of a plan.

Commit signing is not supported: when commit.gpgsign is on, the step is
skipped with a warning instead of producing an unsigned commit.
"""

from __future__ import annotations

import re
from typing import Any, Literal

from loguru import logger
from pydantic import BaseModel, Field

from planwright.handlers import BaseHandler, HandlerContext, StepSkipped
from planwright.prompting import PromptMessage, Section
from planwright.workspace import Workspace, WorkspaceError

MAX_BRANCH_ATTEMPTS = 10

GIT_RULES = """- Decide from the step description whether it creates a branch or commits changes.
- Follow the naming conventions visible in <recent_commits> (e.g. conventional commits or imperative mood).
- Branch names are kebab-case, short, and describe the purpose of the change. No characters other than letters, digits, '-', '/' and '.'.
- Commit messages have a concise subject line (max 72 chars) and reflect the changes listed in <changed_files>."""


class GitAction(BaseModel):
    action: Literal["branch_create", "commit"]
    branch_name: str | None = Field(default=None, description="Required for branch_create")
    commit_message: str | None = Field(default=None, description="Required for commit")
    description: str = ""


def sanitize_branch_name(name: str) -> str:
    name = re.sub(r"[^A-Za-z0-9._/-]+", "-", name.strip()).strip("-/.")
    return re.sub(r"-{2,}", "-", name) or "planwright-changes"


class VersionControlHandler(BaseHandler):
    name = "git-operations"
    description = "Creates git branches and commits the changes made by earlier steps."
    planning_rules = (
        "Use ONLY for git operations. These steps must ALWAYS come last in the plan.",
        "Split usage into separate steps: FIRST create the branch, THEN commit the changes.",
    )
    operations = ("generate_git_action",)
    is_version_control = True

    def execute(self, ctx: HandlerContext) -> dict[str, Any]:
        workspace = Workspace(ctx.root)
        if not workspace.is_git_repo():
            raise StepSkipped("not a git repository")
        if workspace.config_value("commit.gpgsign") == "true":
            logger.warning("[GIT] Commit signing is enabled; signed commits are not supported")
            raise StepSkipped("commit signing (commit.gpgsign) is enabled")

        action = self.run_operation(ctx, "generate_git_action", lambda: self.generate_action(ctx, workspace))

        if action.action == "branch_create":
            return self.create_branch(workspace, action)
        return self.commit(workspace, action)

    def generate_action(self, ctx: HandlerContext, workspace: Workspace) -> GitAction:
        messages = [
            PromptMessage.system(
                "You are an assistant specialized in git. You turn a plan step into a single git action.",
                Section("rules", GIT_RULES),
            ),
            PromptMessage.user(
                Section("recent_commits", workspace.recent_log() or "(none)"),
                Section("current_branch", workspace.current_branch()),
                Section("changed_files", workspace.changed_files() or "(none)"),
            ),
            PromptMessage.user(
                Section("user_request", ctx.user_request),
                Section("step", ctx.step_description),
            ),
        ]
        rendered = self.render(ctx, "generate_git_action", messages)
        return self.oracle.generate(rendered, GitAction, role="vcs")

    def create_branch(self, workspace: Workspace, action: GitAction) -> dict[str, Any]:
        base = sanitize_branch_name(action.branch_name or action.description)
        origin = workspace.current_branch()

        for attempt in range(1, MAX_BRANCH_ATTEMPTS + 1):
            candidate = base if attempt == 1 else f"{base}-{attempt}"
            if workspace.branch_exists(candidate):
                logger.debug(f"[GIT] Branch {candidate} exists, trying another name")
                continue
            workspace.create_branch(candidate)
            return {"action": "branch_create", "branch": candidate, "base_branch": origin}

        raise WorkspaceError(f"Failed to create branch '{base}' after {MAX_BRANCH_ATTEMPTS} attempts")

    def commit(self, workspace: Workspace, action: GitAction) -> dict[str, Any]:
        message = (action.commit_message or action.description or "Apply planned changes").strip()
        sha = workspace.commit(message)
        if sha:
            logger.info(f"[GIT] Committed {sha[:8]}: {message.splitlines()[0]}")
        return {"action": "commit", "sha": sha, "message": message, "branch": workspace.current_branch()}
