"""
✏️ File Modifier

Decides which files a step touches, then rewrites them one at a time.

  1. analyze_project_files — batched analysis over every eligible file
  2. generate_file_content — one oracle call per file to create or modify
  3. commit through the patch applier; removals last

A patch failure aborts the whole step: a half-applied multi-file change
is worse than none.
"""

from __future__ import annotations

import json
from functools import partial
from typing import Any

from loguru import logger

from planwright.handlers import BaseHandler, HandlerContext, RequiredWildcards
from planwright.merger import (
    AnalysisResult,
    Batch,
    BatchedAnalysisMerger,
    FileModificationIntent,
    check_conflicts,
    intents_from_analysis,
)
from planwright.patching import PatchApplier
from planwright.prompting import PromptMessage, Section

ANALYSIS_RULES = """- 'creation' and 'removal' drive the edits that follow. 'module_dependencies' is informative and helps your own analysis.
- Focus on code and configuration changes.
- A path that exists in <files> MUST go under 'files_to_modify'. A path that does not exist MUST go under 'files_to_create'. Never list a path under both.
- Record files needing indirect changes under 'module_dependencies.indirect'. Imports and requires are direct dependencies; composition found elsewhere is indirect.
- Only remove files the project will no longer need.
- For package manifests, only consider changes to scripts. Dependency changes are handled by a different step."""

ANALYSIS_EXAMPLE = json.dumps({
    "creation": {
        "files_to_create": [],
        "files_to_modify": [
            {"path": "package.json", "why": "Remove the Storybook scripts (storybook, build-storybook)"},
        ],
    },
    "removal": {
        "file_paths_to_remove": [
            {"path": ".storybook/", "why": "Storybook configuration directory, no longer needed"},
            {"path": "components/Button/Button.stories.tsx", "why": "Storybook story file"},
        ],
    },
    "module_dependencies": {"indirect": []},
}, indent=2)

GENERATION_RULES = """- The reason for this change is in <need_for_modification>.
- Produce the complete, final content of the file. Not a diff, not a fragment.
- Output ONLY the file content: no explanations, no markdown fences.
- Keep changes minimal and focused. Preserve existing structure and code style."""


class FileModifierHandler(BaseHandler):
    name = "file-modifier"
    description = "Analyzes the project's files and creates, modifies or removes them to fulfil a step."
    planning_rules = (
        "Base the analysis on the file paths listed in <files>.",
        "Prefer splitting large modifications into several steps.",
        "Include each file or part of the codebase in ONE step only.",
    )
    operations = ("analyze_project_files", "generate_file_content")
    requirements = RequiredWildcards(
        include=("**/*",),
        exclude=(
            "**/node_modules/**",
            "**/.git/**",
            "**/*.tsbuildinfo",
            "**/LICENSE",
            "**/README.md",
            "**/*.lock",
            "**/*.log",
            "**/dist/**",
            "**/build/**",
            "**/.next/**",
            "**/coverage/**",
        ),
    )

    def execute(self, ctx: HandlerContext) -> dict[str, Any]:
        analysis = self.run_operation(ctx, "analyze_project_files", partial(self.analyze, ctx))
        check_conflicts(analysis)

        intents = intents_from_analysis(analysis, ctx.files)
        applier = PatchApplier(ctx.root)
        done: dict[str, list[str]] = {"created": [], "modified": [], "removed": []}

        for intent in intents:
            content = self.run_operation(
                ctx, "generate_file_content", partial(self.generate_content, ctx, intent, analysis),
            )
            if intent.operation == "create":
                applier.create(intent.path, content)
                done["created"].append(intent.path)
            else:
                applier.modify(intent.path, intent.content or "", content)
                done["modified"].append(intent.path)

        if analysis.removal:
            removals = dict.fromkeys(item.path for item in analysis.removal.file_paths_to_remove or [])
            for path in removals:
                applier.delete(path)
                done["removed"].append(path)

        logger.info(
            f"[FILES] {len(done['created'])} created, {len(done['modified'])} modified, "
            f"{len(done['removed'])} removed"
        )
        return done

    # -- analysis --

    def analyze(self, ctx: HandlerContext) -> AnalysisResult:
        merger = BatchedAnalysisMerger(budget=self.config.limits.batch_token_budget)
        outcome = merger.analyze(ctx.files, partial(self._analyze_batch, ctx))
        ctx.data["skipped_files"] = outcome.skipped
        return outcome.result

    def _analyze_batch(self, ctx: HandlerContext, batch: Batch) -> AnalysisResult:
        files = "\n".join(
            f'<file path="{path}">\n{content}\n</file>' for path, content in batch.files.items()
        )
        messages = [
            PromptMessage.system(
                "You are an experienced software developer who decides which source files need to be "
                "modified, created or removed to fulfil a request. You work in iterations over batches "
                "of files; the results of every batch are deep-merged into one analysis.",
                Section("rules", ANALYSIS_RULES),
                Section("example", ANALYSIS_EXAMPLE),
            ),
            PromptMessage.user("Files to analyze:", Section("files", files)),
            PromptMessage.user("The request:", Section("request", ctx.step_description)),
        ]
        rendered = self.render(ctx, "analyze_project_files", messages)
        return self.oracle.generate(rendered, AnalysisResult, role="analyzer")

    # -- generation --

    def generate_content(self, ctx: HandlerContext, intent: FileModificationIntent, analysis: AnalysisResult) -> str:
        request_parts: list[str | Section] = [
            f"File: {intent.path}",
            Section("need_for_modification", intent.why),
        ]
        if intent.operation == "modify":
            request_parts.append(Section("original_content", intent.content or ""))
        else:
            request_parts.append("This is a new file. Write its full content.")

        messages = [
            PromptMessage.system(
                "You are a senior software developer making precise single-file changes. "
                "You take the whole-codebase analysis into account so the file stays consistent "
                "with the modules around it.",
                Section("rules", GENERATION_RULES),
            ),
            PromptMessage.user(
                "Whole codebase analysis (for reference only):",
                Section("analysis", analysis.model_dump_json(indent=2, exclude_none=True)),
            ),
            PromptMessage.user(*request_parts),
        ]
        rendered = self.render(ctx, "generate_file_content", messages)
        content = self.oracle.generate_text(rendered, role="editor")

        original = intent.content or ""
        if not content.endswith("\n") and (intent.operation == "create" or original.endswith("\n")):
            content += "\n"
        logger.debug(f"[FILES] Generated {len(content)} chars for {intent.path}")
        return content
