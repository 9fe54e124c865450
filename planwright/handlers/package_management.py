"""
📦 Package Management

Adds and removes JavaScript packages with whichever package manager the
project already uses (detected from its lockfile).

Removals are only attempted for packages actually declared in
package.json; additions skip packages that are already there.
"""

from __future__ import annotations

import concurrent.futures
import json
import shutil
from pathlib import Path
from typing import Any, Literal

from loguru import logger
from pydantic import BaseModel, Field

from planwright.handlers import BaseHandler, HandlerContext, RequiredPaths, StepSkipped
from planwright.prompting import PromptMessage, Section
from planwright.workspace import WorkspaceError, run_cmd

LOCKFILES = {
    "yarn.lock": "yarn",
    "package-lock.json": "npm",
    "pnpm-lock.yaml": "pnpm",
    "bun.lockb": "bun",
}

ADD_COMMANDS = {"npm": "install", "yarn": "add", "pnpm": "add", "bun": "add"}
REMOVE_COMMANDS = {"npm": "uninstall", "yarn": "remove", "pnpm": "remove", "bun": "remove"}

CRITICAL_RULES = """- ONLY remove packages that are EXPLICITLY listed in the dependencies or devDependencies of <package_json>.
- NEVER remove a package that is not present in <package_json>."""

GENERAL_RULES = """- Install development tools with dev=true.
- Consider peer dependencies.
- Prefer commonly used, well-maintained packages.
- Check for existing similar packages before suggesting new ones."""


class PackageOperation(BaseModel):
    type: Literal["add", "remove"]
    packages: list[str]
    reason: str = ""
    dev: bool = False
    dependencies: list[str] = Field(default_factory=list)


class PackageOperations(BaseModel):
    operations: list[PackageOperation] = Field(default_factory=list)
    analysis: str = ""


def installed_packages(package_json: dict[str, Any]) -> set[str]:
    return set(package_json.get("dependencies") or {}) | set(package_json.get("devDependencies") or {})


def filter_operations(ops: PackageOperations, installed: set[str]) -> PackageOperations:
    """Drop removals of packages that are not installed, and operations left empty."""
    kept: list[PackageOperation] = []
    for op in ops.operations:
        if op.type == "remove":
            valid = [p for p in op.packages if p in installed]
            for p in set(op.packages) - set(valid):
                logger.debug(f"[PKG] Skipping removal of non-installed package: {p}")
            op = op.model_copy(update={"packages": valid})
        if op.packages:
            kept.append(op)
    return ops.model_copy(update={"operations": kept})


def detect_package_manager(root: Path) -> str:
    for lockfile, manager in LOCKFILES.items():
        if (root / lockfile).exists():
            return manager
    return "npm"


def _probe_version(binary: str, root: Path) -> str | None:
    if not shutil.which(binary):
        return None
    try:
        return run_cmd([binary, "--version"], cwd=root, timeout=15).strip()
    except WorkspaceError:
        return None


def system_info(root: Path) -> dict[str, Any]:
    """Package manager and toolchain versions, probed concurrently (read-only)."""
    manager = detect_package_manager(root)
    with concurrent.futures.ThreadPoolExecutor(max_workers=2) as pool:
        node = pool.submit(_probe_version, "node", root)
        manager_version = pool.submit(_probe_version, manager, root)
        return {
            "package_manager": manager,
            "node_version": node.result(),
            "package_manager_version": manager_version.result(),
        }


class PackageManagementHandler(BaseHandler):
    name = "package-management"
    description = "Installs and removes project dependencies with the project's package manager."
    planning_rules = (
        "Pair package installations with the configuration file changes they need, in separate steps.",
    )
    operations = ("generate_package_operations",)
    requirements = RequiredPaths(paths=("package.json",))

    def execute(self, ctx: HandlerContext) -> dict[str, Any]:
        raw = ctx.files.get("package.json")
        if raw is None:
            raise StepSkipped("no package.json in the project")
        try:
            package_json = json.loads(raw)
        except json.JSONDecodeError as e:
            raise ValueError(f"Invalid package.json: {e}") from e

        installed = installed_packages(package_json)
        ops = self.run_operation(
            ctx, "generate_package_operations", lambda: self.generate_operations(ctx, raw),
        )
        ops = filter_operations(ops, installed)
        if not ops.operations:
            logger.info("[PKG] No valid package operations to perform")
            return {"operations": []}

        info = system_info(ctx.root)
        manager = info["package_manager"]
        logger.info(f"[PKG] Using {manager} (node {info['node_version'] or 'unknown'})")

        executed: list[dict[str, Any]] = []
        for op in ops.operations:
            if op.type == "add":
                packages = [p for p in op.packages if p not in installed]
                if not packages:
                    logger.info(f"[PKG] Already installed: {', '.join(op.packages)}")
                    continue
                cmd = [manager, ADD_COMMANDS[manager], *(["-D"] if op.dev else []), *packages]
                installed.update(packages)
            else:
                packages = [p for p in op.packages if p in installed]
                if not packages:
                    continue
                cmd = [manager, REMOVE_COMMANDS[manager], *packages]
                installed.difference_update(packages)

            run_cmd(cmd, cwd=ctx.root)
            logger.info(f"[PKG] {op.type} {', '.join(packages)}")
            executed.append({"type": op.type, "packages": packages, "reason": op.reason})

        return {"operations": executed, **info}

    def generate_operations(self, ctx: HandlerContext, package_json: str) -> PackageOperations:
        messages = [
            PromptMessage.system(
                "You are a package management expert for Node.js projects. The current package.json "
                "is in <package_json>; the request is in <request>.",
                Section("critical_rules", CRITICAL_RULES),
                Section("rules", GENERAL_RULES),
            ),
            PromptMessage.user(Section("package_json", package_json)),
            PromptMessage.user(Section("request", ctx.step_description)),
        ]
        rendered = self.render(ctx, "generate_package_operations", messages)
        return self.oracle.generate(rendered, PackageOperations, role="packages")
