import json
import shutil
import subprocess

import pytest

from planwright.config_loader import PlanwrightConfig
from planwright.controller import build_registry
from planwright.handlers import HandlerContext, StepSkipped, resolve_required_files
from planwright.handlers.package_management import (
    PackageOperations,
    detect_package_manager,
    filter_operations,
    installed_packages,
)
from planwright.handlers.version_control import sanitize_branch_name
from planwright.planner import InterceptorUse, Plan, Step
from planwright.project_files import load_project_files
from planwright.registry import MatchEntry, MatchRecord

from conftest import FakeOracle


def context_for(registry, handler_name, repo, description, record=None, uses=None):
    handler = registry.get_handler(handler_name)
    step = Step(description=description, handler_name=handler_name, priority=1, interceptors=uses)
    files = resolve_required_files(handler.requirements, load_project_files(repo))
    return handler, HandlerContext(
        user_request=description,
        step=step,
        plan=Plan(steps=[step]),
        files=files,
        record=record or MatchRecord(),
        root=repo,
    )


# ---------------------------------------------------------------------------
# file-modifier
# ---------------------------------------------------------------------------

def test_file_modifier_creates_modifies_and_removes(repo, config):
    (repo / "old.txt").write_text("legacy\n")
    oracle = FakeOracle(
        responses=[{
            "creation": {
                "files_to_modify": [{"path": "src/app.ts", "why": "bump the value"}],
                "files_to_create": [{"path": "src/new.ts", "why": "new module"}],
            },
            "removal": {"file_paths_to_remove": [{"path": "old.txt", "why": "unused"}]},
        }],
        texts=["export const app = 2;\n", "export const added = true;"],
    )
    registry = build_registry(oracle, config, confirm=lambda q: True)
    handler, ctx = context_for(registry, "file-modifier", repo, "bump the app value")

    done = handler.execute(ctx)

    assert done == {"created": ["src/new.ts"], "modified": ["src/app.ts"], "removed": ["old.txt"]}
    assert (repo / "src" / "app.ts").read_text() == "export const app = 2;\n"
    assert (repo / "src" / "new.ts").read_text() == "export const added = true;\n"
    assert not (repo / "old.txt").exists()
    assert [call[0] for call in oracle.calls] == ["analyzer", "editor", "editor"]


def test_file_modifier_analysis_prompt_carries_active_interceptor(repo, config):
    oracle = FakeOracle(responses=[{}])
    registry = build_registry(oracle, config, confirm=lambda q: True)
    record = MatchRecord(entries={"hello": MatchEntry(0.95)})
    uses = [InterceptorUse(name="hello", confidence=0.95)]
    handler, ctx = context_for(registry, "file-modifier", repo, "add a greeting", record, uses)

    handler.execute(ctx)

    system = oracle.calls[0][2][0]["content"]
    assert "- Create hello.txt file in the root directory" in system
    assert "Storybook" not in system
    assert '"path": "hello.txt"' in system


def test_file_modifier_writes_once_when_batches_repeat_a_path(tmp_path):
    (tmp_path / "a.ts").write_text("export const a = 1;\n")
    (tmp_path / "b.ts").write_text("export const b = 2;\n")
    config = PlanwrightConfig(limits={"batch_token_budget": 15})
    repeated = {"creation": {"files_to_modify": [{"path": "a.ts", "why": "bump a"}]}}
    oracle = FakeOracle(responses=[repeated, repeated], texts=["export const a = 10;\n"])
    registry = build_registry(oracle, config, confirm=lambda q: True)
    handler, ctx = context_for(registry, "file-modifier", tmp_path, "bump a")

    done = handler.execute(ctx)

    assert done["modified"] == ["a.ts"]
    assert (tmp_path / "a.ts").read_text() == "export const a = 10;\n"
    assert [call[0] for call in oracle.calls] == ["analyzer", "analyzer", "editor"]


def test_file_modifier_conflicting_analysis_aborts(repo, config):
    from planwright.merger import AnalysisConflictError

    oracle = FakeOracle(responses=[{"creation": {
        "files_to_create": [{"path": "src/app.ts", "why": "a"}],
        "files_to_modify": [{"path": "src/app.ts", "why": "b"}],
    }}])
    registry = build_registry(oracle, config, confirm=lambda q: True)
    handler, ctx = context_for(registry, "file-modifier", repo, "confused")

    with pytest.raises(AnalysisConflictError):
        handler.execute(ctx)
    assert (repo / "src" / "app.ts").read_text() == "export const app = 1;\n"


# ---------------------------------------------------------------------------
# package-management
# ---------------------------------------------------------------------------

def test_removals_limited_to_installed_packages():
    ops = PackageOperations.model_validate({"operations": [
        {"type": "remove", "packages": ["react", "not-installed"], "reason": "swap"},
        {"type": "remove", "packages": ["ghost"], "reason": "gone"},
        {"type": "add", "packages": ["zod"], "reason": "validation"},
    ]})
    installed = installed_packages({"dependencies": {"react": "18"}, "devDependencies": {"jest": "29"}})

    filtered = filter_operations(ops, installed)

    assert [(op.type, op.packages) for op in filtered.operations] == [("remove", ["react"]), ("add", ["zod"])]


@pytest.mark.parametrize("lockfile, manager", [
    ("yarn.lock", "yarn"),
    ("package-lock.json", "npm"),
    ("pnpm-lock.yaml", "pnpm"),
    ("bun.lockb", "bun"),
    (None, "npm"),
])
def test_package_manager_from_lockfile(tmp_path, lockfile, manager):
    if lockfile:
        (tmp_path / lockfile).write_text("")
    assert detect_package_manager(tmp_path) == manager


def test_package_handler_runs_commands(repo, config, monkeypatch):
    import planwright.handlers.package_management as pkg

    commands = []
    monkeypatch.setattr(pkg, "run_cmd", lambda cmd, cwd, **kw: commands.append(cmd) or "")
    monkeypatch.setattr(pkg, "system_info", lambda root: {
        "package_manager": "yarn", "node_version": "v20", "package_manager_version": "1.22",
    })
    oracle = FakeOracle(responses=[{"operations": [
        {"type": "add", "packages": ["react", "zod"], "reason": "needed"},
        {"type": "add", "packages": ["vitest"], "dev": True, "reason": "tests"},
        {"type": "remove", "packages": ["react", "lodash"], "reason": "cleanup"},
    ]}])
    registry = build_registry(oracle, config, confirm=lambda q: True)
    handler, ctx = context_for(registry, "package-management", repo, "add zod")

    result = handler.execute(ctx)

    assert commands == [
        ["yarn", "add", "zod"],
        ["yarn", "add", "-D", "vitest"],
        ["yarn", "remove", "react"],
    ]
    assert [op["packages"] for op in result["operations"]] == [["zod"], ["vitest"], ["react"]]
    assert oracle.calls[0][0] == "packages"


def test_package_handler_without_manifest_is_skipped(tmp_path, config):
    registry = build_registry(FakeOracle(), config, confirm=lambda q: True)
    handler, ctx = context_for(registry, "package-management", tmp_path, "add zod")
    with pytest.raises(StepSkipped):
        handler.execute(ctx)


# ---------------------------------------------------------------------------
# git-operations
# ---------------------------------------------------------------------------

needs_git = pytest.mark.skipif(shutil.which("git") is None, reason="git not installed")


def git(cwd, *args):
    subprocess.run(["git", *args], cwd=cwd, check=True, capture_output=True)


@pytest.fixture
def git_repo(repo, monkeypatch, tmp_path_factory):
    monkeypatch.setenv("HOME", str(tmp_path_factory.mktemp("home")))
    monkeypatch.setenv("GIT_CONFIG_NOSYSTEM", "1")
    for var in ("GIT_AUTHOR_NAME", "GIT_COMMITTER_NAME"):
        monkeypatch.setenv(var, "Test")
    for var in ("GIT_AUTHOR_EMAIL", "GIT_COMMITTER_EMAIL"):
        monkeypatch.setenv(var, "test@example.com")

    git(repo, "init", "-q")
    git(repo, "checkout", "-q", "-b", "main")
    git(repo, "add", "-A")
    git(repo, "commit", "-q", "-m", "initial")
    return repo


def test_sanitize_branch_name():
    assert sanitize_branch_name("Add Clerk auth!") == "Add-Clerk-auth"
    assert sanitize_branch_name("  ") == "planwright-changes"


@needs_git
def test_branch_name_collision_gets_suffix(git_repo, config):
    git(git_repo, "branch", "feat/auth")
    git(git_repo, "branch", "feat/auth-2")
    oracle = FakeOracle(responses=[{"action": "branch_create", "branch_name": "feat/auth"}])
    registry = build_registry(oracle, config, confirm=lambda q: True)
    handler, ctx = context_for(registry, "git-operations", git_repo, "create a branch")

    result = handler.execute(ctx)

    assert result["branch"] == "feat/auth-3"
    assert result["base_branch"] == "main"


@needs_git
def test_commit_stages_everything(git_repo, config):
    (git_repo / "src" / "app.ts").write_text("export const app = 2;\n")
    oracle = FakeOracle(responses=[{"action": "commit", "commit_message": "feat: bump app"}])
    registry = build_registry(oracle, config, confirm=lambda q: True)
    handler, ctx = context_for(registry, "git-operations", git_repo, "commit the change")

    result = handler.execute(ctx)

    assert result["sha"]
    log = subprocess.run(["git", "log", "-1", "--pretty=%s"], cwd=git_repo, capture_output=True, text=True)
    assert log.stdout.strip() == "feat: bump app"


@needs_git
def test_signed_commits_skip_the_step(git_repo, config):
    git(git_repo, "config", "commit.gpgsign", "true")
    oracle = FakeOracle()
    registry = build_registry(oracle, config, confirm=lambda q: True)
    handler, ctx = context_for(registry, "git-operations", git_repo, "commit")

    with pytest.raises(StepSkipped):
        handler.execute(ctx)
    assert oracle.calls == []
