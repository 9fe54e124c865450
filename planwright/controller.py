"""
PLANWRIGHT Controller — the plan orchestrator.

It is NOT smart. It is deterministic.

Pipeline: Guard → Plan hooks → Match → Plan → Approve (or regenerate) → Execute

Responsibilities:
  - Refuse to run on a dirty working tree (unless forced)
  - Score interceptors against the request (one MatchRecord per run)
  - Ask the planner for a plan, let interceptors veto their part of it
  - Get the user's approval, regenerating from feedback a bounded number of times
  - Dispatch steps to handlers strictly in priority order
  - Record every successful step in run history

It never writes code. Steps already executed are never rolled back.
"""

from __future__ import annotations

import warnings
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Callable, Protocol

from loguru import logger
from rich.console import Console
from rich.panel import Panel
from rich.prompt import Confirm, Prompt
from rich.table import Table

from planwright.config_loader import PlanwrightConfig, load_config
from planwright.event_bus import EventBus
from planwright.handlers import HandlerContext, StepSkipped, resolve_required_files
from planwright.handlers.file_modifier import FileModifierHandler
from planwright.handlers.package_management import PackageManagementHandler
from planwright.handlers.version_control import VersionControlHandler
from planwright.history import RunHistory
from planwright.identity import __tagline__, __version__
from planwright.interceptors.clerk import ClerkInterceptor
from planwright.interceptors.hello import HelloInterceptor
from planwright.merger import AnalysisConflictError
from planwright.oracle import BillingError, Oracle, OracleError
from planwright.patching import PatchApplicationError
from planwright.planner import Plan, Planner, Step, sort_steps
from planwright.project_files import load_project_files
from planwright.prompting import TransformEngine
from planwright.registry import MatchRecord, Registry
from planwright.workspace import Workspace, WorkspaceError

console = Console()

BILLING_HINT = (
    "Your oracle provider rejected the request for billing reasons. "
    "Add credits or check your plan in the provider's billing settings "
    "(for Anthropic: console.anthropic.com → Plans & Billing), then run again."
)


# ---------------------------------------------------------------------------
# States
# ---------------------------------------------------------------------------

class PlanState(str, Enum):
    IDLE = "idle"
    PLANNING = "planning"
    AWAITING_APPROVAL = "awaiting_approval"
    EXECUTING = "executing"
    DONE = "done"
    REJECTED = "rejected"
    COLLECTING_FEEDBACK = "collecting_feedback"
    REGENERATING = "regenerating"
    ABORTED = "aborted"
    CANCELLED = "cancelled"
    FAILED = "failed"


TERMINAL_STATES = frozenset({PlanState.DONE, PlanState.ABORTED, PlanState.CANCELLED, PlanState.FAILED})

_S = PlanState
TRANSITIONS: dict[PlanState, frozenset[PlanState]] = {
    _S.IDLE: frozenset({_S.PLANNING}),
    _S.PLANNING: frozenset({_S.AWAITING_APPROVAL, _S.DONE}),
    _S.AWAITING_APPROVAL: frozenset({_S.EXECUTING, _S.REJECTED}),
    _S.REJECTED: frozenset({_S.COLLECTING_FEEDBACK, _S.ABORTED}),
    _S.COLLECTING_FEEDBACK: frozenset({_S.REGENERATING}),
    _S.REGENERATING: frozenset({_S.AWAITING_APPROVAL, _S.DONE}),
    _S.EXECUTING: frozenset({_S.DONE}),
    _S.DONE: frozenset(),
    _S.ABORTED: frozenset(),
    _S.CANCELLED: frozenset(),
    _S.FAILED: frozenset(),
}
# Any live state may be cancelled by the user or fail
for _state in set(PlanState) - TERMINAL_STATES:
    TRANSITIONS[_state] = TRANSITIONS[_state] | {_S.CANCELLED, _S.FAILED}


class IllegalTransitionError(RuntimeError):
    pass


class UserCancelled(Exception):
    """The user backed out at a prompt. Not an error."""


class MissingHandlerWarning(UserWarning):
    """A plan step names a handler that is not registered."""


class DirtyRepoError(Exception):
    """Raised when the repository has uncommitted changes."""


@dataclass
class RunResult:
    state: PlanState
    message: str = ""
    executed: list[Step] = field(default_factory=list)
    plan: Plan | None = None

    @property
    def ok(self) -> bool:
        return self.state in (PlanState.DONE, PlanState.CANCELLED)


# ---------------------------------------------------------------------------
# Prompting the human
# ---------------------------------------------------------------------------

class Prompter(Protocol):
    def confirm(self, question: str) -> bool: ...

    def ask(self, question: str) -> str: ...


class ConsolePrompter:
    """rich prompts. Ctrl-C or EOF at any prompt cancels the run."""

    def __init__(self, auto_approve: bool = False):
        self.auto_approve = auto_approve

    def confirm(self, question: str) -> bool:
        if self.auto_approve:
            return True
        try:
            return Confirm.ask(f"[bold]{question}[/]", default=True)
        except (KeyboardInterrupt, EOFError) as e:
            raise UserCancelled() from e

    def ask(self, question: str) -> str:
        try:
            return Prompt.ask(f"[bold]{question}[/]").strip()
        except (KeyboardInterrupt, EOFError) as e:
            raise UserCancelled() from e


# ---------------------------------------------------------------------------
# Wiring
# ---------------------------------------------------------------------------

def build_registry(
    oracle: Oracle,
    config: PlanwrightConfig,
    confirm: Callable[[str], bool] | None = None,
) -> Registry:
    """Registry with the bundled handlers and interceptors. Handlers first: interceptors validate against them."""
    registry = Registry(min_confidence=config.matching.min_confidence)
    engine = TransformEngine(registry)

    for handler_cls in (FileModifierHandler, PackageManagementHandler, VersionControlHandler):
        registry.register_handler(handler_cls(oracle, engine, config))

    registry.register_interceptor(HelloInterceptor(confirm=confirm))
    registry.register_interceptor(ClerkInterceptor(confirm=confirm))
    return registry


# ---------------------------------------------------------------------------
# Controller
# ---------------------------------------------------------------------------

class Controller:
    def __init__(
        self,
        repo_path: Path,
        config: PlanwrightConfig | None = None,
        oracle: Oracle | None = None,
        registry: Registry | None = None,
        prompter: Prompter | None = None,
        auto_approve: bool = False,
        force: bool = False,
        bus: EventBus | None = None,
    ):
        self.repo_path = repo_path.resolve()
        self.config = config or load_config(self.repo_path)
        self.oracle = oracle or Oracle(self.config)
        self.prompter = prompter or ConsolePrompter(auto_approve=auto_approve)
        self.registry = registry or build_registry(self.oracle, self.config, confirm=self.prompter.confirm)
        self.planner = Planner(self.oracle, self.registry)
        self.auto_approve = auto_approve
        self.force = force
        self.bus = bus or EventBus()

        self.max_regenerations = self.config.limits.max_regenerations
        self.state = PlanState.IDLE
        self._history = RunHistory(self.repo_path, self.config.workspace.history_file)

        # Per-run state, reset by generate_plan
        self._request = ""
        self._record = MatchRecord()
        self._history_text = ""
        self._declined: set[str] = set()

    # -- state machine --

    def _transition(self, new: PlanState) -> None:
        if new not in TRANSITIONS[self.state]:
            raise IllegalTransitionError(f"Illegal plan state transition: {self.state.value} → {new.value}")
        logger.debug(f"[STATE] {self.state.value} → {new.value}")
        self.bus.emit("state_changed", "controller", {"from": self.state.value, "to": new.value})
        self.state = new

    def _finish(self, state: PlanState, message: str, plan: Plan | None = None,
                executed: list[Step] | None = None) -> RunResult:
        self._transition(state)
        result = RunResult(state=state, message=message, executed=list(executed or []), plan=plan)
        self.bus.emit("run_finished", "controller", {
            "state": state.value,
            "message": message,
            "executed": len(result.executed),
        })
        return result

    # -- entry point --

    def run(self, request: str) -> RunResult:
        """Plan, approve and execute one user request."""
        self.state = PlanState.IDLE
        plan: Plan | None = None
        executed: list[Step] = []

        console.print(Panel(
            f"[bold green]Request:[/] {request[:200]}\n[bold]Repo:[/] {self.repo_path}",
            title=f"⚡ PLANWRIGHT v{__version__}",
            subtitle=__tagline__,
            border_style="bright_green",
        ))
        self.bus.emit("run_started", "controller", {"request": request})

        try:
            self._guard_clean_tree()

            gate = self._before_plan()
            if gate is not None:
                return self._finish(PlanState.CANCELLED, gate)

            self._transition(PlanState.PLANNING)
            plan = self.generate_plan(request)

            rejections = 0
            while True:
                if not plan.steps:
                    console.print("[yellow]No actions to execute.[/]")
                    return self._finish(PlanState.DONE, "No actions to execute", plan=plan)

                self._transition(PlanState.AWAITING_APPROVAL)
                self.bus.emit("plan_ready", "controller", {"steps": len(plan.steps), "attempt": rejections + 1})
                if self.approve(plan):
                    break

                rejections += 1
                self._transition(PlanState.REJECTED)
                if rejections >= self.max_regenerations:
                    console.print(f"[red]🚫 Plan rejected {rejections} times. Aborting.[/]")
                    return self._finish(
                        PlanState.ABORTED, f"Plan rejected {rejections} times", plan=plan,
                    )

                self._transition(PlanState.COLLECTING_FEEDBACK)
                feedback = self.prompter.ask("What should change in the plan?") or "Propose a different plan."

                self._transition(PlanState.REGENERATING)
                plan = self.regenerate(plan, feedback)

            self._transition(PlanState.EXECUTING)
            self.execute(plan, executed)
            message = f"{len(executed)} of {len(plan.steps)} steps executed"
            console.print(f"[bold green]✅ {message}[/]")
            return self._finish(PlanState.DONE, message, plan=plan, executed=executed)

        except IllegalTransitionError:
            raise
        except (UserCancelled, KeyboardInterrupt):
            console.print("\n[yellow]⚡ Cancelled.[/]")
            return self._finish(PlanState.CANCELLED, "Cancelled by user", plan=plan, executed=executed)
        except BillingError as e:
            logger.error(f"[ORACLE] Billing error: {e}")
            console.print(f"[red]💸 {BILLING_HINT}[/]")
            return self._finish(PlanState.FAILED, BILLING_HINT, plan=plan, executed=executed)
        except DirtyRepoError as e:
            return self._finish(PlanState.FAILED, str(e))
        except (OracleError, PatchApplicationError, AnalysisConflictError, WorkspaceError, OSError, ValueError) as e:
            logger.error(f"[RUN] {type(e).__name__}: {e}")
            console.print(f"[red]💥 Error: {e}[/]")
            return self._finish(PlanState.FAILED, str(e), plan=plan, executed=executed)
        except Exception as e:
            logger.exception("Controller error")
            console.print(f"[red]💥 Error: {e}[/]")
            return self._finish(PlanState.FAILED, str(e), plan=plan, executed=executed)
        finally:
            self._print_usage()

    # -- plan phases --

    def generate_plan(self, request: str) -> Plan:
        """Score interceptors, then ask the planner for a first plan."""
        console.print("\n[bold magenta]🧠 [PLAN] Planning...[/]")
        self._request = request
        self._declined = set()
        self._record = self.registry.match_interceptors(request, self.oracle)
        self._history_text = self._history.format_for_prompt(self.config.limits.history_window)

        files = load_project_files(self.repo_path, self.config.project.excluded_patterns)
        plan = self.planner.generate(request, sorted(files), self._record, self._history_text)
        return self._after_plan(plan)

    def approve(self, plan: Plan) -> bool:
        self._print_plan(plan)
        if self.auto_approve or not self.config.intervention.require_plan_approval:
            return True
        return self.prompter.confirm("Approve plan?")

    def regenerate(self, plan: Plan, feedback: str) -> Plan:
        """A whole new plan from the previous one plus the user's feedback."""
        console.print("\n[bold magenta]🧠 [PLAN] Regenerating...[/]")
        files = load_project_files(self.repo_path, self.config.project.excluded_patterns)
        plan = self.planner.regenerate(
            plan, feedback, self._request, sorted(files), self._record, self._history_text,
        )
        return self._after_plan(plan)

    # -- guards and interceptor hooks --

    def _guard_clean_tree(self) -> None:
        if self.force or not self.config.intervention.require_clean_tree:
            return
        workspace = Workspace(self.repo_path)
        if not workspace.is_git_repo():
            return
        dirty = workspace.dirty_paths()
        if dirty:
            console.print("[red]🚫 Cannot run: repository has uncommitted changes:[/]")
            for line in dirty[:5]:
                console.print(f"  [dim]{line}[/]")
            raise DirtyRepoError("Commit or stash your changes first, or pass --force.")

    def _before_plan(self) -> str | None:
        """Run every interceptor's before-plan hook. Returns the veto message, if any."""
        for interceptor in self.registry.interceptors().values():
            gate = interceptor.before_plan()
            if not gate.proceed:
                message = gate.message or f"Interceptor '{interceptor.name}' stopped planning"
                console.print(f"[yellow]{message}[/]")
                return message
        return None

    def _after_plan(self, plan: Plan) -> Plan:
        """Let each interceptor the plan uses keep or drop itself. A drop removes it from every step."""
        declined = self._declined
        used = {u.name for s in plan.steps for u in (s.interceptors or [])}
        for name in sorted(used - declined):
            interceptor = self.registry.get_interceptor(name)
            if interceptor is None:
                continue
            verdict = interceptor.after_plan(plan)
            if verdict.message:
                console.print(f"[dim]{verdict.message}[/]")
            if not verdict.keep:
                declined.add(name)

        if not declined & used:
            return plan
        logger.info(f"[PLAN] Removing declined interceptors: {sorted(declined & used)}")
        steps = [
            s if s.interceptors is None else s.model_copy(update={
                "interceptors": [u for u in s.interceptors if u.name not in declined],
            })
            for s in plan.steps
        ]
        return plan.model_copy(update={"steps": steps})

    def execute(self, plan: Plan, executed: list[Step] | None = None) -> list[Step]:
        """Run steps in ascending priority, one at a time. ``executed`` is filled as steps complete."""
        executed = executed if executed is not None else []
        steps = sort_steps(plan.steps)
        for number, step in enumerate(steps, 1):
            handler = self.registry.get_handler(step.handler_name)
            if handler is None:
                message = f"No handler registered for '{step.handler_name}'; skipping step: {step.description}"
                logger.warning(f"[RUN] {message}")
                warnings.warn(message, MissingHandlerWarning, stacklevel=2)
                continue

            console.print(f"\n[bold blue]🔧 [{number}/{len(steps)}] {handler.name}:[/] {step.description}")
            # Reloaded per step: later steps see what earlier ones wrote
            files = load_project_files(self.repo_path, self.config.project.excluded_patterns)
            ctx = HandlerContext(
                user_request=self._request,
                step=step,
                plan=plan,
                files=resolve_required_files(handler.requirements, files),
                record=self._record,
                root=self.repo_path,
            )
            try:
                data = handler.execute(ctx)
            except StepSkipped as e:
                logger.warning(f"[RUN] Step skipped ({handler.name}): {e}")
                console.print(f"  [yellow]⏭  Skipped: {e}[/]")
                continue

            self._history.record(handler.name, step.description, data)
            executed.append(step)
            self.bus.emit("step_completed", handler.name, {"description": step.description, "data": data})
        return executed

    # -- output --

    def _print_plan(self, plan: Plan) -> None:
        table = Table(title="Execution Plan", border_style="magenta")
        table.add_column("#", style="dim")
        table.add_column("Handler")
        table.add_column("Description")
        table.add_column("Interceptors")

        for i, step in enumerate(sort_steps(plan.steps), 1):
            table.add_row(
                str(i),
                step.handler_name,
                step.description,
                ", ".join(u.name for u in step.interceptors or []),
            )

        console.print(table)
        if plan.analysis:
            console.print(f"[dim]{plan.analysis}[/]")

    def _print_usage(self) -> None:
        summary = self.oracle.usage.summary()
        if not summary["call_count"]:
            return
        console.print(Panel(
            f"Tokens: {summary['total_tokens']:,} / "
            f"Cost: ${summary['estimated_cost']:.4f} / "
            f"Calls: {summary['call_count']}",
            title="💸 Usage",
            border_style="green",
        ))
