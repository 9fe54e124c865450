"""
PLANWRIGHT CLI — The Interface

  planwright run "<request>" --repo <path>   (plan, approve, execute)
  planwright run --repo <path>               (prompts for the request)

Plus utilities:
  - planwright status        (check config, API keys, handlers, interceptors)
  - planwright init <path>   (bootstrap .planwright in a repo)
  - planwright history       (view previous runs)
"""

from __future__ import annotations

import shutil
from pathlib import Path
from typing import Optional

import typer
from dotenv import load_dotenv
from loguru import logger
from rich.console import Console
from rich.table import Table

from planwright.config_loader import load_config, validate_api_keys
from planwright.controller import Controller, PlanState, build_registry
from planwright.history import RunHistory
from planwright.identity import BANNER, __codename__, __tagline__, __version__
from planwright.oracle import Oracle

# Load .env from current directory or home
load_dotenv()
load_dotenv(Path.home() / ".planwright" / ".env")

app = typer.Typer(
    name="planwright",
    help=f"{__codename__} — {__tagline__}\nPlan-first code changes with human approval.",
    no_args_is_help=True,
    rich_markup_mode="rich",
)

console = Console()


def version_callback(value: bool):
    if value:
        console.print(f"{__codename__} v{__version__}")
        raise typer.Exit()


@app.callback()
def main(
    version: Optional[bool] = typer.Option(
        None,
        "--version",
        callback=version_callback,
        is_eager=True,
        help="Show the version and exit.",
    ),
):
    pass


# ---------------------------------------------------------------------------
# Banner
# ---------------------------------------------------------------------------


def _print_banner():
    console.print(f"[bright_green]{BANNER}[/]")
    console.print(f"  [dim]v{__version__} — {__tagline__}[/]\n")


# ---------------------------------------------------------------------------
# Commands
# ---------------------------------------------------------------------------

@app.command()
def run(
    request: Optional[str] = typer.Argument(None, help="What you want done. Prompted for when omitted."),
    repo: Path = typer.Option(Path("."), "--repo", "-r", help="Path to the target repository"),
    auto_approve: bool = typer.Option(False, "--yes", "-y", help="Approve the plan without asking"),
    force: bool = typer.Option(False, "--force", help="Run even if the working tree has uncommitted changes"),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Enable debug logging"),
):
    """Plan a request, ask for approval, then execute it."""
    _print_banner()
    _configure_logging(verbose)

    repo = repo.resolve()
    if not repo.exists():
        console.print(f"[red]Repository not found: {repo}[/]")
        raise typer.Exit(1)

    if not request:
        console.print("[bold]Describe what you want PLANWRIGHT to do:[/]")
        request = typer.prompt(">>", default="", show_default=False)
    if not request.strip():
        console.print("[red]No request provided.[/]")
        raise typer.Exit(1)

    controller = Controller(
        repo_path=repo,
        config=load_config(repo),
        auto_approve=auto_approve,
        force=force,
    )
    result = controller.run(request.strip())

    status_color = {
        PlanState.DONE: "green",
        PlanState.CANCELLED: "yellow",
    }.get(result.state, "red")
    console.print(f"\n[bold {status_color}]Status: {result.state.value}[/] [dim]{result.message}[/]")

    if not result.ok:
        raise typer.Exit(1)


@app.command()
def status(
    repo: Optional[Path] = typer.Option(None, "--repo", "-r"),
):
    """Check PLANWRIGHT configuration and readiness."""
    _print_banner()

    # API Keys
    keys = validate_api_keys()
    key_table = Table(title="API Keys", border_style="cyan")
    key_table.add_column("Key")
    key_table.add_column("Status")

    for key, available in keys.items():
        status_str = "[green]✓ Available[/]" if available else "[red]✗ Missing[/]"
        key_table.add_row(key, status_str)

    console.print(key_table)

    config = load_config(repo.resolve() if repo else None)
    console.print("\n[bold]Routing:[/]")
    for role, model in config.routing.model_dump().items():
        console.print(f"  {role:<10} {model}")

    console.print("\n[bold]Limits:[/]")
    console.print(f"  Max regenerations:  {config.limits.max_regenerations}")
    console.print(f"  Batch token budget: {config.limits.batch_token_budget:,}")
    console.print(f"  Oracle attempts:    {config.limits.oracle_max_attempts}")
    console.print(f"  Min confidence:     {config.matching.min_confidence}")

    registry = build_registry(Oracle(config), config)
    reg_table = Table(title="Handlers & Interceptors", border_style="magenta")
    reg_table.add_column("Kind")
    reg_table.add_column("Name")
    reg_table.add_column("Hook points")

    for name, handler in registry.handlers().items():
        reg_table.add_row("handler", name, ", ".join(handler.operations))
    for name, interceptor in registry.interceptors().items():
        hooks = ", ".join(f"{h.handler}.{h.operation}" for h in interceptor.hooks)
        reg_table.add_row("interceptor", name, hooks)

    console.print(reg_table)

    # Tools
    tools_table = Table(title="System Tools", border_style="cyan")
    tools_table.add_column("Tool")
    tools_table.add_column("Status")

    for tool in ["git", "node", "npm", "yarn", "pnpm", "bun"]:
        found = shutil.which(tool)
        s = f"[green]✓ {found}[/]" if found else "[dim]✗ Not found[/]"
        tools_table.add_row(tool, s)

    console.print(tools_table)


@app.command()
def init(
    repo: Optional[Path] = typer.Argument(None, help="Path to repository"),
):
    """Initialize .planwright directory in a repository."""
    _print_banner()

    repo = (repo or Path.cwd()).resolve()
    pw_dir = repo / ".planwright"
    pw_dir.mkdir(exist_ok=True)

    config_path = pw_dir / "config.yaml"
    if not config_path.exists():
        config_path.write_text("""# PLANWRIGHT repo-level config overrides
# These merge with the built-in defaults.

# Override routing for this specific project:
# routing:
#   planner: "anthropic/claude-sonnet-4-20250514"

# Adjust limits:
# limits:
#   batch_token_budget: 20000
#   max_regenerations: 3

# Keep files away from the handlers:
# project:
#   excluded_patterns:
#     - "**/fixtures/**"
""")

    # History is local state, not project content
    gitignore = repo / ".gitignore"
    entry = ".planwright/history.jsonl"
    if gitignore.exists():
        content = gitignore.read_text()
        if entry not in content:
            with open(gitignore, "a") as f:
                f.write(f"\n# PLANWRIGHT\n{entry}\n")
    else:
        gitignore.write_text(f"# PLANWRIGHT\n{entry}\n")

    console.print(f"[green]✅ Initialized PLANWRIGHT in {pw_dir}[/]")
    console.print(f"  Config:  {config_path}")


@app.command()
def history(
    repo: Path = typer.Option(Path("."), "--repo", "-r", help="Path to the target repository"),
    count: int = typer.Option(10, "--count", "-n", help="Number of entries to show"),
    stats: bool = typer.Option(False, "--stats", "-s", help="Show aggregate statistics"),
):
    """View run history and statistics."""
    _print_banner()

    repo = repo.resolve()
    config = load_config(repo)
    hist = RunHistory(repo, config.workspace.history_file)

    if stats:
        s = hist.stats()
        if s["total"] == 0:
            console.print("[dim]No history yet.[/]")
            return

        stats_table = Table(title="PLANWRIGHT Statistics", border_style="cyan")
        stats_table.add_column("Operation")
        stats_table.add_column("Steps")
        for operation, cnt in sorted(s["by_operation"].items(), key=lambda x: -x[1]):
            stats_table.add_row(operation, str(cnt))
        stats_table.add_row("[bold]total[/]", str(s["total"]))

        console.print(stats_table)
        console.print(f"[dim]Last step: {s['last'][:19]}[/]")
        return

    entries = hist.recent(count)
    if not entries:
        console.print("[dim]No history yet. Run some requests first.[/]")
        return

    table = Table(title=f"Recent Steps (last {count})", border_style="cyan")
    table.add_column("Time", style="dim")
    table.add_column("Operation")
    table.add_column("Description")

    for entry in entries:
        table.add_row(entry.timestamp[:19], entry.operation, entry.description)

    console.print(table)


def _configure_logging(verbose: bool) -> None:
    logger.remove()
    if verbose:
        logger.add(
            lambda msg: console.print(f"[dim]{msg}[/]", highlight=False),
            level="DEBUG",
            format="{time:HH:mm:ss} | {level:<7} | {message}",
        )
    else:
        logger.add(
            lambda msg: console.print(f"[dim]{msg}[/]", highlight=False),
            level="WARNING",
            format="{message}",
        )


# ---------------------------------------------------------------------------
# Entry
# ---------------------------------------------------------------------------

if __name__ == "__main__":
    app()
