"""Command line entry point for streamloop."""

import asyncio
import os
import sys
from pathlib import Path

import typer
from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from streamloop.agent import Agent, LoopOutcome
from streamloop.config import Config, set_config
from streamloop.exceptions import ConfigurationError, TransportError
from streamloop.logging import configure_logging, log
from streamloop.status import (
    TERMINAL,
    TEXT_DELTA,
    TOOL_COMPLETED,
    TOOL_DETECTED,
    TOOL_ERROR,
    StatusEvent,
)

console = Console()
app = typer.Typer(help="streamloop - streaming tool-calling agent loop")


def _print_status(event: StatusEvent) -> None:
    """Render progress events as they arrive."""
    payload = event.payload
    if event.kind == TEXT_DELTA:
        console.print(payload.get("text", ""), end="", markup=False, highlight=False)
    elif event.kind == TOOL_DETECTED:
        console.print(f"\n[cyan]> {payload.get('tool')}[/cyan] [dim]{payload.get('tool_id')}[/dim]")
    elif event.kind == TOOL_COMPLETED:
        mark = "[green]ok[/green]" if payload.get("success") else "[red]failed[/red]"
        console.print(f"  {payload.get('tool')} {mark} [dim]{payload.get('duration')}s[/dim]")
    elif event.kind == TOOL_ERROR:
        console.print(f"  [red]invalid tool input[/red] {payload.get('error')}")
    elif event.kind == TERMINAL:
        console.print()


def _print_outcome(outcome: LoopOutcome) -> None:
    state = outcome.state
    table = Table(show_header=False, box=None)
    table.add_row("Stopped", outcome.signal.kind.value)
    table.add_row("Reason", outcome.signal.detail)
    table.add_row("Next", outcome.recommended_action)
    table.add_row("Iterations", str(state.iteration_no))
    table.add_row("Tool cycles", str(state.tool_cycles))
    table.add_row("Errors", str(len(state.errors)))
    if state.generated_artifacts:
        table.add_row("Artifacts", ", ".join(state.generated_artifacts))
    if state.usage:
        table.add_row("Tokens", ", ".join(f"{k}={v}" for k, v in state.usage.items()))
    console.print(Panel(table, title="streamloop", expand=False))


def _load_config(config: str, model: str, workspace: str, max_cycles: int) -> Config:
    if config:
        cfg = Config.from_yaml(Path(config))
    else:
        cfg = Config.load()
    if model:
        cfg.model.model = model
    if workspace:
        cfg.workspace.path = workspace
    if max_cycles > 0:
        cfg.loop.max_tool_cycles = max_cycles
    if not cfg.model.api_key:
        cfg.model.api_key = os.environ.get("ANTHROPIC_API_KEY", "")
    return cfg


async def _run_once(prompt: str, operation: str) -> LoopOutcome:
    agent = Agent(status_sink=_print_status)
    try:
        return await agent.run(prompt, operation=operation or None)
    finally:
        await agent.aclose()


@app.command()
def run(
    prompt: str = typer.Argument(..., help="Request to send to the model"),
    config: str = typer.Option("", "-c", "--config", help="Path to config file"),
    model: str = typer.Option("", "-m", "--model", help="Override model"),
    workspace: str = typer.Option("", "-w", "--workspace", help="Workspace directory for tool output"),
    operation: str = typer.Option("", "-o", "--operation", help="Budget profile: generation, editing, diagnostic"),
    max_cycles: int = typer.Option(0, "--max-cycles", help="Override the tool cycle limit"),
    verbose: bool = typer.Option(False, "-v", "--verbose", help="Debug logging"),
) -> None:
    """Run one request through the agent loop."""
    cfg = _load_config(config, model, workspace, max_cycles)
    if verbose:
        cfg.logging.level = "DEBUG"
    set_config(cfg)
    configure_logging()
    cfg.resolved_workspace_path().mkdir(parents=True, exist_ok=True)

    try:
        outcome = asyncio.run(_run_once(prompt, operation))
    except KeyboardInterrupt:
        log.info("Interrupted")
        sys.exit(130)
    except ConfigurationError as e:
        console.print(f"[red]Configuration error:[/red] {e}")
        sys.exit(2)
    except TransportError as e:
        log.error("Model stream failed", error=str(e))
        console.print(f"[red]Model stream failed:[/red] {e}")
        sys.exit(1)

    _print_outcome(outcome)


@app.command()
def version() -> None:
    """Show version information."""
    from streamloop import __version__
    console.print(f"streamloop v{__version__}")


def main() -> None:
    app()


if __name__ == "__main__":
    main()
