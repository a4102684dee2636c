"""Main CLI entry point for ralph."""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Any, Optional

import typer
from rich.console import Console
from rich.logging import RichHandler
from rich.table import Table

from ralph import __version__
from ralph.config.loader import find_config_file, load_config
from ralph.config.models import CompletionGuard, OutputMode
from ralph.core.errors import RalphError
from ralph.core.loop import LoopController
from ralph.core.outcome import EXIT_CONFIG_ERROR, EXIT_FAILED, Completed
from ralph.core.selector import ModelSelector
from ralph.output.events import EventEmitter, LoggingSubscriber
from ralph.output.processor import JsonlEventLog, OutputProcessor

app = typer.Typer(
    name="ralph",
    help="Run an agent in a loop until it declares the task done",
    add_completion=False,
)

console = Console(stderr=True)
logger = logging.getLogger("ralph")


def version_callback(value: bool):
    if value:
        console.print(f"ralph v{__version__}")
        raise typer.Exit()


def setup_logging(verbose: bool) -> None:
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(console=console, rich_tracebacks=True, show_path=False)],
        force=True,
    )
    # httpx logs every request at INFO
    logging.getLogger("httpx").setLevel(logging.WARNING)


@app.callback()
def main(
    version: bool = typer.Option(
        None,
        "--version",
        "-v",
        help="Show version and exit",
        callback=version_callback,
        is_eager=True,
    ),
):
    """ralph - iterate an agent until it emits the completion promise."""
    pass


@app.command("run")
def run_command(
    prompt: Optional[str] = typer.Option(None, "--prompt", "-p", help="Task prompt"),
    prompt_file: Optional[Path] = typer.Option(
        None,
        "--prompt-file",
        "-f",
        exists=True,
        dir_okay=False,
        readable=True,
        help="Read the task prompt from a file",
    ),
    completion_promise: Optional[str] = typer.Option(
        None, "--completion-promise", help="Literal marker that signals completion"
    ),
    # Loop bounds
    max_iterations: Optional[int] = typer.Option(None, "--max-iterations", "-n", min=1),
    cost_ceiling: Optional[float] = typer.Option(None, "--cost-ceiling", min=0.0, help="USD"),
    model: Optional[str] = typer.Option(None, "--model", "-m", help="Model id or alias"),
    # Config options
    config_file: Optional[Path] = typer.Option(None, "--config", "-c", help="Path to config file"),
    completion_guard: Optional[CompletionGuard] = typer.Option(None, "--completion-guard"),
    escalate_model: Optional[str] = typer.Option(
        None, "--escalate-model", help="Switch to this model if the loop has not finished"
    ),
    escalate_after: Optional[int] = typer.Option(
        None, "--escalate-after", min=1, help="Iterations before escalating"
    ),
    autonomous: bool = typer.Option(
        False,
        "--autonomous",
        envvar="RALPH_AUTONOMOUS",
        help="Run unattended; the agent never waits for approval",
    ),
    # Output options
    json_mode: bool = typer.Option(False, "--json", help="Output events in JSONL format"),
    log_file: Optional[Path] = typer.Option(None, "--log-file", help="Append JSONL events here"),
    verbose: bool = typer.Option(False, "--verbose", help="Verbose output"),
):
    """Run the loop until completion, a limit, or a failure."""
    setup_logging(verbose)

    if (prompt is None) == (prompt_file is None):
        raise typer.BadParameter("Give exactly one of --prompt or --prompt-file")
    if (escalate_model is None) != (escalate_after is None):
        raise typer.BadParameter("--escalate-model and --escalate-after go together")

    prompt_text = prompt if prompt is not None else prompt_file.read_text(encoding="utf-8")

    overrides: dict[str, Any] = {}
    if json_mode:
        overrides["output.mode"] = OutputMode.JSON
    if log_file:
        overrides["output.log_file"] = log_file
    if completion_guard:
        overrides["completion.guard"] = completion_guard
    if escalate_model:
        overrides["escalation.model"] = escalate_model
        overrides["escalation.after_iterations"] = escalate_after
    if autonomous:
        overrides["autonomous"] = True

    config_path = config_file or find_config_file()
    try:
        config = load_config(config_path, overrides)
        loop_config = config.loop_config(
            prompt_text,
            completion_marker=completion_promise,
            max_iterations=max_iterations,
            cost_ceiling=cost_ceiling,
            model_id=model,
        )
        selector = ModelSelector(config)
    except (RalphError, ValueError, FileNotFoundError) as e:
        console.print(f"[red]Error loading configuration: {e}[/red]")
        raise typer.Exit(EXIT_CONFIG_ERROR)

    output = OutputProcessor(config.output)
    events = EventEmitter([output, LoggingSubscriber(level=logging.DEBUG)])
    event_log = None
    if config.output.log_file:
        event_log = JsonlEventLog(config.output.log_file)
        events.subscribe(event_log)

    try:
        controller = LoopController.from_config(loop_config, selector, config, events=events)
        outcome = controller.run()
    except Exception:
        if verbose:
            console.print_exception()
        else:
            console.print("[red]Unexpected error; rerun with --verbose for details[/red]")
        raise typer.Exit(EXIT_FAILED)
    finally:
        if event_log is not None:
            event_log.close()

    if isinstance(outcome, Completed):
        output.print_final(outcome.response)

    raise typer.Exit(outcome.exit_code)


@app.command("models")
def list_models(
    config_file: Optional[Path] = typer.Option(None, "--config", "-c", help="Path to config file"),
):
    """List the configured model registry."""
    try:
        config = load_config(config_file or find_config_file())
        registry = config.build_registry()
    except (RalphError, FileNotFoundError) as e:
        console.print(f"[red]Error loading configuration: {e}[/red]")
        raise typer.Exit(EXIT_CONFIG_ERROR)

    default = registry.default
    specs = list(registry)
    if default.id not in {spec.id for spec in specs}:
        specs.insert(0, default)

    table = Table(title="Models")
    table.add_column("id", style="cyan")
    table.add_column("alias")
    table.add_column("context", justify="right")
    table.add_column("usable", justify="right")
    table.add_column("$/Mtok in/out", justify="right")
    table.add_column("format")
    table.add_column("tools")
    for spec in specs:
        marker = " *" if spec.id == default.id else ""
        table.add_row(
            spec.id + marker,
            spec.name or "",
            str(spec.context_window),
            str(spec.usable_context),
            f"{spec.input_cost_per_mtok:g} / {spec.output_cost_per_mtok:g}",
            spec.transcript_format.value,
            "yes" if spec.supports_tools else "no",
        )
    Console().print(table)


@app.command("config")
def show_config(
    config_file: Optional[Path] = typer.Option(None, "--config", "-c", help="Path to config file"),
):
    """Show current configuration."""
    path = config_file or find_config_file()
    try:
        if path:
            console.print(f"Loading config from: {path}")
        else:
            console.print("No config file found, using defaults")
        config = load_config(path)
    except (RalphError, FileNotFoundError) as e:
        console.print(f"[red]Error loading configuration: {e}[/red]")
        raise typer.Exit(EXIT_CONFIG_ERROR)

    print(config.model_dump_json(indent=2))


if __name__ == "__main__":
    app()
