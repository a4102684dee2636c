"""Output processor for ralph - renders loop events as JSON or for humans."""

from __future__ import annotations

import json
import sys
from pathlib import Path
from typing import Optional, TextIO

from rich.console import Console
from rich.panel import Panel

from ralph.config.models import OutputConfig, OutputMode
from ralph.output.events import Event, EventType

PREVIEW_LINES = 10


def _preview(text: str, max_lines: int = PREVIEW_LINES) -> str:
    lines = text.split("\n")
    if len(lines) <= max_lines:
        return text
    keep = max_lines // 2
    return "\n".join(lines[:keep] + ["...", f"({len(lines) - keep} more lines)"])


class OutputProcessor:
    """Event subscriber that formats loop progress."""

    def __init__(
        self,
        config: OutputConfig,
        stdout: Optional[TextIO] = None,
        stderr: Optional[TextIO] = None,
    ):
        """Initialize the output processor.

        Args:
            config: Output configuration
            stdout: Standard output stream (default: sys.stdout at construction)
            stderr: Standard error stream (default: sys.stderr at construction)
        """
        self.config = config
        self.stdout = stdout or sys.stdout
        self.stderr = stderr or sys.stderr

        # Rich console for human-readable output
        self.console = Console(
            file=self.stderr,
            force_terminal=config.colors,
            no_color=not config.colors,
        )

        # JSON mode outputs to stdout
        self.json_mode = config.mode == OutputMode.JSON

    def __call__(self, event: Event) -> None:
        self.emit(event)

    def emit(self, event: Event) -> None:
        if self.json_mode:
            self._emit_json(event)
        else:
            self._emit_human(event)

    def _emit_json(self, event: Event) -> None:
        """Emit event as JSON line to stdout."""
        line = json.dumps(event.to_dict(), ensure_ascii=False)
        print(line, file=self.stdout, flush=True)

    def _emit_human(self, event: Event) -> None:
        """Emit event in human-readable format to stderr."""
        data = event.data

        if event.type == EventType.LOOP_STARTED:
            ceiling = data.get("cost_ceiling")
            budget = f"${ceiling:.2f}" if ceiling is not None else "unlimited"
            self.console.print(
                f"[bold blue]Loop started[/bold blue] model=[cyan]{data.get('model')}[/cyan] "
                f"max_iterations={data.get('max_iterations')} budget={budget}"
            )

        elif event.type == EventType.ITERATION_STARTED:
            self.console.print(
                f"[dim]Iteration {data.get('index', 0) + 1} "
                f"({data.get('model')}, ${data.get('spend', 0.0):.4f} spent)[/dim]"
            )

        elif event.type == EventType.ITERATION_COMPLETED:
            response = data.get("response", "")
            if response:
                self.console.print(Panel(_preview(response), border_style="blue"))
            context = data.get("context", {})
            marker = "[green]found[/green]" if data.get("completion_detected") else "not found"
            self.console.print(
                f"[dim]  +${data.get('cost_delta', 0.0):.4f} "
                f"(total ${data.get('spend', 0.0):.4f}), "
                f"context {context.get('used', 0)}/{context.get('capacity', 0)}, "
                f"attempts {data.get('attempts', 1)}, marker[/dim] {marker}"
            )

        elif event.type == EventType.CALL_RETRY:
            self.console.print(
                f"[yellow]Retry {data.get('attempt')}/{data.get('max_attempts')} "
                f"in {data.get('delay', 0.0):.1f}s ({data.get('error_code')}): "
                f"{data.get('message', '')}[/yellow]"
            )

        elif event.type == EventType.COMPACTION:
            status = "[green]OK[/green]" if data.get("recovered") else "[red]FAILED[/red]"
            self.console.print(
                f"[yellow]> compaction[/yellow] {data.get('tokens_before')} -> "
                f"{data.get('tokens_after')} / {data.get('capacity')} tokens {status}"
            )

        elif event.type == EventType.MODEL_SWITCHED:
            self.console.print(
                f"[magenta]Switched model[/magenta] {data.get('from')} -> "
                f"[cyan]{data.get('to')}[/cyan]"
            )

        elif event.type == EventType.LOOP_FINISHED:
            outcome = data.get("outcome", "")
            style = "green" if data.get("exit_code") == 0 else "red"
            self.console.print()
            self.console.print(
                f"[bold {style}]{outcome}[/bold {style}] after "
                f"{data.get('iteration_count', 0)} iterations, "
                f"${data.get('spend', 0.0):.4f} spent"
            )
            budget = data.get("budget") or {}
            if budget.get("overshoot"):
                self.console.print(
                    f"[yellow]Over the ${budget['ceiling']:.2f} ceiling by "
                    f"${budget['overshoot']:.4f}[/yellow]"
                )
            if data.get("error"):
                self.console.print(f"[red]Error: {data['error']}[/red]")

    def print_final(self, message: str) -> None:
        """Print the completing response to stdout (human mode only)."""
        if not self.json_mode:
            print(message, file=self.stdout)


class JsonlEventLog:
    """Subscriber that appends every event to a JSONL file."""

    def __init__(self, path: Path):
        self.path = Path(path)
        self.path.parent.mkdir(parents=True, exist_ok=True)
        self._file: Optional[TextIO] = open(self.path, "a", encoding="utf-8")

    def __call__(self, event: Event) -> None:
        if self._file is None:
            return
        self._file.write(json.dumps(event.to_dict(), ensure_ascii=False) + "\n")
        self._file.flush()

    def close(self) -> None:
        if self._file is not None:
            self._file.close()
            self._file = None

    def __enter__(self) -> "JsonlEventLog":
        return self

    def __exit__(self, *exc) -> None:
        self.close()
