"""dryrun.py — Dry-run mode: show the resolved steps and their commands without attaching."""

from rich.markup import escape
from rich.table import Table

from steprunner.config import _console, rbox
from steprunner.options import PipelineOptions
from steprunner.pipeline import _checkpoint_index
from steprunner.resolve import ResolvedPipeline
from steprunner.steps import step_commands


def _plan_rows(steps, options: PipelineOptions, base_path: str, kind: str, skip_through: int = -1) -> list[dict]:
    rows = []
    for idx, step in enumerate(steps):
        rows.append(
            {
                "id": step.id,
                "name": step.display_name,
                "kind": "skipped" if idx <= skip_through else kind,
                "commands": step_commands(step, options, base_path),
            }
        )
    return rows


def dry_run(resolved: ResolvedPipeline, options: PipelineOptions) -> dict:
    """Print the step plan for *resolved* and return it as a summary dict."""
    skip_through = _checkpoint_index(resolved.steps, options.checkpoint)
    steps = _plan_rows(resolved.steps, options, resolved.base_path, "step", skip_through)
    after = _plan_rows(resolved.after_steps, options, resolved.base_path, "after-step")

    _console.print()
    _console.rule("[bold]Dry Run — Step Plan[/]", style="blue")
    _console.print()

    t = Table(box=rbox.ROUNDED, border_style="bright_black", title="[bold]Steps[/]", title_style="")
    t.add_column("#", justify="right", style="dim")
    t.add_column("Step", style="cyan", no_wrap=True)
    t.add_column("Type", no_wrap=True)
    t.add_column("Commands", style="dim", no_wrap=False)

    for n, row in enumerate(steps + after, start=1):
        t.add_row(str(n), escape(row["name"]), row["kind"], escape("\n".join(row["commands"])))

    _console.print(t)

    _console.print()
    _console.print("[bold]Summary:[/]")
    _console.print(f"  Pipeline:            [bold]{escape(resolved.name)}[/]")
    if resolved.target:
        _console.print(f"  Target:              [bold]{escape(resolved.target)}[/]")
    _console.print(f"  Box:                 {escape(resolved.box.id) if resolved.box else '[dim]none[/]'}")
    _console.print(f"  Steps:               [bold]{len(steps)}[/]  ({skip_through + 1} skipped)")
    _console.print(f"  After-steps:         {len(after)}")
    _console.print(f"  Source root:         {escape(options.source_root)}")
    _console.print(f"  Ignore file:         {escape(options.ignore_file or '-')}")
    _console.print(f"  Command timeout:     {options.command_timeout_seconds / 60:g} min")
    _console.print(f"  No-response timeout: {options.no_response_timeout_seconds / 60:g} min")
    _console.print()

    return {
        "pipeline": resolved.name,
        "target": resolved.target,
        "box": resolved.box.id if resolved.box else None,
        "total_steps": len(steps),
        "after_steps": len(after),
        "skipped": skip_through + 1,
        "steps": steps + after,
    }
