"""pipeline.py — Step pipeline orchestration and main entry point.

Pipeline per run: Config → Resolve → Attach → Steps (stop on first failure) → After-steps.
"""

import argparse
import sys
from dataclasses import dataclass, field
from pathlib import Path

from rich.markup import escape
from rich.panel import Panel

from steprunner.command import CommandError, CommandRunner, CommandTimeout
from steprunner.config import _LOG_TAIL_LINES, _console, is_verbose, set_verbose
from steprunner.options import PipelineOptions, options_from_args
from steprunner.resolve import ResolvedPipeline, list_pipelines, resolve_pipeline
from steprunner.session import ExecutionSession, SessionError, SessionState
from steprunner.steps import step_commands
from steprunner.yml import Config, ConfigError, Step, read_config


@dataclass
class StepResult:
    step: Step
    exit_code: int | None = None
    output: list[str] = field(default_factory=list)
    error: str | None = None
    skipped: bool = False
    after: bool = False
    timed_out: bool = False

    @property
    def ok(self) -> bool:
        return self.skipped or (self.error is None and self.exit_code == 0)


# ── Single step ────────────────────────────────────────────────────────────────


def _tail_output(step: Step, output: list[str]) -> None:
    """Print the last ``_LOG_TAIL_LINES`` output lines of a failed step in a red panel."""
    if not output:
        _console.print("  [dim](no output)[/]")
        return
    shown = output[-_LOG_TAIL_LINES:]
    _console.print(
        Panel(
            escape("\n".join(shown)),
            title=f"[red bold]step output — last {len(shown)} lines[/]  [dim]{escape(step.display_name)}[/]",
            border_style="red",
            expand=True,
        )
    )


def run_step(
    step: Step,
    runner: CommandRunner,
    options: PipelineOptions,
    *,
    base_path: str = "",
    after: bool = False,
) -> StepResult:
    """Run one step as a single command batch and report the outcome.

    Transport and protocol failures do not propagate: they become a failed
    ``StepResult`` that keeps whatever output was captured.
    """
    commands = step_commands(step, options, base_path)
    label = escape(step.display_name)

    try:
        if is_verbose():
            _console.rule(f"[bold cyan]{label}[/]", style="cyan")
            result = runner.run(commands)
        else:
            with _console.status(f"[dim]{'step':<8}[/] {label}", spinner="dots", spinner_style="cyan"):
                result = runner.run(commands)
    except CommandError as exc:
        _console.print(f"  [red]✗ {label}  ({escape(str(exc))})[/]")
        if not is_verbose():
            _tail_output(step, exc.output)
        return StepResult(
            step=step,
            output=exc.output,
            error=str(exc),
            after=after,
            timed_out=isinstance(exc, CommandTimeout),
        )

    if result.ok:
        _console.print(f"  [green]✓ {label}[/]")
    else:
        _console.print(f"  [red]✗ {label}  (exit {result.exit_code})[/]")
        if not is_verbose():
            _tail_output(step, result.output)
    return StepResult(step=step, exit_code=result.exit_code, output=result.output, after=after)


# ── Pipeline ───────────────────────────────────────────────────────────────────


def _checkpoint_index(steps: tuple[Step, ...], checkpoint: str) -> int:
    """Return the index of the step marked *checkpoint*, or -1 if none matches."""
    if not checkpoint:
        return -1
    for idx, step in enumerate(steps):
        if step.checkpoint == checkpoint:
            return idx
    _console.print(f"[yellow]⚠ Checkpoint '{escape(checkpoint)}' not found — running all steps.[/]")
    return -1


def _handle_step_failure(result: StepResult, resolved: ResolvedPipeline, options: PipelineOptions) -> None:
    from steprunner.diagnostics import save_failure_report  # noqa: PLC0415

    save_failure_report(
        result.step.id,
        resolved.target or resolved.name,
        Path(options.working_dir),
        step_name=result.step.name,
        exit_code=result.exit_code,
        error=result.error,
        output=result.output,
    )


def run_pipeline(
    resolved: ResolvedPipeline,
    session: ExecutionSession,
    options: PipelineOptions,
) -> list[StepResult]:
    """Drive *resolved* through an attached *session*.

    Steps run in declaration order; the first failure stops the main steps.
    After-steps then always run, unless the session has closed or a step
    timed out: a timed-out batch may still be running in the container shell,
    and its late output would be read as the next step's.

    Returns:
        One ``StepResult`` per step considered, skipped steps included.
    """
    runner = CommandRunner(
        session,
        command_timeout=options.command_timeout_seconds,
        no_response_timeout=options.no_response_timeout_seconds,
    )
    results: list[StepResult] = []
    skip_through = _checkpoint_index(resolved.steps, options.checkpoint)

    for idx, step in enumerate(resolved.steps):
        if idx <= skip_through:
            _console.print(f"[dim]✓ Skipping (checkpoint):[/] {escape(step.display_name)}")
            results.append(StepResult(step=step, skipped=True))
            continue
        result = run_step(step, runner, options, base_path=resolved.base_path)
        results.append(result)
        if not result.ok:
            _handle_step_failure(result, resolved, options)
            break

    if resolved.after_steps:
        _console.print("\n[bold]After-steps[/]")
    for step in resolved.after_steps:
        if session.state is SessionState.CLOSED:
            _console.print("[yellow]⚠ Session closed — after-steps not run.[/]")
            break
        if any(r.timed_out for r in results):
            _console.print("[yellow]⚠ A step timed out, container state unknown — remaining after-steps not run.[/]")
            break
        result = run_step(step, runner, options, base_path=resolved.base_path, after=True)
        results.append(result)
        if not result.ok:
            _handle_step_failure(result, resolved, options)

    return results


# ── Entry point ────────────────────────────────────────────────────────────────


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="stepline",
        description="Run the steps of a stepline.yml pipeline inside a running container.",
        epilog="Exit 0 = all steps passed, 1 = a step failed, 2 = configuration error.",
    )
    parser.add_argument("--pipeline", help="Pipeline to run (prompted for when omitted).")
    parser.add_argument("--deploy-target", help="Alternate step list of the pipeline to run.")
    parser.add_argument("--container", help="ID of the running container to attach to.")
    parser.add_argument("--docker-host", help="Docker API endpoint (default: $DOCKER_HOST).")
    parser.add_argument("--config", help="Path to the stepline.yml to use.")
    parser.add_argument("--working-dir", help="Where run artefacts are written on the host.")
    parser.add_argument("--source-dir", help="Source path relative to the checkout root.")
    parser.add_argument("--ignore-file", help="File with patterns to ignore when copying source.")
    parser.add_argument("--guest-root", help="Directory in the container where work is done.")
    parser.add_argument(
        "--command-timeout",
        type=float,
        help="Fail a step that does not complete in this many minutes (default 25).",
    )
    parser.add_argument(
        "--no-response-timeout",
        type=float,
        help="Fail a step that prints nothing for this many minutes (default 5).",
    )
    parser.add_argument("--checkpoint", help="Skip up to and including the step with this checkpoint.")
    parser.add_argument("--verbose", action="store_true", help="Stream every line sent and received.")
    parser.add_argument("--dry-run", action="store_true", help="Print the step plan without attaching.")
    return parser


def select_pipeline(config: Config) -> str | None:
    """Interactively prompt the user to pick one of the declared pipelines."""
    import questionary  # noqa: PLC0415

    names = list_pipelines(config)
    if not names:
        return None
    if len(names) == 1:
        return names[0]
    choices = [
        questionary.Choice(
            title=f"{name:<16} {len(config.pipelines[name].steps)} step(s)",
            value=name,
        )
        for name in names
    ]
    return questionary.select("Select pipeline:", choices=choices, use_shortcuts=False).ask()


def main(argv: list[str] | None = None) -> None:
    """Load config, resolve the pipeline, attach to the container and run it."""
    args = build_parser().parse_args(argv)
    options = options_from_args(args)
    set_verbose(options.verbose)

    try:
        config_path, config = read_config([Path.cwd()], options.config_file or None)
    except ConfigError as exc:
        _console.print(f"[red bold]✗ {escape(str(exc))}[/]")
        sys.exit(2)
    options = options.with_config(config)
    _console.print(f"[bold]Config:[/] [cyan]{escape(str(config_path))}[/]")

    name = options.pipeline or select_pipeline(config)
    if name is None:
        if not config.pipelines:
            _console.print("[red]No pipelines declared in the config.[/]")
            sys.exit(2)
        sys.exit(0)

    try:
        resolved = resolve_pipeline(config, name, options.target or None)
    except ConfigError as exc:
        _console.print(f"[red bold]✗ {escape(str(exc))}[/]")
        sys.exit(2)

    if options.dry_run:
        from steprunner.dryrun import dry_run  # noqa: PLC0415

        dry_run(resolved, options)
        return

    if not options.container_id:
        _console.print("[red]--container is required to run a pipeline.[/]")
        sys.exit(2)

    title = f"{name} → {options.target}" if options.target else name
    _console.rule(f"[bold cyan]{escape(title)}[/]", style="cyan")
    if resolved.box is not None:
        _console.print(f"[dim]box: {escape(resolved.box.id)}[/]")

    session = ExecutionSession(options.docker_host, options.container_id)
    try:
        with session:
            results = run_pipeline(resolved, session, options)
    except SessionError as exc:
        _console.print(f"[red bold]✗ {escape(str(exc))}[/]")
        sys.exit(1)

    ran = [r for r in results if not r.skipped]
    failed = [r for r in results if not r.ok]
    if failed:
        _console.print(
            f"\n[red bold]Pipeline failed:[/] {len(failed)} of {len(ran)} step(s) failed."
        )
        sys.exit(1)
    _console.print(f"\n[green bold]Pipeline complete:[/] {len(ran)} step(s) passed.")
