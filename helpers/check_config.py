"""Validate a stepline.yml beyond what parsing alone enforces.

Parsing (steprunner.yml) rejects documents whose shape cannot be understood;
the checks here catch documents that parse but would not run well.
"""

from __future__ import annotations

import argparse
import sys
from pathlib import Path
from typing import NamedTuple

from steprunner.config import CONFIG_FILENAMES
from steprunner.steps import SCRIPT_STEP
from steprunner.yml import Config, ConfigError, Pipeline, Step, config_from_yaml

# ---------------------------------------------------------------------------
# Data model
# ---------------------------------------------------------------------------


class Issue(NamedTuple):
    level: str  # "ERROR" | "WARNING"
    section: str  # pipeline name, "pipeline.target", or "global"
    message: str


def _step_lists(name: str, pipeline: Pipeline) -> list[tuple[str, tuple[Step, ...]]]:
    """Every step list of *pipeline*, labelled for reporting."""
    lists = [(name, pipeline.steps), (f"{name}.after-steps", pipeline.after_steps)]
    lists += [(f"{name}.{target}", steps) for target, steps in pipeline.steps_map.items()]
    return lists


# ---------------------------------------------------------------------------
# Individual checks -- each returns a list[Issue]
# ---------------------------------------------------------------------------


def check_pipelines(config: Config) -> list[Issue]:
    if not config.pipelines:
        return [Issue("ERROR", "global", "No pipelines declared (e.g. 'build:')")]
    return []


def check_boxes(config: Config) -> list[Issue]:
    """Every pipeline needs a box, its own or the top-level default."""
    issues: list[Issue] = []
    for name, pipeline in config.pipelines.items():
        if pipeline.box is None and config.box is None:
            issues.append(Issue("ERROR", name, "No box: set one on the pipeline or at the top level"))
        for service in pipeline.services or config.services:
            if service.is_external and not Path(service.url[len("file://"):]).exists():
                issues.append(
                    Issue("WARNING", name, f"External service '{service.id}' not found at {service.url}")
                )
    return issues


def check_steps(config: Config) -> list[Issue]:
    issues: list[Issue] = []
    for name, pipeline in config.pipelines.items():
        if not pipeline.steps and not pipeline.steps_map:
            issues.append(Issue("WARNING", name, "Pipeline has no steps"))
        for label, steps in _step_lists(name, pipeline):
            for step in steps:
                if step.id == SCRIPT_STEP and not step.data.get("code", "").strip():
                    issues.append(
                        Issue("ERROR", label, f"Script step '{step.display_name}' has no code")
                    )
    return issues


def check_checkpoints(config: Config) -> list[Issue]:
    """Checkpoint markers must be unique within one step list."""
    issues: list[Issue] = []
    for name, pipeline in config.pipelines.items():
        for label, steps in _step_lists(name, pipeline):
            seen: set[str] = set()
            for step in steps:
                if not step.checkpoint:
                    continue
                if step.checkpoint in seen:
                    issues.append(Issue("ERROR", label, f"Duplicate checkpoint '{step.checkpoint}'"))
                seen.add(step.checkpoint)
    return issues


def check_timeouts(config: Config) -> list[Issue]:
    issues: list[Issue] = []
    for key, value in (
        ("command-timeout", config.command_timeout),
        ("no-response-timeout", config.no_response_timeout),
    ):
        if value is not None and value <= 0:
            issues.append(Issue("ERROR", "global", f"{key} must be positive, got {value}"))
    if (
        config.command_timeout is not None
        and config.no_response_timeout is not None
        and config.no_response_timeout > config.command_timeout
    ):
        issues.append(
            Issue("WARNING", "global", "no-response-timeout is longer than command-timeout")
        )
    return issues


def check_base_paths(config: Config) -> list[Issue]:
    issues: list[Issue] = []
    for name, pipeline in config.pipelines.items():
        if pipeline.base_path.startswith("/"):
            issues.append(
                Issue("WARNING", name, f"base-path '{pipeline.base_path}' is absolute; it is used relative to the source")
            )
    return issues


# ---------------------------------------------------------------------------
# Check registry (add new checks here -- they run in order)
# ---------------------------------------------------------------------------


CHECKS: list[tuple[str, object]] = [
    ("Pipelines declared", check_pipelines),
    ("Boxes", check_boxes),
    ("Steps", check_steps),
    ("Checkpoints", check_checkpoints),
    ("Timeouts", check_timeouts),
    ("Base paths", check_base_paths),
]


# ---------------------------------------------------------------------------
# Runner
# ---------------------------------------------------------------------------


def run_checks(path: Path) -> int:
    """Validate *path* (stepline.yml) and print a report; return 0 (clean) or 1 (errors found)."""
    try:
        config = config_from_yaml(path.read_text(encoding="utf-8"))
    except ConfigError as exc:
        print(f"ERROR: {exc}")
        return 1

    print(f"Checking  : {path}")
    print(f"Pipelines : {len(config.pipelines)}  ({', '.join(config.pipelines) or 'none'})")
    print()

    all_issues: list[Issue] = []
    for name, fn in CHECKS:
        issues: list[Issue] = fn(config)  # type: ignore[operator]
        errors_in = [i for i in issues if i.level == "ERROR"]
        warnings_in = [i for i in issues if i.level == "WARNING"]
        if errors_in:
            status, symbol = "FAIL", "FAIL"
        elif warnings_in:
            status, symbol = "WARN", "WARN"
        else:
            status, symbol = "PASS", "ok  "

        print(f"  [{symbol}] {name:<30}  ({status})")
        for issue in issues:
            print(f"        [{issue.level:7s}] {issue.section}: {issue.message}")
        all_issues.extend(issues)

    errors = sum(1 for i in all_issues if i.level == "ERROR")
    warnings = sum(1 for i in all_issues if i.level == "WARNING")

    print()
    print("-" * 50)
    if errors == 0 and warnings == 0:
        print("[ok  ] All checks passed.")
    elif errors == 0:
        print(f"[WARN] Passed with {warnings} warning(s).")
    else:
        print(f"[FAIL] FAILED -- {errors} error(s), {warnings} warning(s).")
    print("-" * 50)

    return 1 if errors else 0


# ---------------------------------------------------------------------------
# Entry point
# ---------------------------------------------------------------------------


def find_default_config() -> Path | None:
    for filename in CONFIG_FILENAMES:
        candidate = Path.cwd() / filename
        if candidate.is_file():
            return candidate
    return None


def main(argv: list[str] | None = None) -> None:
    parser = argparse.ArgumentParser(
        description="Validate a stepline.yml.",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="Exit 0 = clean/warnings only, 1 = errors found, 2 = file not found.",
    )
    parser.add_argument(
        "config",
        nargs="?",
        help="Path to stepline.yml (default: stepline.yml or .stepline.yml in the current directory)",
    )
    args = parser.parse_args(argv)

    if args.config:
        path = Path(args.config)
    else:
        path = find_default_config()
        if path is None:
            print("No stepline.yml found. Pass a path explicitly.", file=sys.stderr)
            sys.exit(2)

    if not path.exists():
        print(f"File not found: {path}", file=sys.stderr)
        sys.exit(2)

    sys.exit(run_checks(path))


if __name__ == "__main__":
    main()
