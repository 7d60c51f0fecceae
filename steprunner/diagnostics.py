"""diagnostics.py — Structured failure reports for failed steps."""

import json
import re
from datetime import datetime, timezone
from pathlib import Path

from rich.markup import escape

from steprunner.config import _console, slugify

# Output lines kept in the report.
_REPORT_TAIL_LINES = 200


def save_failure_report(
    step_id: str,
    pipeline: str,
    working_dir: Path,
    *,
    step_name: str = "",
    exit_code: int | None = None,
    error: str | None = None,
    output: list[str] | None = None,
) -> Path:
    """Save a structured JSON failure report and return its path.

    The report is saved at
    ``<working-dir>/logs/<pipeline>/<step-slug>/failure_report.json``.
    Output captured before the failure is kept so a broken connection or a
    timeout can still be diagnosed.
    """
    output = output or []
    report = {
        "step": step_id,
        "name": step_name or step_id,
        "pipeline": pipeline,
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "exit_code": exit_code,
        "error": error,
        "last_error": _extract_error(output),
        "output": output[-_REPORT_TAIL_LINES:],
    }

    report_dir = Path(working_dir) / "logs" / slugify(pipeline) / slugify(step_name or step_id)
    report_dir.mkdir(parents=True, exist_ok=True)
    report_path = report_dir / "failure_report.json"
    report_path.write_text(json.dumps(report, indent=2), encoding="utf-8")

    _console.print("\n[red bold]── Failure Report ──[/]")
    _console.print(f"  [bold]Step:[/]         {escape(report['name'])}")
    _console.print(f"  [bold]Exit code:[/]    {report['exit_code'] if exit_code is not None else 'none'}")
    if error:
        _console.print(f"  [bold]Error:[/]        {escape(error)}")
    _console.print(f"  [bold]Last error:[/]   {escape(report['last_error'] or 'unknown')}")
    _console.print(f"  [bold]Report saved:[/] {report_path}")

    return report_path


def _extract_error(output: list[str]) -> str | None:
    """Try to pick the most relevant error line out of step output."""
    if not output:
        return None

    patterns = [
        # Shell errors: "sh: 1: foo: not found", "bash: line 3: ...".
        r"^(?:ba|da|z)?sh: .+",
        # Python tracebacks end with "SomethingError: message".
        r"^\w*(?:Error|Exception): .+",
        r"^(?:ERROR|FATAL|Error|error)\b.+",
        r"^FAILED .+",
    ]
    for pattern in patterns:
        for line in reversed(output):
            if re.match(pattern, line.strip()):
                return line.strip()[:500]

    # Fallback: last non-empty line.
    lines = [line.strip() for line in output if line.strip()]
    if lines:
        return lines[-1][:500]
    return None
