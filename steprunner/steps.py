"""steps.py — Turn a canonical Step into the shell lines sent to the container."""

import re
import shlex

from steprunner.config import STEP_ENV_PREFIX
from steprunner.options import PipelineOptions
from steprunner.yml import Step

SCRIPT_STEP = "script"


def step_env_name(key: str) -> str:
    """Return the environment variable a step parameter is exported as.

    ``code`` → ``STEP_CODE``; ``docker-image`` → ``STEP_DOCKER_IMAGE``.
    """
    return f"{STEP_ENV_PREFIX}_" + re.sub(r"[^A-Z0-9]+", "_", key.upper()).strip("_")


def step_workdir(step: Step, options: PipelineOptions, base_path: str = "") -> str:
    """Return the directory inside the container the step runs in.

    An absolute ``cwd`` is used as-is; otherwise it is taken relative to the
    source root (plus the pipeline's ``base-path``).
    """
    if step.cwd.startswith("/"):
        return step.cwd
    parts = [options.source_root]
    if base_path:
        parts.append(base_path.strip("/"))
    if step.cwd:
        parts.append(step.cwd.strip("/"))
    return "/".join(parts)


def step_commands(step: Step, options: PipelineOptions, base_path: str = "") -> list[str]:
    """Build the command batch for *step*.

    The batch changes into the step's working directory, exports every data
    entry as ``STEP_<KEY>``, then either runs the ``code`` of a ``script``
    step or sources (``.``) the step's ``run.sh`` from the steps root.
    """
    commands = [f"cd {shlex.quote(step_workdir(step, options, base_path))}"]
    for key, value in step.data.items():
        commands.append(f"export {step_env_name(key)}={shlex.quote(value)}")

    if step.id == SCRIPT_STEP:
        code = [line for line in step.data.get("code", "").splitlines() if line.strip()]
        commands.extend(code or ["true"])
    else:
        run_script = f"{options.steps_root}/{step.id}/run.sh"
        commands.append(f". {shlex.quote(run_script)}")
    return commands
