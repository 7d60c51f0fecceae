"""options.py — One flat options value for a pipeline run.

Values come from three places, highest priority first: explicit CLI
arguments, environment variables, and the keys of stepline.yml that
describe the run (timeouts, source-dir, ignore-file).  Everything the core
needs from the outside world arrives through ``PipelineOptions``.
"""

import argparse
import os
from dataclasses import dataclass, replace

from steprunner.config import (
    DEFAULT_COMMAND_TIMEOUT,
    DEFAULT_DOCKER_HOST,
    DEFAULT_GUEST_ROOT,
    DEFAULT_IGNORE_FILE,
    DEFAULT_NO_RESPONSE_TIMEOUT,
    DEFAULT_WORKING_DIR,
)
from steprunner.yml import Config


@dataclass(frozen=True)
class PipelineOptions:
    docker_host: str = DEFAULT_DOCKER_HOST
    container_id: str = ""
    pipeline: str = ""
    target: str = ""
    working_dir: str = DEFAULT_WORKING_DIR
    source_dir: str | None = None
    ignore_file: str | None = None
    guest_root: str = DEFAULT_GUEST_ROOT
    command_timeout: float | None = None
    no_response_timeout: float | None = None
    checkpoint: str = ""
    config_file: str = ""
    verbose: bool = False
    dry_run: bool = False

    # ── Effective values (explicit option → stepline.yml → default) ──────────

    @property
    def command_timeout_seconds(self) -> float:
        minutes = self.command_timeout if self.command_timeout is not None else DEFAULT_COMMAND_TIMEOUT
        return minutes * 60

    @property
    def no_response_timeout_seconds(self) -> float:
        minutes = (
            self.no_response_timeout
            if self.no_response_timeout is not None
            else DEFAULT_NO_RESPONSE_TIMEOUT
        )
        return minutes * 60

    @property
    def source_root(self) -> str:
        """Directory inside the container holding the checked-out source."""
        root = f"{self.guest_root.rstrip('/')}/source"
        if self.source_dir:
            root = f"{root}/{self.source_dir.strip('/')}"
        return root

    @property
    def steps_root(self) -> str:
        """Directory inside the container holding fetched step code."""
        return f"{self.guest_root.rstrip('/')}/steps"

    def with_config(self, config: Config) -> "PipelineOptions":
        """Return a copy with unset values filled from *config*."""
        updates: dict = {}
        if self.command_timeout is None and config.command_timeout is not None:
            updates["command_timeout"] = config.command_timeout
        if self.no_response_timeout is None and config.no_response_timeout is not None:
            updates["no_response_timeout"] = config.no_response_timeout
        if self.source_dir is None and config.source_dir:
            updates["source_dir"] = config.source_dir
        if self.ignore_file is None:
            updates["ignore_file"] = config.ignore_file or DEFAULT_IGNORE_FILE
        return replace(self, **updates) if updates else self


def _env(name: str) -> str:
    return os.environ.get(name, "").strip()


def options_from_args(args: argparse.Namespace) -> PipelineOptions:
    """Assemble ``PipelineOptions`` from parsed CLI *args* plus environment variables."""
    return PipelineOptions(
        docker_host=args.docker_host or DEFAULT_DOCKER_HOST,
        container_id=args.container or "",
        pipeline=args.pipeline or _env("STEPLINE_PIPELINE"),
        target=args.deploy_target or _env("STEPLINE_DEPLOYTARGET_NAME"),
        working_dir=args.working_dir or DEFAULT_WORKING_DIR,
        source_dir=args.source_dir,
        ignore_file=args.ignore_file,
        guest_root=args.guest_root or DEFAULT_GUEST_ROOT,
        command_timeout=args.command_timeout,
        no_response_timeout=args.no_response_timeout,
        checkpoint=args.checkpoint or "",
        config_file=args.config or _env("STEPLINE_YML_FILE"),
        verbose=bool(args.verbose),
        dry_run=bool(args.dry_run),
    )
