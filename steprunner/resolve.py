"""resolve.py — Select the ordered steps for one named pipeline (and optional target)."""

from dataclasses import dataclass

from steprunner.yml import CONFIG_RESERVED_WORDS, Box, Config, ConfigError, Pipeline, Step


@dataclass(frozen=True)
class ResolvedPipeline:
    name: str
    target: str
    box: Box | None
    services: tuple[Box, ...]
    steps: tuple[Step, ...]
    after_steps: tuple[Step, ...]
    base_path: str = ""


def list_pipelines(config: Config) -> list[str]:
    """Return the declared pipeline names in document order."""
    return list(config.pipelines)


def list_targets(pipeline: Pipeline) -> list[str]:
    """Return the alternate step-list names of *pipeline* in document order."""
    return list(pipeline.steps_map)


def resolve_pipeline(config: Config, name: str, target: str | None = None) -> ResolvedPipeline:
    """Resolve *name* (and optionally an alternate *target*) into the steps to run.

    The author's declaration order is authoritative: steps are never
    reordered, deduplicated or dependency-sorted.  An alternate target
    replaces the pipeline's ``steps``; the pipeline's own ``after-steps``
    still apply.

    Raises:
        ConfigError: *name* is reserved or undeclared, or *target* is not an
                     alternate of the pipeline.
    """
    if name in CONFIG_RESERVED_WORDS:
        raise ConfigError(f"'{name}' is a reserved key, not a pipeline name")

    pipeline = config.pipelines.get(name)
    if pipeline is None:
        available = ", ".join(list_pipelines(config)) or "none"
        raise ConfigError(f"No pipeline named '{name}' (available: {available})")

    steps = pipeline.steps
    if target:
        if target not in pipeline.steps_map:
            available = ", ".join(list_targets(pipeline)) or "none"
            raise ConfigError(
                f"Pipeline '{name}' has no target '{target}' (available: {available})"
            )
        steps = pipeline.steps_map[target]

    return ResolvedPipeline(
        name=name,
        target=target or "",
        box=pipeline.box or config.box,
        services=pipeline.services or config.services,
        steps=steps,
        after_steps=pipeline.after_steps,
        base_path=pipeline.base_path,
    )
