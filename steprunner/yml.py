"""yml.py — stepline.yml parsing into canonical Box / Step / Pipeline / Config values.

The document is authored by hand and the same thing can be written in several
shapes.  Every parser here takes the raw ``yaml.safe_load`` value and returns
one canonical, frozen dataclass, or raises ``ConfigError`` naming the section
that could not be understood.

Steps can be written three ways::

    steps:
      - string-step          # bare string
      - script:              # single-key mapping of parameters
          code: done right
      - script:              # flat mapping (legacy): first key is the id
        code: done wrong

All three produce the same ``Step``.
"""

from collections.abc import Mapping
from dataclasses import dataclass, field
from pathlib import Path
from types import MappingProxyType

import yaml

from steprunner.config import CONFIG_FILENAMES


class ConfigError(ValueError):
    """Raised when a stepline.yml cannot be turned into a ``Config``.

    The message always names the offending key or section.  Configuration
    errors abort pipeline resolution before any container work begins.
    """


# ── Reserved words ─────────────────────────────────────────────────────────────

PIPELINE_RESERVED_WORDS: frozenset[str] = frozenset(
    {"box", "services", "steps", "after-steps", "base-path"}
)

CONFIG_RESERVED_WORDS: frozenset[str] = frozenset(
    {
        "box",
        "services",
        "command-timeout",
        "no-response-timeout",
        "source-dir",
        "ignore-file",
    }
)

# Step keys lifted out of the generic data mapping into typed fields.
_STEP_TYPED_KEYS = ("cwd", "name", "checkpoint")


# ── Data model ─────────────────────────────────────────────────────────────────


# Mapping fields are read-only views and stay out of the hash.
def _frozen_map():
    return field(default_factory=lambda: MappingProxyType({}), hash=False)


def _freeze(obj, *names: str) -> None:
    """Replace the named mapping fields of a frozen dataclass with read-only views."""
    for name in names:
        value = getattr(obj, name)
        if not isinstance(value, MappingProxyType):
            object.__setattr__(obj, name, MappingProxyType(dict(value)))


@dataclass(frozen=True)
class Box:
    id: str
    name: str = ""
    tag: str = ""
    cmd: str = ""
    env: Mapping[str, str] = _frozen_map()
    ports: tuple[str, ...] = ()
    username: str = ""
    password: str = ""
    registry: str = ""
    entrypoint: str = ""
    url: str = ""
    volumes: str = ""

    def __post_init__(self) -> None:
        _freeze(self, "env")

    @property
    def is_external(self) -> bool:
        """True when the box (service) is located on disk rather than in a registry."""
        return bool(self.url) and self.url.startswith("file://")


@dataclass(frozen=True)
class Step:
    id: str
    cwd: str = ""
    name: str = ""
    checkpoint: str = ""
    data: Mapping[str, str] = _frozen_map()

    def __post_init__(self) -> None:
        _freeze(self, "data")

    @property
    def display_name(self) -> str:
        return self.name or self.id


@dataclass(frozen=True)
class Pipeline:
    box: Box | None = None
    services: tuple[Box, ...] = ()
    steps: tuple[Step, ...] = ()
    after_steps: tuple[Step, ...] = ()
    steps_map: Mapping[str, tuple[Step, ...]] = _frozen_map()
    base_path: str = ""

    def __post_init__(self) -> None:
        _freeze(self, "steps_map")


@dataclass(frozen=True)
class Config:
    box: Box | None = None
    services: tuple[Box, ...] = ()
    command_timeout: float | None = None
    no_response_timeout: float | None = None
    source_dir: str = ""
    ignore_file: str = ""
    pipelines: Mapping[str, Pipeline] = _frozen_map()

    def __post_init__(self) -> None:
        _freeze(self, "pipelines")


# ── Scalars ────────────────────────────────────────────────────────────────────


def to_string(value) -> str:
    """Coerce a YAML scalar to its canonical string form.

    Strings pass through, integers become decimal text and booleans become
    ``"true"`` / ``"false"``.  Any other type (floats, null, lists, mappings)
    is unsupported and becomes an empty string.
    """
    if isinstance(value, str):
        return value
    # bool is a subclass of int, so test it first.
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, int):
        return str(value)
    return ""


def _optional_str(value, where: str) -> str:
    if value is None:
        return ""
    if isinstance(value, (dict, list)):
        raise ConfigError(f"{where} must be a string")
    return to_string(value) if not isinstance(value, float) else str(value)


def _timeout(value, key: str) -> float | None:
    if value is None:
        return None
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise ConfigError(f"{key} must be a number of minutes, got {value!r}")
    return value


# ── Box ────────────────────────────────────────────────────────────────────────

_BOX_STRING_FIELDS = (
    "id",
    "name",
    "tag",
    "cmd",
    "username",
    "password",
    "registry",
    "entrypoint",
    "url",
    "volumes",
)


def parse_box(raw, where: str = "box") -> Box:
    """Parse a box written either as a bare identifier or as a full mapping."""
    if isinstance(raw, (str, int)) and not isinstance(raw, bool):
        box_id = to_string(raw).strip()
        if not box_id:
            raise ConfigError(f"{where} is empty")
        return Box(id=box_id)

    if not isinstance(raw, dict):
        raise ConfigError(f"{where} must be a string or a mapping")

    values = {k: _optional_str(raw.get(k), f"{where}.{k}") for k in _BOX_STRING_FIELDS}

    env = raw.get("env") or {}
    if not isinstance(env, dict):
        raise ConfigError(f"{where}.env must be a mapping")
    env = {str(k): to_string(v) for k, v in env.items()}

    ports = raw.get("ports") or []
    if not isinstance(ports, list):
        ports = [ports]
    ports = tuple(to_string(p) for p in ports)

    if not values["id"]:
        if not values["name"]:
            raise ConfigError(f"{where} has neither an id nor a name")
        values["id"] = (
            f"{values['name']}:{values['tag']}" if values["tag"] else values["name"]
        )

    return Box(env=env, ports=ports, **values)


def parse_services(raw, where: str = "services") -> tuple[Box, ...]:
    """Parse a list of service boxes."""
    if raw is None:
        return ()
    if not isinstance(raw, list):
        raise ConfigError(f"{where} must be a list of boxes")
    return tuple(parse_box(item, f"{where}[{i}]") for i, item in enumerate(raw))


# ── Step ───────────────────────────────────────────────────────────────────────


def parse_step(raw) -> Step:
    """Parse one step in any of its three accepted shapes."""
    if isinstance(raw, str):
        return Step(id=raw)

    if not isinstance(raw, dict):
        raise ConfigError(f"Step must be a string or a mapping, got {raw!r}")
    if not raw:
        raise ConfigError("Step is an empty mapping")

    items = list(raw.items())
    if len(items) == 1:
        step_id, params = items[0]
        step_id = to_string(step_id)
        if not isinstance(params, dict):
            raise ConfigError(f"Step {step_id} has no parameters")
        data = {str(k): to_string(v) for k, v in params.items()}
    else:
        # Legacy flat shape: the first key is the id, the rest is data.
        step_id = to_string(items[0][0])
        data = {str(k): to_string(v) for k, v in items[1:]}

    if not step_id:
        raise ConfigError(f"Step has no id: {raw!r}")

    typed = {key: data.pop(key) for key in _STEP_TYPED_KEYS if key in data}
    return Step(id=step_id, data=data, **typed)


def parse_steps(raw, where: str = "steps") -> tuple[Step, ...]:
    """Parse a list of steps; ``None`` is an empty list."""
    if raw is None:
        return ()
    if not isinstance(raw, list):
        raise ConfigError(f"{where} must be a list of steps")
    try:
        return tuple(parse_step(item) for item in raw)
    except ConfigError as exc:
        raise ConfigError(f"{where}: {exc}") from exc


# ── Pipeline ───────────────────────────────────────────────────────────────────


def parse_pipeline(raw, name: str = "pipeline") -> Pipeline:
    """Parse one pipeline section.

    Reserved keys fill their typed fields; every other key names an alternate
    step list (e.g. a deploy target) and goes into ``steps_map``.
    """
    if raw is None:
        raw = {}
    if isinstance(raw, list):
        return Pipeline(steps=parse_steps(raw, name))
    if not isinstance(raw, dict):
        raise ConfigError(f"Pipeline {name} must be a mapping or a list of steps")

    box: Box | None = None
    services: tuple[Box, ...] = ()
    steps: tuple[Step, ...] = ()
    after_steps: tuple[Step, ...] = ()
    base_path = ""
    steps_map: dict[str, tuple[Step, ...]] = {}

    for key, value in raw.items():
        key = str(key)
        if key == "box":
            box = parse_box(value, f"{name}.box") if value is not None else None
        elif key == "services":
            services = parse_services(value, f"{name}.services")
        elif key == "steps":
            steps = parse_steps(value, f"{name}.steps")
        elif key == "after-steps":
            after_steps = parse_steps(value, f"{name}.after-steps")
        elif key == "base-path":
            # A trailing slash would nest the source inside itself.
            base_path = _optional_str(value, f"{name}.base-path").rstrip("/")
        else:
            if not isinstance(value, list):
                raise ConfigError(
                    f"Invalid extra key in pipeline, {key} is not a list of steps"
                )
            try:
                steps_map[key] = parse_steps(value, f"{name}.{key}")
            except ConfigError as exc:
                raise ConfigError(
                    f"Invalid extra key in pipeline, {key} is not a list of steps ({exc})"
                ) from exc

    return Pipeline(
        box=box,
        services=services,
        steps=steps,
        after_steps=after_steps,
        steps_map=steps_map,
        base_path=base_path,
    )


# ── Config ─────────────────────────────────────────────────────────────────────


def parse_config(raw) -> Config:
    """Parse the whole document.  Unreserved top-level keys name pipelines."""
    if raw is None:
        raise ConfigError("Your stepline.yml is empty.")
    if not isinstance(raw, dict):
        raise ConfigError("Your stepline.yml must be a mapping at the top level.")

    fields: dict = {}
    pipelines: dict[str, Pipeline] = {}

    for key, value in raw.items():
        key = str(key)
        if key == "box":
            fields["box"] = parse_box(value) if value is not None else None
        elif key == "services":
            fields["services"] = parse_services(value)
        elif key == "command-timeout":
            fields["command_timeout"] = _timeout(value, key)
        elif key == "no-response-timeout":
            fields["no_response_timeout"] = _timeout(value, key)
        elif key == "source-dir":
            fields["source_dir"] = _optional_str(value, key)
        elif key == "ignore-file":
            fields["ignore_file"] = _optional_str(value, key)
        else:
            pipelines[key] = parse_pipeline(value, key)

    return Config(pipelines=pipelines, **fields)


def config_from_yaml(text: str | bytes) -> Config:
    """Read *text* as YAML and turn it into a ``Config``.

    Any failure (malformed YAML, empty document, unparseable section) is
    reported as one ``ConfigError`` prefixed with a pointer to the file.
    """
    try:
        raw = yaml.safe_load(text)
        return parse_config(raw)
    except (yaml.YAMLError, ConfigError) as exc:
        raise ConfigError(f"Error parsing your stepline.yml:\n  {exc}") from exc


# ── Discovery ──────────────────────────────────────────────────────────────────


def find_config(search_dirs: list[Path]) -> Path:
    """Return the first stepline.yml found in *search_dirs* (in order)."""
    for directory in search_dirs:
        for filename in CONFIG_FILENAMES:
            candidate = Path(directory) / filename
            if candidate.is_file():
                return candidate
    raise ConfigError(
        f"No {CONFIG_FILENAMES[0]} found in: "
        + ", ".join(str(d) for d in search_dirs)
    )


def read_config(search_dirs: list[Path], config_file: str | None = None) -> tuple[Path, Config]:
    """Locate and parse the pipeline config.

    Args:
        search_dirs: Directories to search when *config_file* is not given.
        config_file: Explicit path; skips discovery.

    Returns:
        ``(path, config)``.
    """
    if config_file:
        path = Path(config_file)
        if not path.is_file():
            raise ConfigError(f"Config file not found: {path}")
    else:
        path = find_config(search_dirs)
    return path, config_from_yaml(path.read_text(encoding="utf-8"))
