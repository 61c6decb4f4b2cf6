"""
Hierarchical configuration loader for atpar_sync.

Provides convention-based config file discovery, YAML !include support,
env var interpolation, and hierarchical merge with "project wins" semantics.
Team definitions may also be split into one file per team under a
``teams.d/`` directory next to the config file.

Usage:
    from atpar_sync.config_loader import load_hierarchical_config

    config = load_hierarchical_config()
"""

import logging
import os
import re
from pathlib import Path
from typing import Any

import yaml

logger = logging.getLogger(__name__)

CONFIG_ENV_VAR = "ATPAR_SYNC_CONFIG"

# ---------------------------------------------------------------------------
# 1. Env var interpolation
# ---------------------------------------------------------------------------

# Matches ${VAR} and ${VAR:-default}
_ENV_VAR_PATTERN = re.compile(r"\$\{([^}:]+?)(?::-(.*?))?\}")


def interpolate_env_vars(value: str) -> str:
    """Replace ``${VAR}`` and ``${VAR:-default}`` patterns with env values.

    * ``${VAR}`` is replaced with ``os.environ.get(VAR, "")``.
    * ``${VAR:-default}`` uses *default* when VAR is unset or empty.
    * Literal ``${`` with no closing ``}`` is left untouched.

    Credentials (PATs, integration tokens) are normally supplied this way
    so they never have to be written into the YAML file.
    """

    def _replace(match: re.Match) -> str:
        env_val = os.environ.get(match.group(1))
        if env_val:
            return env_val
        default = match.group(2)
        return default if default is not None else ""

    return _ENV_VAR_PATTERN.sub(_replace, value)


def _interpolate_recursive(obj: Any) -> Any:
    """Walk a nested dict/list and interpolate env vars in all strings."""
    if isinstance(obj, str):
        return interpolate_env_vars(obj)
    if isinstance(obj, dict):
        return {k: _interpolate_recursive(v) for k, v in obj.items()}
    if isinstance(obj, list):
        return [_interpolate_recursive(item) for item in obj]
    return obj


# ---------------------------------------------------------------------------
# 2. YAML !include support (dedicated SafeLoader subclass)
# ---------------------------------------------------------------------------


class ConfigLoader(yaml.SafeLoader):
    """YAML SafeLoader subclass with ``!include`` support.

    The global ``yaml.SafeLoader`` is never modified.  Each load carries an
    include stack so circular includes are reported instead of recursing.
    """


def _include_constructor(loader: ConfigLoader, node: yaml.ScalarNode) -> Any:
    """Handle ``!include path/to/file.yml`` directives."""
    include_path = Path(loader.construct_scalar(node))
    if not include_path.is_absolute():
        include_path = Path(loader.name).resolve().parent / include_path
    include_path = include_path.resolve()

    include_stack: list[Path] = getattr(loader, "_include_stack", [])
    if include_path in include_stack:
        chain = " -> ".join(str(p) for p in [*include_stack, include_path])
        raise ValueError(f"Circular include detected: {chain}")

    if not include_path.exists():
        raise FileNotFoundError(
            f"Include file not found: {include_path} "
            f"(referenced from {Path(loader.name).resolve()})"
        )

    return _load_yaml_with_includes(
        include_path, _include_stack=[*include_stack, include_path]
    )


ConfigLoader.add_constructor("!include", _include_constructor)


def _load_yaml_with_includes(
    path: Path,
    *,
    _include_stack: list[Path] | None = None,
) -> Any:
    """Load a YAML file using the ``ConfigLoader`` (with ``!include``)."""
    path = path.resolve()
    with open(path, "r", encoding="utf-8") as fh:
        loader = ConfigLoader(fh)
        loader._include_stack = _include_stack or [path]  # type: ignore[attr-defined]
        try:
            return loader.get_single_data()
        finally:
            loader.dispose()


# ---------------------------------------------------------------------------
# 3. Convention-based file discovery
# ---------------------------------------------------------------------------


def discover_config_files() -> list[Path]:
    """Return existing config file paths in precedence order (highest first).

    Search order:
        1. ``ATPAR_SYNC_CONFIG`` env var (explicit single path).
        2. ``.atpar/config.yml`` in CWD (project-level)
        3. ``~/.config/atpar/config.yml`` (XDG global)

    Only paths that exist on disk are returned.
    """
    candidates: list[Path] = []

    env_path = os.environ.get(CONFIG_ENV_VAR)
    if env_path:
        candidates.append(Path(env_path).expanduser().resolve())

    candidates.append(Path.cwd() / ".atpar" / "config.yml")
    candidates.append(Path.home() / ".config" / "atpar" / "config.yml")

    return [p for p in candidates if p.exists()]


def _load_team_dir(config_path: Path) -> dict[str, Any]:
    """Load ``teams.d/<team_id>.yml`` files that sit beside *config_path*."""
    team_dir = config_path.parent / "teams.d"
    if not team_dir.is_dir():
        return {}

    teams: dict[str, Any] = {}
    for team_file in sorted(team_dir.glob("*.yml")):
        data = _load_yaml_with_includes(team_file)
        if not isinstance(data, dict):
            logger.warning(
                "Team file %s has non-dict root -- skipping", team_file
            )
            continue
        teams[team_file.stem] = data
    return teams


# ---------------------------------------------------------------------------
# 3a. Config bootstrapping
# ---------------------------------------------------------------------------

_STARTER_CONFIG = """\
# atpar-sync configuration
#
# Service-wide settings can also be set via environment variables:
#   ATPAR_STATE_DIR, ATPAR_RUN_TIMEOUT, ATPAR_LOCK_TTL,
#   ATPAR_OAUTH_CLIENT_ID, ATPAR_OAUTH_CLIENT_SECRET
#
# service:
#   state_dir: .atpar/state
#   run_timeout_seconds: 600
#   lock_ttl_seconds: 900
#
# teams:
#   platform:
#     direction: both
#     primary_system: ado
#     schedule: {kind: hourly, minute: 15}
#     ado:
#       org_url: https://dev.azure.com/contoso
#       project: Consumer
#       area_path: Consumer\\\\Platform
#       credential: {kind: pat, token: "${ADO_PAT}"}
#     notion:
#       database_id: 0123456789abcdef0123456789abcdef
#       credential: {kind: integration, token: "${NOTION_TOKEN}"}
#
# logging:
#   level: INFO
#   file: null
"""


def resolve_config_path() -> Path:
    """Return the single config file path that should be used.

    The highest-precedence existing file wins; otherwise the default
    project-level path ``CWD / .atpar / config.yml`` is returned.
    This does NOT create the file -- use ``ensure_config()`` for that.
    """
    existing = discover_config_files()
    if existing:
        return existing[0]
    return Path.cwd() / ".atpar" / "config.yml"


def ensure_config(target: Path | None = None) -> Path:
    """Ensure a config file exists, creating directory and starter file if needed.

    Args:
        target: Explicit path to create. If ``None``, uses
            ``resolve_config_path()``.

    Returns:
        Path to the config file (existing or newly created).
    """
    existing = discover_config_files()
    if existing:
        logger.debug("Config file already exists: %s", existing[0])
        return existing[0]

    config_path = target or resolve_config_path()
    config_path.parent.mkdir(parents=True, exist_ok=True)
    config_path.write_text(_STARTER_CONFIG, encoding="utf-8")
    logger.info("Created starter config: %s", config_path)

    return config_path


# ---------------------------------------------------------------------------
# 4. Hierarchical merge
# ---------------------------------------------------------------------------


def load_hierarchical_config() -> dict[str, Any]:
    """Load and merge all discovered config files.

    Merge strategy ("project wins"):
        Files are loaded from lowest precedence to highest.  Each file's
        top-level keys **replace** those from earlier files, except
        ``teams``, which is merged per team id so a project file can add
        or override single teams on top of a global file.  Files under
        ``teams.d/`` override the ``teams`` entries of their own file.

    After merging, env var interpolation is applied to all string values.

    Returns an empty dict when no config files exist (zero-config).
    """
    paths = discover_config_files()

    if not paths:
        logger.debug("No config files found -- using zero-config defaults")
        return {}

    merged: dict[str, Any] = {}
    teams: dict[str, Any] = {}
    for path in reversed(paths):
        logger.debug("Loading config: %s", path)
        try:
            data = _load_yaml_with_includes(path)
        except Exception:
            logger.exception("Failed to load config file %s", path)
            raise

        if data is None:
            data = {}
        if not isinstance(data, dict):
            logger.warning(
                "Config file %s has non-dict root (%s) -- skipping",
                path,
                type(data).__name__,
            )
            continue

        teams.update(data.pop("teams", None) or {})
        teams.update(_load_team_dir(path))
        merged.update(data)

    if teams:
        merged["teams"] = teams

    return _interpolate_recursive(merged)
