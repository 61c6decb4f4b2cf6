"""Runtime configuration for the sync service.

Reads service-wide settings from CLI args, environment variables,
.env files, and YAML config file fallbacks.  Per-team sync settings live
in the YAML ``teams`` section and are loaded through the repository.

Precedence (highest to lowest):
    CLI args > Environment variables > .env file > YAML config > Built-in defaults

Environment variables:
    ATPAR_STATE_DIR: Directory for links, cursors, locks and history (optional)
    ATPAR_RUN_TIMEOUT: Per-run wall-clock budget in seconds (optional, default: 600)
    ATPAR_LOCK_TTL: Team lock lease in seconds (optional, default: 900)
    ATPAR_MAX_PARALLEL_RUNS: Concurrent team runs (optional, default: 4)
    ATPAR_OAUTH_CLIENT_ID: OAuth client id for ADO token refresh (optional)
    ATPAR_OAUTH_CLIENT_SECRET: OAuth client secret for ADO token refresh (optional)
    ATPAR_DEBUG: Enable debug logging (optional, default: false)
"""

import logging
import os
from dataclasses import dataclass

logger = logging.getLogger(__name__)

DEFAULT_TOKEN_URL = "https://login.microsoftonline.com/common/oauth2/v2.0/token"
DEFAULT_SCOPE = "499b84ac-1321-427f-aa17-267ca6975798/.default offline_access"


@dataclass
class RuntimeConfig:
    state_dir: str = ".atpar/state"
    run_timeout: float = 600.0
    lock_ttl: float = 900.0
    max_parallel_runs: int = 4
    retry_attempts: int = 3
    retry_backoff_min: float = 1.0
    retry_backoff_max: float = 10.0
    oauth_client_id: str | None = None
    oauth_client_secret: str | None = None
    oauth_token_url: str = DEFAULT_TOKEN_URL
    oauth_scope: str = DEFAULT_SCOPE
    refresh_margin: float = 300.0
    debug: bool = False


def validate_config(config: RuntimeConfig) -> None:
    """Validate configuration values and raise ValueError if invalid.

    Args:
        config: RuntimeConfig instance to validate.

    Raises:
        ValueError: If a value is out of range or inconsistent.
    """
    config.state_dir = config.state_dir.strip()
    if not config.state_dir:
        raise ValueError(
            "State directory cannot be empty. Set ATPAR_STATE_DIR environment variable."
        )

    if config.run_timeout <= 0:
        raise ValueError(
            f"Invalid run timeout {config.run_timeout}: must be positive"
        )

    if config.lock_ttl < config.run_timeout:
        raise ValueError(
            f"Lock TTL {config.lock_ttl}s is shorter than the run timeout "
            f"{config.run_timeout}s: a live run could lose its lock"
        )

    if config.retry_attempts < 1:
        raise ValueError("retry_attempts must be at least 1")

    if config.retry_backoff_max < config.retry_backoff_min:
        raise ValueError(
            "retry_backoff_max must be greater than or equal to retry_backoff_min"
        )

    if bool(config.oauth_client_id) != bool(config.oauth_client_secret):
        logger.warning(
            "OAuth client id and secret must be set together; "
            "token refresh will fail for OAuth credentials"
        )


def _get_bool_env(key: str) -> bool | None:
    """Return True/False from env var, or None if unset."""
    val = os.getenv(key)
    if val is None:
        return None
    return val.lower() in ("true", "1", "yes", "on")


def _get_number_env(
    key: str, low: float, high: float, cast=float
) -> float | None:
    """Parse a bounded numeric env var, or return None if unset."""
    raw = os.getenv(key)
    if raw is None:
        return None
    try:
        value = cast(raw)
    except ValueError:
        raise ValueError(
            f"Invalid {key} '{raw}': must be a number between {low:g} and {high:g}"
        ) from None
    if not (low <= value <= high):
        raise ValueError(
            f"Invalid {key} '{raw}': must be a number between {low:g} and {high:g}"
        )
    return value


def load_config(
    state_dir: str | None = None,
    run_timeout: float | None = None,
    debug: bool = False,
    yaml_fallbacks: dict | None = None,
) -> RuntimeConfig:
    """Load configuration with unified precedence.

    Resolution order for each field (highest to lowest):
        CLI arg > env var / .env > yaml_fallbacks > built-in default

    The caller is responsible for calling ``load_dotenv()`` before this
    function so that .env values are available via ``os.getenv()``.

    Args:
        state_dir: Override state directory.
        run_timeout: Override per-run timeout in seconds.
        debug: Enable debug logging (CLI flag).
        yaml_fallbacks: Dict of ``RuntimeConfig`` field values derived from
            the YAML config file.  Used as fallback when CLI arg and env var
            are both unset.

    Returns:
        Validated RuntimeConfig instance.

    Raises:
        ValueError: If a value is malformed or out of range.
    """
    fb = yaml_fallbacks or {}
    defaults = RuntimeConfig()

    # --- String fields: CLI > env > YAML > default ---

    final_state_dir = (
        state_dir
        or os.getenv("ATPAR_STATE_DIR")
        or fb.get("state_dir")
        or defaults.state_dir
    )

    client_id = os.getenv("ATPAR_OAUTH_CLIENT_ID") or fb.get(
        "oauth_client_id"
    )
    client_secret = os.getenv("ATPAR_OAUTH_CLIENT_SECRET") or fb.get(
        "oauth_client_secret"
    )

    # --- Boolean fields: CLI > env > YAML > default ---

    if debug:
        final_debug = True
    else:
        env_debug = _get_bool_env("ATPAR_DEBUG")
        if env_debug is not None:
            final_debug = env_debug
        else:
            final_debug = bool(fb.get("debug", False))

    # --- Numeric fields: CLI > env > YAML > default ---

    if run_timeout is not None:
        final_timeout = float(run_timeout)
    else:
        env_timeout = _get_number_env("ATPAR_RUN_TIMEOUT", 1, 86400)
        final_timeout = (
            env_timeout
            if env_timeout is not None
            else float(fb.get("run_timeout", defaults.run_timeout))
        )

    env_ttl = _get_number_env("ATPAR_LOCK_TTL", 30, 86400)
    final_ttl = (
        env_ttl
        if env_ttl is not None
        else float(fb.get("lock_ttl", defaults.lock_ttl))
    )

    env_parallel = _get_number_env(
        "ATPAR_MAX_PARALLEL_RUNS", 1, 64, cast=int
    )
    final_parallel = (
        int(env_parallel)
        if env_parallel is not None
        else int(fb.get("max_parallel_runs", defaults.max_parallel_runs))
    )

    config = RuntimeConfig(
        state_dir=final_state_dir,
        run_timeout=final_timeout,
        lock_ttl=final_ttl,
        max_parallel_runs=final_parallel,
        retry_attempts=int(
            fb.get("retry_attempts", defaults.retry_attempts)
        ),
        retry_backoff_min=float(
            fb.get("retry_backoff_min", defaults.retry_backoff_min)
        ),
        retry_backoff_max=float(
            fb.get("retry_backoff_max", defaults.retry_backoff_max)
        ),
        oauth_client_id=client_id,
        oauth_client_secret=client_secret,
        oauth_token_url=fb.get("oauth_token_url") or defaults.oauth_token_url,
        oauth_scope=fb.get("oauth_scope") or defaults.oauth_scope,
        refresh_margin=float(
            fb.get("refresh_margin", defaults.refresh_margin)
        ),
        debug=final_debug,
    )

    validate_config(config)

    return config
