"""Runtime configuration for the order-sync engine.

Reads connection and engine settings from CLI args, environment
variables, .env files, and YAML config file fallbacks.

Precedence (highest to lowest):
    CLI args > Environment variables > .env file > YAML config > Built-in defaults

Environment variables:
    ORDER_SYNC_API_URL: Cloud API base URL (required)
    ORDER_SYNC_ACCESS_TOKEN: Bearer token (optional; the auth collaborator
        normally installs it at runtime)
    ORDER_SYNC_DATA_DIR: Directory for the local replica (optional,
        default: .order_sync/data)
    ORDER_SYNC_INSECURE: Skip SSL verification (optional, default: false)
    ORDER_SYNC_MAX_PARALLEL_REQUESTS: Max concurrent API requests
        (optional, default: 5)
"""

import logging
import os
from dataclasses import dataclass, field
from urllib.parse import urlparse

logger = logging.getLogger(__name__)

DEFAULT_DATA_DIR = ".order_sync/data"


@dataclass
class Config:
    api_base_url: str
    access_token: str | None = None
    data_dir: str = DEFAULT_DATA_DIR
    insecure: bool = False
    debug: bool = False
    timeout_seconds: float = 30.0
    max_parallel_requests: int = 5
    max_retries: int = 3
    retry_delays: tuple[float, ...] = field(
        default_factory=lambda: (1.0, 5.0, 15.0)
    )
    debounce_seconds: float = 2.0


def validate_config(config: Config) -> None:
    """Validate configuration values and raise ValueError if invalid.

    Args:
        config: Config instance to validate.

    Raises:
        ValueError: If the URL format is invalid or a numeric setting is
            out of range.
    """
    config.api_base_url = config.api_base_url.strip()

    if not config.api_base_url.startswith(("http://", "https://")):
        raise ValueError(
            f"Invalid API URL '{config.api_base_url}': must start with http:// or https://"
        )

    parsed = urlparse(config.api_base_url)
    if not parsed.hostname:
        raise ValueError(
            f"Invalid API URL '{config.api_base_url}': URL must include a hostname"
        )

    config.api_base_url = config.api_base_url.removesuffix("/")

    if not config.data_dir.strip():
        raise ValueError(
            "Data directory cannot be empty. Set ORDER_SYNC_DATA_DIR or storage.data_dir."
        )

    if config.max_retries < 1:
        raise ValueError(
            f"Invalid max_retries {config.max_retries}: must be at least 1"
        )

    if not config.retry_delays:
        raise ValueError("retry_delays must contain at least one delay")

    if config.insecure:
        logger.warning(
            "WARNING: SSL verification disabled (insecure=True). Use only for development."
        )


def _get_bool_env(key: str) -> bool | None:
    """Return True/False from env var, or None if unset."""
    val = os.getenv(key)
    if val is None:
        return None
    return val.lower() in ("true", "1", "yes", "on")


def load_config(
    url: str | None = None,
    access_token: str | None = None,
    data_dir: str | None = None,
    insecure: bool = False,
    debug: bool = False,
    yaml_fallbacks: dict | None = None,
) -> Config:
    """Load configuration with unified precedence.

    Resolution order for each field (highest to lowest):
        CLI arg > env var / .env > yaml_fallbacks > built-in default

    The caller is responsible for calling ``load_dotenv()`` before this
    function so that .env values are available via ``os.getenv()``.

    Args:
        url: Override API base URL.
        access_token: Override bearer token.
        data_dir: Override local data directory.
        insecure: Skip SSL verification (CLI flag).
        debug: Enable debug logging (CLI flag).
        yaml_fallbacks: Flattened values from the YAML ``remote``,
            ``storage`` and ``sync`` sections.

    Returns:
        Validated Config instance.

    Raises:
        ValueError: If the API URL is missing after checking all sources,
            or any value is invalid.
    """
    fb = yaml_fallbacks or {}

    api_url = url or os.getenv("ORDER_SYNC_API_URL") or fb.get("api_base_url")
    if not api_url:
        raise ValueError(
            "API URL not found. Set ORDER_SYNC_API_URL environment variable, "
            "pass --api-url CLI argument, or add 'remote.api_base_url' to config.yml."
        )

    token = access_token or os.getenv("ORDER_SYNC_ACCESS_TOKEN") or None

    final_data_dir = (
        data_dir
        or os.getenv("ORDER_SYNC_DATA_DIR")
        or fb.get("data_dir")
        or DEFAULT_DATA_DIR
    )

    if insecure:
        final_insecure = True
    else:
        env_insecure = _get_bool_env("ORDER_SYNC_INSECURE")
        if env_insecure is not None:
            final_insecure = env_insecure
        else:
            final_insecure = bool(fb.get("insecure", False))

    if debug:
        final_debug = True
    else:
        env_debug = _get_bool_env("ORDER_SYNC_DEBUG")
        final_debug = bool(env_debug) if env_debug is not None else False

    max_parallel_raw = os.getenv("ORDER_SYNC_MAX_PARALLEL_REQUESTS")
    if max_parallel_raw is not None:
        try:
            final_max_parallel = int(max_parallel_raw)
        except ValueError:
            raise ValueError(
                f"Invalid ORDER_SYNC_MAX_PARALLEL_REQUESTS '{max_parallel_raw}': must be a number between 1 and 50"
            ) from None
        if not (1 <= final_max_parallel <= 50):
            raise ValueError(
                f"Invalid ORDER_SYNC_MAX_PARALLEL_REQUESTS '{max_parallel_raw}': must be a number between 1 and 50"
            )
    else:
        final_max_parallel = int(fb.get("max_parallel_requests", 5))

    config = Config(
        api_base_url=api_url,
        access_token=token,
        data_dir=final_data_dir,
        insecure=final_insecure,
        debug=final_debug,
        timeout_seconds=float(fb.get("timeout_seconds", 30.0)),
        max_parallel_requests=final_max_parallel,
        max_retries=int(fb.get("max_retries", 3)),
        retry_delays=tuple(fb.get("retry_delays", (1.0, 5.0, 15.0))),
        debounce_seconds=float(fb.get("debounce_seconds", 2.0)),
    )

    validate_config(config)

    return config
