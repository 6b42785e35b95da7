"""Runtime configuration for the merge engine.

Reads source/target connection settings from CLI args, environment
variables, .env files, and YAML config file fallbacks.

Precedence (highest to lowest):
    CLI args > Environment variables > .env file > YAML config > Built-in defaults

Environment variables:
    STRAPI_SOURCE_URL / STRAPI_TARGET_URL: Instance base URLs (required)
    STRAPI_SOURCE_TOKEN / STRAPI_TARGET_TOKEN: REST API tokens (required)
    STRAPI_SOURCE_USERNAME / STRAPI_TARGET_USERNAME: Admin e-mail (media sync)
    STRAPI_SOURCE_PASSWORD / STRAPI_TARGET_PASSWORD: Admin password (media sync)
    STRAPI_SYNC_INSECURE: Skip SSL verification (optional, default: false)
    STRAPI_SYNC_TIMEOUT: Per-request read timeout in seconds (default: 60)
    STRAPI_SYNC_STATE_DIR: Directory for mappings and selections (default: .strapi_sync)
    STRAPI_SYNC_CACHE_TTL: Snapshot cache freshness in seconds (default: 3600)
    STRAPI_SYNC_PAGE_SIZE: Page size for paginated fetches (default: 100)
"""

import logging
import os
from dataclasses import dataclass
from urllib.parse import urlparse

logger = logging.getLogger(__name__)


@dataclass
class InstanceSettings:
    url: str
    api_token: str
    username: str | None = None
    password: str | None = None
    insecure: bool = False
    timeout: float = 60.0


@dataclass
class Config:
    source: InstanceSettings
    target: InstanceSettings
    state_dir: str = ".strapi_sync"
    cache_ttl_seconds: int = 3600
    page_size: int = 100
    debug: bool = False


def _validate_instance(role: str, instance: InstanceSettings) -> None:
    instance.url = instance.url.strip()
    if not instance.url.startswith(("http://", "https://")):
        raise ValueError(
            f"Invalid {role} URL '{instance.url}': must start with http:// or https://"
        )
    if not urlparse(instance.url).hostname:
        raise ValueError(
            f"Invalid {role} URL '{instance.url}': URL must include a hostname"
        )
    instance.url = instance.url.removesuffix("/")

    if not instance.api_token.strip():
        raise ValueError(
            f"{role.capitalize()} API token cannot be empty. "
            f"Set STRAPI_{role.upper()}_TOKEN environment variable."
        )
    if bool(instance.username) != bool(instance.password):
        raise ValueError(
            f"{role.capitalize()} admin username and password must be set together"
        )
    if instance.timeout <= 0:
        raise ValueError(f"{role.capitalize()} timeout must be positive")
    if instance.insecure:
        logger.warning(
            "WARNING: SSL verification disabled for %s (insecure=True). "
            "Use only for development.",
            role,
        )


def validate_config(config: Config) -> None:
    """Validate configuration values and raise ValueError if invalid.

    Raises:
        ValueError: If a URL is malformed, a token is empty or a numeric
            value is out of range.
    """
    _validate_instance("source", config.source)
    _validate_instance("target", config.target)

    if config.source.url == config.target.url:
        raise ValueError("Source and target URLs must differ")
    if not (1 <= config.page_size <= 1000):
        raise ValueError(
            f"Invalid page size {config.page_size}: must be between 1 and 1000"
        )
    if config.cache_ttl_seconds < 0:
        raise ValueError("Cache TTL cannot be negative")


def _get_bool_env(key: str) -> bool | None:
    """Return True/False from env var, or None if unset."""
    val = os.getenv(key)
    if val is None:
        return None
    return val.lower() in ("true", "1", "yes", "on")


def _get_number(
    env_key: str, fallback: object, default: float, low: float, high: float
) -> float:
    raw = os.getenv(env_key)
    source = raw if raw is not None else fallback
    if source is None:
        return default
    try:
        value = float(source)  # type: ignore[arg-type]
    except (TypeError, ValueError):
        raise ValueError(
            f"Invalid {env_key} '{source}': must be a number between {low} and {high}"
        ) from None
    if not (low <= value <= high):
        raise ValueError(
            f"Invalid {env_key} '{source}': must be a number between {low} and {high}"
        )
    return value


def _load_instance(
    role: str, overrides: dict, fb: dict, insecure: bool, timeout: float
) -> InstanceSettings:
    prefix = f"STRAPI_{role.upper()}_"

    url = overrides.get("url") or os.getenv(prefix + "URL") or fb.get("url")
    if not url:
        raise ValueError(
            f"{role.capitalize()} URL not found. Set {prefix}URL environment "
            f"variable, pass --{role}-url, or add '{role}.url' to config.yml."
        )
    token = (
        overrides.get("token")
        or os.getenv(prefix + "TOKEN")
        or fb.get("api_token")
    )
    if not token:
        raise ValueError(
            f"{role.capitalize()} API token not found. Set {prefix}TOKEN "
            f"environment variable, pass --{role}-token, or add "
            f"'{role}.api_token' to config.yml."
        )
    return InstanceSettings(
        url=url.strip(),
        api_token=token.strip(),
        username=os.getenv(prefix + "USERNAME") or fb.get("username"),
        password=os.getenv(prefix + "PASSWORD") or fb.get("password"),
        insecure=insecure or bool(fb.get("insecure", False)),
        timeout=float(fb.get("timeout") or timeout),
    )


def load_config(
    source_url: str | None = None,
    source_token: str | None = None,
    target_url: str | None = None,
    target_token: str | None = None,
    insecure: bool = False,
    debug: bool = False,
    state_dir: str | None = None,
    yaml_fallbacks: dict | None = None,
) -> Config:
    """Load configuration with unified precedence.

    The caller is responsible for calling ``load_dotenv()`` before this
    function so that .env values are available via ``os.getenv()``.

    Args:
        source_url: Override source URL.
        source_token: Override source API token.
        target_url: Override target URL.
        target_token: Override target API token.
        insecure: Skip SSL verification (CLI flag).
        debug: Enable debug logging (CLI flag).
        state_dir: Override the state directory.
        yaml_fallbacks: Dict with ``source``, ``target`` and ``sync``
            sections from the YAML config file.

    Returns:
        Validated Config instance.

    Raises:
        ValueError: If required settings are missing or invalid.
    """
    fb = yaml_fallbacks or {}
    sync_fb = fb.get("sync") or {}

    if insecure:
        final_insecure = True
    else:
        env_insecure = _get_bool_env("STRAPI_SYNC_INSECURE")
        final_insecure = bool(env_insecure) if env_insecure is not None else False

    timeout = _get_number(
        "STRAPI_SYNC_TIMEOUT", sync_fb.get("request_timeout"), 60, 1, 3600
    )

    config = Config(
        source=_load_instance(
            "source",
            {"url": source_url, "token": source_token},
            fb.get("source") or {},
            final_insecure,
            timeout,
        ),
        target=_load_instance(
            "target",
            {"url": target_url, "token": target_token},
            fb.get("target") or {},
            final_insecure,
            timeout,
        ),
        state_dir=state_dir
        or os.getenv("STRAPI_SYNC_STATE_DIR")
        or sync_fb.get("state_dir")
        or ".strapi_sync",
        cache_ttl_seconds=int(
            _get_number(
                "STRAPI_SYNC_CACHE_TTL",
                sync_fb.get("cache_ttl_seconds"),
                3600,
                0,
                7 * 24 * 3600,
            )
        ),
        page_size=int(
            _get_number(
                "STRAPI_SYNC_PAGE_SIZE", sync_fb.get("page_size"), 100, 1, 1000
            )
        ),
        debug=debug or bool(_get_bool_env("STRAPI_SYNC_DEBUG")),
    )

    validate_config(config)

    return config
