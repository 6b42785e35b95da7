"""
Hierarchical configuration loader for strapi_sync.

Finds config files by convention, supports ``!include`` in YAML and
``${VAR}`` interpolation, and merges files with "project wins" semantics.

Usage:
    from strapi_sync.config_loader import load_hierarchical_config

    raw = load_hierarchical_config()
"""

import logging
import os
import re
from pathlib import Path
from typing import Any

import yaml

logger = logging.getLogger(__name__)

CONFIG_ENV_VAR = "STRAPI_SYNC_CONFIG"

# ---------------------------------------------------------------------------
# 1. Env var interpolation
# ---------------------------------------------------------------------------

# ${VAR} or ${VAR:-default}
_ENV_VAR_PATTERN = re.compile(r"\$\{([^}:]+?)(?::-(.*?))?\}")


def interpolate_env_vars(value: str) -> str:
    """Substitute ``${VAR}`` and ``${VAR:-default}`` with environment values.

    An unset or empty variable yields its default, or ``""`` without one.
    Tokens in a config usually come in this way
    (``api_token: ${STRAPI_SOURCE_TOKEN}``).
    """

    def _substitute(match: re.Match) -> str:
        current = os.environ.get(match.group(1))
        if current:
            return current
        return match.group(2) if match.group(2) is not None else ""

    return _ENV_VAR_PATTERN.sub(_substitute, value)


def _interpolate_recursive(obj: Any) -> Any:
    if isinstance(obj, str):
        return interpolate_env_vars(obj)
    if isinstance(obj, dict):
        return {key: _interpolate_recursive(item) for key, item in obj.items()}
    if isinstance(obj, list):
        return [_interpolate_recursive(item) for item in obj]
    return obj


# ---------------------------------------------------------------------------
# 2. YAML !include support
# ---------------------------------------------------------------------------


class ConfigLoader(yaml.SafeLoader):
    """SafeLoader with an ``!include`` tag.

    A subclass keeps the global ``yaml.SafeLoader`` untouched.  Each load
    carries the chain of files being included to reject cycles.
    """


def _include_constructor(loader: ConfigLoader, node: yaml.ScalarNode) -> Any:
    """Load the file named by ``!include relative/or/absolute.yml``."""
    requested = Path(loader.construct_scalar(node))
    if not requested.is_absolute():
        requested = Path(loader.name).resolve().parent / requested
    requested = requested.resolve()

    chain: list[Path] = getattr(loader, "_include_stack", [])
    if requested in chain:
        cycle = " -> ".join(str(p) for p in chain + [requested])
        raise ValueError(f"Circular include detected: {cycle}")
    if not requested.exists():
        raise FileNotFoundError(
            f"Include file not found: {requested} "
            f"(referenced from {Path(loader.name).resolve()})"
        )
    return _load_yaml_with_includes(requested, _include_stack=chain + [requested])


ConfigLoader.add_constructor("!include", _include_constructor)


def _load_yaml_with_includes(
    path: Path,
    *,
    _include_stack: list[Path] | None = None,
) -> Any:
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
    """Return existing config files, highest precedence first.

    Search order:
        1. ``STRAPI_SYNC_CONFIG`` env var (explicit single path)
        2. ``.strapi_sync/config.yml`` in CWD
        3. ``.strapi_sync/config.yaml`` in CWD
        4. ``~/.config/strapi_sync/config.yml``
    """
    candidates: list[Path] = []

    explicit = os.environ.get(CONFIG_ENV_VAR)
    if explicit:
        candidates.append(Path(explicit).expanduser().resolve())

    project = Path.cwd() / ".strapi_sync"
    candidates.append(project / "config.yml")
    candidates.append(project / "config.yaml")
    candidates.append(Path.home() / ".config" / "strapi_sync" / "config.yml")

    return [p for p in candidates if p.exists()]


_STARTER_CONFIG = """\
# strapi-sync configuration
#
# Secrets are best kept in the environment or a .env file:
#   STRAPI_SOURCE_URL, STRAPI_SOURCE_TOKEN, STRAPI_TARGET_URL, STRAPI_TARGET_TOKEN
#
# source:
#   url: https://cms-staging.example.com
#   api_token: ${STRAPI_SOURCE_TOKEN}
#   username: admin@example.com      # admin login, needed for media sync
#   password: ${STRAPI_SOURCE_PASSWORD}
#
# target:
#   url: https://cms.example.com
#   api_token: ${STRAPI_TARGET_TOKEN}
#
# sync:
#   state_dir: .strapi_sync
#   cache_ttl_seconds: 3600
#   request_timeout: 60
#   page_size: 100
#
# logging:
#   level: INFO
#   file: null
"""


def ensure_config(target: Path | None = None) -> Path:
    """Return the active config file, writing a commented starter if none exists."""
    existing = discover_config_files()
    if existing:
        logger.debug("Config file already exists: %s", existing[0])
        return existing[0]

    config_path = target or Path.cwd() / ".strapi_sync" / "config.yml"
    config_path.parent.mkdir(parents=True, exist_ok=True)
    config_path.write_text(_STARTER_CONFIG, encoding="utf-8")
    logger.info("Created starter config: %s", config_path)
    return config_path


# ---------------------------------------------------------------------------
# 4. Hierarchical merge
# ---------------------------------------------------------------------------


def load_hierarchical_config() -> dict[str, Any]:
    """Load and merge all discovered config files.

    Files load from lowest to highest precedence; top-level keys of a
    later file replace those of earlier ones.  Env var interpolation runs
    once on the merged result.  Returns ``{}`` when no file exists.
    """
    paths = discover_config_files()
    if not paths:
        logger.debug("No config files found, using zero-config defaults")
        return {}

    merged: dict[str, Any] = {}
    for path in reversed(paths):
        logger.debug("Loading config: %s", path)
        data = _load_yaml_with_includes(path)
        if isinstance(data, dict):
            merged.update(data)
        elif data is not None:
            logger.warning(
                "Config file %s has non-dict root (%s), skipping",
                path,
                type(data).__name__,
            )

    return _interpolate_recursive(merged)
