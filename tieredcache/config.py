"""
Central configuration loader for tieredcache.

Reads ``config/config.yaml`` and ``.env``, merges environment-variable
overrides (``TIEREDCACHE_`` prefix), and exposes a typed :class:`Settings`
singleton via :func:`get_settings`.
"""

import logging
import os
import threading
from dataclasses import dataclass, field, fields
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional, get_origin

import yaml
from dotenv import load_dotenv

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Resolve project root (directory containing ``config/``)
# ---------------------------------------------------------------------------

_THIS_DIR = Path(__file__).resolve().parent          # tieredcache/
_PROJECT_ROOT = _THIS_DIR.parent                     # repo root


def _project_path(*parts: str) -> Path:
    """Build an absolute path relative to the project root."""
    return _PROJECT_ROOT.joinpath(*parts)


# ---------------------------------------------------------------------------
# Nested settings dataclasses
# ---------------------------------------------------------------------------


@dataclass
class CacheSettings:
    default_ttl_seconds: float = 300.0
    max_age_seconds: float = 86400.0
    enable_durable_tier: bool = True
    enable_remote_fetch: bool = True
    namespace: str = "cache_"
    fetch_timeout_seconds: float = 30.0
    single_flight: bool = True
    sweep_interval_seconds: float = 600.0


@dataclass
class DurableSettings:
    backend: str = "memory"
    file_path: str = "data/cache.json"
    redis_url: str = "redis://localhost:6379/0"


@dataclass
class EgressSettings:
    enabled: bool = True
    max_errors: int = 3
    check_interval_seconds: float = 300.0
    error_codes: List[str] = field(default_factory=lambda: ["PGRST301", "PGRST302"])
    error_keywords: List[str] = field(default_factory=lambda: [
        "egress", "quota", "limit", "rate limit", "too many requests",
    ])


@dataclass
class LoggingSettings:
    level: str = "INFO"


@dataclass
class Settings:
    """Top-level settings container."""
    cache: CacheSettings = field(default_factory=CacheSettings)
    durable: DurableSettings = field(default_factory=DurableSettings)
    egress: EgressSettings = field(default_factory=EgressSettings)
    logging: LoggingSettings = field(default_factory=LoggingSettings)


# ---------------------------------------------------------------------------
# Sources: YAML file and TIEREDCACHE_<SECTION>_<KEY> environment variables
# ---------------------------------------------------------------------------

_SECTIONS = ("cache", "durable", "egress", "logging")
_ENV_PREFIX = "TIEREDCACHE_"
_TRUTHY = frozenset({"1", "true", "yes", "on"})


def _load_yaml(path: Path) -> Dict[str, Any]:
    """Read and parse a YAML file.  Returns ``{}`` if the file is missing."""
    if not path.exists():
        logger.warning("Config file not found: %s", path)
        return {}
    with open(path, "r", encoding="utf-8") as fh:
        data = yaml.safe_load(fh)
    return data if isinstance(data, dict) else {}


def _coerce(field_type: Any, value: Any) -> Any:
    """Convert a YAML value or an env string to *field_type*.

    Raises:
        ValueError, TypeError: If *value* cannot represent the field.
    """
    base = get_origin(field_type) or field_type
    if base is bool:
        if isinstance(value, str):
            return value.strip().lower() in _TRUTHY
        return bool(value)
    if base is list:
        if isinstance(value, str):
            return [item.strip() for item in value.split(",") if item.strip()]
        if not isinstance(value, (list, tuple)):
            raise TypeError(f"expected a list, got {type(value).__name__}")
        return [str(item) for item in value]
    if base in (int, float, str):
        return base(value)
    return value


def _merge_section(section: Any, values: Mapping[str, Any], source: str) -> None:
    """Coerce *values* to the section's declared field types and assign them.

    Unknown keys and values that fail coercion are logged and skipped, so a
    bad entry never hides the rest of the section.
    """
    declared = {f.name: f.type for f in fields(section)}
    for key, raw in values.items():
        field_type = declared.get(key)
        if field_type is None:
            logger.debug("Ignoring unknown config key %s from %s", key, source)
            continue
        try:
            setattr(section, key, _coerce(field_type, raw))
        except (ValueError, TypeError):
            logger.warning("Invalid config value %s=%r from %s", key, raw, source)


def _env_values(section_name: str, section: Any) -> Dict[str, str]:
    """Collect ``TIEREDCACHE_<SECTION>_<KEY>`` variables for one section."""
    prefix = f"{_ENV_PREFIX}{section_name.upper()}_"
    found = {}
    for f in fields(section):
        env_val = os.environ.get(prefix + f.name.upper())
        if env_val is not None:
            found[f.name] = env_val
    return found


def _build_settings(raw: Mapping[str, Any]) -> Settings:
    """Defaults, then YAML sections, then environment overrides."""
    settings = Settings()
    for section_name in _SECTIONS:
        section = getattr(settings, section_name)
        section_data = raw.get(section_name)
        if isinstance(section_data, dict):
            _merge_section(section, section_data, "yaml")
        _merge_section(section, _env_values(section_name, section), "env")
    return settings


# ---------------------------------------------------------------------------
# Singleton
# ---------------------------------------------------------------------------

_settings: Optional[Settings] = None
_lock = threading.Lock()


def get_settings(
    *,
    yaml_path: Optional[Path] = None,
    env_path: Optional[Path] = None,
    _force_reload: bool = False,
) -> Settings:
    """Return the process-wide :class:`Settings` singleton.

    On first call (or when ``_force_reload=True``) the function:

    1. Calls ``load_dotenv()`` to populate env vars from ``.env``.
    2. Reads ``config/config.yaml``.
    3. Applies ``TIEREDCACHE_*`` environment-variable overrides.

    Args:
        yaml_path: Override the YAML config file path (testing).
        env_path: Override the ``.env`` file path (testing).
        _force_reload: Re-read everything even if already loaded.

    Returns:
        The global ``Settings`` instance.
    """
    global _settings

    if _settings is not None and not _force_reload:
        return _settings

    with _lock:
        # Double-check after acquiring lock
        if _settings is not None and not _force_reload:
            return _settings

        dotenv_path = env_path or _project_path(".env")
        load_dotenv(dotenv_path, override=False)

        config_path = yaml_path or _project_path("config", "config.yaml")
        _settings = _build_settings(_load_yaml(config_path))
        logger.info("Settings loaded from %s", config_path)
        return _settings


def reset_settings() -> None:
    """Clear the cached singleton (for testing)."""
    global _settings
    with _lock:
        _settings = None


def configure_logging(settings: Optional[Settings] = None) -> None:
    """Apply the configured log level to the ``tieredcache`` logger tree."""
    settings = settings or get_settings()
    level = logging.getLevelName(settings.logging.level.upper())
    if not isinstance(level, int):
        logger.warning("Unknown log level %s; using INFO", settings.logging.level)
        level = logging.INFO
    logging.getLogger("tieredcache").setLevel(level)
