"""Configuration file loader for kv-guard.

This module loads kv-guard configuration from TOML files, with support for
environment variable expansion, and builds a validated ``GuardConfig``.
"""

import logging
import os
import re
from pathlib import Path
from typing import Any

import tomllib

from kvguard.exceptions import ConfigValidationError
from kvguard.schemas import (
    ENGINE_SCHEMAS,
    CacheSettings,
    GuardConfig,
    MemoryStoreConfig,
    RateLimitPolicy,
    RateLimitSettings,
    RedisStoreConfig,
    SessionSettings,
)

logger = logging.getLogger(__name__)

CONFIG_ENV_VAR = "KVGUARD_CONFIG"
CONFIG_FILE_NAME = "kvguard.toml"

_SECTIONS = ("store", "rate_limit", "limits", "cache", "session", "fastapi")

# Values under these keys are expanded but never converted to numbers
_STRING_FIELDS = frozenset({"url", "password"})


def _expand_env_vars(obj: Any, coerce: bool = True) -> Any:
    """Recursively expand environment variables in configuration keys and values.

    Supports ${VAR_NAME} and ${VAR_NAME:-default} syntax (bash-like default values).
    Automatically converts numeric strings to appropriate types (int/float),
    except for values under ``url`` and ``password`` keys.

    Args:
        obj: Configuration object (dict, list, str, or other)
        coerce: Convert numeric-looking strings to int/float

    Returns:
        Object with environment variables expanded and types converted

    Example:
        >>> _expand_env_vars("redis://${REDIS_HOST}:6379")
        "redis://localhost:6379"  # If REDIS_HOST=localhost
        >>> _expand_env_vars("${CACHE_TTL:-300}")
        300  # Converted to int
        >>> _expand_env_vars({"limits": {"${SCOPE:-api}": {...}}})
        {"limits": {"api": {...}}}  # If SCOPE is unset
    """
    if isinstance(obj, dict):
        expanded_dict = {}
        for key, value in obj.items():
            # Section names may come from the environment too
            expanded_key = _expand_env_vars(key) if isinstance(key, str) else key
            expanded_dict[expanded_key] = _expand_env_vars(
                value, coerce=coerce and expanded_key not in _STRING_FIELDS
            )
        return expanded_dict

    if isinstance(obj, list):
        return [_expand_env_vars(item, coerce) for item in obj]

    if isinstance(obj, str):

        def replace_with_default(match):
            var_name = match.group(1)
            default_value = match.group(2)
            return os.environ.get(var_name, default_value)

        # Pattern: ${VAR_NAME:-default_value}
        result = re.sub(r"\$\{([^}:]+):-([^}]+)\}", replace_with_default, obj)

        # Then expand remaining ${VAR} and $VAR using standard expandvars
        result = os.path.expandvars(result)

        if not coerce:
            return result

        # "1.5" becomes 1.5, "42" becomes 42
        try:
            if "." in result or "e" in result.lower():
                return float(result)
            return int(result)
        except (ValueError, AttributeError):
            return result

    return obj


def _require_table(value: Any, field: str) -> dict[str, Any]:
    if not isinstance(value, dict):
        raise ConfigValidationError(
            f"{field} section must be a table",
            field=field,
            expected="dict",
            received=type(value).__name__,
        )
    return value


def _validate_config_structure(config: dict[str, Any]) -> dict[str, dict[str, Any]]:
    """Validate configuration structure and return each known section.

    Raises:
        ConfigValidationError: If configuration structure is invalid
    """
    if not isinstance(config, dict):
        raise ConfigValidationError(
            "Configuration must be a dictionary",
            field="config",
            expected="dict",
            received=type(config).__name__,
        )

    unknown = sorted(set(config) - set(_SECTIONS))
    if unknown:
        logger.warning("Ignoring unknown configuration sections: %s", ", ".join(unknown))

    return {name: _require_table(config.get(name, {}), name) for name in _SECTIONS}


def _build_store(store: dict[str, Any]) -> RedisStoreConfig | MemoryStoreConfig:
    engine = store.get("engine", "redis")
    schema = ENGINE_SCHEMAS.get(engine)
    if schema is None:
        raise ConfigValidationError(
            f"Unknown store engine '{engine}'",
            field="store.engine",
            expected=f"one of {sorted(ENGINE_SCHEMAS)}",
            received=str(engine),
        )

    kwargs = dict(store)
    if "password" in kwargs and kwargs["password"] is not None:
        # TOML allows an unquoted integer password
        kwargs["password"] = str(kwargs["password"])
    if kwargs.get("password") == "":
        kwargs["password"] = None

    try:
        return schema(**kwargs)
    except (TypeError, ValueError) as e:
        raise ConfigValidationError(
            f"Invalid store configuration: {e}",
            field="store",
            expected=f"valid {engine} store config",
            received=str(store),
        ) from e


def _build_policy(raw: Any, field: str) -> RateLimitPolicy:
    raw = _require_table(raw, field)
    try:
        return RateLimitPolicy(limit=int(raw["limit"]), window_seconds=int(raw["window_seconds"]))
    except KeyError as e:
        raise ConfigValidationError(
            f"{field} is missing required field {e}",
            field=field,
            expected="limit and window_seconds",
            received=str(raw),
        ) from e
    except (TypeError, ValueError) as e:
        raise ConfigValidationError(
            f"Invalid rate limit policy: {e}",
            field=field,
            expected="positive integers",
            received=str(raw),
        ) from e


def _build_rate_limit(rate_limit: dict[str, Any], limits: dict[str, Any]) -> RateLimitSettings:
    defaults = RateLimitSettings()

    default_policy = defaults.default
    if "limit" in rate_limit or "window_seconds" in rate_limit:
        default_policy = _build_policy(
            {
                "limit": rate_limit.get("limit", defaults.default.limit),
                "window_seconds": rate_limit.get(
                    "window_seconds", defaults.default.window_seconds
                ),
            },
            "rate_limit",
        )

    named = dict(defaults.limits)
    for name, raw in limits.items():
        named[name] = _build_policy(raw, f"limits.{name}")

    try:
        return RateLimitSettings(
            window_policy=rate_limit.get("window_policy", defaults.window_policy),
            default=default_policy,
            limits=named,
        )
    except ValueError as e:
        raise ConfigValidationError(
            str(e),
            field="rate_limit.window_policy",
            expected="'fixed' or 'rearm'",
            received=str(rate_limit.get("window_policy")),
        ) from e


def _build_cache(cache: dict[str, Any]) -> CacheSettings:
    kwargs: dict[str, Any] = {}
    if "ttl_seconds" in cache:
        kwargs["ttl_seconds"] = cache["ttl_seconds"]
    if "methods" in cache:
        methods = cache["methods"]
        if not isinstance(methods, list):
            raise ConfigValidationError(
                "cache.methods must be a list of HTTP methods",
                field="cache.methods",
                expected="list[str]",
                received=type(methods).__name__,
            )
        kwargs["methods"] = tuple(str(m) for m in methods)
    try:
        return CacheSettings(**kwargs)
    except (TypeError, ValueError) as e:
        raise ConfigValidationError(
            f"Invalid cache configuration: {e}",
            field="cache",
            expected="positive ttl_seconds",
            received=str(cache),
        ) from e


def _build_session(session: dict[str, Any]) -> SessionSettings:
    try:
        return SessionSettings(**session)
    except (TypeError, ValueError) as e:
        raise ConfigValidationError(
            f"Invalid session configuration: {e}",
            field="session",
            expected="positive ttl_seconds",
            received=str(session),
        ) from e


def _build_trusted_networks(fastapi: dict[str, Any]) -> list[str] | None:
    trusted_networks = fastapi.get("trusted_proxy_networks")
    if trusted_networks is None:
        return None
    if not isinstance(trusted_networks, list):
        raise ConfigValidationError(
            "fastapi.trusted_proxy_networks must be a list of CIDR networks",
            field="fastapi.trusted_proxy_networks",
            expected="list[str]",
            received=type(trusted_networks).__name__,
        )
    logger.info("Trusted proxy networks configured: %d networks", len(trusted_networks))
    return [str(network) for network in trusted_networks]


def parse_config(config: dict[str, Any]) -> GuardConfig:
    """Build a GuardConfig from an already parsed TOML document.

    Environment variables are expanded before validation.

    Raises:
        ConfigValidationError: If configuration is invalid
    """
    sections = _validate_config_structure(_expand_env_vars(config))
    return GuardConfig(
        store=_build_store(sections["store"]),
        rate_limit=_build_rate_limit(sections["rate_limit"], sections["limits"]),
        cache=_build_cache(sections["cache"]),
        session=_build_session(sections["session"]),
        trusted_proxy_networks=_build_trusted_networks(sections["fastapi"]),
    )


def load_config(config_path: str | Path) -> GuardConfig:
    """Load kv-guard configuration from a TOML file.

    Example TOML:
        [store]
        engine = "redis"
        url = "${REDIS_URL:-redis://localhost:6379}"
        operation_timeout = 2.0

        [rate_limit]
        window_policy = "fixed"
        limit = 100
        window_seconds = 3600

        [limits.api]
        limit = 50
        window_seconds = 3600

        [cache]
        ttl_seconds = 300

        [session]
        ttl_seconds = 3600

        [fastapi]
        trusted_proxy_networks = ["10.0.0.0/8", "127.0.0.0/8"]

    Args:
        config_path: Path to TOML configuration file

    Returns:
        Validated configuration

    Raises:
        FileNotFoundError: If config file doesn't exist
        ConfigValidationError: If configuration is invalid
    """
    config_path = Path(config_path)

    if not config_path.exists():
        raise FileNotFoundError(f"Configuration file not found: {config_path}")

    try:
        with open(config_path, "rb") as f:
            raw = tomllib.load(f)
    except tomllib.TOMLDecodeError as e:
        raise ConfigValidationError(
            f"Failed to parse TOML file: {e}",
            field="config_file",
            expected="valid TOML",
            received=str(config_path),
        ) from e

    config = parse_config(raw)
    logger.info(
        "Configuration loaded from %s (engine=%s, window_policy=%s, %d named limits)",
        config_path,
        config.store.engine,
        config.rate_limit.window_policy,
        len(config.rate_limit.limits),
    )
    return config


def find_config_path() -> Path | None:
    """Locate a configuration file in the standard locations.

    Searches in the following order:
    1. Environment variable KVGUARD_CONFIG
    2. ./kvguard.toml (current directory)
    3. ./config/kvguard.toml (config subdirectory)
    """
    env_config = os.getenv(CONFIG_ENV_VAR)
    if env_config:
        config_path = Path(env_config)
        if config_path.exists():
            return config_path
        logger.warning("%s points to non-existent file: %s", CONFIG_ENV_VAR, config_path)

    search_paths = [
        Path.cwd() / CONFIG_FILE_NAME,
        Path.cwd() / "config" / CONFIG_FILE_NAME,
    ]
    for config_path in search_paths:
        if config_path.exists():
            return config_path
    return None


def load_default_config() -> GuardConfig:
    """Load configuration from the standard locations, or return defaults.

    Unlike a missing file, an invalid file is an error.

    Raises:
        ConfigValidationError: If a configuration file was found but is invalid
    """
    config_path = find_config_path()
    if config_path is None:
        logger.debug("No %s found in standard locations, using defaults", CONFIG_FILE_NAME)
        return GuardConfig()
    return load_config(config_path)
