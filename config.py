"""
Configuration Module
====================
Environment settings for the admin dashboard, read once and validated at
startup so a bad deployment fails before serving requests.

Settings are grouped by what they drive:
    SupabaseConfig  - store and identity provider credentials
    DashboardConfig - catalog seeding, password reset, auth waits, sessions, metrics
    ServerConfig    - bind address, CORS, log level
"""

import os
import logging
from typing import Optional, Dict, Any, List, Tuple
from pathlib import Path
from dotenv import load_dotenv


logger = logging.getLogger(__name__)

LOG_LEVELS = ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL")
TRUTHY = ("true", "1", "yes", "on")


def load_environment(path: str = ".env"):
    """Merge a dotenv file into os.environ when one exists. Existing vars win."""
    env_file = Path(path)
    if env_file.exists():
        load_dotenv(env_file)
        logger.info(f"Loaded environment from {env_file}")
    else:
        logger.debug("No .env file, reading process environment only")


load_environment()


class ConfigurationError(Exception):
    """A setting is missing or malformed."""
    pass


# ============================================================================
# ENV READERS
# ============================================================================

def _env(key: str) -> Optional[str]:
    value = os.getenv(key)
    if value is None:
        return None
    value = value.strip()
    return value or None


def _require(key: str, what: str) -> str:
    value = _env(key)
    if value is None:
        raise ConfigurationError(f"{key} is required ({what})")
    return value


def _flag(key: str, default: bool) -> bool:
    value = _env(key)
    if value is None:
        return default
    return value.lower() in TRUTHY


def _integer(key: str, default: int, minimum: Optional[int] = None) -> int:
    """
    Read an integer setting.

    Raises:
        ConfigurationError: If the value is not an integer or below minimum
    """
    raw = _env(key)
    if raw is None:
        return default

    try:
        value = int(raw)
    except ValueError:
        raise ConfigurationError(f"{key} must be an integer, got {raw!r}")

    if minimum is not None and value < minimum:
        raise ConfigurationError(f"{key} must be >= {minimum}, got {value}")
    return value


def _url(key: str, value: Optional[str], schemes: Tuple[str, ...]) -> Optional[str]:
    if value is not None and not value.startswith(schemes):
        raise ConfigurationError(f"{key} must start with {' or '.join(schemes)}: {value}")
    return value


# ============================================================================
# SETTINGS GROUPS
# ============================================================================

class SupabaseConfig:
    """Project URL and key shared by the table client and the auth client."""

    def __init__(self):
        self.url = _url(
            "SUPABASE_URL",
            _require("SUPABASE_URL", "Supabase project URL"),
            ("https://",)
        )
        # Operator registration goes through the admin API, which needs the service role key
        self.key = _require("SUPABASE_KEY", "Supabase service role key")


class DashboardConfig:

    def __init__(self):
        self.seed_default_categories = _flag("SEED_DEFAULT_CATEGORIES", True)
        self.password_reset_redirect_url = _url(
            "PASSWORD_RESET_REDIRECT_URL",
            _env("PASSWORD_RESET_REDIRECT_URL"),
            ("http://", "https://")
        )
        # Retry-After sent while the first auth callback is pending
        self.auth_wait_retry_after = _integer("AUTH_WAIT_RETRY_AFTER", 1, minimum=0)
        # How long a request waits for its token to be verified before getting WAIT
        self.auth_wait_timeout = _integer("AUTH_WAIT_TIMEOUT", 5, minimum=1)
        # Cached per-token sessions are re-verified after this many seconds
        self.session_ttl = _integer("SESSION_TTL_SECONDS", 300, minimum=1)
        self.enable_metrics = _flag("ENABLE_METRICS", True)


class ServerConfig:

    def __init__(self):
        self.host = _env("HOST") or "0.0.0.0"
        self.port = _integer("PORT", 8000, minimum=1)
        self.cors_origins = [
            origin.strip()
            for origin in (_env("CORS_ORIGINS") or "*").split(",")
            if origin.strip()
        ]

        self.log_level = (_env("LOG_LEVEL") or "INFO").upper()
        if self.log_level not in LOG_LEVELS:
            raise ConfigurationError(
                f"LOG_LEVEL must be one of {', '.join(LOG_LEVELS)}, got {self.log_level}"
            )


class Config:
    """
    All dashboard settings.

    Raises:
        ConfigurationError: On construction, if any group is invalid
    """

    def __init__(self):
        try:
            self.supabase = SupabaseConfig()
            self.dashboard = DashboardConfig()
            self.server = ServerConfig()
        except ConfigurationError as e:
            logger.error(f"Configuration error: {e}")
            raise
        except Exception as e:
            logger.error(f"Unexpected error loading configuration: {e}")
            raise ConfigurationError(f"Configuration initialization failed: {e}")

        logger.info("Configuration loaded")

    def get_safe_summary(self) -> Dict[str, Any]:
        """Settings safe to log. The Supabase key is left out."""
        return {
            "supabase_url": self.supabase.url,
            "dashboard": {
                "seed_default_categories": self.dashboard.seed_default_categories,
                "password_reset_redirect": bool(self.dashboard.password_reset_redirect_url),
                "auth_wait_retry_after": self.dashboard.auth_wait_retry_after,
                "auth_wait_timeout": self.dashboard.auth_wait_timeout,
                "session_ttl": self.dashboard.session_ttl,
                "metrics": self.dashboard.enable_metrics,
            },
            "server": {
                "host": self.server.host,
                "port": self.server.port,
                "log_level": self.server.log_level,
                "cors_origins": self.server.cors_origins,
            },
        }

    def validate_runtime_dependencies(self) -> List[str]:
        """Legal but risky settings, as human readable warnings."""
        warnings = []

        if "*" in self.server.cors_origins:
            warnings.append("CORS_ORIGINS allows any origin")

        if not self.dashboard.password_reset_redirect_url:
            warnings.append(
                "PASSWORD_RESET_REDIRECT_URL not set, reset emails use the Supabase site URL"
            )

        return warnings


# ============================================================================
# PROCESS-WIDE INSTANCE
# ============================================================================

_config: Optional[Config] = None


def get_config() -> Config:
    global _config

    if _config is None:
        _config = Config()

    return _config


def reload_config() -> Config:
    """Re-read .env and the environment, replacing the cached config."""
    global _config
    load_environment()
    _config = Config()
    logger.info("Configuration reloaded")
    return _config


def validate_configuration() -> Config:
    """
    Load the config and log a summary plus any warnings. Called by the
    server entry point before it binds.

    Raises:
        ConfigurationError: If configuration is invalid
    """
    config = get_config()
    summary = config.get_safe_summary()

    logger.info(
        f"Dashboard config: supabase={summary['supabase_url']} "
        f"server={summary['server']['host']}:{summary['server']['port']} "
        f"log_level={summary['server']['log_level']}"
    )
    for key, value in summary["dashboard"].items():
        logger.info(f"  {key}: {value}")

    for warning in config.validate_runtime_dependencies():
        logger.warning(f"Configuration warning: {warning}")

    return config
