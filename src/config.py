"""
Centralized configuration loader for the content scheduler.

Loads settings from YAML files and environment variables, providing
sensible defaults when configuration files are absent.

Provides:
    - DispatchConfig: Tick interval and completion-wait policy
    - PublishConfig: Social transport endpoint, timeout and content policy
    - GenerationConfig: Generation provider endpoint and test-run pricing
    - Settings: Global application settings loaded from YAML + env vars
    - get_settings(): Singleton accessor for Settings
    - validate_env(): Startup validation of required environment variables
"""

import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional

import yaml
from dotenv import load_dotenv

from src.exceptions import ConfigurationError

# ---------------------------------------------------------------------------
# Load .env file (no-op if file does not exist)
# ---------------------------------------------------------------------------
load_dotenv()

# ---------------------------------------------------------------------------
# Project root directory (parent of src/)
# ---------------------------------------------------------------------------
PROJECT_ROOT = Path(__file__).resolve().parent.parent

logger = logging.getLogger(__name__)


def _apply_env_overrides(
    target: Any, overrides: Dict[str, "tuple[str, Callable[[str], Any]]"]
) -> None:
    """Set attributes on *target* from environment variables.

    Raises:
        ConfigurationError: If a variable is set but cannot be cast.
    """
    for env_key, (attr_name, cast_fn) in overrides.items():
        env_val = os.environ.get(env_key)
        if env_val is None:
            continue
        try:
            setattr(target, attr_name, cast_fn(env_val))
        except (ValueError, TypeError) as exc:
            raise ConfigurationError(
                f"Invalid value for env var {env_key}='{env_val}': {exc}"
            ) from exc


def _section(cls: type, data: Dict[str, Any]) -> Any:
    """Build a config dataclass from a YAML section, ignoring unknown keys."""
    known = {k: v for k, v in data.items() if k in cls.__dataclass_fields__}
    unknown = set(data) - set(known)
    if unknown:
        logger.warning("Ignoring unknown %s keys: %s", cls.__name__, sorted(unknown))
    try:
        return cls(**known)
    except TypeError as exc:
        raise ConfigurationError(f"Invalid {cls.__name__} section: {exc}") from exc


# ===========================================================================
# DISPATCH CONFIGURATION
# ===========================================================================


@dataclass
class DispatchConfig:
    """
    Timing policy for the dispatch loop and the completion waiter.

    The waiter defaults (5 min / 3 s) keep a slow provider inside a few
    dispatch ticks while still polling often enough to pick up webhooks.
    """

    tick_interval_seconds: float = 60.0
    job_max_wait_seconds: float = 300.0
    job_poll_interval_seconds: float = 3.0
    test_run_max_wait_seconds: float = 60.0
    test_run_poll_interval_seconds: float = 2.0

    def __post_init__(self) -> None:
        """Override values from environment variables, then validate."""
        _apply_env_overrides(self, {
            "DISPATCH_TICK_SECONDS": ("tick_interval_seconds", float),
            "JOB_MAX_WAIT_SECONDS": ("job_max_wait_seconds", float),
            "JOB_POLL_INTERVAL_SECONDS": ("job_poll_interval_seconds", float),
        })
        for name in (
            "tick_interval_seconds",
            "job_max_wait_seconds",
            "job_poll_interval_seconds",
            "test_run_max_wait_seconds",
            "test_run_poll_interval_seconds",
        ):
            if getattr(self, name) <= 0:
                raise ConfigurationError(
                    f"dispatch.{name} must be positive, got {getattr(self, name)}"
                )


# ===========================================================================
# PUBLISH CONFIGURATION
# ===========================================================================


@dataclass
class PublishConfig:
    """
    Social transport (Late) settings and the adult-content policy.

    ``adult_content_blocked_platforms`` lists platforms that reject posts
    flagged NSFW; they are dropped from the target set before publishing.
    """

    late_api_base_url: str = "https://getlate.dev/api/v1"
    late_api_key: str = ""
    timeout_seconds: float = 30.0
    adult_content_blocked_platforms: List[str] = field(
        default_factory=lambda: ["instagram"]
    )

    def __post_init__(self) -> None:
        """Override values from environment variables."""
        _apply_env_overrides(self, {
            "LATE_API_BASE_URL": ("late_api_base_url", str),
            "LATE_API_KEY": ("late_api_key", str),
            "PUBLISH_TIMEOUT_SECONDS": ("timeout_seconds", float),
        })
        if self.timeout_seconds <= 0:
            raise ConfigurationError(
                f"publish.timeout_seconds must be positive, got {self.timeout_seconds}"
            )
        self.adult_content_blocked_platforms = [
            p.lower() for p in self.adult_content_blocked_platforms
        ]


# ===========================================================================
# GENERATION CONFIGURATION
# ===========================================================================


@dataclass
class GenerationConfig:
    """Generation provider endpoint and pricing of preview runs."""

    api_base_url: str = "https://api.laozhang.ai/v1"
    api_key: str = ""
    timeout_seconds: float = 60.0
    default_image_size: str = "1024x1024"
    test_run_cost: int = 10
    # Public URL under which files saved to the media directory are served.
    media_base_url: str = ""

    def __post_init__(self) -> None:
        """Override values from environment variables."""
        _apply_env_overrides(self, {
            "GENERATION_API_BASE_URL": ("api_base_url", str),
            "GENERATION_API_KEY": ("api_key", str),
            "GENERATION_MEDIA_BASE_URL": ("media_base_url", str),
            "TEST_RUN_COST": ("test_run_cost", int),
        })
        if self.test_run_cost < 0:
            raise ConfigurationError(
                f"generation.test_run_cost cannot be negative, got {self.test_run_cost}"
            )


# ===========================================================================
# GLOBAL SETTINGS
# ===========================================================================


@dataclass
class Settings:
    """
    Global application settings.

    Loaded from ``config/settings.yaml`` when available, falling back to
    sensible defaults. Environment variables override YAML values for
    secrets and deployment-specific configuration.
    """

    # Timezone used for cron evaluation
    timezone: str = "UTC"

    # Logging
    log_level: str = "INFO"
    log_dir: str = "logs"

    dispatch: DispatchConfig = field(default_factory=DispatchConfig)
    publish: PublishConfig = field(default_factory=PublishConfig)
    generation: GenerationConfig = field(default_factory=GenerationConfig)

    @classmethod
    def from_yaml(cls, path: Optional[Path] = None) -> "Settings":
        """
        Load settings from a YAML file.

        If the file does not exist, returns an instance with all defaults.
        Environment variables override YAML values for specific keys.

        Args:
            path: Path to the YAML file. Defaults to
                ``<PROJECT_ROOT>/config/settings.yaml``.

        Returns:
            Populated Settings instance.

        Raises:
            ConfigurationError: If the YAML file exists but cannot be parsed
                or contains invalid values.
        """
        path = path or PROJECT_ROOT / "config" / "settings.yaml"

        data: Dict[str, Any] = {}
        if path.exists():
            try:
                with open(path, "r", encoding="utf-8") as fh:
                    data = yaml.safe_load(fh) or {}
            except yaml.YAMLError as exc:
                raise ConfigurationError(
                    f"Failed to parse settings YAML at {path}: {exc}"
                ) from exc

        if not isinstance(data, dict):
            raise ConfigurationError(
                f"Settings YAML at {path} must be a mapping, got {type(data).__name__}"
            )

        return cls(
            timezone=data.get("timezone", "UTC"),
            log_level=os.environ.get("LOG_LEVEL", data.get("log_level", "INFO")),
            log_dir=data.get("log_dir", "logs"),
            dispatch=_section(DispatchConfig, data.get("dispatch") or {}),
            publish=_section(PublishConfig, data.get("publish") or {}),
            generation=_section(GenerationConfig, data.get("generation") or {}),
        )


# ===========================================================================
# SINGLETON SETTINGS ACCESSOR
# ===========================================================================

_settings_instance: Optional[Settings] = None


def get_settings() -> Settings:
    """
    Get the global Settings singleton.

    On first call, loads from ``config/settings.yaml`` (or defaults).
    Subsequent calls return the cached instance.
    """
    global _settings_instance
    if _settings_instance is None:
        _settings_instance = Settings.from_yaml()
    return _settings_instance


def reset_settings() -> None:
    """Reset the cached Settings singleton (tests, config reloads)."""
    global _settings_instance
    _settings_instance = None


# ===========================================================================
# ENVIRONMENT VARIABLE VALIDATION
# ===========================================================================

# Required environment variables for the scheduler process
REQUIRED_ENV_VARS: List[str] = [
    "SUPABASE_URL",
    "SUPABASE_SERVICE_KEY",
    "GENERATION_API_KEY",
]

# Optional: publishing is skipped per post when the Late key is absent
OPTIONAL_ENV_VARS: List[str] = [
    "LATE_API_KEY",
    "LATE_API_BASE_URL",
    "GENERATION_API_BASE_URL",
    "GENERATION_MEDIA_BASE_URL",
]


def validate_env(strict: bool = True) -> Dict[str, bool]:
    """
    Validate that required environment variables are set.

    Args:
        strict: If ``True``, raise ``ConfigurationError`` when any required
            variable is missing. If ``False``, return the status dict
            without raising.

    Returns:
        Dict mapping variable name to presence status (``True`` if set).

    Raises:
        ConfigurationError: If ``strict=True`` and required vars are missing.
    """
    status: Dict[str, bool] = {}
    missing: List[str] = []

    for var in REQUIRED_ENV_VARS:
        present = bool(os.environ.get(var))
        status[var] = present
        if not present:
            missing.append(var)

    for var in OPTIONAL_ENV_VARS:
        status[var] = bool(os.environ.get(var))

    if strict and missing:
        raise ConfigurationError(
            f"Missing required environment variables: {missing}. "
            f"Set them in the environment or in a .env file."
        )

    return status


__all__ = [
    "PROJECT_ROOT",
    "DispatchConfig",
    "PublishConfig",
    "GenerationConfig",
    "Settings",
    "get_settings",
    "reset_settings",
    "validate_env",
    "REQUIRED_ENV_VARS",
    "OPTIONAL_ENV_VARS",
]
