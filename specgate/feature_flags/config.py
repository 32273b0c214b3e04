"""
Feature toggle provider configuration.

ENVIRONMENT VARIABLES:
    POSTHOG_API_KEY: Project API key (empty = offline, bootstrap data only)
    POSTHOG_PERSONAL_API_KEY: Enables local evaluation (optional but recommended)
    POSTHOG_HOST: PostHog host (default: https://us.i.posthog.com)
    POSTHOG_POLL_INTERVAL: Refresh interval in seconds (default: 15)
    POSTHOG_DISTINCT_ID: Identity flags are evaluated for (default: app name)
    SERVICE_NAME: Application name reported to PostHog
    INSTANCE_ID: Identity of this process (default: hostname)
    ENVIRONMENT / DD_ENV: Environment passed as the service_env property
    FEATURE_TOGGLE_DISABLE_METRICS: "true" skips the registration event
"""

from __future__ import annotations

import os
import socket
from dataclasses import dataclass, field, replace
from typing import Any


# =============================================================================
# CONFIGURATION FROM ENVIRONMENT
# =============================================================================

POSTHOG_API_KEY = os.getenv("POSTHOG_API_KEY", "")
POSTHOG_PERSONAL_API_KEY = os.getenv("POSTHOG_PERSONAL_API_KEY", "")
POSTHOG_HOST = os.getenv("POSTHOG_HOST", "https://us.i.posthog.com")
POSTHOG_POLL_INTERVAL = float(os.getenv("POSTHOG_POLL_INTERVAL", "15"))

SERVICE_NAME = os.getenv("SERVICE_NAME", "unknown-service")


def _get_service_env() -> str:
    """Get service environment from ENVIRONMENT or DD_ENV, default to 'unknown'."""
    return os.getenv("ENVIRONMENT") or os.getenv("DD_ENV") or "unknown"


def _env_flag(name: str) -> bool:
    return os.getenv(name, "").strip().lower() in ("1", "true", "yes", "on")


# =============================================================================
# PROVIDER CONFIG
# =============================================================================


@dataclass(frozen=True)
class ToggleProviderConfig:
    """
    Settings for a ToggleProvider and the PostHog client behind it.

    USAGE:
        config = ToggleProviderConfig.from_env(app_name="billing-api")
        provider = ToggleProvider(config)
    """

    api_key: str = ""
    host: str = "https://us.i.posthog.com"
    personal_api_key: str = ""
    app_name: str = "unknown-service"
    distinct_id: str | None = None
    instance_id: str | None = None
    refresh_interval: float = 15.0
    disable_metrics: bool = False
    environment: str = "unknown"
    person_properties: dict[str, Any] = field(default_factory=dict)

    def __post_init__(self) -> None:
        if self.refresh_interval <= 0:
            raise ValueError(
                f"refresh_interval must be positive, got {self.refresh_interval!r}"
            )

    @classmethod
    def from_env(cls, **overrides: Any) -> ToggleProviderConfig:
        """Build a config from environment variables, then apply overrides."""
        config = cls(
            api_key=POSTHOG_API_KEY,
            host=POSTHOG_HOST,
            personal_api_key=POSTHOG_PERSONAL_API_KEY,
            app_name=SERVICE_NAME,
            distinct_id=os.getenv("POSTHOG_DISTINCT_ID") or None,
            instance_id=os.getenv("INSTANCE_ID") or None,
            refresh_interval=POSTHOG_POLL_INTERVAL,
            disable_metrics=_env_flag("FEATURE_TOGGLE_DISABLE_METRICS"),
            environment=_get_service_env(),
        )
        return replace(config, **overrides) if overrides else config

    @property
    def resolved_distinct_id(self) -> str:
        return self.distinct_id or self.app_name

    @property
    def resolved_instance_id(self) -> str:
        return self.instance_id or socket.gethostname()

    @property
    def local_evaluation(self) -> bool:
        return bool(self.personal_api_key)

    def merged_person_properties(self) -> dict[str, Any]:
        """Merge configured person properties with the default service_env."""
        merged = {"service_env": self.environment}
        merged.update(self.person_properties)
        return merged
