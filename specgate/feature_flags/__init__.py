"""
Feature flags for specgate, backed by PostHog.

USAGE:
    from specgate.feature_flags import ToggleProvider, ToggleProviderConfig

    provider = ToggleProvider(ToggleProviderConfig.from_env())
    await provider.init(bootstrap=[{"name": "new-checkout", "enabled": False}])

    if provider.is_enabled("new-checkout"):
        do_new_thing()

    provider.destroy()

ENVIRONMENT VARIABLES:
    POSTHOG_API_KEY: Project API key (empty = offline, bootstrap data only)
    POSTHOG_PERSONAL_API_KEY: Enables local evaluation (optional but recommended)
    POSTHOG_HOST: PostHog host (default: https://us.i.posthog.com)
    POSTHOG_POLL_INTERVAL: Refresh interval in seconds (default: 15)
"""

from .client import (
    FeatureDescriptor,
    FlagClient,
    FlagFetchError,
    bootstrap_flags,
    decision_flags,
)
from .config import ToggleProviderConfig
from .provider import ProviderState, TogglesNotInitializedError, ToggleProvider

__all__ = [
    # Provider
    "ToggleProvider",
    "ToggleProviderConfig",
    "ProviderState",
    "TogglesNotInitializedError",
    # Client
    "FlagClient",
    "FlagFetchError",
    "FeatureDescriptor",
    "bootstrap_flags",
    "decision_flags",
]
