"""Shared fixtures for specgate tests."""

from unittest.mock import MagicMock, patch

import pytest


@pytest.fixture
def mock_posthog():
    """Mock PostHog client for testing without real API calls."""
    with patch("specgate.feature_flags.client.Posthog") as mock:
        mock_instance = MagicMock()
        flags = {
            "flag1": True,
            "flag2": "variant-b",
            "flag3": False,
        }
        mock_instance.get_flags_decision.return_value = {"featureFlags": dict(flags)}
        mock_instance.get_all_flags.return_value = dict(flags)
        mock.return_value = mock_instance
        yield mock_instance


@pytest.fixture
def toggle_config():
    """Online config with a refresh interval long enough to never tick in a test."""
    from specgate.feature_flags import ToggleProviderConfig

    return ToggleProviderConfig(
        api_key="test-api-key",
        app_name="specgate-tests",
        instance_id="test-instance",
        refresh_interval=3600,
        environment="cicd",
    )


@pytest.fixture
def offline_config():
    """Config without an API key: bootstrap data is the only flag source."""
    from specgate.feature_flags import ToggleProviderConfig

    return ToggleProviderConfig(app_name="specgate-tests", environment="cicd")
