"""
Tests for specgate.feature_flags.client.

Run with:
    pytest tests/test_flag_client.py -v
"""

import threading
from dataclasses import replace
from unittest.mock import patch

import pytest

from specgate.feature_flags.client import (
    EVENT_CHANGED,
    EVENT_ERROR,
    EVENT_READY,
    EVENT_REGISTERED,
    EVENT_SYNCHRONIZED,
    REGISTRATION_EVENT,
    FlagClient,
    FlagFetchError,
    bootstrap_flags,
    decision_flags,
)


BOOTSTRAP = [
    {"name": "flag1", "enabled": False, "description": "seeded"},
    {"name": "seeded-only", "enabled": True},
]


def record_events(client):
    """Attach a recorder to every client event."""
    events = []
    for event in (EVENT_READY, EVENT_SYNCHRONIZED, EVENT_REGISTERED, EVENT_CHANGED, EVENT_ERROR):
        client.on(event, lambda *args, _event=event: events.append((_event, args)))
    return events


# =============================================================================
# TESTS: BOOTSTRAP / OFFLINE MODE
# =============================================================================


class TestBootstrap:
    """Test bootstrap seeding and offline operation."""

    def test_bootstrap_flags_mapping(self):
        assert bootstrap_flags(BOOTSTRAP) == {"flag1": False, "seeded-only": True}

    def test_bootstrap_flags_empty(self):
        assert bootstrap_flags(None) == {}
        assert bootstrap_flags([]) == {}

    def test_offline_client_serves_bootstrap(self, offline_config):
        with patch("specgate.feature_flags.client.Posthog") as posthog_cls:
            client = FlagClient(offline_config)
            client.start(bootstrap=BOOTSTRAP)

            assert client.offline is True
            assert client.is_enabled("seeded-only") is True
            assert client.is_enabled("flag1") is False
            posthog_cls.assert_not_called()

            client.destroy()

    def test_offline_client_is_ready_without_bootstrap(self, offline_config):
        client = FlagClient(offline_config)
        events = record_events(client)

        client.start()

        assert events == [(EVENT_READY, ())]
        assert client.snapshot() == {}
        assert client.refresh() is False

        client.destroy()


# =============================================================================
# TESTS: FETCHING
# =============================================================================


class TestFetching:
    """Test flag state fetched from PostHog."""

    def test_start_creates_posthog_client(self, toggle_config, mock_posthog):
        with patch("specgate.feature_flags.client.Posthog") as posthog_cls:
            posthog_cls.return_value = mock_posthog
            client = FlagClient(toggle_config)
            client.start()

            posthog_cls.assert_called_once_with(
                project_api_key="test-api-key",
                host="https://us.i.posthog.com",
                personal_api_key=None,
                poll_interval=3600,
            )
            client.destroy()

    def test_start_fetches_flags(self, toggle_config, mock_posthog):
        client = FlagClient(toggle_config)
        client.start()

        assert client.is_enabled("flag1") is True
        assert client.is_enabled("flag3") is False
        mock_posthog.get_flags_decision.assert_called_once_with(
            "specgate-tests",
            person_properties={"service_env": "cicd"},
        )
        mock_posthog.get_all_flags.assert_not_called()

        client.destroy()

    def test_multivariate_flag_counts_as_enabled(self, toggle_config, mock_posthog):
        client = FlagClient(toggle_config)
        client.start()

        assert client.is_enabled("flag2") is True

        client.destroy()

    def test_unknown_and_non_string_names_disabled(self, toggle_config, mock_posthog):
        client = FlagClient(toggle_config)
        client.start()

        assert client.is_enabled("does-not-exist") is False
        assert client.is_enabled(None) is False
        assert client.is_enabled(["flag1"]) is False

        client.destroy()

    def test_fetched_state_replaces_bootstrap(self, toggle_config, mock_posthog):
        client = FlagClient(toggle_config)
        client.start(bootstrap=BOOTSTRAP)

        assert client.is_enabled("flag1") is True
        assert client.is_enabled("seeded-only") is False

        client.destroy()

    def test_local_evaluation_with_personal_key(self, toggle_config, mock_posthog):
        config = replace(toggle_config, personal_api_key="phx_personal")
        client = FlagClient(config)
        client.start()

        _, kwargs = mock_posthog.get_all_flags.call_args
        assert kwargs["only_evaluate_locally"] is True
        mock_posthog.get_flags_decision.assert_not_called()

        client.destroy()

    def test_person_properties_merged(self, toggle_config, mock_posthog):
        config = replace(toggle_config, person_properties={"plan": "premium"})
        client = FlagClient(config)
        client.start()

        _, kwargs = mock_posthog.get_flags_decision.call_args
        assert kwargs["person_properties"] == {"service_env": "cicd", "plan": "premium"}

        client.destroy()


# =============================================================================
# TESTS: EVENTS
# =============================================================================


class TestEvents:
    """Test lifecycle and change events."""

    def test_start_event_order(self, toggle_config, mock_posthog):
        client = FlagClient(toggle_config)
        events = record_events(client)

        client.start()

        assert [name for name, _ in events] == [
            EVENT_READY,
            EVENT_SYNCHRONIZED,
            EVENT_CHANGED,
            EVENT_REGISTERED,
        ]
        client.destroy()

    def test_ready_emitted_once_with_bootstrap(self, toggle_config, mock_posthog):
        client = FlagClient(toggle_config)
        events = record_events(client)

        client.start(bootstrap=BOOTSTRAP)
        client.refresh()

        assert [name for name, _ in events].count(EVENT_READY) == 1
        client.destroy()

    def test_changed_only_when_state_differs(self, toggle_config, mock_posthog):
        client = FlagClient(toggle_config)
        client.start()
        events = record_events(client)

        assert client.refresh() is False
        assert events == []

        mock_posthog.get_flags_decision.return_value = {"featureFlags": {"flag1": False}}
        assert client.refresh() is True
        assert events == [(EVENT_CHANGED, ({"flag1": False},))]
        assert client.is_enabled("flag1") is False

        client.destroy()

    def test_synchronized_emitted_once(self, toggle_config, mock_posthog):
        client = FlagClient(toggle_config)
        events = record_events(client)

        client.start()
        mock_posthog.get_flags_decision.return_value = {"featureFlags": {"flag1": False}}
        client.refresh()

        assert [name for name, _ in events].count(EVENT_SYNCHRONIZED) == 1
        client.destroy()

    def test_unknown_event_rejected(self, toggle_config):
        client = FlagClient(toggle_config)

        with pytest.raises(ValueError):
            client.on("exploded", lambda: None)

    def test_failing_listener_does_not_stop_others(self, toggle_config, mock_posthog):
        client = FlagClient(toggle_config)
        calls = []

        def broken(flags):
            raise RuntimeError("listener bug")

        client.on(EVENT_CHANGED, broken)
        client.on(EVENT_CHANGED, lambda flags: calls.append(flags))

        client.start()

        assert len(calls) == 1
        client.destroy()


# =============================================================================
# TESTS: ERROR HANDLING
# =============================================================================


class TestErrorHandling:
    """Backend failures are reported, never raised, and keep the last state."""

    def test_fetch_exception_emits_error_and_keeps_bootstrap(self, toggle_config, mock_posthog):
        mock_posthog.get_flags_decision.side_effect = ConnectionError("PostHog unreachable")
        client = FlagClient(toggle_config)
        errors = []
        client.on(EVENT_ERROR, errors.append)

        client.start(bootstrap=BOOTSTRAP)

        assert len(errors) == 1
        assert isinstance(errors[0], ConnectionError)
        assert client.is_enabled("seeded-only") is True

        client.destroy()

    def test_none_result_is_fetch_error(self, toggle_config, mock_posthog):
        client = FlagClient(toggle_config)
        client.start()
        errors = []
        client.on(EVENT_ERROR, errors.append)

        mock_posthog.get_flags_decision.return_value = None
        assert client.refresh() is False

        assert isinstance(errors[0], FlagFetchError)
        assert client.is_enabled("flag1") is True

        client.destroy()

    def test_empty_decision_keeps_bootstrap(self, toggle_config, mock_posthog):
        # PostHog's flag helpers answer {} when the API is unreachable
        mock_posthog.get_flags_decision.return_value = {}
        mock_posthog.get_all_flags.return_value = {}
        client = FlagClient(toggle_config)
        events = record_events(client)

        client.start(bootstrap=BOOTSTRAP)

        errors = [args[0] for name, args in events if name == EVENT_ERROR]
        assert len(errors) == 1
        assert isinstance(errors[0], FlagFetchError)
        assert EVENT_CHANGED not in [name for name, _ in events]
        assert EVENT_SYNCHRONIZED not in [name for name, _ in events]
        assert client.is_enabled("seeded-only") is True

        client.destroy()

    def test_empty_decision_after_fetch_keeps_cache(self, toggle_config, mock_posthog):
        client = FlagClient(toggle_config)
        client.start()
        errors = []
        client.on(EVENT_ERROR, errors.append)

        mock_posthog.get_flags_decision.return_value = {}
        assert client.refresh() is False

        assert isinstance(errors[0], FlagFetchError)
        assert client.is_enabled("flag1") is True

        client.destroy()

    @pytest.mark.parametrize(
        "decision",
        [
            {"featureFlags": {}, "errorsWhileComputingFlags": True},
            {"featureFlags": {}, "quotaLimited": ["feature_flags"]},
        ],
    )
    def test_degraded_decision_keeps_cache(self, toggle_config, mock_posthog, decision):
        client = FlagClient(toggle_config)
        client.start()
        errors = []
        client.on(EVENT_ERROR, errors.append)

        mock_posthog.get_flags_decision.return_value = decision
        assert client.refresh() is False

        assert isinstance(errors[0], FlagFetchError)
        assert client.snapshot() == {"flag1": True, "flag2": True, "flag3": False}

        client.destroy()

    def test_local_definitions_unavailable_keeps_bootstrap(self, toggle_config, mock_posthog):
        mock_posthog.feature_flags = None
        mock_posthog.get_all_flags.return_value = {}
        client = FlagClient(replace(toggle_config, personal_api_key="phx_personal"))
        errors = []
        client.on(EVENT_ERROR, errors.append)

        client.start(bootstrap=BOOTSTRAP)

        mock_posthog.load_feature_flags.assert_called_once_with()
        mock_posthog.get_all_flags.assert_not_called()
        assert isinstance(errors[0], FlagFetchError)
        assert client.is_enabled("seeded-only") is True

        client.destroy()

    def test_fetch_recovers_after_outage(self, toggle_config, mock_posthog):
        mock_posthog.get_flags_decision.return_value = {}
        client = FlagClient(toggle_config)
        events = record_events(client)
        client.start(bootstrap=BOOTSTRAP)

        mock_posthog.get_flags_decision.return_value = {"featureFlags": {"flag1": True}}
        assert client.refresh() is True

        assert EVENT_SYNCHRONIZED in [name for name, _ in events]
        assert client.snapshot() == {"flag1": True}

        client.destroy()

    def test_registration_failure_emits_error(self, toggle_config, mock_posthog):
        mock_posthog.capture.side_effect = RuntimeError("queue full")
        client = FlagClient(toggle_config)
        events = record_events(client)

        client.start()

        names = [name for name, _ in events]
        assert EVENT_ERROR in names
        assert EVENT_REGISTERED not in names
        client.destroy()


# =============================================================================
# TESTS: REGISTRATION
# =============================================================================


class TestRegistration:
    """Test the registration event sent to PostHog."""

    def test_registration_captured(self, toggle_config, mock_posthog):
        client = FlagClient(toggle_config)
        client.start()

        mock_posthog.capture.assert_called_once_with(
            event=REGISTRATION_EVENT,
            distinct_id="specgate-tests",
            properties={
                "app_name": "specgate-tests",
                "instance_id": "test-instance",
                "service_env": "cicd",
                "refresh_interval": 3600,
            },
        )
        client.destroy()

    def test_registration_skipped_when_metrics_disabled(self, toggle_config, mock_posthog):
        client = FlagClient(replace(toggle_config, disable_metrics=True))
        events = record_events(client)

        client.start()

        mock_posthog.capture.assert_not_called()
        assert EVENT_REGISTERED not in [name for name, _ in events]
        client.destroy()


# =============================================================================
# TESTS: BACKGROUND REFRESH AND TEARDOWN
# =============================================================================


class TestBackgroundRefresh:
    """Test the refresh thread and destroy()."""

    def test_refresh_thread_picks_up_changes(self, toggle_config, mock_posthog):
        client = FlagClient(replace(toggle_config, refresh_interval=0.05))
        client.start()

        changed = threading.Event()
        client.on(EVENT_CHANGED, lambda flags: changed.set())
        mock_posthog.get_flags_decision.return_value = {"featureFlags": {"flag1": False, "late-flag": True}}

        assert changed.wait(timeout=2.0)
        assert client.is_enabled("late-flag") is True

        client.destroy()

    def test_destroy_stops_thread_and_clears_state(self, toggle_config, mock_posthog):
        client = FlagClient(replace(toggle_config, refresh_interval=0.05))
        client.start()
        thread = client._refresh_thread

        client.destroy()

        assert not thread.is_alive()
        assert client._refresh_thread is None
        assert client.snapshot() == {}
        assert client.offline is True
        mock_posthog.shutdown.assert_called_once()

    def test_destroy_survives_shutdown_error(self, toggle_config, mock_posthog):
        mock_posthog.shutdown.side_effect = RuntimeError("flush failed")
        client = FlagClient(toggle_config)
        client.start()

        client.destroy()

        assert client.offline is True

    def test_concurrent_reads_during_refresh(self, toggle_config, mock_posthog):
        client = FlagClient(toggle_config)
        client.start()
        errors = []

        def read_flags():
            try:
                for _ in range(200):
                    client.is_enabled("flag1")
            except Exception as e:
                errors.append(e)

        readers = [threading.Thread(target=read_flags) for _ in range(5)]
        for t in readers:
            t.start()
        for value in (False, True, False):
            mock_posthog.get_flags_decision.return_value = {"featureFlags": {"flag1": value}}
            client.refresh()
        for t in readers:
            t.join()

        assert errors == []
        client.destroy()


# =============================================================================
# TESTS: FLAGS DECISION SHAPES
# =============================================================================


class TestDecisionFlags:
    """Test decision_flags() against PostHog response shapes."""

    def test_legacy_feature_flags_shape(self):
        decision = {"featureFlags": {"on": True, "off": False, "variant": "control"}}

        assert decision_flags(decision) == {"on": True, "off": False, "variant": True}

    def test_flags_shape_with_objects(self):
        class FeatureFlag:
            def __init__(self, enabled):
                self.enabled = enabled

        decision = {"flags": {"on": FeatureFlag(True), "off": FeatureFlag(False)}}

        assert decision_flags(decision) == {"on": True, "off": False}

    def test_flags_shape_with_dicts(self):
        decision = {"flags": {"on": {"key": "on", "enabled": True}, "off": {"key": "off"}}}

        assert decision_flags(decision) == {"on": True, "off": False}

    def test_explicit_empty_state_accepted(self):
        assert decision_flags({"featureFlags": {}}) == {}
        assert decision_flags({"flags": {}}) == {}

    @pytest.mark.parametrize("decision", [None, {}, {"requestId": "abc"}])
    def test_missing_state_rejected(self, decision):
        with pytest.raises(FlagFetchError):
            decision_flags(decision)

    def test_quota_limit_on_other_product_ignored(self):
        decision = {"featureFlags": {"on": True}, "quotaLimited": ["recordings"]}

        assert decision_flags(decision) == {"on": True}
