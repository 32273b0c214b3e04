"""
PostHog-backed feature flag client with a local, synchronously readable cache.

USAGE:
    from specgate.feature_flags.client import FlagClient
    from specgate.feature_flags.config import ToggleProviderConfig

    client = FlagClient(ToggleProviderConfig.from_env())
    client.on("changed", lambda flags: print("new flag state", flags))
    client.start(bootstrap=[{"name": "new-checkout", "enabled": True}])

    if client.is_enabled("new-checkout"):
        do_new_thing()

    client.destroy()

HOW IT WORKS:
    1. Optional bootstrap data seeds the cache before any network call
    2. start() fetches every flag for the configured distinct ID once
    3. A daemon thread re-fetches every refresh_interval seconds
    4. Refreshes that change the flag state replace the cache and emit
       "changed"; failed refreshes emit "error" and keep the last state
    5. is_enabled() only ever reads the cache

EVENTS (register with on()):
    ready         cache holds state for the first time (bootstrap or fetch)
    synchronized  first successful fetch from PostHog
    changed       fetched state differs from the cache; receives the new state
    registered    registration event captured in PostHog
    error         fetch or registration failed; receives the exception
"""

from __future__ import annotations

import threading
from collections.abc import Mapping
from typing import Any, Callable, Iterable, TypedDict

from posthog import Posthog

from specgate.feature_flags.config import ToggleProviderConfig
from specgate.logger import logger


# =============================================================================
# STEP 1: EVENTS AND BOOTSTRAP DATA
# =============================================================================

EVENT_READY = "ready"
EVENT_ERROR = "error"
EVENT_CHANGED = "changed"
EVENT_REGISTERED = "registered"
EVENT_SYNCHRONIZED = "synchronized"

EVENTS = (
    EVENT_READY,
    EVENT_ERROR,
    EVENT_CHANGED,
    EVENT_REGISTERED,
    EVENT_SYNCHRONIZED,
)

REGISTRATION_EVENT = "feature_toggle_client_registered"


class _RequiredFeatureFields(TypedDict):
    name: str
    enabled: bool


class FeatureDescriptor(_RequiredFeatureFields, total=False):
    """One entry of bootstrap data. Only name and enabled are read."""

    description: str
    project: str
    stale: bool
    type: str
    variants: list[Any]
    strategies: list[Any]
    impression_data: bool


class FlagFetchError(RuntimeError):
    """PostHog did not return any flag state."""


def bootstrap_flags(bootstrap: Iterable[FeatureDescriptor] | None) -> dict[str, bool]:
    """
    Turn bootstrap descriptors into a flag state mapping.

    Later descriptors win when a name appears twice.
    """
    if not bootstrap:
        return {}
    return {feature["name"]: bool(feature["enabled"]) for feature in bootstrap}


def _flag_enabled(value: Any) -> bool:
    if isinstance(value, Mapping):
        return bool(value.get("enabled"))
    return bool(getattr(value, "enabled", value))


def decision_flags(decision: Mapping[str, Any] | None) -> dict[str, bool]:
    """
    Turn a PostHog flags decision into a flag state mapping.

    Accepts both the legacy {"featureFlags": {key: value}} shape and the
    {"flags": {key: FeatureFlag}} shape. A partial or quota-limited answer
    is a failure, so the last known state stays in place.

    Raises:
        FlagFetchError: If the decision carries no usable flag state
    """
    if not decision:
        raise FlagFetchError("PostHog returned no feature flag state")

    if "feature_flags" in (decision.get("quotaLimited") or ()):
        raise FlagFetchError("PostHog feature flag quota exceeded")

    if decision.get("errorsWhileComputingFlags"):
        raise FlagFetchError("PostHog reported errors while computing flags")

    legacy_flags = decision.get("featureFlags")
    if legacy_flags is not None:
        return {str(key): bool(value) for key, value in legacy_flags.items()}

    flags = decision.get("flags")
    if flags is None:
        raise FlagFetchError("PostHog returned no feature flag state")

    return {str(key): _flag_enabled(value) for key, value in flags.items()}


# =============================================================================
# STEP 2: FLAG CLIENT
# =============================================================================


class FlagClient:
    """
    Connection to PostHog plus the cached flag state read by is_enabled().

    OFFLINE MODE:
        Without an API key no PostHog client is created. The cache serves
        the bootstrap data (or nothing) and no refresh thread runs.

    THREAD SAFETY:
        The cache is a dict that is replaced, never mutated, so reads from
        any thread see either the old or the new state. Refreshes are
        serialized by a lock.
    """

    def __init__(self, config: ToggleProviderConfig) -> None:
        self._config = config
        self._client: Posthog | None = None
        self._flags: dict[str, bool] = {}

        self._listeners: dict[str, list[Callable[..., Any]]] = {
            event: [] for event in EVENTS
        }

        self._refresh_lock = threading.Lock()
        self._stop_refresh = threading.Event()
        self._refresh_thread: threading.Thread | None = None

        self._ready = False
        self._synchronized = False

    @property
    def offline(self) -> bool:
        return self._client is None

    # -------------------------------------------------------------------------
    # Events
    # -------------------------------------------------------------------------

    def on(self, event: str, callback: Callable[..., Any]) -> None:
        """
        Register a callback for one of the client events.

        Raises:
            ValueError: If event is not one of EVENTS
        """
        if event not in self._listeners:
            raise ValueError(f"Unknown feature flag client event: {event!r}")
        self._listeners[event].append(callback)

    def _emit(self, event: str, *args: Any) -> None:
        for callback in list(self._listeners[event]):
            try:
                callback(*args)
            except Exception:
                logger.exception("feature_flag_listener_failed", flag_event=event)

    def _mark_ready(self) -> None:
        if not self._ready:
            self._ready = True
            self._emit(EVENT_READY)

    # -------------------------------------------------------------------------
    # Lifecycle
    # -------------------------------------------------------------------------

    def start(self, bootstrap: Iterable[FeatureDescriptor] | None = None) -> None:
        """
        Seed the cache, connect to PostHog and start the refresh thread.

        Blocks for the first fetch. Fetch and registration failures are
        emitted as "error" events, not raised.
        """
        if bootstrap:
            self._flags = bootstrap_flags(bootstrap)
            logger.debug("feature_flags_bootstrapped", flags=len(self._flags))
            self._mark_ready()

        if not self._config.api_key:
            logger.warning(
                "posthog_api_key_missing",
                detail="serving bootstrap flag state only",
            )
            self._mark_ready()
            return

        self._client = Posthog(
            project_api_key=self._config.api_key,
            host=self._config.host,
            personal_api_key=self._config.personal_api_key or None,
            poll_interval=max(1, int(self._config.refresh_interval)),
        )

        logger.debug(
            "posthog_client_created",
            host=self._config.host,
            refresh_interval=self._config.refresh_interval,
            local_evaluation=self._config.local_evaluation,
        )

        self.refresh()

        if not self._config.disable_metrics:
            self._register()

        self._stop_refresh.clear()
        self._refresh_thread = threading.Thread(
            target=self._refresh_loop,
            daemon=True,
            name="feature-flag-refresher",
        )
        self._refresh_thread.start()

    def destroy(self) -> None:
        """Stop refreshing, shut down PostHog and drop the cached state."""
        self._stop_refresh.set()

        thread = self._refresh_thread
        if thread is not None and thread is not threading.current_thread():
            thread.join(timeout=5.0)
        self._refresh_thread = None

        if self._client is not None:
            try:
                self._client.shutdown()
            except Exception as error:
                logger.warning("posthog_shutdown_failed", error=str(error))
            self._client = None

        self._flags = {}
        self._ready = False
        self._synchronized = False
        for callbacks in self._listeners.values():
            callbacks.clear()

    # -------------------------------------------------------------------------
    # Flag state
    # -------------------------------------------------------------------------

    def is_enabled(self, name: str) -> bool:
        """Read a flag from the cache. Unknown or non-string names are off."""
        if not isinstance(name, str):
            return False
        return self._flags.get(name, False)

    def snapshot(self) -> dict[str, bool]:
        """Return a copy of the cached flag state."""
        return dict(self._flags)

    def refresh(self) -> bool:
        """
        Fetch the flag state once and swap it into the cache.

        Returns:
            True if the cached state changed, False otherwise (including
            failed fetches and offline mode)
        """
        if self._client is None:
            return False

        with self._refresh_lock:
            try:
                fetched = self._fetch()
            except Exception as error:
                self._emit(EVENT_ERROR, error)
                return False

            changed = fetched != self._flags
            self._flags = fetched

            self._mark_ready()
            if not self._synchronized:
                self._synchronized = True
                self._emit(EVENT_SYNCHRONIZED)

            if changed:
                self._emit(EVENT_CHANGED, dict(fetched))

            return changed

    def _fetch(self) -> dict[str, bool]:
        """
        Fetch the current flag state from PostHog.

        get_all_flags() logs and swallows transport errors, returning {}.
        Remote mode therefore asks the flags endpoint directly so errors
        reach refresh(); local mode checks that definitions were loaded.

        Raises:
            FlagFetchError: If PostHog could not provide a flag state
        """
        if self._config.local_evaluation:
            return self._fetch_local()
        return self._fetch_remote()

    def _fetch_local(self) -> dict[str, bool]:
        if self._client.feature_flags is None:
            self._client.load_feature_flags()
        if self._client.feature_flags is None:
            raise FlagFetchError("PostHog feature flag definitions could not be loaded")

        flags = self._client.get_all_flags(
            self._config.resolved_distinct_id,
            person_properties=self._config.merged_person_properties(),
            only_evaluate_locally=True,
        )
        if flags is None:
            raise FlagFetchError("PostHog returned no feature flag state")

        # Multivariate flags return the variant key, which counts as enabled
        return {str(key): bool(value) for key, value in flags.items()}

    def _fetch_remote(self) -> dict[str, bool]:
        decision = self._client.get_flags_decision(
            self._config.resolved_distinct_id,
            person_properties=self._config.merged_person_properties(),
        )
        return decision_flags(decision)

    def _refresh_loop(self) -> None:
        while not self._stop_refresh.wait(self._config.refresh_interval):
            self.refresh()

    def _register(self) -> None:
        try:
            self._client.capture(
                event=REGISTRATION_EVENT,
                distinct_id=self._config.resolved_distinct_id,
                properties={
                    "app_name": self._config.app_name,
                    "instance_id": self._config.resolved_instance_id,
                    "service_env": self._config.environment,
                    "refresh_interval": self._config.refresh_interval,
                },
            )
        except Exception as error:
            self._emit(EVENT_ERROR, error)
            return

        self._emit(EVENT_REGISTERED)
