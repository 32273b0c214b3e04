"""
Toggle provider: lifecycle owner of the flag client and the synchronous
is_enabled() used while filtering documents.

USAGE:
    from specgate.feature_flags import ToggleProvider, ToggleProviderConfig

    provider = ToggleProvider(ToggleProviderConfig.from_env(app_name="billing-api"))
    await provider.init()

    provider.on_change(lambda: app.state.openapi_cache.clear())
    filtered = provider.sync_openapi_spec(openapi_spec)

    provider.destroy()

LIFECYCLE:
    UNINITIALIZED --init()--> READY --destroy()--> UNINITIALIZED

    init() while READY and destroy() while UNINITIALIZED are logged no-ops.
    is_enabled() and on_change() raise TogglesNotInitializedError unless READY.

CONCURRENCY:
    is_enabled() reads the client's cache, which the refresh thread replaces
    wholesale. Two reads of the same flag during one document pass can see
    different answers if a refresh lands in between. Finish filtering before
    calling destroy().

    destroy() does not interrupt an init() that is still fetching: the
    provider becomes READY once that init() returns, so await it before
    destroying. Cancelling init() leaves the provider UNINITIALIZED; the
    client it was starting is destroyed as soon as its first fetch ends.
"""

from __future__ import annotations

import asyncio
import enum
from typing import Any, Callable, Iterable

from specgate.document_filter import DocumentNode, filter_document
from specgate.feature_flags.client import (
    EVENT_CHANGED,
    EVENT_ERROR,
    EVENT_READY,
    EVENT_REGISTERED,
    EVENT_SYNCHRONIZED,
    FeatureDescriptor,
    FlagClient,
)
from specgate.feature_flags.config import ToggleProviderConfig
from specgate.logger import logger


class TogglesNotInitializedError(RuntimeError):
    """Flag state was queried or subscribed to before init() completed."""

    def __init__(self) -> None:
        super().__init__("Connection to feature toggle API server was not initialized yet")


class ProviderState(str, enum.Enum):
    UNINITIALIZED = "uninitialized"
    READY = "ready"


ChangeHandler = Callable[[], Any]


def _discard_client(client: FlagClient, start: asyncio.Future) -> None:
    if not start.cancelled() and start.exception() is not None:
        logger.warning("feature_toggles_start_failed", error=str(start.exception()))
    client.destroy()
    logger.info("feature_toggles_abandoned_client_closed")


class ToggleProvider:
    """
    Owns one FlagClient between init() and destroy().

    Args:
        config: Provider settings (default: ToggleProviderConfig.from_env())
        client_factory: Builds the flag client from the config
    """

    def __init__(
        self,
        config: ToggleProviderConfig | None = None,
        *,
        client_factory: Callable[[ToggleProviderConfig], FlagClient] = FlagClient,
    ) -> None:
        self._config = config if config is not None else ToggleProviderConfig.from_env()
        self._client_factory = client_factory
        self._client: FlagClient | None = None
        self._state = ProviderState.UNINITIALIZED
        self._change_handlers: list[ChangeHandler] = []
        self._init_lock = asyncio.Lock()

    @property
    def state(self) -> ProviderState:
        return self._state

    @property
    def is_ready(self) -> bool:
        return self._state is ProviderState.READY

    # -------------------------------------------------------------------------
    # Lifecycle
    # -------------------------------------------------------------------------

    async def init(self, bootstrap: Iterable[FeatureDescriptor] | None = None) -> None:
        """
        Connect to the flag backend and load the first flag state.

        Args:
            bootstrap: Feature descriptors ({"name": ..., "enabled": ...})
                served until the first fetch completes
        """
        logger.info(
            "feature_toggles_initializing",
            app_name=self._config.app_name,
            host=self._config.host,
        )

        async with self._init_lock:
            if self._state is ProviderState.READY:
                logger.warning("feature_toggles_already_initialized")
                return

            client = self._client_factory(self._config)
            self._subscribe(client)

            # start() keeps running in its thread if init() is cancelled
            start = asyncio.ensure_future(asyncio.to_thread(client.start, bootstrap))
            try:
                await asyncio.shield(start)
            except asyncio.CancelledError:
                logger.warning("feature_toggles_init_cancelled")
                start.add_done_callback(lambda _: _discard_client(client, start))
                raise
            except Exception:
                client.destroy()
                raise

            self._client = client
            self._state = ProviderState.READY

        logger.info("feature_toggles_initialized", offline=client.offline)

    def destroy(self) -> None:
        """Close the connection and forget flag state and change handlers."""
        logger.info("feature_toggles_closing")

        if self._state is ProviderState.UNINITIALIZED:
            if self._init_lock.locked():
                logger.warning("feature_toggles_init_in_progress")
            else:
                logger.info("feature_toggles_never_connected")
            return

        client = self._client
        self._client = None
        self._state = ProviderState.UNINITIALIZED
        self._change_handlers = []

        client.destroy()
        logger.info("feature_toggles_closed")

    def _subscribe(self, client: FlagClient) -> None:
        client.on(EVENT_READY, lambda: logger.debug("feature_toggles_ready"))
        client.on(EVENT_SYNCHRONIZED, lambda: logger.debug("feature_toggles_synchronized"))
        client.on(EVENT_REGISTERED, lambda: logger.info("feature_toggles_registered"))
        client.on(EVENT_ERROR, self._on_client_error)
        client.on(EVENT_CHANGED, self._on_flags_changed)

    def _on_client_error(self, error: Exception) -> None:
        logger.error(
            "feature_toggles_fetch_error",
            error=str(error),
            error_type=type(error).__name__,
        )

    def _on_flags_changed(self, flags: dict[str, bool]) -> None:
        logger.debug("feature_toggles_changed", flags=flags)

        for handler in list(self._change_handlers):
            logger.info("feature_toggle_change_handler_invoked")
            try:
                handler()
            except Exception:
                logger.exception("feature_toggle_change_handler_failed")

    # -------------------------------------------------------------------------
    # Queries
    # -------------------------------------------------------------------------

    def _require_client(self) -> FlagClient:
        client = self._client
        if self._state is not ProviderState.READY or client is None:
            raise TogglesNotInitializedError()
        return client

    def is_enabled(self, feature: str) -> bool:
        """
        Check a feature against the cached flag state.

        Unknown features (and non-string names) are disabled.

        Raises:
            TogglesNotInitializedError: If init() has not completed
        """
        client = self._require_client()
        enabled = client.is_enabled(feature)
        logger.debug("feature_toggle_checked", feature=feature, enabled=enabled)
        return enabled

    def on_change(self, handler: ChangeHandler) -> None:
        """
        Call handler (without arguments) after every refresh that changes
        the flag state. Registering the same handler twice has no effect.

        Raises:
            TogglesNotInitializedError: If init() has not completed
        """
        self._require_client()
        if handler not in self._change_handlers:
            self._change_handlers.append(handler)

    def sync_openapi_spec(self, spec: DocumentNode) -> DocumentNode:
        """Return spec with every operation and schema of a disabled feature removed."""
        logger.info("openapi_spec_toggles_applying")
        filtered = filter_document(spec, self.is_enabled)
        logger.debug("openapi_spec_filtered", spec=filtered)
        return filtered
