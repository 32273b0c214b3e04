"""
specgate - prune OpenAPI (and other JSON-like) documents by feature flag.

USAGE:
    from specgate import ToggleProvider, filter_document

    provider = ToggleProvider()
    await provider.init()
    public_spec = filter_document(openapi_spec, provider.is_enabled)
"""

from specgate.document_filter import FEATURE_TOGGLE_KEY, collect_toggles, filter_document
from specgate.feature_flags import (
    ProviderState,
    ToggleProvider,
    ToggleProviderConfig,
    TogglesNotInitializedError,
)

__all__ = [
    "FEATURE_TOGGLE_KEY",
    "filter_document",
    "collect_toggles",
    "ToggleProvider",
    "ToggleProviderConfig",
    "ProviderState",
    "TogglesNotInitializedError",
]
