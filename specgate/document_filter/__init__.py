"""
Document filter - prune JSON-like documents by feature toggle.

USAGE:
    from specgate.document_filter import filter_document

    filtered = filter_document(openapi_spec, provider.is_enabled)
"""

from .filter import (
    FEATURE_TOGGLE_KEY,
    DocumentNode,
    IsEnabled,
    collect_toggles,
    filter_document,
    is_toggled,
)

__all__ = [
    "FEATURE_TOGGLE_KEY",
    "DocumentNode",
    "IsEnabled",
    "filter_document",
    "collect_toggles",
    "is_toggled",
]
