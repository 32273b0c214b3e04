"""
Feature-toggle driven pruning of JSON-like documents.

USAGE:
    from specgate.document_filter import filter_document

    spec = {
        "paths": {
            "/users": {
                "post": {"x-feature-toggle": "user-signup", "summary": "..."},
            },
        },
    }

    # "post" disappears when the flag is off
    filtered = filter_document(spec, provider.is_enabled)

HOW IT WORKS:
    The document is walked depth-first. A mapping that carries the marker
    key (x-feature-toggle) is gated by the named feature:

        - Mapping entry whose value is gated and disabled: the whole entry
          (key included) is dropped without visiting its children.
        - Sequence element that is gated and disabled: the element is
          dropped without visiting its children.
        - Everything else is copied, recursing into mappings and sequences.

    Surviving gated nodes keep their marker key. Containers that end up
    empty after filtering are kept as {} / [].

    The input is never mutated; mappings and sequences in the output are
    new objects. Errors raised by is_enabled propagate to the caller.
"""

from __future__ import annotations

from collections.abc import Mapping
from typing import Any, Callable, Dict, List, Tuple, Union

from specgate.logger import logger


FEATURE_TOGGLE_KEY = "x-feature-toggle"

Scalar = Union[str, int, float, bool, None]
DocumentNode = Union[Scalar, List["DocumentNode"], Dict[str, "DocumentNode"]]

IsEnabled = Callable[[str], bool]

Path = Tuple[Union[str, int], ...]


def is_toggled(node: Any, toggle_key: str = FEATURE_TOGGLE_KEY) -> bool:
    """Return True when node is a mapping carrying the toggle marker."""
    return isinstance(node, Mapping) and toggle_key in node


def _is_sequence(node: Any) -> bool:
    return isinstance(node, (list, tuple))


def _pointer(path: Path) -> str:
    """Render a path as a JSON pointer (RFC 6901)."""
    parts = (str(p).replace("~", "~0").replace("/", "~1") for p in path)
    return "/" + "/".join(parts) if path else ""


def filter_document(
    node: DocumentNode,
    is_enabled: IsEnabled,
    *,
    toggle_key: str = FEATURE_TOGGLE_KEY,
) -> DocumentNode:
    """
    Return a copy of node without the subtrees whose feature is disabled.

    Args:
        node: A scalar, sequence (list/tuple) or mapping
        is_enabled: Synchronous feature lookup, e.g. ToggleProvider.is_enabled
        toggle_key: Marker key naming the feature that gates a mapping

    Returns:
        The pruned document. Mappings come back as dicts in input key order,
        sequences as lists. A marker on the root node itself is not evaluated.
    """
    return _filter_node(node, is_enabled, toggle_key, ())


def _filter_node(
    node: Any,
    is_enabled: IsEnabled,
    toggle_key: str,
    path: Path,
) -> Any:
    if isinstance(node, Mapping):
        return _filter_mapping(node, is_enabled, toggle_key, path)
    if _is_sequence(node):
        return _filter_sequence(node, is_enabled, toggle_key, path)
    return node


def _filter_mapping(
    node: Mapping,
    is_enabled: IsEnabled,
    toggle_key: str,
    path: Path,
) -> dict:
    filtered = {}
    for key, value in node.items():
        child_path = path + (key,)

        if isinstance(value, Mapping):
            if not _is_kept(value, is_enabled, toggle_key, child_path):
                continue
            filtered[key] = _filter_mapping(value, is_enabled, toggle_key, child_path)
        elif _is_sequence(value):
            filtered[key] = _filter_sequence(value, is_enabled, toggle_key, child_path)
        else:
            filtered[key] = value

    return filtered


def _filter_sequence(
    node: Any,
    is_enabled: IsEnabled,
    toggle_key: str,
    path: Path,
) -> list:
    filtered = []
    for index, element in enumerate(node):
        child_path = path + (index,)
        if not _is_kept(element, is_enabled, toggle_key, child_path):
            continue
        filtered.append(_filter_node(element, is_enabled, toggle_key, child_path))

    return filtered


def _is_kept(
    node: Any,
    is_enabled: IsEnabled,
    toggle_key: str,
    path: Path,
) -> bool:
    """Decide whether a mapping entry or sequence element survives."""
    if not is_toggled(node, toggle_key):
        return True

    feature = node[toggle_key]
    enabled = is_enabled(feature)

    logger.debug(
        "feature_toggle_evaluated",
        pointer=_pointer(path),
        feature=feature,
        enabled=enabled,
        pruned=not enabled,
    )

    return bool(enabled)


def collect_toggles(
    node: DocumentNode,
    *,
    toggle_key: str = FEATURE_TOGGLE_KEY,
) -> list[str]:
    """
    List the feature names referenced by markers anywhere in node.

    Names are returned once each, in depth-first order of first appearance.
    Nested markers under gated nodes are included, since they matter as soon
    as the outer feature is switched on. Non-string marker values are skipped.
    """
    seen: dict[str, None] = {}
    stack = [node]

    while stack:
        current = stack.pop()
        if isinstance(current, Mapping):
            feature = current.get(toggle_key)
            if isinstance(feature, str):
                seen.setdefault(feature, None)
            children = list(current.values())
        elif _is_sequence(current):
            children = list(current)
        else:
            continue
        stack.extend(reversed(children))

    return list(seen)
