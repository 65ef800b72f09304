"""Hop-by-hop header filtering.

Applied to the client request before it is forwarded upstream and to the
upstream response before it is returned to the client.
"""

from __future__ import annotations

from collections.abc import Iterable, Mapping
from typing import Any

HOP_BY_HOP_HEADERS = frozenset(
    {
        "connection",
        "keep-alive",
        "proxy-authenticate",
        "proxy-authorization",
        "te",
        "trailer",
        "transfer-encoding",
        "upgrade",
        "proxy-connection",
    }
)


def is_hop_by_hop(name: str) -> bool:
    return name.lower() in HOP_BY_HOP_HEADERS


def filter_headers(headers: Mapping[str, Any]) -> dict[str, Any]:
    """Return a copy of ``headers`` without hop-by-hop entries.

    Values are copied as-is, so a mapping of name to list of values keeps
    its lists. The input is never mutated.
    """
    return {name: value for name, value in headers.items() if not is_hop_by_hop(name)}


def filter_header_items(items: Iterable[tuple[str, str]]) -> list[tuple[str, str]]:
    """Pair-list variant of :func:`filter_headers` that keeps repeated names.

    Used for raw header lists (``set-cookie`` may legitimately repeat).
    """
    return [(name, value) for name, value in items if not is_hop_by_hop(name)]
