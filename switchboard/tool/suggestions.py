from __future__ import annotations

from typing import Iterable, List

from switchboard.constants import MAX_SUGGESTIONS


def find_similar_tool_names(
    tool_name: str, available: Iterable[str], limit: int = MAX_SUGGESTIONS
) -> List[str]:
    """Rank tool names that look like ``tool_name`` (case-insensitive).

    Order: the exact case-insensitive match (when it differs from the input),
    then names starting with the input, then names containing it. Results are
    de-duplicated, keep the order of ``available`` within each tier and are
    capped at ``limit``.
    """
    names = list(available)
    needle = tool_name.lower()
    suggestions: List[str] = []

    def add(name: str) -> None:
        if name not in suggestions and len(suggestions) < limit:
            suggestions.append(name)

    exact = next((n for n in names if n.lower() == needle), None)
    if exact is not None and exact != tool_name:
        add(exact)

    prefixed = [n for n in names if n.lower().startswith(needle) and n.lower() != needle]
    for name in prefixed[:limit]:
        add(name)

    for name in names:
        lowered = name.lower()
        if needle in lowered and lowered != needle:
            add(name)

    return suggestions
