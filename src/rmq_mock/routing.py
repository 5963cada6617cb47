"""Routing tables and topic pattern compilation.

A routing table maps a binding key to the ordered list of routes bound under
it. A route references its destination (a queue or another exchange); removing
the route never touches the destination itself.
"""

import re
from dataclasses import dataclass, field
from functools import lru_cache
from typing import Any, Iterator, Protocol

SEGMENT_SEPARATOR = "."
SINGLE_WILDCARD = "*"
MULTI_WILDCARD = "#"


class Destination(Protocol):
    """Anything an exchange can route to: a queue or another exchange."""

    name: str


@dataclass
class Route:
    """One binding entry: destination plus optional binding arguments."""

    destination: Destination
    arguments: dict[str, Any] = field(default_factory=dict)


def _destination_name(destination: Destination | str) -> str:
    return destination if isinstance(destination, str) else destination.name


class RouteTable:
    """Binding key -> ordered routes, with multiset semantics.

    The same destination may be added under one key several times; each
    ``remove`` call drops a single instance.
    """

    def __init__(self) -> None:
        self._routes: dict[str, list[Route]] = {}

    def add(self, key: str, destination: Destination, arguments: dict[str, Any] | None = None) -> None:
        self._routes.setdefault(key, []).append(Route(destination, dict(arguments or {})))

    def remove(self, key: str, destination: Destination | str) -> bool:
        """Remove the first route under ``key`` pointing at ``destination``.

        Destinations match by identity, or by name when either side is only
        known by name. Returns False when nothing was removed.
        """
        routes = self._routes.get(key)
        if not routes:
            return False

        name = _destination_name(destination)
        for index, route in enumerate(routes):
            if route.destination is destination or route.destination.name == name:
                del routes[index]
                if not routes:
                    del self._routes[key]
                return True
        return False

    def contains(self, key: str, destination: Destination | str) -> bool:
        if isinstance(destination, str):
            return any(r.destination.name == destination for r in self._routes.get(key, ()))
        return any(r.destination is destination for r in self._routes.get(key, ()))

    def get(self, key: str) -> list[Route]:
        return list(self._routes.get(key, ()))

    def keys(self) -> list[str]:
        return list(self._routes)

    def items(self) -> Iterator[tuple[str, Route]]:
        """Yield (key, route) pairs in binding order, key by key."""
        for key, routes in list(self._routes.items()):
            for route in list(routes):
                yield key, route

    def clear(self) -> None:
        self._routes.clear()

    def __len__(self) -> int:
        return sum(len(routes) for routes in self._routes.values())

    def __bool__(self) -> bool:
        return bool(self._routes)


@lru_cache(maxsize=1024)
def compile_topic(pattern: str) -> re.Pattern[str]:
    """Compile a dot-segmented topic pattern into a regular expression.

    ``*`` matches exactly one segment, which may be empty (``a..b``), and ``#``
    matches zero or more segments. The expression is meant to be applied with
    :func:`topic_matches`, which prefixes the candidate key with a separator so
    every segment, including the first, is introduced by a dot.
    """
    parts = []
    for segment in pattern.split(SEGMENT_SEPARATOR):
        if segment == MULTI_WILDCARD:
            parts.append(r"(?:\.[^.]*)*")
        elif segment == SINGLE_WILDCARD:
            parts.append(r"\.[^.]*")
        else:
            parts.append(r"\." + re.escape(segment))
    return re.compile("".join(parts))


def topic_matches(pattern: str, key: str) -> bool:
    """Return True if ``key`` matches the topic ``pattern`` in full."""
    return compile_topic(pattern).fullmatch(SEGMENT_SEPARATOR + key) is not None


def has_wildcards(key: str) -> bool:
    return any(s in (SINGLE_WILDCARD, MULTI_WILDCARD) for s in key.split(SEGMENT_SEPARATOR))
