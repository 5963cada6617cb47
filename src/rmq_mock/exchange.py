"""Exchanges and their routing strategies.

Every exchange owns a RouteTable. The concrete variants only decide which
routes match a routing key; forwarding, cycle protection and mandatory returns
live in the common base class.

Supported variants:
- Direct: exact routing key match
- Default: the nameless direct exchange, which also reaches queues by name
- Fanout: every bound destination, routing key ignored
- Topic: dot-segmented patterns with ``*`` and ``#`` wildcards
- Headers: ``x-match`` any/all predicates over message headers
"""

from __future__ import annotations

import warnings
from typing import TYPE_CHECKING, Any, Callable, Iterable, Union

from loguru import logger
from pydantic import ValidationError

from rmq_mock.exceptions import DeletedResourceError, InvalidArgument
from rmq_mock.models import (
    ExchangeOptions,
    ExchangeType,
    MessageProperties,
    ReturnInfo,
    build_properties,
)
from rmq_mock.queue import Queue
from rmq_mock.routing import Destination, Route, RouteTable, has_wildcards, topic_matches

if TYPE_CHECKING:
    from rmq_mock.channel import Channel

ExchangeRef = Union["Exchange", str]
ReturnCallback = Callable[[ReturnInfo, MessageProperties, Any], None]


class Exchange:
    """Base exchange: binding bookkeeping and message forwarding."""

    type: ExchangeType = ExchangeType.DIRECT

    def __init__(self, channel: "Channel", name: str = "", options: ExchangeOptions | None = None):
        options = options or ExchangeOptions(type=self.type)
        self.channel = channel
        self.name = name
        self.durable = options.durable
        self.auto_delete = options.auto_delete
        self.internal = options.internal
        self._arguments = dict(options.arguments)
        self._routes = RouteTable()
        self._return_callbacks: list[ReturnCallback] = []
        self.deleted = False

    @classmethod
    def declare(cls, channel: "Channel", name: str = "", **options: Any) -> "Exchange":
        """Create an exchange of the requested type (direct by default)."""
        try:
            parsed = ExchangeOptions(**options)
        except ValidationError as e:
            raise InvalidArgument(f"Invalid exchange options for '{name}': {e}") from e

        klass = exchange_class_for(parsed.type)
        if klass is DirectExchange and name == "":
            klass = DefaultExchange
        return klass(channel, name, parsed)

    @property
    def arguments(self) -> dict[str, Any]:
        return dict(self._arguments)

    def __repr__(self) -> str:
        return f"<{type(self).__name__} name={self.name!r} deleted={self.deleted}>"

    # -------------------------------------------------------------------------
    # Publishing
    # -------------------------------------------------------------------------

    def publish(
        self,
        body: Any,
        routing_key: str | None = None,
        mandatory: bool = False,
        **properties: Any,
    ) -> "Exchange":
        """Publish a message through this exchange.

        ``routing_key`` is kept in the message properties when given, so
        consumers see it the way it was published. Remaining keyword arguments
        become message properties.
        """
        self._check_deleted()
        if routing_key is not None:
            properties["routing_key"] = routing_key
        message_properties = build_properties(properties)
        key = routing_key or ""

        delivered = self.deliver(body, message_properties, key)
        if delivered == 0 and mandatory:
            self._return_message(body, message_properties, key)

        return self

    def deliver(
        self,
        body: Any,
        properties: MessageProperties,
        routing_key: str,
        _visited: dict[int, Destination] | None = None,
    ) -> int:
        """Forward a message to every matching destination.

        Returns the number of queues that received the message. Within one
        publish each exchange routes at most once and each queue receives at
        most one copy, so exchange-to-exchange cycles terminate.

        The message is buffered on every reached queue before any consumer
        runs, so a failing consumer callback cannot cut the fan-out short.
        """
        top_level = _visited is None
        visited = {} if top_level else _visited
        if id(self) in visited:
            return 0
        visited[id(self)] = self

        destinations = []
        for destination in self.match(routing_key, properties):
            if getattr(destination, "deleted", False):
                continue
            if not any(d is destination for d in destinations):
                destinations.append(destination)

        delivered = 0
        for destination in destinations:
            delivered += destination.receive(body, properties, self.name, visited)

        logger.debug(
            "Message routed",
            exchange=self.name,
            exchange_type=self.type.value,
            routing_key=routing_key,
            destinations=len(destinations),
            queues=delivered,
        )

        if top_level:
            _flush_reached(visited.values())
        return delivered

    def receive(
        self,
        body: Any,
        properties: MessageProperties,
        source: str,
        visited: dict[int, Destination],
    ) -> int:
        """Accept a message forwarded by a source exchange."""
        return self.deliver(body, properties, properties.get("routing_key", ""), visited)

    def match(self, routing_key: str, properties: MessageProperties) -> list[Destination]:
        """Return destinations bound under ``routing_key``; overridden by variants."""
        return []

    def on_return(self, callback: ReturnCallback) -> "Exchange":
        """Register a callback for mandatory messages that found no queue."""
        self._return_callbacks.append(callback)
        return self

    def _return_message(self, body: Any, properties: MessageProperties, routing_key: str) -> None:
        info = ReturnInfo(exchange=self.name, routing_key=routing_key)
        if not self._return_callbacks:
            logger.warning(
                "Mandatory message returned with no return handler",
                exchange=self.name,
                routing_key=routing_key,
            )
            return

        logger.debug("Mandatory message returned", exchange=self.name, routing_key=routing_key)
        for callback in list(self._return_callbacks):
            callback(info, properties, body)

    # -------------------------------------------------------------------------
    # Bindings
    # -------------------------------------------------------------------------

    def bind(
        self,
        source: ExchangeRef,
        routing_key: str | None = None,
        arguments: dict[str, Any] | None = None,
    ) -> "Exchange":
        """Bind this exchange as a destination of ``source``."""
        self._check_deleted()
        exchange = self.channel.resolve_exchange(source)
        exchange.add_route(self._key(routing_key), self, arguments)
        return self

    def unbind(self, source: ExchangeRef, routing_key: str | None = None) -> "Exchange":
        """Remove one binding of this exchange from ``source``."""
        self._check_deleted()
        exchange = self.channel.resolve_exchange(source)
        exchange.remove_route(self._key(routing_key), self)
        return self

    def bound_to(self, source: ExchangeRef, routing_key: str | None = None) -> bool:
        """Check if this exchange is bound to ``source``."""
        self._check_deleted()
        exchange = self.channel.resolve_exchange(source)
        return exchange.routes_to(self, routing_key=self._key(routing_key))

    def add_route(
        self,
        key: str,
        destination: Destination,
        arguments: dict[str, Any] | None = None,
    ) -> None:
        self._check_deleted()
        self._routes.add(key, destination, arguments)
        logger.debug("Route added", exchange=self.name, routing_key=key, destination=destination.name)

    def remove_route(self, key: str, destination: Destination | str) -> None:
        self._check_deleted()
        if self._routes.remove(key, destination):
            logger.debug("Route removed", exchange=self.name, routing_key=key)

    def routes_to(self, destination: Destination | str, routing_key: str | None = None) -> bool:
        """Check if ``destination`` is bound here under ``routing_key``.

        The key defaults to the destination's own name.
        """
        name = destination if isinstance(destination, str) else destination.name
        key = routing_key if routing_key is not None else name
        return self._routes.contains(key, destination)

    def has_binding(self, destination: Destination | str, routing_key: str | None = None) -> bool:
        warnings.warn(
            "has_binding() is deprecated, use routes_to() instead",
            DeprecationWarning,
            stacklevel=2,
        )
        return self.routes_to(destination, routing_key=routing_key)

    @property
    def bindings(self) -> list[tuple[str, Route]]:
        """Snapshot of (binding key, route) pairs."""
        return list(self._routes.items())

    # -------------------------------------------------------------------------
    # Lifecycle
    # -------------------------------------------------------------------------

    def delete(self) -> None:
        """Delete this exchange and remove it from the session registry."""
        self._check_deleted()
        self.channel.deregister_exchange(self)
        self.deleted = True
        logger.debug("Exchange deleted", exchange=self.name)

    def _key(self, routing_key: str | None) -> str:
        return routing_key if routing_key is not None else self.name

    def _check_deleted(self) -> None:
        if self.deleted:
            raise DeletedResourceError("exchange", self.name)


class DirectExchange(Exchange):
    """Routes to destinations bound under exactly the routing key."""

    type = ExchangeType.DIRECT

    def match(self, routing_key: str, properties: MessageProperties) -> list[Destination]:
        return [route.destination for route in self._routes.get(routing_key)]


class DefaultExchange(DirectExchange):
    """The nameless direct exchange.

    Every queue is implicitly bound to it under its own name.
    """

    def match(self, routing_key: str, properties: MessageProperties) -> list[Destination]:
        destinations = super().match(routing_key, properties)
        queue = self.channel.session.find_queue(routing_key)
        if queue is not None:
            destinations.append(queue)
        return destinations


class FanoutExchange(Exchange):
    """Routes to every bound destination, ignoring the routing key."""

    type = ExchangeType.FANOUT

    def match(self, routing_key: str, properties: MessageProperties) -> list[Destination]:
        return [route.destination for _, route in self._routes.items()]


class TopicExchange(Exchange):
    """Routes by dot-segmented wildcard patterns.

    A route matches when the routing key fits the binding pattern, or when the
    binding key fits a wildcard routing key (``queue.*.sub.*`` published against
    literal bindings).
    """

    type = ExchangeType.TOPIC

    def match(self, routing_key: str, properties: MessageProperties) -> list[Destination]:
        wildcard_key = has_wildcards(routing_key)
        return [
            route.destination
            for key, route in self._routes.items()
            if topic_matches(key, routing_key) or (wildcard_key and topic_matches(routing_key, key))
        ]


def _flush_reached(destinations: Iterable[Destination]) -> None:
    """Hand buffered messages to consumers on every queue reached by a publish.

    Every queue is flushed even when a consumer raises; the first error is
    re-raised afterwards.
    """
    error = None
    for destination in list(destinations):
        if not isinstance(destination, Queue):
            continue
        try:
            destination.flush()
        except Exception as e:
            if error is None:
                error = e
    if error is not None:
        raise error


_ABSENT = object()


def headers_match(arguments: dict[str, Any], headers: dict[str, Any]) -> bool:
    """Evaluate an ``x-match`` binding against message headers.

    ``all`` (default) needs every bound pair to be present and equal, ``any``
    needs one. Keys starting with ``x-`` are ignored unless the mode is
    ``all-with-x`` or ``any-with-x``.
    """
    mode = str(arguments.get("x-match", "all")).lower()
    include_x = mode.endswith("-with-x")
    expected = {
        key: value
        for key, value in arguments.items()
        if key != "x-match" and (include_x or not key.startswith("x-"))
    }
    results = (headers.get(key, _ABSENT) == value for key, value in expected.items())
    if mode.startswith("any"):
        return any(results)
    return all(results)


class HeadersExchange(Exchange):
    """Routes by message headers.

    Routes bound with arguments are matched with ``x-match`` semantics; routes
    bound without arguments fall back to an exact routing key lookup.
    """

    type = ExchangeType.HEADERS

    def match(self, routing_key: str, properties: MessageProperties) -> list[Destination]:
        headers = properties.headers or {}
        destinations = []
        for key, route in self._routes.items():
            if route.arguments:
                if headers_match(route.arguments, headers):
                    destinations.append(route.destination)
            elif key == routing_key:
                destinations.append(route.destination)
        return destinations


EXCHANGE_TYPES: dict[ExchangeType, type[Exchange]] = {
    ExchangeType.DIRECT: DirectExchange,
    ExchangeType.FANOUT: FanoutExchange,
    ExchangeType.TOPIC: TopicExchange,
    ExchangeType.HEADERS: HeadersExchange,
}


def exchange_class_for(exchange_type: ExchangeType | str) -> type[Exchange]:
    """Map an exchange type tag to its routing strategy class."""
    try:
        return EXCHANGE_TYPES[ExchangeType(exchange_type)]
    except ValueError as e:
        raise InvalidArgument(f"Unknown exchange type: {exchange_type!r}") from e
