"""Queues: ordered message buffers with push and pull consumption.

Messages are appended at the tail and always leave from the head. Publishing
onto a queue with consumers delivers immediately (push model); ``pop`` is the
pull alternative and returns the same (delivery_info, properties, body) shape.
"""

from __future__ import annotations

import uuid
import warnings
from collections import deque
from dataclasses import dataclass, field, replace
from typing import TYPE_CHECKING, Any, Callable

from loguru import logger

from rmq_mock.exceptions import DeletedResourceError, InvalidArgument
from rmq_mock.models import (
    EMPTY_DELIVERY,
    Delivery,
    DeliveryInfo,
    Message,
    MessageProperties,
    QueueOptions,
    build_properties,
)

if TYPE_CHECKING:
    from rmq_mock.channel import Channel
    from rmq_mock.exchange import ExchangeRef

ConsumerCallback = Callable[[DeliveryInfo, MessageProperties, Any], None]

POP_APIS = ("bunny", "legacy")


@dataclass
class Consumer:
    """A callback subscribed to a queue."""

    queue: "Queue" = field(repr=False)
    channel: "Channel" = field(repr=False)
    callback: ConsumerCallback
    consumer_tag: str
    manual_ack: bool = False
    exclusive: bool = False
    arguments: dict[str, Any] = field(default_factory=dict)

    def cancel(self) -> bool:
        """Stop receiving deliveries."""
        return self.queue.cancel(self.consumer_tag)


class Queue:
    """An in-memory queue registered in a session."""

    def __init__(
        self,
        channel: "Channel",
        name: str = "",
        options: QueueOptions | None = None,
        pop_api: str | None = None,
    ):
        options = options or QueueOptions()
        settings = channel.session.settings

        self.channel = channel
        self.name = name or f"{settings.temporary_queue_prefix}{uuid.uuid4().hex}"
        self.durable = options.durable
        self.exclusive = options.exclusive
        self.auto_delete = options.auto_delete
        self._arguments = dict(options.arguments)
        self._pop_api = _check_pop_api(pop_api or settings.pop_api)

        self._messages: deque[Message] = deque()
        self._consumers: list[Consumer] = []
        self._next_consumer = 0
        self._flushing = False
        self.deleted = False

    def __repr__(self) -> str:
        return f"<Queue name={self.name!r} messages={len(self._messages)} deleted={self.deleted}>"

    @property
    def arguments(self) -> dict[str, Any]:
        return dict(self._arguments)

    @property
    def message_count(self) -> int:
        """Buffered message count; still readable after the queue is deleted."""
        return len(self._messages)

    @property
    def consumer_count(self) -> int:
        return len(self._consumers)

    # -------------------------------------------------------------------------
    # Publishing
    # -------------------------------------------------------------------------

    def publish(self, body: Any, **properties: Any) -> "Queue":
        """Append a message straight onto this queue, bypassing exchanges."""
        self._check_deleted()
        self._enqueue(Message(body=body, properties=build_properties(properties)))
        return self

    def receive(
        self,
        body: Any,
        properties: MessageProperties,
        source: str,
        visited: dict[int, Any],
    ) -> int:
        """Buffer a message routed by the exchange named ``source``.

        Each queue keeps its own copy of the properties. Consumers are not
        called here; the publishing exchange flushes every reached queue once
        routing is complete.
        """
        if id(self) in visited:
            return 0
        visited[id(self)] = self
        self._check_deleted()
        self._messages.append(
            Message(body=body, properties=properties.model_copy(deep=True), exchange=source)
        )
        return 1

    def requeue(self, body: Any, properties: MessageProperties, exchange: str = "") -> None:
        """Put a negatively acknowledged message back, flagged as redelivered."""
        self._check_deleted()
        self._enqueue(Message(body=body, properties=properties, exchange=exchange, redelivered=True))

    def _enqueue(self, message: Message) -> None:
        self._messages.append(message)
        self.flush()

    def flush(self) -> None:
        """Deliver buffered messages to consumers, oldest first.

        When a callback raises, an auto-ack message goes back to the head of
        the queue flagged as redelivered; a manual-ack message stays pending on
        its channel. The error propagates to the publisher.
        """
        # Publishes issued from a consumer callback land in the buffer and are
        # drained by the loop already running.
        if self._flushing:
            return

        self._flushing = True
        try:
            while self._messages and self._consumers and not self.deleted:
                consumer = self._consumers[self._next_consumer % len(self._consumers)]
                self._next_consumer += 1
                message = self._messages.popleft()
                delivery = self._delivery(
                    message,
                    consumer.channel,
                    manual_ack=consumer.manual_ack,
                    consumer_tag=consumer.consumer_tag,
                )
                try:
                    consumer.callback(*delivery)
                except Exception:
                    if not consumer.manual_ack:
                        self._messages.appendleft(replace(message, redelivered=True))
                    logger.warning(
                        "Consumer callback failed",
                        queue=self.name,
                        consumer_tag=consumer.consumer_tag,
                    )
                    raise
        finally:
            self._flushing = False

    def _delivery(
        self,
        message: Message,
        channel: "Channel",
        manual_ack: bool,
        consumer_tag: str | None = None,
    ) -> Delivery:
        info = DeliveryInfo(
            delivery_tag=channel.next_delivery_tag(),
            exchange=message.exchange,
            routing_key=message.properties.get("routing_key", self.name),
            redelivered=message.redelivered,
            consumer_tag=consumer_tag,
            queue=self,
            channel=channel,
        )
        delivery = Delivery(info, message.properties, message.body)
        if manual_ack:
            channel.track_delivery(delivery)
        return delivery

    # -------------------------------------------------------------------------
    # Consumption
    # -------------------------------------------------------------------------

    def subscribe(
        self,
        callback: ConsumerCallback,
        manual_ack: bool = False,
        consumer_tag: str | None = None,
        exclusive: bool = False,
        arguments: dict[str, Any] | None = None,
        channel: "Channel | None" = None,
    ) -> Consumer:
        """Register a consumer and drain buffered messages into it.

        The callback is invoked as ``callback(delivery_info, properties, body)``.
        With ``manual_ack`` every delivery stays pending on the consumer's
        channel until it is acked, nacked or rejected there.
        """
        self._check_deleted()
        channel = channel or self.channel
        consumer = Consumer(
            queue=self,
            channel=channel,
            callback=callback,
            consumer_tag=consumer_tag or channel.generate_consumer_tag(),
            manual_ack=manual_ack,
            exclusive=exclusive,
            arguments=dict(arguments or {}),
        )
        self._consumers.append(consumer)
        logger.debug(
            "Consumer subscribed",
            queue=self.name,
            consumer_tag=consumer.consumer_tag,
            manual_ack=manual_ack,
        )
        self.flush()
        return consumer

    def cancel(self, consumer_tag: str) -> bool:
        """Remove the consumer registered under ``consumer_tag``."""
        for index, consumer in enumerate(self._consumers):
            if consumer.consumer_tag == consumer_tag:
                del self._consumers[index]
                logger.debug("Consumer cancelled", queue=self.name, consumer_tag=consumer_tag)
                return True
        return False

    def pop(
        self,
        manual_ack: bool = False,
        channel: "Channel | None" = None,
        pop_api: str | None = None,
    ) -> Delivery | dict[str, Any] | None:
        """Remove and return the oldest message.

        Returns ``Delivery(None, None, None)`` when the queue is empty. The
        legacy shape (``{"message": body, "options": properties}`` or None) is
        returned when the ``legacy`` pop API is configured.
        """
        self._check_deleted()
        api = _check_pop_api(pop_api or self._pop_api)

        if api == "legacy":
            warnings.warn(
                "The legacy pop shape is deprecated, configure pop_api='bunny' "
                "to receive (delivery_info, properties, body)",
                DeprecationWarning,
                stacklevel=2,
            )
            if not self._messages:
                return None
            message = self._messages.popleft()
            return {"message": message.body, "options": message.properties.to_dict()}

        if not self._messages:
            return EMPTY_DELIVERY
        return self._delivery(self._messages.popleft(), channel or self.channel, manual_ack)

    get = pop

    def all(self) -> list[Message]:
        """Snapshot of buffered messages, oldest first."""
        self._check_deleted()
        return list(self._messages)

    # -------------------------------------------------------------------------
    # Bindings
    # -------------------------------------------------------------------------

    def bind(
        self,
        exchange: "ExchangeRef",
        routing_key: str | None = None,
        arguments: dict[str, Any] | None = None,
    ) -> "Queue":
        """Bind this queue to ``exchange`` (object or name).

        The binding key defaults to the queue name.
        """
        self._check_deleted()
        source = self.channel.resolve_exchange(exchange)
        source.add_route(self._key(routing_key), self, arguments)
        return self

    def unbind(self, exchange: "ExchangeRef", routing_key: str | None = None) -> "Queue":
        self._check_deleted()
        source = self.channel.resolve_exchange(exchange)
        source.remove_route(self._key(routing_key), self)
        return self

    def bound_to(self, exchange: "ExchangeRef", routing_key: str | None = None) -> bool:
        self._check_deleted()
        source = self.channel.resolve_exchange(exchange)
        return source.routes_to(self, routing_key=self._key(routing_key))

    # -------------------------------------------------------------------------
    # Lifecycle
    # -------------------------------------------------------------------------

    def purge(self) -> "Queue":
        """Drop every buffered message; consumers stay registered."""
        self._check_deleted()
        purged = len(self._messages)
        self._messages.clear()
        logger.debug("Queue purged", queue=self.name, messages=purged)
        return self

    def delete(self) -> None:
        """Delete this queue and remove it from the session registry."""
        self._check_deleted()
        self.channel.deregister_queue(self)
        self._consumers.clear()
        self.deleted = True
        logger.debug("Queue deleted", queue=self.name)

    def _key(self, routing_key: str | None) -> str:
        return routing_key if routing_key is not None else self.name

    def _check_deleted(self) -> None:
        if self.deleted:
            raise DeletedResourceError("queue", self.name)


def _check_pop_api(pop_api: str) -> str:
    if pop_api not in POP_APIS:
        raise InvalidArgument(f"Unknown pop API {pop_api!r}, expected one of {POP_APIS}")
    return pop_api
