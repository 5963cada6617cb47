"""Channels: declarations, publishing and the acknowledgement state machine.

Acknowledgement state is channel scoped: a delivery tag is issued by the
channel that delivered the message and can only be settled there.

    pending --ack-->    acked
    pending --nack-->   nacked    (requeue or dead-letter)
    pending --reject--> rejected  (requeue or dead-letter)

Settled states are terminal. Requeueing publishes the message again, which
produces a fresh delivery tag.
"""

from __future__ import annotations

import copy
import itertools
import random
import time
from datetime import datetime, timezone
from enum import Enum
from typing import TYPE_CHECKING, Any

from loguru import logger
from pydantic import ValidationError

from rmq_mock.exceptions import InvalidArgument, NotFound
from rmq_mock.exchange import Exchange, ExchangeRef
from rmq_mock.models import AckState, Delivery, ExchangeType, QueueOptions
from rmq_mock.queue import Consumer, ConsumerCallback, Queue

if TYPE_CHECKING:
    from rmq_mock.session import Session

DEAD_LETTER_EXCHANGE = "x-dead-letter-exchange"
DEAD_LETTER_ROUTING_KEY = "x-dead-letter-routing-key"


class ChannelStatus(str, Enum):
    """Channel lifecycle states."""

    OPENING = "opening"
    OPEN = "open"
    CLOSED = "closed"


class Channel:
    """A virtual connection multiplexed over a session."""

    def __init__(self, session: "Session", channel_id: int | None = None):
        self.id = channel_id
        self.session = session
        self.status = ChannelStatus.OPENING

        self._delivery_tags = itertools.count(1)
        self._ack_state: dict[AckState, dict[int, Delivery]] = {state: {} for state in AckState}

    @property
    def connection(self) -> "Session":
        return self.session

    @property
    def is_open(self) -> bool:
        return self.status == ChannelStatus.OPEN

    @property
    def is_closed(self) -> bool:
        return self.status == ChannelStatus.CLOSED

    def open(self) -> "Channel":
        self.status = ChannelStatus.OPEN
        return self

    def close(self) -> "Channel":
        self.status = ChannelStatus.CLOSED
        logger.debug("Channel closed", channel=self.id)
        return self

    def __repr__(self) -> str:
        return f"<Channel id={self.id} open={self.is_open}>"

    # -------------------------------------------------------------------------
    # Declarations
    # -------------------------------------------------------------------------

    def exchange(self, name: str, **options: Any) -> Exchange:
        """Declare an exchange, or return the existing one with this name."""
        existing = self.session.find_exchange(name)
        if existing is not None:
            return existing

        exchange = Exchange.declare(self, name, **options)
        self.session.register_exchange(exchange)
        logger.debug("Exchange declared", exchange=name, exchange_type=exchange.type.value)
        return exchange

    def direct(self, name: str, **options: Any) -> Exchange:
        return self.exchange(name, **{**options, "type": ExchangeType.DIRECT})

    def fanout(self, name: str, **options: Any) -> Exchange:
        return self.exchange(name, **{**options, "type": ExchangeType.FANOUT})

    def topic(self, name: str, **options: Any) -> Exchange:
        return self.exchange(name, **{**options, "type": ExchangeType.TOPIC})

    def headers(self, name: str, **options: Any) -> Exchange:
        return self.exchange(name, **{**options, "type": ExchangeType.HEADERS})

    def default_exchange(self) -> Exchange:
        """Return the nameless direct exchange."""
        return self.direct("")

    def queue(self, name: str = "", **options: Any) -> Queue:
        """Declare a queue, or return the existing one with this name.

        An empty name declares a server-named queue.
        """
        existing = self.session.find_queue(name) if name else None
        if existing is not None:
            return existing

        try:
            parsed = QueueOptions(**options)
        except ValidationError as e:
            raise InvalidArgument(f"Invalid queue options for '{name}': {e}") from e

        queue = Queue(self, name, parsed)
        self.session.register_queue(queue)
        logger.debug("Queue declared", queue=queue.name, exclusive=queue.exclusive)
        return queue

    def temporary_queue(self, **options: Any) -> Queue:
        """Declare an exclusive, server-named queue."""
        return self.queue("", **{**options, "exclusive": True})

    def resolve_exchange(self, exchange: ExchangeRef) -> Exchange:
        """Turn an exchange object or name into an exchange object.

        Raises:
            NotFound: If a name is given and no such exchange is registered.
        """
        if isinstance(exchange, Exchange):
            return exchange
        found = self.session.find_exchange(exchange)
        if found is None:
            raise NotFound(exchange)
        return found

    def resolve_queue(self, queue: Queue | str) -> Queue:
        if isinstance(queue, Queue):
            return queue
        found = self.session.find_queue(queue)
        if found is None:
            raise NotFound(queue, kind="queue")
        return found

    def deregister_queue(self, queue: Queue) -> None:
        if self.session.find_queue(queue.name) is queue:
            self.session.deregister_queue(queue.name)

    def deregister_exchange(self, exchange: Exchange) -> None:
        if self.session.find_exchange(exchange.name) is exchange:
            self.session.deregister_exchange(exchange.name)

    # -------------------------------------------------------------------------
    # Bindings (pika-style channel methods)
    # -------------------------------------------------------------------------

    def queue_bind(
        self,
        queue: Queue | str,
        exchange: ExchangeRef,
        routing_key: str | None = None,
        arguments: dict[str, Any] | None = None,
    ) -> Queue:
        return self.resolve_queue(queue).bind(exchange, routing_key=routing_key, arguments=arguments)

    def queue_unbind(
        self,
        queue: Queue | str,
        exchange: ExchangeRef,
        routing_key: str | None = None,
    ) -> Queue:
        return self.resolve_queue(queue).unbind(exchange, routing_key=routing_key)

    def exchange_bind(
        self,
        destination: ExchangeRef,
        source: ExchangeRef,
        routing_key: str | None = None,
        arguments: dict[str, Any] | None = None,
    ) -> Exchange:
        return self.resolve_exchange(destination).bind(
            source, routing_key=routing_key, arguments=arguments
        )

    def exchange_unbind(
        self,
        destination: ExchangeRef,
        source: ExchangeRef,
        routing_key: str | None = None,
    ) -> Exchange:
        return self.resolve_exchange(destination).unbind(source, routing_key=routing_key)

    # -------------------------------------------------------------------------
    # Publishing and consuming
    # -------------------------------------------------------------------------

    def basic_publish(
        self,
        body: Any,
        exchange: ExchangeRef,
        routing_key: str,
        **properties: Any,
    ) -> "Channel":
        """Publish through ``exchange``, declaring it when it does not exist yet."""
        if not isinstance(exchange, Exchange):
            exchange = self.exchange(exchange)
        exchange.publish(body, routing_key=routing_key, **properties)
        return self

    def basic_consume(
        self,
        queue: Queue | str,
        callback: ConsumerCallback,
        manual_ack: bool = False,
        consumer_tag: str | None = None,
        exclusive: bool = False,
        arguments: dict[str, Any] | None = None,
    ) -> Consumer:
        """Subscribe to ``queue`` with deliveries tracked on this channel."""
        return self.resolve_queue(queue).subscribe(
            callback,
            manual_ack=manual_ack,
            consumer_tag=consumer_tag,
            exclusive=exclusive,
            arguments=arguments,
            channel=self,
        )

    def basic_get(self, queue: Queue | str, manual_ack: bool = False) -> Delivery:
        """Pull one message from ``queue`` through this channel."""
        return self.resolve_queue(queue).pop(manual_ack=manual_ack, channel=self, pop_api="bunny")

    def generate_consumer_tag(self, name: str | None = None) -> str:
        prefix = name or self.session.settings.consumer_tag_prefix
        return f"{prefix}-{int(time.time() * 1000)}-{random.randrange(999_999_999_999)}"

    def confirm_select(self, callback: Any = None) -> None:
        """Publisher confirms are implicit: every publish completes synchronously."""

    def prefetch(self, count: int, global_: bool = False) -> None:
        """Prefetch limits have no effect on synchronous delivery."""

    def wait_for_confirms(self, timeout: float | None = None) -> bool:
        return True

    # -------------------------------------------------------------------------
    # Acknowledgements
    # -------------------------------------------------------------------------

    def next_delivery_tag(self) -> int:
        return next(self._delivery_tags)

    def track_delivery(self, delivery: Delivery) -> None:
        """Record a manual-ack delivery as pending."""
        self._ack_state[AckState.PENDING][delivery.delivery_info.delivery_tag] = delivery

    @property
    def acknowledged_state(self) -> dict[str, dict[int, Delivery]]:
        """Snapshot of delivery tags per state, keyed by state name."""
        return {state.value: dict(bucket) for state, bucket in self._ack_state.items()}

    def state_of(self, delivery_tag: int) -> AckState | None:
        for state, bucket in self._ack_state.items():
            if delivery_tag in bucket:
                return state
        return None

    def ack(self, delivery_tag: int, multiple: bool = False) -> None:
        """Acknowledge a pending delivery (and every earlier one if ``multiple``).

        Tags that are not pending are ignored.
        """
        for tag in self._pending_tags(delivery_tag, multiple):
            self._settle(tag, AckState.ACKED)

    acknowledge = ack

    def nack(self, delivery_tag: int, multiple: bool = False, requeue: bool = False) -> None:
        """Negatively acknowledge pending deliveries.

        With ``requeue`` the message goes back onto its queue; otherwise it is
        dead-lettered when the queue names a dead-letter exchange.
        """
        for tag in self._pending_tags(delivery_tag, multiple):
            delivery = self._settle(tag, AckState.NACKED)
            self._return_to_broker(delivery, requeue)

    def reject(self, delivery_tag: int, requeue: bool = False) -> None:
        """Reject a single pending delivery; same requeue rules as nack."""
        for tag in self._pending_tags(delivery_tag, multiple=False):
            delivery = self._settle(tag, AckState.REJECTED)
            self._return_to_broker(delivery, requeue)

    def _pending_tags(self, delivery_tag: int, multiple: bool) -> list[int]:
        pending = self._ack_state[AckState.PENDING]
        if multiple:
            return sorted(tag for tag in pending if tag <= delivery_tag)
        return [delivery_tag] if delivery_tag in pending else []

    def _settle(self, delivery_tag: int, state: AckState) -> Delivery:
        delivery = self._ack_state[AckState.PENDING].pop(delivery_tag)
        self._ack_state[state][delivery_tag] = delivery
        logger.debug("Delivery settled", channel=self.id, delivery_tag=delivery_tag, state=state.value)
        return delivery

    def _return_to_broker(self, delivery: Delivery, requeue: bool) -> None:
        info, properties, body = delivery
        queue = info.queue
        if queue is None or queue.deleted:
            logger.warning(
                "Originating queue is gone, message dropped",
                delivery_tag=info.delivery_tag,
                queue=queue.name if queue is not None else None,
            )
            return

        if requeue:
            queue.requeue(body, properties, exchange=info.exchange)
        else:
            self._dead_letter(delivery)

    def _dead_letter(self, delivery: Delivery) -> None:
        info, properties, body = delivery
        queue = info.queue
        arguments = queue.arguments
        dlx_name = arguments.get(DEAD_LETTER_EXCHANGE)
        if dlx_name is None:
            return

        dlx = self.session.find_exchange(dlx_name)
        if dlx is None:
            logger.warning(
                "Dead-letter exchange not found, message dropped",
                queue=queue.name,
                dead_letter_exchange=dlx_name,
            )
            return

        routing_key = arguments.get(DEAD_LETTER_ROUTING_KEY, info.routing_key)
        headers = copy.deepcopy(properties.headers or {})
        headers["x-death"] = _record_death(
            headers.get("x-death"),
            queue=queue.name,
            reason="rejected",
            exchange=info.exchange,
            routing_key=info.routing_key,
        )
        dead_properties = properties.updated(headers=headers, routing_key=routing_key)

        delivered = dlx.deliver(body, dead_properties, routing_key)
        logger.debug(
            "Message dead-lettered",
            queue=queue.name,
            dead_letter_exchange=dlx_name,
            routing_key=routing_key,
            queues=delivered,
        )


def _record_death(
    deaths: list[dict[str, Any]] | None,
    queue: str,
    reason: str,
    exchange: str,
    routing_key: str,
) -> list[dict[str, Any]]:
    """Add or bump the x-death entry for (queue, reason), most recent first."""
    deaths = list(deaths or [])
    for index, entry in enumerate(deaths):
        if entry.get("queue") == queue and entry.get("reason") == reason:
            entry = {**entry, "count": entry.get("count", 0) + 1, "time": datetime.now(timezone.utc)}
            del deaths[index]
            return [entry, *deaths]

    entry = {
        "count": 1,
        "reason": reason,
        "queue": queue,
        "time": datetime.now(timezone.utc),
        "exchange": exchange,
        "routing_keys": [routing_key],
    }
    return [entry, *deaths]
