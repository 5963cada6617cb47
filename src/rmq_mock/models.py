"""Data models shared by exchanges, queues and channels.

Pydantic V2 models validate declaration options and message properties; plain
dataclasses carry per-delivery metadata handed to consumers.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum, IntEnum
from typing import TYPE_CHECKING, Any, NamedTuple

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from rmq_mock.exceptions import InvalidArgument

if TYPE_CHECKING:
    from rmq_mock.channel import Channel
    from rmq_mock.queue import Queue


class ExchangeType(str, Enum):
    """Routing strategy of an exchange."""

    DIRECT = "direct"
    FANOUT = "fanout"
    TOPIC = "topic"
    HEADERS = "headers"

    @classmethod
    def _missing_(cls, value: object) -> "ExchangeType | None":
        # Accept "Topic", "HEADERS" and the singular "header" spelling.
        if isinstance(value, str):
            normalized = value.lower()
            if normalized == "header":
                return cls.HEADERS
            for member in cls:
                if member.value == normalized:
                    return member
        return None


class AckState(str, Enum):
    """Acknowledgement state of a delivery tag."""

    PENDING = "pending"
    ACKED = "acked"
    NACKED = "nacked"
    REJECTED = "rejected"


class DeliveryMode(IntEnum):
    """AMQP Delivery Mode."""
    TRANSIENT = 1
    PERSISTENT = 2


class ExchangeOptions(BaseModel):
    """Options accepted when declaring an exchange."""

    model_config = ConfigDict(extra="forbid")

    type: ExchangeType = Field(default=ExchangeType.DIRECT, description="Routing strategy")
    durable: bool = Field(default=False, description="Survive broker restart (no-op)")
    auto_delete: bool = Field(default=False, description="Delete when unused (no-op)")
    internal: bool = Field(default=False, description="Only routable from other exchanges (no-op)")
    arguments: dict[str, Any] = Field(default_factory=dict, description="Extension arguments")

    @field_validator("type", mode="before")
    @classmethod
    def _normalize_type(cls, value: Any) -> Any:
        if isinstance(value, str) and not isinstance(value, ExchangeType):
            try:
                return ExchangeType(value)
            except ValueError:
                return value
        return value


class QueueOptions(BaseModel):
    """Options accepted when declaring a queue."""

    model_config = ConfigDict(extra="forbid")

    durable: bool = Field(default=False, description="Survive broker restart (no-op)")
    exclusive: bool = Field(default=False, description="Owned by the declaring connection")
    auto_delete: bool = Field(default=False, description="Delete when unused (no-op)")
    arguments: dict[str, Any] = Field(
        default_factory=dict,
        description="Extension arguments such as x-dead-letter-exchange",
    )


class MessageProperties(BaseModel):
    """AMQP basic properties of a published message.

    Unknown publish options (``routing_key``, ``persistent`` and anything else the
    caller passed) are kept as extra fields so they survive the trip through
    exchanges and queues unchanged.
    """

    model_config = ConfigDict(extra="allow", frozen=True)

    content_type: str | None = None
    content_encoding: str | None = None
    headers: dict[str, Any] | None = None
    delivery_mode: DeliveryMode | None = None
    priority: int | None = Field(default=None, ge=0, le=255)
    correlation_id: str | None = None
    reply_to: str | None = None
    expiration: str | int | None = None
    message_id: str | None = None
    timestamp: datetime | int | None = None
    type: str | None = None
    user_id: str | None = None
    app_id: str | None = None
    cluster_id: str | None = None

    def to_dict(self) -> dict[str, Any]:
        """Return the properties that were supplied at publish time."""
        return self.model_dump(exclude_none=True)

    def get(self, key: str, default: Any = None) -> Any:
        return self.to_dict().get(key, default)

    def __getitem__(self, key: str) -> Any:
        return self.get(key)

    def updated(self, **changes: Any) -> "MessageProperties":
        """Return a copy with the given properties replaced."""
        return MessageProperties.model_validate({**self.to_dict(), **changes})


@dataclass
class Message:
    """A message buffered in a queue."""

    body: Any
    properties: MessageProperties
    exchange: str = ""
    redelivered: bool = False


@dataclass
class DeliveryInfo:
    """Delivery metadata handed to consumers and returned by pulls.

    ``exchange`` is the last exchange that routed the message (empty for
    messages published straight onto a queue).
    """

    delivery_tag: int
    exchange: str
    routing_key: str
    redelivered: bool = False
    consumer_tag: str | None = None
    queue: "Queue | None" = field(default=None, repr=False, compare=False)
    channel: "Channel | None" = field(default=None, repr=False, compare=False)

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for serialization."""
        return {
            "delivery_tag": self.delivery_tag,
            "redelivered": self.redelivered,
            "exchange": self.exchange,
            "routing_key": self.routing_key,
            "consumer_tag": self.consumer_tag,
            "queue": self.queue.name if self.queue is not None else None,
        }


class Delivery(NamedTuple):
    """The (delivery_info, properties, body) triple of one delivered message."""

    delivery_info: DeliveryInfo | None
    properties: MessageProperties | None
    body: Any


EMPTY_DELIVERY = Delivery(None, None, None)


@dataclass
class ReturnInfo:
    """Describes a mandatory message that could not be routed."""

    exchange: str
    routing_key: str
    reply_code: int = 312
    reply_text: str = "NO_ROUTE"


def build_properties(options: dict[str, Any]) -> MessageProperties:
    """Validate publish options into MessageProperties.

    The ``exchange`` key is routing metadata rather than a message property and
    is dropped.
    """
    options = {k: v for k, v in options.items() if k != "exchange"}
    try:
        return MessageProperties.model_validate(options)
    except ValidationError as e:
        raise InvalidArgument(f"Invalid message properties: {e}") from e
