"""In-process AMQP broker simulator.

Lets application code exercise publish/subscribe/acknowledge logic without a
running broker::

    import rmq_mock

    session = rmq_mock.new().start()
    channel = session.channel()
    queue = channel.queue("jobs").bind(channel.direct("work"), routing_key="jobs")
    channel.basic_publish("hello", "work", "jobs")
    info, properties, body = queue.pop()
"""

from loguru import logger

from rmq_mock.channel import Channel, ChannelStatus
from rmq_mock.config import Settings, get_settings
from rmq_mock.exceptions import BrokerError, DeletedResourceError, InvalidArgument, NotFound
from rmq_mock.exchange import (
    DefaultExchange,
    DirectExchange,
    Exchange,
    FanoutExchange,
    HeadersExchange,
    TopicExchange,
)
from rmq_mock.models import (
    AckState,
    Delivery,
    DeliveryInfo,
    ExchangeType,
    MessageProperties,
    ReturnInfo,
)
from rmq_mock.queue import Consumer, Queue
from rmq_mock.session import Session, SessionStatus

__version__ = "0.1.0"

PROTOCOL_VERSION = "0.9.1"

logger.disable("rmq_mock")


def new(settings: Settings | None = None) -> Session:
    """Create a new, not yet started, session."""
    return Session(settings)


__all__ = [
    "AckState",
    "BrokerError",
    "Channel",
    "ChannelStatus",
    "Consumer",
    "DefaultExchange",
    "DeletedResourceError",
    "Delivery",
    "DeliveryInfo",
    "DirectExchange",
    "Exchange",
    "ExchangeType",
    "FanoutExchange",
    "HeadersExchange",
    "InvalidArgument",
    "MessageProperties",
    "NotFound",
    "PROTOCOL_VERSION",
    "Queue",
    "ReturnInfo",
    "Session",
    "SessionStatus",
    "Settings",
    "TopicExchange",
    "get_settings",
    "new",
]
