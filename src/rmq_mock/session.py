"""Session: the simulated connection and its exchange/queue registry.

All channels opened on one session share the same catalog of exchanges and
queues, which is the single source of truth for whether a name exists.
"""

from contextlib import contextmanager
from enum import Enum
from typing import Iterator

from loguru import logger

from rmq_mock.channel import Channel
from rmq_mock.config import Settings, get_settings
from rmq_mock.exceptions import InvalidArgument
from rmq_mock.exchange import Exchange
from rmq_mock.queue import Queue


class SessionStatus(str, Enum):
    """Connection state machine states."""

    NOT_CONNECTED = "not_connected"
    CONNECTED = "connected"
    CLOSING = "closing"
    CLOSED = "closed"


class Session:
    """In-process stand-in for a broker connection.

    Takes an explicit Settings instance; falls back to the cached
    environment-driven settings when none is given.
    """

    def __init__(self, settings: Settings | None = None):
        self.settings = settings or get_settings()
        self.status = SessionStatus.NOT_CONNECTED
        self._channels: dict[int, Channel] = {}
        self._exchanges: dict[str, Exchange] = {}
        self._queues: dict[str, Queue] = {}

    def __repr__(self) -> str:
        return (
            f"<Session status={self.status.value} channels={len(self._channels)} "
            f"exchanges={len(self._exchanges)} queues={len(self._queues)}>"
        )

    # -------------------------------------------------------------------------
    # Lifecycle
    # -------------------------------------------------------------------------

    def start(self) -> "Session":
        self.status = SessionStatus.CONNECTED
        logger.debug("Session started")
        return self

    def stop(self) -> "Session":
        """Close every open channel, then the session itself."""
        self.status = SessionStatus.CLOSING
        for channel in self._channels.values():
            if channel.is_open:
                channel.close()
        self.status = SessionStatus.CLOSED
        logger.debug("Session closed")
        return self

    close = stop

    @property
    def is_open(self) -> bool:
        return self.status == SessionStatus.CONNECTED

    is_connected = is_open

    @property
    def is_closed(self) -> bool:
        return self.status == SessionStatus.CLOSED

    @property
    def is_closing(self) -> bool:
        return self.status == SessionStatus.CLOSING

    # -------------------------------------------------------------------------
    # Channels
    # -------------------------------------------------------------------------

    def create_channel(self, channel_id: int | None = None) -> Channel:
        """Open a channel, or return the cached one with the same id.

        Raises:
            InvalidArgument: If channel id 0 is requested; it is reserved.
        """
        if channel_id == 0:
            raise InvalidArgument("channel number 0 is reserved in the protocol and cannot be used")

        if channel_id is not None and channel_id in self._channels:
            channel = self._channels[channel_id]
            if channel.is_closed:
                channel.open()
            return channel

        if channel_id is None:
            channel_id = self._next_channel_id()

        channel = Channel(self, channel_id).open()
        self._channels[channel_id] = channel
        logger.debug("Channel opened", channel=channel_id)
        return channel

    channel = create_channel

    @contextmanager
    def with_channel(self, channel_id: int | None = None) -> Iterator[Channel]:
        """Yield an open channel and close it on every exit path."""
        channel = self.create_channel(channel_id)
        try:
            with logger.contextualize(channel=channel.id):
                yield channel
        finally:
            if channel.is_open:
                channel.close()

    def _next_channel_id(self) -> int:
        channel_id = 1
        while channel_id in self._channels:
            channel_id += 1
        return channel_id

    # -------------------------------------------------------------------------
    # Registry
    # -------------------------------------------------------------------------

    @property
    def exchanges(self) -> dict[str, Exchange]:
        return dict(self._exchanges)

    @property
    def queues(self) -> dict[str, Queue]:
        return dict(self._queues)

    def find_exchange(self, name: str) -> Exchange | None:
        return self._exchanges.get(name)

    def register_exchange(self, exchange: Exchange) -> Exchange:
        self._exchanges[exchange.name] = exchange
        return exchange

    def deregister_exchange(self, name: str) -> None:
        self._exchanges.pop(name, None)

    def exchange_exists(self, name: str) -> bool:
        return name in self._exchanges

    def find_queue(self, name: str) -> Queue | None:
        return self._queues.get(name)

    def register_queue(self, queue: Queue) -> Queue:
        self._queues[queue.name] = queue
        return queue

    def deregister_queue(self, name: str) -> None:
        self._queues.pop(name, None)

    def queue_exists(self, name: str) -> bool:
        return name in self._queues
