"""Exception hierarchy for the broker simulator.

Every error is raised synchronously at the call that caused it, so tests can
assert against broker-like failure conditions with ``pytest.raises``.
"""


class BrokerError(Exception):
    """Base exception for broker simulator errors."""

    pass


class NotFound(BrokerError):
    """Raised when an exchange (or queue) referenced by name does not exist."""

    def __init__(self, name: str, kind: str = "exchange"):
        self.name = name
        self.kind = kind
        super().__init__(f"{kind.capitalize()} '{name}' was not found")


class InvalidArgument(BrokerError, ValueError):
    """Raised for reserved channel ids and invalid declaration options."""

    pass


class DeletedResourceError(BrokerError):
    """Raised when a queue or exchange is used after it was deleted."""

    def __init__(self, kind: str, name: str):
        self.kind = kind
        self.name = name
        super().__init__(f"{kind.capitalize()} '{name}' has been deleted")
