"""Shared fixtures: every test gets a fresh, started session."""

import pytest

from rmq_mock import Channel, Session, Settings


@pytest.fixture
def settings() -> Settings:
    """Default settings, ignoring any local .env file."""
    return Settings(_env_file=None)


@pytest.fixture
def session(settings: Settings) -> Session:
    return Session(settings).start()


@pytest.fixture
def channel(session: Session) -> Channel:
    return session.channel()
