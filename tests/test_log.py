"""Unit tests for logging setup."""

import json

import pytest
from loguru import logger

from rmq_mock.config import Settings
from rmq_mock.log import format_json, setup_logging


@pytest.fixture
def records():
    """Capture rmq_mock log records with logging enabled."""
    captured = []
    logger.enable("rmq_mock")
    handler_id = logger.add(lambda message: captured.append(message.record), level="DEBUG")
    yield captured
    logger.remove(handler_id)
    logger.disable("rmq_mock")


@pytest.fixture
def restore_logger():
    yield
    logger.remove()
    logger.disable("rmq_mock")


class TestLogging:
    """Tests for structured log output."""

    def test_disabled_by_default(self, channel):
        captured = []
        handler_id = logger.add(lambda message: captured.append(message), level="DEBUG")
        try:
            channel.queue("quiet.q").publish("hello")
        finally:
            logger.remove(handler_id)

        assert captured == []

    def test_routing_is_logged(self, channel, records):
        channel.queue("logged.q").bind(channel.direct("logged.xchg"), routing_key="rk")
        channel.basic_publish("hello", "logged.xchg", "rk")

        routed = [r for r in records if r["message"] == "Message routed"]
        assert routed
        assert routed[-1]["extra"]["exchange"] == "logged.xchg"
        assert routed[-1]["extra"]["queues"] == 1

    def test_with_channel_adds_context(self, session, records):
        with session.with_channel() as channel:
            channel.queue("ctx.q")

        declared = [r for r in records if r["message"] == "Queue declared"]
        assert declared[-1]["extra"]["channel"] == channel.id

    def test_format_json(self, records):
        logger.bind(queue="q1", obj=object()).info("Something happened")

        entry = json.loads(format_json(records[-1]))
        assert entry["message"] == "Something happened"
        assert entry["level"] == "INFO"
        assert entry["queue"] == "q1"
        assert isinstance(entry["obj"], str)

    def test_setup_logging_file(self, tmp_path, restore_logger):
        log_file = tmp_path / "rmq_mock.log"
        settings = Settings(_env_file=None, log_file=str(log_file), log_level="DEBUG")

        setup_logging(settings)
        logger.complete()

        assert "Logging configured" in log_file.read_text()

    def test_setup_logging_json(self, capsys, restore_logger):
        setup_logging(Settings(_env_file=None, log_format="json"))

        line = capsys.readouterr().err.strip().splitlines()[-1]
        entry = json.loads(line)
        assert entry["message"] == "Logging configured"
        assert entry["format"] == "json"
