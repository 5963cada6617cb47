"""Routing behaviour of each exchange type."""

import pytest


class TestDirectExchange:
    """Tests for exact routing key delivery."""

    @pytest.fixture(autouse=True)
    def topology(self, channel):
        self.source = channel.direct("xchg.source")
        self.first = channel.queue("queue.first").bind(self.source)
        self.second = channel.queue("queue.second").bind(self.source)
        self.third = channel.queue("queue.third").bind(self.source)

    def test_only_delivers_to_exact_match(self):
        self.source.publish("Testing message", routing_key="queue.second")

        assert self.first.message_count == 0
        assert self.third.message_count == 0
        assert self.second.message_count == 1
        assert self.second.pop()[2] == "Testing message"

    def test_no_match(self):
        self.source.publish("Testing message", routing_key="queue.*")

        assert self.first.message_count == 0
        assert self.second.message_count == 0
        assert self.third.message_count == 0


class TestFanoutExchange:
    """Tests for broadcast delivery."""

    def test_delivers_to_every_binding(self, channel):
        source = channel.fanout("xchg.source")
        queues = [channel.queue(f"queue.{n}").bind(source) for n in ("first", "second", "third")]

        source.publish("Testing message", routing_key="ignored")

        for queue in queues:
            assert queue.message_count == 1
            assert queue.pop().body == "Testing message"

    def test_delivers_without_routing_key(self, channel):
        source = channel.fanout("xchg.source")
        queue = channel.queue("queue.first").bind(source, routing_key="anything")

        source.publish("Testing message")

        assert queue.message_count == 1

    def test_each_queue_gets_own_properties(self, channel):
        source = channel.fanout("xchg.source")
        first = channel.queue("queue.first").bind(source)
        second = channel.queue("queue.second").bind(source)

        source.publish("Testing message", headers={"k": 1})

        _, first_properties, _ = first.pop()
        first_properties.headers["k"] = "changed"
        _, second_properties, _ = second.pop()

        assert second_properties.headers == {"k": 1}

    def test_failing_consumer_does_not_cut_fanout(self, channel):
        source = channel.fanout("xchg.source")
        failing = channel.queue("queue.failing").bind(source)
        idle = channel.queue("queue.idle").bind(source)
        listening = channel.queue("queue.listening").bind(source)
        received = []

        def explode(info, props, body):
            raise RuntimeError("consumer failed")

        failing.subscribe(explode)
        listening.subscribe(lambda info, props, body: received.append(body))

        with pytest.raises(RuntimeError):
            source.publish("Testing message")

        assert idle.message_count == 1
        assert received == ["Testing message"]
        assert failing.message_count == 1


class TestTopicExchange:
    """Tests for wildcard routing."""

    @pytest.fixture(autouse=True)
    def topology(self, channel):
        self.source = channel.topic("xchg.source")
        self.first = channel.queue("queue.category.sub.first").bind(self.source)
        self.second = channel.queue("queue.category.second").bind(self.source)
        self.third = channel.queue("queue.topic.sub.third").bind(self.source)

    def test_no_wildcards(self):
        self.source.publish("Testing message", routing_key="queue.category.second")

        assert self.first.message_count == 0
        assert self.third.message_count == 0
        assert self.second.message_count == 1
        assert self.second.pop().body == "Testing message"

    def test_single_wildcards(self):
        self.source.publish("Testing message", routing_key="queue.*.sub.*")

        assert self.second.message_count == 0
        assert self.first.pop().body == "Testing message"
        assert self.third.pop().body == "Testing message"

    def test_multiple_wildcards(self):
        self.source.publish("Testing message", routing_key="queue.category.#")

        assert self.third.message_count == 0
        assert self.first.pop().body == "Testing message"
        assert self.second.pop().body == "Testing message"

    def test_mixed_wildcards(self):
        self.source.publish("Testing message", routing_key="#.sub.*")

        assert self.second.message_count == 0
        assert self.first.pop().body == "Testing message"
        assert self.third.pop().body == "Testing message"

    def test_wildcard_binding(self, channel):
        catch_all = channel.queue("catch.all").bind(self.source, routing_key="queue.#")
        subs = channel.queue("subs").bind(self.source, routing_key="*.*.sub.*")

        self.source.publish("Testing message", routing_key="queue.topic.sub.third")

        assert catch_all.message_count == 1
        assert subs.message_count == 1
        assert self.third.message_count == 1
        assert self.first.message_count == 0

    def test_empty_segment(self, channel):
        hashed = channel.queue("hashed").bind(self.source, routing_key="queue.#")
        starred = channel.queue("starred").bind(self.source, routing_key="queue.*.sub")

        self.source.publish("Testing message", routing_key="queue..sub")

        assert hashed.message_count == 1
        assert starred.message_count == 1

    def test_all_subscribed_queues_receive(self, session):
        ch1 = session.channel()
        ch2 = session.channel()
        topic = ch1.topic("amq.topic")
        queues = [ch1.queue("q1"), ch1.queue("q2"), ch2.queue("q3"), ch2.queue("q4")]
        bodies = []
        for queue in queues:
            queue.bind(topic, routing_key="rk1")
            queue.subscribe(lambda info, props, body: bodies.append(body))

        topic.publish("test", routing_key="rk1")

        assert bodies == ["test"] * 4


class TestHeadersExchange:
    """Tests for x-match header routing."""

    @pytest.fixture
    def source(self, channel):
        return channel.headers("xchg.headers")

    def test_match_all(self, channel, source):
        queue = channel.queue("q.all").bind(
            source, arguments={"x-match": "all", "format": "pdf", "type": "report"}
        )

        source.publish("partial", headers={"format": "pdf"})
        source.publish("full", headers={"format": "pdf", "type": "report", "extra": 1})

        assert [m.body for m in queue.all()] == ["full"]

    def test_all_is_default(self, channel, source):
        queue = channel.queue("q.all").bind(source, arguments={"format": "pdf", "type": "report"})

        source.publish("partial", headers={"format": "pdf"})

        assert queue.message_count == 0

    def test_match_any(self, channel, source):
        queue = channel.queue("q.any").bind(
            source, arguments={"x-match": "any", "format": "pdf", "type": "report"}
        )

        source.publish("one", headers={"format": "pdf"})
        source.publish("none", headers={"format": "zip"})

        assert [m.body for m in queue.all()] == ["one"]

    def test_x_keys_ignored(self, channel, source):
        queue = channel.queue("q.x").bind(
            source, arguments={"x-match": "all", "x-custom": "1", "format": "pdf"}
        )

        source.publish("hello", headers={"format": "pdf"})

        assert queue.message_count == 1

    def test_all_with_x(self, channel, source):
        queue = channel.queue("q.x").bind(
            source, arguments={"x-match": "all-with-x", "x-custom": "1", "format": "pdf"}
        )

        source.publish("without", headers={"format": "pdf"})
        source.publish("with", headers={"format": "pdf", "x-custom": "1"})

        assert [m.body for m in queue.all()] == ["with"]

    def test_no_headers(self, channel, source):
        queue = channel.queue("q.any").bind(source, arguments={"x-match": "any", "format": "pdf"})

        source.publish("hello")

        assert queue.message_count == 0

    def test_routing_key_fallback(self, channel, source):
        queue = channel.queue("q.plain").bind(source, routing_key="rk")

        source.publish("hello", routing_key="rk")
        source.publish("other", routing_key="other")

        assert [m.body for m in queue.all()] == ["hello"]


class TestDefaultExchange:
    """Tests for the nameless exchange."""

    def test_routes_by_queue_name(self, channel):
        queue = channel.queue("named.queue")

        channel.default_exchange().publish("hello", routing_key="named.queue")

        info, _, body = queue.pop()
        assert body == "hello"
        assert info.exchange == ""
        assert info.routing_key == "named.queue"

    def test_basic_publish_with_empty_exchange(self, channel):
        queue = channel.queue("named.queue")

        channel.basic_publish("hello", "", "named.queue")

        assert queue.message_count == 1

    def test_unknown_queue(self, channel):
        queue = channel.queue("named.queue")

        channel.default_exchange().publish("hello", routing_key="missing.queue")

        assert queue.message_count == 0

    def test_explicit_binding_and_name_deliver_once(self, channel):
        xchg = channel.default_exchange()
        queue = channel.queue("named.queue").bind(xchg)

        xchg.publish("hello", routing_key="named.queue")

        assert queue.message_count == 1
