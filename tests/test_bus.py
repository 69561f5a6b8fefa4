"""Tests for the message bus and topic matching."""

import pytest

from donorseg.bus import MessageBus, SegmentationTopics, Topic
from donorseg.core.signals import Message, MessageType


class TestTopic:
    def test_exact_match(self) -> None:
        assert Topic("segmentation.segment.created").matches("segmentation.segment.created")
        assert not Topic("segmentation.segment.created").matches("segmentation.segment.deleted")

    def test_single_wildcard(self) -> None:
        topic = Topic("segmentation.segment.created")
        assert topic.matches("segmentation.*.created")
        assert not topic.matches("segmentation.*")

    def test_multi_wildcard(self) -> None:
        topic = Topic("segmentation.alert.raised")
        assert topic.matches(str(SegmentationTopics.ALERTS))
        assert topic.matches(str(SegmentationTopics.ALL))
        assert not topic.matches("system.#")

    def test_category(self) -> None:
        assert SegmentationTopics.SEGMENT_CREATED.category == "segmentation"


class TestMessageBus:
    @pytest.mark.asyncio
    async def test_publish_subscribe(self) -> None:
        bus = MessageBus()
        received: list[Message] = []

        async def handler(msg: Message) -> None:
            received.append(msg)

        await bus.subscribe("segmentation.segment.created", handler)

        message = Message(
            type=MessageType.EVENT,
            topic="segmentation.segment.created",
            payload={"segment_id": "s1"},
            source="test",
        )
        delivered = await bus.publish(message)

        assert delivered == 1
        assert len(received) == 1
        assert received[0].payload == {"segment_id": "s1"}

    @pytest.mark.asyncio
    async def test_wildcard_subscription(self) -> None:
        bus = MessageBus()
        received: list[Message] = []

        async def handler(msg: Message) -> None:
            received.append(msg)

        await bus.subscribe(SegmentationTopics.ALL, handler)

        await bus.publish(Message.event("segmentation.segment.created", "src", 1))
        await bus.publish(Message.event("segmentation.alert.raised", "src", 2))
        await bus.publish(Message.event("system.startup", "src", 3))

        assert [m.payload for m in received] == [1, 2]

    @pytest.mark.asyncio
    async def test_failing_handler_is_isolated(self) -> None:
        bus = MessageBus()
        received: list[Message] = []

        async def broken(msg: Message) -> None:
            raise RuntimeError("sink down")

        async def healthy(msg: Message) -> None:
            received.append(msg)

        await bus.subscribe("segmentation.#", broken)
        await bus.subscribe("segmentation.#", healthy)

        delivered = await bus.publish(Message.event("segmentation.alert.raised", "src", "x"))

        assert delivered == 1
        assert len(received) == 1
        assert bus.stats.total_errors == 1

    @pytest.mark.asyncio
    async def test_unsubscribe(self) -> None:
        bus = MessageBus()
        received: list[Message] = []

        async def handler(msg: Message) -> None:
            received.append(msg)

        sub_id = await bus.subscribe("segmentation.#", handler)
        assert await bus.unsubscribe(sub_id)
        assert not await bus.unsubscribe(sub_id)

        assert await bus.publish(Message.event("segmentation.alert.raised", "src", "x")) == 0
        assert received == []
        assert bus.stats.total_subscriptions == 0

    @pytest.mark.asyncio
    async def test_clear(self) -> None:
        bus = MessageBus()

        async def handler(msg: Message) -> None:
            pass

        await bus.subscribe("a.#", handler)
        await bus.subscribe("b.#", handler)
        bus.clear()
        assert bus.get_subscriptions() == []
