"""Tests for the event envelope and WebSocket fan-out."""

import asyncio
from decimal import Decimal

from order_service.events import EVENT_TARGETS, EventPublisher
from order_service.ws_manager import ConnectionManager
from tests.helpers import ServiceConfig


class FakeSocket:
    def __init__(self, broken=False):
        self.sent = []
        self.broken = broken

    async def accept(self):
        pass

    async def send_json(self, message):
        if self.broken:
            raise RuntimeError("socket closed")
        self.sent.append(message)


class TestEnvelope:
    def test_money_and_trace(self):
        publisher = EventPublisher(ServiceConfig)
        event = publisher.envelope("escrow.released", {"order_id": "o-1", "driver_credited": Decimal("32")}, "t-1")

        assert event["type"] == "escrow.released"
        assert event["trace_id"] == "t-1"
        assert event["data"]["driver_credited"] == "32.00"
        assert event["event_id"]

    def test_every_target_has_a_queue(self):
        publisher = EventPublisher(ServiceConfig)
        for targets in EVENT_TARGETS.values():
            assert set(targets) <= set(publisher.queue_urls)


class TestFanOut:
    def test_order_filter(self):
        async def scenario():
            manager = ConnectionManager()
            everything, one_order, other_order = FakeSocket(), FakeSocket(), FakeSocket()
            await manager.connect(everything)
            await manager.connect(one_order, "o-1")
            await manager.connect(other_order, "o-2")
            sent = await manager.broadcast({"type": "order.accepted", "data": {"order_id": "o-1"}})
            return sent, everything, one_order, other_order

        sent, everything, one_order, other_order = asyncio.run(scenario())
        assert sent == 2
        assert len(everything.sent) == 1
        assert len(one_order.sent) == 1
        assert other_order.sent == []

    def test_dead_sockets_dropped(self):
        async def scenario():
            manager = ConnectionManager()
            await manager.connect(FakeSocket(broken=True))
            await manager.connect(FakeSocket())
            await manager.broadcast({"type": "maintenance.completed", "data": {}})
            return manager

        assert len(asyncio.run(scenario()).active_connections) == 1

    def test_emit_never_raises(self):
        async def scenario():
            manager = ConnectionManager()
            socket = FakeSocket()
            await manager.connect(socket)
            publisher = EventPublisher(ServiceConfig, manager)
            await publisher.emit("order.created", {"order_id": "o-1", "total_price": Decimal("250")})
            await publisher.emit("order.created", {"bad": object()})
            return socket

        socket = asyncio.run(scenario())
        assert [m["type"] for m in socket.sent] == ["order.created"]
        assert socket.sent[0]["data"]["total_price"] == "250.00"
