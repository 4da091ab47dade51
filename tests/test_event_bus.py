"""
事件总线与通知测试
"""
import json
from datetime import date, datetime, timezone
from decimal import Decimal

import pytest

from rf_core.event_bus import EventBus, EventBusNotificationSink
from rf_core.models.enums import NotificationEvent
from rf_core.models.schemas import ReturnRead


class RecordingRedis:
    """只记录 xadd 调用的 Redis 客户端替身"""

    def __init__(self):
        self.streams = []

    async def xadd(self, name, fields):
        self.streams.append((name, fields))
        return f"{len(self.streams)}-0"


@pytest.fixture
def redis_client():
    return RecordingRedis()


@pytest.fixture
def event_bus(settings, redis_client):
    return EventBus(settings, redis_client=redis_client)


def _return_read() -> ReturnRead:
    now = datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)
    return ReturnRead(
        id=7,
        return_number="RET-20260301-0007",
        origin="sale",
        order_id="SO-1",
        customer_id="C-1",
        status="processed",
        refund_method="cash",
        restocking_fee_percent=Decimal("10"),
        total_refund_amount=Decimal("85.00"),
        total_restocking_fee=Decimal("15.00"),
        net_refund_amount=Decimal("70.00"),
        cogs_amount=Decimal("60.00"),
        refund_paid=True,
        return_date=date(2026, 3, 1),
        created_at=now,
        updated_at=now,
    )


async def test_publish_writes_stream_and_triggers_handlers(event_bus, redis_client):
    received = []

    async def handler(payload):
        received.append(payload)

    event_bus.subscribe("rf.returns.return_completed", handler)

    event_id = await event_bus.publish("rf.returns.return_completed", {"return_number": "RET-1"}, key="RET-1")

    name, fields = redis_client.streams[0]
    assert name == "rf:events:rf.returns.return_completed"
    assert fields["key"] == "RET-1"
    data = json.loads(fields["data"])
    assert data["event_id"] == event_id
    assert data["payload"] == {"return_number": "RET-1"}
    assert received == [{"return_number": "RET-1"}]


async def test_invalid_topic_rejected(event_bus):
    with pytest.raises(ValueError):
        await event_bus.publish("ef.returns.return_completed", {})


async def test_failing_handler_does_not_break_publish(event_bus, redis_client):
    async def broken(payload):
        raise RuntimeError("handler bug")

    event_bus.subscribe("rf.returns.return_requested", broken)

    await event_bus.publish("rf.returns.return_requested", {"id": 1})
    assert len(redis_client.streams) == 1


async def test_notification_sink_publishes_return(event_bus, redis_client):
    sink = EventBusNotificationSink(event_bus)

    await sink.notify(_return_read(), NotificationEvent.APPROVED)

    name, fields = redis_client.streams[0]
    assert name == "rf:events:rf.returns.return_approved"
    assert fields["key"] == "RET-20260301-0007"
    payload = json.loads(fields["data"])["payload"]
    assert payload["net_refund_amount"] == "70.00"
    assert payload["status"] == "processed"
