"""
ReturnFlow 事件总线
基于 Redis Streams 发布退货事件，同时触发进程内订阅者
"""
import json
import uuid
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Dict, List, Optional

import redis.asyncio as redis

from rf_core.config import Settings, get_settings
from rf_core.models.enums import NotificationEvent
from rf_core.models.schemas import ReturnRead
from rf_core.utils.logger import get_logger

logger = get_logger(__name__)

Handler = Callable[[Dict[str, Any]], Awaitable[None]]


class EventPayload:
    """事件载荷"""

    def __init__(
        self,
        event_id: Optional[str] = None,
        topic: str = "",
        payload: Optional[Dict[str, Any]] = None,
        timestamp: Optional[str] = None
    ):
        self.event_id = event_id or str(uuid.uuid4())
        self.topic = topic
        self.payload = payload or {}
        self.timestamp = timestamp or datetime.now(timezone.utc).isoformat()

    def to_dict(self) -> Dict[str, Any]:
        return {
            "event_id": self.event_id,
            "ts": self.timestamp,
            "topic": self.topic,
            "payload": self.payload
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "EventPayload":
        return cls(
            event_id=data.get("event_id"),
            topic=data.get("topic", ""),
            payload=data.get("payload", {}),
            timestamp=data.get("ts")
        )


class EventBus:
    """事件总线（发布端）"""

    def __init__(self, settings: Optional[Settings] = None, redis_client: Optional[redis.Redis] = None):
        self.settings = settings or get_settings()
        self.redis_client = redis_client
        self.subscriptions: Dict[str, List[Handler]] = {}

    def _get_redis(self) -> redis.Redis:
        if self.redis_client is None:
            self.redis_client = redis.from_url(
                self.settings.redis_url,
                encoding="utf-8",
                decode_responses=True
            )
        return self.redis_client

    @staticmethod
    def _validate_topic(topic: str) -> None:
        if not topic.startswith("rf."):
            raise ValueError(f"Invalid topic format: {topic}")

    def _get_stream_name(self, topic: str) -> str:
        """获取 Redis Stream 名称"""
        return f"rf:events:{topic}"

    async def publish(
        self,
        topic: str,
        payload: Dict[str, Any],
        key: Optional[str] = None
    ) -> str:
        """发布事件到指定主题，返回事件ID"""
        self._validate_topic(topic)

        event = EventPayload(topic=topic, payload=payload)
        event_data = {"data": json.dumps(event.to_dict(), default=str)}
        if key:
            event_data["key"] = key

        message_id = await self._get_redis().xadd(self._get_stream_name(topic), event_data)

        logger.debug(f"Published event to {topic}",
                     event_id=event.event_id,
                     message_id=message_id)

        await self._trigger_handlers(topic, event)
        return event.event_id

    def subscribe(self, topic: str, handler: Handler) -> None:
        """注册进程内订阅者"""
        self._validate_topic(topic)
        self.subscriptions.setdefault(topic, []).append(handler)
        logger.info(f"Subscribed to topic {topic}")

    async def _trigger_handlers(self, topic: str, event: EventPayload) -> None:
        """进程内订阅者出错只记录日志"""
        for handler in self.subscriptions.get(topic, []):
            try:
                await handler(event.payload)
            except Exception:
                logger.error(f"Handler error for topic {topic}",
                             handler=getattr(handler, "__name__", repr(handler)),
                             exc_info=True)

    async def close(self) -> None:
        if self.redis_client is not None:
            await self.redis_client.aclose()
            self.redis_client = None


class EventBusNotificationSink:
    """把退货通知发布为 rf.returns.<event> 事件"""

    def __init__(self, event_bus: EventBus, topic_prefix: Optional[str] = None):
        self.event_bus = event_bus
        self.topic_prefix = topic_prefix or event_bus.settings.event_topic_prefix

    async def notify(self, ret: ReturnRead, event: NotificationEvent) -> None:
        topic = f"{self.topic_prefix}.{NotificationEvent(event).value}"
        await self.event_bus.publish(
            topic,
            ret.model_dump(mode="json"),
            key=ret.return_number,
        )
