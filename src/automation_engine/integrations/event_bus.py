"""
进程内事件总线
"""
import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, Dict, List

from ..models.workflow import utcnow


logger = logging.getLogger(__name__)

TOPIC_EXECUTION_COMPLETED = "execution.completed"
TOPIC_TRIGGER_FIRED = "trigger.fired"
TOPIC_WORKFLOW_REGISTERED = "workflow.registered"
WILDCARD = "*"


@dataclass
class Event:
    """事件对象"""
    topic: str
    payload: Any
    timestamp: datetime = field(default_factory=utcnow)
    headers: Dict[str, str] = field(default_factory=dict)


class EventBus:
    """异步发布/订阅，订阅者异常互不影响"""

    def __init__(self):
        self.subscribers: Dict[str, List[Callable]] = {}
        self._lock = asyncio.Lock()

    async def publish(self, topic: str, payload: Any, headers: Dict[str, str] = None):
        """发布事件"""
        event = Event(topic=topic, payload=payload, headers=headers or {})

        # 只在复制订阅者列表时持锁
        async with self._lock:
            subscribers = list(self.subscribers.get(topic, [])) + list(self.subscribers.get(WILDCARD, []))

        if subscribers:
            await asyncio.gather(
                *(self._notify_subscriber(subscriber, event) for subscriber in subscribers),
                return_exceptions=True
            )

        logger.debug(f"Published event to topic '{topic}' with {len(subscribers)} subscribers")

    async def subscribe(self, topic: str, handler: Callable):
        """订阅事件，topic 为 '*' 时接收全部事件"""
        async with self._lock:
            self.subscribers.setdefault(topic, []).append(handler)

        logger.info(f"Subscribed to topic '{topic}'")

    async def unsubscribe(self, topic: str, handler: Callable):
        """取消订阅"""
        async with self._lock:
            handlers = self.subscribers.get(topic, [])
            if handler in handlers:
                handlers.remove(handler)
            if not handlers:
                self.subscribers.pop(topic, None)

        logger.info(f"Unsubscribed from topic '{topic}'")

    async def _notify_subscriber(self, subscriber: Callable, event: Event):
        """通知订阅者"""
        try:
            if asyncio.iscoroutinefunction(subscriber):
                await subscriber(event)
            else:
                subscriber(event)
        except Exception as e:
            logger.error(f"Error notifying subscriber for topic '{event.topic}': {e}", exc_info=True)
