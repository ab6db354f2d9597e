"""核心 → 展示层的单向事件通道。

生成流水线是唯一的生产者。事件按 publish 顺序进入无界 FIFO 队列，
同时同步回调给所有订阅者；两种消费方式可以任选其一。
"""

import logging
import queue
import threading
from typing import Callable, List, Optional

from chat_core.domain.models import GenerationEvent
from chat_core.infrastructure.logging.logger import log_event


EventListener = Callable[[GenerationEvent], None]


class EventChannel:
    def __init__(self, buffered: bool = True):
        self._queue: "queue.Queue[GenerationEvent]" = queue.Queue()
        self._buffered = buffered
        self._listeners: List[EventListener] = []
        self._lock = threading.Lock()

    def subscribe(self, listener: EventListener) -> Callable[[], None]:
        with self._lock:
            self._listeners.append(listener)

        def unsubscribe() -> None:
            with self._lock:
                if listener in self._listeners:
                    self._listeners.remove(listener)

        return unsubscribe

    def publish(self, event: GenerationEvent) -> None:
        if self._buffered:
            self._queue.put(event)
        with self._lock:
            listeners = list(self._listeners)
        for listener in listeners:
            try:
                listener(event)
            except Exception as e:
                # 订阅者的异常不能打断生成
                log_event(logging.ERROR, "Event listener failed", {}, kind=event.kind, error=str(e))

    def get(self, timeout: Optional[float] = None) -> GenerationEvent:
        """阻塞取出下一个事件；超时抛 queue.Empty。"""
        return self._queue.get(timeout=timeout)

    def drain(self) -> List[GenerationEvent]:
        items: List[GenerationEvent] = []
        while True:
            try:
                items.append(self._queue.get_nowait())
            except queue.Empty:
                return items
