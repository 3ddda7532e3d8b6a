"""Thread-safe in-process event delivery for the fleet core."""

from __future__ import annotations

import threading
from collections import defaultdict, deque
from queue import Empty, Queue
from typing import Callable, DefaultDict, Deque, Dict, List, Optional, Type

Handler = Callable[[object], None]

HISTORY_SIZE = 1024


class EventBus:
    """事件总线 / Synchronous handlers plus per-subscriber mailboxes.

    处理器在发布时同步执行（属于同一次操作）；邮箱投递在事务提交后才发生，
    回滚的操作不会对外发出任何事件。
    """

    def __init__(self, history_size: int = HISTORY_SIZE) -> None:
        self.mailboxes: Dict[str, Queue] = {}
        self.handlers: DefaultDict[type, List[Handler]] = defaultdict(list)
        # 只保留最近的已提交事件
        self.history: Deque[object] = deque(maxlen=history_size)
        self.lock = threading.RLock()
        self._pending: List[object] = []
        self._depth = 0

    def register_mailbox(self, name: str) -> Queue:
        """注册订阅者邮箱 / Register a mailbox that receives every committed event."""
        with self.lock:
            if name not in self.mailboxes:
                self.mailboxes[name] = Queue()
            return self.mailboxes[name]

    def unregister_mailbox(self, name: str) -> None:
        with self.lock:
            self.mailboxes.pop(name, None)

    def subscribe(self, event_type: Type, handler: Handler) -> None:
        with self.lock:
            self.handlers[event_type].append(handler)

    def publish(self, event: object) -> None:
        """发布事件 / Run handlers now, deliver to mailboxes on commit."""
        with self.lock:
            if self._depth:
                self._pending.append(event)
            else:
                self._deliver([event])
            handlers = list(self.handlers.get(type(event), ()))
        for handler in handlers:
            handler(event)

    def begin(self) -> None:
        with self.lock:
            self._depth += 1

    def commit(self) -> None:
        with self.lock:
            self._depth -= 1
            if self._depth == 0:
                pending, self._pending = self._pending, []
                self._deliver(pending)

    def rollback(self) -> None:
        with self.lock:
            self._depth -= 1
            if self._depth == 0:
                self._pending = []

    def receive_events(
        self,
        name: str,
        event_type: Optional[Type] = None,
        timeout: float = 0.0,
    ) -> List[object]:
        """取出邮箱中的事件 / Drain matching events, requeue everything else."""
        mailbox = self.mailboxes[name]
        events: List[object] = []
        messages_to_requeue = []
        while True:
            try:
                event = mailbox.get(timeout=timeout) if timeout else mailbox.get_nowait()
            except Empty:
                break
            if event_type is None or isinstance(event, event_type):
                events.append(event)
            else:
                messages_to_requeue.append(event)

        for event in messages_to_requeue:
            mailbox.put(event)
        return events

    def _deliver(self, events: List[object]) -> None:
        for event in events:
            self.history.append(event)
            for mailbox in self.mailboxes.values():
                mailbox.put(event)
