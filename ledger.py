"""Host ledger facade: authoritative time, entropy and atomic execution."""

from __future__ import annotations

import copy
import hashlib
import threading
import time
from contextlib import contextmanager
from typing import Any, Callable, Dict, Iterator, Optional, Sequence, Tuple

from event_bus import EventBus


class LedgerState:
    """可快照组件 / Mixin for components whose state is rolled back on failure.

    子类在 ``_state_fields`` 中列出需要随事务回滚的属性。
    """

    _state_fields: Tuple[str, ...] = ()

    def snapshot(self) -> Dict[str, Any]:
        return {name: copy.deepcopy(getattr(self, name)) for name in self._state_fields}

    def restore(self, state: Dict[str, Any]) -> None:
        for name, value in state.items():
            setattr(self, name, value)


class ManualClock:
    """手动推进的时钟 / Deterministic clock for tests and simulations."""

    def __init__(self, start: int = 1_700_000_000) -> None:
        self.current = start

    def __call__(self) -> int:
        return self.current

    def advance(self, seconds: int) -> int:
        self.current += seconds
        return self.current

    def set(self, timestamp: int) -> None:
        self.current = timestamp


class Ledger:
    """账本环境 / Global serialization order, ledger time and block entropy."""

    def __init__(
        self,
        clock: Optional[Callable[[], int]] = None,
        entropy: Optional[Callable[[], bytes]] = None,
        events: Optional[EventBus] = None,
    ) -> None:
        self.clock = clock or (lambda: int(time.time()))
        self._entropy = entropy
        self.events = events or EventBus()
        self.lock = threading.RLock()
        self.block_number = 0
        self.block_hash = hashlib.sha256(b"genesis").digest()

    def now(self) -> int:
        return self.clock()

    def latest_entropy(self) -> bytes:
        """最近的区块哈希 / Most recent unpredictable value, weak by construction."""
        if self._entropy is not None:
            return self._entropy()
        return self.block_hash

    @contextmanager
    def transaction(self, components: Sequence[LedgerState]) -> Iterator[None]:
        """原子执行 / All-or-nothing execution across the given components."""
        with self.lock:
            snapshots = [component.snapshot() for component in components]
            self.events.begin()
            try:
                yield
            except BaseException:
                for component, state in zip(components, snapshots):
                    component.restore(state)
                self.events.rollback()
                raise
            self.events.commit()
            self._seal_block()

    def _seal_block(self) -> None:
        # 每笔成功的交易生成一个新区块，区块哈希作为下一次抽取的熵
        self.block_number += 1
        self.block_hash = hashlib.sha256(
            self.block_hash + self.block_number.to_bytes(8, "big") + self.now().to_bytes(8, "big")
        ).digest()
