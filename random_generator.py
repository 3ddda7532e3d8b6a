"""Hash-chained pseudo random generator seeded from ledger entropy.

种子来自账本最近的区块哈希与集群ID，并非密码学安全的随机源：
能够影响交易排序的一方可以在很窄的时间窗口内预测结果。
"""

from __future__ import annotations

import hashlib

_MAX_UINT256 = 2**256 - 1


class RandomGenerator:
    """链式 SHA-256 随机数生成器 / Deterministic generator, one hash per draw."""

    def __init__(self, seed: int) -> None:
        self.seed = seed % (_MAX_UINT256 + 1)

    @classmethod
    def from_entropy(cls, *parts: bytes | str | int) -> "RandomGenerator":
        """使用熵源拼接后的哈希作为种子 / Seed from the hash of the concatenated parts."""
        digest = hashlib.sha256()
        for part in parts:
            digest.update(_to_bytes(part))
        return cls(int.from_bytes(digest.digest(), "big"))

    def next(self) -> int:
        self.seed = int.from_bytes(hashlib.sha256(self.seed.to_bytes(32, "big")).digest(), "big")
        return self.seed

    def random(self, max_value: int) -> int:
        """返回 [0, max_value) 内的均匀整数 / Uniform draw using rejection sampling."""
        if max_value <= 0:
            raise ValueError("max_value must be positive")
        # 丢弃落在不完整区间的值，避免取模偏差
        limit = (_MAX_UINT256 + 1) - (_MAX_UINT256 + 1) % max_value
        value = self.next()
        while value >= limit:
            value = self.next()
        return value % max_value


def _to_bytes(part: bytes | str | int) -> bytes:
    if isinstance(part, bytes):
        return part
    if isinstance(part, str):
        return part.encode()
    return part.to_bytes(32, "big")
