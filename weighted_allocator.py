"""Segment tree over capacity slots supporting weighted random draws."""

from __future__ import annotations

import logging
from typing import List, Protocol

from exceptions import InvalidPlace, InvalidSize, Underflow, ValidationError

logger = logging.getLogger(__name__)


class RandomSource(Protocol):
    def random(self, max_value: int) -> int: ...


class WeightedAllocator:
    """加权分配树 / Complete binary tree of partial sums over ``size`` leaves.

    顶点 v（从1开始）存放在 ``tree[v - 1]``，叶子 p 存放在 ``tree[size - 2 + p]``。
    每个内部顶点保存左右子树之和，因此根节点等于所有叶子权重之和。
    """

    def __init__(self, size: int) -> None:
        if size <= 0 or size & (size - 1):
            raise InvalidSize(f"Size must be a positive power of two, got {size}")
        self.size = size
        self.tree: List[int] = [0] * (2 * size - 1)

    @classmethod
    def create(cls, size: int) -> "WeightedAllocator":
        return cls(size)

    def get_size(self) -> int:
        return self.size

    def get_elem(self, index: int) -> int:
        """按数组下标读取顶点 / Raw 0-based access to the tree storage."""
        if not 0 <= index < len(self.tree):
            raise InvalidPlace(f"Incorrect index {index}")
        return self.tree[index]

    def leaf_weight(self, place: int) -> int:
        self._check_place(place)
        return self.tree[self.size - 2 + place]

    def add_to_place(self, place: int, delta: int) -> None:
        """叶子 place 的权重加 delta / Point update, O(log size)."""
        self._check_place(place)
        self._check_delta(delta)
        self._update_path(1, 1, self.size, place, delta)

    def remove_from_place(self, place: int, delta: int) -> None:
        self._check_place(place)
        self._check_delta(delta)
        if self.leaf_weight(place) < delta:
            raise Underflow(f"Place {place} holds {self.leaf_weight(place)}, cannot remove {delta}")
        self._update_path(1, 1, self.size, place, -delta)

    def add_to_last(self, delta: int) -> None:
        self.add_to_place(self.size, delta)

    def move_from_place_to_place(self, from_place: int, to_place: int, delta: int) -> None:
        """把 delta 从一个叶子移到另一个叶子 / Combined walk, shared ancestors untouched.

        Equivalent to ``remove_from_place(from_place, delta)`` followed by
        ``add_to_place(to_place, delta)``.
        """
        self._check_place(from_place)
        self._check_place(to_place)
        self._check_delta(delta)
        if self.leaf_weight(from_place) < delta:
            raise Underflow(f"Place {from_place} holds {self.leaf_weight(from_place)}, cannot move {delta}")
        if from_place == to_place or delta == 0:
            return

        vertex = 1
        left_bound = 1
        right_bound = self.size
        # 公共祖先的和不变，只需沿分叉后的两条路径更新
        while True:
            middle = (left_bound + right_bound) // 2
            from_goes_right = from_place > middle
            to_goes_right = to_place > middle
            if from_goes_right != to_goes_right:
                break
            if from_goes_right:
                vertex = 2 * vertex + 1
                left_bound = middle + 1
            else:
                vertex = 2 * vertex
                right_bound = middle

        if from_goes_right:
            self._update_path(2 * vertex + 1, middle + 1, right_bound, from_place, -delta)
            self._update_path(2 * vertex, left_bound, middle, to_place, delta)
        else:
            self._update_path(2 * vertex, left_bound, middle, from_place, -delta)
            self._update_path(2 * vertex + 1, middle + 1, right_bound, to_place, delta)

    def sum_from_place_to_last(self, place: int) -> int:
        """叶子 [place, size] 的权重之和 / Range sum to the end, O(log size)."""
        self._check_place(place)
        if place == 1:
            return self.tree[0]
        left_bound = 1
        right_bound = self.size
        vertex = 1
        total = 0
        while left_bound < right_bound:
            middle = (left_bound + right_bound) // 2
            if place > middle:
                vertex = 2 * vertex + 1
                left_bound = middle + 1
            else:
                # 右子树整体落在查询区间内
                total += self.tree[2 * vertex]
                vertex = 2 * vertex
                right_bound = middle
        return total + self.tree[vertex - 1]

    def get_random_element_from_place_to_last(self, place: int, random_source: RandomSource) -> int:
        """按权重随机选取 [place, size] 中的叶子 / Returns 0 when the range is empty."""
        self._check_place(place)
        current_sum = self.sum_from_place_to_last(place)
        if current_sum == 0:
            return 0

        vertex = 1
        left_bound = 0
        right_bound = self.size
        current_from = place - 1
        while left_bound + 1 < right_bound:
            middle = (left_bound + right_bound) // 2
            if middle <= current_from:
                # 左半部分完全在区间之外
                vertex = 2 * vertex + 1
                left_bound = middle
                continue
            right_sum = self.tree[2 * vertex]
            left_sum = current_sum - right_sum
            if random_source.random(current_sum) < left_sum:
                vertex = 2 * vertex
                right_bound = middle
                current_sum = left_sum
            else:
                vertex = 2 * vertex + 1
                left_bound = middle
                current_from = left_bound
                current_sum = right_sum

        logger.debug("Drew place %d from [%d, %d]", left_bound + 1, place, self.size)
        return left_bound + 1

    def _update_path(self, vertex: int, left_bound: int, right_bound: int, place: int, delta: int) -> None:
        self.tree[vertex - 1] += delta
        while left_bound < right_bound:
            middle = (left_bound + right_bound) // 2
            if place > middle:
                vertex = 2 * vertex + 1
                left_bound = middle + 1
            else:
                vertex = 2 * vertex
                right_bound = middle
            self.tree[vertex - 1] += delta

    def _check_place(self, place: int) -> None:
        if not 1 <= place <= self.size:
            raise InvalidPlace(f"Incorrect place {place}")

    @staticmethod
    def _check_delta(delta: int) -> None:
        if delta < 0:
            raise ValidationError(f"Delta must not be negative, got {delta}")
