"""Shared constants for cluster allocation, rotation and the DKG protocol.

曲线参数取自 BN254（alt_bn128），与配对检查保持一致。
"""

from __future__ import annotations

from dataclasses import dataclass

from py_ecc.optimized_bn128 import curve_order, field_modulus

from exceptions import InvalidConfiguration

FIELD_MODULUS: int = field_modulus  # 基域大小 p
CURVE_ORDER: int = curve_order  # 群阶 r，多项式系数与份额均在 GF(r) 上

TOTAL_SPACE_ON_NODE: int = 128  # 每个节点的容量单位总数，同时是分配树的叶子数
COMPLAINT_TIME_LIMIT: int = 1800  # 30 分钟
ROTATION_DELAY: int = 12 * 60 * 60  # 12 小时


@dataclass(frozen=True)
class ConstantsHolder:
    """运行参数 / Durations and sizes injected into the core components."""

    complaint_time_limit: int = COMPLAINT_TIME_LIMIT
    rotation_delay: int = ROTATION_DELAY
    total_space_on_node: int = TOTAL_SPACE_ON_NODE

    def __post_init__(self) -> None:
        if self.complaint_time_limit <= 0:
            raise InvalidConfiguration("complaint_time_limit must be positive")
        if self.rotation_delay < 0:
            raise InvalidConfiguration("rotation_delay must not be negative")
        size = self.total_space_on_node
        if size <= 0 or size & (size - 1):
            raise InvalidConfiguration("total_space_on_node must be a power of two")
