"""Dataclasses shared across allocation, rotation and the DKG protocol.

每个集群的通道、投诉与轮换记录都以集群ID为键保存在对应组件中。
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, List, Optional, Set


# —— 椭圆曲线点 ——


@dataclass(frozen=True)
class G1Point:
    """G1 仿射坐标点 / Affine point on the base curve; (0, 0) is infinity."""

    x: int
    y: int


@dataclass(frozen=True)
class Fp2Point:
    """二次扩域元素 a + b·i / Element of the degree-2 extension field."""

    a: int
    b: int


@dataclass(frozen=True)
class G2Point:
    """G2 仿射坐标点 / Affine point on the twisted curve over Fp2."""

    x: Fp2Point
    y: Fp2Point


@dataclass(frozen=True)
class KeyShare:
    """加密份额 / Share encrypted for one recipient with an ephemeral ECDH key."""

    public_key: bytes  # 发送方临时公钥 (secp256k1, uncompressed)
    share: bytes  # 32 字节密文


# —— DKG 通道与投诉 ——


class ChannelStatus(Enum):
    IDLE = "idle"
    BROADCASTING = "broadcasting"
    ALL_BROADCAST = "all_broadcast"
    COMPLAINT_RAISED = "complaint_raised"  # 等待被投诉者 pre-response
    RESPONSE_PENDING = "response_pending"
    RESOLVED = "resolved"  # 判定存在故障节点
    COMPLETE = "complete"


@dataclass
class DkgChannel:
    """单轮DKG通道状态 / State of one DKG round for a cluster."""

    cluster_id: str
    status: ChannelStatus
    member_count: int
    round_id: int
    started_at: int
    broadcasted: List[bool]
    commit_hashes: List[Optional[bytes]]
    alright: List[bool]
    broadcasted_count: int = 0
    alright_count: int = 0
    all_broadcast_at: Optional[int] = None
    completed_at: Optional[int] = None
    faulty_node: Optional[int] = None


@dataclass
class ComplaintRecord:
    """投诉记录 / The single open complaint of a cluster."""

    accuser_node: int
    accused_node: int
    raised_at: int
    pre_response_submitted: bool = False
    resolved: bool = False
    pre_response_at: Optional[int] = None
    revealed_share: Optional[KeyShare] = None
    aggregated_commitment: Optional[G2Point] = None
    verification_vector: List[G2Point] = field(default_factory=list)
    verification_vector_multiplication: List[G2Point] = field(default_factory=list)


# —— 轮换 ——


@dataclass
class RotationRecord:
    """轮换记录 / Rotation bookkeeping kept per cluster."""

    cluster_id: str
    leaving_node: Optional[int] = None
    incoming_node: Optional[int] = None
    freeze_until: int = 0
    rotation_counter: int = 0
    finished_at: Optional[int] = None
    waiting_for_new_node: bool = False
    previous_node: Dict[int, int] = field(default_factory=dict)
    new_node_set: Set[int] = field(default_factory=set)


@dataclass(frozen=True)
class LeavingHistoryEntry:
    cluster_id: str
    finished_at: int


# —— 节点与集群 ——


class NodeStatus(Enum):
    ACTIVE = "active"
    IN_MAINTENANCE = "in_maintenance"
    LEAVING = "leaving"
    LEFT = "left"


@dataclass
class NodeRecord:
    node_id: int
    public_key: bytes
    free_space: int
    status: NodeStatus = NodeStatus.ACTIVE
    visible: bool = True


@dataclass
class ClusterRecord:
    """集群记录 / Group of nodes; ``None`` entries are slots awaiting a replacement."""

    cluster_id: str
    size: int
    part_of_node: int
    group: List[Optional[int]] = field(default_factory=list)
    exceptions: Set[int] = field(default_factory=set)
    active: bool = True

    @property
    def members(self) -> List[int]:
        return [node for node in self.group if node is not None]


# —— 事件 ——


@dataclass(frozen=True)
class ChannelOpened:
    cluster_id: str
    round_id: int


@dataclass(frozen=True)
class BroadcastAndKeyShare:
    cluster_id: str
    node_id: int
    verification_vector: List[G2Point]
    secret_key_contribution: List[KeyShare]


@dataclass(frozen=True)
class ComplaintSent:
    cluster_id: str
    accuser_node: int
    accused_node: int


@dataclass(frozen=True)
class ComplaintDismissed:
    cluster_id: str
    accuser_node: int
    accused_node: int


@dataclass(frozen=True)
class AllDataReceived:
    cluster_id: str
    node_id: int


@dataclass(frozen=True)
class SuccessfulDkg:
    cluster_id: str
    round_id: int


@dataclass(frozen=True)
class GroupKeyAvailable:
    cluster_id: str
    public_key: G2Point


@dataclass(frozen=True)
class FailedDkg:
    cluster_id: str
    round_id: int


@dataclass(frozen=True)
class NodeDeclaredFaulty:
    cluster_id: str
    node_id: int
    accuser_node: Optional[int]
    reason: str


@dataclass(frozen=True)
class NodeRotated:
    cluster_id: str
    leaving_node: int
    incoming_node: int
    finished_at: int


@dataclass(frozen=True)
class RotationDelaySkipped:
    cluster_id: str
