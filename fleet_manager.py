"""Boundary layer wiring the registry, DKG coordinator and rotation manager."""

from __future__ import annotations

import logging
from typing import Callable, List, Optional, Sequence

from cluster_registry import ClusterRegistry
from constants import ConstantsHolder
from data_models import (
    ChannelStatus,
    G2Point,
    KeyShare,
    LeavingHistoryEntry,
    NodeDeclaredFaulty,
    NodeRecord,
    NodeStatus,
    RotationRecord,
)
from dkg_coordinator import DkgCoordinator
from exceptions import PermissionDenied, ValidationError
from key_storage import KeyStorage
from ledger import Ledger, LedgerState
from node_rotation import GroupRotationManager

logger = logging.getLogger(__name__)


class FleetManager:
    """集群管理入口 / Every mutating call runs as one atomic ledger transaction.

    故障判定通过事件总线同步触发轮换，因此判定与替换在同一事务中完成。
    """

    def __init__(
        self,
        constants: Optional[ConstantsHolder] = None,
        ledger: Optional[Ledger] = None,
        is_admin: Optional[Callable[[object], bool]] = None,
    ) -> None:
        self.constants = constants or ConstantsHolder()
        self.ledger = ledger or Ledger()
        self.events = self.ledger.events
        self.is_admin = is_admin or (lambda caller: False)

        self.registry = ClusterRegistry(self.constants)
        self.key_storage = KeyStorage()
        self.dkg = DkgCoordinator(self.registry, self.ledger, self.constants, self.key_storage)
        self.rotation = GroupRotationManager(self.registry, self.dkg, self.ledger, self.constants)

        self.events.subscribe(NodeDeclaredFaulty, self._on_node_declared_faulty)

    @property
    def _components(self) -> List[LedgerState]:
        return [self.registry, self.key_storage, self.dkg, self.rotation]

    def _transaction(self):
        return self.ledger.transaction(self._components)

    # —— 节点与集群 ——

    def register_node(self, node_id: int, public_key: bytes, space: Optional[int] = None) -> NodeRecord:
        with self._transaction():
            return self.registry.register_node(node_id, public_key, space)

    def create_cluster(self, cluster_id: str, size: int, part_of_node: int) -> List[int]:
        """组建集群并开启首轮DKG / Form the group and open its first DKG channel."""
        with self._transaction():
            members = self.registry.create_cluster(cluster_id, size, part_of_node, self.ledger.latest_entropy())
            self.dkg.open_channel(cluster_id)
            return members

    def delete_cluster(self, cluster_id: str) -> List[int]:
        with self._transaction():
            members = self.registry.delete_cluster(cluster_id)
            self.dkg.delete_channel(cluster_id)
            self.key_storage.delete_key(cluster_id)
            self.rotation.remove_rotation(cluster_id)
            return members

    # —— DKG ——

    def broadcast(
        self,
        cluster_id: str,
        node_id: int,
        verification_vector: Sequence[G2Point],
        secret_key_contribution: Sequence[KeyShare],
    ) -> None:
        with self._transaction():
            self.dkg.broadcast(cluster_id, node_id, verification_vector, secret_key_contribution)

    def complain(self, cluster_id: str, accuser: int, accused: int) -> None:
        with self._transaction():
            self.dkg.complain(cluster_id, accuser, accused)

    def pre_response(
        self,
        cluster_id: str,
        accused: int,
        verification_vector: Sequence[G2Point],
        verification_vector_multiplication: Sequence[G2Point],
        secret_key_contribution: Sequence[KeyShare],
    ) -> None:
        with self._transaction():
            self.dkg.pre_response(
                cluster_id,
                accused,
                verification_vector,
                verification_vector_multiplication,
                secret_key_contribution,
            )

    def response(self, cluster_id: str, accused: int, secret_number: int, multiplied_share: G2Point) -> bool:
        with self._transaction():
            return self.dkg.response(cluster_id, accused, secret_number, multiplied_share)

    def resolve_expired_complaint(self, cluster_id: str) -> None:
        with self._transaction():
            self.dkg.resolve_expired_complaint(cluster_id)

    def alright(self, cluster_id: str, node_id: int) -> None:
        with self._transaction():
            self.dkg.alright(cluster_id, node_id)

    def finalize(self, cluster_id: str) -> None:
        with self._transaction():
            self.dkg.finalize(cluster_id)

    # —— 节点生命周期 ——

    def init_exit(self, node_id: int) -> None:
        """开始退出 / Freeze every cluster of the node, then mark it as leaving."""
        with self._transaction():
            self.rotation.freeze_schains(node_id)
            self.registry.init_exit(node_id)
            logger.info("[Node %s] Exit initiated", node_id)

    def node_exit(self, node_id: int) -> bool:
        """退出一个集群 / Returns ``True`` when the node has fully left the fleet."""
        with self._transaction():
            if self.registry.get_node(node_id).status != NodeStatus.LEAVING:
                raise ValidationError(f"Node {node_id} has not initiated exit")
            completed = self.rotation.exit_from_schain(node_id)
            if completed:
                self.registry.complete_exit(node_id)
            return completed

    def set_maintenance(self, node_id: int, in_maintenance: bool) -> None:
        with self._transaction():
            self.registry.set_maintenance(node_id, in_maintenance)

    def skip_rotation_delay(self, cluster_id: str, caller: object) -> None:
        if not self.is_admin(caller):
            raise PermissionDenied(f"{caller!r} may not skip the rotation delay")
        with self._transaction():
            self.rotation.skip_rotation_delay(cluster_id)

    # —— 查询 ——

    def get_members(self, cluster_id: str) -> List[int]:
        return self.registry.get_members(cluster_id)

    def get_rotation(self, cluster_id: str) -> RotationRecord:
        return self.rotation.get_rotation(cluster_id)

    def get_leaving_history(self, node_id: int) -> List[LeavingHistoryEntry]:
        return self.rotation.get_leaving_history(node_id)

    def is_rotation_in_progress(self, cluster_id: str) -> bool:
        return self.rotation.is_rotation_in_progress(cluster_id)

    def get_previous_node(self, cluster_id: str, node_id: int) -> int:
        return self.rotation.get_previous_node(cluster_id, node_id)

    def get_channel_status(self, cluster_id: str) -> ChannelStatus:
        return self.dkg.get_channel_status(cluster_id)

    def get_common_public_key(self, cluster_id: str) -> Optional[G2Point]:
        return self.key_storage.get_common_public_key(cluster_id)

    # —— 事件处理 ——

    def _on_node_declared_faulty(self, event: NodeDeclaredFaulty) -> None:
        cluster_id = event.cluster_id
        if self.registry.is_any_free_node(cluster_id):
            self.rotation.rotate_node(event.node_id, cluster_id, should_delay=False, is_faulty=True)
        else:
            self.registry.remove_node_from_cluster(event.node_id, cluster_id)
            self.registry.add_space_to_node(event.node_id, self.registry.get_part_of_node(cluster_id))
            logger.warning(
                "[Cluster %s] No free node to replace faulty node %s, removed without replacement",
                cluster_id,
                event.node_id,
            )
