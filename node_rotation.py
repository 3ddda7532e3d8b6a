"""Replacement of departing or faulty cluster members."""

from __future__ import annotations

import copy
import logging
from typing import Dict, List, Optional

from cluster_registry import ClusterRegistry
from constants import ConstantsHolder
from data_models import LeavingHistoryEntry, NodeRotated, RotationDelaySkipped, RotationRecord
from dkg_coordinator import DkgCoordinator
from exceptions import (
    DkgNotFinished,
    NodeNotInGroup,
    NoFreeNodes,
    NoPreviousNode,
    RotationInProgress,
    ValidationError,
)
from ledger import Ledger, LedgerState
from random_generator import RandomGenerator

logger = logging.getLogger(__name__)


class GroupRotationManager(LedgerState):
    """轮换管理器 / Draws replacements and keeps the rotation lineage of each cluster.

    每次成功轮换都会为集群重新开启一轮 DKG。
    """

    _state_fields = ("rotations", "leaving_history")

    def __init__(
        self,
        registry: ClusterRegistry,
        dkg: DkgCoordinator,
        ledger: Ledger,
        constants: Optional[ConstantsHolder] = None,
    ) -> None:
        self.registry = registry
        self.dkg = dkg
        self.ledger = ledger
        self.events = ledger.events
        self.constants = constants or registry.constants
        self.rotations: Dict[str, RotationRecord] = {}
        self.leaving_history: Dict[int, List[LeavingHistoryEntry]] = {}

    # —— 退出 ——

    def exit_from_schain(self, node_id: int) -> bool:
        """节点退出一个集群 / Returns ``True`` once the node has no active cluster left."""
        cluster_id = self.registry.get_active_cluster(node_id)
        if cluster_id is None:
            return True
        if not self.dkg.is_last_dkg_successful(cluster_id):
            raise DkgNotFinished(f"DKG of cluster {cluster_id} is not finished")

        self._check_before_rotation(cluster_id, node_id)
        self.rotate_node(node_id, cluster_id, should_delay=True, is_faulty=False)
        return self.registry.get_active_cluster(node_id) is None

    def freeze_schains(self, node_id: int) -> None:
        """冻结节点所在的全部集群 / Open a rotation window in every cluster of the node."""
        for cluster_id in self.registry.get_clusters_for_node(node_id):
            self._check_before_rotation(cluster_id, node_id)

    # —— 轮换 ——

    def rotate_node(self, node_id: int, cluster_id: str, should_delay: bool, is_faulty: bool) -> int:
        """替换成员并重开DKG / Replace ``node_id`` in ``cluster_id`` and return the new node."""
        if not self.registry.is_node_in_group(cluster_id, node_id):
            raise NodeNotInGroup(f"Node {node_id} is not in cluster {cluster_id}")

        self.registry.remove_node_from_cluster(node_id, cluster_id)
        if not is_faulty:
            self.registry.remove_exception(cluster_id, node_id)
        new_node = self.select_replacement(cluster_id, leaving_node=node_id)
        self.registry.add_space_to_node(node_id, self.registry.get_part_of_node(cluster_id))

        self._finish_rotation(cluster_id, node_id, new_node, should_delay)
        return new_node

    def select_replacement(self, cluster_id: str, leaving_node: Optional[int] = None) -> int:
        """选取新节点 / Weighted draw that excludes current and recent members."""
        if not self.registry.is_cluster_active(cluster_id):
            raise ValidationError(f"Cluster {cluster_id} is not active")
        part_of_node = self.registry.get_part_of_node(cluster_id)

        self.registry.make_cluster_nodes_invisible(cluster_id)
        if leaving_node is not None:
            self.registry.make_node_invisible(leaving_node)
        try:
            if self.registry.count_nodes_with_free_space(part_of_node) == 0:
                raise NoFreeNodes(f"No free node for cluster {cluster_id}")
            random_generator = RandomGenerator.from_entropy(self.ledger.latest_entropy(), cluster_id)
            new_node = self.registry.get_random_node_with_free_space(part_of_node, random_generator)
            self.registry.remove_space_from_node(new_node, part_of_node)
        finally:
            self.registry.make_cluster_nodes_visible(cluster_id)
            if leaving_node is not None:
                self.registry.make_node_visible(leaving_node)
        self.registry.set_exception(cluster_id, new_node)
        self.registry.set_node_in_group(cluster_id, new_node)
        logger.debug("[Cluster %s] Selected node %s as replacement", cluster_id, new_node)
        return new_node

    def skip_rotation_delay(self, cluster_id: str) -> None:
        self.registry.get_cluster(cluster_id)
        rotation = self._get_or_create_rotation(cluster_id)
        rotation.freeze_until = self.ledger.now() - 1
        logger.info("[Cluster %s] Rotation delay skipped", cluster_id)
        self.events.publish(RotationDelaySkipped(cluster_id))

    def remove_rotation(self, cluster_id: str) -> None:
        self.rotations.pop(cluster_id, None)

    # —— 查询 ——

    def get_rotation(self, cluster_id: str) -> RotationRecord:
        rotation = self.rotations.get(cluster_id)
        if rotation is None:
            return RotationRecord(cluster_id=cluster_id)
        return copy.deepcopy(rotation)

    def get_leaving_history(self, node_id: int) -> List[LeavingHistoryEntry]:
        return list(self.leaving_history.get(node_id, []))

    def is_rotation_in_progress(self, cluster_id: str) -> bool:
        rotation = self.rotations.get(cluster_id)
        if rotation is None:
            return False
        return rotation.freeze_until >= self.ledger.now() and not self.is_new_node_found(cluster_id)

    def is_new_node_found(self, cluster_id: str) -> bool:
        rotation = self.rotations.get(cluster_id)
        return rotation is not None and not rotation.waiting_for_new_node

    def wait_for_new_node(self, cluster_id: str) -> bool:
        rotation = self.rotations.get(cluster_id)
        return rotation is not None and rotation.waiting_for_new_node

    def get_previous_node(self, cluster_id: str, node_id: int) -> int:
        rotation = self.rotations.get(cluster_id)
        if rotation is None or node_id not in rotation.previous_node:
            raise NoPreviousNode(f"No previous node for node {node_id} in cluster {cluster_id}")
        return rotation.previous_node[node_id]

    # —— 内部 ——

    def _get_or_create_rotation(self, cluster_id: str) -> RotationRecord:
        if cluster_id not in self.rotations:
            self.rotations[cluster_id] = RotationRecord(cluster_id=cluster_id)
        return self.rotations[cluster_id]

    def _check_before_rotation(self, cluster_id: str, node_id: int) -> None:
        rotation = self._get_or_create_rotation(cluster_id)
        now = self.ledger.now()
        if rotation.freeze_until < now:
            rotation.leaving_node = node_id
            rotation.freeze_until = now + self.constants.rotation_delay
            rotation.waiting_for_new_node = True
            logger.debug("[Cluster %s] Frozen until %d for node %s", cluster_id, rotation.freeze_until, node_id)
        elif rotation.leaving_node != node_id:
            raise RotationInProgress(f"Cluster {cluster_id} is rotating node {rotation.leaving_node}")

    def _finish_rotation(self, cluster_id: str, old_node: int, new_node: int, should_delay: bool) -> None:
        rotation = self._get_or_create_rotation(cluster_id)
        now = self.ledger.now()
        if should_delay:
            finished_at = now + self.constants.rotation_delay
        elif rotation.finished_at is not None:
            finished_at = max(now, rotation.finished_at + 1)
        else:
            finished_at = now

        history = self.leaving_history.setdefault(old_node, [])
        if history and finished_at <= history[-1].finished_at:
            finished_at = history[-1].finished_at + 1
        history.append(LeavingHistoryEntry(cluster_id=cluster_id, finished_at=finished_at))

        # 旧节点在 previous_node 中最多作为一个值出现
        for stale_node, previous in list(rotation.previous_node.items()):
            if previous == old_node:
                del rotation.previous_node[stale_node]
        rotation.previous_node[new_node] = old_node
        rotation.new_node_set.add(new_node)
        rotation.leaving_node = old_node
        rotation.incoming_node = new_node
        rotation.rotation_counter += 1
        rotation.finished_at = finished_at
        rotation.waiting_for_new_node = False

        logger.info("[Node %s] Rotated out of cluster %s, replaced by node %s", old_node, cluster_id, new_node)
        self.dkg.open_channel(cluster_id)
        self.events.publish(NodeRotated(cluster_id, old_node, new_node, finished_at))
