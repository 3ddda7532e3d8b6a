"""In-memory node capacity and cluster membership bookkeeping."""

from __future__ import annotations

import logging
from typing import Dict, List, Optional

from constants import ConstantsHolder
from crypto_manager import CryptoManager
from data_models import ClusterRecord, NodeRecord, NodeStatus
from exceptions import (
    ClusterAlreadyExists,
    NodeHasActiveClusters,
    NodeNotInGroup,
    NoFreeNodes,
    Underflow,
    UnknownCluster,
    UnknownNode,
    ValidationError,
)
from ledger import LedgerState
from random_generator import RandomGenerator
from weighted_allocator import RandomSource, WeightedAllocator

logger = logging.getLogger(__name__)


class ClusterRegistry(LedgerState):
    """节点容量与集群成员登记 / Membership collaborator used by DKG and rotation.

    分配树的叶子 p 记录剩余容量恰好为 p 的可选节点数量，
    ``space_to_nodes[p]`` 列出这些节点。只有处于 ACTIVE 状态且可见的节点参与抽取。
    """

    _state_fields = ("nodes", "space_to_nodes", "allocator", "clusters", "clusters_for_nodes")

    def __init__(self, constants: Optional[ConstantsHolder] = None) -> None:
        self.constants = constants or ConstantsHolder()
        self.allocator = WeightedAllocator.create(self.constants.total_space_on_node)
        self.nodes: Dict[int, NodeRecord] = {}
        self.space_to_nodes: Dict[int, List[int]] = {}
        self.clusters: Dict[str, ClusterRecord] = {}
        self.clusters_for_nodes: Dict[int, List[str]] = {}

    # —— 节点 ——

    def register_node(self, node_id: int, public_key: bytes, space: Optional[int] = None) -> NodeRecord:
        if node_id in self.nodes:
            raise ValidationError(f"Node {node_id} is already registered")
        CryptoManager.load_public_key(public_key)
        total = self.constants.total_space_on_node
        space = total if space is None else space
        if not 0 <= space <= total:
            raise ValidationError(f"Node space must be within [0, {total}]")

        record = NodeRecord(node_id=node_id, public_key=public_key, free_space=space)
        self.nodes[node_id] = record
        self.clusters_for_nodes[node_id] = []
        self._expose(record)
        logger.info("[Node %s] Registered with %d free space", node_id, space)
        return record

    def get_node(self, node_id: int) -> NodeRecord:
        try:
            return self.nodes[node_id]
        except KeyError:
            raise UnknownNode(f"Node {node_id} does not exist") from None

    def get_node_public_key(self, node_id: int) -> bytes:
        return self.get_node(node_id).public_key

    def get_free_space(self, node_id: int) -> int:
        return self.get_node(node_id).free_space

    def make_node_invisible(self, node_id: int) -> None:
        record = self.get_node(node_id)
        if not record.visible:
            return
        if self._is_drawable(record):
            self._conceal(record)
        record.visible = False

    def make_node_visible(self, node_id: int) -> None:
        record = self.get_node(node_id)
        if record.visible:
            return
        record.visible = True
        if self._is_drawable(record):
            self._expose(record)

    def remove_space_from_node(self, node_id: int, space: int) -> None:
        record = self.get_node(node_id)
        if record.free_space < space:
            raise Underflow(f"Node {node_id} has {record.free_space} free space, {space} required")
        self._change_space(record, record.free_space - space)

    def add_space_to_node(self, node_id: int, space: int) -> None:
        record = self.get_node(node_id)
        new_space = record.free_space + space
        if new_space > self.constants.total_space_on_node:
            raise ValidationError(f"Node {node_id} cannot hold more than {self.constants.total_space_on_node}")
        self._change_space(record, new_space)

    def count_nodes_with_free_space(self, space: int) -> int:
        return self.allocator.sum_from_place_to_last(max(space, 1))

    def get_random_node_with_free_space(self, space: int, random_source: RandomSource) -> int:
        """先按容量层抽取，再在该层内均匀抽取节点."""
        place = self.allocator.get_random_element_from_place_to_last(max(space, 1), random_source)
        if place == 0:
            raise NoFreeNodes(f"No node with {space} free space")
        bucket = self.space_to_nodes[place]
        return bucket[random_source.random(len(bucket))]

    # —— 节点生命周期 ——

    def init_exit(self, node_id: int) -> None:
        record = self.get_node(node_id)
        if record.status not in (NodeStatus.ACTIVE, NodeStatus.IN_MAINTENANCE):
            raise ValidationError(f"Node {node_id} cannot start exiting from {record.status.value}")
        self._set_status(record, NodeStatus.LEAVING)

    def complete_exit(self, node_id: int) -> None:
        record = self.get_node(node_id)
        if record.status != NodeStatus.LEAVING:
            raise ValidationError(f"Node {node_id} is not leaving")
        if self.clusters_for_nodes[node_id]:
            raise NodeHasActiveClusters(f"Node {node_id} still belongs to {self.clusters_for_nodes[node_id]}")
        self._set_status(record, NodeStatus.LEFT)
        logger.info("[Node %s] Left the fleet", node_id)

    def set_maintenance(self, node_id: int, in_maintenance: bool) -> None:
        record = self.get_node(node_id)
        if in_maintenance and record.status == NodeStatus.ACTIVE:
            self._set_status(record, NodeStatus.IN_MAINTENANCE)
        elif not in_maintenance and record.status == NodeStatus.IN_MAINTENANCE:
            self._set_status(record, NodeStatus.ACTIVE)
        else:
            raise ValidationError(f"Node {node_id} is {record.status.value}")

    # —— 集群 ——

    def create_cluster(self, cluster_id: str, size: int, part_of_node: int, entropy: bytes) -> List[int]:
        """组建集群 / Draw ``size`` distinct nodes weighted by free capacity."""
        if cluster_id in self.clusters:
            raise ClusterAlreadyExists(f"Cluster {cluster_id} already exists")
        if size <= 0:
            raise ValidationError("Cluster size must be positive")
        if not 0 <= part_of_node <= self.constants.total_space_on_node:
            raise ValidationError(f"Incorrect part of node {part_of_node}")
        if self.count_nodes_with_free_space(part_of_node) < size:
            raise NoFreeNodes(f"Not enough nodes to create cluster {cluster_id}")

        cluster = ClusterRecord(cluster_id=cluster_id, size=size, part_of_node=part_of_node)
        self.clusters[cluster_id] = cluster
        random_generator = RandomGenerator.from_entropy(entropy, cluster_id)
        for _ in range(size):
            node_id = self.get_random_node_with_free_space(part_of_node, random_generator)
            cluster.group.append(node_id)
            cluster.exceptions.add(node_id)
            self.clusters_for_nodes[node_id].append(cluster_id)
            # 隐藏已选节点，保证同一集群内不重复
            self.make_node_invisible(node_id)
            self.remove_space_from_node(node_id, part_of_node)
        self.make_cluster_nodes_visible(cluster_id)

        logger.info("[Cluster %s] Formed with members %s", cluster_id, cluster.group)
        return list(cluster.group)

    def delete_cluster(self, cluster_id: str) -> List[int]:
        cluster = self.get_cluster(cluster_id)
        members = cluster.members
        for node_id in members:
            self.clusters_for_nodes[node_id].remove(cluster_id)
            self.add_space_to_node(node_id, cluster.part_of_node)
        del self.clusters[cluster_id]
        logger.info("[Cluster %s] Deleted, released %s", cluster_id, members)
        return members

    def get_cluster(self, cluster_id: str) -> ClusterRecord:
        try:
            return self.clusters[cluster_id]
        except KeyError:
            raise UnknownCluster(f"Cluster {cluster_id} does not exist") from None

    def is_cluster_active(self, cluster_id: str) -> bool:
        cluster = self.clusters.get(cluster_id)
        return cluster is not None and cluster.active

    def get_members(self, cluster_id: str) -> List[int]:
        return self.get_cluster(cluster_id).members

    def get_part_of_node(self, cluster_id: str) -> int:
        return self.get_cluster(cluster_id).part_of_node

    def is_node_in_group(self, cluster_id: str, node_id: int) -> bool:
        return node_id in self.get_cluster(cluster_id).group

    def get_node_index_in_group(self, cluster_id: str, node_id: int) -> int:
        group = self.get_cluster(cluster_id).group
        if node_id not in group:
            raise NodeNotInGroup(f"Node {node_id} is not in cluster {cluster_id}")
        return group.index(node_id)

    def remove_node_from_cluster(self, node_id: int, cluster_id: str) -> int:
        """移除成员并留下空位 / The next ``set_node_in_group`` fills the freed slot."""
        cluster = self.get_cluster(cluster_id)
        index = self.get_node_index_in_group(cluster_id, node_id)
        if index == len(cluster.group) - 1:
            cluster.group.pop()
        else:
            cluster.group[index] = None
        self.clusters_for_nodes[node_id].remove(cluster_id)
        return index

    def set_node_in_group(self, cluster_id: str, node_id: int) -> int:
        cluster = self.get_cluster(cluster_id)
        if node_id in cluster.group:
            raise ValidationError(f"Node {node_id} is already in cluster {cluster_id}")
        if None in cluster.group:
            index = cluster.group.index(None)
            cluster.group[index] = node_id
        elif len(cluster.group) < cluster.size:
            cluster.group.append(node_id)
            index = len(cluster.group) - 1
        else:
            raise ValidationError(f"Cluster {cluster_id} is full")
        self.clusters_for_nodes[node_id].append(cluster_id)
        return index

    def set_exception(self, cluster_id: str, node_id: int) -> None:
        self.get_cluster(cluster_id).exceptions.add(node_id)

    def remove_exception(self, cluster_id: str, node_id: int) -> None:
        self.get_cluster(cluster_id).exceptions.discard(node_id)

    def is_exception(self, cluster_id: str, node_id: int) -> bool:
        return node_id in self.get_cluster(cluster_id).exceptions

    def make_cluster_nodes_invisible(self, cluster_id: str) -> None:
        for node_id in sorted(self.get_cluster(cluster_id).exceptions):
            self.make_node_invisible(node_id)

    def make_cluster_nodes_visible(self, cluster_id: str) -> None:
        for node_id in sorted(self.get_cluster(cluster_id).exceptions):
            self.make_node_visible(node_id)

    def is_any_free_node(self, cluster_id: str) -> bool:
        part_of_node = self.get_part_of_node(cluster_id)
        self.make_cluster_nodes_invisible(cluster_id)
        try:
            return self.count_nodes_with_free_space(part_of_node) > 0
        finally:
            self.make_cluster_nodes_visible(cluster_id)

    def get_active_cluster(self, node_id: int) -> Optional[str]:
        """节点最近加入的活跃集群 / The cluster a node exits next, if any."""
        self.get_node(node_id)
        for cluster_id in reversed(self.clusters_for_nodes[node_id]):
            if self.is_cluster_active(cluster_id):
                return cluster_id
        return None

    def get_clusters_for_node(self, node_id: int) -> List[str]:
        self.get_node(node_id)
        return [cluster_id for cluster_id in self.clusters_for_nodes[node_id] if self.is_cluster_active(cluster_id)]

    # —— 内部 ——

    @staticmethod
    def _is_drawable(record: NodeRecord) -> bool:
        return record.visible and record.status == NodeStatus.ACTIVE

    def _set_status(self, record: NodeRecord, status: NodeStatus) -> None:
        if self._is_drawable(record):
            self._conceal(record)
        record.status = status
        if self._is_drawable(record):
            self._expose(record)

    def _change_space(self, record: NodeRecord, new_space: int) -> None:
        old_space = record.free_space
        if old_space == new_space:
            return
        if self._is_drawable(record):
            if old_space > 0:
                self.space_to_nodes[old_space].remove(record.node_id)
            if new_space > 0:
                self.space_to_nodes.setdefault(new_space, []).append(record.node_id)
            if old_space > 0 and new_space > 0:
                self.allocator.move_from_place_to_place(old_space, new_space, 1)
            elif old_space > 0:
                self.allocator.remove_from_place(old_space, 1)
            else:
                self.allocator.add_to_place(new_space, 1)
        record.free_space = new_space

    def _expose(self, record: NodeRecord) -> None:
        if record.free_space > 0:
            self.space_to_nodes.setdefault(record.free_space, []).append(record.node_id)
            self.allocator.add_to_place(record.free_space, 1)

    def _conceal(self, record: NodeRecord) -> None:
        if record.free_space > 0:
            self.space_to_nodes[record.free_space].remove(record.node_id)
            self.allocator.remove_from_place(record.free_space, 1)
