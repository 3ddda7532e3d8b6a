"""Joint-Feldman DKG round state machine with commit/reveal dispute handling."""

from __future__ import annotations

import copy
import logging
from typing import Dict, List, Optional, Sequence

from cluster_registry import ClusterRegistry
from constants import CURVE_ORDER, ConstantsHolder
from crypto_manager import CryptoManager
from crypto_verifier import CryptoVerifier
from data_models import (
    AllDataReceived,
    BroadcastAndKeyShare,
    ChannelOpened,
    ChannelStatus,
    ComplaintDismissed,
    ComplaintRecord,
    ComplaintSent,
    DkgChannel,
    FailedDkg,
    G2Point,
    GroupKeyAvailable,
    KeyShare,
    NodeDeclaredFaulty,
    SuccessfulDkg,
)
from exceptions import (
    AlreadyAlright,
    AlreadyBroadcasted,
    ChannelNotOpened,
    CommitmentMismatch,
    ComplaintAlreadyOpen,
    ComplaintTooEarly,
    DeadlineNotReached,
    IncorrectChannelState,
    InvalidComplaint,
    InvalidPoint,
    InvalidVectorLength,
    NodeNotInGroup,
    NoOpenComplaint,
    PreResponseAlreadySubmitted,
    PreResponseMissing,
    TimeLimitExceeded,
    ValidationError,
)
from key_storage import KeyStorage
from ledger import Ledger, LedgerState

logger = logging.getLogger(__name__)

_ACTIVE_STATUSES = (
    ChannelStatus.BROADCASTING,
    ChannelStatus.ALL_BROADCAST,
    ChannelStatus.COMPLAINT_RAISED,
    ChannelStatus.RESPONSE_PENDING,
)


class DkgCoordinator(LedgerState):
    """DKG协调器 / One channel per cluster, one round at a time.

    状态流转::

        IDLE → BROADCASTING → ALL_BROADCAST → COMPLETE
                    ↓               ↘ COMPLAINT_RAISED → RESPONSE_PENDING → (驳回 | RESOLVED)
                 RESOLVED (未广播)

    成员以节点ID调用，其槽位为在集群成员列表中的位置。
    所有时间比较都使用账本时间。
    """

    _state_fields = ("channels", "complaints", "last_successful_round", "round_counter")

    def __init__(
        self,
        registry: ClusterRegistry,
        ledger: Ledger,
        constants: Optional[ConstantsHolder] = None,
        key_storage: Optional[KeyStorage] = None,
    ) -> None:
        self.registry = registry
        self.ledger = ledger
        self.events = ledger.events
        self.constants = constants or registry.constants
        self.key_storage = key_storage or KeyStorage()
        self.channels: Dict[str, DkgChannel] = {}
        self.complaints: Dict[str, ComplaintRecord] = {}
        self.last_successful_round: Dict[str, int] = {}
        self.round_counter: Dict[str, int] = {}

    @staticmethod
    def get_threshold(member_count: int) -> int:
        """t = ceil(2n / 3)"""
        return (2 * member_count + 2) // 3

    # —— 通道 ——

    def open_channel(self, cluster_id: str) -> DkgChannel:
        """开启新一轮 / Reset the channel, flags and complaint slot for a fresh round."""
        members = self.registry.get_members(cluster_id)
        n = len(members)
        if n == 0:
            raise ValidationError(f"Cluster {cluster_id} has no members")

        round_id = self.round_counter.get(cluster_id, 0) + 1
        self.round_counter[cluster_id] = round_id
        channel = DkgChannel(
            cluster_id=cluster_id,
            status=ChannelStatus.BROADCASTING,
            member_count=n,
            round_id=round_id,
            started_at=self.ledger.now(),
            broadcasted=[False] * n,
            commit_hashes=[None] * n,
            alright=[False] * n,
        )
        self.channels[cluster_id] = channel
        self.complaints.pop(cluster_id, None)
        self.key_storage.init_public_key_in_progress(cluster_id)

        logger.info("[Cluster %s] Opened DKG round %d for %d members", cluster_id, round_id, n)
        self.events.publish(ChannelOpened(cluster_id, round_id))
        return channel

    def delete_channel(self, cluster_id: str) -> None:
        self.channels.pop(cluster_id, None)
        self.complaints.pop(cluster_id, None)
        self.last_successful_round.pop(cluster_id, None)
        self.round_counter.pop(cluster_id, None)

    # —— 广播 ——

    def broadcast(
        self,
        cluster_id: str,
        node_id: int,
        verification_vector: Sequence[G2Point],
        secret_key_contribution: Sequence[KeyShare],
    ) -> None:
        """广播验证向量和加密份额 / Record a commitment to the member's contribution."""
        channel = self._get_opened_channel(cluster_id)
        slot = self._slot(cluster_id, node_id)
        if channel.broadcasted[slot]:
            raise AlreadyBroadcasted(f"Node {node_id} has already broadcasted in cluster {cluster_id}")
        if channel.status != ChannelStatus.BROADCASTING:
            raise IncorrectChannelState(f"Channel of cluster {cluster_id} is {channel.status.value}")

        n = channel.member_count
        t = self.get_threshold(n)
        if len(verification_vector) != t:
            raise InvalidVectorLength(f"Verification vector must have {t} points, got {len(verification_vector)}")
        if len(secret_key_contribution) != n:
            raise InvalidVectorLength(f"Secret key contribution must have {n} shares, got {len(secret_key_contribution)}")
        self._require_g2_points(verification_vector, "verification vector")
        self._require_key_shares(secret_key_contribution)
        now = self.ledger.now()
        if now >= channel.started_at + self.constants.complaint_time_limit:
            raise TimeLimitExceeded(f"Incorrect time for broadcast in cluster {cluster_id}")

        channel.commit_hashes[slot] = CryptoManager.commitment_hash(secret_key_contribution, verification_vector)
        channel.broadcasted[slot] = True
        channel.broadcasted_count += 1
        self.key_storage.add_public_key_part(cluster_id, verification_vector[0])
        if channel.broadcasted_count == n:
            channel.status = ChannelStatus.ALL_BROADCAST
            channel.all_broadcast_at = now

        logger.info(
            "[Cluster %s] Node %s broadcasted (%d/%d)",
            cluster_id,
            node_id,
            channel.broadcasted_count,
            n,
        )
        self.events.publish(
            BroadcastAndKeyShare(
                cluster_id=cluster_id,
                node_id=node_id,
                verification_vector=list(verification_vector),
                secret_key_contribution=list(secret_key_contribution),
            )
        )

    # —— 投诉流程 ——

    def complain(self, cluster_id: str, accuser: int, accused: int) -> None:
        """投诉 / Raise a data complaint or settle a missed deadline against ``accused``."""
        channel = self._get_opened_channel(cluster_id)
        if channel.status not in _ACTIVE_STATUSES:
            raise IncorrectChannelState(f"Channel of cluster {cluster_id} is {channel.status.value}")
        if accuser == accused:
            raise InvalidComplaint("A node cannot complain about itself")
        self._slot(cluster_id, accuser)
        accused_slot = self._slot(cluster_id, accused)
        now = self.ledger.now()
        limit = self.constants.complaint_time_limit

        complaint = self.complaints.get(cluster_id)
        if complaint is not None and not complaint.resolved:
            if complaint.accused_node == accused and now >= complaint.raised_at + limit:
                self._declare_faulty(channel, accused, complaint.accuser_node, "response timeout")
                return
            raise ComplaintAlreadyOpen(f"Cluster {cluster_id} already has an open complaint")

        if not channel.broadcasted[accused_slot]:
            if now >= channel.started_at + limit:
                self._declare_faulty(channel, accused, accuser, "no broadcast")
                return
            raise ComplaintTooEarly(f"Node {accused} may still broadcast in cluster {cluster_id}")

        # 数据投诉需等全部成员广播完成
        if channel.status != ChannelStatus.ALL_BROADCAST:
            raise ComplaintTooEarly(f"Not every member of cluster {cluster_id} has broadcasted")
        if now >= channel.all_broadcast_at + limit:
            raise TimeLimitExceeded(f"Complaint window of cluster {cluster_id} is closed")

        self.complaints[cluster_id] = ComplaintRecord(accuser_node=accuser, accused_node=accused, raised_at=now)
        channel.status = ChannelStatus.COMPLAINT_RAISED
        logger.info("[Cluster %s] Node %s complained about node %s", cluster_id, accuser, accused)
        self.events.publish(ComplaintSent(cluster_id, accuser, accused))

    def pre_response(
        self,
        cluster_id: str,
        accused: int,
        verification_vector: Sequence[G2Point],
        verification_vector_multiplication: Sequence[G2Point],
        secret_key_contribution: Sequence[KeyShare],
    ) -> None:
        """公开承诺内容 / Reveal the committed broadcast plus the multiplied vector."""
        channel = self._get_opened_channel(cluster_id)
        complaint = self._get_complaint_against(cluster_id, accused)
        if complaint.pre_response_submitted:
            raise PreResponseAlreadySubmitted(f"Node {accused} has already sent a pre-response")
        self._check_complaint_deadline(cluster_id, complaint)

        n = channel.member_count
        t = self.get_threshold(n)
        if len(verification_vector) != len(verification_vector_multiplication):
            raise InvalidVectorLength("Verification vector and its multiplication differ in length")
        if len(verification_vector) != t:
            raise InvalidVectorLength(f"Verification vector must have {t} points")
        if len(secret_key_contribution) != n:
            raise InvalidVectorLength(f"Secret key contribution must have {n} shares")

        accused_slot = self._slot(cluster_id, accused)
        commitment = CryptoManager.commitment_hash(secret_key_contribution, verification_vector)
        if commitment != channel.commit_hashes[accused_slot]:
            raise CommitmentMismatch(f"Pre-response of node {accused} does not match its broadcast")
        self._require_g2_points(verification_vector_multiplication, "verification vector multiplication")

        accuser_slot = self._slot(cluster_id, complaint.accuser_node)
        complaint.revealed_share = secret_key_contribution[accuser_slot]
        complaint.aggregated_commitment = CryptoVerifier.sum_g2(verification_vector_multiplication)
        complaint.verification_vector = list(verification_vector)
        complaint.verification_vector_multiplication = list(verification_vector_multiplication)
        complaint.pre_response_submitted = True
        complaint.pre_response_at = self.ledger.now()
        channel.status = ChannelStatus.RESPONSE_PENDING
        logger.info("[Cluster %s] Node %s sent pre-response", cluster_id, accused)

    def response(
        self,
        cluster_id: str,
        accused: int,
        secret_number: int,
        multiplied_share: G2Point,
    ) -> bool:
        """验证被投诉者的份额 / Returns ``True`` when the complaint is dismissed.

        The accused reveals the ephemeral secret of the share sent to the accuser,
        which lets anyone decrypt it and check it against the verification vector.
        """
        channel = self._get_opened_channel(cluster_id)
        complaint = self._get_complaint_against(cluster_id, accused)
        if not complaint.pre_response_submitted:
            raise PreResponseMissing(f"Node {accused} has not sent a pre-response")
        self._check_complaint_deadline(cluster_id, complaint)
        if not CryptoVerifier.is_g2(multiplied_share):
            raise InvalidPoint("Multiplied share is not a valid G2 point")

        accuser_public_key = self.registry.get_node_public_key(complaint.accuser_node)
        share = CryptoManager.decrypt_share_with_secret_number(
            complaint.revealed_share,
            secret_number,
            accuser_public_key,
        )
        accuser_slot = self._slot(cluster_id, complaint.accuser_node)
        is_correct = (
            self._check_correct_vector_multiplication(
                accuser_slot,
                complaint.verification_vector,
                complaint.verification_vector_multiplication,
            )
            and CryptoVerifier.verify_share(share, multiplied_share)
            and multiplied_share == complaint.aggregated_commitment
        )

        if is_correct:
            self._dismiss_complaint(channel, complaint)
        else:
            self._declare_faulty(channel, accused, complaint.accuser_node, "verification failed")
        return is_correct

    def resolve_expired_complaint(self, cluster_id: str) -> None:
        """超时结算 / Anyone may settle a complaint whose deadline has passed."""
        channel = self._get_opened_channel(cluster_id)
        complaint = self.get_complaint(cluster_id)
        if complaint is None:
            raise NoOpenComplaint(f"Cluster {cluster_id} has no open complaint")
        if self.ledger.now() < complaint.raised_at + self.constants.complaint_time_limit:
            raise DeadlineNotReached(f"Node {complaint.accused_node} may still respond")
        self._declare_faulty(channel, complaint.accused_node, complaint.accuser_node, "response timeout")

    # —— 完成 ——

    def alright(self, cluster_id: str, node_id: int) -> None:
        """成员确认收到全部有效数据 / Completes the round once every member agrees."""
        channel = self._get_opened_channel(cluster_id)
        slot = self._slot(cluster_id, node_id)
        if channel.alright[slot]:
            raise AlreadyAlright(f"Node {node_id} has already sent alright")
        if channel.status != ChannelStatus.ALL_BROADCAST:
            raise IncorrectChannelState(f"Channel of cluster {cluster_id} is {channel.status.value}")
        if self.ledger.now() >= channel.all_broadcast_at + self.constants.complaint_time_limit:
            raise TimeLimitExceeded(f"Incorrect time for alright in cluster {cluster_id}")

        channel.alright[slot] = True
        channel.alright_count += 1
        self.events.publish(AllDataReceived(cluster_id, node_id))
        if channel.alright_count == channel.member_count:
            self._complete(channel)

    def finalize(self, cluster_id: str) -> None:
        channel = self._get_opened_channel(cluster_id)
        if channel.status != ChannelStatus.ALL_BROADCAST:
            raise IncorrectChannelState(f"Channel of cluster {cluster_id} is {channel.status.value}")
        if self.ledger.now() < channel.all_broadcast_at + self.constants.complaint_time_limit:
            raise DeadlineNotReached(f"Complaint window of cluster {cluster_id} is still open")
        self._complete(channel)

    # —— 查询 ——

    def get_channel(self, cluster_id: str) -> Optional[DkgChannel]:
        channel = self.channels.get(cluster_id)
        return copy.deepcopy(channel) if channel is not None else None

    def get_channel_status(self, cluster_id: str) -> ChannelStatus:
        channel = self.channels.get(cluster_id)
        return channel.status if channel is not None else ChannelStatus.IDLE

    def get_complaint(self, cluster_id: str) -> Optional[ComplaintRecord]:
        complaint = self.complaints.get(cluster_id)
        if complaint is None or complaint.resolved:
            return None
        return complaint

    def get_complaint_deadline(self, cluster_id: str) -> Optional[int]:
        complaint = self.get_complaint(cluster_id)
        if complaint is None:
            return None
        return complaint.raised_at + self.constants.complaint_time_limit

    def is_channel_opened(self, cluster_id: str) -> bool:
        return self.get_channel_status(cluster_id) in _ACTIVE_STATUSES

    def is_node_broadcasted(self, cluster_id: str, node_id: int) -> bool:
        channel = self._get_opened_channel(cluster_id)
        return channel.broadcasted[self._slot(cluster_id, node_id)]

    def is_everyone_broadcasted(self, cluster_id: str) -> bool:
        channel = self.channels.get(cluster_id)
        return channel is not None and channel.broadcasted_count == channel.member_count

    def is_last_dkg_successful(self, cluster_id: str) -> bool:
        return self.get_channel_status(cluster_id) == ChannelStatus.COMPLETE

    # —— 内部 ——

    def _get_opened_channel(self, cluster_id: str) -> DkgChannel:
        channel = self.channels.get(cluster_id)
        if channel is None or channel.status == ChannelStatus.IDLE:
            raise ChannelNotOpened(f"DKG channel of cluster {cluster_id} is not opened")
        return channel

    def _slot(self, cluster_id: str, node_id: int) -> int:
        members = self.registry.get_members(cluster_id)
        if node_id not in members:
            raise NodeNotInGroup(f"Node {node_id} is not in cluster {cluster_id}")
        return members.index(node_id)

    def _get_complaint_against(self, cluster_id: str, accused: int) -> ComplaintRecord:
        complaint = self.get_complaint(cluster_id)
        if complaint is None or complaint.accused_node != accused:
            raise NoOpenComplaint(f"No open complaint against node {accused} in cluster {cluster_id}")
        return complaint

    def _check_complaint_deadline(self, cluster_id: str, complaint: ComplaintRecord) -> None:
        if self.ledger.now() >= complaint.raised_at + self.constants.complaint_time_limit:
            raise TimeLimitExceeded(f"Response window of cluster {cluster_id} is closed")

    @staticmethod
    def _check_correct_vector_multiplication(
        index: int,
        verification_vector: List[G2Point],
        verification_vector_multiplication: List[G2Point],
    ) -> bool:
        """逐项检查 vvm[i] = (index + 1)^i · vv[i]."""
        generator = CryptoVerifier.g1_generator()
        power = 1
        for vector, vector_mul in zip(verification_vector, verification_vector_multiplication):
            g1_mul = CryptoVerifier.mul_g1(generator, power)
            if not CryptoVerifier.verify_quadruple(g1_mul, vector, vector_mul):
                return False
            power = power * (index + 1) % CURVE_ORDER
        return True

    @staticmethod
    def _require_g2_points(points: Sequence[G2Point], name: str) -> None:
        for point in points:
            if not CryptoVerifier.is_g2(point):
                raise InvalidPoint(f"Invalid point in {name}")

    @staticmethod
    def _require_key_shares(key_shares: Sequence[KeyShare]) -> None:
        for key_share in key_shares:
            if len(key_share.share) != 32 or not key_share.public_key:
                raise ValidationError("Malformed key share")

    def _dismiss_complaint(self, channel: DkgChannel, complaint: ComplaintRecord) -> None:
        cluster_id = channel.cluster_id
        self.complaints.pop(cluster_id, None)
        channel.status = ChannelStatus.ALL_BROADCAST
        logger.info(
            "[Cluster %s] Complaint of node %s against node %s dismissed",
            cluster_id,
            complaint.accuser_node,
            complaint.accused_node,
        )
        self.events.publish(ComplaintDismissed(cluster_id, complaint.accuser_node, complaint.accused_node))

    def _declare_faulty(self, channel: DkgChannel, node_id: int, accuser: Optional[int], reason: str) -> None:
        cluster_id = channel.cluster_id
        complaint = self.complaints.get(cluster_id)
        if complaint is not None:
            complaint.resolved = True
        channel.status = ChannelStatus.RESOLVED
        channel.faulty_node = node_id
        logger.warning("[Cluster %s] Node %s declared faulty: %s", cluster_id, node_id, reason)
        self.events.publish(FailedDkg(cluster_id, channel.round_id))
        self.events.publish(NodeDeclaredFaulty(cluster_id, node_id, accuser, reason))

    def _complete(self, channel: DkgChannel) -> None:
        cluster_id = channel.cluster_id
        channel.status = ChannelStatus.COMPLETE
        channel.completed_at = self.ledger.now()
        self.last_successful_round[cluster_id] = channel.round_id
        public_key = self.key_storage.finalize_public_key(cluster_id)
        logger.info("[Cluster %s] DKG round %d complete", cluster_id, channel.round_id)
        self.events.publish(SuccessfulDkg(cluster_id, channel.round_id))
        self.events.publish(GroupKeyAvailable(cluster_id, public_key))
