"""
Unit tests for the DkgCoordinator state machine.

Covers:
1. Honest rounds completing through alright or finalize
2. Broadcast validation and replay protection
3. Complaint, pre-response and response outcomes
4. Deadline handling for missing broadcasts and missing responses
"""

from typing import Dict, Optional, Sequence

import pytest

from crypto_verifier import CryptoVerifier
from data_models import (
    ChannelStatus,
    ComplaintDismissed,
    FailedDkg,
    Fp2Point,
    G2Point,
    GroupKeyAvailable,
    NodeDeclaredFaulty,
    SuccessfulDkg,
)
from dkg_coordinator import DkgCoordinator
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
    InvalidSecretNumber,
    InvalidVectorLength,
    NodeNotInGroup,
    NoOpenComplaint,
    PreResponseAlreadySubmitted,
    PreResponseMissing,
    TimeLimitExceeded,
)
from participant import DkgParticipant, reconstruct_secret

CLUSTER = "alpha"
LIMIT = 1800


@pytest.fixture
def setup(registry, ledger):
    """Four registered nodes, one cluster of four, channel opened."""
    participants: Dict[int, DkgParticipant] = {}
    for node_id in range(1, 5):
        participant = DkgParticipant(node_id)
        participants[node_id] = participant
        registry.register_node(node_id, participant.public_key)
    registry.create_cluster(CLUSTER, 4, 32, ledger.latest_entropy())
    dkg = DkgCoordinator(registry, ledger)
    dkg.open_channel(CLUSTER)
    return dkg, participants


def _broadcast(
    dkg: DkgCoordinator,
    participants: Dict[int, DkgParticipant],
    skip: Sequence[int] = (),
    corrupt: Optional[Dict[int, Sequence[int]]] = None,
) -> None:
    corrupt = corrupt or {}
    members = dkg.registry.get_members(CLUSTER)
    public_keys = {node_id: dkg.registry.get_node_public_key(node_id) for node_id in members}
    for node_id in members:
        if node_id in skip:
            continue
        slots = [members.index(victim) for victim in corrupt.get(node_id, ())]
        vv, contribution = participants[node_id].create_broadcast(members, public_keys, slots)
        dkg.broadcast(CLUSTER, node_id, vv, contribution)


def _events(dkg: DkgCoordinator, event_type):
    return [event for event in dkg.events.history if isinstance(event, event_type)]


def _answer_complaint(dkg, participants, accuser, accused):
    accuser_slot = dkg.registry.get_members(CLUSTER).index(accuser)
    vv, vvm, contribution = participants[accused].build_pre_response(accuser_slot)
    dkg.pre_response(CLUSTER, accused, vv, vvm, contribution)
    secret_number, multiplied_share = participants[accused].build_response(accuser_slot)
    return dkg.response(CLUSTER, accused, secret_number, multiplied_share)


# =============================================================================
# Honest rounds
# =============================================================================


class TestHonestRound:
    """Tests for a round without disputes."""

    def test_threshold(self):
        assert [DkgCoordinator.get_threshold(n) for n in (1, 2, 3, 4, 16)] == [1, 2, 2, 3, 11]

    def test_open_channel(self, setup):
        dkg, _ = setup
        channel = dkg.get_channel(CLUSTER)
        assert channel.status == ChannelStatus.BROADCASTING
        assert channel.round_id == 1
        assert channel.broadcasted == [False] * 4
        assert dkg.is_channel_opened(CLUSTER)
        assert dkg.get_channel_status("missing") == ChannelStatus.IDLE

    def test_all_broadcast_then_alright(self, setup, ledger):
        """Every member broadcasts, verifies its shares and confirms."""
        dkg, participants = setup
        _broadcast(dkg, participants)
        assert dkg.is_everyone_broadcasted(CLUSTER)
        assert dkg.get_channel_status(CLUSTER) == ChannelStatus.ALL_BROADCAST

        members = dkg.registry.get_members(CLUSTER)
        for event in dkg.events.history:
            if not hasattr(event, "secret_key_contribution"):
                continue
            for slot, node_id in enumerate(members):
                assert participants[node_id].verify_received_share(
                    event.node_id, slot, event.verification_vector, event.secret_key_contribution[slot]
                )

        for node_id in members:
            dkg.alright(CLUSTER, node_id)
        assert dkg.is_last_dkg_successful(CLUSTER)
        assert _events(dkg, SuccessfulDkg) == [SuccessfulDkg(CLUSTER, 1)]

        # 群公钥等于 t 个私钥份额插值得到的秘密乘以 G2
        public_key = _events(dkg, GroupKeyAvailable)[0].public_key
        assert dkg.key_storage.get_common_public_key(CLUSTER) == public_key
        shares = {slot + 1: participants[node_id].secret_key_share() for slot, node_id in enumerate(members)}
        secret = reconstruct_secret(dict(list(shares.items())[1:]))
        assert CryptoVerifier.mul_g2(CryptoVerifier.g2_generator(), secret) == public_key

    def test_alright_twice(self, setup):
        dkg, participants = setup
        _broadcast(dkg, participants)
        member = dkg.registry.get_members(CLUSTER)[0]
        dkg.alright(CLUSTER, member)
        with pytest.raises(AlreadyAlright):
            dkg.alright(CLUSTER, member)

    def test_alright_before_everyone_broadcast(self, setup):
        dkg, participants = setup
        members = dkg.registry.get_members(CLUSTER)
        _broadcast(dkg, participants, skip=members[3:])
        with pytest.raises(IncorrectChannelState):
            dkg.alright(CLUSTER, members[0])

    def test_finalize_after_window(self, setup, clock):
        """Finalize completes the round once the complaint window is over."""
        dkg, participants = setup
        _broadcast(dkg, participants)
        with pytest.raises(DeadlineNotReached):
            dkg.finalize(CLUSTER)
        clock.advance(LIMIT)
        dkg.finalize(CLUSTER)
        assert dkg.get_channel_status(CLUSTER) == ChannelStatus.COMPLETE
        assert dkg.last_successful_round[CLUSTER] == 1

    def test_reopen_starts_new_round(self, setup):
        dkg, participants = setup
        _broadcast(dkg, participants)
        dkg.open_channel(CLUSTER)
        channel = dkg.get_channel(CLUSTER)
        assert channel.round_id == 2
        assert channel.broadcasted_count == 0
        assert not dkg.is_last_dkg_successful(CLUSTER)


# =============================================================================
# Broadcast validation
# =============================================================================


class TestBroadcastValidation:
    """Tests for rejected broadcasts."""

    def test_channel_not_opened(self, setup):
        dkg, participants = setup
        with pytest.raises(ChannelNotOpened):
            dkg.broadcast("beta", 1, [], [])

    def test_non_member(self, setup, registry):
        dkg, participants = setup
        outsider = DkgParticipant(99)
        registry.register_node(99, outsider.public_key)
        with pytest.raises(NodeNotInGroup):
            dkg.broadcast(CLUSTER, 99, [], [])

    def test_replay(self, setup):
        dkg, participants = setup
        members = dkg.registry.get_members(CLUSTER)
        public_keys = {node_id: dkg.registry.get_node_public_key(node_id) for node_id in members}
        vv, contribution = participants[members[0]].create_broadcast(members, public_keys)
        dkg.broadcast(CLUSTER, members[0], vv, contribution)
        with pytest.raises(AlreadyBroadcasted):
            dkg.broadcast(CLUSTER, members[0], vv, contribution)

    def test_wrong_lengths(self, setup):
        dkg, participants = setup
        members = dkg.registry.get_members(CLUSTER)
        public_keys = {node_id: dkg.registry.get_node_public_key(node_id) for node_id in members}
        vv, contribution = participants[members[0]].create_broadcast(members, public_keys)
        with pytest.raises(InvalidVectorLength):
            dkg.broadcast(CLUSTER, members[0], vv[:-1], contribution)
        with pytest.raises(InvalidVectorLength):
            dkg.broadcast(CLUSTER, members[0], vv, contribution[:-1])
        assert not dkg.is_node_broadcasted(CLUSTER, members[0])

    def test_invalid_point(self, setup):
        dkg, participants = setup
        members = dkg.registry.get_members(CLUSTER)
        public_keys = {node_id: dkg.registry.get_node_public_key(node_id) for node_id in members}
        vv, contribution = participants[members[0]].create_broadcast(members, public_keys)
        vv[1] = G2Point(Fp2Point(1, 2), Fp2Point(3, 4))
        with pytest.raises(InvalidPoint):
            dkg.broadcast(CLUSTER, members[0], vv, contribution)

    def test_late_broadcast(self, setup, clock):
        dkg, participants = setup
        clock.advance(LIMIT)
        with pytest.raises(TimeLimitExceeded):
            _broadcast(dkg, participants)


# =============================================================================
# Complaints
# =============================================================================


class TestComplaints:
    """Tests for the complaint, pre-response and response flow."""

    def test_self_complaint(self, setup):
        dkg, participants = setup
        _broadcast(dkg, participants)
        member = dkg.registry.get_members(CLUSTER)[0]
        with pytest.raises(InvalidComplaint):
            dkg.complain(CLUSTER, member, member)

    def test_missing_broadcast_too_early(self, setup):
        dkg, participants = setup
        members = dkg.registry.get_members(CLUSTER)
        _broadcast(dkg, participants, skip=[members[2]])
        with pytest.raises(ComplaintTooEarly):
            dkg.complain(CLUSTER, members[0], members[2])

    def test_missing_broadcast_after_deadline(self, setup, clock):
        """A member that never broadcast is declared faulty once the deadline passes."""
        dkg, participants = setup
        members = dkg.registry.get_members(CLUSTER)
        _broadcast(dkg, participants, skip=[members[2]])
        clock.advance(LIMIT)
        dkg.complain(CLUSTER, members[0], members[2])
        channel = dkg.get_channel(CLUSTER)
        assert channel.status == ChannelStatus.RESOLVED
        assert channel.faulty_node == members[2]
        assert _events(dkg, NodeDeclaredFaulty) == [
            NodeDeclaredFaulty(CLUSTER, members[2], members[0], "no broadcast")
        ]
        assert _events(dkg, FailedDkg) == [FailedDkg(CLUSTER, 1)]

    def test_one_open_complaint_at_a_time(self, setup):
        dkg, participants = setup
        members = dkg.registry.get_members(CLUSTER)
        _broadcast(dkg, participants)
        dkg.complain(CLUSTER, members[0], members[1])
        assert dkg.get_channel_status(CLUSTER) == ChannelStatus.COMPLAINT_RAISED
        assert dkg.get_complaint_deadline(CLUSTER) == dkg.ledger.now() + LIMIT
        with pytest.raises(ComplaintAlreadyOpen):
            dkg.complain(CLUSTER, members[2], members[3])

    def test_complaint_after_window(self, setup, clock):
        dkg, participants = setup
        members = dkg.registry.get_members(CLUSTER)
        _broadcast(dkg, participants)
        clock.advance(LIMIT)
        with pytest.raises(TimeLimitExceeded):
            dkg.complain(CLUSTER, members[0], members[1])

    def test_honest_accused_is_cleared(self, setup):
        """A false complaint is dismissed and the round goes on."""
        dkg, participants = setup
        members = dkg.registry.get_members(CLUSTER)
        _broadcast(dkg, participants)
        dkg.complain(CLUSTER, members[0], members[1])
        assert _answer_complaint(dkg, participants, members[0], members[1])
        assert dkg.get_channel_status(CLUSTER) == ChannelStatus.ALL_BROADCAST
        assert dkg.get_complaint(CLUSTER) is None
        assert _events(dkg, ComplaintDismissed) == [ComplaintDismissed(CLUSTER, members[0], members[1])]
        assert _events(dkg, NodeDeclaredFaulty) == []

    def test_cheater_is_declared_faulty(self, setup):
        """A share inconsistent with the verification vector fails the response check."""
        dkg, participants = setup
        members = dkg.registry.get_members(CLUSTER)
        cheater, victim = members[1], members[3]
        _broadcast(dkg, participants, corrupt={cheater: [victim]})

        event = next(e for e in dkg.events.history if getattr(e, "node_id", None) == cheater and hasattr(e, "verification_vector"))
        victim_slot = members.index(victim)
        assert not participants[victim].verify_received_share(
            cheater, victim_slot, event.verification_vector, event.secret_key_contribution[victim_slot]
        )

        dkg.complain(CLUSTER, victim, cheater)
        assert not _answer_complaint(dkg, participants, victim, cheater)
        channel = dkg.get_channel(CLUSTER)
        assert channel.status == ChannelStatus.RESOLVED
        assert channel.faulty_node == cheater
        assert _events(dkg, NodeDeclaredFaulty)[0].reason == "verification failed"

    def test_tampered_multiplication_vector_is_rejected(self, setup):
        """One altered multiplication point passes pre-response but fails the response check."""
        dkg, participants = setup
        members = dkg.registry.get_members(CLUSTER)
        accuser, accused = members[0], members[1]
        _broadcast(dkg, participants)
        dkg.complain(CLUSTER, accuser, accused)

        vv, vvm, contribution = participants[accused].build_pre_response(0)
        vvm[1] = CryptoVerifier.add_g2(vvm[1], CryptoVerifier.g2_generator())
        dkg.pre_response(CLUSTER, accused, vv, vvm, contribution)
        assert dkg.get_channel_status(CLUSTER) == ChannelStatus.RESPONSE_PENDING

        secret_number, multiplied_share = participants[accused].build_response(0)
        assert not dkg.response(CLUSTER, accused, secret_number, multiplied_share)
        channel = dkg.get_channel(CLUSTER)
        assert channel.status == ChannelStatus.RESOLVED
        assert channel.faulty_node == accused
        assert _events(dkg, NodeDeclaredFaulty) == [
            NodeDeclaredFaulty(CLUSTER, accused, accuser, "verification failed")
        ]

    def test_data_complaint_waits_for_every_broadcast(self, setup, clock):
        """A complaint filed mid-window cannot lock out a member that has not broadcast yet."""
        dkg, participants = setup
        members = dkg.registry.get_members(CLUSTER)
        late = members[3]
        _broadcast(dkg, participants, skip=[late])

        clock.advance(10)
        with pytest.raises(ComplaintTooEarly):
            dkg.complain(CLUSTER, members[0], members[1])
        assert dkg.get_channel_status(CLUSTER) == ChannelStatus.BROADCASTING
        assert dkg.get_complaint(CLUSTER) is None

        public_keys = {node_id: dkg.registry.get_node_public_key(node_id) for node_id in members}
        vv, contribution = participants[late].create_broadcast(members, public_keys)
        dkg.broadcast(CLUSTER, late, vv, contribution)
        assert dkg.get_channel_status(CLUSTER) == ChannelStatus.ALL_BROADCAST

        dkg.complain(CLUSTER, members[0], members[1])
        clock.advance(LIMIT - 5)
        assert _answer_complaint(dkg, participants, members[0], members[1])
        assert dkg.get_channel_status(CLUSTER) == ChannelStatus.ALL_BROADCAST
        assert _events(dkg, NodeDeclaredFaulty) == []

    def test_pre_response_must_match_commitment(self, setup):
        dkg, participants = setup
        members = dkg.registry.get_members(CLUSTER)
        _broadcast(dkg, participants)
        dkg.complain(CLUSTER, members[0], members[1])
        vv, vvm, contribution = participants[members[1]].build_pre_response(0)
        contribution[0], contribution[1] = contribution[1], contribution[0]
        with pytest.raises(CommitmentMismatch):
            dkg.pre_response(CLUSTER, members[1], vv, vvm, contribution)

    def test_pre_response_without_complaint(self, setup):
        dkg, participants = setup
        members = dkg.registry.get_members(CLUSTER)
        _broadcast(dkg, participants)
        vv, vvm, contribution = participants[members[1]].build_pre_response(0)
        with pytest.raises(NoOpenComplaint):
            dkg.pre_response(CLUSTER, members[1], vv, vvm, contribution)

    def test_pre_response_once(self, setup):
        dkg, participants = setup
        members = dkg.registry.get_members(CLUSTER)
        _broadcast(dkg, participants)
        dkg.complain(CLUSTER, members[0], members[1])
        vv, vvm, contribution = participants[members[1]].build_pre_response(0)
        dkg.pre_response(CLUSTER, members[1], vv, vvm, contribution)
        assert dkg.get_channel_status(CLUSTER) == ChannelStatus.RESPONSE_PENDING
        with pytest.raises(PreResponseAlreadySubmitted):
            dkg.pre_response(CLUSTER, members[1], vv, vvm, contribution)

    def test_response_requires_pre_response(self, setup):
        dkg, participants = setup
        members = dkg.registry.get_members(CLUSTER)
        _broadcast(dkg, participants)
        dkg.complain(CLUSTER, members[0], members[1])
        secret_number, multiplied_share = participants[members[1]].build_response(0)
        with pytest.raises(PreResponseMissing):
            dkg.response(CLUSTER, members[1], secret_number, multiplied_share)

    def test_response_with_wrong_secret_number(self, setup):
        dkg, participants = setup
        members = dkg.registry.get_members(CLUSTER)
        _broadcast(dkg, participants)
        dkg.complain(CLUSTER, members[0], members[1])
        vv, vvm, contribution = participants[members[1]].build_pre_response(0)
        dkg.pre_response(CLUSTER, members[1], vv, vvm, contribution)
        _, multiplied_share = participants[members[1]].build_response(0)
        wrong_number = participants[members[1]].secret_numbers[2]
        with pytest.raises(InvalidSecretNumber):
            dkg.response(CLUSTER, members[1], wrong_number, multiplied_share)
        assert dkg.get_channel_status(CLUSTER) == ChannelStatus.RESPONSE_PENDING

    def test_expired_complaint(self, setup, clock):
        """An unanswered complaint makes the accused faulty after the deadline."""
        dkg, participants = setup
        members = dkg.registry.get_members(CLUSTER)
        _broadcast(dkg, participants)
        dkg.complain(CLUSTER, members[0], members[1])
        with pytest.raises(DeadlineNotReached):
            dkg.resolve_expired_complaint(CLUSTER)
        clock.advance(LIMIT)
        dkg.resolve_expired_complaint(CLUSTER)
        assert dkg.get_channel(CLUSTER).faulty_node == members[1]
        assert _events(dkg, NodeDeclaredFaulty)[0].reason == "response timeout"

    def test_repeated_complaint_after_deadline(self, setup, clock):
        dkg, participants = setup
        members = dkg.registry.get_members(CLUSTER)
        _broadcast(dkg, participants)
        dkg.complain(CLUSTER, members[0], members[1])
        vv, vvm, contribution = participants[members[1]].build_pre_response(0)
        dkg.pre_response(CLUSTER, members[1], vv, vvm, contribution)
        clock.advance(LIMIT)
        secret_number, multiplied_share = participants[members[1]].build_response(0)
        with pytest.raises(TimeLimitExceeded):
            dkg.response(CLUSTER, members[1], secret_number, multiplied_share)
        dkg.complain(CLUSTER, members[0], members[1])
        assert dkg.get_channel_status(CLUSTER) == ChannelStatus.RESOLVED

    def test_no_complaints_after_resolution(self, setup, clock):
        dkg, participants = setup
        members = dkg.registry.get_members(CLUSTER)
        _broadcast(dkg, participants, skip=[members[3]])
        clock.advance(LIMIT)
        dkg.complain(CLUSTER, members[0], members[3])
        with pytest.raises(IncorrectChannelState):
            dkg.complain(CLUSTER, members[1], members[3])
