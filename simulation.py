"""End-to-end demo: cluster formation, a disputed DKG round, rotation and exit."""

from __future__ import annotations

import time
from typing import Dict, List, Optional, Tuple

from crypto_verifier import CryptoVerifier
from data_models import BroadcastAndKeyShare, NodeRotated
from fleet_manager import FleetManager
from ledger import Ledger, ManualClock
from log_config import configure_logging
from participant import DkgParticipant, reconstruct_secret

MAILBOX = "simulation"


def _banner(title: str) -> None:
    print("\n" + "=" * 80)
    print(f"***  {title}  ***".center(80))
    print("=" * 80 + "\n")


def _run_broadcasts(
    fleet: FleetManager,
    cluster_id: str,
    participants: Dict[int, DkgParticipant],
    cheater: Optional[Tuple[int, int]] = None,
) -> List[Tuple[int, int]]:
    """所有成员广播并互相验证份额，返回 (投诉者, 被投诉者) 列表."""
    members = fleet.get_members(cluster_id)
    public_keys = {node_id: fleet.registry.get_node_public_key(node_id) for node_id in members}

    for node_id in members:
        corrupt_slots = ()
        if cheater is not None and cheater[0] == node_id:
            corrupt_slots = (members.index(cheater[1]),)
        vv, contribution = participants[node_id].create_broadcast(members, public_keys, corrupt_slots)
        fleet.broadcast(cluster_id, node_id, vv, contribution)
        print(f"  Node {node_id}: broadcasted verification vector (t={len(vv)}) and {len(contribution)} shares")

    disputes = []
    for event in fleet.events.receive_events(MAILBOX, BroadcastAndKeyShare):
        if event.cluster_id != cluster_id:
            continue
        for slot, node_id in enumerate(members):
            if node_id == event.node_id:
                continue
            ok = participants[node_id].verify_received_share(
                event.node_id,
                slot,
                event.verification_vector,
                event.secret_key_contribution[slot],
            )
            if not ok:
                disputes.append((node_id, event.node_id))
    return disputes


def run_simulation(num_nodes: int = 6, cluster_size: int = 4, part_of_node: int = 32) -> None:
    """运行演示 / Form a cluster, resolve a dispute, rotate the cheater and exit a node."""
    _banner("DECENTRALIZED FLEET DKG SIMULATION")

    clock = ManualClock()
    fleet = FleetManager(ledger=Ledger(clock=clock), is_admin=lambda caller: caller == "admin")
    fleet.events.register_mailbox(MAILBOX)
    cluster_id = "alpha"

    print("*** Parameters ***")
    print(f"  • Registered nodes:          {num_nodes}")
    print(f"  • Cluster size (n):          {cluster_size}")
    print(f"  • Threshold (t):             {fleet.dkg.get_threshold(cluster_size)}")
    print(f"  • Capacity per membership:   {part_of_node}/{fleet.constants.total_space_on_node}")
    print(f"  • Complaint time limit:      {fleet.constants.complaint_time_limit} s")
    print("-" * 80 + "\n")

    participants: Dict[int, DkgParticipant] = {}
    for node_id in range(1, num_nodes + 1):
        participant = DkgParticipant(node_id)
        participants[node_id] = participant
        fleet.register_node(node_id, participant.public_key)

    members = fleet.create_cluster(cluster_id, cluster_size, part_of_node)
    print(f"  Cluster {cluster_id} formed with members {members}")

    _banner("ROUND 1: DISPUTED BROADCAST")
    start_time = time.time()
    cheater, victim = members[0], members[1]
    disputes = _run_broadcasts(fleet, cluster_id, participants, cheater=(cheater, victim))
    print(f"\n  Disputes detected: {disputes}")

    accuser, accused = disputes[0]
    fleet.complain(cluster_id, accuser, accused)
    accuser_slot = fleet.get_members(cluster_id).index(accuser)
    vv, vvm, contribution = participants[accused].build_pre_response(accuser_slot)
    fleet.pre_response(cluster_id, accused, vv, vvm, contribution)
    secret_number, multiplied_share = participants[accused].build_response(accuser_slot)
    dismissed = fleet.response(cluster_id, accused, secret_number, multiplied_share)
    print(f"  Response of node {accused}: {'✓ dismissed' if dismissed else '✗ declared faulty'}")

    for event in fleet.events.receive_events(MAILBOX, NodeRotated):
        print(f"  Node {event.leaving_node} replaced by node {event.incoming_node} (finished at {event.finished_at})")
    print(f"  Members now: {fleet.get_members(cluster_id)}")
    print(f"  Channel status: {fleet.get_channel_status(cluster_id).value}")

    _banner("ROUND 2: HONEST BROADCAST")
    for participant in participants.values():
        participant.received_shares.clear()
    disputes = _run_broadcasts(fleet, cluster_id, participants)
    print(f"\n  Disputes detected: {disputes or 'none'}")
    for node_id in fleet.get_members(cluster_id):
        fleet.alright(cluster_id, node_id)
    print(f"  Channel status: {fleet.get_channel_status(cluster_id).value}")
    print(f"  ⏱  DKG time: {(time.time() - start_time) * 1000:.2f} ms")

    _banner("GROUP PUBLIC KEY VERIFICATION")
    members = fleet.get_members(cluster_id)
    threshold = fleet.dkg.get_threshold(len(members))
    key_shares = {slot + 1: participants[node_id].secret_key_share() for slot, node_id in enumerate(members)}
    subset = dict(list(key_shares.items())[:threshold])
    group_secret = reconstruct_secret(subset)
    expected = CryptoVerifier.mul_g2(CryptoVerifier.g2_generator(), group_secret)
    public_key = fleet.get_common_public_key(cluster_id)
    if public_key == expected:
        print(f"  ✓ Group public key matches the secret reconstructed from {threshold} shares")
    else:
        print("  ✗ WARNING: Group public key does not match the reconstructed secret!")

    _banner("NODE EXIT")
    leaving = members[-1]
    fleet.init_exit(leaving)
    print(f"  Node {leaving} initiated exit, rotation in progress: {fleet.is_rotation_in_progress(cluster_id)}")
    completed = fleet.node_exit(leaving)
    rotation = fleet.get_rotation(cluster_id)
    print(f"  Node {leaving} exited: {completed}, rotation counter: {rotation.rotation_counter}")
    print(f"  Replacement: node {rotation.incoming_node}, previous node {fleet.get_previous_node(cluster_id, rotation.incoming_node)}")
    for entry in fleet.get_leaving_history(leaving):
        print(f"     - left {entry.cluster_id} at {entry.finished_at}")
    clock.advance(fleet.constants.rotation_delay)
    print(f"  After the rotation delay, rotation in progress: {fleet.is_rotation_in_progress(cluster_id)}")


if __name__ == "__main__":
    configure_logging("WARNING")
    run_simulation()
