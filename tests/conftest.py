"""
Shared fixtures for the fleet core tests.

Every fixture uses a ManualClock so deadlines are crossed explicitly.
"""

from typing import Dict, Optional, Sequence, Tuple

import pytest

from cluster_registry import ClusterRegistry
from constants import ConstantsHolder
from crypto_manager import CryptoManager
from fleet_manager import FleetManager
from ledger import Ledger, ManualClock
from participant import DkgParticipant


@pytest.fixture
def clock() -> ManualClock:
    return ManualClock()


@pytest.fixture
def ledger(clock: ManualClock) -> Ledger:
    return Ledger(clock=clock)


@pytest.fixture
def constants() -> ConstantsHolder:
    return ConstantsHolder()


@pytest.fixture
def public_key() -> bytes:
    """A valid secp256k1 public key for registry-level tests."""
    _, encoded = CryptoManager.generate_node_keypair()
    return encoded


@pytest.fixture
def registry(constants: ConstantsHolder) -> ClusterRegistry:
    return ClusterRegistry(constants)


@pytest.fixture
def make_fleet(ledger: Ledger, constants: ConstantsHolder):
    """Build a FleetManager with ``num_nodes`` registered nodes and their participants."""

    def _make(
        num_nodes: int,
        space: Optional[int] = None,
        admin: str = "admin",
    ) -> Tuple[FleetManager, Dict[int, DkgParticipant]]:
        fleet = FleetManager(constants=constants, ledger=ledger, is_admin=lambda caller: caller == admin)
        participants: Dict[int, DkgParticipant] = {}
        for node_id in range(1, num_nodes + 1):
            participant = DkgParticipant(node_id)
            participants[node_id] = participant
            fleet.register_node(node_id, participant.public_key, space)
        return fleet, participants

    return _make


@pytest.fixture
def broadcast_all():
    """Have every member broadcast; ``corrupt`` maps a sender to recipients it cheats."""

    def _broadcast(
        fleet: FleetManager,
        cluster_id: str,
        participants: Dict[int, DkgParticipant],
        corrupt: Optional[Dict[int, Sequence[int]]] = None,
    ) -> None:
        corrupt = corrupt or {}
        members = fleet.get_members(cluster_id)
        public_keys = {node_id: fleet.registry.get_node_public_key(node_id) for node_id in members}
        for node_id in members:
            corrupt_slots = [members.index(victim) for victim in corrupt.get(node_id, ())]
            vv, contribution = participants[node_id].create_broadcast(members, public_keys, corrupt_slots)
            fleet.broadcast(cluster_id, node_id, vv, contribution)

    return _broadcast
