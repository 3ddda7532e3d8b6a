"""Aggregation of broadcast commitments into cluster public keys."""

from __future__ import annotations

import logging
from typing import Dict, List, Optional

from crypto_verifier import CryptoVerifier
from data_models import Fp2Point, G2Point
from ledger import LedgerState

logger = logging.getLogger(__name__)

_ZERO = G2Point(Fp2Point(0, 0), Fp2Point(0, 0))


class KeyStorage(LedgerState):
    """集群公钥存储 / Sums ``verification_vector[0]`` of every broadcast.

    DKG 成功后进行中的累加值成为集群公钥，旧公钥保留在历史中。
    """

    _state_fields = ("in_progress", "public_keys", "previous_public_keys")

    def __init__(self) -> None:
        self.in_progress: Dict[str, G2Point] = {}
        self.public_keys: Dict[str, G2Point] = {}
        self.previous_public_keys: Dict[str, List[G2Point]] = {}

    def init_public_key_in_progress(self, cluster_id: str) -> None:
        self.in_progress[cluster_id] = _ZERO

    def add_public_key_part(self, cluster_id: str, point: G2Point) -> None:
        current = self.in_progress.get(cluster_id, _ZERO)
        self.in_progress[cluster_id] = CryptoVerifier.add_g2(current, point)

    def finalize_public_key(self, cluster_id: str) -> G2Point:
        if cluster_id in self.public_keys:
            self.previous_public_keys.setdefault(cluster_id, []).append(self.public_keys[cluster_id])
        public_key = self.in_progress.pop(cluster_id, _ZERO)
        self.public_keys[cluster_id] = public_key
        logger.info("[Cluster %s] Group public key finalized", cluster_id)
        return public_key

    def get_common_public_key(self, cluster_id: str) -> Optional[G2Point]:
        return self.public_keys.get(cluster_id)

    def get_previous_public_key(self, cluster_id: str) -> Optional[G2Point]:
        history = self.previous_public_keys.get(cluster_id)
        return history[-1] if history else None

    def get_all_previous_public_keys(self, cluster_id: str) -> List[G2Point]:
        return list(self.previous_public_keys.get(cluster_id, []))

    def delete_key(self, cluster_id: str) -> None:
        self.in_progress.pop(cluster_id, None)
        self.public_keys.pop(cluster_id, None)
        self.previous_public_keys.pop(cluster_id, None)
