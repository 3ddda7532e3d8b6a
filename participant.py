"""Member side of the Joint-Feldman DKG: polynomial, commitments and dispute answers."""

from __future__ import annotations

import logging
import secrets
from typing import Dict, List, Mapping, Optional, Sequence, Tuple

import numpy as np
from cryptography.hazmat.primitives.asymmetric import ec

from constants import CURVE_ORDER
from crypto_manager import CryptoManager
from crypto_verifier import CryptoVerifier
from data_models import G2Point, KeyShare
from dkg_coordinator import DkgCoordinator
from exceptions import ValidationError

logger = logging.getLogger(__name__)


class DkgParticipant:
    """DKG参与者 / Holds one member's polynomial and everything it has sent and received.

    槽位 ``slot`` 对应求值点 ``x = slot + 1``。
    """

    def __init__(
        self,
        node_id: int,
        private_key: Optional[ec.EllipticCurvePrivateKey] = None,
    ) -> None:
        self.node_id = node_id
        if private_key is None:
            private_key, public_key = CryptoManager.generate_node_keypair()
        else:
            public_key = CryptoManager.encode_public_key(private_key.public_key())
        self.private_key = private_key
        self.public_key = public_key

        self.coefficients: List[int] = []
        self.shares: List[int] = []  # 实际加密发送的份额
        self.secret_numbers: List[int] = []
        self.verification_vector: List[G2Point] = []
        self.secret_key_contribution: List[KeyShare] = []

        # 接收到的份额，按发送方节点ID索引
        self.received_shares: Dict[int, int] = {}
        self.rejected_senders: List[int] = []

    # —— 广播 ——

    def create_broadcast(
        self,
        members: Sequence[int],
        public_keys: Mapping[int, bytes],
        corrupt_slots: Sequence[int] = (),
    ) -> Tuple[List[G2Point], List[KeyShare]]:
        """生成多项式、验证向量与加密份额 / Build the payload of ``broadcast``.

        ``corrupt_slots`` lists recipients that receive a share inconsistent with
        the verification vector, used to exercise the complaint path.
        """
        n = len(members)
        t = DkgCoordinator.get_threshold(n)
        self.coefficients = [secrets.randbelow(CURVE_ORDER) for _ in range(t)]
        self.verification_vector = [
            CryptoVerifier.mul_g2(CryptoVerifier.g2_generator(), coefficient) for coefficient in self.coefficients
        ]

        self.shares = []
        self.secret_numbers = []
        self.secret_key_contribution = []
        for slot, member in enumerate(members):
            share = self.evaluate(slot + 1)
            if slot in corrupt_slots:
                share = (share + 1) % CURVE_ORDER
            key_share, secret_number = CryptoManager.encrypt_share(share, public_keys[member])
            self.shares.append(share)
            self.secret_numbers.append(secret_number)
            self.secret_key_contribution.append(key_share)

        logger.info("[Node %s] Created broadcast for %d members (t=%d)", self.node_id, n, t)
        return list(self.verification_vector), list(self.secret_key_contribution)

    def evaluate(self, x: int) -> int:
        """f(x) mod r"""
        coefficients = np.array(self.coefficients, dtype=object)
        powers = np.array([pow(x, i, CURVE_ORDER) for i in range(len(self.coefficients))], dtype=object)
        return int((coefficients * powers).sum()) % CURVE_ORDER

    # —— 验证 ——

    def verify_received_share(
        self,
        sender_id: int,
        own_slot: int,
        verification_vector: Sequence[G2Point],
        key_share: KeyShare,
    ) -> bool:
        """解密并验证份额 / share·G2 == Σ (own_slot + 1)^i · vv[i]."""
        share = CryptoManager.decrypt_share(key_share, self.private_key)
        expected = CryptoVerifier.sum_g2(
            [
                CryptoVerifier.mul_g2(point, pow(own_slot + 1, i, CURVE_ORDER))
                for i, point in enumerate(verification_vector)
            ]
        )
        if CryptoVerifier.mul_g2(CryptoVerifier.g2_generator(), share) != expected:
            logger.warning("[Node %s] Share from node %s failed verification", self.node_id, sender_id)
            self.rejected_senders.append(sender_id)
            return False
        self.received_shares[sender_id] = share
        return True

    def secret_key_share(self) -> int:
        """最终私钥份额 / Sum of every accepted share."""
        return sum(self.received_shares.values()) % CURVE_ORDER

    # —— 投诉应答 ——

    def build_pre_response(self, accuser_slot: int) -> Tuple[List[G2Point], List[G2Point], List[KeyShare]]:
        """返回 (vv, vvm, contribution)，其中 vvm[i] = (accuser_slot + 1)^i · a_i · G2."""
        if not self.coefficients:
            raise ValidationError(f"Node {self.node_id} has not broadcasted")
        x = accuser_slot + 1
        multiplication = [
            CryptoVerifier.mul_g2(CryptoVerifier.g2_generator(), pow(x, i, CURVE_ORDER) * coefficient)
            for i, coefficient in enumerate(self.coefficients)
        ]
        return list(self.verification_vector), multiplication, list(self.secret_key_contribution)

    def build_response(self, accuser_slot: int) -> Tuple[int, G2Point]:
        """公开发给投诉者的临时私钥 / Returns ``(secret_number, share·G2)``."""
        share = self.shares[accuser_slot]
        return self.secret_numbers[accuser_slot], CryptoVerifier.mul_g2(CryptoVerifier.g2_generator(), share)


def reconstruct_secret(shares: Mapping[int, int]) -> int:
    """拉格朗日插值求 f(0) / ``shares`` maps evaluation points to values."""
    secret = 0
    points = list(shares.items())
    for i, (xi, yi) in enumerate(points):
        numerator = 1
        denominator = 1
        for j, (xj, _) in enumerate(points):
            if i != j:
                numerator = (numerator * (0 - xj)) % CURVE_ORDER
                denominator = (denominator * (xi - xj)) % CURVE_ORDER
        denominator_inv = pow(denominator, CURVE_ORDER - 2, CURVE_ORDER)
        secret = (secret + yi * numerator * denominator_inv) % CURVE_ORDER
    return secret
