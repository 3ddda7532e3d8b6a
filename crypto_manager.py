"""Share encryption and commitment utilities for the DKG protocol."""

import hashlib
from typing import Sequence, Tuple

from cryptography.hazmat.backends import default_backend
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import ec
from cryptography.hazmat.primitives.kdf.hkdf import HKDF

from data_models import G2Point, KeyShare
from exceptions import InvalidSecretNumber, ValidationError

_SECP256K1_ORDER = 0xFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFEBAAEDCE6AF48A03BBFD25E8CD0364141


class CryptoManager:
    """加密管理器，处理节点密钥、份额加解密以及承诺哈希."""

    SHARE_INFO = b"dkg-key-share"

    @staticmethod
    def generate_node_keypair() -> Tuple[ec.EllipticCurvePrivateKey, bytes]:
        """生成secp256k1节点密钥对 / Generate a node identity key pair."""
        private_key = ec.generate_private_key(ec.SECP256K1(), default_backend())
        return private_key, CryptoManager.encode_public_key(private_key.public_key())

    @staticmethod
    def encode_public_key(public_key: ec.EllipticCurvePublicKey) -> bytes:
        return public_key.public_bytes(
            encoding=serialization.Encoding.X962,
            format=serialization.PublicFormat.UncompressedPoint,
        )

    @staticmethod
    def load_public_key(public_bytes: bytes) -> ec.EllipticCurvePublicKey:
        try:
            return ec.EllipticCurvePublicKey.from_encoded_point(ec.SECP256K1(), public_bytes)
        except ValueError as exc:
            raise ValidationError(f"Invalid node public key: {exc}") from exc

    @staticmethod
    def encrypt_share(share: int, receiver_public_bytes: bytes) -> Tuple[KeyShare, int]:
        """用临时密钥与接收者做ECDH并加密份额，返回(加密份额, 临时私钥标量)."""
        ephemeral_private = ec.generate_private_key(ec.SECP256K1(), default_backend())
        receiver_public = CryptoManager.load_public_key(receiver_public_bytes)
        shared_secret = ephemeral_private.exchange(ec.ECDH(), receiver_public)
        pad = CryptoManager._derive_symmetric_key(shared_secret)
        ciphertext = CryptoManager._xor(share.to_bytes(32, "big"), pad)
        key_share = KeyShare(
            public_key=CryptoManager.encode_public_key(ephemeral_private.public_key()),
            share=ciphertext,
        )
        return key_share, ephemeral_private.private_numbers().private_value

    @staticmethod
    def decrypt_share(key_share: KeyShare, receiver_private: ec.EllipticCurvePrivateKey) -> int:
        """接收者解密份额 / Decrypt a share with the receiver's private key."""
        ephemeral_public = CryptoManager.load_public_key(key_share.public_key)
        shared_secret = receiver_private.exchange(ec.ECDH(), ephemeral_public)
        pad = CryptoManager._derive_symmetric_key(shared_secret)
        return int.from_bytes(CryptoManager._xor(key_share.share, pad), "big")

    @staticmethod
    def decrypt_share_with_secret_number(
        key_share: KeyShare,
        secret_number: int,
        receiver_public_bytes: bytes,
    ) -> int:
        """公开临时私钥后任何人都可解密 / Public decryption during dispute resolution."""
        if not 0 < secret_number < _SECP256K1_ORDER:
            raise InvalidSecretNumber("Secret number is out of range")
        ephemeral_private = ec.derive_private_key(secret_number, ec.SECP256K1(), default_backend())
        if CryptoManager.encode_public_key(ephemeral_private.public_key()) != key_share.public_key:
            raise InvalidSecretNumber("Secret number does not match the share's ephemeral key")
        receiver_public = CryptoManager.load_public_key(receiver_public_bytes)
        shared_secret = ephemeral_private.exchange(ec.ECDH(), receiver_public)
        pad = CryptoManager._derive_symmetric_key(shared_secret)
        return int.from_bytes(CryptoManager._xor(key_share.share, pad), "big")

    @staticmethod
    def commitment_hash(
        secret_key_contribution: Sequence[KeyShare],
        verification_vector: Sequence[G2Point],
    ) -> bytes:
        """对(加密份额, 验证向量)做SHA-256承诺，防止抢跑."""
        digest = hashlib.sha256()
        for key_share in secret_key_contribution:
            digest.update(len(key_share.public_key).to_bytes(2, "big"))
            digest.update(key_share.public_key)
            digest.update(key_share.share)
        for point in verification_vector:
            for coordinate in (point.x.a, point.x.b, point.y.a, point.y.b):
                digest.update(coordinate.to_bytes(32, "big"))
        return digest.digest()

    @staticmethod
    def _derive_symmetric_key(shared_secret: bytes) -> bytes:
        """通过HKDF从共享秘密导出32字节密钥流."""
        hkdf = HKDF(
            algorithm=hashes.SHA256(),
            length=32,
            salt=None,
            info=CryptoManager.SHARE_INFO,
            backend=default_backend(),
        )
        return hkdf.derive(shared_secret)

    @staticmethod
    def _xor(data: bytes, pad: bytes) -> bytes:
        if len(data) != len(pad):
            raise ValidationError("Encrypted share must be 32 bytes")
        return bytes(left ^ right for left, right in zip(data, pad))
