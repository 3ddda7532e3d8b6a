"""BN254 point arithmetic and pairing checks used to settle DKG disputes."""

from __future__ import annotations

from typing import Sequence, Tuple

from py_ecc.optimized_bn128 import (
    FQ,
    FQ2,
    G1,
    G2,
    Z1,
    Z2,
    add,
    b,
    b2,
    double,
    is_inf,
    is_on_curve,
    multiply,
    neg,
    normalize,
    pairing,
)

from constants import CURVE_ORDER, FIELD_MODULUS
from data_models import Fp2Point, G1Point, G2Point
from exceptions import InvalidPoint

_G1_INFINITY = G1Point(0, 0)
_G2_INFINITY = G2Point(Fp2Point(0, 0), Fp2Point(0, 0))


class CryptoVerifier:
    """配对验证器 / Group operations on G1 and G2 plus bilinear pairing checks.

    数据模型中的点是仿射坐标的不可变值对象，运算时转换为 py_ecc 的射影坐标。
    校验失败（点不在曲线上或坐标越界）抛出 ``InvalidPoint``，
    配对等式不成立则返回 ``False``。
    """

    # —— 生成元 ——

    @staticmethod
    def g1_generator() -> G1Point:
        return CryptoVerifier._from_g1(G1)

    @staticmethod
    def g2_generator() -> G2Point:
        return CryptoVerifier._from_g2(G2)

    # —— 域与曲线检查 ——

    @staticmethod
    def check_range_g1(point: G1Point) -> bool:
        return 0 <= point.x < FIELD_MODULUS and 0 <= point.y < FIELD_MODULUS

    @staticmethod
    def check_range_g2(point: G2Point) -> bool:
        coordinates = (point.x.a, point.x.b, point.y.a, point.y.b)
        return all(0 <= value < FIELD_MODULUS for value in coordinates)

    @staticmethod
    def is_g1(point: G1Point) -> bool:
        if not CryptoVerifier.check_range_g1(point):
            return False
        if point == _G1_INFINITY:
            return True
        return is_on_curve((FQ(point.x), FQ(point.y), FQ.one()), b)

    @staticmethod
    def is_g2(point: G2Point) -> bool:
        if not CryptoVerifier.check_range_g2(point):
            return False
        if point == _G2_INFINITY:
            return True
        return is_on_curve(CryptoVerifier._raw_g2(point), b2)

    # —— G1 运算 ——

    @staticmethod
    def add_g1(first: G1Point, second: G1Point) -> G1Point:
        return CryptoVerifier._from_g1(add(CryptoVerifier._to_g1(first), CryptoVerifier._to_g1(second)))

    @staticmethod
    def neg_g1(point: G1Point) -> G1Point:
        return CryptoVerifier._from_g1(neg(CryptoVerifier._to_g1(point)))

    @staticmethod
    def double_g1(point: G1Point) -> G1Point:
        return CryptoVerifier._from_g1(double(CryptoVerifier._to_g1(point)))

    @staticmethod
    def mul_g1(point: G1Point, scalar: int) -> G1Point:
        return CryptoVerifier._from_g1(multiply(CryptoVerifier._to_g1(point), scalar % CURVE_ORDER))

    # —— G2 运算 ——

    @staticmethod
    def add_g2(first: G2Point, second: G2Point) -> G2Point:
        return CryptoVerifier._from_g2(add(CryptoVerifier._to_g2(first), CryptoVerifier._to_g2(second)))

    @staticmethod
    def neg_g2(point: G2Point) -> G2Point:
        return CryptoVerifier._from_g2(neg(CryptoVerifier._to_g2(point)))

    @staticmethod
    def double_g2(point: G2Point) -> G2Point:
        return CryptoVerifier._from_g2(double(CryptoVerifier._to_g2(point)))

    @staticmethod
    def mul_g2(point: G2Point, scalar: int) -> G2Point:
        """扩域点标量乘 / Double-and-add over the bits of the scalar."""
        scalar %= CURVE_ORDER
        result = Z2
        addend = CryptoVerifier._to_g2(point)
        while scalar:
            if scalar & 1:
                result = add(result, addend)
            addend = double(addend)
            scalar >>= 1
        return CryptoVerifier._from_g2(result)

    @staticmethod
    def sum_g2(points: Sequence[G2Point]) -> G2Point:
        total = Z2
        for point in points:
            total = add(total, CryptoVerifier._to_g2(point))
        return CryptoVerifier._from_g2(total)

    # —— 配对检查 ——

    @staticmethod
    def pairing_equals(left: Tuple[G1Point, G2Point], right: Tuple[G1Point, G2Point]) -> bool:
        """e(P1, Q1) == e(P2, Q2)"""
        p1, q1 = left
        p2, q2 = right
        return pairing(CryptoVerifier._to_g2(q1), CryptoVerifier._to_g1(p1)) == pairing(
            CryptoVerifier._to_g2(q2), CryptoVerifier._to_g1(p2)
        )

    @staticmethod
    def verify_quadruple(g1_mul: G1Point, vector: G2Point, vector_mul: G2Point) -> bool:
        """验证 vector_mul = k·vector，其中 g1_mul = k·G1 / Proof without revealing k.

        e(G1, vector_mul) == e(g1_mul, vector)
        """
        CryptoVerifier._require_g1(g1_mul, "g1_mul")
        CryptoVerifier._require_g2(vector, "vector")
        CryptoVerifier._require_g2(vector_mul, "vector_mul")
        return CryptoVerifier.pairing_equals(
            (CryptoVerifier.g1_generator(), vector_mul),
            (g1_mul, vector),
        )

    @staticmethod
    def verify_share(share: int, multiplied_share: G2Point) -> bool:
        """验证 multiplied_share = share·G2 / e(G1, multiplied_share) == e(share·G1, G2)."""
        CryptoVerifier._require_g2(multiplied_share, "multiplied_share")
        share_g1 = CryptoVerifier.mul_g1(CryptoVerifier.g1_generator(), share)
        return CryptoVerifier.pairing_equals(
            (CryptoVerifier.g1_generator(), multiplied_share),
            (share_g1, CryptoVerifier.g2_generator()),
        )

    # —— 坐标转换 ——

    @staticmethod
    def _require_g1(point: G1Point, name: str) -> None:
        if not CryptoVerifier.is_g1(point):
            raise InvalidPoint(f"{name} is not a valid G1 point")

    @staticmethod
    def _require_g2(point: G2Point, name: str) -> None:
        if not CryptoVerifier.is_g2(point):
            raise InvalidPoint(f"{name} is not a valid G2 point")

    @staticmethod
    def _to_g1(point: G1Point):
        CryptoVerifier._require_g1(point, "point")
        if point == _G1_INFINITY:
            return Z1
        return (FQ(point.x), FQ(point.y), FQ.one())

    @staticmethod
    def _to_g2(point: G2Point):
        CryptoVerifier._require_g2(point, "point")
        if point == _G2_INFINITY:
            return Z2
        return CryptoVerifier._raw_g2(point)

    @staticmethod
    def _raw_g2(point: G2Point):
        return (
            FQ2([point.x.a, point.x.b]),
            FQ2([point.y.a, point.y.b]),
            FQ2.one(),
        )

    @staticmethod
    def _from_g1(raw) -> G1Point:
        if is_inf(raw):
            return _G1_INFINITY
        x, y = normalize(raw)
        return G1Point(int(x), int(y))

    @staticmethod
    def _from_g2(raw) -> G2Point:
        if is_inf(raw):
            return _G2_INFINITY
        x, y = normalize(raw)
        return G2Point(
            Fp2Point(int(x.coeffs[0]), int(x.coeffs[1])),
            Fp2Point(int(y.coeffs[0]), int(y.coeffs[1])),
        )
