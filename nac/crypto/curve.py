"""
secp256k1 field and point arithmetic.

Curve: y^2 = x^3 + 7 over GF(P), generator G of prime order N (cofactor 1).
Pure Python integers, affine coordinates. Points are ``(x, y)`` tuples and
the point at infinity is represented by ``None``.

Every function returns canonical residues in ``[0, modulus)``.

Usage:
    P = scalar_multiply(d)          # d·G
    Q = point_add(P, P)             # 2·d·G
    assert scalar_multiply(0) is None
"""

from __future__ import annotations

from typing import Optional, Tuple

# Field prime and group order
P = 0xFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFEFFFFFC2F
N = 0xFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFEBAAEDCE6AF48A03BBFD25E8CD0364141

# Generator
GX = 0x79BE667EF9DCBBAC55A06295CE870B07029BFCDB2DCE28D959F2815B16F81798
GY = 0x483ADA7726A3C4655DA4FBFC0E1108A8FD17B448A68554199C47D08FFB10D4B8
G = (GX, GY)

CURVE_B = 7

Point = Optional[Tuple[int, int]]


class CurveError(ArithmeticError):
    """Point arithmetic produced a result that must be impossible."""


# ---------------------------------------------------------------------------
# Field arithmetic
# ---------------------------------------------------------------------------

def field_add(a: int, b: int, m: int = P) -> int:
    return (a + b) % m


def field_mul(a: int, b: int, m: int = P) -> int:
    return (a * b) % m


def mod_inverse(a: int, m: int = P) -> int:
    """Multiplicative inverse via the extended Euclidean algorithm.

    Raises ZeroDivisionError if ``a`` is congruent to 0 (no inverse exists).
    """
    old_r, r = a % m, m
    old_s, s = 1, 0
    if old_r == 0:
        raise ZeroDivisionError("No inverse for 0 modulo m")
    while r != 0:
        q = old_r // r
        old_r, r = r, old_r - q * r
        old_s, s = s, old_s - q * s
    if old_r != 1:
        raise ZeroDivisionError(f"{a} is not invertible modulo m")
    return old_s % m


def mod_pow(base: int, exp: int, m: int = P) -> int:
    """Modular exponentiation with a non-negative exponent."""
    if exp < 0:
        raise ValueError("Exponent must be non-negative")
    return pow(base % m, exp, m)


def field_sqrt(c: int) -> int | None:
    """Square root in GF(P), or None if ``c`` is not a quadratic residue.

    P ≡ 3 (mod 4), so the candidate root is c^((P+1)/4). The candidate is
    checked by squaring it back.
    """
    c %= P
    y = mod_pow(c, (P + 1) // 4)
    if field_mul(y, y) != c:
        return None
    return y


# ---------------------------------------------------------------------------
# Point arithmetic
# ---------------------------------------------------------------------------

def is_on_curve(point: Point) -> bool:
    """True for the point at infinity or any affine point satisfying the curve."""
    if point is None:
        return True
    x, y = point
    if not (0 <= x < P and 0 <= y < P):
        return False
    return (y * y - x * x * x - CURVE_B) % P == 0


def point_negate(point: Point) -> Point:
    if point is None:
        return None
    x, y = point
    return (x, (-y) % P)


def point_add(p1: Point, p2: Point) -> Point:
    """Add two points.

    Handles the identity, doubling when the operands are equal, and the
    vertical line (same x, different y) which yields the identity.
    """
    if p1 is None:
        return p2
    if p2 is None:
        return p1

    x1, y1 = p1
    x2, y2 = p2

    if x1 == x2:
        if field_add(y1, y2) == 0:
            # P + (-P), including doubling a point with y == 0
            return None
        # Doubling: tangent slope 3x^2 / 2y
        lam = field_mul(3 * x1 * x1, mod_inverse(2 * y1))
    else:
        lam = field_mul(y2 - y1, mod_inverse(x2 - x1))

    x3 = field_add(field_mul(lam, lam), -x1 - x2)
    y3 = field_add(field_mul(lam, x1 - x3), -y1)
    return (x3, y3)


def scalar_multiply(k: int, point: Point = G) -> Point:
    """Compute k·point by double-and-add, least-significant bit first.

    ``k`` is reduced modulo N first, so k ≡ 0 yields the identity. For any
    other k the result must be a finite point (the group has prime order);
    reaching the identity anyway raises CurveError instead of returning it.
    """
    if point is None:
        return None
    k %= N

    result: Point = None
    addend: Point = point
    n = k
    while n:
        if n & 1:
            result = point_add(result, addend)
        addend = point_add(addend, addend)
        n >>= 1

    if result is None and k != 0:
        raise CurveError("Scalar multiplication reached the point at infinity")
    return result


def lift_x(x: int) -> Point:
    """Return the curve point with x-coordinate ``x`` and even y (BIP-340).

    Returns None if ``x`` is out of range or not the x-coordinate of a point.
    """
    if not 0 <= x < P:
        return None
    y = field_sqrt(x * x * x + CURVE_B)
    if y is None:
        return None
    return (x, y if y % 2 == 0 else P - y)


def has_even_y(point: Point) -> bool:
    return point is not None and point[1] % 2 == 0
