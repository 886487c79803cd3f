"""secp256k1 and BIP340/341 hashing primitives.

Point arithmetic is done on affine coordinates with the generator
multiplication delegated to the ``cryptography`` backend. Only the handful of
operations needed for Taproot tweaking are implemented here; signing lives in
:mod:`ordinalsplus.transaction` and uses ``coincurve``.
"""

from __future__ import annotations

import hashlib
from typing import Tuple

from cryptography.hazmat.primitives.asymmetric import ec

SECP256K1_ORDER = 0xFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFEBAAEDCE6AF48A03BBFD25E8CD0364141
SECP256K1_FIELD_SIZE = 0xFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFEFFFFFC2F

TAPSCRIPT_LEAF_VERSION = 0xC0

Point = Tuple[int, int]


def tagged_hash(tag: str, data: bytes) -> bytes:
    """Compute a BIP340 tagged hash.

    Args:
        tag: Domain separation tag (e.g. ``"TapLeaf"``, ``"TapTweak"``)
        data: Message to hash

    Returns:
        32-byte SHA256 digest of ``sha256(tag) || sha256(tag) || data``
    """
    tag_hash = hashlib.sha256(tag.encode()).digest()
    return hashlib.sha256(tag_hash + tag_hash + data).digest()


def sha256(data: bytes) -> bytes:
    return hashlib.sha256(data).digest()


def double_sha256(data: bytes) -> bytes:
    return hashlib.sha256(hashlib.sha256(data).digest()).digest()


def ser_compact_size(n: int) -> bytes:
    """Serialize an integer as a Bitcoin compact size."""
    if n < 0:
        raise ValueError("compact size cannot be negative")
    if n < 253:
        return bytes([n])
    if n <= 0xFFFF:
        return b"\xfd" + n.to_bytes(2, "little")
    if n <= 0xFFFFFFFF:
        return b"\xfe" + n.to_bytes(4, "little")
    return b"\xff" + n.to_bytes(8, "little")


def taproot_leaf_hash(leaf_script: bytes, leaf_version: int = TAPSCRIPT_LEAF_VERSION) -> bytes:
    """Return the TapLeaf hash of a single script leaf."""
    return tagged_hash(
        "TapLeaf", bytes([leaf_version]) + ser_compact_size(len(leaf_script)) + leaf_script
    )


def lift_x(x_bytes: bytes) -> Point:
    """Reconstruct the even-y secp256k1 point for an x-only key.

    Raises:
        ValueError: If the coordinate is out of range or not on the curve
    """
    if len(x_bytes) != 32:
        raise ValueError(f"x-only key must be 32 bytes, got {len(x_bytes)}")
    p = SECP256K1_FIELD_SIZE
    x = int.from_bytes(x_bytes, "big")
    if x == 0 or x >= p:
        raise ValueError("x-coordinate is zero or exceeds the field size")

    y_squared = (pow(x, 3, p) + 7) % p
    y = pow(y_squared, (p + 1) // 4, p)
    if pow(y, 2, p) != y_squared:
        raise ValueError("x-coordinate is not on the curve")
    if y % 2:
        y = p - y
    return x, y


def point_add(p1: Point, p2: Point) -> Point:
    p = SECP256K1_FIELD_SIZE
    x1, y1 = p1
    x2, y2 = p2
    if x1 == x2:
        if (y1 + y2) % p == 0:
            raise ValueError("Point addition results in point at infinity")
        lam = (3 * x1 * x1 * pow(2 * y1, -1, p)) % p
    else:
        lam = ((y2 - y1) * pow(x2 - x1, -1, p)) % p
    x3 = (lam * lam - x1 - x2) % p
    y3 = (lam * (x1 - x3) - y1) % p
    return x3, y3


def point_from_secret(secret: int) -> Point:
    """Multiply the generator by ``secret`` using the cryptography backend."""
    if not 0 < secret < SECP256K1_ORDER:
        raise ValueError("Scalar is outside the secp256k1 order")
    numbers = ec.derive_private_key(secret, ec.SECP256K1()).public_key().public_numbers()
    return numbers.x, numbers.y


def xonly_from_secret(secret: bytes) -> bytes:
    """Return the 32-byte x-only public key for a 32-byte private key."""
    x, _ = point_from_secret(int.from_bytes(secret, "big"))
    return x.to_bytes(32, "big")


def taproot_tweak_pubkey(internal_key: bytes, merkle_root: bytes = b"") -> Tuple[bytes, int]:
    """Tweak an internal key per BIP341: ``Q = P + H_TapTweak(P || root) * G``.

    An empty ``merkle_root`` produces the key-path-only commitment.

    Returns:
        Tuple of (32-byte x-only output key, parity of Q's y coordinate)

    Raises:
        ValueError: If the internal key is invalid or tweaking fails
    """
    if len(internal_key) != 32:
        raise ValueError(f"Internal key must be 32 bytes, got {len(internal_key)}")
    if merkle_root and len(merkle_root) != 32:
        raise ValueError(f"Merkle root must be 32 bytes, got {len(merkle_root)}")

    tweak_int = int.from_bytes(tagged_hash("TapTweak", internal_key + merkle_root), "big")
    if tweak_int >= SECP256K1_ORDER:
        raise ValueError("Tweak value exceeds curve order")

    internal_point = lift_x(internal_key)
    tweaked = point_add(internal_point, point_from_secret(tweak_int))
    return tweaked[0].to_bytes(32, "big"), tweaked[1] % 2
