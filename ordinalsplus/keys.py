"""Key handling for Taproot reveal keys.

Keys are plain byte containers: a 32-byte secret and its 32-byte x-only
public key. Nothing here persists keys; callers own their storage.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass

import base58
from cryptography.hazmat.primitives.asymmetric import ec

from .crypto import SECP256K1_ORDER, lift_x, xonly_from_secret
from .errors import ErrorCode, InscriptionError
from .networks import MAINNET, TESTNET, Network, get_network

logger = logging.getLogger(__name__)


class KeyMaterialError(InscriptionError):
    """Raised for malformed key material."""

    def __init__(self, message: str) -> None:
        super().__init__(ErrorCode.INVALID_INPUT, message)


@dataclass(frozen=True)
class PublicKeyOnly:
    public_key: bytes

    @property
    def hex(self) -> str:
        return self.public_key.hex()


@dataclass(frozen=True)
class KeyPair:
    """A secp256k1 secret with its x-only public key."""

    private_key: bytes
    public_key: bytes

    def __repr__(self) -> str:
        # Keep secrets out of logs and tracebacks.
        return f"KeyPair(public_key={self.public_key.hex()})"

    @property
    def private_key_hex(self) -> str:
        return self.private_key.hex()

    @property
    def public_key_hex(self) -> str:
        return self.public_key.hex()


def _coerce_bytes(value: bytes | bytearray | str, *, label: str) -> bytes:
    if isinstance(value, (bytes, bytearray)):
        return bytes(value)
    if isinstance(value, str):
        try:
            return bytes.fromhex(value.strip())
        except ValueError as exc:
            raise KeyMaterialError(f"{label} is not valid hex") from exc
    raise KeyMaterialError(f"{label} must be bytes or a hex string, got {type(value).__name__}")


def generate_key_pair() -> KeyPair:
    """Generate a fresh random key pair for a reveal transaction."""
    secret_key = ec.generate_private_key(ec.SECP256K1())
    secret = secret_key.private_numbers().private_value.to_bytes(32, "big")
    return from_private_key(secret)


def from_private_key(private_key: bytes | str) -> KeyPair:
    """Build a :class:`KeyPair` from a raw or hex-encoded 32-byte secret."""
    raw = _coerce_bytes(private_key, label="Private key")
    if len(raw) != 32:
        raise KeyMaterialError(f"Private key must be exactly 32 bytes, got {len(raw)}")
    scalar = int.from_bytes(raw, "big")
    if not 0 < scalar < SECP256K1_ORDER:
        raise KeyMaterialError("Private key is outside the secp256k1 curve order")
    return KeyPair(private_key=raw, public_key=xonly_from_secret(raw))


def from_public_key(public_key: bytes | str) -> PublicKeyOnly:
    """Normalize a 32-byte x-only or 33-byte compressed key to x-only form."""
    raw = _coerce_bytes(public_key, label="Public key")
    if len(raw) == 33:
        if raw[0] not in (0x02, 0x03):
            raise KeyMaterialError(f"Compressed public key has invalid prefix {raw[0]:#04x}")
        raw = raw[1:]
    elif len(raw) != 32:
        raise KeyMaterialError(f"Public key must be 32 or 33 bytes, got {len(raw)}")
    try:
        lift_x(raw)
    except ValueError as exc:
        raise KeyMaterialError(f"Public key is not a valid curve point: {exc}") from exc
    return PublicKeyOnly(raw)


def _decode_wif_for(payload: bytes, network: Network) -> bytes | None:
    if not payload or payload[0] != network.wif_prefix:
        return None
    body = payload[1:]
    if len(body) == 33 and body[-1] == 0x01:
        body = body[:32]
    if len(body) != 32:
        return None
    return body


def decode_wif(wif: str) -> bytes:
    """Decode a WIF private key, trying the mainnet prefix before the testnet one.

    Raises:
        KeyMaterialError: If the string is neither a mainnet nor a testnet WIF key
    """
    try:
        payload = base58.b58decode_check(wif.strip())
    except ValueError as exc:
        raise KeyMaterialError(f"Invalid WIF private key: {exc}") from exc

    for network in (MAINNET, TESTNET):
        secret = _decode_wif_for(payload, network)
        if secret is not None:
            logger.debug("Decoded WIF key using %s prefix", network.name)
            return secret
    raise KeyMaterialError(
        f"Invalid WIF private key: prefix {payload[0]:#04x} matches neither mainnet (0x80) "
        "nor testnet (0xef) encoding"
        if payload
        else "Invalid WIF private key: empty payload"
    )


def encode_wif(private_key: bytes, network: str | Network = "mainnet", *, compressed: bool = True) -> str:
    if len(private_key) != 32:
        raise KeyMaterialError(f"Private key must be exactly 32 bytes, got {len(private_key)}")
    payload = bytes([get_network(network).wif_prefix]) + private_key
    if compressed:
        payload += b"\x01"
    return base58.b58encode_check(payload).decode()
