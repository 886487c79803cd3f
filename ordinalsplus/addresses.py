"""Address encoding and decoding (bech32, bech32m and base58check).

Segwit addresses follow BIP173/BIP350; legacy addresses are decoded with the
``base58`` package. Every decoder returns the scriptPubKey the address pays to,
which is what the transaction builders consume.
"""

from __future__ import annotations

import logging

import base58

from .errors import ErrorCode, InscriptionError
from .networks import Network, get_network

logger = logging.getLogger(__name__)

CHARSET = "qpzry9x8gf2tvdw0s3jn54khce6mua7l"
BECH32_CONST = 1
BECH32M_CONST = 0x2BC830A3

OP_0 = 0x00
OP_1 = 0x51
OP_DUP = 0x76
OP_HASH160 = 0xA9
OP_EQUAL = 0x87
OP_EQUALVERIFY = 0x88
OP_CHECKSIG = 0xAC


class AddressError(InscriptionError):
    """Raised when an address cannot be decoded for the requested network."""

    def __init__(self, message: str) -> None:
        super().__init__(ErrorCode.INVALID_ADDRESS, message)


def bech32_polymod(values: list[int]) -> int:
    generator = [0x3B6A57B2, 0x26508E6D, 0x1EA119FA, 0x3D4233DD, 0x2A1462B3]
    chk = 1
    for value in values:
        top = chk >> 25
        chk = (chk & 0x1FFFFFF) << 5 ^ value
        for i in range(5):
            chk ^= generator[i] if ((top >> i) & 1) else 0
    return chk


def bech32_hrp_expand(hrp: str) -> list[int]:
    return [ord(x) >> 5 for x in hrp] + [0] + [ord(x) & 31 for x in hrp]


def _create_checksum(hrp: str, data: list[int], const: int) -> list[int]:
    polymod = bech32_polymod(bech32_hrp_expand(hrp) + data + [0] * 6) ^ const
    return [(polymod >> 5 * (5 - i)) & 31 for i in range(6)]


def convertbits(data: bytes | list[int], frombits: int, tobits: int, pad: bool = True) -> list[int] | None:
    """Regroup a sequence of ``frombits``-wide values into ``tobits``-wide values."""
    acc = 0
    bits = 0
    ret: list[int] = []
    maxv = (1 << tobits) - 1
    max_acc = (1 << (frombits + tobits - 1)) - 1
    for value in data:
        if value < 0 or value >> frombits:
            return None
        acc = ((acc << frombits) | value) & max_acc
        bits += frombits
        while bits >= tobits:
            bits -= tobits
            ret.append((acc >> bits) & maxv)
    if pad:
        if bits:
            ret.append((acc << (tobits - bits)) & maxv)
    elif bits >= frombits or ((acc << (tobits - bits)) & maxv):
        return None
    return ret


def encode_segwit_address(hrp: str, witver: int, witprog: bytes) -> str:
    """Encode a witness program, using bech32m for version 1 and above.

    Raises:
        AddressError: If the program length is invalid for its version
    """
    if not 0 <= witver <= 16:
        raise AddressError(f"Invalid witness version {witver}")
    if not 2 <= len(witprog) <= 40 or (witver == 0 and len(witprog) not in (20, 32)):
        raise AddressError(f"Invalid witness program length {len(witprog)} for version {witver}")
    const = BECH32M_CONST if witver >= 1 else BECH32_CONST
    data = [witver] + (convertbits(witprog, 8, 5) or [])
    checksum = _create_checksum(hrp, data, const)
    return hrp + "1" + "".join(CHARSET[d] for d in data + checksum)


def decode_segwit_address(address: str) -> tuple[str, int, bytes]:
    """Decode a bech32/bech32m address into ``(hrp, witness_version, program)``."""
    if address.lower() != address and address.upper() != address:
        raise AddressError("Mixed-case bech32 address")
    address = address.lower()
    pos = address.rfind("1")
    if pos < 1 or pos + 7 > len(address) or len(address) > 90:
        raise AddressError(f"Malformed bech32 address: {address}")
    hrp = address[:pos]
    try:
        data = [CHARSET.index(c) for c in address[pos + 1 :]]
    except ValueError as exc:
        raise AddressError(f"Invalid bech32 character in {address}") from exc

    const = bech32_polymod(bech32_hrp_expand(hrp) + data)
    if const not in (BECH32_CONST, BECH32M_CONST):
        raise AddressError(f"Invalid bech32 checksum for {address}")
    witver = data[0]
    program = convertbits(data[1:-6], 5, 8, pad=False)
    if program is None or not 2 <= len(program) <= 40:
        raise AddressError(f"Invalid witness program in {address}")
    if witver > 16:
        raise AddressError(f"Invalid witness version {witver}")
    if witver == 0 and len(program) not in (20, 32):
        raise AddressError(f"Invalid v0 witness program length {len(program)}")
    expected = BECH32_CONST if witver == 0 else BECH32M_CONST
    if const != expected:
        raise AddressError(
            f"Address {address} uses the wrong checksum variant for witness version {witver}"
        )
    return hrp, witver, bytes(program)


def witness_script(witver: int, program: bytes) -> bytes:
    opcode = OP_0 if witver == 0 else OP_1 + witver - 1
    return bytes([opcode, len(program)]) + program


def p2tr_script(output_key: bytes) -> bytes:
    if len(output_key) != 32:
        raise AddressError(f"Output key must be 32 bytes, got {len(output_key)}")
    return witness_script(1, output_key)


def create_taproot_address(output_key: bytes, network: str | Network = "mainnet") -> str:
    """Return the bech32m address for a 32-byte tweaked output key."""
    if len(output_key) != 32:
        raise AddressError(f"Output key must be 32 bytes, got {len(output_key)}")
    return encode_segwit_address(get_network(network).bech32_hrp, 1, output_key)


def address_to_script_pubkey(address: str, network: str | Network = "mainnet") -> bytes:
    """Return the scriptPubKey paid by ``address`` on ``network``.

    Supports P2WPKH, P2WSH, P2TR (and future witness versions), P2PKH and
    P2SH.

    Raises:
        AddressError: If the address is malformed or belongs to another network
    """
    params = get_network(network)
    if not address:
        raise AddressError("Address is empty")

    lowered = address.lower()
    if lowered.startswith(params.bech32_hrp + "1"):
        hrp, witver, program = decode_segwit_address(address)
        if hrp != params.bech32_hrp:
            raise AddressError(f"Address {address} is not valid for {params.name}")
        return witness_script(witver, program)

    try:
        payload = base58.b58decode_check(address)
    except ValueError as exc:
        raise AddressError(f"Address {address} is not valid for {params.name}") from exc
    if len(payload) != 21:
        raise AddressError(f"Unexpected base58 payload length {len(payload)} for {address}")
    version, digest = payload[0], payload[1:]
    if version == params.p2pkh_prefix:
        return bytes([OP_DUP, OP_HASH160, 20]) + digest + bytes([OP_EQUALVERIFY, OP_CHECKSIG])
    if version == params.p2sh_prefix:
        return bytes([OP_HASH160, 20]) + digest + bytes([OP_EQUAL])
    raise AddressError(f"Address {address} has version byte {version:#04x}, not valid for {params.name}")


def script_pubkey_to_address(script: bytes, network: str | Network = "mainnet") -> str | None:
    """Best-effort reverse of :func:`address_to_script_pubkey`; ``None`` for non-standard scripts."""
    params = get_network(network)
    if len(script) >= 4 and (script[0] == OP_0 or OP_1 <= script[0] <= OP_1 + 15):
        if script[1] == len(script) - 2:
            witver = 0 if script[0] == OP_0 else script[0] - OP_1 + 1
            try:
                return encode_segwit_address(params.bech32_hrp, witver, script[2:])
            except AddressError:
                return None
    if len(script) == 25 and script[:3] == bytes([OP_DUP, OP_HASH160, 20]) and script[23:] == bytes(
        [OP_EQUALVERIFY, OP_CHECKSIG]
    ):
        return base58.b58encode_check(bytes([params.p2pkh_prefix]) + script[3:23]).decode()
    if len(script) == 23 and script[:2] == bytes([OP_HASH160, 20]) and script[22] == OP_EQUAL:
        return base58.b58encode_check(bytes([params.p2sh_prefix]) + script[2:22]).decode()
    logger.debug("No address form for script %s", script.hex())
    return None
