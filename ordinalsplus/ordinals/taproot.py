"""P2TR output derivation for inscription commit addresses.

Only the two shapes needed for inscriptions are supported: a key-path-only
output, and an output committing to a single tapscript leaf. For the latter
the merkle root is the TapLeaf hash and the control block is
``(leaf_version | parity) || internal_key`` with an empty merkle path.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass

from ..addresses import create_taproot_address, p2tr_script
from ..crypto import TAPSCRIPT_LEAF_VERSION, taproot_leaf_hash, taproot_tweak_pubkey
from ..errors import ErrorCode, InscriptionError
from ..keys import from_public_key
from ..networks import Network, get_network
from ..transaction import TapLeafScript

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class TapLeaf:
    """A single-leaf script tree."""

    script: bytes
    leaf_version: int = TAPSCRIPT_LEAF_VERSION


@dataclass(frozen=True)
class LeafScriptInfo:
    script: bytes
    control_block: bytes
    leaf_version: int = TAPSCRIPT_LEAF_VERSION

    @property
    def leaf_hash(self) -> bytes:
        return taproot_leaf_hash(self.script, self.leaf_version)


@dataclass(frozen=True)
class P2TRDetails:
    """A derived Taproot output.

    ``script`` is the scriptPubKey the commit transaction must pay; ``leaf`` is
    present only when the output commits to a script.
    """

    address: str
    script: bytes
    internal_key: bytes
    output_key: bytes
    parity: int
    merkle_root: bytes = b""
    leaf: LeafScriptInfo | None = None
    network: str = "mainnet"

    def tap_leaf_script(self, leaf: LeafScriptInfo | None = None) -> TapLeafScript:
        """PSBT leaf descriptor for ``leaf`` (default: the derived leaf)."""
        leaf = leaf or self.leaf
        if leaf is None:
            raise InscriptionError(ErrorCode.INVALID_INPUT, "P2TR output has no script leaf")
        return TapLeafScript(
            internal_key=self.internal_key,
            control_block=leaf.control_block,
            script=leaf.script,
            leaf_version=leaf.leaf_version,
        )


def derive_address(
    internal_key: bytes | str,
    script_tree: TapLeaf | bytes | None = None,
    network: str | Network = "mainnet",
) -> P2TRDetails:
    """Compute the Taproot output for ``internal_key`` and an optional single leaf.

    Args:
        internal_key: 32-byte x-only or 33-byte compressed key (bytes or hex)
        script_tree: A :class:`TapLeaf` or raw leaf script bytes
        network: Network used for the bech32m address

    Raises:
        InscriptionError: ``INVALID_INPUT`` for malformed keys or scripts
    """
    params = get_network(network)
    key = from_public_key(internal_key).public_key

    leaf: TapLeaf | None
    if isinstance(script_tree, (bytes, bytearray)):
        leaf = TapLeaf(bytes(script_tree))
    else:
        leaf = script_tree
    if leaf is not None and not leaf.script:
        raise InscriptionError(ErrorCode.INVALID_INPUT, "Leaf script cannot be empty")
    if leaf is not None and leaf.leaf_version & 1:
        raise InscriptionError(ErrorCode.INVALID_INPUT, f"Invalid leaf version {leaf.leaf_version:#04x}")

    merkle_root = taproot_leaf_hash(leaf.script, leaf.leaf_version) if leaf else b""
    try:
        output_key, parity = taproot_tweak_pubkey(key, merkle_root)
    except ValueError as exc:
        raise InscriptionError(
            ErrorCode.INVALID_INPUT, f"Could not compute Taproot output: {exc}"
        ) from exc

    leaf_info = None
    if leaf is not None:
        leaf_info = LeafScriptInfo(
            script=leaf.script,
            control_block=bytes([leaf.leaf_version | parity]) + key,
            leaf_version=leaf.leaf_version,
        )

    details = P2TRDetails(
        address=create_taproot_address(output_key, params),
        script=p2tr_script(output_key),
        internal_key=key,
        output_key=output_key,
        parity=parity,
        merkle_root=merkle_root,
        leaf=leaf_info,
        network=params.name,
    )
    logger.debug("Derived %s P2TR address %s", params.name, details.address)
    return details


def verify_leaf_commitment(details: P2TRDetails, leaf: LeafScriptInfo | None = None) -> bool:
    """Check that ``leaf`` (default: ``details.leaf``) re-derives ``details.script``.

    The control block's internal key, parity bit and leaf version are all
    taken into account, so a control block from a different derivation fails.
    """
    candidate = leaf or details.leaf
    if candidate is None or len(candidate.control_block) != 33:
        return False
    control_byte = candidate.control_block[0]
    internal_key = candidate.control_block[1:]
    if control_byte & 0xFE != candidate.leaf_version:
        return False
    try:
        output_key, parity = taproot_tweak_pubkey(
            internal_key, taproot_leaf_hash(candidate.script, candidate.leaf_version)
        )
    except ValueError:
        return False
    return parity == control_byte & 1 and p2tr_script(output_key) == details.script
