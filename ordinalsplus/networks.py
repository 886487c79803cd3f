"""Bitcoin network parameters used for address and WIF encoding."""

from __future__ import annotations

from dataclasses import dataclass

from .errors import ErrorCode, InscriptionError


@dataclass(frozen=True)
class Network:
    name: str
    bech32_hrp: str
    wif_prefix: int
    p2pkh_prefix: int
    p2sh_prefix: int


MAINNET = Network("mainnet", "bc", 0x80, 0x00, 0x05)
TESTNET = Network("testnet", "tb", 0xEF, 0x6F, 0xC4)
SIGNET = Network("signet", "tb", 0xEF, 0x6F, 0xC4)
REGTEST = Network("regtest", "bcrt", 0xEF, 0x6F, 0xC4)

NETWORKS: dict[str, Network] = {
    network.name: network for network in (MAINNET, TESTNET, SIGNET, REGTEST)
}
_ALIASES = {"bitcoin": "mainnet", "main": "mainnet", "test": "testnet"}


def get_network(network: str | Network) -> Network:
    """Resolve a network name (or pass through a :class:`Network`)."""

    if isinstance(network, Network):
        return network
    key = _ALIASES.get(network.strip().lower(), network.strip().lower())
    try:
        return NETWORKS[key]
    except KeyError as exc:
        raise InscriptionError(
            ErrorCode.INVALID_INPUT,
            f"Unknown network '{network}'; expected one of {', '.join(sorted(NETWORKS))}",
        ) from exc
