"""HTTP client for Esplora-compatible APIs (broadcast, status polling, UTXO lookup).

The engine never talks to the network on its own; it accepts any object that
satisfies :class:`Broadcaster` or :class:`UtxoSource`. :class:`EsploraClient`
is the default implementation of both, built on ``requests``.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, List, Protocol

import requests
from requests import RequestException, Response

from .addresses import address_to_script_pubkey
from .config import DEFAULT_ESPLORA_URLS, EngineConfig, load_engine_config
from .errors import BroadcastError, ErrorCode, InscriptionError
from .networks import get_network
from .utxo import UTXO

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class TransactionConfirmation:
    status: str
    confirmations: int = 0
    block_height: int | None = None


class UtxoSource(Protocol):
    def list_utxos(self, address: str) -> List[UTXO]: ...


class Broadcaster(Protocol):
    def broadcast_transaction(self, network: str, raw_tx_hex: str) -> str: ...

    def get_transaction_status(self, network: str, txid: str) -> TransactionConfirmation: ...


def format_broadcast_hint(error: BroadcastError | str | None) -> str | None:
    """Return a short remediation hint for common broadcast rejections."""

    if error is None:
        return None
    message = error if isinstance(error, str) else str(error.details.get("response") or error.message)
    lowered = message.lower()
    if "min relay fee not met" in lowered or "mempool min fee not met" in lowered:
        return "The fee is below the node's relay minimum. Rebuild with a higher fee rate."
    if "bad-txns-inputs-missingorspent" in lowered or "missing inputs" in lowered:
        return (
            "An input is missing or already spent. For a reveal, wait until the commit "
            "transaction is in the mempool and check the commit txid."
        )
    if "dust" in lowered:
        return "An output is below the dust limit. Increase the postage or the commit amount."
    if "non-mandatory-script-verify-flag" in lowered or "witness" in lowered:
        return (
            "Script verification failed. The reveal must reuse the exact leaf script and "
            "control block used to derive the commit address."
        )
    if "txn-already-in-mempool" in lowered or "txn-already-known" in lowered:
        return "The transaction is already in the mempool; poll its status instead of rebroadcasting."
    return None


class EsploraClient:
    """Thin synchronous client for a mempool.space / Blockstream style REST API."""

    def __init__(self, config: EngineConfig, session: requests.Session | None = None) -> None:
        self.config = config
        self._session = session or requests.Session()

    @classmethod
    def from_env(cls) -> "EsploraClient":
        """Instantiate a client using environment variables or config file."""

        return cls(load_engine_config())

    def _base_url(self, network: str | None = None) -> str:
        name = get_network(network or self.config.network).name
        if name == self.config.network:
            return self.config.api_base_url
        return DEFAULT_ESPLORA_URLS[name]

    def _request(self, method: str, path: str, *, network: str | None = None, **kwargs: Any) -> Response:
        url = f"{self._base_url(network)}{path}"
        logger.debug("%s %s", method, url)
        try:
            return self._session.request(method, url, timeout=self.config.timeout, **kwargs)
        except RequestException as exc:
            logger.error(
                "API connection failed: %s",
                exc,
                exc_info=logger.isEnabledFor(logging.DEBUG),
            )
            raise InscriptionError(
                ErrorCode.NETWORK_ERROR,
                f"Could not reach {url}. Check connectivity and ORDINALSPLUS_ESPLORA_URL "
                "(or esplora_url in ~/.ordinalsplus.yaml).",
            ) from exc

    def _get_json(self, path: str, *, network: str | None = None) -> Any:
        response = self._request("GET", path, network=network)
        if not response.ok:
            logger.error("API HTTP error %s from %s: %s", response.status_code, response.url, response.text)
            raise InscriptionError(
                ErrorCode.NETWORK_ERROR,
                f"API returned HTTP {response.status_code} for {path}",
                details={"status_code": response.status_code},
            )
        try:
            return response.json()
        except ValueError as exc:
            logger.debug("API JSON parse error: %s", response.text, exc_info=True)
            raise InscriptionError(ErrorCode.NETWORK_ERROR, "API returned malformed JSON") from exc

    def broadcast_transaction(self, network: str, raw_tx_hex: str) -> str:
        """Submit a raw transaction and return the txid reported by the API."""

        response = self._request(
            "POST",
            "/tx",
            network=network,
            data=raw_tx_hex,
            headers={"content-type": "text/plain"},
        )
        body = response.text.strip()
        if not response.ok:
            logger.error("Broadcast rejected (%s): %s", response.status_code, body)
            raise BroadcastError(
                f"Broadcast rejected by {self._base_url(network)}: {body or response.reason}",
                status_code=response.status_code,
                response=body,
            )
        logger.info("Broadcast transaction %s on %s", body, network)
        return body

    def get_tip_height(self, network: str | None = None) -> int:
        response = self._request("GET", "/blocks/tip/height", network=network)
        if not response.ok:
            raise InscriptionError(
                ErrorCode.NETWORK_ERROR, f"API returned HTTP {response.status_code} for tip height"
            )
        try:
            return int(response.text.strip())
        except ValueError as exc:
            raise InscriptionError(ErrorCode.NETWORK_ERROR, "API returned a malformed tip height") from exc

    def get_transaction_status(self, network: str, txid: str) -> TransactionConfirmation:
        response = self._request("GET", f"/tx/{txid}/status", network=network)
        if response.status_code == 404:
            return TransactionConfirmation(status="not_found")
        if not response.ok:
            raise InscriptionError(
                ErrorCode.NETWORK_ERROR,
                f"API returned HTTP {response.status_code} for {txid} status",
            )
        payload = response.json()
        if not payload.get("confirmed"):
            return TransactionConfirmation(status="pending")
        height = payload.get("block_height")
        confirmations = 1
        if height is not None:
            confirmations = max(self.get_tip_height(network) - int(height) + 1, 1)
        return TransactionConfirmation(status="confirmed", confirmations=confirmations, block_height=height)

    def list_utxos(self, address: str) -> List[UTXO]:
        """Return spendable outputs for ``address`` with their scriptPubKey filled in."""

        script = address_to_script_pubkey(address, self.config.network)
        items = self._get_json(f"/address/{address}/utxo")
        return [
            UTXO(
                txid=item["txid"],
                vout=int(item["vout"]),
                value=int(item["value"]),
                script_pubkey=script,
                address=address,
            )
            for item in items
        ]

    def is_healthy(self) -> bool:
        try:
            self.get_tip_height()
        except InscriptionError as exc:
            logger.warning("Health check failed: %s", exc)
            return False
        return True
