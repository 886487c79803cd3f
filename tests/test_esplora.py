from __future__ import annotations

import json

import pytest
import requests

from ordinalsplus.config import EngineConfig
from ordinalsplus.errors import BroadcastError, ErrorCode, InscriptionError
from ordinalsplus.esplora import EsploraClient, format_broadcast_hint

ADDRESS = "bc1qw508d6qejxtdg4y5r3zarvary0c5xw7kv8f3t4"
TXID = "ab" * 32


class FakeResponse:
    def __init__(self, status_code: int = 200, text: str = "", url: str = "") -> None:
        self.status_code = status_code
        self.text = text
        self.url = url
        self.reason = "Bad Request" if status_code >= 400 else "OK"

    @property
    def ok(self) -> bool:
        return self.status_code < 400

    def json(self):
        return json.loads(self.text)


class FakeSession:
    def __init__(self, routes: dict) -> None:
        self.routes = routes
        self.calls: list[tuple[str, str, dict]] = []

    def request(self, method, url, timeout=None, **kwargs):
        self.calls.append((method, url, kwargs))
        result = self.routes[(method, url)]
        if isinstance(result, Exception):
            raise result
        return result


BASE = "https://mempool.space/api"


def _client(routes: dict, **config) -> tuple[EsploraClient, FakeSession]:
    session = FakeSession(routes)
    return EsploraClient(EngineConfig(**config), session=session), session


def test_broadcast_returns_txid() -> None:
    client, session = _client({("POST", f"{BASE}/tx"): FakeResponse(200, TXID + "\n")})
    assert client.broadcast_transaction("mainnet", "0200") == TXID
    method, url, kwargs = session.calls[0]
    assert kwargs["data"] == "0200"


def test_broadcast_rejection_raises_with_details() -> None:
    body = "sendrawtransaction RPC error: min relay fee not met"
    client, _ = _client({("POST", f"{BASE}/tx"): FakeResponse(400, body)})
    with pytest.raises(BroadcastError) as excinfo:
        client.broadcast_transaction("mainnet", "0200")
    error = excinfo.value
    assert error.code is ErrorCode.BROADCAST_FAILURE
    assert error.details["status_code"] == 400
    assert "higher fee rate" in format_broadcast_hint(error)


def test_network_selects_default_endpoint() -> None:
    url = "https://mempool.space/testnet/api/tx"
    client, _ = _client({("POST", url): FakeResponse(200, TXID)})
    assert client.broadcast_transaction("testnet", "00") == TXID


def test_connection_errors_become_network_errors() -> None:
    client, _ = _client(
        {("GET", f"{BASE}/blocks/tip/height"): requests.ConnectionError("refused")}
    )
    with pytest.raises(InscriptionError) as excinfo:
        client.get_tip_height()
    assert excinfo.value.code is ErrorCode.NETWORK_ERROR
    assert excinfo.value.recoverable is True
    assert client.is_healthy() is False


def test_transaction_status_variants() -> None:
    status_url = f"{BASE}/tx/{TXID}/status"
    client, session = _client(
        {
            ("GET", status_url): FakeResponse(200, json.dumps({"confirmed": True, "block_height": 100})),
            ("GET", f"{BASE}/blocks/tip/height"): FakeResponse(200, "102"),
        }
    )
    confirmation = client.get_transaction_status("mainnet", TXID)
    assert confirmation.status == "confirmed"
    assert confirmation.confirmations == 3
    assert confirmation.block_height == 100

    session.routes[("GET", status_url)] = FakeResponse(200, json.dumps({"confirmed": False}))
    assert client.get_transaction_status("mainnet", TXID).status == "pending"

    session.routes[("GET", status_url)] = FakeResponse(404, "Transaction not found")
    assert client.get_transaction_status("mainnet", TXID).status == "not_found"


def test_list_utxos_fills_script() -> None:
    items = [{"txid": TXID, "vout": 1, "value": 5000, "status": {"confirmed": True}}]
    client, _ = _client(
        {("GET", f"{BASE}/address/{ADDRESS}/utxo"): FakeResponse(200, json.dumps(items))}
    )
    (utxo,) = client.list_utxos(ADDRESS)
    assert utxo.outpoint == f"{TXID}:1"
    assert utxo.value == 5000
    assert utxo.script_pubkey == bytes.fromhex("0014751e76e8199196d454941c45d1b3a323f1433bd6")


def test_custom_endpoint_and_malformed_json() -> None:
    base = "http://localhost:3002"
    client, _ = _client(
        {("GET", f"{base}/address/{ADDRESS}/utxo"): FakeResponse(200, "<html>")},
        esplora_url=base + "/",
    )
    with pytest.raises(InscriptionError) as excinfo:
        client.list_utxos(ADDRESS)
    assert excinfo.value.code is ErrorCode.NETWORK_ERROR


def test_hints_cover_common_rejections() -> None:
    assert "already spent" in format_broadcast_hint("bad-txns-inputs-missingorspent")
    assert "leaf script" in format_broadcast_hint("non-mandatory-script-verify-flag (Invalid Schnorr signature)")
    assert format_broadcast_hint("something else") is None
    assert format_broadcast_hint(None) is None
