from __future__ import annotations

import logging

import pytest

from ordinalsplus.errors import InscriptionError
from ordinalsplus.ordinals.envelope import (
    TAG_METADATA,
    build_envelope,
    build_leaf_script,
    decode_inscription_id,
    encode_inscription_id,
    parse_envelope,
    push_data,
)

PUBKEY = bytes(range(1, 33))


def test_leaf_script_layout() -> None:
    envelope = build_envelope("hi", "text/plain")
    script = build_leaf_script(envelope, PUBKEY)
    expected = (
        b"\x20" + PUBKEY
        + bytes.fromhex("ac0063")
        + b"\x03ord"
        + b"\x01\x01"
        + b"\x0atext/plain"
        + b"\x00"
        + b"\x02hi"
        + b"\x68"
    )
    assert script == expected


def test_content_and_type_are_contiguous_in_script() -> None:
    body = "Hello, Ordinals!"
    script = build_leaf_script(build_envelope(body, "text/plain;charset=utf-8"), PUBKEY)
    assert b"text/plain;charset=utf-8" in script
    assert body.encode() in script


def test_large_body_is_chunked() -> None:
    body = bytes(range(256)) * 5  # 1280 bytes
    envelope = build_envelope(body, "application/octet-stream")
    script = build_leaf_script(envelope, PUBKEY)
    assert script.count(bytes.fromhex("4d0802")) == 2
    assert bytes.fromhex("4cf0") in script  # final 240-byte push
    assert parse_envelope(script).body == body


def test_empty_body_is_single_zero_push() -> None:
    script = build_leaf_script(build_envelope(b"", "text/plain"), PUBKEY)
    assert script.endswith(b"\x00\x00\x68")
    assert parse_envelope(script).body == b""


def test_empty_content_type_warns(caplog: pytest.LogCaptureFixture) -> None:
    with caplog.at_level(logging.WARNING, logger="ordinalsplus.ordinals.envelope"):
        envelope = build_envelope("x", "")
    assert "empty content type" in caplog.text
    script = build_leaf_script(envelope, PUBKEY)
    assert b"\x01\x01\x00" in script
    assert parse_envelope(script).content_type == ""


def test_metadata_mapping_uses_cbor_tag() -> None:
    metadata = {"title": "Test", "attributes": [1, 2, 3]}
    envelope = build_envelope("body", "text/plain", metadata)
    assert envelope.metadata_tags[0][0] == TAG_METADATA
    parsed = parse_envelope(build_leaf_script(envelope, PUBKEY))
    assert parsed.metadata == metadata


def test_raw_tags_keep_order() -> None:
    envelope = build_envelope("body", "text/plain", [(7, "did"), (b"\x0b", b"\x01\x02")])
    assert envelope.metadata_tags == ((b"\x07", b"did"), (b"\x0b", b"\x01\x02"))
    parsed = parse_envelope(build_leaf_script(envelope, PUBKEY))
    assert parsed.metadata_tags == envelope.metadata_tags


def test_parent_inscription_id_encoding() -> None:
    txid = "ab" * 31 + "cd"
    assert encode_inscription_id(f"{txid}i0") == bytes.fromhex(txid)[::-1]
    encoded = encode_inscription_id(f"{txid}i258")
    assert encoded[32:] == b"\x02\x01"
    assert decode_inscription_id(encoded) == f"{txid}i258"

    envelope = build_envelope("child", "text/plain", parent_inscription_id=f"{txid}i1")
    assert parse_envelope(build_leaf_script(envelope, PUBKEY)).parent_inscription_id == f"{txid}i1"


def test_invalid_inputs() -> None:
    with pytest.raises(InscriptionError):
        build_envelope(None, "text/plain")  # type: ignore[arg-type]
    with pytest.raises(InscriptionError):
        build_envelope("x", "text/plain", parent_inscription_id="nothex")
    with pytest.raises(InscriptionError, match="x-only"):
        build_leaf_script(build_envelope("x", "text/plain"), b"\x02" + PUBKEY)


def test_push_data_opcodes() -> None:
    assert push_data(b"") == b"\x00"
    assert push_data(b"a" * 75)[0] == 75
    assert push_data(b"a" * 76)[:2] == b"\x4c\x4c"
    assert push_data(b"a" * 520)[:3] == bytes.fromhex("4d0802")
