"""Ordinal inscription envelopes and their tapscript leaf.

The leaf script has the fixed shape::

    <reveal pubkey> OP_CHECKSIG
    OP_FALSE OP_IF
      "ord"
      0x01 <content type>
      [<tag> <value>]...
      OP_0
      <body chunk> <body chunk> ...
    OP_ENDIF

Tags are single-byte data pushes. The body is split into pushes of at most
520 bytes, the tapscript push limit. An empty body is a single zero-length
push.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Iterator, Mapping, Sequence, Tuple, Union

import cbor2

from ..errors import ErrorCode, InscriptionError

logger = logging.getLogger(__name__)

OP_0 = 0x00
OP_PUSHDATA1 = 0x4C
OP_PUSHDATA2 = 0x4D
OP_PUSHDATA4 = 0x4E
OP_IF = 0x63
OP_ENDIF = 0x68
OP_CHECKSIG = 0xAC

PROTOCOL_ID = b"ord"
MAX_PUSH_SIZE = 520

TAG_CONTENT_TYPE = b"\x01"
TAG_PARENT = b"\x03"
TAG_METADATA = b"\x05"
TAG_METAPROTOCOL = b"\x07"
TAG_CONTENT_ENCODING = b"\x09"

TagPair = Tuple[bytes, bytes]
MetadataInput = Union[Mapping[str, Any], Sequence[Tuple[Union[bytes, int], Union[bytes, str]]]]


class EnvelopeError(InscriptionError):
    def __init__(self, message: str) -> None:
        super().__init__(ErrorCode.INVALID_INPUT, message)


@dataclass(frozen=True)
class InscriptionEnvelope:
    """Content plus its ordered envelope tags."""

    content_type: str
    body: bytes
    metadata_tags: Tuple[TagPair, ...] = ()
    parent_inscription_id: str | None = None

    @property
    def metadata(self) -> Any:
        """Decode the CBOR metadata carried in tag 5, or ``None`` when absent."""
        chunks = [value for tag, value in self.metadata_tags if tag == TAG_METADATA]
        if not chunks:
            return None
        return cbor2.loads(b"".join(chunks))


def push_data(data: bytes) -> bytes:
    """Return the minimal push opcode sequence for ``data``."""
    length = len(data)
    if length == 0:
        return bytes([OP_0])
    if length <= 75:
        return bytes([length]) + data
    if length <= 0xFF:
        return bytes([OP_PUSHDATA1, length]) + data
    if length <= 0xFFFF:
        return bytes([OP_PUSHDATA2]) + length.to_bytes(2, "little") + data
    return bytes([OP_PUSHDATA4]) + length.to_bytes(4, "little") + data


def chunk_bytes(data: bytes, size: int = MAX_PUSH_SIZE) -> list[bytes]:
    if not data:
        return [b""]
    return [data[i : i + size] for i in range(0, len(data), size)]


def encode_inscription_id(inscription_id: str) -> bytes:
    """Encode ``<txid>i<index>`` in ord's binary form (reversed txid, trimmed LE index)."""
    txid, sep, index = inscription_id.partition("i")
    if not sep or len(txid) != 64:
        raise EnvelopeError(f"Invalid inscription id '{inscription_id}'")
    try:
        txid_bytes = bytes.fromhex(txid)[::-1]
        index_value = int(index)
    except ValueError as exc:
        raise EnvelopeError(f"Invalid inscription id '{inscription_id}'") from exc
    if index_value < 0 or index_value > 0xFFFFFFFF:
        raise EnvelopeError(f"Inscription index out of range in '{inscription_id}'")
    return txid_bytes + index_value.to_bytes(4, "little").rstrip(b"\x00")


def decode_inscription_id(value: bytes) -> str:
    if not 32 <= len(value) <= 36:
        raise EnvelopeError(f"Invalid encoded inscription id of length {len(value)}")
    txid = value[:32][::-1].hex()
    index = int.from_bytes(value[32:].ljust(4, b"\x00"), "little")
    return f"{txid}i{index}"


def _normalize_tag(tag: bytes | int) -> bytes:
    if isinstance(tag, int):
        if not 0 <= tag <= 0xFF:
            raise EnvelopeError(f"Tag {tag} does not fit in one byte")
        return bytes([tag])
    if not tag:
        raise EnvelopeError("Envelope tags cannot be empty")
    return bytes(tag)


def _metadata_tags(metadata: MetadataInput | None) -> list[TagPair]:
    if metadata is None:
        return []
    if isinstance(metadata, Mapping):
        encoded = cbor2.dumps(dict(metadata))
        return [(TAG_METADATA, chunk) for chunk in chunk_bytes(encoded)]
    pairs: list[TagPair] = []
    for tag, value in metadata:
        raw = value.encode("utf-8") if isinstance(value, str) else bytes(value)
        if len(raw) > MAX_PUSH_SIZE:
            raise EnvelopeError(f"Tag value of {len(raw)} bytes exceeds the {MAX_PUSH_SIZE}-byte push limit")
        pairs.append((_normalize_tag(tag), raw))
    return pairs


def build_envelope(
    content: str | bytes,
    content_type: str,
    metadata: MetadataInput | None = None,
    *,
    parent_inscription_id: str | None = None,
    metaprotocol: str | None = None,
    content_encoding: str | None = None,
) -> InscriptionEnvelope:
    """Normalize content and metadata into an :class:`InscriptionEnvelope`.

    Args:
        content: Body as bytes, or text that is UTF-8 encoded
        content_type: MIME type; not checked against any registry
        metadata: A mapping (CBOR-encoded into tag 5) or raw ``(tag, value)`` pairs
        parent_inscription_id: Optional ``<txid>i<index>`` of the parent inscription
        metaprotocol: Optional metaprotocol identifier (tag 7)
        content_encoding: Optional content encoding such as ``br`` (tag 9)

    Raises:
        EnvelopeError: For missing content or malformed tags
    """
    if content is None:
        raise EnvelopeError("Inscription content is required")
    if not isinstance(content_type, str):
        raise EnvelopeError("Content type must be a string")
    if isinstance(content, str):
        body = content.encode("utf-8")
    elif isinstance(content, (bytes, bytearray, memoryview)):
        body = bytes(content)
    else:
        raise EnvelopeError(f"Unsupported content type {type(content).__name__}")

    if not content_type:
        logger.warning("Building inscription envelope with an empty content type")
    if len(content_type.encode("utf-8")) > MAX_PUSH_SIZE:
        raise EnvelopeError("Content type exceeds the 520-byte push limit")

    if parent_inscription_id is not None:
        encode_inscription_id(parent_inscription_id)

    tags = _metadata_tags(metadata)
    if metaprotocol:
        tags.append((TAG_METAPROTOCOL, metaprotocol.encode("utf-8")))
    if content_encoding:
        tags.append((TAG_CONTENT_ENCODING, content_encoding.encode("utf-8")))

    return InscriptionEnvelope(
        content_type=content_type,
        body=body,
        metadata_tags=tuple(tags),
        parent_inscription_id=parent_inscription_id,
    )


def build_leaf_script(envelope: InscriptionEnvelope, reveal_public_key: bytes) -> bytes:
    """Return the tapscript leaf committing to ``envelope`` under ``reveal_public_key``."""
    if len(reveal_public_key) != 32:
        raise EnvelopeError(
            f"Reveal public key must be 32-byte x-only, got {len(reveal_public_key)} bytes"
        )
    parts = [
        push_data(reveal_public_key),
        bytes([OP_CHECKSIG, OP_0, OP_IF]),
        push_data(PROTOCOL_ID),
        push_data(TAG_CONTENT_TYPE),
        push_data(envelope.content_type.encode("utf-8")),
    ]
    if envelope.parent_inscription_id:
        parts.append(push_data(TAG_PARENT))
        parts.append(push_data(encode_inscription_id(envelope.parent_inscription_id)))
    for tag, value in envelope.metadata_tags:
        parts.append(push_data(tag))
        parts.append(push_data(value))
    parts.append(bytes([OP_0]))
    parts.extend(push_data(chunk) for chunk in chunk_bytes(envelope.body))
    parts.append(bytes([OP_ENDIF]))
    script = b"".join(parts)
    logger.debug(
        "Built envelope leaf of %d bytes (%d body bytes, %s)",
        len(script),
        len(envelope.body),
        envelope.content_type,
    )
    return script


def iter_script(script: bytes) -> Iterator[Tuple[int, bytes | None]]:
    """Yield ``(opcode, pushed_data)`` pairs; ``pushed_data`` is ``None`` for non-push opcodes."""
    i = 0
    while i < len(script):
        opcode = script[i]
        i += 1
        if opcode == OP_0:
            yield opcode, b""
            continue
        if 1 <= opcode <= 75:
            length = opcode
        elif opcode == OP_PUSHDATA1:
            length = script[i]
            i += 1
        elif opcode == OP_PUSHDATA2:
            length = int.from_bytes(script[i : i + 2], "little")
            i += 2
        elif opcode == OP_PUSHDATA4:
            length = int.from_bytes(script[i : i + 4], "little")
            i += 4
        else:
            yield opcode, None
            continue
        data = script[i : i + length]
        if len(data) != length:
            raise EnvelopeError("Script push runs past the end of the script")
        i += length
        yield opcode, data


def parse_envelope(script: bytes) -> InscriptionEnvelope:
    """Read an envelope back out of a leaf script built by :func:`build_leaf_script`."""
    ops = list(iter_script(script))
    start = None
    for idx in range(len(ops) - 2):
        if ops[idx] == (OP_0, b"") and ops[idx + 1][0] == OP_IF and ops[idx + 2][1] == PROTOCOL_ID:
            start = idx + 3
            break
    if start is None:
        raise EnvelopeError("Script does not contain an ord envelope")

    content_type: str | None = None
    parent: str | None = None
    tags: list[TagPair] = []
    body_chunks: list[bytes] = []
    in_body = False
    idx = start
    while idx < len(ops):
        opcode, data = ops[idx]
        if opcode == OP_ENDIF:
            break
        if data is None:
            raise EnvelopeError(f"Unexpected opcode {opcode:#04x} inside envelope")
        if in_body:
            body_chunks.append(data)
            idx += 1
            continue
        if data == b"":
            in_body = True
            idx += 1
            continue
        if idx + 1 >= len(ops) or ops[idx + 1][1] is None:
            raise EnvelopeError("Envelope tag is missing its value")
        value = ops[idx + 1][1] or b""
        if data == TAG_CONTENT_TYPE and content_type is None:
            content_type = value.decode("utf-8")
        elif data == TAG_PARENT and parent is None:
            parent = decode_inscription_id(value)
        else:
            tags.append((data, value))
        idx += 2
    else:
        raise EnvelopeError("Envelope is not terminated by OP_ENDIF")

    return InscriptionEnvelope(
        content_type=content_type or "",
        body=b"".join(body_chunks),
        metadata_tags=tuple(tags),
        parent_inscription_id=parent,
    )
