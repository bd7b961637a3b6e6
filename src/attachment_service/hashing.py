"""
Integrity hash identification and verification.

Attachments are keyed by one of two hash schemes: an IPFS CIDv0 for content
stored on IPFS, or a hex SHA-256 digest for content stored in bucket storage.
``identify`` classifies a hash string into a closed set of encodings and every
verification path dispatches on that result.
"""

from __future__ import annotations

import base64
import enum
import logging
import re
from dataclasses import dataclass

import base58

from attachment_service.errors import InvalidHashError, UnsupportedHashVersionError
from attachment_service.unixfs import sha256_hex, wrapped_file_cid

logger = logging.getLogger(__name__)

SHA256_HEX_PATTERN = re.compile(r"^[0-9a-fA-F]{64}$")

# Multibase prefixes accepted for CIDv1 text forms: base32 (lower/upper),
# base58btc and base36
CID_MULTIBASE_PREFIXES = frozenset("bBzk")
CIDV0_LENGTH = 46


class HashEncoding(str, enum.Enum):
    """Hash scheme used for an attachment's integrity hash."""

    CIDV0 = "cidv0"
    CIDV1 = "cidv1"  # Recognised in stored rows only, never produced
    SHA256 = "sha256"


@dataclass(frozen=True)
class ParsedCid:
    """The parts of a CID that hash identification needs."""

    version: int
    multihash: bytes


def _read_varint(data: bytes, offset: int) -> tuple[int, int]:
    value = shift = 0
    while offset < len(data):
        byte = data[offset]
        offset += 1
        value |= (byte & 0x7F) << shift
        if not byte & 0x80:
            return value, offset
        shift += 7
    raise ValueError("Truncated varint")


def _decode_multibase(value: str) -> bytes:
    prefix, body = value[0], value[1:]
    if prefix in "bB":
        text = body.upper()
        return base64.b32decode(text + "=" * (-len(text) % 8))
    if prefix == "z":
        return base58.b58decode(body)
    number = int(body, 36)
    return number.to_bytes((number.bit_length() + 7) // 8, "big")


def _is_multihash(data: bytes) -> bool:
    try:
        _, offset = _read_varint(data, 0)
        length, offset = _read_varint(data, offset)
    except ValueError:
        return False
    return length > 0 and len(data) - offset == length


def parse_cid(value: str) -> ParsedCid | None:
    """Parse ``value`` as a CID, returning None when it is not one."""
    try:
        if len(value) == CIDV0_LENGTH and value.startswith("Qm"):
            multihash = base58.b58decode(value)
            if _is_multihash(multihash):
                return ParsedCid(version=0, multihash=multihash)
            return None

        if value[:1] not in CID_MULTIBASE_PREFIXES or len(value) < 2:
            return None
        raw = _decode_multibase(value)
        version, offset = _read_varint(raw, 0)
        _codec, offset = _read_varint(raw, offset)
    except ValueError as e:
        logger.debug(f"Value {value!r} is not a CID: {e}")
        return None

    if version != 1 or not _is_multihash(raw[offset:]):
        return None
    return ParsedCid(version=version, multihash=raw[offset:])


def identify(value: str) -> HashEncoding:
    """Classify an integrity hash string.

    Args:
        value: The candidate hash

    Returns:
        HashEncoding.CIDV0 or HashEncoding.SHA256

    Raises:
        UnsupportedHashVersionError: The value is a CIDv1
        InvalidHashError: The value is neither a CID nor a SHA-256 hex digest
    """
    cid = parse_cid(value)
    if cid is not None:
        if cid.version == 0:
            return HashEncoding.CIDV0
        raise UnsupportedHashVersionError(
            f"CID version {cid.version} is not supported: {value}",
            detail="Only CIDv0 content identifiers are supported",
        )

    if SHA256_HEX_PATTERN.match(value):
        return HashEncoding.SHA256

    raise InvalidHashError(f"Invalid hash: {value!r}", detail=f"Invalid hash {value}")


def compute_integrity_hash(
    encoding: HashEncoding, content: bytes, filename: str | None = None
) -> str:
    """Recompute the integrity hash of ``content`` under ``encoding``.

    CIDv0 hashes cover the directory wrapper, so ``filename`` is required for
    them.

    Raises:
        ValueError: A CIDv0 is requested without a filename
        UnsupportedHashVersionError: The encoding is CIDv1
    """
    if encoding is HashEncoding.SHA256:
        return sha256_hex(content)
    if encoding is HashEncoding.CIDV0:
        if filename is None:
            raise ValueError("A filename is required to compute a CIDv0")
        return wrapped_file_cid(content, filename)
    raise UnsupportedHashVersionError(
        f"Cannot verify content with encoding {encoding.value}",
        detail="Only CIDv0 content identifiers are supported",
    )


def hashes_match(encoding: HashEncoding, expected: str, actual: str) -> bool:
    """Compare hashes; hex digests are case-insensitive, CIDs are exact."""
    if encoding is HashEncoding.SHA256:
        return expected.lower() == actual.lower()
    return expected == actual
