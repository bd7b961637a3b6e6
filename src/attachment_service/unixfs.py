"""
Local computation of IPFS CIDv0 identifiers.

Reproduces what a Kubo node returns for
``ipfs add --cid-version=0 --wrap-with-directory`` with the default importer
settings: 256 KiB fixed-size chunks, dag-pb leaves carrying UnixFS ``File``
data (no raw leaves), the balanced DAG layout with at most 174 links per node,
and a single-entry UnixFS ``Directory`` wrapping the file under its name.

Only the handful of protobuf fields used by dag-pb and UnixFS are encoded, so
the wire encoding is written out by hand rather than through generated code.
"""

from __future__ import annotations

import hashlib
from dataclasses import dataclass

import base58

CHUNK_SIZE = 262144
# multihash prefix: sha2-256 (0x12), 32-byte digest
SHA2_256_MULTIHASH_PREFIX = b"\x12\x20"
MAX_LINKS_PER_NODE = 174

# UnixFS Data.DataType values
UNIXFS_DIRECTORY = 1
UNIXFS_FILE = 2

_WIRE_VARINT = 0
_WIRE_BYTES = 2


def _varint(value: int) -> bytes:
    out = bytearray()
    while True:
        byte = value & 0x7F
        value >>= 7
        if value:
            out.append(byte | 0x80)
        else:
            out.append(byte)
            return bytes(out)


def _key(field_number: int, wire_type: int) -> bytes:
    return _varint((field_number << 3) | wire_type)


def _bytes_field(field_number: int, payload: bytes) -> bytes:
    return _key(field_number, _WIRE_BYTES) + _varint(len(payload)) + payload


def _varint_field(field_number: int, value: int) -> bytes:
    return _key(field_number, _WIRE_VARINT) + _varint(value)


def encode_unixfs_data(
    data_type: int,
    data: bytes = b"",
    filesize: int | None = None,
    blocksizes: list[int] | None = None,
) -> bytes:
    """Encode a UnixFS ``Data`` message.

    Args:
        data_type: UNIXFS_FILE or UNIXFS_DIRECTORY
        data: Inline file content; omitted from the encoding when empty
        filesize: Total size of the file below this node (files only)
        blocksizes: Sizes of the file content under each child link

    Returns:
        The protobuf encoding
    """
    encoded = _varint_field(1, data_type)
    if data:
        encoded += _bytes_field(2, data)
    if filesize is not None:
        encoded += _varint_field(3, filesize)
    # proto2 repeated fields are not packed
    for size in blocksizes or []:
        encoded += _varint_field(4, size)
    return encoded


@dataclass(frozen=True)
class DagLink:
    """A dag-pb link to a child block."""

    multihash: bytes
    name: str
    tsize: int


@dataclass(frozen=True)
class DagNode:
    """An encoded dag-pb block plus the bookkeeping its parent needs."""

    multihash: bytes
    block: bytes
    filesize: int
    cumulative_size: int


def encode_dag_pb(data: bytes, links: list[DagLink]) -> bytes:
    """Encode a dag-pb ``PBNode``; links precede data as in the canonical form."""
    encoded = b""
    for link in links:
        link_bytes = (
            _bytes_field(1, link.multihash)
            + _bytes_field(2, link.name.encode("utf-8"))
            + _varint_field(3, link.tsize)
        )
        encoded += _bytes_field(2, link_bytes)
    return encoded + _bytes_field(1, data)


def multihash_for_block(block: bytes) -> bytes:
    """sha2-256 multihash of an encoded block; a CIDv0 is exactly this multihash."""
    return SHA2_256_MULTIHASH_PREFIX + hashlib.sha256(block).digest()


def cidv0_string(multihash: bytes) -> str:
    """Text form of a CIDv0: the base58btc-encoded multihash."""
    return base58.b58encode(multihash).decode("ascii")


def _leaf(chunk: bytes) -> DagNode:
    block = encode_dag_pb(
        encode_unixfs_data(UNIXFS_FILE, chunk, filesize=len(chunk)), []
    )
    return DagNode(
        multihash=multihash_for_block(block),
        block=block,
        filesize=len(chunk),
        cumulative_size=len(block),
    )


def _parent(children: list[DagNode]) -> DagNode:
    links = [
        DagLink(child.multihash, "", child.cumulative_size) for child in children
    ]
    filesize = sum(child.filesize for child in children)
    data = encode_unixfs_data(
        UNIXFS_FILE,
        filesize=filesize,
        blocksizes=[child.filesize for child in children],
    )
    block = encode_dag_pb(data, links)
    return DagNode(
        multihash=multihash_for_block(block),
        block=block,
        filesize=filesize,
        cumulative_size=len(block) + sum(link.tsize for link in links),
    )


def build_file_dag(content: bytes, chunk_size: int = CHUNK_SIZE) -> DagNode:
    """Import file content as a balanced UnixFS DAG and return its root.

    A single chunk becomes the root itself. Larger files are grouped level by
    level into parents of at most MAX_LINKS_PER_NODE children, which matches
    the balanced layout's left-filled tree shape.
    """
    chunks = [
        content[offset : offset + chunk_size]
        for offset in range(0, len(content), chunk_size)
    ] or [b""]
    level = [_leaf(chunk) for chunk in chunks]
    while len(level) > 1:
        level = [
            _parent(level[start : start + MAX_LINKS_PER_NODE])
            for start in range(0, len(level), MAX_LINKS_PER_NODE)
        ]
    return level[0]


def build_directory(entries: list[tuple[str, DagNode]]) -> DagNode:
    """Build a flat UnixFS directory over named children (sorted by name)."""
    links = [
        DagLink(node.multihash, name, node.cumulative_size)
        for name, node in sorted(entries, key=lambda entry: entry[0].encode("utf-8"))
    ]
    block = encode_dag_pb(encode_unixfs_data(UNIXFS_DIRECTORY), links)
    return DagNode(
        multihash=multihash_for_block(block),
        block=block,
        filesize=0,
        cumulative_size=len(block) + sum(link.tsize for link in links),
    )


def file_cid(content: bytes, chunk_size: int = CHUNK_SIZE) -> str:
    """CIDv0 of the file alone, without the directory wrapper."""
    return cidv0_string(build_file_dag(content, chunk_size).multihash)


def wrapped_file_cid(
    content: bytes, filename: str, chunk_size: int = CHUNK_SIZE
) -> str:
    """CIDv0 of the directory that wraps ``content`` under ``filename``.

    This is the identifier stored as the attachment's integrity hash, so the
    filename and chunk size must match those used when the file was added.
    """
    root = build_file_dag(content, chunk_size)
    return cidv0_string(build_directory([(filename, root)]).multihash)


def sha256_hex(content: bytes) -> str:
    """Lowercase hex SHA-256 digest, the bucket-store integrity hash."""
    return hashlib.sha256(content).hexdigest()
