"""Tests for SHA-256 keyed bucket storage."""

import hashlib

import pytest

from attachment_service.errors import AttachmentNotFoundError, StorageUnavailableError
from attachment_service.hashing import HashEncoding
from attachment_service.services.backends.bucket import BucketStore
from attachment_service.services.storage_backend import ServiceState
from tests.mocks.mock_bucket_client import InMemoryBucketClient


@pytest.mark.asyncio
async def test_create_bucket_is_idempotent(
    bucket_store: BucketStore, bucket_client: InMemoryBucketClient
) -> None:
    await bucket_store.create_bucket_if_does_not_exist()
    await bucket_store.create_bucket_if_does_not_exist()
    assert list(bucket_client.buckets) == ["attachments"]
    assert bucket_client.create_calls == 1


@pytest.mark.asyncio
async def test_store_keys_object_by_sha256(
    bucket_store: BucketStore, bucket_client: InMemoryBucketClient
) -> None:
    stored = await bucket_store.store(b"hello", "greeting.txt")

    digest = hashlib.sha256(b"hello").hexdigest()
    assert stored.integrity_hash == digest
    assert stored.encoding is HashEncoding.SHA256
    assert digest in bucket_client.buckets["attachments"]


@pytest.mark.asyncio
async def test_round_trip_with_non_ascii_filename(bucket_store: BucketStore) -> None:
    stored = await bucket_store.store("naïve résumé".encode(), "résumé 2024.pdf")
    retrieved = await bucket_store.retrieve(stored.integrity_hash)

    assert retrieved.content == "naïve résumé".encode()
    assert retrieved.filename == "résumé 2024.pdf"


@pytest.mark.asyncio
async def test_filename_metadata_is_ascii(
    bucket_store: BucketStore, bucket_client: InMemoryBucketClient
) -> None:
    stored = await bucket_store.store(b"x", "é.txt")
    _, metadata = bucket_client.buckets["attachments"][stored.integrity_hash]
    assert metadata["filename"].isascii()


@pytest.mark.asyncio
async def test_verify_ignores_filename(bucket_store: BucketStore) -> None:
    first = await bucket_store.verify(b"hello", "a.txt")
    assert first == await bucket_store.verify(b"hello", "b.txt")


@pytest.mark.asyncio
async def test_retrieve_missing_object(bucket_store: BucketStore) -> None:
    await bucket_store.create_bucket_if_does_not_exist()
    with pytest.raises(AttachmentNotFoundError):
        await bucket_store.retrieve("0" * 64)


@pytest.mark.asyncio
async def test_store_when_unavailable(
    bucket_store: BucketStore, bucket_client: InMemoryBucketClient
) -> None:
    bucket_client.available = False
    with pytest.raises(StorageUnavailableError):
        await bucket_store.store(b"hello", "greeting.txt")


@pytest.mark.asyncio
async def test_status(
    bucket_store: BucketStore, bucket_client: InMemoryBucketClient
) -> None:
    status = await bucket_store.get_status()
    assert status.status is ServiceState.UP
    assert status.detail == {"bucket": "attachments", "bucketExists": False}

    bucket_client.available = False
    status = await bucket_store.get_status()
    assert status.status is ServiceState.DOWN
