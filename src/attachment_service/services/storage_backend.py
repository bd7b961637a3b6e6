"""Abstract protocol for attachment storage backends.

This module defines the protocol that all storage backends must implement,
allowing the content-addressed (IPFS) and bucket (S3, MinIO, Azure) storage
families to be used interchangeably. The backend is chosen once, when the
service is built, and every request goes through the same interface.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import TYPE_CHECKING, Any, Protocol

from attachment_service.config_models import StorageMode

if TYPE_CHECKING:
    import httpx

    from attachment_service.config_models import StorageConfig
    from attachment_service.hashing import HashEncoding


class ServiceState(Enum):
    """Health of a dependency."""

    UP = "up"
    DOWN = "down"


@dataclass
class ServiceStatus:
    """Health report for a dependency."""

    status: ServiceState
    detail: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class StoredFile:
    """Result of storing content."""

    integrity_hash: str  # Also the locator used to retrieve the bytes
    encoding: HashEncoding


@dataclass(frozen=True)
class RetrievedFile:
    """Bytes read back from storage plus the filename storage recorded, if any."""

    content: bytes
    filename: str | None = None


class StorageBackend(Protocol):
    """Protocol for attachment storage backends.

    Implementations include:
    - IpfsStore: Content-addressed storage through a Kubo node (CIDv0 hashes)
    - BucketStore: S3, MinIO or Azure object storage (SHA-256 hashes)
    """

    encoding: HashEncoding

    async def store(self, content: bytes, filename: str) -> StoredFile:
        """Store content and return the integrity hash it can be retrieved by.

        Raises:
            StorageUnavailableError: The backend rejected or failed the upload
        """
        ...

    async def retrieve(self, locator: str) -> RetrievedFile:
        """Read stored content back in full.

        Args:
            locator: The integrity hash returned by ``store``

        Raises:
            AttachmentNotFoundError: The backend has no content under ``locator``
            StorageUnavailableError: The backend failed the read
        """
        ...

    async def verify(self, content: bytes, filename: str) -> str:
        """Recompute the integrity hash ``store`` would produce for content.

        Runs locally without a network round trip.
        """
        ...

    async def get_status(self) -> ServiceStatus:
        """Report backend health. Never raises."""
        ...


def get_storage_backend(
    config: StorageConfig, http_client: httpx.AsyncClient
) -> StorageBackend:
    """Factory function to get the configured storage backend.

    Args:
        config: Storage configuration; ``config.mode`` picks the backend
        http_client: Shared HTTP client (used by the IPFS backend)

    Returns:
        StorageBackend implementation

    Raises:
        ValueError: If the storage mode is unknown
    """
    # Lazy imports keep the cloud SDKs out of IPFS-only deployments
    if config.mode is StorageMode.IPFS:
        from attachment_service.services.backends.ipfs import (  # noqa: PLC0415
            IpfsStore,
        )

        return IpfsStore(config.ipfs_api_url, http_client)
    elif config.mode in {StorageMode.S3, StorageMode.MINIO}:
        from attachment_service.services.backends.bucket import (  # noqa: PLC0415
            BucketStore,
            S3BucketClient,
        )

        return BucketStore(S3BucketClient.from_config(config), config.bucket_name)
    elif config.mode is StorageMode.AZURE:
        from attachment_service.services.backends.bucket import (  # noqa: PLC0415
            AzureBucketClient,
            BucketStore,
        )

        return BucketStore(AzureBucketClient.from_config(config), config.bucket_name)
    else:
        raise ValueError(f"Unknown storage mode: {config.mode}")
