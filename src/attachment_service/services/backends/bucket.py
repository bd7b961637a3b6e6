"""Bucket storage on S3-compatible services or Azure blob storage.

Objects are keyed by the SHA-256 hex digest of their content, so the locator
is also the integrity hash. The original filename is kept as object metadata
(URL-quoted, since metadata values must be ASCII).

Both cloud SDKs are synchronous; every call runs in a worker thread.
"""

from __future__ import annotations

import asyncio
import logging
from typing import TYPE_CHECKING, Protocol
from urllib.parse import quote, unquote

import boto3
from azure.core.exceptions import (
    AzureError,
    ResourceExistsError,
    ResourceNotFoundError,
)
from azure.storage.blob import BlobServiceClient
from botocore.config import Config
from botocore.exceptions import BotoCoreError, ClientError

from attachment_service.errors import AttachmentNotFoundError, StorageUnavailableError
from attachment_service.hashing import HashEncoding
from attachment_service.services.storage_backend import (
    RetrievedFile,
    ServiceState,
    ServiceStatus,
    StoredFile,
)
from attachment_service.unixfs import sha256_hex

if TYPE_CHECKING:
    from attachment_service.config_models import StorageConfig

logger = logging.getLogger(__name__)

FILENAME_METADATA_KEY = "filename"

# S3 error codes meaning the object (or its bucket) does not exist
S3_MISSING_CODES = frozenset({"NoSuchKey", "NoSuchBucket", "404", "NotFound"})
# S3 error codes meaning the bucket already exists and belongs to us
S3_BUCKET_EXISTS_CODES = frozenset({"BucketAlreadyOwnedByYou", "BucketAlreadyExists"})


class BucketClient(Protocol):
    """Minimal synchronous object-storage operations used by BucketStore.

    Implementations translate SDK errors: a missing object raises
    AttachmentNotFoundError, any other failure StorageUnavailableError.
    """

    def list_buckets(self) -> list[str]: ...

    def create_bucket(self, bucket: str) -> None: ...

    def put_object(
        self, bucket: str, key: str, data: bytes, metadata: dict[str, str]
    ) -> None: ...

    def get_object(self, bucket: str, key: str) -> tuple[bytes, dict[str, str]]: ...


class S3BucketClient:
    """BucketClient for AWS S3, LocalStack and MinIO (path-style addressing)."""

    def __init__(
        self,
        endpoint_url: str,
        region: str,
        access_key_id: str,
        secret_access_key: str,
    ) -> None:
        self.region = region
        self.client = boto3.client(
            "s3",
            endpoint_url=endpoint_url,
            aws_access_key_id=access_key_id,
            aws_secret_access_key=secret_access_key,
            region_name=region,
            config=Config(s3={"addressing_style": "path"}),
        )

    @classmethod
    def from_config(cls, config: StorageConfig) -> S3BucketClient:
        return cls(
            endpoint_url=config.endpoint_url,
            region=config.s3_region,
            access_key_id=config.access_key_id,
            secret_access_key=config.secret_access_key,
        )

    def list_buckets(self) -> list[str]:
        try:
            response = self.client.list_buckets()
        except (BotoCoreError, ClientError) as e:
            raise StorageUnavailableError(f"Failed to list buckets: {e}") from e
        return [bucket["Name"] for bucket in response.get("Buckets", [])]

    def create_bucket(self, bucket: str) -> None:
        kwargs: dict[str, object] = {"Bucket": bucket}
        # us-east-1 rejects an explicit location constraint
        if self.region and self.region != "us-east-1":
            kwargs["CreateBucketConfiguration"] = {"LocationConstraint": self.region}
        try:
            self.client.create_bucket(**kwargs)
        except ClientError as e:
            if e.response.get("Error", {}).get("Code") in S3_BUCKET_EXISTS_CODES:
                return
            raise StorageUnavailableError(
                f"Failed to create bucket {bucket}: {e}"
            ) from e
        except BotoCoreError as e:
            raise StorageUnavailableError(
                f"Failed to create bucket {bucket}: {e}"
            ) from e

    def put_object(
        self, bucket: str, key: str, data: bytes, metadata: dict[str, str]
    ) -> None:
        try:
            self.client.put_object(Bucket=bucket, Key=key, Body=data, Metadata=metadata)
        except (BotoCoreError, ClientError) as e:
            raise StorageUnavailableError(f"Failed to upload {key}: {e}") from e

    def get_object(self, bucket: str, key: str) -> tuple[bytes, dict[str, str]]:
        try:
            response = self.client.get_object(Bucket=bucket, Key=key)
            return response["Body"].read(), response.get("Metadata") or {}
        except ClientError as e:
            if e.response.get("Error", {}).get("Code") in S3_MISSING_CODES:
                raise AttachmentNotFoundError(
                    f"Object {key} not found in bucket {bucket}"
                ) from e
            raise StorageUnavailableError(f"Failed to retrieve {key}: {e}") from e
        except BotoCoreError as e:
            raise StorageUnavailableError(f"Failed to retrieve {key}: {e}") from e


class AzureBucketClient:
    """BucketClient for Azure blob storage (and Azurite); buckets are containers."""

    def __init__(self, connection_string: str) -> None:
        self.service = BlobServiceClient.from_connection_string(connection_string)

    @classmethod
    def from_config(cls, config: StorageConfig) -> AzureBucketClient:
        connection_string = (
            f"DefaultEndpointsProtocol={config.protocol};"
            f"AccountName={config.account_name};"
            f"AccountKey={config.account_secret};"
            f"BlobEndpoint={config.endpoint_url}/{config.account_name}"
        )
        return cls(connection_string)

    def list_buckets(self) -> list[str]:
        try:
            return [container.name for container in self.service.list_containers()]
        except AzureError as e:
            raise StorageUnavailableError(f"Failed to list containers: {e}") from e

    def create_bucket(self, bucket: str) -> None:
        try:
            self.service.create_container(bucket)
        except ResourceExistsError:
            return
        except AzureError as e:
            raise StorageUnavailableError(
                f"Failed to create container {bucket}: {e}"
            ) from e

    def put_object(
        self, bucket: str, key: str, data: bytes, metadata: dict[str, str]
    ) -> None:
        try:
            blob = self.service.get_blob_client(container=bucket, blob=key)
            blob.upload_blob(data, overwrite=True, metadata=metadata)
        except AzureError as e:
            raise StorageUnavailableError(f"Failed to upload {key}: {e}") from e

    def get_object(self, bucket: str, key: str) -> tuple[bytes, dict[str, str]]:
        try:
            blob = self.service.get_blob_client(container=bucket, blob=key)
            downloader = blob.download_blob()
            return downloader.readall(), dict(downloader.properties.metadata or {})
        except ResourceNotFoundError as e:
            raise AttachmentNotFoundError(
                f"Blob {key} not found in container {bucket}"
            ) from e
        except AzureError as e:
            raise StorageUnavailableError(f"Failed to retrieve {key}: {e}") from e


class BucketStore:
    """Storage backend over a BucketClient, keyed by SHA-256 digest."""

    encoding = HashEncoding.SHA256

    def __init__(self, client: BucketClient, bucket_name: str) -> None:
        self._client = client
        self.bucket_name = bucket_name

    async def create_bucket_if_does_not_exist(self) -> None:
        """Ensure the configured bucket exists. Safe to call repeatedly.

        Raises:
            StorageUnavailableError: Listing or creating buckets failed
        """
        buckets = await asyncio.to_thread(self._client.list_buckets)
        if self.bucket_name in buckets:
            return
        logger.info(f"Creating bucket {self.bucket_name}")
        await asyncio.to_thread(self._client.create_bucket, self.bucket_name)

    async def store(self, content: bytes, filename: str) -> StoredFile:
        integrity_hash = await self.verify(content, filename)
        await self.create_bucket_if_does_not_exist()
        logger.info(f"Uploading {integrity_hash} to bucket {self.bucket_name}")
        await asyncio.to_thread(
            self._client.put_object,
            self.bucket_name,
            integrity_hash,
            content,
            {FILENAME_METADATA_KEY: quote(filename, safe="")},
        )
        return StoredFile(integrity_hash=integrity_hash, encoding=self.encoding)

    async def retrieve(self, locator: str) -> RetrievedFile:
        logger.info(f"Retrieving {locator} from bucket {self.bucket_name}")
        content, metadata = await asyncio.to_thread(
            self._client.get_object, self.bucket_name, locator
        )
        # S3 lower-cases metadata keys; Azure preserves them
        stored_name = {k.lower(): v for k, v in metadata.items()}.get(
            FILENAME_METADATA_KEY
        )
        return RetrievedFile(
            content=content, filename=unquote(stored_name) if stored_name else None
        )

    async def verify(self, content: bytes, filename: str | None = None) -> str:
        # The filename plays no part in the digest
        return await asyncio.to_thread(sha256_hex, content)

    async def get_status(self) -> ServiceStatus:
        try:
            buckets = await asyncio.to_thread(self._client.list_buckets)
        except StorageUnavailableError as e:
            logger.error(f"Error getting status from bucket storage: {e}")
            return ServiceStatus(
                ServiceState.DOWN,
                {"message": "Error getting status from bucket storage"},
            )
        return ServiceStatus(
            ServiceState.UP,
            {
                "bucket": self.bucket_name,
                "bucketExists": self.bucket_name in buckets,
            },
        )
