"""Content-addressed storage through a Kubo (go-ipfs) node.

Files are added wrapped in a single-entry directory so the original filename
survives the round trip; the directory's CIDv0 is the integrity hash. Reads
list that directory to find the file, then cat its content.
"""

from __future__ import annotations

import asyncio
import json
import logging
from typing import Any

import httpx

from attachment_service.errors import AttachmentNotFoundError, StorageUnavailableError
from attachment_service.hashing import HashEncoding
from attachment_service.services.storage_backend import (
    RetrievedFile,
    ServiceState,
    ServiceStatus,
    StoredFile,
)
from attachment_service.unixfs import CHUNK_SIZE, wrapped_file_cid

logger = logging.getLogger(__name__)


def _find_directory_hash(entries: list[dict[str, Any]]) -> str:
    # The wrapping directory is the entry without a name
    for entry in entries:
        if entry.get("Name") == "" and entry.get("Hash") and entry.get("Size"):
            return entry["Hash"]
    raise StorageUnavailableError(
        "ipfs failed to make directory", detail="ipfs failed to make directory"
    )


class IpfsStore:
    """Storage backend speaking the Kubo HTTP RPC API."""

    encoding = HashEncoding.CIDV0

    def __init__(
        self,
        api_url: str,
        http_client: httpx.AsyncClient,
        chunk_size: int = CHUNK_SIZE,
    ) -> None:
        """Initialize the IPFS store.

        Args:
            api_url: Base URL of the node's RPC API, e.g. ``http://localhost:5001``
            http_client: Shared HTTP client
            chunk_size: Fixed chunk size; must match the node's importer setting
        """
        self._api_url = api_url.rstrip("/")
        self._client = http_client
        self._chunk_size = chunk_size

    def _url(self, command: str) -> str:
        return f"{self._api_url}/api/v0/{command}"

    async def store(self, content: bytes, filename: str) -> StoredFile:
        logger.debug(f"Uploading file {filename} to IPFS")
        response = await self._client.post(
            self._url("add"),
            params={
                "cid-version": "0",
                "wrap-with-directory": "true",
                "chunker": f"size-{self._chunk_size}",
            },
            files={"file": (filename, content, "application/octet-stream")},
        )
        if not response.is_success:
            raise StorageUnavailableError(
                f"IPFS add failed ({response.status_code}): {response.text}",
                detail=response.text,
            )

        # The reply is newline-delimited JSON, one object per added entry
        entries = [
            json.loads(line) for line in response.text.splitlines() if line.strip()
        ]
        integrity_hash = _find_directory_hash(entries)
        logger.debug(f"Upload of file {filename} succeeded. Hash is {integrity_hash}")
        return StoredFile(integrity_hash=integrity_hash, encoding=self.encoding)

    async def retrieve(self, locator: str) -> RetrievedFile:
        dir_response = await self._client.post(self._url("ls"), params={"arg": locator})
        if not dir_response.is_success:
            raise StorageUnavailableError(
                f"Error fetching directory {locator} from IPFS "
                f"({dir_response.status_code}): {dir_response.text}"
            )

        try:
            link = dir_response.json()["Objects"][0]["Links"][0]
            file_hash = link["Hash"]
            filename = link["Name"]
        except (ValueError, KeyError, IndexError, TypeError) as e:
            raise AttachmentNotFoundError(
                f"Error parsing IPFS directory listing for {locator}: {e}"
            ) from e

        file_response = await self._client.post(
            self._url("cat"), params={"arg": file_hash}
        )
        if not file_response.is_success:
            raise StorageUnavailableError(
                f"Error fetching file {file_hash} from IPFS "
                f"({file_response.status_code}): {file_response.text}"
            )
        return RetrievedFile(content=file_response.content, filename=filename or None)

    async def verify(self, content: bytes, filename: str) -> str:
        # Hashing large files is CPU bound; keep it off the event loop
        return await asyncio.to_thread(
            wrapped_file_cid, content, filename, self._chunk_size
        )

    async def get_status(self) -> ServiceStatus:
        down = ServiceStatus(
            ServiceState.DOWN, {"message": "Error getting status from IPFS node"}
        )
        try:
            version_response, peers_response = await asyncio.gather(
                self._client.post(self._url("version")),
                self._client.post(self._url("swarm/peers")),
            )
            if not (version_response.is_success and peers_response.is_success):
                logger.error(
                    "Error getting status from IPFS node: "
                    f"version={version_response.status_code} "
                    f"peers={peers_response.status_code}"
                )
                return down

            version = version_response.json()["Version"]
            peers = peers_response.json().get("Peers") or []
            peer_count = len({peer["Peer"] for peer in peers})
        except (httpx.HTTPError, ValueError, KeyError, TypeError) as e:
            logger.error(f"Error getting status from IPFS node: {e}")
            return down

        return ServiceStatus(
            ServiceState.UP, {"version": version, "peerCount": peer_count}
        )
