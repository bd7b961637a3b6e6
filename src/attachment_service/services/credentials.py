"""Client credentials used to authenticate to peer organisations.

Credentials live in a static JSON file::

    {"credentials": [{"username": "...", "secret": "...", "owner": "0x..."}]}

``owner`` is the account address of the peer organisation the credential is
issued by; ``username``/``secret`` are the OAuth2 client id and secret to use
against that peer's token endpoint.
"""

from __future__ import annotations

import json
import logging
import pathlib
from dataclasses import dataclass

from attachment_service.errors import CredentialsFileError, NoCredentialsError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Credential:
    """Client credentials for one peer organisation."""

    owner: str
    client_id: str
    client_secret: str


class CredentialDirectory:
    """Lazily loaded, process-lifetime cache of peer credentials.

    The file is read on the first lookup and never re-read. Loading is
    synchronous, so concurrent lookups on one event loop cannot interleave
    with it and always see either no cache or the complete cache. A failed
    load leaves the cache empty and the next lookup retries.
    """

    def __init__(self, file_path: str | pathlib.Path) -> None:
        self._file_path = pathlib.Path(file_path)
        self._credentials: dict[str, Credential] | None = None

    def _load(self) -> dict[str, Credential]:
        path = self._file_path.resolve()
        logger.info(f"Loading credentials from path: {path}")
        try:
            raw_data = path.read_text(encoding="utf-8")
        except OSError as e:
            raise CredentialsFileError(
                f"Failed to read credentials file {path}: {e}"
            ) from e

        try:
            parsed = json.loads(raw_data)
            entries = parsed["credentials"]
            if not isinstance(entries, list):
                raise TypeError("'credentials' is not a list")
            by_owner: dict[str, Credential] = {}
            for entry in entries:
                # First credential per owner wins
                by_owner.setdefault(
                    entry["owner"],
                    Credential(
                        owner=entry["owner"],
                        client_id=entry["username"],
                        client_secret=entry["secret"],
                    ),
                )
        except (ValueError, KeyError, TypeError) as e:
            raise CredentialsFileError(
                f"Invalid credentials file format, expected {{credentials: []}}: {e}"
            ) from e

        logger.info(f"Successfully loaded {len(entries)} credentials")
        return by_owner

    def get_credentials_for_owner(self, owner: str) -> Credential:
        """Look up the client credentials for a peer organisation.

        Args:
            owner: Account address of the peer organisation

        Raises:
            NoCredentialsError: No credential is configured for ``owner``
            CredentialsFileError: The credentials file is unreadable or malformed
        """
        if self._credentials is None:
            self._credentials = self._load()

        credential = self._credentials.get(owner)
        if credential is None:
            raise NoCredentialsError(f"No external credentials found for owner {owner}")
        return credential
