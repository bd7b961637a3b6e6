"""Pydantic models for application configuration.

Using Pydantic models ensures typos in configuration property names are caught
at load time and every value is type-checked.

Configuration priority (lowest to highest):
1. Code defaults (defined in model Field defaults)
2. config.yaml file
3. Environment variables
"""

from __future__ import annotations

import contextlib
import enum
from collections.abc import Iterator
from typing import ClassVar

from pydantic import BaseModel, ConfigDict, Field
from pydantic_settings import (
    BaseSettings,
    PydanticBaseSettingsSource,
    SettingsConfigDict,
)

from .config_sources import DeepMergedYamlSource


class StorageMode(str, enum.Enum):
    """Storage backend families."""

    IPFS = "IPFS"
    S3 = "S3"
    MINIO = "MINIO"
    AZURE = "AZURE"


class StorageConfig(BaseModel):
    """Storage backend configuration.

    ``host``/``port``/``protocol`` address the bucket service for S3, MinIO and
    Azure. IPFS uses ``ipfs_host``/``ipfs_port`` for the Kubo RPC API.
    """

    model_config = ConfigDict(extra="forbid")

    mode: StorageMode = StorageMode.IPFS
    host: str = "localhost"
    port: int = 4566
    protocol: str = "http"
    bucket_name: str = "attachments"
    # S3 / MinIO
    s3_region: str = "eu-west-2"
    access_key_id: str = ""
    secret_access_key: str = ""
    # Azure blob storage
    account_name: str = ""
    account_secret: str = ""
    # IPFS
    ipfs_host: str = "localhost"
    ipfs_port: int = 5001

    @property
    def endpoint_url(self) -> str:
        return f"{self.protocol}://{self.host}:{self.port}"

    @property
    def ipfs_api_url(self) -> str:
        return f"http://{self.ipfs_host}:{self.ipfs_port}"


class IdentityConfig(BaseModel):
    """Identity directory service location."""

    model_config = ConfigDict(extra="forbid")

    host: str = "localhost"
    port: int = 3000

    @property
    def base_url(self) -> str:
        return f"http://{self.host}:{self.port}"


class IdpConfig(BaseModel):
    """Identity provider (Keycloak-style realms) configuration."""

    model_config = ConfigDict(extra="forbid")

    internal_client_id: str = "sequence"
    internal_client_secret: str = ""
    internal_origin: str = "http://localhost:3080"
    path_prefix: str = "/auth"
    oauth2_realm: str = "sequence"
    internal_realm: str = "internal"
    external_realm: str = "external"

    def realm_url(self, realm: str) -> str:
        return f"{self.internal_origin}{self.path_prefix}/realms/{realm}"

    def jwks_url(self, realm: str) -> str:
        return f"{self.realm_url(realm)}/protocol/openid-connect/certs"

    def token_url(self, realm: str) -> str:
        return f"{self.realm_url(realm)}/protocol/openid-connect/token"


class AuthConfig(BaseModel):
    """Inbound bearer-token authentication."""

    model_config = ConfigDict(extra="forbid")

    # When disabled every request is treated as an internal caller
    enabled: bool = True
    jwks_cache_seconds: int = 300


class AuthzConfig(BaseModel):
    """Authorization webhook consulted for external callers."""

    model_config = ConfigDict(extra="forbid")

    webhook_url: str = ""


class AttachmentsConfig(BaseModel):
    """Attachment upload handling."""

    model_config = ConfigDict(extra="forbid")

    max_upload_size: int = 104857600  # 100MB


class LoggingConfig(BaseModel):
    """Logging configuration."""

    model_config = ConfigDict(extra="forbid")

    level: str = "INFO"


class AppConfig(BaseSettings):
    """Main application configuration.

    This is the root configuration model that contains all application settings.
    Property access is type-safe - misspelled property names will raise AttributeError.
    """

    model_config = SettingsConfigDict(extra="forbid")

    active_yaml_files: ClassVar[list[str]] = []

    database_url: str = "sqlite+aiosqlite:///attachment_service.db"
    http_timeout_seconds: float = 30.0
    credentials_file_path: str = "credentials.json"

    identity: IdentityConfig = Field(default_factory=IdentityConfig)
    idp: IdpConfig = Field(default_factory=IdpConfig)
    auth: AuthConfig = Field(default_factory=AuthConfig)
    authz: AuthzConfig = Field(default_factory=AuthzConfig)
    attachments: AttachmentsConfig = Field(default_factory=AttachmentsConfig)
    storage: StorageConfig = Field(default_factory=StorageConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)

    @classmethod
    @contextlib.contextmanager
    def yaml_source_context(cls, yaml_files: list[str]) -> Iterator[None]:
        """Layer the given YAML files over field defaults while constructing."""
        previous = cls.active_yaml_files
        cls.active_yaml_files = list(yaml_files)
        try:
            yield
        finally:
            cls.active_yaml_files = previous

    @classmethod
    def settings_customise_sources(
        cls,
        settings_cls: type[BaseSettings],
        init_settings: PydanticBaseSettingsSource,
        env_settings: PydanticBaseSettingsSource,
        dotenv_settings: PydanticBaseSettingsSource,
        file_secret_settings: PydanticBaseSettingsSource,
    ) -> tuple[PydanticBaseSettingsSource, ...]:
        # Environment variables are applied explicitly by config_loader
        return (init_settings, DeepMergedYamlSource(settings_cls, cls.active_yaml_files))
