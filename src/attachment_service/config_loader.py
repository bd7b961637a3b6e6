"""Configuration loading with clear priority hierarchy.

Configuration is loaded in the following priority order (lowest to highest):
1. Pydantic model defaults (defined in config_models.py)
2. config.yaml file
3. Environment variables

Environment variable names follow the deployment conventions of the service
(``STORAGE_BACKEND_*``, ``IDP_*``, ``DB_*`` and so on) and are mapped onto the
nested configuration explicitly through ``ENV_VAR_MAPPINGS``.
"""

from __future__ import annotations

import copy
import json
import logging
import os
from dataclasses import dataclass
from typing import Any
from urllib.parse import quote

from dotenv import load_dotenv
from pydantic import ValidationError

from .config_models import AppConfig

logger = logging.getLogger(__name__)

DEFAULT_CONFIG_FILE = "config.yaml"


@dataclass
class EnvVarMapping:
    """Defines how an environment variable maps to a config path.

    Attributes:
        env_var: Environment variable name
        config_path: Dot-separated path in config dict (e.g., "storage.bucket_name")
        value_type: Type to convert the value to (str, int, float, bool)
    """

    env_var: str
    config_path: str
    value_type: type = str


# Centralized environment variable mappings
# These define exactly which env vars are supported and where they map to
ENV_VAR_MAPPINGS: list[EnvVarMapping] = [
    # Database and process
    EnvVarMapping("DATABASE_URL", "database_url"),
    EnvVarMapping("HTTP_TIMEOUT_SECONDS", "http_timeout_seconds", float),
    EnvVarMapping("LOG_LEVEL", "logging.level"),
    # Identity directory
    EnvVarMapping("IDENTITY_SERVICE_HOST", "identity.host"),
    EnvVarMapping("IDENTITY_SERVICE_PORT", "identity.port", int),
    # Identity provider
    EnvVarMapping("IDP_INTERNAL_CLIENT_ID", "idp.internal_client_id"),
    EnvVarMapping("IDP_INTERNAL_CLIENT_SECRET", "idp.internal_client_secret"),
    EnvVarMapping("IDP_INTERNAL_ORIGIN", "idp.internal_origin"),
    EnvVarMapping("IDP_PATH_PREFIX", "idp.path_prefix"),
    EnvVarMapping("IDP_OAUTH2_REALM", "idp.oauth2_realm"),
    EnvVarMapping("IDP_INTERNAL_REALM", "idp.internal_realm"),
    EnvVarMapping("IDP_EXTERNAL_REALM", "idp.external_realm"),
    EnvVarMapping("AUTH_ENABLED", "auth.enabled", bool),
    # Federation
    EnvVarMapping("AUTHZ_WEBHOOK", "authz.webhook_url"),
    EnvVarMapping("CREDENTIALS_FILE_PATH", "credentials_file_path"),
    # Uploads
    EnvVarMapping("MAX_UPLOAD_SIZE", "attachments.max_upload_size", int),
    # Storage backend
    EnvVarMapping("STORAGE_BACKEND_MODE", "storage.mode"),
    EnvVarMapping("STORAGE_BACKEND_HOST", "storage.host"),
    EnvVarMapping("STORAGE_BACKEND_PORT", "storage.port", int),
    EnvVarMapping("STORAGE_BACKEND_PROTOCOL", "storage.protocol"),
    EnvVarMapping("STORAGE_BACKEND_BUCKET_NAME", "storage.bucket_name"),
    EnvVarMapping("STORAGE_BACKEND_S3_REGION", "storage.s3_region"),
    EnvVarMapping("STORAGE_BACKEND_ACCESS_KEY_ID", "storage.access_key_id"),
    EnvVarMapping("STORAGE_BACKEND_SECRET_ACCESS_KEY", "storage.secret_access_key"),
    EnvVarMapping("STORAGE_BACKEND_ACCOUNT_NAME", "storage.account_name"),
    EnvVarMapping("STORAGE_BACKEND_ACCOUNT_SECRET", "storage.account_secret"),
    EnvVarMapping("IPFS_HOST", "storage.ipfs_host"),
    EnvVarMapping("IPFS_PORT", "storage.ipfs_port", int),
]


def set_nested_value(
    data: dict[str, Any],  # noqa: ANN401
    path: str,
    value: Any,  # noqa: ANN401
) -> None:
    """Set ``value`` at dotted ``path`` in ``data``, creating sections as needed."""
    *sections, leaf = path.split(".")
    target = data
    for section in sections:
        target = target.setdefault(section, {})
    target[leaf] = value


_TRUTHY = frozenset({"true", "1", "yes", "on"})


def parse_env_value(value: str, value_type: type) -> Any:  # noqa: ANN401
    """Convert a raw environment string to ``value_type``.

    Raises:
        ValueError: The string is not a valid int or float
    """
    if value_type is bool:
        return value.strip().lower() in _TRUTHY
    if value_type in (int, float):
        return value_type(value)
    return value


def apply_env_var_overrides(
    config_data: dict[str, Any],  # noqa: ANN401
    mappings: list[EnvVarMapping] | None = None,
) -> None:
    """Overlay the mapped environment variables onto ``config_data`` in place.

    Values that fail to parse are logged and leave the previous value in place.
    """
    for mapping in mappings if mappings is not None else ENV_VAR_MAPPINGS:
        raw = os.getenv(mapping.env_var)
        if raw is None:
            continue
        try:
            parsed = parse_env_value(raw, mapping.value_type)
        except ValueError as e:
            logger.error(f"Ignoring invalid {mapping.env_var}={raw!r}: {e}")
            continue
        set_nested_value(config_data, mapping.config_path, parsed)
        logger.debug(f"{mapping.env_var} overrides {mapping.config_path}")


def apply_database_env_vars(
    config_data: dict[str, Any],  # noqa: ANN401
) -> None:
    """Build a PostgreSQL database URL from the DB_* variables.

    DATABASE_URL wins when both are set. The URL is only built when DB_HOST is
    present, so local SQLite setups need no DB_* variables at all.
    """
    if os.getenv("DATABASE_URL") is not None:
        return
    host = os.getenv("DB_HOST")
    if not host:
        return

    port = os.getenv("DB_PORT", "5432")
    name = os.getenv("DB_NAME", "attachment-service")
    username = quote(os.getenv("DB_USERNAME", "postgres"), safe="")
    password = quote(os.getenv("DB_PASSWORD", ""), safe="")
    credentials = f"{username}:{password}" if password else username
    config_data["database_url"] = (
        f"postgresql+asyncpg://{credentials}@{host}:{port}/{name}"
    )
    logger.debug("Built database_url from DB_* environment variables")


def _build_config_from_yaml(yaml_files: list[str]) -> AppConfig:
    """Build an AppConfig from field defaults + deep-merged YAML files.

    Args:
        yaml_files: Ordered list of YAML file paths (later files override earlier ones)

    Returns:
        An AppConfig instance with field defaults + YAML values merged
    """
    with AppConfig.yaml_source_context(yaml_files):
        return AppConfig()


def load_config(
    config_file_path: str = DEFAULT_CONFIG_FILE,
    load_dotenv_file: bool = True,
) -> AppConfig:
    """Load configuration with clear priority hierarchy.

    Priority (lowest to highest):
    1. Pydantic model field defaults (defined in config_models.py)
    2. config.yaml file (operator-provided, optional)
    3. Environment variables

    Args:
        config_file_path: Path to the operator config YAML file (optional)
        load_dotenv_file: Whether to load .env file (default True)

    Returns:
        A validated AppConfig model containing all configuration

    Raises:
        ValidationError: If configuration contains invalid keys or values
    """
    yaml_files = [p for p in [config_file_path] if os.path.exists(p)]
    base_config = _build_config_from_yaml(yaml_files)
    logger.info("Built config from field defaults + YAML files: %s", yaml_files)

    config_data = base_config.model_dump(mode="json")

    if load_dotenv_file:
        load_dotenv()

    apply_env_var_overrides(config_data)
    apply_database_env_vars(config_data)

    _log_config(config_data)

    try:
        validated_config = AppConfig.model_validate(config_data)
        logger.info("Configuration validated successfully.")
        return validated_config
    except ValidationError as e:
        logger.error(f"Configuration validation failed: {e}")
        raise


def _log_config(
    config_data: dict[str, Any],  # noqa: ANN401
) -> None:
    """Log configuration excluding sensitive values.

    Args:
        config_data: The configuration dictionary to log
    """
    loggable = copy.deepcopy({
        k: v for k, v in config_data.items() if k != "database_url"
    })

    if "idp" in loggable:
        loggable["idp"].pop("internal_client_secret", None)

    if "storage" in loggable:
        for secret_key in ("secret_access_key", "account_secret"):
            loggable["storage"].pop(secret_key, None)

    logger.info(
        f"Final configuration (excluding secrets): {json.dumps(loggable, indent=2, default=str)}"
    )
