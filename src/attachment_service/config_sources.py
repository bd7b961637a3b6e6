"""YAML settings source for the layered configuration.

Lives apart from config_loader.py so config_models.py can import it without
a cycle.
"""

from __future__ import annotations

import copy
import logging
from pathlib import Path
from typing import TYPE_CHECKING, Any

import yaml
from pydantic_settings import BaseSettings, PydanticBaseSettingsSource

if TYPE_CHECKING:
    from pydantic.fields import FieldInfo

logger = logging.getLogger(__name__)


def merge_config_layers(*layers: dict[str, Any]) -> dict[str, Any]:
    """Merge config mappings left to right; nested sections merge key by key."""
    merged: dict[str, Any] = {}
    for layer in layers:
        _overlay(merged, layer)
    return merged


def _overlay(target: dict[str, Any], layer: dict[str, Any]) -> None:
    for key, value in layer.items():
        current = target.get(key)
        if isinstance(value, dict) and isinstance(current, dict):
            _overlay(current, value)
        else:
            target[key] = copy.deepcopy(value)


def read_config_file(path: str | Path) -> dict[str, Any]:
    """Read one YAML config file. Missing, empty or unparseable files yield {}."""
    path = Path(path)
    if not path.is_file():
        logger.info(f"Config file {path} not found, skipping.")
        return {}
    try:
        content = yaml.safe_load(path.read_text(encoding="utf-8"))
    except yaml.YAMLError as e:
        logger.error(f"Could not parse config file {path}: {e}. Skipping.")
        return {}
    if content is None:
        return {}
    if not isinstance(content, dict):
        logger.warning(f"Config file {path} does not hold a mapping. Skipping.")
        return {}
    return content


class DeepMergedYamlSource(PydanticBaseSettingsSource):
    """Settings source built from one or more YAML files, later files winning."""

    def __init__(self, settings_cls: type[BaseSettings], yaml_files: list[str]) -> None:
        super().__init__(settings_cls)
        self.yaml_files = yaml_files

    def get_field_value(
        self,
        field: FieldInfo,
        field_name: str,
    ) -> tuple[Any, str, bool]:
        # Unused: __call__ returns every value at once
        return None, field_name, False

    def __call__(self) -> dict[str, Any]:
        return merge_config_layers(*(read_config_file(p) for p in self.yaml_files))
