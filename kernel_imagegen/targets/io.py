"""Kernel catalog loading.

The catalog lists the kernels the repository supports, the deprecated
kernels that can still be built on request, and the tool images built for
every kernel. It lives next to the Dockerfiles as ``kernels.yaml``.
"""

import logging
from pathlib import Path
from typing import Any

import yaml
from pydantic import ValidationError

from kernel_imagegen.errors import InputError
from kernel_imagegen.targets.schema import DEFAULT_CATALOG, KernelCatalog

logger = logging.getLogger(__name__)


def load_yaml(path: Path) -> dict[str, Any]:
    """Load a YAML file and return its contents as a dict.

    Args:
        path: Path to the YAML file.

    Returns:
        Parsed YAML content as a dictionary.

    Raises:
        FileNotFoundError: If the file does not exist.
        yaml.YAMLError: If the file is not valid YAML.
        ValueError: If the document is not a mapping.
    """
    with open(path, encoding="utf-8") as f:
        data = yaml.safe_load(f)
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ValueError(f"Expected a YAML mapping, got {type(data).__name__}")
    return data


def parse_catalog_data(data: dict[str, Any]) -> KernelCatalog:
    """Validate catalog data.

    Raises:
        InputError: If the data does not match the catalog schema.
    """
    try:
        return KernelCatalog.model_validate(data)
    except ValidationError as e:
        raise InputError(f"Invalid kernel catalog: {e}") from e


def load_catalog(path: Path | None) -> KernelCatalog:
    """Load the kernel catalog, falling back to built-in defaults.

    Args:
        path: Catalog file path, or None to use the defaults.

    Returns:
        Validated KernelCatalog.

    Raises:
        InputError: If the file exists but cannot be parsed or validated.
    """
    if path is None or not path.exists():
        logger.debug("No kernel catalog at %s, using defaults", path)
        return DEFAULT_CATALOG

    try:
        data = load_yaml(path)
    except (yaml.YAMLError, ValueError) as e:
        raise InputError(f"Cannot read kernel catalog {path}: {e}") from e

    catalog = parse_catalog_data(data)
    logger.debug("Loaded kernel catalog from %s", path)
    return catalog


def catalog_to_yaml_string(catalog: KernelCatalog) -> str:
    """Render a catalog as YAML, e.g. to seed a new kernels.yaml."""
    return yaml.safe_dump(
        catalog.model_dump(),
        default_flow_style=False,
        sort_keys=False,
    )


__all__ = [
    "catalog_to_yaml_string",
    "load_catalog",
    "load_yaml",
    "parse_catalog_data",
]
