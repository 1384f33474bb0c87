"""
Configuration Loader (``requisition_config.loader``).

Responsibility
--------------
Reads a YAML file and parses it into a ``BackendConfig``.  The only
environment variable consulted is ``REQUISITION_DATABASE_URL``, which
overrides ``database_url`` so deployments do not have to write credentials
into the file.

Failure modes
-------------
* Missing YAML file  -> ``FileNotFoundError`` propagates.
* Malformed YAML  -> ``yaml.YAMLError`` propagates.
* Top level not a mapping, unknown keys, invalid values  -> ``ValueError``.
"""

from __future__ import annotations

import os
from collections.abc import Mapping
from pathlib import Path
from typing import Any

import yaml

from requisition_config.schema import BackendConfig

DATABASE_URL_ENV = "REQUISITION_DATABASE_URL"


def load_yaml_file(path: Path) -> dict[str, Any]:
    """
    Load a single YAML file and return its contents as a dict.

    Raises:
        FileNotFoundError: if the file does not exist.
        yaml.YAMLError: if the file contains invalid YAML.
        ValueError: if the document is not a mapping.
    """
    with open(path) as f:
        data = yaml.safe_load(f) or {}
    if not isinstance(data, dict):
        raise ValueError(f"{path}: top level must be a mapping, got {type(data).__name__}")
    return data


def load_config(
    path: str | Path | None = None,
    environ: Mapping[str, str] | None = None,
) -> BackendConfig:
    """
    Parse ``path`` (or the defaults when None) into a ``BackendConfig``.

    Args:
        path: YAML file to read.  None means built-in defaults only.
        environ: Environment mapping; ``os.environ`` when None.
    """
    data = load_yaml_file(Path(path)) if path is not None else {}
    env = os.environ if environ is None else environ
    override = env.get(DATABASE_URL_ENV)
    if override:
        data["database_url"] = override
    return BackendConfig.from_dict(data)
