"""
costing_config -- single public entrypoint for costing configuration.

Responsibility:
    ``get_active_config()`` is the only way runtime code obtains settings.
    It reads the YAML file named by ``COSTING_CONFIG`` (or the packaged
    defaults), parses it into frozen dataclasses and applies the
    ``COSTING_DATABASE_URL`` override.

Architecture position:
    Configuration -- above ``costing_kernel``, below ``costing_services``.
    The kernel never imports from this package.

Failure modes:
    - ``FileNotFoundError`` -- COSTING_CONFIG points at a missing file.
    - ``ValueError`` -- a value fails validation.

Audit relevance:
    Every call emits ``COSTING_CONFIG_TRACE`` with the source path and a
    checksum of the parsed document.
"""

from __future__ import annotations

import os
from collections.abc import Mapping
from dataclasses import replace
from pathlib import Path

from costing_config.loader import load_yaml_file, parse_config
from costing_config.schema import (
    CostingConfig,
    CostingSettings,
    DatabaseSettings,
    ImportSettings,
    LoggingSettings,
)
from costing_kernel.logging_config import get_logger

__all__ = [
    "CostingConfig",
    "CostingSettings",
    "DatabaseSettings",
    "ImportSettings",
    "LoggingSettings",
    "get_active_config",
]

_logger = get_logger("config")

DEFAULT_CONFIG_PATH = Path(__file__).parent / "defaults" / "costing.yaml"

CONFIG_PATH_ENV = "COSTING_CONFIG"
DATABASE_URL_ENV = "COSTING_DATABASE_URL"


def get_active_config(
    path: Path | None = None,
    environ: Mapping[str, str] | None = None,
) -> CostingConfig:
    """The ONLY public configuration entrypoint.

    Args:
        path: Explicit YAML file; wins over ``COSTING_CONFIG``.
        environ: Environment mapping, defaults to ``os.environ``.

    Returns:
        Frozen CostingConfig.

    Raises:
        FileNotFoundError: If the selected file does not exist.
        ValueError: If validation fails.
    """
    env = os.environ if environ is None else environ
    config_path = path or Path(env.get(CONFIG_PATH_ENV) or DEFAULT_CONFIG_PATH)

    config = parse_config(load_yaml_file(config_path), source=str(config_path))

    url_override = env.get(DATABASE_URL_ENV)
    if url_override:
        config = replace(config, database=replace(config.database, url=url_override))

    _logger.info(
        "COSTING_CONFIG_TRACE",
        extra={
            "trace_type": "COSTING_CONFIG_TRACE",
            "config_source": config.source,
            "checksum": config.checksum,
            "default_method": config.costing.default_method.value,
            "business_timezone": config.costing.business_timezone,
            "database_url_overridden": bool(url_override),
        },
    )
    return config
