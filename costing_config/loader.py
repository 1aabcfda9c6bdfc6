"""
Configuration Loader (``costing_config.loader``).

Responsibility
--------------
Loads a YAML file and parses it into ``costing_config.schema`` dataclasses.
The runtime entry point is ``costing_config.get_active_config()``; this
module is its internal tooling.

Failure modes
-------------
* Missing YAML file  -> ``FileNotFoundError`` propagates.
* Malformed YAML  -> ``yaml.YAMLError`` propagates.
* Out-of-range or mistyped values  -> ``ValueError``.
"""

from __future__ import annotations

from pathlib import Path
from typing import Any
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

import yaml

from costing_config.schema import (
    CostingConfig,
    CostingSettings,
    DatabaseSettings,
    ImportSettings,
    LoggingSettings,
)
from costing_kernel.domain.values import CostMethod
from costing_kernel.utils.hashing import hash_payload

_LOG_LEVELS = {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}


def load_yaml_file(path: Path) -> dict[str, Any]:
    """
    Load a single YAML file and return its contents as a dict.

    Raises:
        FileNotFoundError: if the file does not exist.
        yaml.YAMLError: if the file contains invalid YAML.
        ValueError: if the top level is not a mapping.
    """
    with open(path, encoding="utf-8") as f:
        data = yaml.safe_load(f) or {}
    if not isinstance(data, dict):
        raise ValueError(f"{path}: top level must be a mapping")
    return data


def _positive_int(value: Any, name: str) -> int:
    if isinstance(value, bool) or not isinstance(value, int) or value <= 0:
        raise ValueError(f"{name} must be a positive integer, got {value!r}")
    return value


def parse_database(data: dict[str, Any]) -> DatabaseSettings:
    defaults = DatabaseSettings()
    return DatabaseSettings(
        url=str(data.get("url", defaults.url)),
        echo=bool(data.get("echo", defaults.echo)),
        pool_size=_positive_int(data.get("pool_size", defaults.pool_size), "database.pool_size"),
        max_overflow=int(data.get("max_overflow", defaults.max_overflow)),
    )


def parse_costing(data: dict[str, Any]) -> CostingSettings:
    defaults = CostingSettings()

    method_raw = str(data.get("default_method", defaults.default_method.value)).upper()
    try:
        method = CostMethod(method_raw)
    except ValueError:
        raise ValueError(f"costing.default_method must be FIFO or AVG, got {method_raw!r}") from None

    tz_name = str(data.get("business_timezone", defaults.business_timezone))
    try:
        ZoneInfo(tz_name)
    except ZoneInfoNotFoundError:
        raise ValueError(f"costing.business_timezone is not a known zone: {tz_name!r}") from None

    statuses = data.get("cancelled_statuses")
    cancelled = (
        frozenset(str(s).strip().lower() for s in statuses)
        if statuses is not None
        else defaults.cancelled_statuses
    )

    return CostingSettings(
        default_method=method,
        business_timezone=tz_name,
        query_chunk_size=_positive_int(
            data.get("query_chunk_size", defaults.query_chunk_size),
            "costing.query_chunk_size",
        ),
        cancelled_statuses=cancelled,
    )


def parse_logging(data: dict[str, Any]) -> LoggingSettings:
    level = str(data.get("level", LoggingSettings().level)).upper()
    if level not in _LOG_LEVELS:
        raise ValueError(f"logging.level must be one of {sorted(_LOG_LEVELS)}, got {level!r}")
    return LoggingSettings(level=level)


def parse_imports(data: dict[str, Any]) -> ImportSettings:
    return ImportSettings(
        allow_duplicate_files=bool(data.get("allow_duplicate_files", False)),
    )


def parse_config(data: dict[str, Any], source: str = "<dict>") -> CostingConfig:
    """Parse a whole configuration mapping; missing sections use defaults."""
    return CostingConfig(
        database=parse_database(data.get("database") or {}),
        costing=parse_costing(data.get("costing") or {}),
        logging=parse_logging(data.get("logging") or {}),
        imports=parse_imports(data.get("imports") or {}),
        source=source,
        checksum=hash_payload(data),
    )
