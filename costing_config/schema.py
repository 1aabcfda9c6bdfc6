"""
Costing configuration schema.

Frozen dataclasses parsed from YAML by ``costing_config.loader``.  Nothing
here reads files or the environment.
"""

from __future__ import annotations

from dataclasses import dataclass, field

from costing_kernel.domain.values import CostMethod


@dataclass(frozen=True)
class DatabaseSettings:
    url: str = "sqlite://"
    echo: bool = False
    pool_size: int = 20
    max_overflow: int = 10


@dataclass(frozen=True)
class CostingSettings:
    """Engine behaviour knobs."""

    default_method: CostMethod = CostMethod.FIFO
    business_timezone: str = "Asia/Bangkok"
    # Upper bound on keys per IN (...) lookup
    query_chunk_size: int = 200
    cancelled_statuses: frozenset[str] = field(
        default_factory=lambda: frozenset({"cancelled", "canceled"})
    )


@dataclass(frozen=True)
class LoggingSettings:
    level: str = "INFO"


@dataclass(frozen=True)
class ImportSettings:
    # Re-importing a file whose hash already succeeded raises unless allowed
    allow_duplicate_files: bool = False


@dataclass(frozen=True)
class CostingConfig:
    """Complete runtime configuration."""

    database: DatabaseSettings = field(default_factory=DatabaseSettings)
    costing: CostingSettings = field(default_factory=CostingSettings)
    logging: LoggingSettings = field(default_factory=LoggingSettings)
    imports: ImportSettings = field(default_factory=ImportSettings)
    source: str = "<defaults>"
    checksum: str = ""
