"""
config.py — Runtime configuration.

Database parameters come from environment variables (DB_HOST, DB_PORT,
DB_NAME, DB_USER, DB_PASSWORD). A full connection string, from
--connection-string or DATABASE_URL, takes precedence over them.
"""

import os
from dataclasses import dataclass

# ─── Connection config (from the environment) ────────────────────────────────

DB_CONFIG = {
    "host":     os.environ.get("DB_HOST",     "localhost"),
    "port":     int(os.environ.get("DB_PORT", 5432)),
    "dbname":   os.environ.get("DB_NAME",     "cities"),
    "user":     os.environ.get("DB_USER",     "postgres"),
    "password": os.environ.get("DB_PASSWORD", "postgres"),
    # TCP keepalives: a country-wide load keeps the transaction open for
    # minutes while geometry is streamed in.
    "keepalives":          1,
    "keepalives_idle":     30,
    "keepalives_interval": 10,
    "keepalives_count":    5,
}

DEFAULT_BATCH_SIZE = 100   # rows per multi-row INSERT


def default_connection_string() -> str | None:
    return os.environ.get("DATABASE_URL") or None


@dataclass(frozen=True)
class PipelineConfig:
    batch_size:    int = DEFAULT_BATCH_SIZE
    workers:       int = 1
    policy:        str = "insee-or-name"
    zone_types:    frozenset[str] | None = None
    strict_levels: bool = False

    def __post_init__(self):
        if self.batch_size < 1:
            raise ValueError("batch_size must be >= 1")
        if self.workers < 1:
            raise ValueError("workers must be >= 1")
