"""
db.py — PostGIS destination store for administrative_regions.

The table itself is created by the schema migration
(migrations/2019-01-29-130627_create_table/up.sql). This module only
replaces its contents: one transaction truncates the table, drops the
spatial index, bulk-inserts every region, rebuilds the index and checks that
it exists. Any error rolls the whole transaction back, leaving the previous
rows and index in place.

TRUNCATE and DROP INDEX take ACCESS EXCLUSIVE locks on the table: readers
block for the duration of the load and see the new contents once it commits.
"""

import logging
import time
from contextlib import contextmanager
from typing import Iterator

import psycopg2
import psycopg2.extras

from .config import DB_CONFIG

logger = logging.getLogger(__name__)

TABLE_NAME = "administrative_regions"
INDEX_NAME = "administrative_regions_boundary_idx"


# ─── Connections ──────────────────────────────────────────────────────────────

def get_connection(connection_string: str | None = None) -> psycopg2.extensions.connection:
    """
    Return an open psycopg2 connection.
    Uses `connection_string` when given, DB_CONFIG otherwise.
    Caller is responsible for calling conn.close().
    """
    if connection_string:
        return psycopg2.connect(connection_string)
    return psycopg2.connect(**DB_CONFIG)


@contextmanager
def get_cursor(conn: psycopg2.extensions.connection):
    """
    Context manager yielding a DictCursor.
    Commits the transaction on clean exit; rolls back on any exception.
    """
    cur = conn.cursor(cursor_factory=psycopg2.extras.DictCursor)
    try:
        yield cur
        conn.commit()
    except Exception:
        conn.rollback()
        raise
    finally:
        cur.close()


def verify_connection(
    connection_string: str | None,
    retries: int = 5,
    delay: int = 5,
) -> bool:
    """
    Attempt to connect to the database, retrying with a growing delay.
    Returns True on success, False after all retries are exhausted.
    """
    for attempt in range(1, retries + 1):
        try:
            conn = get_connection(connection_string)
            conn.close()
            logger.info("Database connection verified (attempt %d/%d)", attempt, retries)
            return True
        except psycopg2.OperationalError as exc:
            logger.warning("DB connection attempt %d/%d failed: %s", attempt, retries, exc)
            if attempt < retries:
                wait = delay * attempt
                logger.info("Retrying in %ds…", wait)
                time.sleep(wait)
    return False


# ─── Region rows ──────────────────────────────────────────────────────────────

_REGION_INSERT_SQL = """
    INSERT INTO administrative_regions (
        id,
        name,
        uri,
        post_code,
        insee,
        level,
        coord,
        boundary
    )
    VALUES %s
"""

# Geometries travel as hex WKB. NULL stays NULL through decode().
_REGION_TEMPLATE = """(
    %(id)s,
    %(name)s,
    %(uri)s,
    %(post_code)s,
    %(insee)s,
    %(level)s,
    ST_SetSRID(decode(%(coord_wkb)s, 'hex')::geometry, 4326)::geography,
    ST_Multi(ST_SetSRID(decode(%(boundary_wkb)s, 'hex')::geometry, 4326))::geography
)"""


def region_to_row(region) -> dict:
    """Flatten an AdministrativeRegion into the parameter dict of _REGION_TEMPLATE."""
    return {
        "id":           region.id,
        "name":         region.name,
        "uri":          region.uri,
        "post_code":    region.post_code,
        "insee":        region.insee,
        "level":        region.level,
        "coord_wkb":    region.coord.wkb_hex if region.coord is not None else None,
        "boundary_wkb": region.boundary.wkb_hex if region.boundary is not None else None,
    }


# ─── Store ────────────────────────────────────────────────────────────────────

class PostgisRegionTransaction:
    """Operations available inside one PostgisRegionStore.transaction()."""

    def __init__(self, cur):
        self._cur = cur

    def replace_contents(self) -> None:
        """Empty the table and drop its spatial index; both come back on rollback."""
        self._cur.execute("SELECT to_regclass(%s)", (TABLE_NAME,))
        if self._cur.fetchone()[0] is None:
            raise RuntimeError(f"Table {TABLE_NAME} does not exist; apply the schema migration first")
        self._cur.execute(f"DROP INDEX IF EXISTS {INDEX_NAME}")
        self._cur.execute(f"TRUNCATE {TABLE_NAME}")

    def insert_regions(self, regions: list) -> int:
        if not regions:
            return 0
        rows = [region_to_row(region) for region in regions]
        psycopg2.extras.execute_values(
            self._cur,
            _REGION_INSERT_SQL,
            rows,
            template=_REGION_TEMPLATE,
            page_size=len(rows),
        )
        logger.debug("insert_regions: inserted %d rows", len(rows))
        return len(rows)

    def rebuild_spatial_index(self) -> None:
        started = time.monotonic()
        self._cur.execute(f"CREATE INDEX {INDEX_NAME} ON {TABLE_NAME} USING gist (boundary)")
        self._cur.execute(
            "SELECT 1 FROM pg_indexes WHERE tablename = %s AND indexname = %s",
            (TABLE_NAME, INDEX_NAME),
        )
        if self._cur.fetchone() is None:
            raise RuntimeError(f"Spatial index {INDEX_NAME} missing after rebuild")
        self._cur.execute(f"ANALYZE {TABLE_NAME}")
        logger.info("Spatial index %s rebuilt in %.1fs", INDEX_NAME, time.monotonic() - started)

    def count_rows(self) -> int:
        self._cur.execute(f"SELECT COUNT(*) FROM {TABLE_NAME}")
        return int(self._cur.fetchone()[0])


class PostgisRegionStore:
    """
    administrative_regions in a PostGIS database.

    transaction() opens a fresh connection, so no connection sits idle while
    the input is being parsed and consolidated.
    """

    def __init__(self, connection_string: str | None = None):
        self.connection_string = connection_string

    @contextmanager
    def transaction(self) -> Iterator[PostgisRegionTransaction]:
        conn = get_connection(self.connection_string)
        try:
            with get_cursor(conn) as cur:
                yield PostgisRegionTransaction(cur)
        finally:
            conn.close()

    def count_rows(self) -> int:
        conn = get_connection(self.connection_string)
        try:
            with get_cursor(conn) as cur:
                return PostgisRegionTransaction(cur).count_rows()
        finally:
            conn.close()
