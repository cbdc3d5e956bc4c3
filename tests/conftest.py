import gzip
import json
from contextlib import contextmanager
from pathlib import Path

import pytest
from shapely.geometry import Point, box, mapping

from cosmogony2regions.zones import Zone


def square(x: float, y: float, size: float = 1.0):
    return box(x, y, x + size, y + size)


def make_zone(zone_id, level, name="", parent_id=None, **kwargs) -> Zone:
    kwargs.setdefault("boundary", square(zone_id % 100, 45, 0.5))
    return Zone(id=zone_id, level=level, name=name, parent_id=parent_id, **kwargs)


def raw_zone(
    zone_id,
    admin_level,
    name,
    parent=None,
    geometry=None,
    center=None,
    zone_type=None,
    tags=None,
    zip_codes=None,
):
    """A zone object shaped like the ones cosmogony writes."""
    return {
        "id":          zone_id,
        "osm_id":      f"relation:{1000 + zone_id}",
        "admin_level": admin_level,
        "zone_type":   zone_type,
        "name":        name,
        "parent":      parent,
        "tags":        tags or {},
        "zip_codes":   zip_codes or [],
        "geometry":    mapping(geometry) if geometry is not None else None,
        "center":      mapping(center) if center is not None else None,
    }


def write_cosmogony(path: Path, zones: list[dict]) -> Path:
    name = path.name
    opener = gzip.open if name.endswith(".gz") else open
    with opener(path, "wt", encoding="utf-8") as handle:
        if ".jsonl" in name:
            for zone in zones:
                handle.write(json.dumps(zone) + "\n")
        else:
            json.dump({"zones": zones, "meta": {"osm_filename": "test.osm.pbf"}}, handle)
    return path


@pytest.fixture
def france_zones():
    """
    France → Île-de-France → Paris, plus a commune split into a mainland
    fragment and an island fragment (same INSEE, one without a name).
    """
    return [
        raw_zone(0, 2, "France", geometry=square(0, 40, 10), zone_type="country"),
        raw_zone(1, 4, "Île-de-France", parent=0, geometry=square(1, 41, 4), zone_type="state"),
        raw_zone(
            2, 8, "Paris", parent=1, geometry=square(2, 42, 0.5), zone_type="city",
            center=Point(2.25, 42.25),
            tags={"ref:INSEE": "75056", "addr:postcode": "75001;75002"},
        ),
        raw_zone(
            3, 8, "Île-d'Yeu", parent=1, geometry=square(3, 43, 0.4), zone_type="city",
            tags={"ref:INSEE": "085113"}, zip_codes=["85350"],
        ),
        raw_zone(
            4, 8, "", parent=1, geometry=square(4, 44, 0.1), zone_type="city",
            tags={"ref:INSEE": "85113"},
        ),
    ]


@pytest.fixture
def cosmogony_file(tmp_path, france_zones):
    return write_cosmogony(tmp_path / "france.json", france_zones)


# ─── In-memory destination store ──────────────────────────────────────────────

class MemoryTransaction:
    def __init__(self, store: "MemoryRegionStore"):
        self._store = store
        self.rows = list(store.rows)
        self.index_present = store.index_present
        self.inserted = 0

    def replace_contents(self):
        self.rows = []
        self.index_present = False

    def insert_regions(self, regions):
        for region in regions:
            self.inserted += 1
            if self._store.fail_on_row == self.inserted:
                raise RuntimeError(f"row {self.inserted} rejected by store")
            self.rows.append(region)
        self._store.insert_calls += 1
        return len(regions)

    def rebuild_spatial_index(self):
        if self._store.fail_index:
            raise RuntimeError("could not create spatial index")
        self.index_present = True

    def count_rows(self):
        return len(self.rows)


class MemoryRegionStore:
    """Transactional stand-in for PostgisRegionStore: changes land only on commit."""

    def __init__(self, rows=(), fail_on_row=None, fail_index=False):
        self.rows = list(rows)
        self.index_present = True
        self.fail_on_row = fail_on_row
        self.fail_index = fail_index
        self.transactions = 0
        self.commits = 0
        self.rollbacks = 0
        self.insert_calls = 0

    @contextmanager
    def transaction(self):
        self.transactions += 1
        tx = MemoryTransaction(self)
        try:
            yield tx
        except BaseException:
            self.rollbacks += 1
            raise
        self.rows = tx.rows
        self.index_present = tx.index_present
        self.commits += 1

    def count_rows(self):
        return len(self.rows)


@pytest.fixture
def memory_store():
    return MemoryRegionStore()
