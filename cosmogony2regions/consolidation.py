"""
consolidation.py — Group zone fragments into logical units and merge their geometry.

One logical administrative unit can be split over several cosmogony zones
(islands, enclaves, exclaves mapped as separate relations). Fragments are
grouped by a pluggable consolidation key; for each group the boundaries are
unioned into a single MULTIPOLYGON and one representative point is chosen.

Representative point, first match wins:
  1. explicit label point of the largest-area fragment that has one
  2. centroid of the union, if the union contains it
  3. centroid of the union's largest polygon, if the union contains it
  4. shapely representative_point() of the union (always inside)

Groups are independent of each other, so with workers > 1 they are merged in
a process pool. Results come back in group order whatever the worker count.
"""

import logging
import re
import unicodedata
from abc import ABC, abstractmethod
from concurrent.futures import ProcessPoolExecutor
from dataclasses import dataclass, field

import geopandas as gpd
import pandas as pd
import shapely
from shapely.errors import ShapelyError
from shapely.geometry import GeometryCollection, MultiPolygon, Point, Polygon

from .errors import MalformedInput, ResolutionWarning
from .zones import Zone, ZoneForest

logger = logging.getLogger(__name__)

# ─── Constants ────────────────────────────────────────────────────────────────

SOURCE_CRS      = "EPSG:4326"
EQUAL_AREA_CRS  = "EPSG:6933"   # WGS 84 / NSIDC EASE-Grid 2.0 Global, areas in m²
DEFAULT_POLICY  = "insee-or-name"


# ─── Consolidation key policies ───────────────────────────────────────────────

def normalise_name(name: str) -> str:
    """Case- and whitespace-insensitive form of a zone name, used in keys."""
    text = unicodedata.normalize("NFKC", name).casefold()
    return re.sub(r"\s+", " ", text).strip()


class ConsolidationPolicy(ABC):
    """
    Decides which zones are fragments of the same logical unit.

    key() receives the consolidation key of the zone's parent (None for
    roots), which is how ancestry enters the key: children of two fragments
    of one split parent still share a parent key.
    """

    name: str = ""

    @abstractmethod
    def key(self, zone: Zone, parent_key: str | None) -> str:
        ...

    def keys(self, forest: ZoneForest) -> dict[int, str]:
        """Compute the key of every zone, parents first."""
        keys: dict[int, str] = {}
        for zone in forest:
            parent_key = keys[zone.parent_id] if zone.parent_id is not None else None
            keys[zone.id] = self.key(zone, parent_key)
        return keys


class InseeOrNamePolicy(ConsolidationPolicy):
    """
    Group on (level, INSEE code or normalised name, parent key).

    Zones with neither an INSEE code nor a name are never merged: they key
    on their own id.
    """

    name = "insee-or-name"

    def key(self, zone: Zone, parent_key: str | None) -> str:
        if zone.insee:
            ident = f"insee:{zone.insee}"
        elif zone.name:
            ident = f"name:{normalise_name(zone.name)}"
        else:
            ident = f"zone:{zone.id}"
        own = f"{zone.level}|{ident}"
        return own if parent_key is None else f"{own}<{parent_key}"


class ZoneIdPolicy(ConsolidationPolicy):
    """Every zone is its own group; nothing is merged."""

    name = "zone-id"

    def key(self, zone: Zone, parent_key: str | None) -> str:
        return f"zone:{zone.id}"


POLICIES: dict[str, type[ConsolidationPolicy]] = {
    InseeOrNamePolicy.name: InseeOrNamePolicy,
    ZoneIdPolicy.name:      ZoneIdPolicy,
}


def get_policy(name: str) -> ConsolidationPolicy:
    try:
        return POLICIES[name]()
    except KeyError:
        raise ValueError(
            f"Unknown consolidation policy '{name}' (available: {', '.join(sorted(POLICIES))})"
        ) from None


# ─── Data carried between stages ──────────────────────────────────────────────

@dataclass(frozen=True)
class Fragment:
    zone_id:  int
    boundary: Polygon | MultiPolygon | GeometryCollection | None
    coord:    Point | None
    area:     float


@dataclass(frozen=True)
class GroupTask:
    key:        str
    parent_key: str | None
    level:      int
    fragments:  tuple[Fragment, ...]


@dataclass(frozen=True)
class ConsolidatedGroup:
    key:            str
    parent_key:     str | None
    level:          int
    zone_ids:       tuple[int, ...]
    fragment_areas: tuple[float, ...]
    boundary:       MultiPolygon | None
    coord:          Point | None
    area:           float
    warnings:       tuple[ResolutionWarning, ...] = field(default=())


# ─── Geometry helpers ─────────────────────────────────────────────────────────

def as_multipolygon(geom) -> MultiPolygon | None:
    """
    Keep only the polygonal parts of `geom` and return them as a MultiPolygon.

    Points and lines left over from make_valid() or from fragments that only
    touch are dropped. Returns None when nothing polygonal remains.
    """
    if geom is None or geom.is_empty:
        return None
    if isinstance(geom, Polygon):
        return MultiPolygon([geom])
    if isinstance(geom, MultiPolygon):
        return geom
    if isinstance(geom, GeometryCollection):
        polygons: list[Polygon] = []
        for part in geom.geoms:
            multi = as_multipolygon(part)
            if multi is not None:
                polygons.extend(multi.geoms)
        return MultiPolygon(polygons) if polygons else None
    return None


def union_boundaries(parts: list) -> MultiPolygon | None:
    if not parts:
        return None
    if len(parts) == 1:
        return as_multipolygon(parts[0])
    return as_multipolygon(shapely.union_all(parts))


def representative_point(
    boundary: MultiPolygon | None,
    fragments: tuple[Fragment, ...],
) -> Point | None:
    labelled = [fragment for fragment in fragments if fragment.coord is not None]
    if labelled:
        # max() keeps the first of equal areas, i.e. input order breaks ties.
        return max(labelled, key=lambda fragment: fragment.area).coord

    if boundary is None:
        return None

    centroid = boundary.centroid
    if boundary.contains(centroid):
        return centroid

    largest = max(boundary.geoms, key=lambda polygon: polygon.area)
    centroid = largest.centroid
    if boundary.contains(centroid):
        return centroid

    return boundary.representative_point()


def consolidate_group(task: GroupTask) -> ConsolidatedGroup:
    """
    Merge one group. Pure function of its input; safe to run in a worker process.

    Raises MalformedInput when GEOS cannot union the fragment boundaries.
    """
    warnings = []
    parts = []
    for fragment in task.fragments:
        if fragment.boundary is None or fragment.boundary.is_empty:
            warnings.append(ResolutionWarning(
                kind="empty_geometry",
                message="fragment has no boundary, skipped in union",
                zone_id=fragment.zone_id,
                key=task.key,
            ))
            continue
        parts.append(fragment.boundary)

    try:
        boundary = union_boundaries(parts)
        coord = representative_point(boundary, task.fragments)
    except ShapelyError as exc:
        raise MalformedInput(
            f"Cannot merge boundaries of group {task.key} (zones {[f.zone_id for f in task.fragments]}): {exc}"
        ) from exc

    if boundary is None:
        warnings.append(ResolutionWarning(
            kind="no_boundary",
            message=f"none of the {len(task.fragments)} fragment(s) has a usable boundary",
            key=task.key,
        ))

    return ConsolidatedGroup(
        key            = task.key,
        parent_key     = task.parent_key,
        level          = task.level,
        zone_ids       = tuple(fragment.zone_id for fragment in task.fragments),
        fragment_areas = tuple(fragment.area for fragment in task.fragments),
        boundary       = boundary,
        coord          = coord,
        area           = boundary.area if boundary is not None else 0.0,
        warnings       = tuple(warnings),
    )


# ─── Fragment frame ───────────────────────────────────────────────────────────

def _fragment_frame(zones: list[Zone], keys: dict[int, str]) -> gpd.GeoDataFrame:
    """
    One row per zone: key, label point, repaired boundary and equal-area size.

    Invalid boundaries (self-intersections, broken rings) are repaired with
    make_valid() here, once, before any union is attempted.
    """
    records = pd.DataFrame.from_records(
        [
            {
                "zone_id":  zone.id,
                "key":      keys[zone.id],
                "coord":    zone.coord,
                "geometry": zone.boundary,
            }
            for zone in zones
        ],
        columns=["zone_id", "key", "coord", "geometry"],
    )
    frame = gpd.GeoDataFrame(records, geometry="geometry", crs=SOURCE_CRS)

    missing = frame.geometry.isna() | frame.geometry.is_empty
    invalid = ~missing & ~frame.geometry.is_valid
    if invalid.any():
        logger.info("Repairing %d invalid fragment boundaries", int(invalid.sum()))
        try:
            frame.loc[invalid, "geometry"] = frame.geometry[invalid].make_valid()
        except ShapelyError as exc:
            zone_ids = frame.loc[invalid, "zone_id"].tolist()[:10]
            raise MalformedInput(f"Cannot repair invalid boundaries of zones {zone_ids}: {exc}") from exc

    areas = frame.geometry.to_crs(EQUAL_AREA_CRS).area
    frame["area"] = areas.replace([float("inf"), float("-inf")], float("nan")).fillna(0.0)
    return frame


def _group_tasks(
    forest: ZoneForest,
    zones: list[Zone],
    keys: dict[int, str],
) -> list[GroupTask]:
    if not zones:
        return []
    frame = _fragment_frame(zones, keys)

    tasks = []
    for key, rows in frame.groupby("key", sort=False):
        fragments = tuple(
            Fragment(
                zone_id  = int(row.zone_id),
                boundary = row.geometry,
                coord    = row.coord if isinstance(row.coord, Point) else None,
                area     = float(row.area),
            )
            for row in rows.itertuples(index=False)
        )
        first = forest.get(fragments[0].zone_id)
        parent_key = keys[first.parent_id] if first.parent_id is not None else None
        tasks.append(GroupTask(key=key, parent_key=parent_key, level=first.level, fragments=fragments))
    return tasks


# ─── Entry point ──────────────────────────────────────────────────────────────

def consolidate(
    forest: ZoneForest,
    policy: ConsolidationPolicy | None = None,
    workers: int = 1,
    zone_types: set[str] | None = None,
) -> list[ConsolidatedGroup]:
    """
    Partition the forest's zones by consolidation key and merge every group.

    Args:
        forest:     Validated zone forest
        policy:     Consolidation key policy (default: insee-or-name)
        workers:    Process count for the per-group merge (1 = in-process)
        zone_types: If given, only zones of these cosmogony zone types are
                    consolidated. Keys still follow the full ancestry.

    Returns:
        Consolidated groups, ordered by their first fragment in forest order.
    """
    policy = policy or get_policy(DEFAULT_POLICY)
    keys = policy.keys(forest)

    zones = [zone for zone in forest if zone_types is None or zone.zone_type in zone_types]
    if zone_types is not None:
        logger.info("Zone type filter %s kept %d of %d zones", sorted(zone_types), len(zones), len(forest))

    tasks = _group_tasks(forest, zones, keys)
    logger.info("Consolidating %d zones into %d groups (policy=%s, workers=%d)",
                len(zones), len(tasks), policy.name, workers)

    if workers > 1 and len(tasks) > 1:
        chunksize = max(1, len(tasks) // (workers * 4))
        with ProcessPoolExecutor(max_workers=workers) as executor:
            groups = list(executor.map(consolidate_group, tasks, chunksize=chunksize))
    else:
        groups = [consolidate_group(task) for task in tasks]

    merged = sum(1 for group in groups if len(group.zone_ids) > 1)
    logger.info("Consolidation complete: %d groups, %d merged from several fragments",
                len(groups), merged)
    return groups
