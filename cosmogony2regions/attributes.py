"""
attributes.py — Resolve the published attributes of each consolidated group.

Rules per group (fragments in hierarchy order):
  name       non-empty name of the largest-area fragment; no name → dropped
  post_code  union of every fragment's codes, sorted, joined with ";"
  insee      first non-empty value; conflicting values are a warning
  uri        admin:osm:<insee> for communes (level 8) with an INSEE code,
             admin:osm:<level>:<insee> for other levels with one, else
             admin:osm:<level>:<slug>:<digest of level|key|parent key>.
             Consolidation keys carry the ancestor key chain and are
             computed over the whole forest, so a uri does not depend on
             sibling order or on the zone-type filter.
             Residual collisions get -2, -3, … in hierarchy order.
  id         1..N over published regions, in hierarchy order

Everything is a pure function of the input order, so re-running on the same
cosmogony file yields byte-identical uris.
"""

import hashlib
import logging
import re
import unicodedata
from dataclasses import dataclass, field
from typing import Iterable, Iterator

from shapely.geometry import MultiPolygon, Point

from .consolidation import ConsolidatedGroup
from .errors import ResolutionWarning
from .zones import ZoneForest

logger = logging.getLogger(__name__)

URI_PREFIX      = "admin:osm"
COMMUNE_LEVEL   = 8
POSTCODE_SEP    = ";"
DIGEST_LENGTH   = 10


@dataclass(frozen=True)
class AdministrativeRegion:
    id:        int
    name:      str
    uri:       str
    level:     int
    post_code: str | None = None
    insee:     str | None = None
    coord:     Point | None = None
    boundary:  MultiPolygon | None = None


@dataclass(frozen=True)
class DroppedRegion:
    key:      str
    zone_ids: tuple[int, ...]
    reason:   str


@dataclass
class Resolution:
    regions:  list[AdministrativeRegion] = field(default_factory=list)
    dropped:  list[DroppedRegion] = field(default_factory=list)
    warnings: list[ResolutionWarning] = field(default_factory=list)


# ─── Slug / uri generation ────────────────────────────────────────────────────

def slugify(name: str) -> str:
    """
    Normalize unicode, convert to ASCII, lowercase, replace non-alphanumeric
    with hyphens, collapse consecutive hyphens, strip leading/trailing hyphens.

    Example: "Île-de-France" → "ile-de-france"
    """
    normalized = unicodedata.normalize("NFKD", name)
    ascii_str  = normalized.encode("ascii", "ignore").decode("ascii")
    cleaned    = re.sub(r"[^a-z0-9]+", "-", ascii_str.lower())
    return cleaned.strip("-") or "unknown"


def make_uri(
    level: int,
    insee: str | None,
    name: str,
    key: str,
    parent_key: str | None = None,
) -> str:
    """
    Build the canonical uri of a region, before collision suffixing.

    Commune INSEE codes are unique nationwide and keep the bare
    admin:osm:<insee> form. Region and department codes overlap ("75" is
    both), so at other levels the code is qualified with the level.
    Without a code, the digest covers the group's consolidation key and
    its parent's key.
    """
    if insee:
        if level == COMMUNE_LEVEL:
            return f"{URI_PREFIX}:{insee}"
        return f"{URI_PREFIX}:{level}:{insee}"
    slug = slugify(name)
    seed = f"{level}|{key}|{parent_key or ''}"
    digest = hashlib.sha256(seed.encode("utf-8")).hexdigest()[:DIGEST_LENGTH]
    return f"{URI_PREFIX}:{level}:{slug}:{digest}"


def _unique(uri: str, used: set[str]) -> str:
    candidate = uri
    count = 2
    while candidate in used:
        candidate = f"{uri}-{count}"
        count += 1
    used.add(candidate)
    return candidate


# ─── Field resolution ─────────────────────────────────────────────────────────

def _resolve_name(group: ConsolidatedGroup, forest: ZoneForest, warnings: list) -> str | None:
    best_name, best_area = None, None
    for zone_id, area in zip(group.zone_ids, group.fragment_areas):
        name = forest.get(zone_id).name
        if name and (best_area is None or area > best_area):
            best_name, best_area = name, area
    if best_name is not None and best_area < max(group.fragment_areas):
        warnings.append(ResolutionWarning(
            kind="unnamed_main_fragment",
            message=f"largest fragment has no name, using '{best_name}' from a smaller one",
            key=group.key,
        ))
    return best_name


def _resolve_post_code(group: ConsolidatedGroup, forest: ZoneForest) -> str | None:
    codes: set[str] = set()
    for zone_id in group.zone_ids:
        codes.update(forest.get(zone_id).postal_codes)
    return POSTCODE_SEP.join(sorted(codes)) or None


def _resolve_insee(group: ConsolidatedGroup, forest: ZoneForest, warnings: list) -> str | None:
    chosen = None
    for zone_id in group.zone_ids:
        insee = forest.get(zone_id).insee
        if not insee:
            continue
        if chosen is None:
            chosen = insee
        elif insee != chosen:
            warnings.append(ResolutionWarning(
                kind="insee_conflict",
                message=f"INSEE {insee} conflicts with {chosen}, keeping {chosen}",
                zone_id=zone_id,
                key=group.key,
            ))
    return chosen


# ─── Entry points ─────────────────────────────────────────────────────────────

def iter_regions(
    forest: ZoneForest,
    groups: Iterable[ConsolidatedGroup],
    dropped: list[DroppedRegion],
    warnings: list[ResolutionWarning],
) -> Iterator[AdministrativeRegion]:
    """
    Yield one AdministrativeRegion per publishable group, in group order.

    Dropped groups are appended to `dropped`; every recoverable finding,
    including the consolidator's, is logged and appended to `warnings`.
    """
    used_uris: set[str] = set()
    next_id = 1

    for group in groups:
        group_warnings: list[ResolutionWarning] = list(group.warnings)
        name  = _resolve_name(group, forest, group_warnings)
        insee = _resolve_insee(group, forest, group_warnings)

        for warning in group_warnings:
            logger.warning("%s", warning)
        warnings.extend(group_warnings)

        if name is None:
            dropped.append(DroppedRegion(key=group.key, zone_ids=group.zone_ids, reason="empty_name"))
            warnings.append(ResolutionWarning(
                kind="empty_name",
                message=f"no fragment of {len(group.zone_ids)} has a name, region dropped",
                key=group.key,
            ))
            logger.warning("Dropping unnamed group %s (zones %s)", group.key, list(group.zone_ids))
            continue

        uri = _unique(make_uri(group.level, insee, name, group.key, group.parent_key), used_uris)
        yield AdministrativeRegion(
            id        = next_id,
            name      = name,
            uri       = uri,
            level     = group.level,
            post_code = _resolve_post_code(group, forest),
            insee     = insee,
            coord     = group.coord,
            boundary  = group.boundary,
        )
        next_id += 1


def resolve_regions(forest: ZoneForest, groups: Iterable[ConsolidatedGroup]) -> Resolution:
    """Resolve every group eagerly. See iter_regions() for the streaming form."""
    resolution = Resolution()
    resolution.regions = list(iter_regions(forest, groups, resolution.dropped, resolution.warnings))
    logger.info("Resolved %d regions, dropped %d", len(resolution.regions), len(resolution.dropped))
    return resolution
