"""
cosmogony.py — Read cosmogony exports and decode zone records.

Supported inputs (as written by the cosmogony tool):
  *.json       one object with a "zones" array
  *.jsonl      one zone object per line
  *.json.gz / *.jsonl.gz   gzip-compressed variants of the above

Each zone object is decoded into a zones.Zone. Tag conventions:
  ref:INSEE                  → insee (leading zeros stripped)
  addr:postcode, postal_code → postal_codes, merged with "zip_codes"
                               (";"-separated multi-values are split)
"""

import gzip
import json
import logging
from pathlib import Path
from typing import Any, Iterator

from shapely.errors import ShapelyError
from shapely.geometry import MultiPolygon, Point, Polygon, shape

from .errors import MalformedInput
from .zones import Zone

logger = logging.getLogger(__name__)

# ─── Constants ────────────────────────────────────────────────────────────────

# OSM admin_level used when a zone carries a zone_type but no admin_level.
ZONE_TYPE_LEVELS = {
    "country":        2,
    "country_region": 3,
    "state":          4,
    "state_district": 6,
    "city":           8,
    "city_district":  9,
    "suburb":         10,
}

ZONE_TYPES = tuple(ZONE_TYPE_LEVELS) + ("non_administrative",)

POSTCODE_TAGS = ("addr:postcode", "postal_code")
INSEE_TAG     = "ref:INSEE"


# ─── File reading ─────────────────────────────────────────────────────────────

def _open_text(path: Path):
    if path.suffix == ".gz":
        return gzip.open(path, "rt", encoding="utf-8")
    return path.open("r", encoding="utf-8")


def _base_suffix(path: Path) -> str:
    suffixes = [s.lower() for s in path.suffixes]
    if suffixes and suffixes[-1] == ".gz":
        suffixes = suffixes[:-1]
    return suffixes[-1] if suffixes else ""


def iter_raw_zones(path: Path) -> Iterator[dict[str, Any]]:
    """
    Yield the raw zone objects of a cosmogony export, in file order.

    Raises MalformedInput if the file is missing, has an unsupported
    extension, or is not valid JSON.
    """
    path = Path(path)
    if not path.is_file():
        raise MalformedInput(f"Cosmogony file not found: {path}")

    kind = _base_suffix(path)
    if kind not in (".json", ".jsonl"):
        raise MalformedInput(
            f"Unsupported cosmogony format '{''.join(path.suffixes)}' for {path} "
            "(expected .json, .jsonl, .json.gz or .jsonl.gz)"
        )

    try:
        with _open_text(path) as handle:
            if kind == ".jsonl":
                for line_no, line in enumerate(handle, start=1):
                    if not line.strip():
                        continue
                    try:
                        raw = json.loads(line)
                    except json.JSONDecodeError as exc:
                        raise MalformedInput(f"{path}:{line_no}: invalid JSON ({exc.msg})") from exc
                    if not isinstance(raw, dict):
                        raise MalformedInput(f"{path}:{line_no}: zone must be a JSON object")
                    yield raw
                return

            try:
                payload = json.load(handle)
            except json.JSONDecodeError as exc:
                raise MalformedInput(f"{path}: invalid JSON ({exc.msg} at line {exc.lineno})") from exc
    except (OSError, EOFError) as exc:
        raise MalformedInput(f"Cannot read cosmogony file {path}: {exc}") from exc

    zones = payload.get("zones") if isinstance(payload, dict) else None
    if not isinstance(zones, list):
        raise MalformedInput(f"{path}: cosmogony root must be an object with a 'zones' array")
    logger.info("Read %d raw zones from %s", len(zones), path)
    for raw in zones:
        if not isinstance(raw, dict):
            raise MalformedInput(f"{path}: every entry of 'zones' must be an object")
        yield raw


# ─── Field decoding ───────────────────────────────────────────────────────────

def _require_int(raw: dict, key: str) -> int:
    value = raw.get(key)
    if isinstance(value, bool) or not isinstance(value, int):
        raise MalformedInput(f"Zone record missing required integer field '{key}': {_describe(raw)}")
    return value


def _optional_int(raw: dict, key: str) -> int | None:
    value = raw.get(key)
    if value is None:
        return None
    if isinstance(value, bool) or not isinstance(value, int):
        raise MalformedInput(f"Zone field '{key}' must be an integer: {_describe(raw)}")
    return value


def _describe(raw: dict) -> str:
    return f"id={raw.get('id')!r} osm_id={raw.get('osm_id')!r}"


def _split_codes(value: Any) -> list[str]:
    if value is None:
        return []
    values = value if isinstance(value, list) else [value]
    codes = []
    for item in values:
        for code in str(item).split(";"):
            code = code.strip()
            if code:
                codes.append(code)
    return codes


def normalise_insee(value: Any) -> str | None:
    """Strip leading zeros from an INSEE code ("01004" → "1004"); empty → None."""
    if value is None:
        return None
    code = str(value).strip().lstrip("0")
    return code or None


def _decode_level(raw: dict) -> int:
    level = _optional_int(raw, "admin_level")
    if level is not None:
        return level
    zone_type = raw.get("zone_type")
    if zone_type in ZONE_TYPE_LEVELS:
        return ZONE_TYPE_LEVELS[zone_type]
    raise MalformedInput(
        f"Zone record has neither 'admin_level' nor a known 'zone_type': {_describe(raw)}"
    )


def _decode_boundary(raw: dict) -> Polygon | MultiPolygon | None:
    geojson = raw.get("geometry", raw.get("boundary"))
    if geojson is None:
        return None
    try:
        geom = shape(geojson)
    except (ShapelyError, ValueError, TypeError, KeyError, AttributeError, IndexError) as exc:
        raise MalformedInput(f"Unparsable boundary geometry for zone {_describe(raw)}: {exc}") from exc
    if not isinstance(geom, (Polygon, MultiPolygon)):
        raise MalformedInput(
            f"Boundary of zone {_describe(raw)} must be a Polygon or MultiPolygon, got {geom.geom_type}"
        )
    return geom


def _decode_coord(raw: dict) -> Point | None:
    geojson = raw.get("center")
    if geojson is None:
        return None
    try:
        geom = shape(geojson)
    except (ShapelyError, ValueError, TypeError, KeyError, AttributeError, IndexError) as exc:
        raise MalformedInput(f"Unparsable center point for zone {_describe(raw)}: {exc}") from exc
    if not isinstance(geom, Point):
        raise MalformedInput(f"Center of zone {_describe(raw)} must be a Point, got {geom.geom_type}")
    if geom.is_empty:
        return None
    return geom


def decode_zone(raw: dict[str, Any]) -> Zone:
    """Decode one cosmogony zone object into a Zone. Raises MalformedInput."""
    zone_id = _require_int(raw, "id")
    tags = raw.get("tags") or {}
    if not isinstance(tags, dict):
        raise MalformedInput(f"Zone 'tags' must be an object: {_describe(raw)}")

    postal_codes = _split_codes(raw.get("zip_codes"))
    for tag in POSTCODE_TAGS:
        postal_codes.extend(_split_codes(tags.get(tag)))

    name = raw.get("name") or ""
    if not isinstance(name, str):
        raise MalformedInput(f"Zone 'name' must be a string: {_describe(raw)}")

    return Zone(
        id           = zone_id,
        parent_id    = _optional_int(raw, "parent"),
        name         = name.strip(),
        level        = _decode_level(raw),
        postal_codes = frozenset(postal_codes),
        insee        = normalise_insee(tags.get(INSEE_TAG)),
        boundary     = _decode_boundary(raw),
        coord        = _decode_coord(raw),
        osm_id       = str(raw.get("osm_id") or ""),
        zone_type    = raw.get("zone_type"),
    )


def iter_zones(path: Path) -> Iterator[Zone]:
    """Decode every zone of a cosmogony export, in file order."""
    for raw in iter_raw_zones(path):
        yield decode_zone(raw)
