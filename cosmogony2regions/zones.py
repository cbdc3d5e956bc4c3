"""
zones.py — In-memory zone model.

A Zone is one raw administrative-boundary record as read from cosmogony. The
ZoneForest is an arena of Zones keyed by id: parents are referenced by id,
never by object, and the forest carries the deterministic iteration order
(parents before children) that every downstream stage relies on.
"""

from dataclasses import dataclass, field
from typing import Iterator

from shapely.geometry import MultiPolygon, Point, Polygon


@dataclass(frozen=True)
class Zone:
    id:           int
    level:        int
    name:         str = ""
    parent_id:    int | None = None
    postal_codes: frozenset[str] = field(default_factory=frozenset)
    insee:        str | None = None
    boundary:     Polygon | MultiPolygon | None = None
    coord:        Point | None = None
    osm_id:       str = ""
    zone_type:    str | None = None

    @property
    def is_root(self) -> bool:
        return self.parent_id is None


class ZoneForest:
    """
    Read-only view over a validated zone hierarchy.

    Built by hierarchy.load_hierarchy(), which guarantees that every
    parent_id resolves and that there are no cycles. `order` lists zone ids
    parents-first; iterating the forest yields Zones in that order.
    """

    def __init__(self, zones: dict[int, Zone], order: list[int]):
        self._zones = zones
        self._order = order
        self._children: dict[int, list[int]] = {}
        for zone_id in order:
            parent_id = zones[zone_id].parent_id
            if parent_id is not None:
                self._children.setdefault(parent_id, []).append(zone_id)

    def __len__(self) -> int:
        return len(self._zones)

    def __iter__(self) -> Iterator[Zone]:
        return (self._zones[zone_id] for zone_id in self._order)

    def __contains__(self, zone_id: int) -> bool:
        return zone_id in self._zones

    @property
    def order(self) -> list[int]:
        return list(self._order)

    def get(self, zone_id: int) -> Zone:
        return self._zones[zone_id]

    def parent(self, zone: Zone) -> Zone | None:
        if zone.parent_id is None:
            return None
        return self._zones[zone.parent_id]

    def children(self, zone_id: int) -> list[Zone]:
        return [self._zones[child] for child in self._children.get(zone_id, [])]

    def ancestors(self, zone: Zone) -> list[Zone]:
        """Return the ancestor chain of `zone`, nearest parent first."""
        chain = []
        current = self.parent(zone)
        while current is not None:
            chain.append(current)
            current = self.parent(current)
        return chain

    def roots(self) -> list[Zone]:
        return [zone for zone in self if zone.is_root]
