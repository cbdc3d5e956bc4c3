"""
hierarchy.py — Materialise and validate the full zone forest.

Validation order:
  1. duplicate ids                  → MalformedInput
  2. dangling parent references     → StructuralError
  3. cycles (visited-set walk)      → StructuralError
  4. child level <= parent level    → ResolutionWarning (StructuralError when strict)

Nothing is returned unless every check passes.
"""

import logging
from typing import Iterable

from .errors import MalformedInput, ResolutionWarning, StructuralError
from .zones import Zone, ZoneForest

logger = logging.getLogger(__name__)

_UNVISITED, _IN_PATH, _DONE = 0, 1, 2


def _index_zones(zones: Iterable[Zone]) -> tuple[dict[int, Zone], list[int]]:
    by_id: dict[int, Zone] = {}
    input_order: list[int] = []
    for zone in zones:
        if zone.id in by_id:
            raise MalformedInput(f"Duplicate zone id {zone.id} (osm_id={zone.osm_id!r})")
        by_id[zone.id] = zone
        input_order.append(zone.id)
    return by_id, input_order


def _check_dangling(by_id: dict[int, Zone], input_order: list[int]) -> None:
    dangling = [
        zone_id for zone_id in input_order
        if by_id[zone_id].parent_id is not None and by_id[zone_id].parent_id not in by_id
    ]
    if dangling:
        sample = ", ".join(
            f"{zone_id}→{by_id[zone_id].parent_id}" for zone_id in dangling[:10]
        )
        raise StructuralError(
            f"{len(dangling)} zone(s) reference a missing parent (zone→parent: {sample})"
        )


def _check_cycles(by_id: dict[int, Zone], input_order: list[int]) -> None:
    """
    Walk up the parent chain from every zone. A zone met twice on the same
    walk closes a cycle; zones already proven acyclic end the walk early, so
    each zone is visited a bounded number of times overall.
    """
    state = dict.fromkeys(input_order, _UNVISITED)
    for start in input_order:
        if state[start] == _DONE:
            continue
        path: list[int] = []
        current = start
        while current is not None and state[current] != _DONE:
            if state[current] == _IN_PATH:
                cycle = path[path.index(current):]
                members = " → ".join(str(zone_id) for zone_id in cycle + [current])
                raise StructuralError(f"Cyclic zone hierarchy: {members}")
            state[current] = _IN_PATH
            path.append(current)
            current = by_id[current].parent_id
        for zone_id in path:
            state[zone_id] = _DONE


def _topological_order(by_id: dict[int, Zone], input_order: list[int]) -> list[int]:
    """Roots in input order, then depth-first pre-order, children in input order."""
    children: dict[int, list[int]] = {}
    roots: list[int] = []
    for zone_id in input_order:
        parent_id = by_id[zone_id].parent_id
        if parent_id is None:
            roots.append(zone_id)
        else:
            children.setdefault(parent_id, []).append(zone_id)

    order: list[int] = []
    stack = list(reversed(roots))
    while stack:
        zone_id = stack.pop()
        order.append(zone_id)
        stack.extend(reversed(children.get(zone_id, [])))
    return order


def _check_levels(
    by_id: dict[int, Zone],
    order: list[int],
    strict: bool,
) -> list[ResolutionWarning]:
    warnings = []
    for zone_id in order:
        zone = by_id[zone_id]
        if zone.parent_id is None:
            continue
        parent = by_id[zone.parent_id]
        if zone.level > parent.level:
            continue
        message = (
            f"level {zone.level} is not deeper than parent {parent.id} level {parent.level}"
        )
        if strict:
            raise StructuralError(f"Zone {zone.id}: {message}")
        warnings.append(ResolutionWarning(kind="level_order", message=message, zone_id=zone.id))
    return warnings


def load_hierarchy(
    zones: Iterable[Zone],
    strict_levels: bool = False,
    warnings: list[ResolutionWarning] | None = None,
) -> ZoneForest:
    """
    Build the validated ZoneForest from decoded zones.

    Args:
        zones:         Decoded zones in input order (the source is only read)
        strict_levels: Treat level-order violations as fatal StructuralErrors
        warnings:      Optional list; recoverable findings are appended to it

    Returns:
        ZoneForest with a parents-before-children iteration order.
    """
    by_id, input_order = _index_zones(zones)
    _check_dangling(by_id, input_order)
    _check_cycles(by_id, input_order)

    order = _topological_order(by_id, input_order)
    if len(order) != len(by_id):
        # Unreachable once dangling references and cycles are rejected.
        raise StructuralError(
            f"Hierarchy traversal reached {len(order)} of {len(by_id)} zones"
        )

    level_warnings = _check_levels(by_id, order, strict_levels)
    for warning in level_warnings:
        logger.warning("Zone %s: %s", warning.zone_id, warning.message)
    if warnings is not None:
        warnings.extend(level_warnings)

    forest = ZoneForest(by_id, order)
    logger.info(
        "Hierarchy loaded: %d zones, %d roots", len(forest), sum(1 for _ in forest.roots())
    )
    return forest
