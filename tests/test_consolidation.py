import pytest
import shapely
from shapely.errors import GEOSException
from shapely.geometry import GeometryCollection, LineString, MultiPolygon, Point, Polygon

from conftest import make_zone, square
from cosmogony2regions.consolidation import (
    Fragment,
    GroupTask,
    InseeOrNamePolicy,
    ZoneIdPolicy,
    as_multipolygon,
    consolidate,
    consolidate_group,
    get_policy,
    normalise_name,
    representative_point,
)
from cosmogony2regions.errors import MalformedInput
from cosmogony2regions.hierarchy import load_hierarchy

# U-shaped commune: the centroid of the outline falls in the notch.
U_SHAPE = Polygon([(0, 45), (3, 45), (3, 48), (2, 48), (2, 46), (1, 46), (1, 48), (0, 48)])


def _task(*boundaries, coords=None, areas=None):
    coords = coords or [None] * len(boundaries)
    areas = areas or [b.area if b is not None else 0.0 for b in boundaries]
    fragments = tuple(
        Fragment(zone_id=index, boundary=boundary, coord=coord, area=area)
        for index, (boundary, coord, area) in enumerate(zip(boundaries, coords, areas), start=1)
    )
    return GroupTask(key="8|name:test", parent_key=None, level=8, fragments=fragments)


# ─── Geometry ─────────────────────────────────────────────────────────────────

def test_as_multipolygon_drops_non_polygonal_parts():
    mixed = GeometryCollection([square(0, 45), LineString([(5, 45), (6, 46)]), Point(9, 45)])

    result = as_multipolygon(mixed)

    assert isinstance(result, MultiPolygon)
    assert len(result.geoms) == 1
    assert as_multipolygon(LineString([(0, 0), (1, 1)])) is None
    assert as_multipolygon(None) is None


def test_edge_sharing_fragments_merge_into_one_polygon():
    group = consolidate_group(_task(square(0, 45), square(1, 45)))

    assert isinstance(group.boundary, MultiPolygon)
    assert len(group.boundary.geoms) == 1
    assert group.boundary.area == pytest.approx(2.0)


def test_disjoint_fragments_stay_separate_parts():
    group = consolidate_group(_task(square(0, 45), square(5, 45)))
    assert len(group.boundary.geoms) == 2


@pytest.mark.parametrize("boundaries", [
    [square(0, 45)],
    [square(0, 45), square(0.5, 45.5)],
    [square(0, 45, 2), square(10, 45, 0.5), square(20, 45, 0.1)],
    [U_SHAPE, square(1, 47)],
    [MultiPolygon([square(0, 45), square(3, 45)]), square(6, 45)],
])
def test_union_covers_every_fragment_and_contains_its_point(boundaries):
    group = consolidate_group(_task(*boundaries))

    assert group.area >= max(boundary.area for boundary in boundaries) - 1e-9
    for boundary in boundaries:
        assert group.boundary.buffer(1e-9).covers(boundary)
    assert group.boundary.contains(group.coord)


def test_point_of_concave_region_is_inside():
    assert not U_SHAPE.contains(U_SHAPE.centroid)

    group = consolidate_group(_task(U_SHAPE))

    assert group.boundary.contains(group.coord)


def test_point_falls_back_to_centroid_of_largest_part():
    # Union centroid lies between the two squares, outside both.
    group = consolidate_group(_task(square(0, 45, 2), square(10, 45, 1)))
    assert group.coord.equals(Point(1, 46))


def test_label_point_of_largest_fragment_wins():
    label_small = Point(10.5, 45.5)
    label_large = Point(0.25, 45.25)
    task = _task(
        square(10, 45, 1), square(0, 45, 2),
        coords=[label_small, label_large],
    )

    assert consolidate_group(task).coord.equals(label_large)


def test_representative_point_without_boundary_is_none():
    assert representative_point(None, ()) is None


def test_empty_fragment_is_skipped_with_warning():
    group = consolidate_group(_task(square(0, 45), Polygon()))

    assert group.boundary.area == pytest.approx(1.0)
    assert [(w.kind, w.zone_id) for w in group.warnings] == [("empty_geometry", 2)]


def test_group_without_any_boundary_warns():
    group = consolidate_group(_task(None))

    assert group.boundary is None
    assert group.coord is None
    assert group.area == 0.0
    assert {w.kind for w in group.warnings} == {"empty_geometry", "no_boundary"}


# ─── Keys ─────────────────────────────────────────────────────────────────────

def test_normalise_name_ignores_case_and_spacing():
    assert normalise_name("  Saint  Denis ") == normalise_name("saint denis")


def test_insee_or_name_key_folds_in_parent_key():
    policy = InseeOrNamePolicy()
    parent_key = policy.key(make_zone(1, 4, "Bretagne"), None)

    with_insee = policy.key(make_zone(2, 8, "Rennes", parent_id=1, insee="35238"), parent_key)
    by_name = policy.key(make_zone(3, 8, "Rennes", parent_id=1), parent_key)
    unnamed = policy.key(make_zone(4, 8, "", parent_id=1), parent_key)

    assert parent_key == "4|name:bretagne"
    assert with_insee == "8|insee:35238<4|name:bretagne"
    assert by_name == "8|name:rennes<4|name:bretagne"
    assert unnamed == "8|zone:4<4|name:bretagne"


def test_unknown_policy_is_rejected():
    with pytest.raises(ValueError, match="Unknown consolidation policy"):
        get_policy("by-colour")


# ─── consolidate() ────────────────────────────────────────────────────────────

def _split_commune_forest():
    return load_hierarchy([
        make_zone(1, 4, "Vendée", boundary=square(0, 45, 5)),
        make_zone(2, 8, "Île-d'Yeu", parent_id=1, insee="85113", boundary=square(0, 45)),
        make_zone(3, 8, "", parent_id=1, insee="85113", boundary=square(3, 45, 0.2)),
        make_zone(4, 8, "Noirmoutier", parent_id=1, boundary=square(1, 46)),
        make_zone(5, 10, "Port-Joinville", parent_id=2, boundary=square(0, 45, 0.3)),
    ])


def test_fragments_sharing_a_key_are_merged():
    forest = _split_commune_forest()

    groups = consolidate(forest)

    assert [group.zone_ids for group in groups] == [(1,), (2, 3), (5,), (4,)]
    commune = groups[1]
    assert len(commune.boundary.geoms) == 2
    assert commune.fragment_areas[0] > commune.fragment_areas[1] > 0
    assert groups[2].parent_key == commune.key


def test_zone_id_policy_never_merges():
    groups = consolidate(_split_commune_forest(), policy=ZoneIdPolicy())
    assert [group.zone_ids for group in groups] == [(1,), (2,), (5,), (3,), (4,)]


def test_split_parents_give_children_one_parent_key():
    forest = load_hierarchy([
        make_zone(1, 8, "Commune", insee="100", boundary=square(0, 45)),
        make_zone(2, 8, "", insee="100", boundary=square(5, 45)),
        make_zone(3, 10, "Quartier", parent_id=1, boundary=square(0, 45, 0.5)),
        make_zone(4, 10, "Quartier", parent_id=2, boundary=square(5, 45, 0.5)),
    ])

    groups = consolidate(forest)

    assert [group.zone_ids for group in groups] == [(1, 2), (3, 4)]


def test_zone_type_filter_keeps_only_selected_types():
    forest = load_hierarchy([
        make_zone(1, 2, "France", zone_type="country", boundary=square(0, 40, 10)),
        make_zone(2, 8, "Paris", parent_id=1, zone_type="city", boundary=square(2, 48)),
        make_zone(3, 8, "Lyon", parent_id=1, zone_type="city", boundary=square(4, 45)),
    ])

    groups = consolidate(forest, zone_types={"city"})

    assert [group.zone_ids for group in groups] == [(2,), (3,)]
    assert all(group.parent_key == "2|name:france" for group in groups)


def test_invalid_boundary_is_repaired_before_union():
    bow_tie = Polygon([(0, 45), (1, 46), (1, 45), (0, 46)])
    forest = load_hierarchy([make_zone(1, 8, "Bow tie", boundary=bow_tie)])

    [group] = consolidate(forest)

    assert group.boundary.is_valid
    assert group.boundary.area == pytest.approx(0.5)


def test_parallel_and_serial_runs_agree():
    zones = [make_zone(1, 2, "Pays", boundary=square(0, 40, 10))]
    for zone_id in range(2, 40):
        zones.append(make_zone(
            zone_id, 8, f"Commune {zone_id // 2}", parent_id=1,
            boundary=square(zone_id % 10, 40 + zone_id // 10, 0.5),
        ))
    forest = load_hierarchy(zones)

    serial = consolidate(forest, workers=1)
    parallel = consolidate(forest, workers=2)

    assert [g.key for g in parallel] == [g.key for g in serial]
    assert [g.zone_ids for g in parallel] == [g.zone_ids for g in serial]
    for left, right in zip(serial, parallel):
        assert left.boundary.equals(right.boundary)
        assert left.coord.equals(right.coord)


def test_geos_failure_during_union_is_malformed_input(monkeypatch):
    def failing_union(parts):
        raise GEOSException("TopologyException: side location conflict")

    monkeypatch.setattr(shapely, "union_all", failing_union)

    with pytest.raises(MalformedInput, match=r"Cannot merge boundaries of group 8\|name:test \(zones \[1, 2\]\)"):
        consolidate_group(_task(square(0, 45), square(1, 45)))
