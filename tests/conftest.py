"""Pytest configuration and fixtures."""

import pytest
from hypothesis import strategies as st
from shapely.geometry import LineString

from tilelines.types import Feature, MergeConfig


def make_feature(feature_id, coords, **tags):
    """Line feature with the given coordinates and tags."""
    return Feature(id=feature_id, geometry=LineString(coords), tags=tags)


def ids_of(feature, id_key="osm_way_ids"):
    """Source ids a result feature stands for."""
    if id_key in feature.tags:
        return {int(i) for i in feature.tags[id_key].split(",")}
    return {feature.id}


@pytest.fixture
def no_clip_config():
    """Config that neither clips nor drops short lines."""
    return MergeConfig(buffer=-1, min_length=0, tolerance=0.0625)


@pytest.fixture
def connected_pair():
    """Two cycleways sharing an endpoint."""
    return [
        make_feature(5, [(10, 10), (20, 10)], highway="cycleway"),
        make_feature(9, [(20, 10), (30, 20)], highway="cycleway"),
    ]


@pytest.fixture
def triangle():
    """Three paths forming a closed triangle."""
    return [
        make_feature(1, [(50, 50), (60, 50)], highway="path"),
        make_feature(2, [(60, 50), (55, 58)], highway="path"),
        make_feature(3, [(55, 58), (50, 50)], highway="path"),
    ]


@pytest.fixture
def tile_network():
    """Mixed network of one tile: a T junction, a ring, a duplicate and a line off the tile."""
    return [
        make_feature(1, [(10, 10), (30, 10)], highway="residential"),
        make_feature(2, [(30, 10), (50, 10)], highway="residential"),
        make_feature(3, [(50, 10), (50, 40)], highway="residential"),
        make_feature(4, [(30, 10), (30, 40)], highway="residential"),
        make_feature(5, [(100, 100), (120, 100)], highway="cycleway"),
        make_feature(6, [(120, 100), (110, 115)], highway="cycleway"),
        make_feature(7, [(110, 115), (100, 100)], highway="cycleway"),
        make_feature(8, [(200, 200), (220, 205), (240, 200)], highway="path"),
        make_feature(9, [(240, 200), (220, 205), (200, 200)], highway="path"),
        make_feature(10, [(300, 10), (320, 10)], highway="residential"),
        make_feature(11, [(250, 120), (270, 120), (270, 140), (250, 140)], highway="service"),
    ]


# Hypothesis strategies for property-based testing
grid_coordinate = st.integers(min_value=-20, max_value=276)


@st.composite
def tile_linestring_coords(draw):
    """Strategy for line coordinates on an integer grid around the tile."""
    coords = draw(st.lists(st.tuples(grid_coordinate, grid_coordinate), min_size=2, max_size=6))
    deduped = [coords[0]]
    for point in coords[1:]:
        if point != deduped[-1]:
            deduped.append(point)
    if len(deduped) < 2:
        deduped = [(0, 0), (1, 1)]
    return [(float(x), float(y)) for x, y in deduped]


@st.composite
def tile_features(draw, min_size=1, max_size=12):
    """Strategy for a batch of line features with a few shared tag sets."""
    count = draw(st.integers(min_value=min_size, max_value=max_size))
    features = []
    for feature_id in range(1, count + 1):
        coords = draw(tile_linestring_coords())
        highway = draw(st.sampled_from(["residential", "cycleway", "path"]))
        features.append(make_feature(feature_id, coords, highway=highway))
    return features
