import json
import logging

import pytest

from mbtiles_extracts.assigner import RegionAssigner, region_key
from mbtiles_extracts.errors import ConfigurationError

from conftest import collection, square


def test_region_key_normalization():
    assert region_key("New York") == "new_york"
    assert region_key("Baden Württemberg") == "baden_württemberg"
    assert region_key(42) == "42"


def test_classify_and_assign(testland):
    assigner = RegionAssigner(testland, "name")
    assert assigner.classify(-45.0, 41.0) == {"name": "Testland"}
    assert assigner.classify(45.0, 41.0) is None
    assert assigner.assign(2, 1, 1) == "testland"
    assert assigner.assign(2, 2, 1) is None
    assert assigner.keys == {"testland"}


def test_assignment_is_stable(testland):
    assigner = RegionAssigner(testland, "name")
    first = [assigner.assign(4, x, y) for x in range(16) for y in range(16)]
    second = [assigner.assign(4, x, y) for x in range(16) for y in range(16)]
    assert first == second
    assert "testland" in first


def test_overlapping_polygons_first_one_wins():
    polys = collection(
        square("West", -100.0, 0.0, 0.0, 60.0),
        square("Overlap", -60.0, 30.0, -30.0, 50.0),
    )
    assigner = RegionAssigner(polys, "name")
    assert assigner.assign(2, 1, 1) == "west"


def test_missing_property_name():
    with pytest.raises(ConfigurationError):
        RegionAssigner(collection(square("A", 0, 0, 1, 1)), "")


def test_property_not_in_collection(testland):
    with pytest.raises(ConfigurationError, match="state"):
        RegionAssigner(testland, "state")


def test_polygon_without_property_value():
    polys = collection(square("A", 0, 0, 10, 10), square(None, 20, 20, 30, 30))
    with pytest.raises(ConfigurationError, match="1 of 2"):
        RegionAssigner(polys, "name")


def test_key_collision_is_merged_and_reported(caplog):
    polys = collection(square("New York", -80, 40, -70, 45), square("new york", 10, 10, 20, 20))
    with caplog.at_level(logging.WARNING, logger="mbtiles_extracts.assigner"):
        assigner = RegionAssigner(polys, "name")
    assert assigner.collisions == {"new_york": ["New York", "new york"]}
    assert assigner.keys == {"new_york"}
    assert "new_york" in caplog.text


def test_reads_geojson_file(tmp_path, testland):
    path = tmp_path / "regions.geojson"
    path.write_text(json.dumps(testland), encoding="utf-8")
    assigner = RegionAssigner(str(path), "name")
    assert assigner.assign(2, 1, 1) == "testland"


def test_missing_polygon_file(tmp_path):
    with pytest.raises(ConfigurationError, match="not found"):
        RegionAssigner(tmp_path / "nope.geojson", "name")
