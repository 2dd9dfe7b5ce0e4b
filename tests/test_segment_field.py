import pytest

from conftest import segment_reading
from segment_field import ControlPoint, ControlPointCache, build_control_points, control_arrays


def test_worked_example_control_points(line_topology):
    seg = line_topology.segments["AB"]
    controls = build_control_points(seg, {"A": 10.0, "B": 30.0}, [segment_reading("AB", 20.0, 0.5)])
    assert controls == (ControlPoint(0.0, 10.0), ControlPoint(0.5, 20.0), ControlPoint(1.0, 30.0))


def test_readings_on_other_segments_are_ignored(line_topology):
    seg = line_topology.segments["AB"]
    controls = build_control_points(seg, {"A": 1.0, "B": 2.0}, [segment_reading("XY", 5.0, 0.5)])
    assert [c.value for c in controls] == [1.0, 2.0]


def test_missing_junction_values_use_default(line_topology):
    seg = line_topology.segments["AB"]
    controls = build_control_points(seg, {}, [], default_minimum=3.0)
    assert controls == (ControlPoint(0.0, 3.0), ControlPoint(1.0, 3.0))


def test_ratios_are_clamped_and_sort_is_stable(line_topology):
    seg = line_topology.segments["AB"]
    readings = [
        segment_reading("AB", 5.0, 0.4, sensor_id="first"),
        segment_reading("AB", 6.0, 0.4, sensor_id="second"),
        segment_reading("AB", 7.0, 1.5),
        segment_reading("AB", 8.0, -0.2),
    ]
    controls = build_control_points(seg, {"A": 0.0, "B": 1.0}, readings)

    ratios, values = control_arrays(controls)
    assert list(ratios) == [0.0, 0.0, 0.4, 0.4, 1.0, 1.0]
    assert list(values) == [0.0, 8.0, 5.0, 6.0, 7.0, 1.0]


def test_cache_memoizes_per_segment(line_topology):
    seg = line_topology.segments["AB"]
    cache = ControlPointCache({"A": 10.0, "B": 30.0}, [segment_reading("AB", 20.0, 0.5)])

    assert "AB" not in cache
    first = cache.get(seg)
    assert cache.get(seg) is first
    assert cache.arrays(seg) is cache.arrays(seg)
    assert "AB" in cache
    assert len(cache) == 1
    assert cache.snapshot() == {"AB": first}
    assert [r.value for r in cache.readings_for("AB")] == [20.0]
    assert cache.readings_for("ZZ") == ()


def test_cache_default_minimum(line_topology):
    cache = ControlPointCache({}, [], default_minimum=4.0)
    ratios, values = cache.arrays(line_topology.segments["AB"])
    assert list(values) == [4.0, 4.0]
    assert pytest.approx(list(ratios)) == [0.0, 1.0]
