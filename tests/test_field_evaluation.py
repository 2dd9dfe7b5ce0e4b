import numpy as np
import pytest

from conftest import segment_reading
from field_evaluation import (
    apply_world_transform,
    chord_ratios,
    evaluate_control_points,
    evaluate_junction_vertex,
    evaluate_junction_vertices,
    evaluate_segment_field,
    evaluate_segment_vertex,
    evaluate_segment_vertices,
    JunctionBranch,
    junction_branches,
)
from segment_field import ControlPoint, ControlPointCache

WORKED = (ControlPoint(0.0, 10.0), ControlPoint(0.5, 20.0), ControlPoint(1.0, 30.0))


@pytest.mark.parametrize("t, expected", [(0.0, 10.0), (0.25, 15.0), (0.5, 20.0), (0.75, 25.0), (1.0, 30.0)])
def test_worked_example(t, expected):
    assert evaluate_segment_field(WORKED, t, length=10.0) == pytest.approx(expected)


def test_no_readings_is_linear_blend():
    v_start, v_end = 4.0, -6.0
    t = np.linspace(0.0, 1.0, 21)
    out = evaluate_control_points([0.0, 1.0], [v_start, v_end], t, length=7.3)
    np.testing.assert_allclose(out, (1 - t) * v_start + t * v_end, atol=1e-12)


def test_continuous_at_interior_control():
    controls = (ControlPoint(0.0, 0.0), ControlPoint(0.3, 9.0), ControlPoint(1.0, 2.0))
    left = evaluate_segment_field(controls, 0.3 - 1e-9, length=4.0)
    right = evaluate_segment_field(controls, 0.3 + 1e-9, length=4.0)
    at = evaluate_segment_field(controls, 0.3, length=4.0)
    assert left == pytest.approx(9.0, abs=1e-6)
    assert right == pytest.approx(9.0, abs=1e-6)
    assert at == pytest.approx(9.0)


def test_outside_control_range_uses_boundary_values():
    out = evaluate_control_points([0.2, 0.8], [1.0, 3.0], [0.0, 0.1, 0.9, 1.0], length=1.0)
    np.testing.assert_allclose(out, [1.0, 1.0, 3.0, 3.0])


def test_degenerate_inputs():
    np.testing.assert_array_equal(evaluate_control_points([], [], [0.5], 1.0), [0.0])
    np.testing.assert_array_equal(evaluate_control_points([0.5], [7.0], [0.1, 0.9], 1.0), [7.0, 7.0])


def test_segment_vertices_project_onto_chord(line_topology):
    seg = line_topology.segments["AB"]
    positions = np.array([[-4, 1, 0], [2.5, 3, 0], [7.5, -3, 0], [14, 0, 0]], dtype=float)
    np.testing.assert_allclose(chord_ratios(positions, seg), [0.0, 0.25, 0.75, 1.0])
    np.testing.assert_allclose(evaluate_segment_vertices(positions, seg, WORKED), [10.0, 15.0, 25.0, 30.0])


def test_segment_vertex_uses_cache(line_topology):
    seg = line_topology.segments["AB"]
    cache = ControlPointCache({"A": 10.0, "B": 30.0}, [segment_reading("AB", 20.0, 0.5)])
    assert evaluate_segment_vertex(np.array([2.5, 0, 0]), seg, cache) == pytest.approx(15.0)
    assert "AB" in cache


@pytest.fixture
def cross_cache():
    return ControlPointCache({"C": 10.0, "E": 30.0, "W": 0.0}, [])


def test_branches_use_the_control_pair_at_each_end(cross_topology, cross_cache):
    branches = junction_branches("C", cross_topology.incident_segments("C"), cross_cache)
    east, west = branches

    assert east.segment_id == "CE"
    np.testing.assert_allclose(east.direction, [1, 0, 0])
    assert east.start_value == 10.0
    assert east.slope == pytest.approx(2.0)

    # C is the `to` end of WC: start and slope come from the lower-ratio control of the last pair
    assert west.segment_id == "WC"
    np.testing.assert_allclose(west.direction, [-1, 0, 0])
    assert west.start_value == 0.0
    assert west.slope == pytest.approx(1.0)


def test_to_end_branch_with_interior_reading(cross_topology):
    wc = cross_topology.segments["WC"]
    cache = ControlPointCache({"W": 0.0, "C": 10.0}, [segment_reading("WC", 2.0, 0.5)])

    (branch,) = junction_branches("C", [wc], cache)
    assert branch.start_value == 2.0
    assert branch.slope == pytest.approx(1.6)

    value = evaluate_junction_vertex(np.array([-1.0, 0.0, 0.0]), "C", np.zeros(3), [wc], cache)
    assert value == pytest.approx(3.6)


def test_junction_mesh_vertices(cross_topology, cross_cache):
    center = cross_topology.junction_position("C")
    branches = junction_branches("C", cross_topology.incident_segments("C"), cross_cache)
    positions = np.array([[2, 0, 0], [-3, 0, 0], [0, 0, 0], [0, 5, 0]], dtype=float)

    out = evaluate_junction_vertices(positions, center, branches)

    ce = cross_topology.segments["CE"]
    assert out[0] == pytest.approx(evaluate_segment_vertex(positions[0], ce, cross_cache))
    assert out[1] == pytest.approx(3.0)
    # center vertex, and a vertex perpendicular to every branch
    assert out[2] == 10.0
    assert out[3] == 10.0


def test_best_aligned_branch_ties_and_non_positive_dots():
    branches = [
        JunctionBranch("a", np.array([1.0, 0.0, 0.0]), start_value=5.0, slope=1.0),
        JunctionBranch("b", np.array([0.0, 1.0, 0.0]), start_value=9.0, slope=2.0),
    ]
    positions = np.array([
        [1.0, 1.0, 0.0],    # equally aligned with both: first branch
        [-1.0, -1.0, 0.0],  # every dot negative, tie: first branch, start value
        [-2.0, 0.0, 0.0],   # best dot is 0 (branch b): start value only
        [0.0, 3.0, 0.0],    # along b
    ])

    out = evaluate_junction_vertices(positions, np.zeros(3), branches, default_minimum=-1.0)

    assert out[0] == pytest.approx(6.0)
    assert out[1] == 5.0
    assert out[2] == 9.0
    assert out[3] == pytest.approx(15.0)


def test_junction_without_branches_uses_default():
    out = evaluate_junction_vertices(np.ones((3, 3)), np.zeros(3), [], default_minimum=2.5)
    np.testing.assert_array_equal(out, [2.5, 2.5, 2.5])


def test_single_junction_vertex(cross_topology, cross_cache):
    value = evaluate_junction_vertex(
        np.array([1.0, 0.0, 0.0]),
        "C",
        cross_topology.junction_position("C"),
        cross_topology.incident_segments("C"),
        cross_cache,
    )
    assert value == pytest.approx(12.0)


def test_world_transform():
    positions = np.array([[0, 0, 0], [1, 2, 3]], dtype=float)
    translate = np.eye(4)
    translate[:3, 3] = [10, 20, 30]

    np.testing.assert_allclose(apply_world_transform(positions, translate), [[10, 20, 30], [11, 22, 33]])
    np.testing.assert_array_equal(apply_world_transform(positions, None), positions)

    scale_w = np.eye(4)
    scale_w[3, 3] = 2.0
    np.testing.assert_allclose(apply_world_transform(positions, scale_w), positions / 2.0)

    with pytest.raises(ValueError):
        apply_world_transform(positions, np.eye(3))
