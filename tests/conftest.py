import numpy as np
import pytest

from network_topology import Junction, NetworkTopology, Segment
from sensor_projection import ParentRef, Reading


def make_segment(sid, a, b, topology_points):
    return Segment(sid, a, b, np.vstack([topology_points[a], topology_points[b]]))


@pytest.fixture
def line_topology():
    """A=(0,0,0) --AB-- B=(10,0,0)"""
    points = {"A": [0, 0, 0], "B": [10, 0, 0]}
    junctions = [Junction(jid, p) for jid, p in points.items()]
    return NetworkTopology(junctions, [make_segment("AB", "A", "B", points)])


@pytest.fixture
def path_topology():
    """A --AB-- B --BC-- C with unit spacing along x."""
    points = {"A": [0, 0, 0], "B": [1, 0, 0], "C": [2, 0, 0]}
    junctions = [Junction(jid, p) for jid, p in points.items()]
    segments = [make_segment("AB", "A", "B", points), make_segment("BC", "B", "C", points)]
    return NetworkTopology(junctions, segments)


@pytest.fixture
def cross_topology():
    """C at the origin, C -> E along +x and W -> C coming in from -x."""
    points = {"C": [0, 0, 0], "E": [10, 0, 0], "W": [-10, 0, 0]}
    junctions = [Junction(jid, p) for jid, p in points.items()]
    segments = [make_segment("CE", "C", "E", points), make_segment("WC", "W", "C", points)]
    return NetworkTopology(junctions, segments)


def junction_reading(jid, value, sensor_id=None):
    return Reading(sensor_id or f"s-{jid}", ParentRef.junction(jid), float(value), np.zeros(3))


def segment_reading(sid, value, ratio, sensor_id=None):
    return Reading(sensor_id or f"s-{sid}-{ratio}", ParentRef.segment(sid), float(value), np.zeros(3), ratio)
