from __future__ import annotations

from dataclasses import dataclass
from typing import Iterable, List, Optional, Sequence

import numpy as np

from network_topology import LENGTH_EPS, JunctionId, Segment
from segment_field import ControlPoint, ControlPointCache, control_arrays
from vector_utils import unit_rows, unit_vector

CENTER_TOLERANCE = 1e-3


##############################################
#            Control point lookup            #
##############################################

def evaluate_control_points(
    ratios: np.ndarray,
    values: np.ndarray,
    t: np.ndarray | float,
    length: float,
    eps: float = LENGTH_EPS,
) -> np.ndarray:
    """
    Evaluate a piecewise-linear segment field at ratios `t`.

    The bracket is the first pair (t_k, t_k+1) with t_k <= t <= t_k+1. The local slope is taken
    per unit of arc length, so `length` only matters for degenerate brackets. Ratios outside
    the control range take the boundary value.
    """
    ratios = np.asarray(ratios, dtype=float)
    values = np.asarray(values, dtype=float)
    t = np.atleast_1d(np.asarray(t, dtype=float))

    if len(ratios) == 0:
        return np.zeros_like(t)
    if len(ratios) == 1:
        return np.full_like(t, values[0])

    idx = np.searchsorted(ratios, t, side="left")
    k = np.clip(idx - 1, 0, len(ratios) - 2)

    t0, t1 = ratios[k], ratios[k + 1]
    v0, v1 = values[k], values[k + 1]
    dt = t1 - t0

    len_seg = np.maximum(dt * float(length), eps)
    slope = (v1 - v0) / len_seg
    frac = np.where(dt > 0.0, (t - t0) / np.where(dt > 0.0, dt, 1.0), 0.0)
    out = v0 + frac * len_seg * slope

    out = np.where(t < ratios[0], values[0], out)
    out = np.where(t > ratios[-1], values[-1], out)
    return out


def evaluate_segment_field(controls: Sequence[ControlPoint], t: float, length: float) -> float:
    ratios, values = control_arrays(tuple(controls))
    return float(evaluate_control_points(ratios, values, t, length)[0])


##############################################
#              Segment meshes                #
##############################################

def chord_ratios(positions: np.ndarray, segment: Segment) -> np.ndarray:
    """Clamp-projected ratio of each point onto the first-to-last chord of the segment."""
    positions = np.asarray(positions, dtype=float).reshape(-1, 3)
    p0 = segment.polyline[0]
    chord = segment.polyline[-1] - p0
    len_sq = max(float(np.dot(chord, chord)), LENGTH_EPS)
    t = (positions - p0) @ chord / len_sq
    return np.clip(t, 0.0, 1.0)


def evaluate_segment_vertices(
    positions: np.ndarray,
    segment: Segment,
    controls: Sequence[ControlPoint] | ControlPointCache,
) -> np.ndarray:
    """Field value at world-space vertices of a segment mesh."""
    if isinstance(controls, ControlPointCache):
        ratios, values = controls.arrays(segment)
    else:
        ratios, values = control_arrays(tuple(controls))
    t = chord_ratios(positions, segment)
    return evaluate_control_points(ratios, values, t, segment.length)


def evaluate_segment_vertex(
    position: np.ndarray,
    segment: Segment,
    controls: Sequence[ControlPoint] | ControlPointCache,
) -> float:
    return float(evaluate_segment_vertices(np.asarray(position, dtype=float)[None, :], segment, controls)[0])


##############################################
#              Junction meshes               #
##############################################

@dataclass(frozen=True, eq=False)
class JunctionBranch:
    """Linear ramp leaving a junction along one incident segment."""
    segment_id: str
    direction: np.ndarray
    start_value: float
    slope: float


def junction_branches(
    junction_id: JunctionId,
    segments: Iterable[Segment],
    cache: ControlPointCache,
    eps: float = LENGTH_EPS,
) -> List[JunctionBranch]:
    """
    One branch per incident segment, built from the control point pair at the junction's end of the
    segment: the first two controls at a `from` end, the last two at a `to` end. Start value and
    slope always come from the lower-ratio point of the pair, slope per unit of arc length; the
    direction points from the junction-end polyline point to its neighbour.
    """
    branches: List[JunctionBranch] = []
    for seg in segments:
        ratios, values = cache.arrays(seg)
        if len(ratios) < 2:
            continue

        if seg.from_junction == junction_id:
            lo, hi = 0, 1
            origin, toward = seg.polyline[0], seg.polyline[1]
        else:
            lo, hi = len(ratios) - 2, len(ratios) - 1
            origin, toward = seg.polyline[-1], seg.polyline[-2]

        dt = float(ratios[hi] - ratios[lo])
        len_seg = max(dt * seg.length, eps)
        slope = float(values[hi] - values[lo]) / len_seg

        branches.append(JunctionBranch(
            segment_id=seg.id,
            direction=unit_vector(toward - origin),
            start_value=float(values[lo]),
            slope=slope,
        ))
    return branches


def evaluate_junction_vertices(
    positions: np.ndarray,
    center: np.ndarray,
    branches: Sequence[JunctionBranch],
    default_minimum: float = 0.0,
    center_tolerance: float = CENTER_TOLERANCE,
) -> np.ndarray:
    """
    Field value at world-space vertices of a junction mesh.

    Each vertex follows the branch best aligned with its direction from the center (largest
    dot product, first branch on ties). Positive alignment extends the branch ramp by
    distance * dot; otherwise the branch start value is used as is.
    """
    positions = np.asarray(positions, dtype=float).reshape(-1, 3)
    out = np.full(len(positions), float(default_minimum))
    if not branches or len(positions) == 0:
        return out

    dirs, dist = unit_rows(positions - np.asarray(center, dtype=float))

    branch_dirs = np.vstack([b.direction for b in branches])
    starts = np.array([b.start_value for b in branches], dtype=float)
    slopes = np.array([b.slope for b in branches], dtype=float)

    dots = dirs @ branch_dirs.T
    best = np.argmax(dots, axis=1)
    best_dot = dots[np.arange(len(positions)), best]

    ramp = np.where(best_dot > 0.0, dist * best_dot * slopes[best], 0.0)
    out = starts[best] + ramp
    out[dist <= center_tolerance] = branches[0].start_value
    return out


def evaluate_junction_vertex(
    position: np.ndarray,
    junction_id: JunctionId,
    center: np.ndarray,
    incident_segments: Iterable[Segment],
    cache: ControlPointCache,
    default_minimum: float = 0.0,
) -> float:
    branches = junction_branches(junction_id, incident_segments, cache)
    values = evaluate_junction_vertices(
        np.asarray(position, dtype=float)[None, :], center, branches, default_minimum
    )
    return float(values[0])


##############################################
#                 Transforms                 #
##############################################

def apply_world_transform(positions: np.ndarray, matrix: Optional[np.ndarray]) -> np.ndarray:
    """Map local mesh positions through a 4x4 homogeneous world matrix (None = identity)."""
    positions = np.asarray(positions, dtype=float).reshape(-1, 3)
    if matrix is None:
        return positions
    matrix = np.asarray(matrix, dtype=float)
    if matrix.shape != (4, 4):
        raise ValueError(f"World matrix must be 4x4, got shape {matrix.shape}")

    homogeneous = np.hstack((positions, np.ones((len(positions), 1))))
    mapped = homogeneous @ matrix.T
    w = mapped[:, 3:4]
    w = np.where(np.abs(w) > 0.0, w, 1.0)
    return mapped[:, :3] / w

