from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Dict, Iterable, List, Mapping, Tuple

import numpy as np

from network_topology import JunctionId, Segment, SegmentId
from sensor_projection import Reading, UNPROJECTABLE_RATIO, is_finite_number

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ControlPoint:
    ratio: float
    value: float


ControlPoints = Tuple[ControlPoint, ...]


def build_control_points(
    segment: Segment,
    junction_values: Mapping[JunctionId, float],
    readings: Iterable[Reading],
    default_minimum: float = 0.0,
) -> ControlPoints:
    """
    Piecewise-linear field of one segment: the `from` junction value at 0, every reading on the
    segment at its (clamped) ratio, the `to` junction value at 1, stably sorted by ratio.
    """
    v_start = junction_values.get(segment.from_junction, default_minimum)
    v_end = junction_values.get(segment.to_junction, default_minimum)

    controls: List[ControlPoint] = [ControlPoint(0.0, float(v_start))]
    for r in readings:
        if not r.parent.is_segment or r.parent.id != segment.id:
            continue
        if not is_finite_number(r.value):
            continue
        t = float(r.ratio) if is_finite_number(r.ratio) else UNPROJECTABLE_RATIO
        controls.append(ControlPoint(min(max(t, 0.0), 1.0), float(r.value)))
    controls.append(ControlPoint(1.0, float(v_end)))

    # sorted() is stable: equal ratios keep insertion order
    return tuple(sorted(controls, key=lambda c: c.ratio))


def control_arrays(controls: ControlPoints) -> Tuple[np.ndarray, np.ndarray]:
    ratios = np.fromiter((c.ratio for c in controls), dtype=float, count=len(controls))
    values = np.fromiter((c.value for c in controls), dtype=float, count=len(controls))
    return ratios, values


class ControlPointCache:
    """
    Per-solve memo of segment control points.

    Create one per solve, hand it to the evaluators, drop it when the solve ends.
    """

    def __init__(
        self,
        junction_values: Mapping[JunctionId, float],
        readings: Iterable[Reading],
        default_minimum: float = 0.0,
    ):
        self.junction_values = junction_values
        self.default_minimum = float(default_minimum)
        self._readings_by_segment: Dict[SegmentId, List[Reading]] = {}
        for r in readings:
            if r.parent.is_segment:
                self._readings_by_segment.setdefault(r.parent.id, []).append(r)
        self._controls: Dict[SegmentId, ControlPoints] = {}
        self._arrays: Dict[SegmentId, Tuple[np.ndarray, np.ndarray]] = {}

    def get(self, segment: Segment) -> ControlPoints:
        controls = self._controls.get(segment.id)
        if controls is None:
            controls = build_control_points(
                segment,
                self.junction_values,
                self._readings_by_segment.get(segment.id, ()),
                self.default_minimum,
            )
            self._controls[segment.id] = controls
        return controls

    def arrays(self, segment: Segment) -> Tuple[np.ndarray, np.ndarray]:
        arrays = self._arrays.get(segment.id)
        if arrays is None:
            arrays = control_arrays(self.get(segment))
            self._arrays[segment.id] = arrays
        return arrays

    def readings_for(self, segment_id: SegmentId) -> Tuple[Reading, ...]:
        return tuple(self._readings_by_segment.get(segment_id, ()))

    def snapshot(self) -> Dict[SegmentId, ControlPoints]:
        return dict(self._controls)

    def __contains__(self, segment_id: SegmentId) -> bool:
        return segment_id in self._controls

    def __len__(self) -> int:
        return len(self._controls)
