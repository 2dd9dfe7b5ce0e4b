from __future__ import annotations

import logging
import math
import time
from dataclasses import dataclass, replace
from enum import Enum
from typing import Iterable, List, Mapping, Optional

import numpy as np
from scipy.spatial import KDTree

from network_topology import LENGTH_EPS, NetworkTopology, as_point

logger = logging.getLogger(__name__)

UNPROJECTABLE_RATIO = 0.5


class ParentKind(Enum):
    JUNCTION = "junction"
    SEGMENT = "segment"


@dataclass(frozen=True)
class ParentRef:
    """What a reading is attached to. Resolved once when readings are built."""
    kind: ParentKind
    id: str

    @classmethod
    def junction(cls, junction_id: str) -> "ParentRef":
        return cls(ParentKind.JUNCTION, junction_id)

    @classmethod
    def segment(cls, segment_id: str) -> "ParentRef":
        return cls(ParentKind.SEGMENT, segment_id)

    @property
    def is_junction(self) -> bool:
        return self.kind is ParentKind.JUNCTION

    @property
    def is_segment(self) -> bool:
        return self.kind is ParentKind.SEGMENT


@dataclass(frozen=True, eq=False)
class Reading:
    sensor_id: str
    parent: ParentRef
    value: float
    position: np.ndarray
    ratio: Optional[float] = None


def is_finite_number(value) -> bool:
    try:
        return value is not None and math.isfinite(float(value))
    except (TypeError, ValueError):
        return False


def project_ratio(point: np.ndarray, polyline: np.ndarray) -> float:
    """
    Arc-length ratio in [0, 1] of the orthogonal projection of `point` onto `polyline`.

    Pieces are visited from the `from` end; the first piece whose projection lands strictly
    inside it wins. When no piece does, the candidate from the last piece is returned.
    """
    pts = np.asarray(polyline, dtype=float).reshape(-1, 3)
    if len(pts) < 2:
        return UNPROJECTABLE_RATIO

    piece_vectors = np.diff(pts, axis=0)
    piece_lengths = np.linalg.norm(piece_vectors, axis=1)
    total_length = float(piece_lengths.sum())
    if total_length < LENGTH_EPS:
        return UNPROJECTABLE_RATIO

    target = as_point(point)
    accumulated = 0.0
    best = 0.0
    for a, ab, piece_length in zip(pts[:-1], piece_vectors, piece_lengths):
        len_sq = max(float(np.dot(ab, ab)), LENGTH_EPS)
        t_local = float(np.dot(target - a, ab)) / len_sq
        t_local = min(max(t_local, 0.0), 1.0)
        best = (accumulated + t_local * float(piece_length)) / total_length
        if 0.0 < t_local < 1.0:
            break
        accumulated += float(piece_length)

    return min(max(best, 0.0), 1.0)


def resolve_reading_ratio(reading: Reading, topology: NetworkTopology) -> Reading:
    """Fill in the ratio of a segment reading; junction readings pass through untouched."""
    if not reading.parent.is_segment:
        return reading
    if is_finite_number(reading.ratio):
        return reading
    segment = topology.segments.get(reading.parent.id)
    if segment is None:
        return replace(reading, ratio=UNPROJECTABLE_RATIO)
    return replace(reading, ratio=project_ratio(reading.position, segment.polyline))


def build_readings(
    topology: NetworkTopology,
    stations: Iterable,
    snapshot: Mapping[str, float],
    anchor_unattached: bool = False,
) -> List[Reading]:
    """
    Turn a station registry plus a value snapshot into attached, projected readings.

    Parameters
    ----------
    topology : NetworkTopology
        Network the readings are attached to.
    stations : iterable of SensorStation-like objects
        Anything with `sensor_id`, `position`, `parent_id` and `ratio` attributes.
    snapshot : mapping
        sensor id -> value for the requested instant. Missing or non-finite values are skipped.
    anchor_unattached : bool
        Attach stations without a parent id to the nearest junction instead of dropping them.

    Returns
    -------
    list[Reading] in registry order. A parent id naming a segment produces a segment reading,
    anything else a junction reading.
    """
    start = time.perf_counter()
    stations = list(stations)

    tree: KDTree | None = None
    tree_ids: list[str] = []
    if anchor_unattached and topology.junctions:
        tree_ids = list(topology.junctions)
        tree = KDTree(np.vstack([topology.junctions[j].position for j in tree_ids]))

    readings: List[Reading] = []
    skipped = 0
    for station in stations:
        value = snapshot.get(station.sensor_id)
        if not is_finite_number(value):
            skipped += 1
            continue

        position = as_point(station.position)
        parent_id = station.parent_id
        if parent_id is None or parent_id == "":
            if tree is None:
                logger.debug(f"[PROJECTION] Sensor '{station.sensor_id}' has no parent; skipped")
                skipped += 1
                continue
            _, idx = tree.query(position)
            parent_id = tree_ids[int(idx)]

        explicit = float(station.ratio) if is_finite_number(station.ratio) else None
        parent_id = str(parent_id)

        if parent_id in topology.segments:
            reading = Reading(station.sensor_id, ParentRef.segment(parent_id), float(value), position, explicit)
            reading = resolve_reading_ratio(reading, topology)
        else:
            reading = Reading(station.sensor_id, ParentRef.junction(parent_id), float(value), position, explicit)
        readings.append(reading)

    elapsed_ms = (time.perf_counter() - start) * 1000
    logger.info(f"[PROJECTION] Built {len(readings)} readings ({skipped} skipped) in {elapsed_ms:.2f} ms")
    return readings
