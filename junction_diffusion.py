from __future__ import annotations

import logging
import math
import time
from typing import Dict, Iterable, List, Optional

from network_topology import Junction, JunctionId, Segment, SegmentId
from sensor_projection import Reading

logger = logging.getLogger(__name__)

DEFAULT_DIFFUSION_ITERATIONS = 5


def _mean(values: Iterable[float]) -> Optional[float]:
    finite = [float(v) for v in values if math.isfinite(v)]
    if not finite:
        return None
    return sum(finite) / len(finite)


def segment_reading_means(readings: Iterable[Reading]) -> Dict[SegmentId, float]:
    """Arithmetic mean of the finite reading values attached to each segment."""
    grouped: Dict[SegmentId, List[float]] = {}
    for r in readings:
        if r.parent.is_segment:
            grouped.setdefault(r.parent.id, []).append(r.value)

    means: Dict[SegmentId, float] = {}
    for sid, values in grouped.items():
        mean = _mean(values)
        if mean is not None:
            means[sid] = mean
    return means


def diffuse_junction_values(
    junctions: Iterable[Junction | JunctionId],
    segments: Iterable[Segment],
    readings: Iterable[Reading],
    default_minimum: float = 0.0,
    iterations: int = DEFAULT_DIFFUSION_ITERATIONS,
) -> Dict[JunctionId, float]:
    """
    Give every junction a value, starting from the readings and relaxing outwards.

    1) junction readings seed their junction (the last reading for a junction wins),
    2) the reading mean of a segment seeds any unset endpoint,
    3) `iterations` rounds: each unset junction, visited in input order, takes the mean of
       its incident segments' reading means, or of the neighbour's value where the segment
       carries no readings. Updates are applied immediately, so later junctions in a round
       see the values set earlier in that same round,
    4) whatever is still unset gets `default_minimum`.

    This is bounded relaxation: a junction more than `iterations` hops away from every
    observation keeps the default even though it is connected to one.
    """
    start = time.perf_counter()
    readings = list(readings)
    segments = list(segments)
    order: List[JunctionId] = [j.id if isinstance(j, Junction) else j for j in junctions]
    values: Dict[JunctionId, Optional[float]] = {jid: None for jid in order}

    incident: Dict[JunctionId, List[Segment]] = {}
    for seg in segments:
        incident.setdefault(seg.from_junction, []).append(seg)
        incident.setdefault(seg.to_junction, []).append(seg)

    # 1) direct seeding
    for r in readings:
        if r.parent.is_junction and r.parent.id in values and math.isfinite(r.value):
            values[r.parent.id] = float(r.value)

    # 2) endpoints of observed segments
    means = segment_reading_means(readings)
    for seg in segments:
        mean = means.get(seg.id)
        if mean is None:
            continue
        for jid in seg.endpoints():
            if jid in values and values[jid] is None:
                values[jid] = mean

    # 3) bounded relaxation
    for _ in range(max(int(iterations), 0)):
        for jid in order:
            if values[jid] is not None:
                continue
            contributions: List[float] = []
            for seg in incident.get(jid, ()):
                mean = means.get(seg.id)
                if mean is not None:
                    contributions.append(mean)
                    continue
                neighbour = values.get(seg.other_end(jid))
                if neighbour is not None:
                    contributions.append(neighbour)
            if contributions:
                values[jid] = sum(contributions) / len(contributions)

    # 4) default fallback
    unresolved = [jid for jid, v in values.items() if v is None]
    for jid in unresolved:
        values[jid] = float(default_minimum)

    elapsed_ms = (time.perf_counter() - start) * 1000
    logger.info(
        f"[DIFFUSION] Resolved {len(order) - len(unresolved)}/{len(order)} junctions "
        f"({len(unresolved)} defaulted) in {elapsed_ms:.2f} ms"
    )
    return {jid: float(v) for jid, v in values.items()}
