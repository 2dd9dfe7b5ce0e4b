from __future__ import annotations

import logging
import math
import time
from typing import Dict, Iterable, Mapping, Tuple

import networkx as nx

from network_topology import JunctionId, NetworkTopology, SegmentId
from sensor_projection import Reading

logger = logging.getLogger(__name__)

ESTIMATOR_EPS = 1e-3
UNREACHABLE_VALUE = 0.0


def build_distance_graph(topology: NetworkTopology) -> nx.Graph:
    """Undirected graph over the junctions, weighted by straight-line endpoint distance."""
    G = nx.Graph()
    G.add_nodes_from(topology.junction_ids)
    for seg in topology.segments.values():
        u, v = seg.endpoints()
        if u not in topology.junctions or v not in topology.junctions:
            continue
        w = topology.endpoint_distance(seg)
        if G.has_edge(u, v) and G[u][v]["weight"] <= w:
            continue
        G.add_edge(u, v, weight=w)
    return G


def observations_from_readings(readings: Iterable[Reading]) -> Dict[JunctionId, float]:
    """Junction-attached readings as an observation map (the last reading per junction wins)."""
    observations: Dict[JunctionId, float] = {}
    for r in readings:
        if r.parent.is_junction and math.isfinite(r.value):
            observations[r.parent.id] = float(r.value)
    return observations


def estimate_from_observations(
    topology: NetworkTopology,
    observations: Mapping[JunctionId, float],
    eps: float = ESTIMATOR_EPS,
) -> Tuple[Dict[JunctionId, float], Dict[SegmentId, float]]:
    """
    Inverse-distance-weighted estimate at every junction, distances measured along the network.

    Each junction gets sum(v / (d + eps)) / sum(1 / (d + eps)) over the observed junctions it can
    reach; junctions that reach none get 0. A segment takes the mean of its two endpoints.
    """
    start = time.perf_counter()
    G = build_distance_graph(topology)

    observed = {
        jid: float(v) for jid, v in observations.items()
        if jid in G and v is not None and math.isfinite(v)
    }

    numerators: Dict[JunctionId, float] = {jid: 0.0 for jid in G.nodes}
    denominators: Dict[JunctionId, float] = {jid: 0.0 for jid in G.nodes}

    # undirected graph: distances from each observation equal distances to it
    for obs_id, obs_value in observed.items():
        lengths = nx.single_source_dijkstra_path_length(G, obs_id, weight="weight")
        for jid, d in lengths.items():
            w = 1.0 / (d + eps)
            numerators[jid] += obs_value * w
            denominators[jid] += w

    junction_values: Dict[JunctionId, float] = {}
    for jid in topology.junction_ids:
        den = denominators.get(jid, 0.0)
        junction_values[jid] = numerators[jid] / den if den > 0.0 else UNREACHABLE_VALUE

    segment_values: Dict[SegmentId, float] = {}
    for sid, seg in topology.segments.items():
        a = junction_values.get(seg.from_junction, UNREACHABLE_VALUE)
        b = junction_values.get(seg.to_junction, UNREACHABLE_VALUE)
        segment_values[sid] = 0.5 * (a + b)

    elapsed_ms = (time.perf_counter() - start) * 1000
    logger.info(
        f"[ESTIMATOR] Estimated {len(junction_values)} junctions from {len(observed)} observations "
        f"in {elapsed_ms:.2f} ms"
    )
    return junction_values, segment_values
