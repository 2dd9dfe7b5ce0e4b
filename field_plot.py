from __future__ import annotations

import logging
from pathlib import Path
from typing import Mapping, Optional

import numpy as np
from matplotlib.cm import ScalarMappable
from matplotlib.collections import LineCollection
from matplotlib.colors import Normalize
from matplotlib.figure import Figure

from color_maps import ColorMapRegistry
from network_topology import NetworkTopology

logger = logging.getLogger(__name__)


def plot_network_field(
    topology: NetworkTopology,
    segment_values: Mapping[str, float],
    vmin: float,
    vmax: float,
    map_name: Optional[str] = None,
    color_maps: Optional[ColorMapRegistry] = None,
    junction_values: Optional[Mapping[str, float]] = None,
    linewidth: float = 3.0,
    title: Optional[str] = None,
) -> Figure:
    """
    Plan view (x, y) of the network, each segment colored by its value, with a colorbar.

    Returns a matplotlib Figure not attached to any GUI backend.
    """
    color_maps = color_maps or ColorMapRegistry()
    cmap = color_maps.to_matplotlib(map_name)
    norm = Normalize(vmin=vmin, vmax=vmax if vmax != vmin else vmin + 1.0, clip=True)

    fig = Figure(figsize=(8, 6))
    ax = fig.add_subplot(111)
    ax.set_aspect("equal")
    ax.set_facecolor("white")

    segments = [seg.polyline[:, :2] for seg in topology.segments.values()]
    seg_ids = list(topology.segments)
    if segments:
        values = np.array([segment_values.get(sid, vmin) for sid in seg_ids], dtype=float)
        colors = color_maps.map_values(map_name, values, vmin, vmax)
        lines = LineCollection(segments, colors=colors, linewidths=linewidth, zorder=2)
        ax.add_collection(lines)

    if junction_values is not None and topology.junctions:
        ids = list(topology.junctions)
        pts = np.vstack([topology.junctions[j].position[:2] for j in ids])
        colors = color_maps.map_values(map_name, [junction_values.get(j, vmin) for j in ids], vmin, vmax)
        ax.scatter(pts[:, 0], pts[:, 1], s=25, c=colors, edgecolors="k", linewidths=0.5, zorder=3)

    ax.autoscale_view()
    ax.margins(0.05)

    mappable = ScalarMappable(norm=norm, cmap=cmap)
    mappable.set_array([])
    fig.colorbar(mappable, ax=ax, label="value")

    if title:
        ax.set_title(title)
    return fig


def save_field_plot(fig: Figure, filename: str | Path, dpi: int = 150) -> Path:
    filename = Path(filename)
    fig.savefig(str(filename), dpi=dpi, bbox_inches="tight")
    logger.info(f"[PLOT] Saved field plot to {filename}")
    return filename
