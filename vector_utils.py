from __future__ import annotations

import logging
from pathlib import Path
from typing import Mapping, Optional, Sequence

import numpy as np
import svgwrite

from network_topology import NetworkTopology

logger = logging.getLogger(__name__)

RGB = Sequence[float]


def unit_vector(v: np.ndarray) -> np.ndarray:
    v = np.asarray(v, dtype=float)
    norm = float(np.linalg.norm(v))
    return v / norm if norm > 0.0 else v


def unit_rows(vectors: np.ndarray) -> tuple[np.ndarray, np.ndarray]:
    """Row-wise normalization. Returns (unit vectors, norms); zero rows stay zero."""
    vectors = np.asarray(vectors, dtype=float)
    norms = np.linalg.norm(vectors, axis=1)
    safe = np.where(norms > 0.0, norms, 1.0)
    return vectors / safe[:, None], norms


def _svg_color(rgb: RGB) -> str:
    r, g, b = (int(round(255 * min(max(float(c), 0.0), 1.0))) for c in rgb[:3])
    return svgwrite.rgb(r, g, b)


def export_field_to_svg(
    topology: NetworkTopology,
    segment_colors: Mapping[str, RGB],
    filename: str | Path,
    junction_colors: Optional[Mapping[str, RGB]] = None,
    stroke_width: float = 2.0,
    junction_radius: float = 3.0,
    margin: float = 10.0,
    default_color: RGB = (0.23, 0.29, 0.48),
) -> Path:
    """
    Export a plan view (x, y) of the network with each segment stroked in its field color.

    Parameters:
        topology: network to draw
        segment_colors: segment id -> normalized RGB
        filename: output SVG file path
        junction_colors: optional junction id -> normalized RGB, drawn as dots
        stroke_width: segment stroke thickness
        junction_radius: dot radius for junctions
        margin: padding around the drawing, in drawing units
    """
    filename = Path(filename)

    polylines = [seg.polyline[:, :2] for seg in topology.segments.values()]
    points = [j.position[:2][None, :] for j in topology.junctions.values()]
    all_points = np.vstack(polylines + points) if (polylines or points) else np.zeros((1, 2))

    min_x, min_y = np.min(all_points, axis=0)
    max_x, max_y = np.max(all_points, axis=0)
    width = float(max_x - min_x) + 2 * margin
    height = float(max_y - min_y) + 2 * margin

    # SVG y grows downwards
    def to_canvas(xy: np.ndarray) -> list[tuple[float, float]]:
        return [(float(x - min_x + margin), float(max_y - y + margin)) for x, y in xy]

    dwg = svgwrite.Drawing(str(filename), size=(width, height))

    for seg in topology.segments.values():
        color = _svg_color(segment_colors.get(seg.id, default_color))
        dwg.add(dwg.polyline(
            points=to_canvas(seg.polyline[:, :2]),
            fill="none",
            stroke=color,
            stroke_width=stroke_width,
            stroke_linecap="round",
        ))

    if junction_colors is not None:
        for jid, junction in topology.junctions.items():
            color = _svg_color(junction_colors.get(jid, default_color))
            (cx, cy), = to_canvas(junction.position[None, :2])
            dwg.add(dwg.circle(center=(cx, cy), r=junction_radius, fill=color))

    dwg.save()
    logger.info(f"[SVG] Exported {len(topology.segments)} segments to {filename}")
    return filename
