from __future__ import annotations

import argparse
import json
import logging
import math
import sys
from pathlib import Path
from typing import Optional, Sequence

from color_maps import DEFAULT_COLOR_MAP, PRESETS
from field_plot import plot_network_field, save_field_plot
from field_solver import (
    DEFAULT_COLOR_MAX,
    DEFAULT_COLOR_MIN,
    ColorConfig,
    FieldSolver,
    SolveMode,
    SolveResult,
    SolverSettings,
)
from junction_diffusion import DEFAULT_DIFFUSION_ITERATIONS
from network_topology import NetworkTopology
from sensor_dataset import DEFAULT_TOLERANCE_MINUTES, SensorDataset, parse_timestamp
from vector_utils import export_field_to_svg

logger = logging.getLogger(__name__)

LOG_FORMAT = "[%(asctime)s] %(levelname)s: %(message)s"
LOG_DATEFMT = "%H:%M:%S"


def _configure_logging(level: str, log_file: Optional[Path]) -> None:
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format=LOG_FORMAT,
        datefmt=LOG_DATEFMT,
        force=True,
    )
    if log_file is not None:
        handler = logging.FileHandler(log_file, mode="w", encoding="utf-8")
        handler.setFormatter(logging.Formatter(LOG_FORMAT, datefmt=LOG_DATEFMT))
        logging.getLogger().addHandler(handler)


def _parse_args(argv: Optional[Sequence[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        description="Solve a scalar field over a junction/segment network from sensor readings",
    )
    parser.add_argument("topology", type=Path, help="Topology JSON file (nodes/edges)")
    parser.add_argument("--registry", type=Path, required=True, help="Sensor registry CSV")
    parser.add_argument("--readings", type=Path, required=True, help="Sensor readings CSV")
    parser.add_argument(
        "--time",
        default=None,
        help="Instant to solve for, epoch seconds or ISO-8601 (default: latest reading)",
    )
    parser.add_argument(
        "--tolerance-minutes",
        type=float,
        default=DEFAULT_TOLERANCE_MINUTES,
        help=f"Snapshot tolerance window in minutes (default: {DEFAULT_TOLERANCE_MINUTES:g})",
    )
    parser.add_argument(
        "--mode",
        choices=[m.value for m in SolveMode],
        default=SolveMode.FIELD.value,
        help="'field' for diffusion + segment fields, 'shortest_path' for the network IDW estimate",
    )
    parser.add_argument("--min", type=float, default=DEFAULT_COLOR_MIN, help="Color range minimum")
    parser.add_argument("--max", type=float, default=DEFAULT_COLOR_MAX, help="Color range maximum")
    parser.add_argument(
        "--colormap",
        default=DEFAULT_COLOR_MAP,
        help=f"Color map name, one of {sorted(PRESETS)} (default: {DEFAULT_COLOR_MAP})",
    )
    parser.add_argument(
        "--custom-stops",
        default=None,
        help="Comma separated colors replacing the chosen map, e.g. '#0000ff,#ff0000'",
    )
    parser.add_argument(
        "--iterations",
        type=int,
        default=DEFAULT_DIFFUSION_ITERATIONS,
        help=f"Diffusion rounds (default: {DEFAULT_DIFFUSION_ITERATIONS})",
    )
    parser.add_argument(
        "--default-minimum",
        type=float,
        default=None,
        help="Value for junctions diffusion cannot reach (default: color minimum)",
    )
    parser.add_argument(
        "--anchor-unattached",
        action="store_true",
        help="Attach sensors without a parent to their nearest junction",
    )
    parser.add_argument("--output", type=Path, default=None, help="Output JSON path (default: stdout)")
    parser.add_argument("--svg", type=Path, default=None, help="Optional plan-view SVG export")
    parser.add_argument("--plot", type=Path, default=None, help="Optional plan-view image with colorbar")
    parser.add_argument("--log-level", default="INFO", help="Logging level (default: INFO)")
    parser.add_argument("--log-file", type=Path, default=None, help="Also write logs to this file")
    return parser.parse_args(argv)


def _result_to_json(result: SolveResult, instant: Optional[float]) -> dict:
    return {
        "mode": result.mode.value,
        "time": instant,
        "junction_values": result.junction_values,
        "segment_values": result.segment_values,
        "junction_colors": {k: list(v) for k, v in result.junction_colors.items()},
        "segment_colors": {k: list(v) for k, v in result.segment_colors.items()},
        "control_points": {
            sid: [[c.ratio, c.value] for c in controls] for sid, controls in result.control_points.items()
        },
    }


def main(argv: Optional[Sequence[str]] = None) -> int:
    args = _parse_args(argv)
    _configure_logging(args.log_level, args.log_file)

    try:
        topology = NetworkTopology.from_json(args.topology)
        dataset = SensorDataset.from_csv(args.registry, args.readings)
    except (FileNotFoundError, ValueError) as exc:
        logger.error(f"Failed to load inputs: {exc}")
        return 1

    if args.time is not None:
        instant = parse_timestamp(args.time)
        if math.isnan(instant):
            logger.error(f"Could not parse --time value '{args.time}'")
            return 1
    else:
        span = dataset.time_range()
        instant = span[1] if span is not None else None

    custom_stops = None
    if args.custom_stops:
        custom_stops = [c.strip() for c in args.custom_stops.split(",") if c.strip()]

    color_config = ColorConfig(min=args.min, max=args.max, map_name=args.colormap, custom_stops=custom_stops)
    settings = SolverSettings(
        diffusion_iterations=args.iterations,
        default_minimum=args.default_minimum,
        anchor_unattached=args.anchor_unattached,
    )
    solver = FieldSolver.from_dataset(topology, dataset, settings)

    try:
        if instant is None:
            logger.warning("No readings available; solving with an empty snapshot")
            result = solver.solve({}, color_config, mode=args.mode)
        else:
            result = solver.solve_at(instant, args.tolerance_minutes, color_config, mode=args.mode)
    except ValueError as exc:
        logger.error(f"Solve failed: {exc}")
        return 1

    payload = json.dumps(_result_to_json(result, instant), indent=2)
    if args.output is not None:
        args.output.write_text(payload, encoding="utf-8")
        logger.info(f"Wrote results to {args.output}")
    else:
        print(payload)

    if args.svg is not None:
        export_field_to_svg(topology, result.segment_colors, args.svg, junction_colors=result.junction_colors)

    if args.plot is not None:
        palette = solver.color_maps.copy()
        if custom_stops:
            palette.set_custom(args.colormap, custom_stops)
        fig = plot_network_field(
            topology,
            result.segment_values,
            args.min,
            args.max,
            map_name=args.colormap,
            color_maps=palette,
            junction_values=result.junction_values,
            title=f"{result.mode.value} field",
        )
        save_field_plot(fig, args.plot)

    return 0


if __name__ == "__main__":
    sys.exit(main())
