from __future__ import annotations

import logging
import threading
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Callable, Dict, Iterable, List, Mapping, Optional, Sequence, Tuple

import numpy as np

from color_maps import DEFAULT_COLOR_MAP, RGB, ColorMapRegistry
from field_evaluation import (
    CENTER_TOLERANCE,
    apply_world_transform,
    evaluate_control_points,
    evaluate_junction_vertices,
    evaluate_segment_vertices,
    junction_branches,
)
from junction_diffusion import DEFAULT_DIFFUSION_ITERATIONS, diffuse_junction_values
from network_topology import JunctionId, NetworkTopology, SegmentId
from segment_field import ControlPointCache, ControlPoints
from sensor_dataset import DEFAULT_TOLERANCE_MINUTES, SensorDataset
from sensor_projection import ParentKind, Reading, build_readings
from shortest_path_estimator import ESTIMATOR_EPS, estimate_from_observations, observations_from_readings

logger = logging.getLogger(__name__)

DEFAULT_COLOR_MIN = 10.0
DEFAULT_COLOR_MAX = 40.0
SEGMENT_SUMMARY_RATIO = 0.5


class SolveMode(Enum):
    FIELD = "field"
    SHORTEST_PATH = "shortest_path"

    @classmethod
    def parse(cls, value: "SolveMode | str") -> "SolveMode":
        if isinstance(value, cls):
            return value
        try:
            return cls(str(value).lower().replace("-", "_"))
        except ValueError:
            raise ValueError(f"Unknown solve mode '{value}'. Expected one of {[m.value for m in cls]}") from None


@dataclass
class ColorConfig:
    min: float = DEFAULT_COLOR_MIN
    max: float = DEFAULT_COLOR_MAX
    map_name: str = DEFAULT_COLOR_MAP
    custom_stops: Optional[Sequence] = None


@dataclass
class SolverSettings:
    diffusion_iterations: int = DEFAULT_DIFFUSION_ITERATIONS
    # None -> use the color range minimum
    default_minimum: Optional[float] = None
    anchor_unattached: bool = False
    center_tolerance: float = CENTER_TOLERANCE
    estimator_eps: float = ESTIMATOR_EPS


@dataclass(eq=False)
class MeshBuffer:
    """
    Host-owned mesh: local vertex positions and the per-vertex color buffer to fill.

    `owner_id` is the segment id (kind SEGMENT) or junction id (kind JUNCTION) the mesh depicts.
    """
    kind: ParentKind
    owner_id: str
    positions: np.ndarray
    colors: Optional[np.ndarray] = None
    world_matrix: Optional[np.ndarray] = None

    @property
    def key(self) -> str:
        return f"{self.kind.value}:{self.owner_id}"

    def publish(self, colors: np.ndarray) -> None:
        if self.colors is None or self.colors.shape != colors.shape:
            self.colors = colors.copy()
        else:
            self.colors[...] = colors


@dataclass
class SolveResult:
    mode: SolveMode
    junction_values: Dict[JunctionId, float]
    segment_values: Dict[SegmentId, float]
    junction_colors: Dict[JunctionId, RGB] = field(default_factory=dict)
    segment_colors: Dict[SegmentId, RGB] = field(default_factory=dict)
    control_points: Dict[SegmentId, ControlPoints] = field(default_factory=dict)
    vertex_values: Dict[str, np.ndarray] = field(default_factory=dict)
    readings: List[Reading] = field(default_factory=list)
    elapsed_ms: float = 0.0


class _SolveRun:
    """
    State of one solve. Everything here (junction values, control point cache, color arrays)
    belongs to this run and is dropped with it.
    """

    def __init__(
        self,
        solver: "FieldSolver",
        snapshot: Mapping[str, float],
        color_config: ColorConfig,
        meshes: Sequence[MeshBuffer],
        mode: SolveMode,
    ):
        self.solver = solver
        self.topology = solver.topology
        self.settings = solver.settings
        self.snapshot = snapshot
        self.color_config = color_config
        self.meshes = list(meshes)
        self.mode = mode

        self.color_maps = solver.color_maps.copy()
        if color_config.custom_stops:
            self.color_maps.set_custom(color_config.map_name, color_config.custom_stops)

        if self.settings.default_minimum is None:
            self.default_minimum = float(color_config.min)
        else:
            self.default_minimum = float(self.settings.default_minimum)

        self.readings: List[Reading] = []
        self.junction_values: Dict[JunctionId, float] = {}
        self.segment_values: Dict[SegmentId, float] = {}
        self.cache: ControlPointCache | None = None
        self.vertex_values: Dict[str, np.ndarray] = {}

    def execute(self) -> SolveResult:
        start = time.perf_counter()
        for name, fn in self._pipeline():
            logger.debug(f"[SOLVE] Running stage '{name}'")
            fn()

        elapsed_ms = (time.perf_counter() - start) * 1000
        logger.info(
            f"[SOLVE] {self.mode.value} solve: {len(self.readings)} readings, "
            f"{len(self.meshes)} meshes in {elapsed_ms:.2f} ms"
        )
        return SolveResult(
            mode=self.mode,
            junction_values=self.junction_values,
            segment_values=self.segment_values,
            junction_colors=self._colors_for(self.junction_values),
            segment_colors=self._colors_for(self.segment_values),
            control_points=self.cache.snapshot() if self.cache is not None else {},
            vertex_values=self.vertex_values,
            readings=self.readings,
            elapsed_ms=elapsed_ms,
        )

    def _pipeline(self) -> Iterable[tuple[str, Callable[[], None]]]:
        if self.mode is SolveMode.SHORTEST_PATH:
            return (
                ("readings", self._compute_readings),
                ("estimate", self._compute_estimate),
                ("meshes", self._color_flat_meshes),
            )
        return (
            ("readings", self._compute_readings),
            ("junctions", self._compute_junction_values),
            ("segments", self._compute_segment_fields),
            ("meshes", self._color_field_meshes),
        )

    ##############################################
    #                  Stages                    #
    ##############################################

    def _compute_readings(self) -> None:
        self.readings = build_readings(
            self.topology,
            self.solver.stations,
            self.snapshot,
            anchor_unattached=self.settings.anchor_unattached,
        )

    def _compute_junction_values(self) -> None:
        self.junction_values = diffuse_junction_values(
            self.topology.junctions.values(),
            self.topology.segments.values(),
            self.readings,
            default_minimum=self.default_minimum,
            iterations=self.settings.diffusion_iterations,
        )

    def _compute_segment_fields(self) -> None:
        self.cache = ControlPointCache(self.junction_values, self.readings, self.default_minimum)
        for sid, seg in self.topology.segments.items():
            ratios, values = self.cache.arrays(seg)
            value = evaluate_control_points(ratios, values, SEGMENT_SUMMARY_RATIO, seg.length)[0]
            self.segment_values[sid] = float(value)

    def _compute_estimate(self) -> None:
        observations = observations_from_readings(self.readings)
        self.junction_values, self.segment_values = estimate_from_observations(
            self.topology, observations, eps=self.settings.estimator_eps
        )

    def _color_field_meshes(self) -> None:
        for mesh in self.meshes:
            world = apply_world_transform(mesh.positions, mesh.world_matrix)
            if mesh.kind is ParentKind.SEGMENT:
                segment = self.topology.segments.get(mesh.owner_id)
                if segment is None:
                    logger.warning(f"[SOLVE] Mesh '{mesh.key}' refers to an unknown segment; left untouched")
                    continue
                values = evaluate_segment_vertices(world, segment, self.cache)
            else:
                if mesh.owner_id not in self.topology.junctions:
                    logger.warning(f"[SOLVE] Mesh '{mesh.key}' refers to an unknown junction; left untouched")
                    continue
                branches = junction_branches(
                    mesh.owner_id, self.topology.incident_segments(mesh.owner_id), self.cache
                )
                values = evaluate_junction_vertices(
                    world,
                    self.topology.junction_position(mesh.owner_id),
                    branches,
                    default_minimum=self.default_minimum,
                    center_tolerance=self.settings.center_tolerance,
                )
            self._publish(mesh, values)

    def _color_flat_meshes(self) -> None:
        for mesh in self.meshes:
            source = self.segment_values if mesh.kind is ParentKind.SEGMENT else self.junction_values
            value = source.get(mesh.owner_id, 0.0)
            count = len(np.asarray(mesh.positions).reshape(-1, 3))
            self._publish(mesh, np.full(count, float(value)))

    ##############################################
    #                 Helpers                    #
    ##############################################

    def _publish(self, mesh: MeshBuffer, values: np.ndarray) -> None:
        # colors are computed in full before the host buffer is touched
        colors = self.color_maps.map_values(
            self.color_config.map_name, values, self.color_config.min, self.color_config.max
        )
        self.vertex_values[mesh.key] = values
        mesh.publish(colors)

    def _colors_for(self, values: Mapping[str, float]) -> Dict[str, RGB]:
        if not values:
            return {}
        ids = list(values)
        colors = self.color_maps.map_values(
            self.color_config.map_name,
            [values[i] for i in ids],
            self.color_config.min,
            self.color_config.max,
        )
        return {i: (float(c[0]), float(c[1]), float(c[2])) for i, c in zip(ids, colors)}


class FieldSolver:
    """
    Entry point for the field pipeline: topology + station registry + snapshot -> values/colors.
    """

    def __init__(
        self,
        topology: NetworkTopology,
        stations: Iterable,
        settings: Optional[SolverSettings] = None,
        color_maps: Optional[ColorMapRegistry] = None,
        dataset: Optional[SensorDataset] = None,
    ):
        self.topology = topology
        self.stations = list(stations)
        self.settings = settings or SolverSettings()
        self.color_maps = color_maps or ColorMapRegistry()
        self.dataset = dataset

    @classmethod
    def from_dataset(
        cls,
        topology: NetworkTopology,
        dataset: SensorDataset,
        settings: Optional[SolverSettings] = None,
        color_maps: Optional[ColorMapRegistry] = None,
    ) -> "FieldSolver":
        return cls(topology, dataset.list_stations(), settings, color_maps, dataset)

    def solve(
        self,
        snapshot: Mapping[str, float],
        color_config: Optional[ColorConfig] = None,
        meshes: Sequence[MeshBuffer] = (),
        mode: SolveMode | str = SolveMode.FIELD,
    ) -> SolveResult:
        run = _SolveRun(self, snapshot, color_config or ColorConfig(), meshes, SolveMode.parse(mode))
        return run.execute()

    def solve_at(
        self,
        instant: float,
        tolerance_minutes: float = DEFAULT_TOLERANCE_MINUTES,
        color_config: Optional[ColorConfig] = None,
        meshes: Sequence[MeshBuffer] = (),
        mode: SolveMode | str = SolveMode.FIELD,
    ) -> SolveResult:
        if self.dataset is None:
            raise ValueError("solve_at needs a SensorDataset; build the solver with FieldSolver.from_dataset")
        snapshot = self.dataset.get_snapshot(instant, tolerance_minutes)
        return self.solve(snapshot, color_config, meshes, mode)


def solve(
    topology: NetworkTopology,
    stations: Iterable,
    snapshot: Mapping[str, float],
    color_config: Optional[ColorConfig] = None,
    meshes: Sequence[MeshBuffer] = (),
    mode: SolveMode | str = SolveMode.FIELD,
    settings: Optional[SolverSettings] = None,
) -> SolveResult:
    """One-shot solve without keeping a FieldSolver around."""
    return FieldSolver(topology, stations, settings).solve(snapshot, color_config, meshes, mode)


##############################################
#               Scheduling                   #
##############################################

@dataclass(frozen=True)
class SolveRequest:
    snapshot: Mapping[str, float]
    color_config: Optional[ColorConfig]
    meshes: Tuple[MeshBuffer, ...]
    mode: SolveMode


class SolveScheduler:
    """
    Queue-and-coalesce front end for a FieldSolver.

    `request` only records the newest request (older pending ones are dropped). `run_pending`
    solves the newest request, then keeps going while newer requests keep arriving. At most one
    solve runs at a time; a concurrent `run_pending` call returns immediately.
    """

    def __init__(self, solver: FieldSolver, on_result: Optional[Callable[[SolveResult], None]] = None):
        self.solver = solver
        self.on_result = on_result
        self.latest: Optional[SolveResult] = None
        self.completed = 0
        self.coalesced = 0
        self._lock = threading.Lock()
        self._pending: Optional[SolveRequest] = None
        self._running = False

    @property
    def has_pending(self) -> bool:
        with self._lock:
            return self._pending is not None

    @property
    def is_running(self) -> bool:
        with self._lock:
            return self._running

    def request(
        self,
        snapshot: Mapping[str, float],
        color_config: Optional[ColorConfig] = None,
        meshes: Sequence[MeshBuffer] = (),
        mode: SolveMode | str = SolveMode.FIELD,
    ) -> None:
        req = SolveRequest(snapshot, color_config, tuple(meshes), SolveMode.parse(mode))
        with self._lock:
            if self._pending is not None:
                self.coalesced += 1
                logger.debug("[SCHEDULER] Replaced a pending solve request")
            self._pending = req

    def run_pending(self) -> Optional[SolveResult]:
        """Run the newest pending request (and any that arrive meanwhile). None if nothing ran."""
        with self._lock:
            if self._running:
                return None
            self._running = True

        result: Optional[SolveResult] = None
        try:
            while True:
                with self._lock:
                    req, self._pending = self._pending, None
                if req is None:
                    break
                result = self.solver.solve(req.snapshot, req.color_config, req.meshes, req.mode)
                self.latest = result
                self.completed += 1
                if self.on_result is not None:
                    self.on_result(result)
        finally:
            with self._lock:
                self._running = False
        return result
