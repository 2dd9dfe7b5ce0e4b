from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Iterable, List, Mapping, Optional, Tuple

import numpy as np

logger = logging.getLogger(__name__)

JunctionId = str
SegmentId = str

LENGTH_EPS = 1e-6
_ORIGIN = np.zeros(3, dtype=float)


class TopologyConfigError(ValueError):
    """Raised when a topology document cannot be turned into junctions and segments."""


def as_point(value: Any) -> np.ndarray:
    """Coerce a list/tuple/array or an {x, y, z} mapping into a float (3,) array."""

    if value is None:
        return _ORIGIN.copy()
    if isinstance(value, Mapping):
        coords = [value.get("x", 0.0), value.get("y", 0.0), value.get("z", 0.0)]
    else:
        coords = list(value)[:3]
    coords = [0.0 if c is None else float(c) for c in coords]
    coords += [0.0] * (3 - len(coords))
    return np.asarray(coords, dtype=float)


def _frozen(arr: np.ndarray) -> np.ndarray:
    arr = np.array(arr, dtype=float)
    arr.setflags(write=False)
    return arr


@dataclass(frozen=True, eq=False)
class Junction:
    id: JunctionId
    position: np.ndarray

    def __post_init__(self) -> None:
        object.__setattr__(self, "position", _frozen(as_point(self.position)))


@dataclass(frozen=True, eq=False)
class Segment:
    id: SegmentId
    from_junction: JunctionId
    to_junction: JunctionId
    polyline: np.ndarray
    piece_lengths: np.ndarray = field(init=False, repr=False)
    length: float = field(init=False)

    def __post_init__(self) -> None:
        pts = np.asarray(self.polyline, dtype=float).reshape(-1, 3)
        if len(pts) < 2:
            raise ValueError(f"Segment '{self.id}' needs at least two polyline points, got {len(pts)}")
        pieces = np.linalg.norm(np.diff(pts, axis=0), axis=1)
        object.__setattr__(self, "polyline", _frozen(pts))
        object.__setattr__(self, "piece_lengths", _frozen(pieces))
        object.__setattr__(self, "length", max(float(pieces.sum()), LENGTH_EPS))

    @property
    def start(self) -> np.ndarray:
        return self.polyline[0]

    @property
    def end(self) -> np.ndarray:
        return self.polyline[-1]

    def endpoints(self) -> Tuple[JunctionId, JunctionId]:
        return (self.from_junction, self.to_junction)

    def other_end(self, junction_id: JunctionId) -> JunctionId:
        return self.to_junction if self.from_junction == junction_id else self.from_junction


class NetworkTopology:
    """
    Read-only junction/segment network. Owned by whoever loaded it; solves only borrow it.
    """

    def __init__(self, junctions: Iterable[Junction], segments: Iterable[Segment]):
        self.junctions: Dict[JunctionId, Junction] = {j.id: j for j in junctions}
        self.segments: Dict[SegmentId, Segment] = {s.id: s for s in segments}

        self._incident: Dict[JunctionId, List[Segment]] = {}
        for seg in self.segments.values():
            self._incident.setdefault(seg.from_junction, []).append(seg)
            self._incident.setdefault(seg.to_junction, []).append(seg)

        missing = sorted(
            {jid for seg in self.segments.values() for jid in seg.endpoints() if jid not in self.junctions}
        )
        if missing:
            logger.warning(f"[TOPOLOGY] Segments reference unknown junctions {missing}; using the origin for them")

    ##############################################
    #                 Queries                    #
    ##############################################

    @property
    def junction_ids(self) -> Tuple[JunctionId, ...]:
        return tuple(self.junctions)

    @property
    def segment_ids(self) -> Tuple[SegmentId, ...]:
        return tuple(self.segments)

    def junction_position(self, junction_id: JunctionId) -> np.ndarray:
        junction = self.junctions.get(junction_id)
        if junction is None:
            return _ORIGIN.copy()
        return junction.position

    def incident_segments(self, junction_id: JunctionId) -> Tuple[Segment, ...]:
        """Segments touching the junction, in load order (a self-loop appears twice)."""
        return tuple(self._incident.get(junction_id, ()))

    def endpoint_distance(self, segment: Segment) -> float:
        a = self.junction_position(segment.from_junction)
        b = self.junction_position(segment.to_junction)
        return float(np.linalg.norm(b - a))

    def __len__(self) -> int:
        return len(self.junctions)

    def __repr__(self) -> str:
        return f"NetworkTopology({len(self.junctions)} junctions, {len(self.segments)} segments)"

    ##############################################
    #                 Loading                    #
    ##############################################

    @classmethod
    def from_dict(cls, data: Any, role_mapping: Optional[Mapping[str, str]] = None) -> "NetworkTopology":
        """
        Build a topology from a parsed JSON document.

        Accepted shapes:
            {"nodes"|"junctions": [{"id", "coordinate"|"position"}, ...],
             "edges"|"segments": [{"id", "from"|"source", "to"|"target", "path"?}, ...]}

        role_mapping renames fields (keys: node_id, node_pos, edge_id, from_node, to_node, edge_path).
        Dotted paths such as "geometry.center" are resolved into nested objects.
        """
        if not isinstance(data, Mapping):
            raise TopologyConfigError(f"Topology document must be an object, got {type(data).__name__}")

        roles = dict(role_mapping or {})
        raw_nodes = _collection(data, ("nodes", "junctions"))
        raw_edges = _collection(data, ("edges", "segments"))

        junctions: List[Junction] = []
        for i, node in enumerate(raw_nodes):
            if not isinstance(node, Mapping):
                raise TopologyConfigError(f"Junction entry {i} must be an object, got {type(node).__name__}")
            jid = _lookup(node, roles.get("node_id", "id"))
            if jid is None:
                raise TopologyConfigError(f"Junction entry {i} has no id")
            pos = _lookup(node, roles.get("node_pos", "coordinate"))
            if pos is None:
                pos = _lookup(node, "position")
            junctions.append(Junction(str(jid), as_point(pos)))

        positions = {j.id: j.position for j in junctions}

        segments: List[Segment] = []
        for i, edge in enumerate(raw_edges):
            if not isinstance(edge, Mapping):
                raise TopologyConfigError(f"Segment entry {i} must be an object, got {type(edge).__name__}")
            sid = _lookup(edge, roles.get("edge_id", "id"))
            src = _first_present(edge, (roles.get("from_node", "from"), "from", "source"))
            dst = _first_present(edge, (roles.get("to_node", "to"), "to", "target"))
            if sid is None or src is None or dst is None:
                raise TopologyConfigError(f"Segment entry {i} needs 'id', 'from' and 'to' fields")
            src, dst = str(src), str(dst)

            path = _lookup(edge, roles.get("edge_path", "path"))
            if path is not None and not isinstance(path, (list, tuple)):
                raise TopologyConfigError(f"Segment '{sid}' path must be a list of points")
            points = [as_point(p) for p in (path or [])]
            if len(points) < 2:
                points = [positions.get(src, _ORIGIN), positions.get(dst, _ORIGIN)]
            segments.append(Segment(str(sid), src, dst, np.vstack(points)))

        logger.info(f"[TOPOLOGY] Loaded {len(junctions)} junctions and {len(segments)} segments")
        return cls(junctions, segments)

    @classmethod
    def from_json(cls, path: str | Path, role_mapping: Optional[Mapping[str, str]] = None) -> "NetworkTopology":
        path = Path(path)
        if not path.is_file():
            raise FileNotFoundError(f"Topology file does not exist: {path}")
        with path.open("r", encoding="utf-8") as fh:
            try:
                data = json.load(fh)
            except json.JSONDecodeError as exc:
                raise TopologyConfigError(f"Topology file {path} is not valid JSON: {exc}") from exc
        return cls.from_dict(data, role_mapping)


def _lookup(obj: Any, path: str) -> Any:
    cur = obj
    for part in str(path).split("."):
        if cur is None:
            return None
        if isinstance(cur, (list, tuple)) and part.isdigit():
            idx = int(part)
            cur = cur[idx] if idx < len(cur) else None
        elif isinstance(cur, Mapping):
            cur = cur.get(part)
        else:
            return None
    return cur


def _first_present(obj: Mapping, keys: Iterable[str]) -> Any:
    for key in keys:
        value = _lookup(obj, key)
        if value is not None:
            return value
    return None


def _collection(data: Mapping, keys: Tuple[str, ...]) -> list:
    for key in keys:
        if key in data:
            value = data[key]
            if value is None:
                return []
            if not isinstance(value, list):
                raise TopologyConfigError(f"Topology field '{key}' must be a list, got {type(value).__name__}")
            return value
    return []
