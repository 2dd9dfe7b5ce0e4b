from __future__ import annotations

import csv
import logging
import math
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Dict, Iterable, List, Mapping, Optional, Tuple

import numpy as np

from network_topology import as_point

logger = logging.getLogger(__name__)

DEFAULT_TOLERANCE_MINUTES = 10.0

STATION_FIELDS = {
    "sensor_id": "sensorID",
    "x": "x",
    "y": "y",
    "z": "z",
    "parent_id": "roadwayID",
    "ratio": "ratio",
}

# checked after the configured column, in this order
PARENT_COLUMNS = ("roadwayID", "nodeId", "node_id", "edgeId", "edge_id", "connectionId")
RATIO_COLUMNS = ("ratio", "t")

SAMPLE_FIELDS = {
    "sensor_id": "sensorID",
    "timestamp": "time",
    "value": "value",
}


@dataclass(frozen=True, eq=False)
class SensorStation:
    """Registry row: where a sensor sits and what it is attached to."""
    sensor_id: str
    position: np.ndarray
    parent_id: Optional[str] = None
    ratio: Optional[float] = None


@dataclass(frozen=True)
class SensorSample:
    sensor_id: str
    time: float
    value: float


def parse_timestamp(raw) -> float:
    """Epoch seconds from a number or an ISO-8601 string (naive strings are read as UTC)."""
    if raw is None:
        return math.nan
    if isinstance(raw, datetime):
        dt = raw
    elif isinstance(raw, (int, float)):
        return float(raw)
    else:
        text = str(raw).strip()
        if not text:
            return math.nan
        try:
            return float(text)
        except ValueError:
            pass
        if text.endswith("Z"):
            text = text[:-1] + "+00:00"
        try:
            dt = datetime.fromisoformat(text)
        except ValueError:
            return math.nan
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.timestamp()


def _to_float(raw) -> float:
    try:
        return float(raw)
    except (TypeError, ValueError):
        return math.nan


class SensorDataset:
    """
    Station registry plus time series of readings, queried by instant.
    """

    def __init__(self, stations: Iterable[SensorStation], samples: Iterable[SensorSample]):
        self.stations: List[SensorStation] = list(stations)
        self._station_index: Dict[str, SensorStation] = {s.sensor_id: s for s in self.stations}

        grouped: Dict[str, List[Tuple[float, float]]] = {}
        dropped = 0
        for sample in samples:
            if not (math.isfinite(sample.time) and math.isfinite(sample.value)):
                dropped += 1
                continue
            grouped.setdefault(sample.sensor_id, []).append((sample.time, sample.value))

        self._series: Dict[str, Tuple[np.ndarray, np.ndarray]] = {}
        for sid, rows in grouped.items():
            rows.sort(key=lambda r: r[0])
            arr = np.asarray(rows, dtype=float)
            self._series[sid] = (arr[:, 0], arr[:, 1])

        if dropped:
            logger.warning(f"[DATASET] Dropped {dropped} samples with non-finite time or value")

    def get_station(self, sensor_id: str) -> Optional[SensorStation]:
        return self._station_index.get(sensor_id)

    def list_stations(self) -> List[SensorStation]:
        return list(self.stations)

    def sensor_ids(self) -> Tuple[str, ...]:
        return tuple(self._series)

    def get_series(
        self, sensor_id: str, start: float = -math.inf, end: float = math.inf
    ) -> Tuple[np.ndarray, np.ndarray]:
        """(times, values) of one sensor within [start, end], sorted by time."""
        times, values = self._series.get(sensor_id, (np.empty(0), np.empty(0)))
        mask = (times >= start) & (times <= end)
        return times[mask], values[mask]

    def time_range(self) -> Optional[Tuple[float, float]]:
        if not self._series:
            return None
        lo = min(float(t[0]) for t, _ in self._series.values())
        hi = max(float(t[-1]) for t, _ in self._series.values())
        return lo, hi

    def get_snapshot(self, time: float, tolerance_minutes: float = DEFAULT_TOLERANCE_MINUTES) -> Dict[str, float]:
        """
        Nearest-in-time value of every sensor within the tolerance window.

        Sensors with no sample within `tolerance_minutes` of `time` are absent from the result.
        The earliest sample wins when two are equally close.
        """
        tolerance = float(tolerance_minutes) * 60.0
        snapshot: Dict[str, float] = {}
        for sid, (times, values) in self._series.items():
            gaps = np.abs(times - float(time))
            i = int(np.argmin(gaps))
            if gaps[i] <= tolerance:
                snapshot[sid] = float(values[i])
        logger.debug(f"[DATASET] Snapshot at {time}: {len(snapshot)}/{len(self._series)} sensors")
        return snapshot

    @classmethod
    def from_csv(
        cls,
        registry_path: str | Path,
        readings_path: str | Path,
        station_fields: Optional[Mapping[str, str]] = None,
        sample_fields: Optional[Mapping[str, str]] = None,
    ) -> "SensorDataset":
        stations = load_station_registry(registry_path, station_fields)
        samples = load_sensor_samples(readings_path, sample_fields)
        return cls(stations, samples)


def _first_filled(row: Mapping[str, str], columns: Iterable[str]) -> Optional[str]:
    for column in columns:
        value = (row.get(column) or "").strip()
        if value:
            return value
    return None


def _read_rows(path: str | Path) -> List[Dict[str, str]]:
    path = Path(path)
    if not path.is_file():
        raise FileNotFoundError(f"CSV file does not exist: {path}")
    with path.open("r", newline="", encoding="utf-8-sig") as fh:
        return list(csv.DictReader(fh))


def load_station_registry(path: str | Path, fields: Optional[Mapping[str, str]] = None) -> List[SensorStation]:
    """Read the station registry CSV; `fields` maps roles (see STATION_FIELDS) to column names."""
    cols = {**STATION_FIELDS, **(fields or {})}
    stations: List[SensorStation] = []
    for row in _read_rows(path):
        sid = (row.get(cols["sensor_id"]) or "").strip()
        if not sid:
            continue
        position = as_point([_to_float(row.get(cols[axis])) for axis in ("x", "y", "z")])
        position = np.where(np.isfinite(position), position, 0.0)
        parent = _first_filled(row, (cols["parent_id"], *PARENT_COLUMNS))
        ratio = _to_float(_first_filled(row, (cols["ratio"], *RATIO_COLUMNS)))
        stations.append(SensorStation(sid, position, parent, ratio if math.isfinite(ratio) else None))
    logger.info(f"[DATASET] Loaded {len(stations)} stations from {path}")
    return stations


def load_sensor_samples(path: str | Path, fields: Optional[Mapping[str, str]] = None) -> List[SensorSample]:
    """Read the readings CSV; `fields` maps roles (see SAMPLE_FIELDS) to column names."""
    cols = {**SAMPLE_FIELDS, **(fields or {})}
    samples = [
        SensorSample(
            sensor_id=(row.get(cols["sensor_id"]) or "").strip(),
            time=parse_timestamp(row.get(cols["timestamp"])),
            value=_to_float(row.get(cols["value"])),
        )
        for row in _read_rows(path)
    ]
    logger.info(f"[DATASET] Loaded {len(samples)} samples from {path}")
    return samples
