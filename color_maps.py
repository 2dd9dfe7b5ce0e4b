from __future__ import annotations

import logging
import math
from dataclasses import dataclass
from typing import Dict, Iterable, Mapping, Optional, Sequence, Tuple

import numpy as np
from matplotlib.colors import LinearSegmentedColormap, to_rgb

logger = logging.getLogger(__name__)

RGB = Tuple[float, float, float]

DEFAULT_COLOR_MAP = "rainbow"

_PRESET_HEX: Dict[str, Tuple[Tuple[float, str], ...]] = {
    "rainbow": (
        (0.0, "#2c7bb6"),
        (0.25, "#00a6ca"),
        (0.5, "#00ccbc"),
        (0.75, "#90eb9d"),
        (1.0, "#f9d057"),
    ),
    "viridis": (
        (0.0, "#440154"),
        (0.2, "#3b528b"),
        (0.4, "#21918c"),
        (0.6, "#5ec962"),
        (1.0, "#fde725"),
    ),
    "heat": (
        (0.0, "#000004"),
        (0.25, "#51127c"),
        (0.5, "#b73779"),
        (0.75, "#fc8961"),
        (1.0, "#f9e721"),
    ),
}


@dataclass(frozen=True)
class ColorStop:
    fraction: float
    color: RGB


ColorStops = Tuple[ColorStop, ...]

PRESETS: Dict[str, ColorStops] = {
    name: tuple(ColorStop(f, tuple(to_rgb(hex_color))) for f, hex_color in stops)
    for name, stops in _PRESET_HEX.items()
}


def parse_color(color) -> RGB:
    """Hex string, matplotlib color name or RGB tuple (0-1 floats, or 0-255 ints) -> RGB floats."""
    if isinstance(color, str):
        return tuple(float(c) for c in to_rgb(color))
    channels = [float(c) for c in color][:3]
    if len(channels) != 3:
        raise ValueError(f"Color needs three channels, got {color!r}")
    if any(c > 1.0 for c in channels):
        channels = [c / 255.0 for c in channels]
    return tuple(min(max(c, 0.0), 1.0) for c in channels)


def make_stops(stops: Iterable) -> ColorStops:
    """
    Normalize user stops into a sorted ColorStop tuple.

    Entries may be ColorStop objects, (fraction, color) pairs, mappings with 'stop'/'fraction'
    and 'color' keys, or bare colors. Missing fractions are spread evenly as i / (n - 1).
    """
    raw = list(stops)
    if len(raw) < 2:
        raise ValueError(f"A color map needs at least two stops, got {len(raw)}")

    n = len(raw)
    out = []
    for i, entry in enumerate(raw):
        even = i / max(n - 1, 1)
        if isinstance(entry, ColorStop):
            fraction, color = entry.fraction, entry.color
        elif isinstance(entry, Mapping):
            fraction = entry.get("stop", entry.get("fraction"))
            color = entry.get("color", "#ffffff")
        elif isinstance(entry, (tuple, list)) and len(entry) == 2 and not isinstance(entry[0], str):
            fraction, color = entry
        else:
            fraction, color = None, entry
        if fraction is None or not math.isfinite(float(fraction)):
            fraction = even
        out.append(ColorStop(min(max(float(fraction), 0.0), 1.0), parse_color(color)))

    return tuple(sorted(out, key=lambda s: s.fraction))


def normalize_values(values, vmin: float, vmax: float) -> np.ndarray:
    values = np.asarray(values, dtype=float)
    span = (vmax - vmin) or 1.0
    t = (values - vmin) / span
    t = np.where(np.isfinite(t), t, 0.0)
    return np.clip(t, 0.0, 1.0)


def sample_stops(stops: Sequence[ColorStop], t) -> np.ndarray:
    """
    Colors at fractions `t` (already in [0, 1]), shape (N, 3).

    Uses the first stop pair with f_i <= t <= f_i+1 and interpolates each channel linearly.
    """
    fractions = np.array([s.fraction for s in stops], dtype=float)
    colors = np.array([s.color for s in stops], dtype=float)
    t = np.atleast_1d(np.asarray(t, dtype=float))

    if len(stops) == 1:
        return np.tile(colors[0], (len(t), 1))

    idx = np.searchsorted(fractions, t, side="left")
    k = np.clip(idx - 1, 0, len(stops) - 2)
    f0, f1 = fractions[k], fractions[k + 1]
    span = f1 - f0
    local = (t - f0) / np.where(span != 0.0, span, 1.0)
    local = np.clip(local, 0.0, 1.0)

    out = colors[k] + (colors[k + 1] - colors[k]) * local[:, None]
    out[t <= fractions[0]] = colors[0]
    out[t >= fractions[-1]] = colors[-1]
    return out


def map_scalars(values, vmin: float, vmax: float, stops: Sequence[ColorStop]) -> np.ndarray:
    return sample_stops(stops, normalize_values(values, vmin, vmax))


def map_scalar(value: float, vmin: float, vmax: float, stops: Sequence[ColorStop]) -> RGB:
    r, g, b = map_scalars([value], vmin, vmax, stops)[0]
    return (float(r), float(g), float(b))


class ColorMapRegistry:
    """
    Named color maps: fixed presets plus per-name overrides.

    Overrides replace a single name; presets and other overrides are left alone.
    """

    def __init__(self, presets: Optional[Mapping[str, ColorStops]] = None, default: str = DEFAULT_COLOR_MAP):
        self._presets: Dict[str, ColorStops] = dict(presets if presets is not None else PRESETS)
        self._overrides: Dict[str, ColorStops] = {}
        if default not in self._presets:
            raise ValueError(f"Default color map '{default}' is not a preset")
        self.default = default

    def names(self) -> Tuple[str, ...]:
        return tuple(dict.fromkeys([*self._presets, *self._overrides]))

    def stops(self, name: Optional[str]) -> ColorStops:
        if name in self._overrides:
            return self._overrides[name]
        if name in self._presets:
            return self._presets[name]
        logger.debug(f"[COLOR] Unknown color map '{name}', falling back to '{self.default}'")
        return self._presets[self.default]

    def set_custom(self, name: Optional[str], stops: Iterable) -> ColorStops:
        key = name or "custom"
        self._overrides[key] = make_stops(stops)
        return self._overrides[key]

    def reset(self, name: str) -> None:
        self._overrides.pop(name, None)

    def default_stops(self, name: str) -> ColorStops:
        return self._presets.get(name, self._presets[self.default])

    def copy(self) -> "ColorMapRegistry":
        clone = ColorMapRegistry(self._presets, self.default)
        clone._overrides = dict(self._overrides)
        return clone

    def sample(self, name: Optional[str], t: float) -> RGB:
        r, g, b = sample_stops(self.stops(name), [min(max(float(t), 0.0), 1.0)])[0]
        return (float(r), float(g), float(b))

    def map_values(self, name: Optional[str], values, vmin: float, vmax: float) -> np.ndarray:
        return map_scalars(values, vmin, vmax, self.stops(name))

    def to_matplotlib(self, name: Optional[str], samples: int = 256) -> LinearSegmentedColormap:
        """Resampled matplotlib colormap, usable for legends and colorbars."""
        colors = sample_stops(self.stops(name), np.linspace(0.0, 1.0, samples))
        return LinearSegmentedColormap.from_list(name or self.default, [tuple(c) for c in colors], N=samples)
