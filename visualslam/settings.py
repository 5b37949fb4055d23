"""Camera and feature-extractor settings read from YAML settings files.

The files follow the layout written by OpenCV's file storage: an optional
``%YAML:1.0`` directive line followed by a flat mapping such as
``Camera.fx: 517.3``. Keys that are missing read as zero, as they do in
OpenCV, and the documented fallbacks apply on top of that.
"""

from __future__ import annotations

import enum
import math
from dataclasses import dataclass
from pathlib import Path
from typing import Mapping, Optional

import numpy as np
import yaml

_DEFAULT_FPS = 30.0
_DEPTH_FACTOR_EPS = 1e-5

_MATRIX_DTYPES = {
    "u": np.uint8,
    "c": np.int8,
    "w": np.uint16,
    "s": np.int16,
    "i": np.int32,
    "f": np.float32,
    "d": np.float64,
}


class Sensor(enum.IntEnum):
    """Input sensor of the system."""

    MONOCULAR = 0
    STEREO = 1
    RGBD = 2


class _SettingsLoader(yaml.SafeLoader):
    """Safe loader that also understands OpenCV matrix nodes."""


def _construct_opencv_matrix(loader, node):
    fields = loader.construct_mapping(node, deep=True)
    try:
        rows = int(fields["rows"])
        cols = int(fields["cols"])
        data = fields["data"]
    except KeyError as exc:
        raise ValueError(f"opencv-matrix node lacks {exc.args[0]!r}") from None
    dtype = _MATRIX_DTYPES.get(str(fields.get("dt", "d")), np.float64)
    values = np.asarray(data, dtype=dtype)
    if values.size != rows * cols:
        raise ValueError(
            f"opencv-matrix holds {values.size} values, expected {rows * cols}"
        )
    return values.reshape(rows, cols)


_SettingsLoader.add_constructor(
    "tag:yaml.org,2002:opencv-matrix", _construct_opencv_matrix
)


def parse_settings(text: str) -> dict:
    """Parse the text of a settings file into a dictionary."""
    body = "\n".join(
        line for line in text.splitlines() if not line.lstrip().startswith("%YAML")
    )
    data = yaml.load(body, Loader=_SettingsLoader)
    if data is None:
        return {}
    if not isinstance(data, Mapping):
        raise ValueError("settings must be a mapping of keys to values")
    return dict(data)


def read_settings(path) -> dict:
    """Read and parse a settings file; raises ``OSError`` if it cannot be opened."""
    return parse_settings(Path(path).read_text(encoding="utf-8"))


def _real(settings: Mapping, key: str) -> float:
    value = settings.get(key)
    if value is None:
        return 0.0
    try:
        return float(value)
    except (TypeError, ValueError):
        raise ValueError(f"setting {key!r} is not a number: {value!r}") from None


def _integer(settings: Mapping, key: str) -> int:
    value = _real(settings, key)
    # Real values read as integers are rounded to nearest.
    return int(math.floor(value + 0.5))


@dataclass(frozen=True, eq=False)
class CameraCalibration:
    """Intrinsics, distortion and frame-rate dependent tracking parameters."""

    k: np.ndarray
    dist_coef: np.ndarray
    bf: float
    fps: float
    min_frames: int
    max_frames: int
    rgb: bool
    th_depth: Optional[float] = None
    depth_map_factor: float = 1.0

    @property
    def fx(self) -> float:
        return float(self.k[0, 0])

    @property
    def fy(self) -> float:
        return float(self.k[1, 1])

    @property
    def cx(self) -> float:
        return float(self.k[0, 2])

    @property
    def cy(self) -> float:
        return float(self.k[1, 2])

    @classmethod
    def from_settings(cls, settings: Mapping, sensor) -> "CameraCalibration":
        """Build the calibration for ``sensor`` from a settings mapping."""
        sensor = Sensor(sensor)
        fx = _real(settings, "Camera.fx")
        fy = _real(settings, "Camera.fy")
        cx = _real(settings, "Camera.cx")
        cy = _real(settings, "Camera.cy")

        k = np.eye(3, dtype=np.float32)
        k[0, 0] = fx
        k[1, 1] = fy
        k[0, 2] = cx
        k[1, 2] = cy

        coefficients = [
            _real(settings, "Camera.k1"),
            _real(settings, "Camera.k2"),
            _real(settings, "Camera.p1"),
            _real(settings, "Camera.p2"),
        ]
        k3 = _real(settings, "Camera.k3")
        if k3 != 0:
            coefficients.append(k3)
        dist_coef = np.array(coefficients, dtype=np.float32)

        bf = _real(settings, "Camera.bf")

        fps = _real(settings, "Camera.fps")
        if fps == 0:
            fps = _DEFAULT_FPS

        rgb = _integer(settings, "Camera.RGB") != 0

        th_depth = None
        if sensor in (Sensor.STEREO, Sensor.RGBD):
            if fx == 0:
                raise ValueError("Camera.fx must be non-zero to derive the depth threshold")
            th_depth = bf * _real(settings, "ThDepth") / fx

        depth_map_factor = 1.0
        if sensor is Sensor.RGBD:
            factor = _real(settings, "DepthMapFactor")
            depth_map_factor = 1.0 if abs(factor) < _DEPTH_FACTOR_EPS else 1.0 / factor

        return cls(
            k=k,
            dist_coef=dist_coef,
            bf=bf,
            fps=fps,
            min_frames=0,
            max_frames=int(fps),
            rgb=rgb,
            th_depth=th_depth,
            depth_map_factor=depth_map_factor,
        )


@dataclass(frozen=True)
class OrbParameters:
    """Parameters of the ORB feature extractor."""

    n_features: int
    scale_factor: float
    n_levels: int
    ini_th_fast: int
    min_th_fast: int

    @property
    def initializer_features(self) -> int:
        """Feature budget of the extractor used for monocular initialisation."""
        return 2 * self.n_features

    @classmethod
    def from_settings(cls, settings: Mapping) -> "OrbParameters":
        """Build the extractor parameters from a settings mapping."""
        return cls(
            n_features=_integer(settings, "ORBextractor.nFeatures"),
            scale_factor=_real(settings, "ORBextractor.scaleFactor"),
            n_levels=_integer(settings, "ORBextractor.nLevels"),
            ini_th_fast=_integer(settings, "ORBextractor.iniThFAST"),
            min_th_fast=_integer(settings, "ORBextractor.minThFAST"),
        )