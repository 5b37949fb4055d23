"""Export of camera and keyframe trajectories and of map points.

Frame poses are kept relative to a reference keyframe, so that they
follow that keyframe when bundle adjustment or loop closure moves it.
The exported trajectories are expressed in the frame of the first
keyframe, which need not sit at the origin after a loop closure.
"""

from __future__ import annotations

import math
from dataclasses import dataclass
from pathlib import Path
from typing import Iterable, Iterator, Mapping, Optional, Sequence

import numpy as np

from visualslam.settings import Sensor


class MonocularTrajectoryError(ValueError):
    """Raised when a frame trajectory is requested from a monocular system."""


@dataclass(frozen=True, eq=False)
class TrackedFrame:
    """Pose of one processed frame relative to its reference keyframe."""

    relative_pose: np.ndarray
    reference_keyframe: int
    time: float
    lost: bool = False


@dataclass(frozen=True, eq=False)
class KeyFrameRecord:
    """What the exporters need from a keyframe.

    ``pose`` is the world-to-camera transform. A keyframe flagged ``bad``
    was culled; it then carries its ``parent`` in the spanning tree and
    ``pose_to_parent``, its pose relative to that parent.
    """

    id: int
    timestamp: float
    pose: np.ndarray
    bad: bool = False
    parent: Optional[int] = None
    pose_to_parent: Optional[np.ndarray] = None

    @property
    def rotation(self) -> np.ndarray:
        return np.asarray(self.pose, dtype=float)[:3, :3]

    @property
    def translation(self) -> np.ndarray:
        return np.asarray(self.pose, dtype=float)[:3, 3]

    @property
    def camera_center(self) -> np.ndarray:
        return -self.rotation.T @ self.translation

    @property
    def pose_inverse(self) -> np.ndarray:
        inverse = np.eye(4)
        rwc = self.rotation.T
        inverse[:3, :3] = rwc
        inverse[:3, 3] = -rwc @ self.translation
        return inverse


def rotation_to_quaternion(rotation) -> tuple:
    """Unit quaternion of a rotation matrix as ``(qx, qy, qz, qw)``."""
    m = np.asarray(rotation, dtype=float).reshape(3, 3)
    trace = m[0, 0] + m[1, 1] + m[2, 2]
    if trace > 0.0:
        t = math.sqrt(trace + 1.0)
        w = 0.5 * t
        t = 0.5 / t
        return (
            float((m[2, 1] - m[1, 2]) * t),
            float((m[0, 2] - m[2, 0]) * t),
            float((m[1, 0] - m[0, 1]) * t),
            float(w),
        )
    i = 0
    if m[1, 1] > m[0, 0]:
        i = 1
    if m[2, 2] > m[i, i]:
        i = 2
    j = (i + 1) % 3
    k = (j + 1) % 3
    t = math.sqrt(m[i, i] - m[j, j] - m[k, k] + 1.0)
    q = [0.0, 0.0, 0.0]
    q[i] = 0.5 * t
    t = 0.5 / t
    w = (m[k, j] - m[j, k]) * t
    q[j] = (m[j, i] + m[i, j]) * t
    q[k] = (m[k, i] + m[i, k]) * t
    return float(q[0]), float(q[1]), float(q[2]), float(w)


def _index_keyframes(keyframes: Iterable[KeyFrameRecord]) -> Mapping[int, KeyFrameRecord]:
    if isinstance(keyframes, Mapping):
        return dict(keyframes)
    return {kf.id: kf for kf in keyframes}


def _sorted_keyframes(keyframes) -> list:
    return sorted(_index_keyframes(keyframes).values(), key=lambda kf: kf.id)


def _lookup(by_id: Mapping[int, KeyFrameRecord], kf_id) -> KeyFrameRecord:
    try:
        return by_id[kf_id]
    except KeyError:
        raise ValueError(f"unknown keyframe {kf_id!r}") from None


def frame_poses(
    tracked_frames: Iterable[TrackedFrame],
    keyframes,
    skip_lost: bool = True,
) -> Iterator[tuple]:
    """Yield ``(time, rotation_wc, translation_wc)`` for each tracked frame.

    Poses are camera-to-world, relative to the first keyframe (lowest id).
    Culled reference keyframes are replaced by walking up the spanning tree.
    """
    by_id = _index_keyframes(keyframes)
    if not by_id:
        raise ValueError("at least one keyframe is required")
    origin = by_id[min(by_id)]
    two = origin.pose_inverse

    for frame in tracked_frames:
        if skip_lost and frame.lost:
            continue
        kf = _lookup(by_id, frame.reference_keyframe)
        trw = np.eye(4)
        visited = set()
        while kf.bad:
            if kf.id in visited or kf.parent is None or kf.pose_to_parent is None:
                raise ValueError(f"keyframe {kf.id} is culled without a usable parent")
            visited.add(kf.id)
            trw = trw @ np.asarray(kf.pose_to_parent, dtype=float)
            kf = _lookup(by_id, kf.parent)
        trw = trw @ np.asarray(kf.pose, dtype=float) @ two

        tcw = np.asarray(frame.relative_pose, dtype=float) @ trw
        rwc = tcw[:3, :3].T
        twc = -rwc @ tcw[:3, 3]
        yield frame.time, rwc.astype(np.float32), twc.astype(np.float32)


def _reject_monocular(sensor) -> None:
    if Sensor(sensor) is Sensor.MONOCULAR:
        raise MonocularTrajectoryError("frame trajectories cannot be saved for a monocular sensor")


def _fmt(values, digits) -> str:
    return " ".join(f"{float(v):.{digits}f}" for v in values)


def write_tum_trajectory(path, tracked_frames, keyframes, sensor) -> None:
    """Write the camera trajectory in TUM format: ``time tx ty tz qx qy qz qw``."""
    _reject_monocular(sensor)
    poses = list(frame_poses(tracked_frames, keyframes, skip_lost=True))
    with Path(path).open("w", encoding="utf-8") as out:
        for time, rwc, twc in poses:
            q = np.asarray(rotation_to_quaternion(rwc), dtype=np.float32)
            out.write(f"{time:.6f} {_fmt(list(twc) + list(q), 9)}\n")


def write_keyframe_trajectory_tum(path, keyframes) -> None:
    """Write the poses of all good keyframes in TUM format, ordered by id."""
    with Path(path).open("w", encoding="utf-8") as out:
        for kf in _sorted_keyframes(keyframes):
            if kf.bad:
                continue
            q = np.asarray(rotation_to_quaternion(kf.rotation.T), dtype=np.float32)
            center = kf.camera_center.astype(np.float32)
            out.write(f"{kf.timestamp:.6f} {_fmt(list(center) + list(q), 7)}\n")


def write_kitti_trajectory(path, tracked_frames, keyframes, sensor) -> None:
    """Write the camera trajectory in KITTI format: the top 3x4 of each camera-to-world pose."""
    _reject_monocular(sensor)
    poses = list(frame_poses(tracked_frames, keyframes, skip_lost=False))
    with Path(path).open("w", encoding="utf-8") as out:
        for _, rwc, twc in poses:
            row_values = []
            for row in range(3):
                row_values.extend(rwc[row])
                row_values.append(twc[row])
            out.write(_fmt(row_values, 9) + "\n")


def write_map_points(path, points: Iterable[Optional[Sequence[float]]]) -> None:
    """Write one line per map point position; ``None`` entries (culled points) are skipped."""
    with Path(path).open("w", encoding="utf-8") as out:
        for point in points:
            if point is None:
                continue
            xyz = np.asarray(point, dtype=np.float32).reshape(-1)
            if xyz.size != 3:
                raise ValueError("map point positions must have three coordinates")
            out.write(" " + _fmt(xyz, 7) + "\n")