import math

import numpy as np
import pytest

from visualslam.settings import Sensor
from visualslam.trajectory import (
    KeyFrameRecord,
    MonocularTrajectoryError,
    TrackedFrame,
    frame_poses,
    rotation_to_quaternion,
    write_keyframe_trajectory_tum,
    write_kitti_trajectory,
    write_map_points,
    write_tum_trajectory,
)


def _rot_z(angle):
    c, s = math.cos(angle), math.sin(angle)
    return np.array([[c, -s, 0.0], [s, c, 0.0], [0.0, 0.0, 1.0]])


def _rot_x(angle):
    c, s = math.cos(angle), math.sin(angle)
    return np.array([[1.0, 0.0, 0.0], [0.0, c, -s], [0.0, s, c]])


def _pose(rotation, translation):
    pose = np.eye(4)
    pose[:3, :3] = rotation
    pose[:3, 3] = translation
    return pose


def _quat_to_matrix(q):
    x, y, z, w = q
    return np.array([
        [1 - 2 * (y * y + z * z), 2 * (x * y - z * w), 2 * (x * z + y * w)],
        [2 * (x * y + z * w), 1 - 2 * (x * x + z * z), 2 * (y * z - x * w)],
        [2 * (x * z - y * w), 2 * (y * z + x * w), 1 - 2 * (x * x + y * y)],
    ])


def test_identity_quaternion():
    assert rotation_to_quaternion(np.eye(3)) == pytest.approx((0.0, 0.0, 0.0, 1.0))


@pytest.mark.parametrize(
    "rotation",
    [_rot_z(0.3), _rot_x(math.pi), _rot_z(math.pi), _rot_x(2.5) @ _rot_z(1.1)],
)
def test_quaternion_round_trip(rotation):
    q = rotation_to_quaternion(rotation)
    assert math.isclose(sum(v * v for v in q), 1.0, rel_tol=1e-9)
    assert np.allclose(_quat_to_matrix(q), rotation, atol=1e-9)


def test_frame_poses_relative_to_first_keyframe():
    kf0 = KeyFrameRecord(id=0, timestamp=0.0, pose=_pose(_rot_z(0.4), [1.0, 2.0, 3.0]))
    frames = [TrackedFrame(relative_pose=np.eye(4), reference_keyframe=0, time=0.5)]
    (time, rwc, twc), = list(frame_poses(frames, [kf0]))
    assert time == 0.5
    assert np.allclose(rwc, np.eye(3), atol=1e-6)
    assert np.allclose(twc, 0.0, atol=1e-6)


def test_culled_reference_walks_to_parent():
    t0 = _pose(_rot_z(0.2), [0.5, 0.0, 0.1])
    t1 = _pose(_rot_x(0.3), [0.0, 1.0, -0.4])
    kf0 = KeyFrameRecord(id=0, timestamp=0.0, pose=t0)
    good = KeyFrameRecord(id=1, timestamp=1.0, pose=t1)
    culled = KeyFrameRecord(
        id=1, timestamp=1.0, pose=np.eye(4), bad=True, parent=0,
        pose_to_parent=t1 @ np.linalg.inv(t0),
    )
    rel = _pose(_rot_z(0.1), [0.2, 0.0, 0.0])
    frames = [TrackedFrame(relative_pose=rel, reference_keyframe=1, time=2.0)]
    _, r_good, t_good = next(frame_poses(frames, [kf0, good]))
    _, r_cull, t_cull = next(frame_poses(frames, [kf0, culled]))
    assert np.allclose(r_good, r_cull, atol=1e-5)
    assert np.allclose(t_good, t_cull, atol=1e-5)


def test_lost_frames_skipped_only_when_asked():
    kf0 = KeyFrameRecord(id=0, timestamp=0.0, pose=np.eye(4))
    frames = [
        TrackedFrame(relative_pose=np.eye(4), reference_keyframe=0, time=1.0),
        TrackedFrame(relative_pose=np.eye(4), reference_keyframe=0, time=2.0, lost=True),
    ]
    assert [p[0] for p in frame_poses(frames, [kf0])] == [1.0]
    assert [p[0] for p in frame_poses(frames, [kf0], skip_lost=False)] == [1.0, 2.0]


def test_frame_poses_needs_keyframes():
    frames = [TrackedFrame(relative_pose=np.eye(4), reference_keyframe=0, time=1.0)]
    with pytest.raises(ValueError):
        list(frame_poses(frames, []))


def test_bad_keyframe_without_parent_raises():
    kf0 = KeyFrameRecord(id=0, timestamp=0.0, pose=np.eye(4), bad=True)
    frames = [TrackedFrame(relative_pose=np.eye(4), reference_keyframe=0, time=1.0)]
    with pytest.raises(ValueError):
        list(frame_poses(frames, [kf0]))


@pytest.mark.parametrize("writer", [write_tum_trajectory, write_kitti_trajectory])
def test_monocular_frame_trajectory_rejected(tmp_path, writer):
    kf0 = KeyFrameRecord(id=0, timestamp=0.0, pose=np.eye(4))
    with pytest.raises(MonocularTrajectoryError):
        writer(tmp_path / "out.txt", [], [kf0], Sensor.MONOCULAR)
    assert not (tmp_path / "out.txt").exists()


def test_tum_trajectory_file(tmp_path):
    kf0 = KeyFrameRecord(id=0, timestamp=0.0, pose=np.eye(4))
    rel = _pose(np.eye(3), [0.0, 0.0, -2.0])
    frames = [
        TrackedFrame(relative_pose=rel, reference_keyframe=0, time=1.5),
        TrackedFrame(relative_pose=rel, reference_keyframe=0, time=1.6, lost=True),
    ]
    out = tmp_path / "traj.txt"
    write_tum_trajectory(out, frames, [kf0], Sensor.STEREO)
    lines = out.read_text().splitlines()
    assert len(lines) == 1
    fields = lines[0].split()
    assert fields[0] == "1.500000"
    assert len(fields) == 8
    assert all(len(f.split(".")[1]) == 9 for f in fields[1:])
    assert [float(f) for f in fields[1:]] == pytest.approx([0.0, 0.0, 2.0, 0.0, 0.0, 0.0, 1.0])


def test_kitti_trajectory_keeps_lost_frames(tmp_path):
    kf0 = KeyFrameRecord(id=0, timestamp=0.0, pose=np.eye(4))
    frames = [
        TrackedFrame(relative_pose=np.eye(4), reference_keyframe=0, time=1.0),
        TrackedFrame(relative_pose=np.eye(4), reference_keyframe=0, time=2.0, lost=True),
    ]
    out = tmp_path / "kitti.txt"
    write_kitti_trajectory(out, frames, [kf0], Sensor.RGBD)
    lines = out.read_text().splitlines()
    assert len(lines) == 2
    values = [float(v) for v in lines[0].split()]
    assert len(values) == 12
    assert values == pytest.approx([1, 0, 0, 0, 0, 1, 0, 0, 0, 0, 1, 0])


def test_keyframe_trajectory_sorted_and_skips_bad(tmp_path):
    kfs = [
        KeyFrameRecord(id=2, timestamp=2.0, pose=_pose(np.eye(3), [0.0, 0.0, -1.0])),
        KeyFrameRecord(id=1, timestamp=1.0, pose=np.eye(4), bad=True, parent=0),
        KeyFrameRecord(id=0, timestamp=0.25, pose=np.eye(4)),
    ]
    out = tmp_path / "kf.txt"
    write_keyframe_trajectory_tum(out, kfs)
    lines = out.read_text().splitlines()
    assert [line.split()[0] for line in lines] == ["0.250000", "2.000000"]
    second = [float(v) for v in lines[1].split()[1:]]
    assert second[:3] == pytest.approx([0.0, 0.0, 1.0])
    assert all(len(f.split(".")[1]) == 7 for f in lines[1].split()[1:])


def test_map_points_file(tmp_path):
    out = tmp_path / "points.txt"
    write_map_points(out, [[1.0, 2.0, 3.0], None, [-0.5, 0.25, 4.0]])
    assert out.read_text().splitlines() == [
        " 1.0000000 2.0000000 3.0000000",
        " -0.5000000 0.2500000 4.0000000",
    ]


def test_map_points_reject_wrong_shape(tmp_path):
    with pytest.raises(ValueError):
        write_map_points(tmp_path / "p.txt", [[1.0, 2.0]])