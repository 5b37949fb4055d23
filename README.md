# visualslam

Building blocks for a feature-based visual SLAM pipeline, written on top of
NumPy and PyYAML.

## Modules

### `visualslam.epnp`

Closed-form camera pose from 3D–2D correspondences. The method is EPnP with
Gauss–Newton refinement of the control-point scales.

- `solve_epnp(points_world, points_image, fu, fv, uc, vc)` takes points of
  shape `(n, 3)` and `(n, 2)` and returns a `PoseEstimate`. A
  `PoseEstimate` has `rotation` (3×3), `translation` (3) and `error`, the
  mean reprojection error in pixels. Three beta approximations are tried,
  and the one with the lowest error is kept. Badly shaped or empty input
  raises `ValueError`.
- `reprojection_error(rotation, translation, points_world, points_image, fu, fv, uc, vc)`
  returns the mean pixel distance between the observed points and the
  reprojected points.
- `mat_to_quat(rotation)` returns `[q0, q1, q2, q3]`, with `q3` the scalar
  part.
- `relative_error(rotation_true, translation_true, rotation_est, translation_est)`
  returns `(rot_err, transl_err)`. Both are relative errors: the rotation
  error is measured on quaternions and allows for the sign ambiguity.
- `qr_solve(a, b)` is a Householder QR least-squares solver. It raises
  `numpy.linalg.LinAlgError` on a singular column.

### `visualslam.pnp_ransac`

`PnPSolver(matches, fu, fv, uc, vc, rng=None)` runs RANSAC around EPnP.

- `matches` is a list of `Correspondence(point_world, point_image, sigma2=1.0, bad=False)`
  or `None`. Entries that are `None` or flagged `bad` are ignored.
- `rng` is a `random.Random`, which makes runs repeatable.
- `set_ransac_parameters(probability=0.99, min_inliers=10, max_iterations=300, min_set=4, epsilon=0.5, th2=5.991)`
  raises the minimum inlier count to at least `n * epsilon` and at least
  `min_set`. It derives the iteration budget from the probability, and
  sets each point's error threshold to `sigma2 * th2`.
- `find()` runs the whole budget. `iterate(n_iterations)` runs in steps.
  Both return a `RansacResult`:
  - `pose`: a 4×4 float32 world-to-camera transform, or `None`.
  - `inliers`: one flag per entry of the original match list.
  - `n_inliers`.
  - `no_more`: true once the budget is spent.
  - `found`.

A hypothesis is refined on the best inlier set. The refined pose is returned
once it has more inliers than the minimum. When the budget runs out, the best
unrefined hypothesis is returned if it has enough inliers.

### `visualslam.settings`

- `read_settings(path)` and `parse_settings(text)` load flat YAML settings
  files.
  - A leading `%YAML:1.0` line is skipped.
  - `!!opencv-matrix` nodes become NumPy arrays.
- `Sensor` is `MONOCULAR`, `STEREO` or `RGBD`.
- `CameraCalibration.from_settings(settings, sensor)` builds the following
  from the `Camera.*` keys:
  - the intrinsic matrix `k`;
  - `dist_coef`: `k1 k2 p1 p2`, plus `k3` when it is non-zero;
  - `bf`;
  - `fps`: 30 when the value is 0;
  - `min_frames` and `max_frames`;
  - `rgb`;
  - `th_depth`: `bf * ThDepth / fx`, for stereo and RGB-D only;
  - `depth_map_factor`: the inverse of `DepthMapFactor`, for RGB-D only.
- `OrbParameters.from_settings(settings)` reads the `ORBextractor.*` keys.

Missing keys read as zero.

### `visualslam.trajectory`

- `TrackedFrame` holds a frame's pose relative to its reference keyframe.
- `KeyFrameRecord` holds a keyframe's world-to-camera pose. A culled keyframe
  has `bad=True`, `parent` and `pose_to_parent`.
- `frame_poses(tracked_frames, keyframes, skip_lost=True)` yields
  `(time, rotation_wc, translation_wc)`:
  - poses are expressed relative to the keyframe with the lowest id;
  - culled reference keyframes are replaced by walking up the spanning tree.
- `write_tum_trajectory(path, tracked_frames, keyframes, sensor)` writes
  `time tx ty tz qx qy qz qw` and skips lost frames.
- `write_kitti_trajectory(path, tracked_frames, keyframes, sensor)` writes
  the top 3×4 of every frame's camera-to-world pose, lost frames included.
- Both of these raise `MonocularTrajectoryError` for `Sensor.MONOCULAR`.
- `write_keyframe_trajectory_tum(path, keyframes)` writes every good keyframe
  in TUM format, ordered by id.
- `write_map_points(path, points)` writes one position per line and skips
  `None` entries.
- `rotation_to_quaternion(rotation)` returns `(qx, qy, qz, qw)`.

### `visualslam.viewer_control`

- `ViewerSettings.from_settings(settings)` reads:
  - the frame period, with fps defaulting to 30;
  - the image size, defaulting to 640×480;
  - the `Viewer.Viewpoint*` values.
- `ViewerControl` is a thread-safe stop/finish handshake for a display loop.
  - It starts out stopped and finished. `start()` marks it running.
  - `request_stop()` is ignored while the loop is stopped.
  - `stop()` honours a pending stop request, unless finishing was requested.
  - The other methods are `release()`, `request_finish()`,
    `check_finish()`, `set_finish()`, `is_finished()` and `is_stopped()`.

## What the package does not do

These are solvers and utilities, not a running SLAM system. The package does
not:

- read images or extract and match features;
- keep a map of keyframes and points;
- decide when to insert keyframes;
- close loops;
- draw anything.

`ViewerControl` only coordinates a loop that you write yourself. The package
has no command-line program.

## Installation

```
pip install .
```

To run the tests:

```
pip install ".[test]"
pytest
```

## Example

```python
import numpy as np
from visualslam.epnp import solve_epnp

points_world = np.random.default_rng(0).uniform(-1, 1, (20, 3)) + [0, 0, 5]
fu = fv = 500.0
uc, vc = 320.0, 240.0
points_image = np.column_stack((
    uc + fu * points_world[:, 0] / points_world[:, 2],
    vc + fv * points_world[:, 1] / points_world[:, 2],
))

estimate = solve_epnp(points_world, points_image, fu, fv, uc, vc)
print(estimate.rotation, estimate.translation, estimate.error)
```