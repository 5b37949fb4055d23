"""RANSAC camera relocalisation from 2D-3D matches using EPnP hypotheses."""

from __future__ import annotations

import math
import random
from dataclasses import dataclass, field
from typing import Optional, Sequence

import numpy as np

from visualslam.epnp import solve_epnp


@dataclass(frozen=True)
class Correspondence:
    """A keypoint observation matched to a 3D map point.

    ``sigma2`` is the squared measurement uncertainty of the keypoint's
    pyramid level. Matches whose map point is flagged ``bad`` are ignored.
    """

    point_world: Sequence[float]
    point_image: Sequence[float]
    sigma2: float = 1.0
    bad: bool = False


@dataclass(frozen=True)
class RansacResult:
    """Outcome of a RANSAC run.

    ``pose`` is a 4x4 world-to-camera transform (float32) or ``None``.
    ``inliers`` holds one flag per entry of the original match list, or is
    empty when the solver refused to run. ``no_more`` is true once the
    iteration budget is exhausted.
    """

    pose: Optional[np.ndarray]
    inliers: list = field(default_factory=list)
    n_inliers: int = 0
    no_more: bool = False

    @property
    def found(self) -> bool:
        return self.pose is not None


def _pose_matrix(rotation, translation):
    pose = np.eye(4, dtype=np.float32)
    pose[:3, :3] = rotation
    pose[:3, 3] = translation
    return pose


class PnPSolver:
    """RANSAC over minimal EPnP samples, refined on the best inlier set."""

    def __init__(self, matches, fu, fv, uc, vc, rng=None):
        self._n_matches = len(matches)
        usable = [
            (index, match)
            for index, match in enumerate(matches)
            if match is not None and not match.bad
        ]
        self._keypoint_indices = [index for index, _ in usable]
        self._points_world = np.array(
            [m.point_world for _, m in usable], dtype=float
        ).reshape(-1, 3)
        self._points_image = np.array(
            [m.point_image for _, m in usable], dtype=float
        ).reshape(-1, 2)
        self._sigma2 = np.array([m.sigma2 for _, m in usable], dtype=float)

        self.fu = float(fu)
        self.fv = float(fv)
        self.uc = float(uc)
        self.vc = float(vc)
        self._rng = rng if rng is not None else random.Random()

        self._iterations = 0
        self._best_inliers = np.zeros(len(usable), dtype=bool)
        self._best_count = 0
        self._best_pose: Optional[np.ndarray] = None

        self.set_ransac_parameters()

    @property
    def n_correspondences(self) -> int:
        return len(self._keypoint_indices)

    def set_ransac_parameters(
        self,
        probability=0.99,
        min_inliers=10,
        max_iterations=300,
        min_set=4,
        epsilon=0.5,
        th2=5.991,
    ):
        """Configure RANSAC, adjusting the thresholds to the number of matches."""
        n = self.n_correspondences
        self.probability = probability
        self.min_set = min_set

        n_min_inliers = int(n * epsilon)
        n_min_inliers = max(n_min_inliers, min_inliers, min_set)
        self.min_inliers = n_min_inliers

        if n > 0 and epsilon < n_min_inliers / n:
            epsilon = n_min_inliers / n
        self.epsilon = epsilon

        if n_min_inliers == n or n == 0 or epsilon >= 1.0:
            n_iterations = 1
        else:
            n_iterations = math.ceil(
                math.log(1 - probability) / math.log(1 - epsilon ** 3)
            )
        self.max_iterations = max(1, min(n_iterations, max_iterations))

        self._max_error = self._sigma2 * th2

    def find(self) -> RansacResult:
        """Run RANSAC up to the configured iteration budget."""
        return self.iterate(self.max_iterations)

    def iterate(self, n_iterations) -> RansacResult:
        """Run at least ``n_iterations`` more hypotheses, stopping at the first refined pose."""
        n = self.n_correspondences
        if n < self.min_inliers:
            return RansacResult(pose=None, inliers=[], n_inliers=0, no_more=True)

        current = 0
        while self._iterations < self.max_iterations or current < n_iterations:
            current += 1
            self._iterations += 1

            sample = self._rng.sample(range(n), self.min_set)
            estimate = self._estimate(sample)
            if estimate is None:
                continue
            rotation, translation = estimate
            inliers = self._check_inliers(rotation, translation)
            count = int(inliers.sum())

            if count >= self.min_inliers:
                if count > self._best_count:
                    self._best_inliers = inliers
                    self._best_count = count
                    self._best_pose = _pose_matrix(rotation, translation)

                refined = self._refine()
                if refined is not None:
                    pose, refined_inliers = refined
                    return RansacResult(
                        pose=pose,
                        inliers=self._to_match_flags(refined_inliers),
                        n_inliers=int(refined_inliers.sum()),
                        no_more=False,
                    )

        if self._iterations >= self.max_iterations:
            if self._best_count >= self.min_inliers and self._best_pose is not None:
                return RansacResult(
                    pose=self._best_pose.copy(),
                    inliers=self._to_match_flags(self._best_inliers),
                    n_inliers=self._best_count,
                    no_more=True,
                )
            return RansacResult(pose=None, inliers=[], n_inliers=0, no_more=True)

        return RansacResult(pose=None, inliers=[], n_inliers=0, no_more=False)

    def _estimate(self, indices):
        try:
            estimate = solve_epnp(
                self._points_world[indices],
                self._points_image[indices],
                self.fu,
                self.fv,
                self.uc,
                self.vc,
            )
        except np.linalg.LinAlgError:
            return None
        return estimate.rotation, estimate.translation

    def _refine(self):
        indices = np.flatnonzero(self._best_inliers)
        if len(indices) == 0:
            return None
        estimate = self._estimate(indices)
        if estimate is None:
            return None
        rotation, translation = estimate
        inliers = self._check_inliers(rotation, translation)
        if int(inliers.sum()) > self.min_inliers:
            return _pose_matrix(rotation, translation), inliers
        return None

    def _check_inliers(self, rotation, translation):
        with np.errstate(divide="ignore", invalid="ignore", over="ignore"):
            cam = self._points_world @ np.asarray(rotation).T + np.asarray(translation)
            inv_z = 1.0 / cam[:, 2]
            ue = self.uc + self.fu * cam[:, 0] * inv_z
            ve = self.vc + self.fv * cam[:, 1] * inv_z
            dx = self._points_image[:, 0] - ue
            dy = self._points_image[:, 1] - ve
            error2 = dx * dx + dy * dy
            return error2 < self._max_error

    def _to_match_flags(self, mask):
        flags = [False] * self._n_matches
        for index, flag in zip(self._keypoint_indices, mask):
            if flag:
                flags[index] = True
        return flags