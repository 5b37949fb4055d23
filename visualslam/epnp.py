"""Efficient Perspective-n-Point (EPnP) pose estimation.

The camera pose is expressed through four virtual control points. The
pose is recovered from the null space of a linear system built from the
2D-3D correspondences, then refined with a few Gauss-Newton steps.
"""

from __future__ import annotations

from dataclasses import dataclass

import numpy as np

_PAIRS = ((0, 1), (0, 2), (0, 3), (1, 2), (1, 3), (2, 3))
_GAUSS_NEWTON_ITERATIONS = 5


@dataclass(frozen=True)
class PoseEstimate:
    """Camera pose (world to camera) and its mean reprojection error."""

    rotation: np.ndarray
    translation: np.ndarray
    error: float


def qr_solve(a, b):
    """Solve ``a @ x = b`` in the least-squares sense with Householder QR.

    Raises ``numpy.linalg.LinAlgError`` when a column turns out singular.
    """
    a = np.array(a, dtype=float)
    b = np.array(b, dtype=float).reshape(-1)
    if a.ndim != 2:
        raise ValueError("a must be a two-dimensional matrix")
    nr, nc = a.shape
    if b.shape[0] != nr:
        raise ValueError("b must have one entry per row of a")
    if nr < nc or nc == 0:
        raise ValueError("a must have at least as many rows as columns")

    a1 = np.zeros(nc)
    a2 = np.zeros(nc)
    for k in range(nc):
        # The pivot magnitude is taken over rows k .. nr-2 (the last row is not scanned).
        eta = float(np.max(np.abs(a[k:max(nr - 1, k + 1), k])))
        if eta == 0:
            raise np.linalg.LinAlgError("matrix is singular")
        a[k:, k] /= eta
        sigma = float(np.sqrt(np.dot(a[k:, k], a[k:, k])))
        if a[k, k] < 0:
            sigma = -sigma
        a[k, k] += sigma
        a1[k] = sigma * a[k, k]
        a2[k] = -eta * sigma
        for j in range(k + 1, nc):
            tau = np.dot(a[k:, k], a[k:, j]) / a1[k]
            a[k:, j] -= tau * a[k:, k]

    for j in range(nc):
        tau = np.dot(a[j:, j], b[j:]) / a1[j]
        b[j:] -= tau * a[j:, j]

    x = np.zeros(nc)
    x[nc - 1] = b[nc - 1] / a2[nc - 1]
    for i in range(nc - 2, -1, -1):
        x[i] = (b[i] - np.dot(a[i, i + 1:], x[i + 1:])) / a2[i]
    return x


def reprojection_error(rotation, translation, points_world, points_image, fu, fv, uc, vc):
    """Mean pixel distance between observed and reprojected points."""
    r = np.asarray(rotation, dtype=float).reshape(3, 3)
    t = np.asarray(translation, dtype=float).reshape(3)
    pws = np.asarray(points_world, dtype=float).reshape(-1, 3)
    us = np.asarray(points_image, dtype=float).reshape(-1, 2)
    if len(pws) != len(us):
        raise ValueError("points_world and points_image differ in length")
    if len(pws) == 0:
        raise ValueError("at least one correspondence is required")
    cam = pws @ r.T + t
    inv_z = 1.0 / cam[:, 2]
    ue = uc + fu * cam[:, 0] * inv_z
    ve = vc + fv * cam[:, 1] * inv_z
    dist = np.sqrt((us[:, 0] - ue) ** 2 + (us[:, 1] - ve) ** 2)
    return float(np.sum(dist) / len(pws))


def mat_to_quat(rotation):
    """Quaternion of a rotation matrix as ``[q0, q1, q2, q3]`` with q3 the scalar part."""
    r = np.asarray(rotation, dtype=float).reshape(3, 3)
    tr = r[0, 0] + r[1, 1] + r[2, 2]
    if tr > 0.0:
        q = np.array([r[1, 2] - r[2, 1], r[2, 0] - r[0, 2], r[0, 1] - r[1, 0], tr + 1.0])
        n4 = q[3]
    elif r[0, 0] > r[1, 1] and r[0, 0] > r[2, 2]:
        q = np.array([
            1.0 + r[0, 0] - r[1, 1] - r[2, 2],
            r[1, 0] + r[0, 1],
            r[2, 0] + r[0, 2],
            r[1, 2] - r[2, 1],
        ])
        n4 = q[0]
    elif r[1, 1] > r[2, 2]:
        q = np.array([
            r[1, 0] + r[0, 1],
            1.0 + r[1, 1] - r[0, 0] - r[2, 2],
            r[2, 1] + r[1, 2],
            r[2, 0] - r[0, 2],
        ])
        n4 = q[1]
    else:
        q = np.array([
            r[2, 0] + r[0, 2],
            r[2, 1] + r[1, 2],
            1.0 + r[2, 2] - r[0, 0] - r[1, 1],
            r[0, 1] - r[1, 0],
        ])
        n4 = q[2]
    return q * (0.5 / np.sqrt(n4))


def relative_error(rotation_true, translation_true, rotation_est, translation_est):
    """Relative rotation and translation errors as ``(rot_err, transl_err)``."""
    q_true = mat_to_quat(rotation_true)
    q_est = mat_to_quat(rotation_est)
    q_norm = np.linalg.norm(q_true)
    rot_err = min(
        np.linalg.norm(q_true - q_est) / q_norm,
        np.linalg.norm(q_true + q_est) / q_norm,
    )
    t_true = np.asarray(translation_true, dtype=float).reshape(3)
    t_est = np.asarray(translation_est, dtype=float).reshape(3)
    transl_err = np.linalg.norm(t_true - t_est) / np.linalg.norm(t_true)
    return float(rot_err), float(transl_err)


def _choose_control_points(pws):
    n = len(pws)
    c0 = pws.mean(axis=0)
    centered = pws - c0
    u, s, _ = np.linalg.svd(centered.T @ centered)
    cws = np.empty((4, 3))
    cws[0] = c0
    for i in range(1, 4):
        cws[i] = c0 + np.sqrt(s[i - 1] / n) * u[:, i - 1]
    return cws


def _barycentric_coordinates(pws, cws):
    cc = (cws[1:] - cws[0]).T
    cc_inv = np.linalg.pinv(cc)
    alphas = np.empty((len(pws), 4))
    alphas[:, 1:] = (pws - cws[0]) @ cc_inv.T
    alphas[:, 0] = 1.0 - alphas[:, 1:].sum(axis=1)
    return alphas


def _build_m(alphas, us, fu, fv, uc, vc):
    n = len(alphas)
    m = np.zeros((n, 2, 4, 3))
    m[:, 0, :, 0] = alphas * fu
    m[:, 0, :, 2] = alphas * (uc - us[:, 0:1])
    m[:, 1, :, 1] = alphas * fv
    m[:, 1, :, 2] = alphas * (vc - us[:, 1:2])
    return m.reshape(2 * n, 12)


def _compute_l_6x10(kernel):
    dv = np.array([[v[a] - v[b] for a, b in _PAIRS] for v in (k.reshape(4, 3) for k in kernel)])
    l_6x10 = np.empty((6, 10))
    for i in range(6):
        d0, d1, d2, d3 = dv[0, i], dv[1, i], dv[2, i], dv[3, i]
        l_6x10[i] = [
            d0 @ d0,
            2.0 * (d0 @ d1),
            d1 @ d1,
            2.0 * (d0 @ d2),
            2.0 * (d1 @ d2),
            d2 @ d2,
            2.0 * (d0 @ d3),
            2.0 * (d1 @ d3),
            2.0 * (d2 @ d3),
            d3 @ d3,
        ]
    return l_6x10


def _compute_rho(cws):
    return np.array([np.sum((cws[a] - cws[b]) ** 2) for a, b in _PAIRS])


def _lstsq(a, b):
    return np.linalg.lstsq(a, b, rcond=None)[0]


def _betas_approx_1(l_6x10, rho):
    b4 = _lstsq(l_6x10[:, [0, 1, 3, 6]], rho)
    if b4[0] < 0:
        b0 = np.sqrt(-b4[0])
        return np.array([b0, -b4[1] / b0, -b4[2] / b0, -b4[3] / b0])
    b0 = np.sqrt(b4[0])
    return np.array([b0, b4[1] / b0, b4[2] / b0, b4[3] / b0])


def _leading_betas(b):
    if b[0] < 0:
        b0 = np.sqrt(-b[0])
        b1 = np.sqrt(-b[2]) if b[2] < 0 else 0.0
    else:
        b0 = np.sqrt(b[0])
        b1 = np.sqrt(b[2]) if b[2] > 0 else 0.0
    if b[1] < 0:
        b0 = -b0
    return b0, b1


def _betas_approx_2(l_6x10, rho):
    b3 = _lstsq(l_6x10[:, :3], rho)
    b0, b1 = _leading_betas(b3)
    return np.array([b0, b1, 0.0, 0.0])


def _betas_approx_3(l_6x10, rho):
    b5 = _lstsq(l_6x10[:, :5], rho)
    b0, b1 = _leading_betas(b5)
    return np.array([b0, b1, b5[3] / np.float64(b0), 0.0])


def _gauss_newton(l_6x10, rho, betas):
    betas = betas.copy()
    l = l_6x10
    for _ in range(_GAUSS_NEWTON_ITERATIONS):
        b0, b1, b2, b3 = betas
        a = np.column_stack([
            2 * l[:, 0] * b0 + l[:, 1] * b1 + l[:, 3] * b2 + l[:, 6] * b3,
            l[:, 1] * b0 + 2 * l[:, 2] * b1 + l[:, 4] * b2 + l[:, 7] * b3,
            l[:, 3] * b0 + l[:, 4] * b1 + 2 * l[:, 5] * b2 + l[:, 8] * b3,
            l[:, 6] * b0 + l[:, 7] * b1 + l[:, 8] * b2 + 2 * l[:, 9] * b3,
        ])
        products = np.array([
            b0 * b0, b0 * b1, b1 * b1, b0 * b2, b1 * b2,
            b2 * b2, b0 * b3, b1 * b3, b2 * b3, b3 * b3,
        ])
        b = rho - l @ products
        try:
            step = qr_solve(a, b)
        except np.linalg.LinAlgError:
            break
        betas += step
    return betas


def _estimate_r_and_t(pcs, pws):
    pc0 = pcs.mean(axis=0)
    pw0 = pws.mean(axis=0)
    abt = (pcs - pc0).T @ (pws - pw0)
    u, _, vt = np.linalg.svd(abt)
    r = u @ vt
    if np.linalg.det(r) < 0:
        r[2] = -r[2]
    t = pc0 - r @ pw0
    return r, t


def _compute_r_and_t(kernel, betas, alphas, pws, us, fu, fv, uc, vc):
    ccs = np.tensordot(betas, kernel, axes=1).reshape(4, 3)
    pcs = alphas @ ccs
    if pcs[0, 2] < 0.0:
        pcs = -pcs
    r, t = _estimate_r_and_t(pcs, pws)
    return r, t, reprojection_error(r, t, pws, us, fu, fv, uc, vc)


def solve_epnp(points_world, points_image, fu, fv, uc, vc):
    """Estimate the camera pose from 3D world points and their pixel observations."""
    pws = np.asarray(points_world, dtype=float)
    us = np.asarray(points_image, dtype=float)
    if pws.ndim != 2 or pws.shape[1] != 3:
        raise ValueError("points_world must have shape (n, 3)")
    if us.ndim != 2 or us.shape[1] != 2:
        raise ValueError("points_image must have shape (n, 2)")
    if len(pws) != len(us):
        raise ValueError("points_world and points_image differ in length")
    if len(pws) == 0:
        raise ValueError("at least one correspondence is required")

    with np.errstate(divide="ignore", invalid="ignore"):
        cws = _choose_control_points(pws)
        alphas = _barycentric_coordinates(pws, cws)
        m = _build_m(alphas, us, fu, fv, uc, vc)
        u, _, _ = np.linalg.svd(m.T @ m)
        kernel = np.array([u[:, 11 - i] for i in range(4)])

        l_6x10 = _compute_l_6x10(kernel)
        rho = _compute_rho(cws)

        candidates = []
        for approx in (_betas_approx_1, _betas_approx_2, _betas_approx_3):
            betas = _gauss_newton(l_6x10, rho, approx(l_6x10, rho))
            candidates.append(
                _compute_r_and_t(kernel, betas, alphas, pws, us, fu, fv, uc, vc)
            )

    best = 0
    if candidates[1][2] < candidates[0][2]:
        best = 1
    if candidates[2][2] < candidates[best][2]:
        best = 2
    r, t, err = candidates[best]
    return PoseEstimate(rotation=r, translation=t, error=err)