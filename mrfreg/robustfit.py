"""Least-squares and robust (least trimmed squares) fitting of affine and rigid transforms.

Point sets are arrays of shape ``(count, 3)`` holding ``(y, x, z)``, or
``(count, 4)`` with a homogeneous fourth column. Fitted transforms are 4x4
matrices whose rows map ``(y, x, z, 1)`` to the new ``y``, ``x`` and ``z``.
"""

from __future__ import annotations

import math

import numpy as np

_ROBUST_ITERATIONS = 15
_JACOBI_SWEEPS = 4


def qr_solve(a, b) -> np.ndarray:
    """Solve ``a @ x = b`` in the least-squares sense via Gram-Schmidt QR.

    ``a`` has shape ``(rows, cols)``; ``b`` has shape ``(rows,)`` or
    ``(rows, k)``. Returns ``x`` of shape ``(cols,)`` or ``(cols, k)``.
    """
    a = np.asarray(a, dtype=float)
    b = np.asarray(b, dtype=float)
    if a.ndim != 2:
        raise ValueError("system matrix must be 2-D")
    if b.shape[0] != a.shape[0]:
        raise ValueError(f"right-hand side has {b.shape[0]} rows, matrix has {a.shape[0]}")
    rows, cols = a.shape
    q = np.empty_like(a)
    r = np.zeros((cols, cols))
    for c in range(cols):
        column = a[:, c].copy()
        for p in range(c):
            r[p, c] = q[:, p] @ a[:, c]
            column -= q[:, p] * r[p, c]
        norm = math.sqrt(float(column @ column))
        if norm == 0.0:
            raise ValueError("system matrix is rank deficient")
        r[c, c] = norm
        q[:, c] = column / norm

    d = q.T @ b
    x = np.zeros_like(d)
    for c in reversed(range(cols)):
        x[c] = (d[c] - r[c, c + 1 :] @ x[c + 1 :]) / r[c, c]
    return x


def jacobi_svd3(a):
    """One-sided Jacobi SVD of a 3x3 matrix.

    Returns ``(u, v)``: ``v`` is orthogonal and ``a @ v`` has orthogonal
    columns, which normalised give the columns of ``u``.
    """
    a = np.asarray(a, dtype=float)
    if a.shape != (3, 3):
        raise ValueError(f"expected a 3x3 matrix, got shape {a.shape}")
    u = a.T.copy()
    v = np.eye(3)
    for _ in range(_JACOBI_SWEEPS):
        for j in range(1, 3):
            for i in range(j):
                alpha = float(u[i] @ u[i])
                beta = float(u[j] @ u[j])
                gamma = float(u[i] @ u[j])
                if gamma == 0.0:
                    continue
                zeta = (beta - alpha) / (2.0 * gamma)
                t = (1.0 if zeta > 0 else -1.0) / (abs(zeta) + math.sqrt(1.0 + zeta * zeta))
                c = 1.0 / math.sqrt(1.0 + t * t)
                s = c * t
                ui = u[i].copy()
                u[i] = c * ui - s * u[j]
                u[j] = s * ui + c * u[j]
                vi = v[i].copy()
                v[i] = c * vi - s * v[j]
                v[j] = s * vi + c * v[j]
    norms = np.linalg.norm(u, axis=1)
    norms[norms == 0.0] = 1.0
    u /= norms[:, None]
    return u.T, v.T


def _homogeneous(points) -> np.ndarray:
    arr = np.asarray(points, dtype=float)
    if arr.ndim != 2 or arr.shape[1] not in (3, 4):
        raise ValueError(f"points must have shape (count, 3) or (count, 4), got {arr.shape}")
    if arr.shape[1] == 3:
        arr = np.column_stack([arr, np.ones(len(arr))])
    return arr


def _check_pair(p1: np.ndarray, p2: np.ndarray) -> None:
    if len(p1) != len(p2):
        raise ValueError(f"point sets differ in size: {len(p1)} and {len(p2)}")
    if len(p1) == 0:
        raise ValueError("point sets are empty")


def find_rigid(pts1, pts2) -> np.ndarray:
    """Fit the rotation plus translation that maps ``pts1`` onto ``pts2``."""
    p1 = _homogeneous(pts1)
    p2 = _homogeneous(pts2)
    _check_pair(p1, p2)
    mean1 = p1[:, :3].mean(axis=0)
    mean2 = p2[:, :3].mean(axis=0)
    covariance = (p2[:, :3] - mean2).T @ (p1[:, :3] - mean1)
    u, v = jacobi_svd3(covariance)

    rotation = np.eye(4)
    rotation[:3, :3] = u @ v.T
    moved = qr_solve(rotation, p2.T)
    t1 = moved[:3].mean(axis=1) - mean1
    t0 = rotation[:3, :3] @ t1

    result = np.eye(4)
    result[:3, :3] = rotation[:3, :3]
    result[:3, 3] = t0
    return result


def _fit(p1: np.ndarray, p2: np.ndarray, rigid: bool) -> np.ndarray:
    if rigid:
        return find_rigid(p1, p2)
    return qr_solve(p1, p2).T


def affine_robust(pts1, pts2, rigid=False) -> np.ndarray:
    """Fit a transform mapping ``pts1`` onto ``pts2`` by least trimmed squares.

    Starts from a fit to all points, then repeatedly refits to the half of
    the points whose residual is at most the median. ``rigid`` restricts
    the fit to rotation plus translation.
    """
    p1 = _homogeneous(pts1)
    p2 = _homogeneous(pts2)
    _check_pair(p1, p2)
    count = len(p1)
    if count < 2:
        raise ValueError("at least two point pairs are needed")
    half = count // 2

    matrix = _fit(p1, p2, rigid)
    for _ in range(_ROBUST_ITERATIONS):
        predicted = p1 @ matrix[:3].T
        errors = ((predicted - p2[:, :3]) ** 2).sum(axis=1)
        median = np.partition(errors, count // 2)[count // 2]
        chosen = np.flatnonzero(errors <= median)
        chosen = np.append(chosen[: half - 1], chosen[-1])

        subset1 = np.ones((half, 4))
        subset2 = np.ones((half, 4))
        subset1[:, :3] = p1[chosen, :3]
        subset2[:, :3] = p2[chosen, :3]
        matrix = _fit(subset1, subset2, rigid)
    return matrix