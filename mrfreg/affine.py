"""Affine warping and estimation of a global affine transform from label costs.

Volumes are arrays indexed ``[y, x, z]``. Affine matrices are 4x4 arrays
whose rows map a voxel ``(y, x, z, 1)`` to its new ``y``, ``x`` and ``z``
coordinates.
"""

from __future__ import annotations

import logging

import numpy as np

from .robustfit import affine_robust
from .transformations import interp3

logger = logging.getLogger(__name__)

_BACKGROUND_LEVEL = 5.0
_BORDER = 2
_EXCLUDED = 1e20


def _as_matrix(matrix) -> np.ndarray:
    a = np.asarray(matrix, dtype=float)
    if a.size != 16:
        raise ValueError(f"affine matrix must have 16 elements, got {a.size}")
    return a.reshape(4, 4)


def matmult(a, b) -> np.ndarray:
    """Compose two affine matrices: the result applies ``a`` first, then ``b``."""
    return _as_matrix(b) @ _as_matrix(a)


def _coordinates(matrix, shape):
    a = _as_matrix(matrix)
    ii, jj, kk = np.indices(shape, dtype=float)
    y = a[0, 0] * ii + a[0, 1] * jj + a[0, 2] * kk + a[0, 3]
    x = a[1, 0] * ii + a[1, 1] * jj + a[1, 2] * kk + a[1, 3]
    z = a[2, 0] * ii + a[2, 1] * jj + a[2, 2] * kk + a[2, 3]
    return x, y, z


def _round_half_away(values: np.ndarray) -> np.ndarray:
    rounded = np.where(values >= 0, np.floor(values + 0.5), np.ceil(values - 0.5))
    return rounded.astype(np.intp)


def warp_short(segment, matrix) -> np.ndarray:
    """Warp a label volume by an affine matrix with nearest-neighbour sampling.

    Voxels mapped outside the volume become 0.
    """
    segment = np.asarray(segment)
    if segment.ndim != 3:
        raise ValueError("warp_short expects a 3-D volume")
    m, n, o = segment.shape
    x, y, z = _coordinates(matrix, segment.shape)
    xi, yi, zi = _round_half_away(x), _round_half_away(y), _round_half_away(z)
    valid = (yi >= 0) & (yi < m) & (xi >= 0) & (xi < n) & (zi >= 0) & (zi < o)
    warped = np.zeros_like(segment)
    warped[valid] = segment[yi[valid], xi[valid], zi[valid]]
    return warped


def warp_affine(volume, matrix) -> np.ndarray:
    """Warp a volume by an affine matrix with trilinear interpolation.

    Voxels whose sample cell leaves the volume become 0.
    """
    volume = np.asarray(volume, dtype=float)
    if volume.ndim != 3:
        raise ValueError("warp_affine expects a 3-D volume")
    m, n, o = volume.shape
    x, y, z = _coordinates(matrix, volume.shape)
    xf, yf, zf = np.floor(x), np.floor(y), np.floor(z)
    valid = (
        (yf >= 0) & (yf < m - 1) & (xf >= 0) & (xf < n - 1) & (zf >= 0) & (zf < o - 1)
    )
    warped = interp3(volume, x, y, z, False)
    warped[~valid] = 0.0
    return warped


def quantile(values, q) -> float:
    """Return the element of rank ``int(q * len(values))`` (clamped) of ``values``."""
    flat = np.asarray(values, dtype=float).ravel()
    if flat.size == 0:
        raise ValueError("cannot take a quantile of no values")
    index = min(max(int(q * flat.size), 0), flat.size - 1)
    return float(np.partition(flat, index)[index])


def _smooth_axis(cube: np.ndarray, axis: int) -> np.ndarray:
    original = np.moveaxis(cube, axis, 0)
    smoothed = np.empty_like(original)
    size = original.shape[0]
    for t in range(size):
        ahead = original[min(t + 1, size - 1)]
        behind = smoothed[t - 1] if t > 0 else original[0]
        smoothed[t] = original[t] + 0.5 * ahead + 0.5 * behind
    return np.moveaxis(smoothed, 0, axis)


def _smooth_costs(costs: np.ndarray, grid: tuple[int, int, int]) -> np.ndarray:
    m1, n1, o1 = grid
    labels = costs.shape[1]
    cube = costs.reshape(o1, n1, m1, labels).transpose(2, 1, 0, 3)
    for axis in range(3):
        cube = _smooth_axis(cube, axis)
    return cube.transpose(2, 1, 0, 3).reshape(-1, labels)


def _block_means(image: np.ndarray, step: int, grid: tuple[int, int, int]) -> np.ndarray:
    m1, n1, o1 = grid
    cropped = image[: m1 * step, : n1 * step, : o1 * step]
    blocks = cropped.reshape(m1, step, n1, step, o1, step)
    return blocks.mean(axis=(1, 3, 5)).ravel(order="F")


def _label_displacements(hw: int, quant: float):
    length = 2 * hw + 1
    labels = np.arange(length**3)
    yi = labels % length
    xi = (labels // length) % length
    zi = labels // (length * length)
    return (yi - hw) * quant, (xi - hw) * quant, (zi - hw) * quant


def estimate_affine(previous, im1, im2, costall, costall2, step, quant, hw, rigid=False):
    """Estimate an affine update from forward and backward label costs.

    ``costall`` and ``costall2`` hold one row of (2*hw+1)^3 label costs per
    control point of the grid with spacing ``step``. Costs are smoothed,
    each node's best displacement is taken where the node lies inside the
    image and in the foreground of ``im1`` (forward) or ``im2`` (backward),
    the most confident correspondences are fitted robustly and the result
    is composed with ``previous``.
    """
    im1 = np.asarray(im1, dtype=float)
    im2 = np.asarray(im2, dtype=float)
    if im1.ndim != 3 or im1.shape != im2.shape:
        raise ValueError("images must be 3-D and of equal shape")
    if step <= 0:
        raise ValueError(f"grid spacing must be positive, got {step}")
    m, n, o = im1.shape
    grid = (m // step, n // step, o // step)
    m1, n1, o1 = grid
    size = m1 * n1 * o1
    if size == 0:
        raise ValueError(f"image of shape {im1.shape} is smaller than grid spacing {step}")
    labels = (2 * hw + 1) ** 3

    forward = np.array(costall, dtype=float)
    backward = np.array(costall2, dtype=float)
    for costs in (forward, backward):
        if costs.size != size * labels:
            raise ValueError(
                f"expected {size} x {labels} label costs, got {costs.size} values"
            )
    forward = _smooth_costs(forward.reshape(size, labels), grid)
    backward = _smooth_costs(backward.reshape(size, labels), grid)

    minval = forward.min(axis=1)
    minind = forward.argmin(axis=1)
    minval2 = backward.min(axis=1)
    minind2 = backward.argmin(axis=1)

    minval[_block_means(im1, step, grid) < _BACKGROUND_LEVEL] = _EXCLUDED
    minval2[_block_means(im2, step, grid) < _BACKGROUND_LEVEL] = _EXCLUDED

    nodes = np.arange(size)
    zn = nodes // (m1 * n1)
    xn = (nodes - zn * m1 * n1) // m1
    yn = nodes - zn * m1 * n1 - xn * m1
    border = (
        (zn < _BORDER) | (zn > o1 - _BORDER)
        | (xn < _BORDER) | (xn > n1 - _BORDER)
        | (yn < _BORDER) | (yn > m1 - _BORDER)
    )
    minval[border] = _EXCLUDED
    minval2[border] = _EXCLUDED

    allcount = int(np.count_nonzero(minval < 1e19) + np.count_nonzero(minval2 < 1e19))
    q = 0.5 * allcount / float(size) / 2.0
    median1 = quantile(minval, q)
    median2 = quantile(minval2, q)
    use_forward = minval < median1
    use_backward = minval2 < median2
    logger.info(
        "# points used: %d/%d, quantile: %f",
        int(use_forward.sum() + use_backward.sum()),
        allcount,
        q,
    )

    stephw = (step - 1) // 2
    ys, xs, zs = _label_displacements(hw, quant)
    pts1: list[tuple[float, float, float]] = []
    pts2: list[tuple[float, float, float]] = []
    for node in np.flatnonzero(use_forward | use_backward):
        centre = (
            float(yn[node] * step + stephw),
            float(xn[node] * step + stephw),
            float(zn[node] * step + stephw),
        )
        if use_forward[node]:
            label = minind[node]
            pts1.append(centre)
            pts2.append((centre[0] + ys[label], centre[1] + xs[label], centre[2] + zs[label]))
        if use_backward[node]:
            label = minind2[node]
            pts2.append(centre)
            pts1.append((centre[0] + ys[label], centre[1] + xs[label], centre[2] + zs[label]))

    fitted = affine_robust(
        np.array(pts1, dtype=float).reshape(-1, 3),
        np.array(pts2, dtype=float).reshape(-1, 3),
        rigid,
    )
    return matmult(fitted, previous)