"""MIND-SSC self-similarity descriptors computed with box filters.

Volumes are arrays indexed ``[y, x, z]``. The descriptor of every voxel is
packed into a 64-bit integer: twelve 5-bit codes, one per self-similarity
pair.
"""

from __future__ import annotations

import numpy as np

# (dx, dy, dz) of the six patch-pair shifts, in units of the patch radius.
_PAIR_SHIFTS = (
    (1, 1, 0),
    (1, -1, 0),
    (-1, 0, 1),
    (0, -1, 1),
    (1, 0, 1),
    (0, 1, 1),
)

# (sx, sy, sz, pair) of the twelve self-similarity context elements.
_CONTEXT = (
    (-1, 0, 0, 0),
    (0, -1, 0, 0),
    (-1, 0, 0, 1),
    (0, 1, 0, 1),
    (0, 0, -1, 2),
    (1, 0, 0, 2),
    (0, 0, -1, 3),
    (0, 1, 0, 3),
    (0, 0, -1, 4),
    (-1, 0, 0, 4),
    (0, 0, -1, 5),
    (0, -1, 0, 5),
)

_LEVELS = 6
_BITS = 5
_TABLE = np.array([0, 1, 3, 7, 15, 31], dtype=np.uint64)


def _box_along(values: np.ndarray, hw: int, axis: int) -> np.ndarray:
    size = values.shape[axis]
    zero_shape = list(values.shape)
    zero_shape[axis] = 1
    cumulative = np.concatenate(
        [np.zeros(zero_shape), np.cumsum(values, axis=axis)], axis=axis
    )
    positions = np.arange(size)
    upper = np.minimum(positions + hw, size - 1) + 1
    lower = np.maximum(positions - hw, 0)
    return np.take(cumulative, upper, axis=axis) - np.take(cumulative, lower, axis=axis)


def boxfilter(volume, hw) -> np.ndarray:
    """Sum every voxel's (2*hw+1)^3 neighbourhood, truncated at the borders."""
    if hw < 0:
        raise ValueError(f"half-width must not be negative, got {hw}")
    result = np.asarray(volume, dtype=float)
    if result.ndim != 3:
        raise ValueError("boxfilter expects a 3-D volume")
    for axis in range(3):
        result = _box_along(result, hw, axis)
    return result


def imshift(volume, dx, dy, dz) -> np.ndarray:
    """Return ``volume`` sampled at (y+dy, x+dx, z+dz); voxels shifted out keep their value."""
    volume = np.asarray(volume)
    if volume.ndim != 3:
        raise ValueError("imshift expects a 3-D volume")
    m, n, o = volume.shape
    ii, jj, kk = np.indices(volume.shape)
    ys, xs, zs = ii + dy, jj + dx, kk + dz
    valid = (ys >= 0) & (ys < m) & (xs >= 0) & (xs < n) & (zs >= 0) & (zs < o)
    shifted = volume.copy()
    shifted[valid] = volume[ys[valid], xs[valid], zs[valid]]
    return shifted


def distances(volume, qs, l) -> np.ndarray:
    """Patch distance between each voxel and its partner for pair shift ``l`` (0..5)."""
    if not 0 <= l < len(_PAIR_SHIFTS):
        raise ValueError(f"pair index must be in 0..{len(_PAIR_SHIFTS) - 1}, got {l}")
    volume = np.asarray(volume, dtype=float)
    dx, dy, dz = (qs * d for d in _PAIR_SHIFTS[l])
    shifted = imshift(volume, dx, dy, dz)
    return boxfilter((shifted - volume) ** 2, qs)


def descriptor(volume, qs) -> np.ndarray:
    """Compute the quantised MIND-SSC descriptor with patch radius ``qs``.

    Returns an array of ``uint64`` with the shape of ``volume``.
    """
    volume = np.asarray(volume, dtype=float)
    if volume.ndim != 3:
        raise ValueError("descriptor expects a 3-D volume")

    pair_distances = [distances(volume, qs, l) for l in range(len(_PAIR_SHIFTS))]
    context = np.stack(
        [
            imshift(pair_distances[pair], sx * qs, sy * qs, sz * qs)
            for sx, sy, sz, pair in _CONTEXT
        ]
    )
    context -= context.min(axis=0)
    noise = np.maximum(context.mean(axis=0), 1e-6)
    context /= noise

    thresholds = -np.log((np.arange(_LEVELS - 1) + 1.5) / _LEVELS)
    counts = (thresholds[:, None, None, None, None] > context[None]).sum(axis=0)
    codes = _TABLE[counts]
    shifts = (np.arange(len(_CONTEXT)) * _BITS).astype(np.uint64)
    return np.bitwise_or.reduce(codes << shifts[:, None, None, None], axis=0)