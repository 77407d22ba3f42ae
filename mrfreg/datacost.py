"""Similarity costs over a displacement search space, label-space upsampling and image warping.

Volumes are arrays indexed ``[y, x, z]``; ``u`` displaces along x (axis 1),
``v`` along y (axis 0) and ``w`` along z (axis 2). Affine matrices are 4x4
arrays whose rows map a voxel ``(y, x, z, 1)`` to its new ``y``, ``x`` and
``z`` coordinates.
"""

from __future__ import annotations

import math

import numpy as np

from .transformations import interp3

_POPCOUNT = np.array([bin(value).count("1") for value in range(256)], dtype=np.uint8)


def _as_cube(data, len1: int) -> np.ndarray:
    arr = np.asarray(data, dtype=float)
    if arr.size != len1**3:
        raise ValueError(f"expected {len1 ** 3} values, got {arr.size}")
    return arr.reshape((len1, len1, len1), order="F")


def _upsample_axis(arr: np.ndarray, len2: int, axis: int, odd_copies: bool) -> np.ndarray:
    len1 = arr.shape[axis]
    positions = np.arange(len2)
    base = np.minimum((positions + 1) // 2, len1 - 1)
    if odd_copies:
        copied = positions % 2 == 1
        partner = np.minimum(base + 1, len1 - 1)
    else:
        copied = positions % 2 == 0
        partner = np.maximum(base - 1, 0)
    first = np.take(arr, base, axis=axis)
    second = np.take(arr, partner, axis=axis)
    shape = [1] * arr.ndim
    shape[axis] = len2
    return np.where(copied.reshape(shape), first, 0.5 * (first + second))


def _upsample(data, len1: int, len2: int, odd_copies: bool) -> np.ndarray:
    cube = _as_cube(data, len1)
    for axis in (1, 0, 2):
        cube = _upsample_axis(cube, len2, axis, odd_copies)
    return cube


def interp3xyz(data, len1, len2) -> np.ndarray:
    """Upsample a len1^3 label cube to len2^3; odd positions copy, even ones average.

    Position ``p`` reads source index ``(p+1)//2`` (odd) or the mean of it and
    the next index (even). Returns a cube indexed ``[y, x, z]``.
    """
    return _upsample(data, len1, len2, odd_copies=True)


def interp3xyz_b(data, len1, len2) -> np.ndarray:
    """Upsample a len1^3 label cube to len2^3; even positions copy, odd ones average.

    Position ``p`` reads source index ``p//2`` (even) or the mean of the two
    neighbouring source indices (odd). Returns a cube indexed ``[y, x, z]``.
    """
    return _upsample(data, len1, len2, odd_copies=False)


def _popcount(values: np.ndarray) -> np.ndarray:
    words = np.ascontiguousarray(values, dtype=np.uint64)
    counts = _POPCOUNT[words.view(np.uint8)].reshape(words.shape + (8,))
    return counts.sum(axis=-1, dtype=np.int64)


def _skips(step: int, randnum: int) -> tuple[int, int, int]:
    skipz = skipx = skipy = 1
    if step > 4:
        if randnum > 0:
            skipz = skipx = 2
        if randnum > 1:
            skipy = 2
    if randnum > 1 and step > 7:
        skipz = skipx = skipy = 3
    if step == 4 and randnum > 1:
        skipz = 2
    return skipx, skipy, skipz


def data_cost(fixed_mind, moving_mind, step, hw, quant, alpha, randnum=1) -> np.ndarray:
    """Hamming-distance costs of every control point for every displacement label.

    Returns an array of shape ``(nodes, (2*hw+1)**3)``; node ``y + x*m1 +
    z*m1*n1`` of the grid with spacing ``step``, label ``i + j*len + k*len*len``
    for a displacement of ``(i, j, k)*quant - hw*quant`` along (y, x, z).
    ``randnum`` thins the voxel sampling inside each block for large grids.
    """
    fixed = np.asarray(fixed_mind).astype(np.uint64)
    moving = np.asarray(moving_mind).astype(np.uint64)
    if fixed.ndim != 3 or fixed.shape != moving.shape:
        raise ValueError("descriptor volumes must be 3-D and of equal shape")
    if step <= 0:
        raise ValueError(f"grid spacing must be positive, got {step}")
    if hw < 0:
        raise ValueError(f"search radius must not be negative, got {hw}")
    if quant <= 0:
        raise ValueError(f"label quantisation must be positive, got {quant}")
    if alpha == 0:
        raise ValueError("alpha must not be zero")
    m, n, o = fixed.shape
    m1, n1, o1 = m // step, n // step, o // step
    if min(m1, n1, o1) == 0:
        raise ValueError(f"volume of shape {fixed.shape} is smaller than grid spacing {step}")

    length = 2 * hw + 1
    count = length**3
    pad1 = int(quant) * hw
    offsets = [int(index * quant) for index in range(length)]
    pad_after = max(pad1, offsets[-1] - pad1)
    padded = np.pad(moving, [(pad1, pad_after)] * 3, mode="edge")

    skipx, skipy, skipz = _skips(step, randnum)
    maxsamp = (
        math.ceil(step / skipx) * math.ceil(step / skipz) * math.ceil(step / skipy)
    )
    alpha1 = 0.5 * (step / (alpha * quant)) / maxsamp

    def sample_positions(nodes: int, skip: int) -> np.ndarray:
        within = np.arange(0, step, skip)
        return (np.arange(nodes)[:, None] * step + within[None, :]).ravel()

    ys = sample_positions(m1, skipy)
    xs = sample_positions(n1, skipx)
    zs = sample_positions(o1, skipz)
    block_shape = (m1, -1, n1, -1, o1, -1)
    reference = fixed[np.ix_(ys, xs, zs)]
    reference = reference.reshape(m1, len(ys) // m1, n1, len(xs) // n1, o1, len(zs) // o1)

    results = np.empty((m1 * n1 * o1, count))
    for k, oz in enumerate(offsets):
        for j, ox in enumerate(offsets):
            for i, oy in enumerate(offsets):
                candidate = padded[np.ix_(ys + oy, xs + ox, zs + oz)].reshape(reference.shape)
                bits = _popcount(reference ^ candidate).sum(axis=(1, 3, 5))
                label = i + j * length + k * length * length
                results[:, label] = bits.ravel(order="F") * alpha1
    del block_shape
    return results


def _check_fields(volume: np.ndarray, *fields) -> list[np.ndarray]:
    arrays = [np.asarray(field, dtype=float) for field in fields]
    for field in arrays:
        if field.shape != volume.shape:
            raise ValueError(
                f"displacement field of shape {field.shape} does not match volume {volume.shape}"
            )
    return arrays


def _affine_coordinates(matrix, shape):
    a = np.asarray(matrix, dtype=float)
    if a.size != 16:
        raise ValueError(f"affine matrix must have 16 elements, got {a.size}")
    a = a.reshape(4, 4)
    ii, jj, kk = np.indices(shape, dtype=float)
    y = a[0, 0] * ii + a[0, 1] * jj + a[0, 2] * kk + a[0, 3]
    x = a[1, 0] * ii + a[1, 1] * jj + a[1, 2] * kk + a[1, 3]
    z = a[2, 0] * ii + a[2, 1] * jj + a[2, 2] * kk + a[2, 3]
    return x, y, z


def _round_half_away(values: np.ndarray) -> np.ndarray:
    return np.where(values >= 0, np.floor(values + 0.5), np.ceil(values - 0.5)).astype(np.intp)


def warp_image(moving, reference, u, v, w):
    """Warp ``moving`` by displacements ``(u, v, w)`` with trilinear interpolation.

    Returns ``(warped, ssd_before, ssd_after)``: the warped volume and the
    mean squared differences to ``reference`` before and after warping.
    """
    moving = np.asarray(moving, dtype=float)
    reference = np.asarray(reference, dtype=float)
    if moving.ndim != 3 or reference.shape != moving.shape:
        raise ValueError("moving and reference volumes must be 3-D and of equal shape")
    u, v, w = _check_fields(moving, u, v, w)
    warped = interp3(moving, u, v, w, True)
    ssd_before = float(np.mean((reference - moving) ** 2))
    ssd_after = float(np.mean((reference - warped) ** 2))
    return warped, ssd_before, ssd_after


def warp_affine_segment(segment, matrix, u, v, w) -> np.ndarray:
    """Warp a label volume by an affine matrix plus displacements, nearest neighbour.

    Coordinates are rounded half away from zero and clamped to the volume.
    """
    segment = np.asarray(segment)
    if segment.ndim != 3:
        raise ValueError("warp_affine_segment expects a 3-D volume")
    u, v, w = _check_fields(segment, u, v, w)
    x, y, z = _affine_coordinates(matrix, segment.shape)
    m, n, o = segment.shape
    yi = np.clip(_round_half_away(y + v), 0, m - 1)
    xi = np.clip(_round_half_away(x + u), 0, n - 1)
    zi = np.clip(_round_half_away(z + w), 0, o - 1)
    return segment[yi, xi, zi]


def warp_affine(moving, reference, matrix, u, v, w):
    """Warp ``moving`` by an affine matrix plus displacements, trilinear with clamped borders.

    Returns ``(warped, ssd_before, ssd_after)`` against ``reference``.
    """
    moving = np.asarray(moving, dtype=float)
    reference = np.asarray(reference, dtype=float)
    if moving.ndim != 3 or reference.shape != moving.shape:
        raise ValueError("moving and reference volumes must be 3-D and of equal shape")
    u, v, w = _check_fields(moving, u, v, w)
    x, y, z = _affine_coordinates(matrix, moving.shape)
    warped = interp3(moving, x + u, y + v, z + w, False)
    ssd_before = float(np.mean((reference - moving) ** 2))
    ssd_after = float(np.mean((reference - warped) ** 2))
    return warped, ssd_before, ssd_after