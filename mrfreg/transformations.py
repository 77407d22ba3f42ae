"""Interpolation, smoothing, Jacobian statistics and symmetrisation of deformation fields.

Volumes are arrays indexed ``[y, x, z]``; ``u`` displaces along x (axis 1),
``v`` along y (axis 0) and ``w`` along z (axis 2).
"""

from __future__ import annotations

import logging
import math

import numpy as np

logger = logging.getLogger(__name__)


def interp3(volume, x, y, z, flag=False) -> np.ndarray:
    """Trilinearly sample ``volume`` at coordinates (x, y, z) with replicate borders.

    With ``flag`` set the coordinates are displacements added to each
    output voxel's own grid position.
    """
    volume = np.asarray(volume, dtype=float)
    x, y, z = (np.asarray(a, dtype=float) for a in (x, y, z))
    m2, n2, o2 = volume.shape

    xf, yf, zf = np.floor(x), np.floor(y), np.floor(z)
    dx, dy, dz = x - xf, y - yf, z - zf
    xi, yi, zi = xf.astype(np.intp), yf.astype(np.intp), zf.astype(np.intp)
    if flag:
        ii, jj, kk = np.indices(x.shape)
        xi = xi + jj
        yi = yi + ii
        zi = zi + kk

    def at(yy, xx, zz):
        return volume[
            np.clip(yy, 0, m2 - 1), np.clip(xx, 0, n2 - 1), np.clip(zz, 0, o2 - 1)
        ]

    return (
        (1 - dx) * (1 - dy) * (1 - dz) * at(yi, xi, zi)
        + (1 - dx) * dy * (1 - dz) * at(yi + 1, xi, zi)
        + dx * (1 - dy) * (1 - dz) * at(yi, xi + 1, zi)
        + (1 - dx) * (1 - dy) * dz * at(yi, xi, zi + 1)
        + dx * dy * (1 - dz) * at(yi + 1, xi + 1, zi)
        + (1 - dx) * dy * dz * at(yi + 1, xi, zi + 1)
        + dx * (1 - dy) * dz * at(yi, xi + 1, zi + 1)
        + dx * dy * dz * at(yi + 1, xi + 1, zi + 1)
    )


def filter1(image, kernel, dim) -> np.ndarray:
    """Correlate ``image`` with a 1-D kernel along dimension ``dim`` (1=y, 2=x, 3=z)."""
    if dim not in (1, 2, 3):
        raise ValueError(f"dim must be 1, 2 or 3, got {dim}")
    image = np.asarray(image, dtype=float)
    kernel = np.asarray(kernel, dtype=float)
    axis = dim - 1
    size = image.shape[axis]
    hw = (len(kernel) - 1) // 2
    positions = np.arange(size)
    out = np.zeros_like(image)
    for offset, weight in enumerate(kernel):
        indices = np.clip(positions + offset - hw, 0, size - 1)
        out += weight * np.take(image, indices, axis=axis)
    return out


def volfilter(image, length, sigma) -> np.ndarray:
    """Separable Gaussian smoothing with a kernel of ``length`` taps."""
    hw = (length - 1) // 2
    taps = np.arange(length) - hw
    kernel = np.exp(-(taps.astype(float) ** 2) / (2.0 * sigma**2))
    kernel /= kernel.sum()
    result = filter1(image, kernel, 1)
    result = filter1(result, kernel, 2)
    return filter1(result, kernel, 3)


def jacobian(u, v, w, factor) -> float:
    """Return the standard deviation of the Jacobian determinant of a grid deformation."""
    grad = (-0.5, 0.0, 0.5)
    scale = 1.0 / float(factor)

    j11 = filter1(u, grad, 2) * scale + 1.0
    j12 = filter1(u, grad, 1) * scale
    j13 = filter1(u, grad, 3) * scale
    j21 = filter1(v, grad, 2) * scale
    j22 = filter1(v, grad, 1) * scale + 1.0
    j23 = filter1(v, grad, 3) * scale
    j31 = filter1(w, grad, 2) * scale
    j32 = filter1(w, grad, 1) * scale
    j33 = filter1(w, grad, 3) * scale + 1.0

    det = (
        j11 * (j22 * j33 - j23 * j32)
        - j21 * (j12 * j33 - j13 * j32)
        + j31 * (j12 * j23 - j13 * j22)
    )
    jstd = float(np.std(det, ddof=1)) if det.size > 1 else math.nan
    negative = np.count_nonzero(det < 0) / det.size
    logger.info(
        "std(J)=%g (J<0)=%ge-7",
        np.round(jstd * 100) / 100.0,
        np.round(negative * 1e7) / 100.0,
    )
    return jstd


def consistent_mapping(u, v, w, u2, v2, w2, factor):
    """Make forward and backward grid deformations inverse-consistent.

    Returns the six corrected fields ``(u, v, w, u2, v2, w2)``.
    """
    scale = 1.0 / float(factor)
    us, vs, ws = (np.asarray(a, dtype=float) * scale for a in (u, v, w))
    us2, vs2, ws2 = (np.asarray(a, dtype=float) * scale for a in (u2, v2, w2))

    for _ in range(10):
        fu = 0.5 * us - 0.5 * interp3(us2, us, vs, ws, True)
        fv = 0.5 * vs - 0.5 * interp3(vs2, us, vs, ws, True)
        fw = 0.5 * ws - 0.5 * interp3(ws2, us, vs, ws, True)
        bu = 0.5 * us2 - 0.5 * interp3(us, us2, vs2, ws2, True)
        bv = 0.5 * vs2 - 0.5 * interp3(vs, us2, vs2, ws2, True)
        bw = 0.5 * ws2 - 0.5 * interp3(ws, us2, vs2, ws2, True)
        us, vs, ws, us2, vs2, ws2 = fu, fv, fw, bu, bv, bw

    return tuple(field * float(factor) for field in (us, vs, ws, us2, vs2, ws2))


def upsample_deformations(u0, v0, w0, shape):
    """Trilinearly resample three displacement fields onto a grid of ``shape``."""
    u0 = np.asarray(u0, dtype=float)
    m, n, o = shape
    m2, n2, o2 = u0.shape
    scale_m, scale_n, scale_o = m / m2, n / n2, o / o2
    ii, jj, kk = np.indices((m, n, o), dtype=float)
    x = jj / scale_n
    y = ii / scale_m
    z = kk / scale_o
    return tuple(interp3(field, x, y, z, False) for field in (u0, v0, w0))