"""Resampling of abdominal scans and segmentations onto a fixed isotropic grid."""

from __future__ import annotations

import struct
import sys

import numpy as np

from .nifti import gz_write_nifti, gz_write_segment, read_nifti
from .transformations import interp3

_TARGET_SHAPE = (180, 140, 190)
_TARGET_VOXEL = 2.2
_CT_SHIFT_Z = 20

_USAGE = """=============================================================
Usage (required input arguments either two or four):
 ./preprocess orig_moving_im.nii.gz moving_im.nii.gz orig_moving_seg.nii.gz moving_seg.nii.gz
  ./preprocess orig_target_im.nii.gz target_im.nii.gz
#pre-processing (requires segmentations to be uint8 and scans to be short)"""


def _as_matrix(matrix) -> np.ndarray:
    a = np.asarray(matrix, dtype=float)
    if a.size != 16:
        raise ValueError(f"affine matrix must have 16 elements, got {a.size}")
    return a.reshape(4, 4)


def _coordinates(matrix, shape):
    a = _as_matrix(matrix)
    ii, jj, kk = np.indices(shape, dtype=float)
    y = a[0, 0] * ii + a[0, 1] * jj + a[0, 2] * kk + a[0, 3]
    x = a[1, 0] * ii + a[1, 1] * jj + a[1, 2] * kk + a[1, 3]
    z = a[2, 0] * ii + a[2, 1] * jj + a[2, 2] * kk + a[2, 3]
    return x, y, z


def _outside(x, y, z, shape) -> np.ndarray:
    m2, n2, o2 = shape
    return (y < 0) | (y >= m2 - 1) | (x < 0) | (x >= n2 - 1) | (z < 0) | (z >= o2 - 1)


def warp_affine(volume, matrix, shape) -> np.ndarray:
    """Resample ``volume`` onto a grid of ``shape`` through an affine matrix, trilinearly.

    Voxels whose sample cell leaves the input take the input's minimum value.
    """
    volume = np.asarray(volume, dtype=float)
    if volume.ndim != 3:
        raise ValueError("warp_affine expects a 3-D volume")
    x, y, z = _coordinates(matrix, tuple(shape))
    warped = interp3(volume, x, y, z, False)
    outside = _outside(np.floor(x), np.floor(y), np.floor(z), volume.shape)
    warped[outside] = volume.min()
    return warped


def warp_affine_labels(volume, matrix, shape) -> np.ndarray:
    """Resample a label volume onto a grid of ``shape`` by nearest neighbour.

    Coordinates round half away from zero; voxels outside become 0.
    """
    volume = np.asarray(volume)
    if volume.ndim != 3:
        raise ValueError("warp_affine_labels expects a 3-D volume")
    x, y, z = _coordinates(matrix, tuple(shape))

    def rounded(values):
        return np.where(values >= 0, np.floor(values + 0.5), np.ceil(values - 0.5)).astype(np.intp)

    xi, yi, zi = rounded(x), rounded(y), rounded(z)
    inside = ~_outside(xi, yi, zi, volume.shape)
    warped = np.zeros(tuple(shape), dtype=np.int16)
    warped[inside] = volume[yi[inside], xi[inside], zi[inside]]
    return warped


def reflect(volume) -> np.ndarray:
    """Mirror a volume along its first two axes."""
    volume = np.asarray(volume)
    if volume.ndim < 2:
        raise ValueError("reflect expects at least a 2-D volume")
    return volume[::-1, ::-1].copy()


def resample_matrix(input_shape, voxel, shape, voxelnew, transz) -> np.ndarray:
    """Affine matrix mapping a grid of ``shape`` with spacing ``voxelnew`` into the input grid.

    The grids are centred on each other and shifted by ``transz`` input voxels along z.
    """
    big = np.asarray(input_shape, dtype=float)
    small = np.asarray(shape, dtype=float)
    scale = float(voxelnew) / np.asarray(voxel, dtype=float)
    translate = big / 2.0 - small / 2.0 * scale
    translate[2] += transz
    matrix = np.eye(4)
    matrix[:3, :3] = np.diag(scale)
    matrix[:3, 3] = translate
    return matrix


def main(argv=None) -> int:
    """Resample a scan (and optionally its segmentation) onto the standard grid."""
    if argv is None:
        argv = sys.argv[1:]
    argv = list(argv)
    if len(argv) < 2:
        print(_USAGE)
        return -1

    original = read_nifti(argv[0], np.int16)
    m_in, n_in, o_in = original.data.shape[:3]
    print(f"M={m_in}, N={n_in}, O={o_in}")
    voxel = struct.unpack_from("<3f", original.header, 80)

    shape = _TARGET_SHAPE
    print(f"CT translate {_CT_SHIFT_Z} (z-axis)")
    matrix = resample_matrix((m_in, n_in, o_in), voxel, shape, _TARGET_VOXEL, _CT_SHIFT_Z)
    for column in matrix.T:
        print(" | ".join(f"{value:+4.3f}" for value in column) + " ")

    resampled = warp_affine(original.data, matrix, shape)

    header = bytearray(original.header)
    m, n, o = shape
    struct.pack_into("<8h", header, 40, 3 if o > 1 else 2, m, n, o, 1, 1, 1, 1)
    struct.pack_into("<2h", header, 70, 16, 32)
    struct.pack_into("<8f", header, 76, 0.0, *([_TARGET_VOXEL] * 3), 1.0, 1.0, 1.0, 1.0)
    gz_write_nifti(argv[1], resampled.astype(np.float32), bytes(header))
    print("intensity scan resampled")

    if len(argv) == 4:
        labels = read_nifti(argv[2], np.int8)
        resampled_seg = warp_affine_labels(labels.data, matrix, shape)
        struct.pack_into("<2h", header, 70, 4, 16)
        gz_write_segment(argv[3], resampled_seg, bytes(header))
        print("segmentation resampled")
    return 0


if __name__ == "__main__":
    sys.exit(main())