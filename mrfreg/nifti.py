"""Reading and writing of NIfTI-1 volumes (plain or gzip-compressed) and raw binary arrays."""

from __future__ import annotations

import gzip
import struct
from dataclasses import dataclass
from pathlib import Path

import numpy as np

HEADER_SIZE = 352

_DIM_OFFSET = 40
_DATATYPE_OFFSET = 70

_DATATYPES = {
    2: np.dtype("u1"),
    4: np.dtype("<i2"),
    8: np.dtype("<i4"),
    16: np.dtype("<f4"),
    64: np.dtype("<f8"),
    512: np.dtype("<u2"),
}


class NiftiError(Exception):
    """Raised when a NIfTI file cannot be read or written."""


@dataclass
class NiftiVolume:
    """A volume read from disk together with its raw 352-byte header."""

    data: np.ndarray
    header: bytes

    @property
    def shape(self) -> tuple[int, ...]:
        return self.data.shape


def _blank_header() -> bytearray:
    header = bytearray(HEADER_SIZE)
    struct.pack_into("<i", header, 0, 348)
    struct.pack_into("<f", header, 108, float(HEADER_SIZE))
    header[344:348] = b"n+1\x00"
    return header


def _header_copy(header) -> bytearray:
    if header is None:
        return _blank_header()
    copy = bytearray(header)
    if len(copy) < HEADER_SIZE:
        raise NiftiError(f"header must hold {HEADER_SIZE} bytes, got {len(copy)}")
    return copy[:HEADER_SIZE]


def _shape4(data: np.ndarray) -> tuple[int, int, int, int]:
    if data.ndim > 4:
        raise NiftiError(f"volumes may have at most 4 dimensions, got {data.ndim}")
    shape = tuple(data.shape) + (1,) * (4 - data.ndim)
    return shape  # type: ignore[return-value]


def _dim_code(o: int, p: int) -> int:
    if p > 1:
        return 4
    return 3 if o > 1 else 2


def _open_maybe_gzip(path):
    with open(path, "rb") as probe:
        magic = probe.read(2)
    if magic == b"\x1f\x8b":
        return gzip.open(path, "rb")
    return open(path, "rb")


def read_nifti(path, dtype=np.float32) -> NiftiVolume:
    """Read a NIfTI volume and convert its voxels to ``dtype``.

    The array is indexed ``[y, x, z]`` (or ``[y, x, z, t]`` when the fourth
    dimension is larger than one), matching the on-disk voxel order.
    """
    with _open_maybe_gzip(path) as fh:
        header = fh.read(HEADER_SIZE)
        if len(header) < HEADER_SIZE:
            raise NiftiError(f"{path}: truncated header")
        m, n, o, p = struct.unpack_from("<4h", header, _DIM_OFFSET + 2)
        if min(m, n, o, p) < 0:
            raise NiftiError(f"{path}: invalid dimensions {m}x{n}x{o}x{p}")
        code, _bitpix = struct.unpack_from("<2h", header, _DATATYPE_OFFSET)
        source = _DATATYPES.get(code)
        if source is None:
            raise NiftiError(f"Datatype {code} not supported.")
        count = m * n * o * p
        raw = fh.read(count * source.itemsize)
    if len(raw) < count * source.itemsize:
        raise NiftiError(f"{path}: expected {count} voxels, file is too short")
    data = np.frombuffer(raw, dtype=source).astype(dtype)
    data = data.reshape((m, n, o, p), order="F")
    if p == 1:
        data = data[..., 0]
    return NiftiVolume(data=data, header=bytes(header))


def _float_payload(data: np.ndarray, count: int) -> bytes:
    return data.astype("<f4").ravel(order="F")[:count].tobytes()


def _short_payload(data: np.ndarray, count: int) -> bytes:
    return data.astype("<i2").ravel(order="F")[:count].tobytes()


def write_nifti(path, data, header=None) -> None:
    """Write an uncompressed float32 NIfTI file (first volume only)."""
    data = np.asarray(data)
    m, n, o, p = _shape4(data)
    out = _header_copy(header)
    struct.pack_into("<4h", out, _DIM_OFFSET, _dim_code(o, p), m, n, o)
    struct.pack_into("<2h", out, _DATATYPE_OFFSET, 16, 32)
    Path(path).write_bytes(bytes(out) + _float_payload(data, m * n * o))


def write_segment(path, data, header=None) -> None:
    """Write an uncompressed int16 NIfTI segmentation (first volume only)."""
    data = np.asarray(data)
    m, n, o, _ = _shape4(data)
    out = _header_copy(header)
    struct.pack_into("<4h", out, _DIM_OFFSET, 3 if o > 1 else 2, m, n, o)
    struct.pack_into("<2h", out, _DATATYPE_OFFSET, 4, 512)
    Path(path).write_bytes(bytes(out) + _short_payload(data, m * n * o))


def gz_write_nifti(path, data, header=None) -> None:
    """Write a gzip-compressed float32 NIfTI file."""
    data = np.asarray(data)
    m, n, o, p = _shape4(data)
    out = _header_copy(header)
    struct.pack_into("<5h", out, _DIM_OFFSET, _dim_code(o, p), m, n, o, p)
    struct.pack_into("<2h", out, _DATATYPE_OFFSET, 16, 32)
    with gzip.open(path, "wb") as fh:
        fh.write(bytes(out))
        fh.write(_float_payload(data, m * n * o * p))


def gz_write_segment(path, data, header=None) -> None:
    """Write a gzip-compressed int16 NIfTI segmentation."""
    data = np.asarray(data)
    m, n, o, p = _shape4(data)
    out = _header_copy(header)
    struct.pack_into("<5h", out, _DIM_OFFSET, _dim_code(o, p), m, n, o, p)
    struct.pack_into("<2h", out, _DATATYPE_OFFSET, 4, 16)
    with gzip.open(path, "wb") as fh:
        fh.write(bytes(out))
        fh.write(_short_payload(data, m * n * o * p))


def write_output(path, data) -> None:
    """Write an array as raw binary in its own element type."""
    Path(path).write_bytes(np.asarray(data).tobytes(order="F"))


def read_file(path, dtype=np.float32) -> np.ndarray:
    """Read a raw binary file as a flat array of ``dtype``."""
    raw = Path(path).read_bytes()
    dtype = np.dtype(dtype)
    length = len(raw) // dtype.itemsize
    return np.frombuffer(raw[: length * dtype.itemsize], dtype=dtype).copy()