"""Deformable registration of two volumes by discrete optimisation on a control-point grid.

Each level computes MIND-SSC descriptors, Hamming-distance label costs over a
cubic displacement search space and regularises them by belief propagation on
an image-driven minimum spanning tree, both forwards and backwards, then makes
the two grid deformations inverse-consistent.
"""

from __future__ import annotations

import logging
import math
import sys
import time
from dataclasses import dataclass
from pathlib import Path

import numpy as np

from .datacost import data_cost, warp_affine, warp_affine_segment, warp_image
from .mind import descriptor
from .nifti import gz_write_nifti, gz_write_segment, read_nifti, write_output
from .options import Parameters, parse_command_line
from .primsmst import prims_graph
from .regularisation import regularise
from .transformations import consistent_mapping, jacobian, upsample_deformations

logger = logging.getLogger(__name__)

# CT intensities are shifted by this much so that air becomes zero.
_CT_OFFSET = 1024.0
# Fixed, efficient random sampling strategy for the data cost.
_RAND_SAMPLES = 1

_USAGE = """=============================================================
Usage (required input arguments):
./deedsBCV -F fixed.nii.gz -M moving.nii.gz -O output
optional parameters:
 -a <regularisation parameter alpha> (default 1.6)
 -l <number of levels> (default 5)
 -G <grid spacing for each level> (default 8x7x6x5x4)
 -L <maximum search radius - each level> (default 8x7x6x5x4)
 -Q <quantisation of search step size> (default 5x4x3x2x1)
 -S <moving_segmentation.nii> (short int)
 -A <affine_matrix.txt> 
============================================================="""


@dataclass
class RegistrationResult:
    """Outcome of a registration.

    ``u, v, w`` are the displacements of the finest control-point grid,
    ``ux, vx, wx`` the same field upsampled to full resolution and
    ``warped`` the moving volume transformed by ``matrix`` plus that field.
    """

    u: np.ndarray
    v: np.ndarray
    w: np.ndarray
    ux: np.ndarray
    vx: np.ndarray
    wx: np.ndarray
    warped: np.ndarray
    matrix: np.ndarray
    ssd_before: float
    ssd_after: float

    @property
    def flow(self) -> np.ndarray:
        """The grid displacements u, v, w concatenated as float32, each in voxel order."""
        return np.concatenate(
            [field.ravel(order="F") for field in (self.u, self.v, self.w)]
        ).astype(np.float32)


def read_affine_matrix(path) -> np.ndarray:
    """Read a 4x4 affine matrix stored as four text lines, one matrix column per line."""
    lines = Path(path).read_text().splitlines()
    if len(lines) < 4:
        raise ValueError(f"{path}: expected 4 lines, got {len(lines)}")
    columns = []
    for number, line in enumerate(lines[:4], start=1):
        tokens = line.split()
        if len(tokens) < 4:
            raise ValueError(f"{path}: line {number} holds fewer than 4 numbers")
        columns.append([float(token) for token in tokens[:4]])
    return np.array(columns, dtype=float).T


def mind_steps(quantisation) -> list[int]:
    """Descriptor patch radius for each level's label quantisation."""
    return [int(math.floor(0.5 * float(q) + 1.0)) for q in quantisation]


def _format_matrix(matrix: np.ndarray) -> list[str]:
    return [
        " | ".join(f"{value:+4.3f}" for value in column) + " "
        for column in np.asarray(matrix, dtype=float).T
    ]


def register(fixed, moving, params=None, matrix=None) -> RegistrationResult:
    """Register ``moving`` onto ``fixed`` starting from ``matrix`` (identity by default)."""
    if params is None:
        params = Parameters()
    fixed = np.asarray(fixed, dtype=float)
    moving = np.asarray(moving, dtype=float)
    if fixed.ndim != 3 or fixed.shape != moving.shape:
        raise ValueError("Inconsistent image sizes (must have same dimensions)")
    levels = params.levels
    for name in ("grid_spacing", "search_radius", "quantisation"):
        if len(getattr(params, name)) < levels:
            raise ValueError(f"{name} lists fewer than {levels} levels")
    if levels > 0 and params.grid_spacing[0] <= 0:
        raise ValueError("grid spacing must be positive")

    if matrix is None:
        matrix = np.eye(4)
    matrix = np.asarray(matrix, dtype=float).reshape(4, 4)
    shape = fixed.shape
    steps = mind_steps(params.quantisation[:levels])

    ux, vx, wx = (np.zeros(shape) for _ in range(3))
    first = params.grid_spacing[0] if levels > 0 else 1
    grid0 = tuple(size // first for size in shape)
    u1, v1, w1 = (np.zeros(grid0) for _ in range(3))
    u1i, v1i, w1i = (np.zeros(grid0) for _ in range(3))

    warped0, _, _ = warp_affine(moving, fixed, matrix, ux, vx, wx)
    fixed_mind = moving_mind = None
    ssd_before = ssd_after = 0.0

    for level in range(levels):
        quant = float(params.quantisation[level])
        previous = steps[max(level - 1, 0)]
        current = steps[level]
        time_mind = time_data = time_smooth = time_trans = 0.0

        if level == 0 or previous != current:
            start = time.perf_counter()
            moving_mind = descriptor(warped0, current)
            fixed_mind = descriptor(fixed, current)
            time_mind += time.perf_counter() - start

        step = params.grid_spacing[level]
        hw = params.search_radius[level]
        grid = tuple(size // step for size in shape)
        labels = (2 * hw + 1) ** 3
        logger.info(
            "Level %d grid=%d with sizes: %dx%dx%d hw=%d quant=%g",
            level, step, *grid, hw, quant,
        )

        # forwards
        start = time.perf_counter()
        u0, v0, w0 = upsample_deformations(u1, v1, w1, grid)
        ux, vx, wx = upsample_deformations(u0, v0, w0, shape)
        warped1, ssd_before, ssd_after = warp_affine(moving, fixed, matrix, ux, vx, wx)
        time_trans += time.perf_counter() - start
        start = time.perf_counter()
        warped_mind = descriptor(warped1, current)
        time_mind += time.perf_counter() - start
        start = time.perf_counter()
        costall = data_cost(fixed_mind, warped_mind, step, hw, quant, params.alpha, _RAND_SAMPLES)
        time_data += time.perf_counter() - start
        start = time.perf_counter()
        tree = prims_graph(fixed, step)
        u1, v1, w1 = regularise(costall, u0, v0, w0, hw, step, quant, tree)
        time_smooth += time.perf_counter() - start

        # backwards
        start = time.perf_counter()
        u0, v0, w0 = upsample_deformations(u1i, v1i, w1i, grid)
        ux, vx, wx = upsample_deformations(u0, v0, w0, shape)
        warped1, ssd_before, ssd_after = warp_image(fixed, warped0, ux, vx, wx)
        time_trans += time.perf_counter() - start
        start = time.perf_counter()
        warped_mind = descriptor(warped1, current)
        time_mind += time.perf_counter() - start
        start = time.perf_counter()
        costall = data_cost(moving_mind, warped_mind, step, hw, quant, params.alpha, _RAND_SAMPLES)
        time_data += time.perf_counter() - start
        start = time.perf_counter()
        tree = prims_graph(warped0, step)
        u1i, v1i, w1i = regularise(costall, u0, v0, w0, hw, step, quant, tree)
        time_smooth += time.perf_counter() - start

        elapsed = time_data + time_smooth
        speed = 2.0 * math.prod(grid) * labels / elapsed if elapsed > 0 else math.inf
        logger.info(
            "Time: MIND=%g, data=%g, MST-reg=%g, transf.=%g speed=%g dof/s",
            time_mind, time_data, time_smooth, time_trans, speed,
        )

        u1, v1, w1, u1i, v1i, w1i = consistent_mapping(u1, v1, w1, u1i, v1i, w1i, step)
        jacobian(u1, v1, w1, step)
        logger.info("SSD before registration: %g and after %g", ssd_before, ssd_after)

    ux, vx, wx = upsample_deformations(u1, v1, w1, shape)
    warped, ssd_before, ssd_after = warp_affine(moving, fixed, matrix, ux, vx, wx)
    return RegistrationResult(
        u=np.asarray(u1), v=np.asarray(v1), w=np.asarray(w1),
        ux=ux, vx=vx, wx=wx,
        warped=warped, matrix=matrix,
        ssd_before=ssd_before, ssd_after=ssd_after,
    )


def main(argv=None) -> int:
    """Run a registration from the command line and write its outputs."""
    if argv is None:
        argv = sys.argv[1:]
    argv = list(argv)
    if len(argv) < 3 or argv[0][1:2] == "h":
        print(_USAGE)
        return 1
    try:
        params = parse_command_line(argv, Parameters())
    except ValueError as error:
        print(error)
        return 1

    for name in (params.fixed_file, params.moving_file):
        if not name.endswith("gz"):
            print("images must have nii.gz format")
            return -1

    print(
        f"Starting registration of {Path(params.fixed_file).name} "
        f"and {Path(params.moving_file).name}"
    )
    print("=" * 61)
    output_flow = params.output_stem + "_displacements.dat"
    output_file = params.output_stem + "_deformed.nii.gz"

    fixed_volume = read_nifti(params.fixed_file, np.float32)
    moving_volume = read_nifti(params.moving_file, np.float32)
    header = moving_volume.header
    if fixed_volume.shape != moving_volume.shape:
        print("Inconsistent image sizes (must have same dimensions)")
        return -1
    fixed = fixed_volume.data.astype(float) + _CT_OFFSET
    moving = moving_volume.data.astype(float) + _CT_OFFSET

    if params.affine:
        print(f"Reading affine matrix file: {Path(params.affine_file).name}")
        matrix = read_affine_matrix(params.affine_file)
    else:
        print("Starting with identity transform.")
        matrix = np.eye(4)
    for line in _format_matrix(matrix):
        print(line)
    print("MIND STEPS, " + ", ".join(str(s) for s in mind_steps(params.quantisation)) + " ")

    start = time.perf_counter()
    result = register(fixed, moving, params, matrix)
    total = time.perf_counter() - start

    write_output(output_flow, result.flow)
    gz_write_nifti(output_file, (result.warped - _CT_OFFSET).astype(np.float32), header)
    print(f"SSD before registration: {result.ssd_before:g} and after {result.ssd_after:g}")

    if params.segment:
        segment = read_nifti(params.moving_seg_file, np.int16)
        warped_segment = warp_affine_segment(
            segment.data, result.matrix, result.ux, result.vx, result.wx
        )
        output_seg = params.output_stem + "_deformed_seg.nii.gz"
        print(f"outputseg {output_seg}")
        gz_write_segment(output_seg, warped_segment.astype(np.int16), segment.header)

    print(f"Finished. Total time: {total:g} sec.")
    return 0


if __name__ == "__main__":
    sys.exit(main())