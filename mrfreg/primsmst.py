"""Image-driven minimum spanning tree over a grid of control points (Prim's algorithm)."""

from __future__ import annotations

import heapq
import itertools
from dataclasses import dataclass

import numpy as np

# (dx, dy, dz) of the six grid neighbours.
_NEIGHBOURS = (
    (-1, 0, 0),
    (1, 0, 0),
    (0, -1, 0),
    (0, 1, 0),
    (0, 0, -1),
    (0, 0, 1),
)


@dataclass
class SpanningTree:
    """A spanning tree over a control-point grid.

    Vertices are flat indices ``y + x*m + z*m*n`` of a grid with shape
    ``(m, n, o)``. ``ordered`` lists them root first, level by level;
    ``parents`` holds each vertex's parent (-1 for the root) and
    ``edgemst`` the weight of the edge to the parent (0 for the root).
    """

    shape: tuple[int, int, int]
    ordered: np.ndarray
    parents: np.ndarray
    edgemst: np.ndarray


def edgecost_to_weight(value, meanim):
    """Map an edge cost to a similarity weight ``exp(-value/meanim)``."""
    result = np.exp(-np.asarray(value, dtype=float) / meanim)
    return float(result) if result.ndim == 0 else result


def _overlap(shift: int, size: int) -> tuple[slice, slice]:
    if shift < 0:
        return slice(-shift, size), slice(0, size + shift)
    if shift > 0:
        return slice(0, size - shift), slice(shift, size)
    return slice(None), slice(None)


def _edge_costs(image: np.ndarray, step: int, shape: tuple[int, int, int]):
    m, n, o = shape
    cropped = image[: m * step, : n * step, : o * step]
    blocks = cropped.reshape(m, step, n, step, o, step).transpose(0, 2, 4, 1, 3, 5)
    flat = np.arange(m * n * o).reshape(shape, order="F")

    neighbours = np.full((m, n, o, 6), -1, dtype=np.intp)
    costs = np.zeros((m, n, o, 6))
    for nb, (dx, dy, dz) in enumerate(_NEIGHBOURS):
        src_y, dst_y = _overlap(dy, m)
        src_x, dst_x = _overlap(dx, n)
        src_z, dst_z = _overlap(dz, o)
        neighbours[src_y, src_x, src_z, nb] = flat[dst_y, dst_x, dst_z]
        diff = np.abs(blocks[src_y, src_x, src_z] - blocks[dst_y, dst_x, dst_z])
        costs[src_y, src_x, src_z, nb] = diff.sum(axis=(3, 4, 5))

    costs /= float(step) ** 3
    return neighbours.reshape(-1, 6, order="F"), costs.reshape(-1, 6, order="F")


def prims_graph(image, step) -> SpanningTree:
    """Build the minimum spanning tree of the control-point grid of ``image``.

    Edge costs are mean absolute intensity differences between neighbouring
    blocks of ``step``^3 voxels, turned into weights with the image's
    standard deviation.
    """
    image = np.asarray(image, dtype=float)
    if image.ndim != 3:
        raise ValueError("prims_graph expects a 3-D image")
    if step <= 0:
        raise ValueError(f"grid spacing must be positive, got {step}")
    m2, n2, o2 = image.shape
    shape = (m2 // step, n2 // step, o2 // step)
    if min(shape) == 0:
        raise ValueError(f"image of shape {image.shape} is smaller than grid spacing {step}")
    m, n, o = shape
    size = m * n * o

    neighbours, costs = _edge_costs(image, step, shape)
    scale = 2.0 * float(np.std(image))
    if scale > 0:
        weights = -edgecost_to_weight(costs, scale)
    else:
        weights = -np.ones_like(costs)

    neighbour_list = neighbours.tolist()
    weight_list = weights.tolist()

    root = m // 2 + (n // 2) * m + (o // 2) * m * n
    in_tree = [False] * size
    parents = np.full(size, -1, dtype=np.intp)
    levels = np.zeros(size, dtype=np.intp)
    edgemst = np.zeros(size)
    in_tree[root] = True

    heap: list[tuple[float, int, int, int]] = []
    counter = itertools.count()
    last = root
    for _ in range(size - 1):
        for nb in range(6):
            other = neighbour_list[last][nb]
            if other >= 0:
                heapq.heappush(heap, (weight_list[last][nb], next(counter), last, other))
        while True:
            weight, _, a, b = heapq.heappop(heap)
            if in_tree[a] != in_tree[b]:
                break
        parent, child = (a, b) if in_tree[a] else (b, a)
        in_tree[child] = True
        parents[child] = parent
        levels[child] = levels[parent] + 1
        edgemst[child] = -weight
        last = child

    ordered = np.argsort(levels, kind="stable").astype(np.intp)
    return SpanningTree(shape=shape, ordered=ordered, parents=parents, edgemst=edgemst)