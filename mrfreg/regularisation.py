"""Diffusion regularisation of displacement labels by belief propagation on a spanning tree.

Each node carries a cost for every displacement label of a cubic search
space of (2*hw+1)^3 labels; label ``l = i + j*len + k*len*len`` displaces
by ``((j-hw)*quant, (i-hw)*quant, (k-hw)*quant)`` along (x, y, z).
"""

from __future__ import annotations

import numpy as np

from .primsmst import SpanningTree


def _min_convolve(values: np.ndarray, indices: np.ndarray, offset: float, axis: int):
    size = values.shape[axis]
    positions = np.arange(size)
    penalty = (positions[:, None] - positions[None, :] + offset) ** 2
    moved = np.moveaxis(values, axis, 0)
    candidates = moved[None] + penalty[:, :, None, None]
    best = np.argmin(candidates, axis=1)
    out = np.take_along_axis(candidates, best[:, None], axis=1)[:, 0]
    chosen = np.take_along_axis(np.moveaxis(indices, axis, 0), best, axis=0)
    return np.moveaxis(out, 0, axis), np.moveaxis(chosen, 0, axis)


def message_dt(costs, len1, offsetx, offsety, offsetz):
    """Squared-distance transform of one node's label costs.

    Returns ``(values, indices)``: for every label the minimum over source
    labels of cost plus squared (offset) label distance, and the source
    label attaining it.
    """
    values = np.asarray(costs, dtype=float)
    count = len1**3
    if values.size != count:
        raise ValueError(f"expected {count} label costs, got {values.size}")
    cube = (len1, len1, len1)
    values = values.reshape(cube, order="F")
    indices = np.arange(count).reshape(cube, order="F")
    values, indices = _min_convolve(values, indices, offsety, 0)
    values, indices = _min_convolve(values, indices, offsetx, 1)
    values, indices = _min_convolve(values, indices, offsetz, 2)
    return values.ravel(order="F"), indices.ravel(order="F")


def _label_displacements(hw: int, quant: float):
    length = 2 * hw + 1
    labels = np.arange(length**3)
    yi = labels % length
    xi = (labels // length) % length
    zi = labels // (length * length)
    return (xi - hw) * quant, (yi - hw) * quant, (zi - hw) * quant


def regularise(costall, u0, v0, w0, hw, step, quant, tree: SpanningTree):
    """Select a displacement per control point that minimises data plus smoothness cost.

    ``costall`` holds one row of (2*hw+1)^3 label costs per grid node,
    ``u0, v0, w0`` the previous grid displacements and ``step`` the control
    point spacing. Returns the updated fields ``(u1, v1, w1)`` on the grid.
    """
    if step <= 0:
        raise ValueError(f"grid spacing must be positive, got {step}")
    if quant == 0:
        raise ValueError("label quantisation must not be zero")
    m, n, o = tree.shape
    size = m * n * o
    length = 2 * hw + 1
    count = length**3

    costs = np.array(costall, dtype=float).reshape(size, count)
    fields = []
    for field in (u0, v0, w0):
        flat = np.asarray(field, dtype=float).ravel(order="F")
        if flat.size != size:
            raise ValueError(f"displacement field has {flat.size} values, grid has {size}")
        fields.append(flat)
    u0f, v0f, w0f = fields

    ordered = np.asarray(tree.ordered, dtype=np.intp)
    parents = np.asarray(tree.parents, dtype=np.intp)
    edgemst = np.asarray(tree.edgemst, dtype=float)

    levels = np.zeros(size, dtype=np.intp)
    for child in ordered[1:]:
        levels[child] = levels[parents[child]] + 1
    bounds = np.cumsum(np.bincount(levels))

    allinds = np.zeros((size, count), dtype=np.intp)
    for lev in range(len(bounds) - 1, 0, -1):
        nodes = ordered[bounds[lev - 1] : bounds[lev]]
        costs[nodes] *= edgemst[nodes][:, None]
        for child in nodes:
            parent = parents[child]
            values, indices = message_dt(
                costs[child],
                length,
                (u0f[parent] - u0f[child]) / quant,
                (v0f[parent] - v0f[child]) / quant,
                (w0f[parent] - w0f[child]) / quant,
            )
            costs[child] = values
            allinds[child] = indices
        messages = costs[nodes] - costs[nodes].min(axis=1, keepdims=True)
        np.add.at(costs, parents[nodes], messages)

    selected = np.empty(size, dtype=np.intp)
    root = ordered[0]
    selected[root] = int(np.argmin(costs[root]))
    for child in ordered[1:]:
        selected[child] = allinds[child, selected[parents[child]]]

    xs, ys, zs = _label_displacements(hw, quant)
    u1 = (xs[selected] + u0f).reshape(tree.shape, order="F")
    v1 = (ys[selected] + v0f).reshape(tree.shape, order="F")
    w1 = (zs[selected] + w0f).reshape(tree.shape, order="F")
    return u1, v1, w1