import numpy as np
import pytest

from mrfreg.primsmst import SpanningTree, edgecost_to_weight, prims_graph


@pytest.fixture
def tree():
    rng = np.random.default_rng(3)
    return prims_graph(rng.normal(size=(8, 8, 8)), 2)


def test_edgecost_to_weight_decreasing():
    weights = edgecost_to_weight(np.array([0.0, 1.0, 2.0, 5.0]), 3.0)
    assert np.all(np.diff(weights) < 0)
    assert np.all(weights > 0)
    assert np.all(weights <= 1)


def test_tree_shape_and_permutation(tree):
    assert isinstance(tree, SpanningTree)
    assert tree.shape == (4, 4, 4)
    assert sorted(tree.ordered.tolist()) == list(range(64))


def test_single_root_comes_first(tree):
    roots = np.flatnonzero(tree.parents == -1)
    assert roots.tolist() == [tree.ordered[0]]
    assert tree.edgemst[tree.ordered[0]] == 0


def test_parents_precede_children(tree):
    position = np.empty(64, dtype=int)
    position[tree.ordered] = np.arange(64)
    for child in tree.ordered[1:]:
        assert position[tree.parents[child]] < position[child]


def test_parents_are_grid_neighbours(tree):
    for child in tree.ordered[1:]:
        a = np.array(np.unravel_index(child, tree.shape, order="F"))
        b = np.array(np.unravel_index(tree.parents[child], tree.shape, order="F"))
        assert np.abs(a - b).sum() == 1


def test_edge_weights_in_unit_interval(tree):
    weights = np.asarray(tree.edgemst)[tree.ordered[1:]]
    assert weights.shape == (63,)
    assert float(weights.min()) > 0.0
    assert float(weights.max()) <= 1.0


def test_chain_grid():
    rng = np.random.default_rng(0)
    chain = prims_graph(rng.normal(size=(8, 2, 2)), 2)
    assert chain.shape == (4, 1, 1)
    assert chain.parents.tolist() == [1, 2, -1, 2]
    assert chain.ordered.tolist() == [2, 1, 3, 0]


def test_constant_image_still_spans():
    flat = prims_graph(np.ones((6, 6, 6)), 2)
    assert np.count_nonzero(flat.parents == -1) == 1
    assert np.all(flat.edgemst[flat.ordered[1:]] == 1.0)


def test_rejects_image_smaller_than_step():
    with pytest.raises(ValueError):
        prims_graph(np.zeros((3, 3, 3)), 4)


def test_rejects_non_positive_step():
    with pytest.raises(ValueError):
        prims_graph(np.zeros((4, 4, 4)), 0)