import numpy as np
import pytest

from mrfreg.transformations import (
    consistent_mapping,
    filter1,
    interp3,
    jacobian,
    upsample_deformations,
    volfilter,
)


@pytest.fixture
def volume():
    rng = np.random.default_rng(0)
    return rng.normal(size=(4, 5, 6))


def test_interp3_zero_displacement_is_identity(volume):
    zeros = np.zeros_like(volume)
    np.testing.assert_allclose(interp3(volume, zeros, zeros, zeros, True), volume)


def test_interp3_integer_coordinates_gather(volume):
    shape = (2, 2, 2)
    x = np.full(shape, 3.0)
    y = np.full(shape, 1.0)
    z = np.full(shape, 2.0)
    result = interp3(volume, x, y, z, False)
    np.testing.assert_allclose(result, np.full(shape, volume[1, 3, 2]))


def test_interp3_clamps_outside(volume):
    shape = (1, 1, 1)
    x = np.full(shape, -7.0)
    y = np.full(shape, 100.0)
    z = np.zeros(shape)
    result = interp3(volume, x, y, z, False)
    assert result[0, 0, 0] == pytest.approx(volume[3, 0, 0])


def test_interp3_halfway_is_mean(volume):
    shape = (1, 1, 1)
    x = np.full(shape, 1.5)
    y = np.zeros(shape)
    z = np.zeros(shape)
    result = interp3(volume, x, y, z, False)
    assert result[0, 0, 0] == pytest.approx(0.5 * (volume[0, 1, 0] + volume[0, 2, 0]))


def test_filter1_identity_kernel(volume):
    for dim in (1, 2, 3):
        np.testing.assert_allclose(filter1(volume, [0.0, 1.0, 0.0], dim), volume)


def test_filter1_gradient_of_ramp():
    ramp = np.broadcast_to(np.arange(6.0)[None, :, None], (3, 6, 2)).copy()
    grad = filter1(ramp, [-0.5, 0.0, 0.5], 2)
    np.testing.assert_allclose(grad[:, 1:-1, :], 1.0)
    np.testing.assert_allclose(grad[:, 0, :], 0.5)
    np.testing.assert_allclose(filter1(ramp, [-0.5, 0.0, 0.5], 1), 0.0)


def test_filter1_bad_dim(volume):
    with pytest.raises(ValueError):
        filter1(volume, [1.0], 4)


def test_volfilter_keeps_constant():
    image = np.full((5, 4, 3), 7.0)
    np.testing.assert_allclose(volfilter(image, 5, 1.0), image)


def test_volfilter_reduces_variance(volume):
    assert volfilter(volume, 5, 1.0).std() < volume.std()


def test_jacobian_identity_is_zero():
    zeros = np.zeros((4, 4, 4))
    assert jacobian(zeros, zeros, zeros, 2) == 0.0


def test_jacobian_translation_is_zero():
    shift = np.full((3, 4, 5), 2.5)
    assert jacobian(shift, -shift, shift, 3) == 0.0


def test_jacobian_nonuniform_positive(volume):
    assert jacobian(volume, volume, volume, 1) > 0.0


def test_consistent_mapping_keeps_opposite_translations():
    shape = (3, 3, 3)
    u, v, w = np.full(shape, 2.0), np.full(shape, -1.0), np.full(shape, 0.5)
    result = consistent_mapping(u, v, w, -u, -v, -w, 2)
    for got, want in zip(result, (u, v, w, -u, -v, -w)):
        np.testing.assert_allclose(got, want)


def test_consistent_mapping_symmetrises():
    shape = (3, 3, 3)
    u = np.full(shape, 2.0)
    zeros = np.zeros(shape)
    fu, _, _, bu, _, _ = consistent_mapping(u, zeros, zeros, zeros, zeros, zeros, 1)
    np.testing.assert_allclose(fu, -bu)


def test_upsample_constant_field():
    field = np.full((2, 3, 2), 4.0)
    u, v, w = upsample_deformations(field, field * 2, field * 3, (4, 6, 4))
    assert u.shape == (4, 6, 4)
    np.testing.assert_allclose(u, 4.0)
    np.testing.assert_allclose(w, 12.0)


def test_upsample_same_shape_identity(volume):
    u, v, w = upsample_deformations(volume, volume, volume, volume.shape)
    np.testing.assert_allclose(u, volume)