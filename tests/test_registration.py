import numpy as np
import pytest

from mrfreg.nifti import gz_write_nifti, read_file, read_nifti
from mrfreg.options import Parameters
from mrfreg.registration import main, mind_steps, read_affine_matrix, register


def _volume(seed=0, shape=(12, 12, 12)):
    rng = np.random.default_rng(seed)
    return rng.normal(size=shape) * 100.0 + 500.0


def _small_params():
    return Parameters(
        levels=2,
        grid_spacing=[4, 3],
        search_radius=[1, 1],
        quantisation=[2, 1],
    )


def test_mind_steps_default_quantisation():
    assert mind_steps([5, 4, 3, 2, 1]) == [3, 3, 2, 2, 1]


def test_mind_steps_are_at_least_one():
    assert all(step >= 1 for step in mind_steps([0, 1, 2, 7]))


def test_read_affine_matrix_identity(tmp_path):
    path = tmp_path / "identity.txt"
    path.write_text("1  0  0  0\n0  1  0  0\n0  0  1  0\n0  0  0  1\n")
    assert np.array_equal(read_affine_matrix(path), np.eye(4))


def test_read_affine_matrix_lines_are_columns(tmp_path):
    matrix = np.arange(16, dtype=float).reshape(4, 4)
    path = tmp_path / "matrix.txt"
    path.write_text("\n".join("  ".join(str(v) for v in column) for column in matrix.T))
    assert np.array_equal(read_affine_matrix(path), matrix)


def test_read_affine_matrix_short_line(tmp_path):
    path = tmp_path / "bad.txt"
    path.write_text("1 0 0\n0 1 0 0\n0 0 1 0\n0 0 0 1\n")
    with pytest.raises(ValueError):
        read_affine_matrix(path)


def test_read_affine_matrix_too_few_lines(tmp_path):
    path = tmp_path / "bad.txt"
    path.write_text("1 0 0 0\n")
    with pytest.raises(ValueError):
        read_affine_matrix(path)


def test_register_identical_volumes_gives_zero_deformation():
    volume = _volume()
    result = register(volume, volume.copy(), _small_params())
    assert result.u.shape == (4, 4, 4)
    assert np.allclose(result.u, 0.0)
    assert np.allclose(result.v, 0.0)
    assert np.allclose(result.w, 0.0)
    assert np.allclose(result.warped, volume)
    assert result.ssd_after == pytest.approx(0.0, abs=1e-9)


def test_register_flow_layout():
    volume = _volume(1)
    result = register(volume, volume.copy(), _small_params())
    size = result.u.size
    assert result.flow.dtype == np.float32
    assert result.flow.shape == (3 * size,)
    assert np.allclose(result.flow[:size], result.u.ravel(order="F"))
    assert np.allclose(result.flow[2 * size:], result.w.ravel(order="F"))


def test_register_full_resolution_field_shape():
    volume = _volume(2)
    result = register(volume, volume.copy(), _small_params())
    assert result.ux.shape == volume.shape
    assert result.warped.shape == volume.shape


def test_register_rejects_mismatched_shapes():
    with pytest.raises(ValueError):
        register(_volume(shape=(12, 12, 12)), _volume(shape=(12, 12, 8)), _small_params())


def test_main_without_arguments_prints_usage(capsys):
    assert main([]) == 1
    assert "Usage" in capsys.readouterr().out


def test_main_rejects_uncompressed_images(tmp_path, capsys):
    code = main(["-F", str(tmp_path / "a.nii"), "-M", str(tmp_path / "b.nii"), "-O", str(tmp_path / "out")])
    assert code == -1
    assert "nii.gz" in capsys.readouterr().out


def test_main_end_to_end(tmp_path):
    volume = (_volume(3) - 1024.0).astype(np.float32)
    fixed = tmp_path / "fixed.nii.gz"
    moving = tmp_path / "moving.nii.gz"
    gz_write_nifti(fixed, volume)
    gz_write_nifti(moving, volume)
    stem = tmp_path / "out"
    code = main([
        "-F", str(fixed), "-M", str(moving), "-O", str(stem),
        "-l", "1", "-G", "4", "-L", "1", "-Q", "1",
    ])
    assert code == 0
    flow = read_file(str(stem) + "_displacements.dat", np.float32)
    assert flow.shape == (3 * 27,)
    assert np.allclose(flow, 0.0)
    deformed = read_nifti(str(stem) + "_deformed.nii.gz")
    assert deformed.shape == volume.shape
    assert np.allclose(deformed.data, volume, atol=1e-3)