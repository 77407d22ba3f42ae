import logging
import os

import pytest

from mrfreg.options import Parameters, parse_command_line, realpath_ex


def _required(tmp_path):
    return [
        "-F", str(tmp_path / "fixed.nii.gz"),
        "-M", str(tmp_path / "moving.nii.gz"),
        "-O", str(tmp_path / "out"),
    ]


def test_minimal_arguments_keep_defaults(tmp_path):
    params = parse_command_line(_required(tmp_path))
    assert params.alpha == pytest.approx(1.6)
    assert params.levels == 5
    assert params.grid_spacing == [8, 7, 6, 5, 4]
    assert params.search_radius == [8, 7, 6, 5, 4]
    assert params.quantisation == [5, 4, 3, 2, 1]
    assert params.segment is False
    assert params.affine is False
    assert params.rigid is False


def test_file_arguments_are_resolved(tmp_path):
    params = parse_command_line(_required(tmp_path))
    assert params.fixed_file == os.path.realpath(str(tmp_path / "fixed.nii.gz"))
    assert params.moving_file == os.path.realpath(str(tmp_path / "moving.nii.gz"))
    assert params.output_stem == os.path.realpath(str(tmp_path / "out"))
    assert params.moving_seg_file == ""


def test_level_strings_set_levels(tmp_path):
    argv = _required(tmp_path) + ["-G", "6x5x4", "-L", "5x4x3", "-Q", "3x2x1"]
    params = parse_command_line(argv)
    assert params.levels == 3
    assert params.grid_spacing == [6, 5, 4]
    assert params.search_radius == [5, 4, 3]
    assert params.quantisation == [3, 2, 1]


def test_level_count_alone_truncates_defaults(tmp_path, caplog):
    with caplog.at_level(logging.WARNING):
        params = parse_command_line(_required(tmp_path) + ["-l", "3"])
    assert params.levels == 3
    assert params.grid_spacing == [8, 7, 6]
    assert params.quantisation == [5, 4, 3]
    assert "not equal" in caplog.text


def test_alpha_rigid_segment_and_affine(tmp_path):
    seg = tmp_path / "seg.nii.gz"
    mat = tmp_path / "matrix.txt"
    argv = _required(tmp_path) + ["-a", "2.5", "-R", "1", "-S", str(seg), "-A", str(mat)]
    params = parse_command_line(argv)
    assert params.alpha == pytest.approx(2.5)
    assert params.rigid is True
    assert params.segment is True
    assert params.affine is True
    assert params.moving_seg_file == os.path.realpath(str(seg))
    assert params.affine_file == os.path.realpath(str(mat))


def test_custom_defaults_are_used(tmp_path):
    defaults = Parameters(levels=2, grid_spacing=[4, 3], search_radius=[2, 1], quantisation=[2, 1])
    params = parse_command_line(_required(tmp_path), defaults)
    assert params.levels == 2
    assert params.grid_spacing == [4, 3]
    assert params.search_radius == [2, 1]


def test_missing_required_arguments_warns(tmp_path, caplog):
    with caplog.at_level(logging.WARNING):
        params = parse_command_line(["-F", str(tmp_path / "f.nii.gz")])
    assert "Missing arguments" in caplog.text
    assert params.moving_file == ""


def test_invalid_option_raises(tmp_path):
    with pytest.raises(ValueError):
        parse_command_line(_required(tmp_path) + ["-Z", "1"])


def test_option_without_value_raises(tmp_path):
    with pytest.raises(ValueError):
        parse_command_line(_required(tmp_path) + ["-a"])


def test_realpath_ex_expands_home(tmp_path, monkeypatch):
    monkeypatch.setenv("HOME", str(tmp_path))
    assert realpath_ex("~/data/file.nii.gz") == os.path.realpath(
        str(tmp_path) + "/data/file.nii.gz"
    )


def test_realpath_ex_of_empty_path():
    assert realpath_ex("") == ""