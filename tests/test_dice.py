import numpy as np
import pytest

from mrfreg.dice import dice_scores, main
from mrfreg.nifti import gz_write_segment


def test_identical_segmentations():
    seg = np.array([0, 1, 1, 2, 3, 3]).reshape((1, 2, 3))
    assert dice_scores(seg, seg) == {1: 1.0, 2: 1.0, 3: 1.0}


def test_disjoint_labels():
    seg1 = np.array([0, 1, 1, 0]).reshape((2, 2, 1))
    seg2 = np.array([1, 0, 0, 1]).reshape((2, 2, 1))
    assert dice_scores(seg1, seg2) == {1: 0.0}


def test_partial_overlap():
    seg1 = np.array([0, 1, 1, 2]).reshape((4, 1, 1))
    seg2 = np.array([0, 1, 2, 2]).reshape((4, 1, 1))
    scores = dice_scores(seg1, seg2)
    assert scores[1] == pytest.approx(2 / 3)
    assert scores[2] == pytest.approx(2 / 3)


def test_lowest_label_skipped():
    seg = np.array([5, 6, 7]).reshape((3, 1, 1))
    assert sorted(dice_scores(seg, seg)) == [6, 7]


def test_scores_bounded():
    rng = np.random.default_rng(1)
    seg1 = rng.integers(0, 4, size=(5, 5, 5))
    seg2 = rng.integers(0, 4, size=(5, 5, 5))
    assert all(0.0 <= s <= 1.0 for s in dice_scores(seg1, seg2).values())


def test_main_reports_average(tmp_path, capsys):
    seg = np.array([0, 1, 2, 2], dtype=np.int16).reshape((2, 2, 1))
    first = tmp_path / "a.nii.gz"
    second = tmp_path / "b.nii.gz"
    gz_write_segment(first, seg, None)
    gz_write_segment(second, seg, None)
    assert main([str(first), str(second)]) == 0
    out = capsys.readouterr().out
    assert "AVERAGE DICE: 1.000000" in out
    assert out.count("1.000, ") == 2


def test_main_needs_two_files(capsys):
    assert main(["only_one.nii.gz"]) == 1
    assert "Not enough input arguments" in capsys.readouterr().out