"""Dice overlap between two label volumes."""

from __future__ import annotations

import math
import sys

import numpy as np

from .nifti import read_nifti


def dice_scores(seg1, seg2) -> dict[int, float]:
    """Return the Dice coefficient for every label of ``seg1`` except the lowest one."""
    seg1 = np.asarray(seg1)
    seg2 = np.asarray(seg2)
    scores: dict[int, float] = {}
    for label in np.unique(seg1)[1:]:
        in1 = seg1 == label
        in2 = seg2 == label
        overlap = np.count_nonzero(in1 & in2)
        scores[int(label)] = 2.0 * overlap / (np.count_nonzero(in1) + np.count_nonzero(in2))
    return scores


def main(argv=None) -> int:
    """Print per-label and average Dice of two segmentation files."""
    if argv is None:
        argv = sys.argv[1:]
    if len(argv) < 2:
        print("Not enough input arguments. Example syntax:")
        print("./diceMulti seg1.nii seg2.nii")
        return 1

    seg1 = read_nifti(argv[0], np.int16).data
    seg2 = read_nifti(argv[1], np.int16).data
    scores = list(dice_scores(seg1, seg2).values())

    print("Dice (for each label): ", end="")
    for score in scores:
        print(f" {score:4.3f}, ", end="")
    mean = sum(scores) / len(scores) if scores else math.nan
    print(f"\nAVERAGE DICE: {mean:f}")
    return 0


if __name__ == "__main__":
    sys.exit(main())