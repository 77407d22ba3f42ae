"""Command-line options of the registration program."""

from __future__ import annotations

import logging
import os
import re
from dataclasses import dataclass, field, replace

logger = logging.getLogger(__name__)

_MAX_LEVELS = 10
_GRID = (8, 7, 6, 5, 4, 3, 2, 2, 2, 2)
_SEARCH = (8, 7, 6, 5, 4, 3, 2, 1, 1, 0)
_QUANT = (5, 4, 3, 2, 1, 1, 1, 1, 1, 1)

_OPTIONS = frozenset("FMOalGLQSARD")
_INT = re.compile(r"\s*([+-]?\d+)")
_FLOAT = re.compile(r"\s*([+-]?(?:\d+\.?\d*|\.\d+)(?:[eE][+-]?\d+)?)")


@dataclass
class Parameters:
    """Registration settings; per-level lists run from coarse to fine."""

    alpha: float = 1.6
    levels: int = 5
    segment: bool = False
    affine: bool = False
    rigid: bool = False
    grid_spacing: list[int] = field(default_factory=lambda: [8, 7, 6, 5, 4])
    search_radius: list[int] = field(default_factory=lambda: [8, 7, 6, 5, 4])
    quantisation: list[int] = field(default_factory=lambda: [5, 4, 3, 2, 1])
    fixed_file: str = ""
    moving_file: str = ""
    output_stem: str = ""
    moving_seg_file: str = ""
    affine_file: str = ""
    deformed_file: str = ""


def realpath_ex(path) -> str:
    """Resolve ``path`` to an absolute path, expanding a leading ``~`` from $HOME."""
    path = os.fspath(path)
    if not path:
        return ""
    home = os.environ.get("HOME")
    if path.startswith("~") and home:
        path = home + path[1:]
    return os.path.realpath(path)


def _atoi(text: str) -> int:
    match = _INT.match(text)
    return int(match.group(1)) if match else 0


def _atof(text: str) -> float:
    match = _FLOAT.match(text)
    return float(match.group(1)) if match else 0.0


def _scan_levels(text: str, values: list[int]) -> int:
    """Parse ``AxBxC...`` into ``values`` in place; return how many were read."""
    count = 0
    pos = 0
    while count < _MAX_LEVELS:
        match = _INT.match(text, pos)
        if not match:
            break
        values[count] = int(match.group(1))
        count += 1
        pos = match.end()
        if not text.startswith("x", pos):
            break
        pos += 1
    return count


def parse_command_line(argv, defaults=None) -> Parameters:
    """Parse option arguments (without the program name) into ``Parameters``.

    ``defaults`` supplies the level count and per-level settings used where
    the options do not override them.
    """
    if defaults is None:
        defaults = Parameters()
    args = list(argv)

    maxlevel = defaults.levels
    if not 0 <= maxlevel <= _MAX_LEVELS:
        raise ValueError(f"number of levels must be between 0 and {_MAX_LEVELS}")
    num = num2 = num3 = maxlevel
    s_grid, s_search, s_quant = list(_GRID), list(_SEARCH), list(_QUANT)
    for i in range(maxlevel):
        s_grid[i] = defaults.grid_spacing[i]
        s_search[i] = defaults.search_radius[i]
        s_quant[i] = defaults.quantisation[i]

    files = {key: "" for key in "FMOSAD"}
    alpha = 1.6
    s_set = segment = affine = rigid = False
    required = 0

    for k, token in enumerate(args):
        if not token.startswith("-"):
            continue
        key = token[1:2]
        if key not in _OPTIONS:
            raise ValueError(f"Invalid option: {token} use -h for help")
        if k + 1 >= len(args):
            raise ValueError(f"option {token} needs a value")
        value = args[k + 1]
        if key in "FMOD":
            files[key] = value
            required += 1
        elif key == "a":
            alpha = _atof(value)
        elif key == "l":
            maxlevel = _atoi(value)
        elif key == "G":
            num = _scan_levels(value, s_grid)
            s_set = True
        elif key == "L":
            num2 = _scan_levels(value, s_search)
            s_set = True
        elif key == "Q":
            num3 = _scan_levels(value, s_quant)
            s_set = True
        elif key == "S":
            files["S"] = value
            segment = True
        elif key == "A":
            files["A"] = value
            affine = True
        elif key == "R":
            rigid = bool(_atoi(value))

    if required != 3:
        logger.warning("Missing arguments, use -h for help.")
    if s_set:
        maxlevel = num
    if num != maxlevel or num2 != maxlevel or num3 != maxlevel:
        logger.warning(
            "Max level and number of grid-spacing, search range or quantisation steps "
            "are not equal: maxlevel=%d, #grid=%d, #search=%d, #quant=%d",
            maxlevel,
            num,
            num2,
            num3,
        )
    if not 0 <= maxlevel <= _MAX_LEVELS:
        raise ValueError(f"number of levels must be between 0 and {_MAX_LEVELS}, got {maxlevel}")

    return replace(
        defaults,
        alpha=alpha,
        levels=maxlevel,
        segment=segment,
        affine=affine,
        rigid=rigid,
        grid_spacing=s_grid[:maxlevel],
        search_radius=s_search[:maxlevel],
        quantisation=s_quant[:maxlevel],
        fixed_file=realpath_ex(files["F"]),
        moving_file=realpath_ex(files["M"]),
        output_stem=realpath_ex(files["O"]),
        moving_seg_file=realpath_ex(files["S"]),
        affine_file=realpath_ex(files["A"]),
        deformed_file=realpath_ex(files["D"]),
    )