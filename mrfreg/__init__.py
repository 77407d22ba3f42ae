"""Discrete MRF-based deformable registration of 3D medical images, with NIfTI I/O, MIND-SSC descriptors and Dice scoring."""

__version__ = "0.1.0"