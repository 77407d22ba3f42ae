[build-system]
requires = ["setuptools>=64"]
build-backend = "setuptools.build_meta"

[project]
name = "mrfreg"
version = "0.1.0"
description = "Discrete MRF-based deformable registration of 3D medical images with MIND-SSC descriptors"
requires-python = ">=3.10"
dependencies = [
    "numpy",
]
keywords = [
    "image registration",
    "deformable registration",
    "markov random field",
    "minimum spanning tree",
    "nifti",
    "mind descriptor",
    "medical imaging",
]
classifiers = [
    "Development Status :: 3 - Alpha",
    "Intended Audience :: Science/Research",
    "Intended Audience :: Healthcare Industry",
    "Operating System :: OS Independent",
    "Programming Language :: Python :: 3",
    "Programming Language :: Python :: 3 :: Only",
    "Programming Language :: Python :: 3.10",
    "Programming Language :: Python :: 3.11",
    "Programming Language :: Python :: 3.12",
    "Programming Language :: Python :: 3.13",
    "Topic :: Scientific/Engineering :: Medical Science Apps.",
    "Topic :: Scientific/Engineering :: Image Processing",
]

[project.optional-dependencies]
test = [
    "pytest",
]

[project.scripts]
mrfreg-register = "mrfreg.registration:main"
mrfreg-dice = "mrfreg.dice:main"
mrfreg-preprocess = "mrfreg.preprocess:main"

[tool.setuptools.packages.find]
include = ["mrfreg*"]

[tool.pytest.ini_options]
testpaths = ["tests"]
addopts = "-ra"
