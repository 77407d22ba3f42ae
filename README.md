# mrfreg

Deformable registration of 3D medical volumes, such as CT scans stored as
gzipped NIfTI, by discrete optimisation on a minimum-spanning-tree Markov
random field.

Each voxel gets a MIND-SSC self-similarity descriptor. For every control
point, the Hamming-distance costs of a dense displacement search are
regularised by belief propagation over an image-driven spanning tree. This
runs over several levels of control-point spacing, in both directions. After
each level, the forward and backward grid deformations are made
inverse-consistent.

## Installation

```
pip install .
```

To run the tests:

```
pip install .[test]
pytest
```

## Command-line tools

### Registration

```
mrfreg-register -F fixed.nii.gz -M moving.nii.gz -O output
```

Optional parameters:

- `-a` regularisation weight alpha (default 1.6)
- `-l` number of levels (default 5)
- `-G` grid spacing per level, e.g. `8x7x6x5x4`
- `-L` maximum search radius per level, e.g. `8x7x6x5x4`
- `-Q` quantisation of the search step per level, e.g. `5x4x3x2x1`
- `-S moving_segmentation.nii.gz` warps a label map with the same transform
- `-A affine_matrix.txt` starts from an affine matrix instead of the identity.
  The file has four text lines, and each line holds one column of the matrix.
- `-R` is read into `Parameters.rigid`, but the registration does not use it

If you give `-G`, the number of values you give for it sets the number of
levels. An unknown option stops the command with an error message.

Both input file names must end in `gz`, and the two images must have the same
dimensions. Intensities are shifted by +1024 before registration, so CT air
becomes zero. The shift is taken off again when the warped image is written.

The command writes these files:

- `output_displacements.dat`: the u, v and w displacements of the finest control-point grid, as raw float32 values one after another
- `output_deformed.nii.gz`: the warped moving image, as float32
- `output_deformed_seg.nii.gz`: the warped segmentation as int16, written only when `-S` is given

Progress and timings of each level go to the `logging` module, under the
`mrfreg` loggers.

### Dice overlap

```
mrfreg-dice seg1.nii.gz seg2.nii.gz
```

This prints a Dice coefficient for every label found in the first
segmentation except the lowest one, which is normally the background. It then
prints their average.

### Resampling for abdominal CT

```
mrfreg-preprocess orig_target_im.nii.gz target_im.nii.gz
mrfreg-preprocess orig_moving_im.nii.gz moving_im.nii.gz orig_moving_seg.nii.gz moving_seg.nii.gz
```

This resamples a scan onto a fixed 180×140×190 grid with 2.2 mm isotropic
voxels. The new grid is centred on the input and shifted by 20 voxels along z.
The scan uses trilinear interpolation, and voxels outside the input take its
minimum value. When four arguments are given, the segmentation is resampled
too, by nearest neighbour, and voxels outside become 0.

## Library use

```python
from mrfreg.nifti import read_nifti, gz_write_nifti
from mrfreg.options import parse_command_line
from mrfreg.registration import register

fixed = read_nifti("fixed.nii.gz", "float32")
moving = read_nifti("moving.nii.gz", "float32")
params = parse_command_line(["-F", "fixed.nii.gz", "-M", "moving.nii.gz", "-O", "out"])
result = register(fixed.data, moving.data, params, None)

gz_write_nifti("warped.nii.gz", result.warped.astype("float32"), moving.header)
print(result.ssd_before, result.ssd_after)
```

Volumes are NumPy arrays indexed `[y, x, z]`. `register` returns a
`RegistrationResult` with these fields:

- the grid displacements `u`, `v` and `w`
- the same field at full resolution, `ux`, `vx` and `wx`
- the warped volume, `warped`
- the affine `matrix`
- the mean squared differences before and after warping

Its `flow` property gives the grid displacements in the layout that the
command writes. `register` does not apply the +1024 intensity shift; the
command does that.

The modules can also be used on their own:

- `mrfreg.nifti`: `read_nifti` returns a `NiftiVolume` holding the data and the raw header. It reads plain or gzipped files with unsigned 8-bit, 16-bit, 32-bit, float32, float64 or unsigned 16-bit voxels. There are also writers for float32 images and int16 segmentations, plain or gzipped, and helpers for raw binary arrays. A `NiftiError` is raised for unsupported or truncated files.
- `mrfreg.transformations`: trilinear interpolation (`interp3`), separable filtering, the standard deviation of the Jacobian determinant, inverse-consistent mapping and upsampling of displacement fields.
- `mrfreg.mind`: box filtering and MIND-SSC descriptors, packed as twelve 5-bit codes into `uint64` values.
- `mrfreg.primsmst`: `prims_graph` builds the image-driven minimum spanning tree over the control-point grid and returns a `SpanningTree`.
- `mrfreg.regularisation`: `message_dt` computes the squared-distance transform messages, and `regularise` runs belief propagation over the tree.
- `mrfreg.datacost`: Hamming-distance data costs (`data_cost`), upsampling of label cubes, and warping by displacement fields, by an affine matrix, or of label maps.
- `mrfreg.robustfit`: Gram-Schmidt QR least squares, a 3×3 Jacobi SVD, rigid fitting, and a robust affine or rigid fit by least trimmed squares.
- `mrfreg.affine`: affine warping of images and label maps. `estimate_affine` estimates an affine update from forward and backward cost volumes.
- `mrfreg.options`: the `Parameters` dataclass and `parse_command_line`.
- `mrfreg.dice`: `dice_scores` returns Dice per label.
- `mrfreg.preprocess`: `resample_matrix`, resampling of scans and label maps, and `reflect`.

## What the package does not do

- There is no graphical interface or slice viewer. Results are NIfTI and raw files on disk, or arrays returned by the functions.
- The computation runs on the CPU with NumPy only.
- The registration command does not estimate an affine transform itself. It starts from the identity, or from the matrix given with `-A`. `mrfreg.affine.estimate_affine` is available to library users but is not called by `register`.