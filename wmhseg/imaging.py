"""Header-level image operations on NIfTI volumes.

These operations only reorder voxels, rewrite header geometry, or threshold
and count voxels; anything that needs interpolation is delegated to the
external tools. Orientation codes follow the AFNI convention used on the
command line (letters name the side an axis starts FROM, so AFNI ``LPI``
equals nibabel's ``RAS``).
"""

from pathlib import Path
from typing import Tuple, Union
import logging
import zlib

import nibabel as nib
import numpy as np
from nibabel.filebasedimages import ImageFileError
from nibabel.spatialimages import HeaderDataError

from wmhseg.errors import ImageReadError

logger = logging.getLogger(__name__)

PathLike = Union[str, Path]

# Obliquity below this many degrees is treated as axis-aligned
OBLIQUITY_TOLERANCE_DEG = 0.01

# NIFTI_XFORM_SCANNER_ANAT, what AFNI writes for +orig datasets
XFORM_SCANNER = 1

_OPPOSITE = {"L": "R", "R": "L", "A": "P", "P": "A", "S": "I", "I": "S"}


def load_image(path: PathLike) -> nib.Nifti1Image:
    """Load a NIfTI image fully into memory.

    The voxel array is a private copy, never a memory map of the file, so
    the image can be written back to the same path.

    Raises:
        ImageReadError: If the file is missing, truncated or not a NIfTI image.
    """
    try:
        img = nib.load(str(path), mmap=False)
        data = np.array(img.dataobj)
    except (ImageFileError, HeaderDataError, EOFError, OSError, ValueError, zlib.error) as e:
        raise ImageReadError(f"Cannot read image {path}: {e}", path=str(path)) from e
    header = img.header.copy()
    header.set_data_dtype(data.dtype)
    return img.__class__(data, img.affine, header)


def save_image(img: nib.Nifti1Image, path: PathLike) -> Path:
    """Save an image, creating parent directories."""
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    nib.save(img, str(path))
    logger.debug(f"Saved image: {path}")
    return path


def afni_to_axcodes(code: str) -> Tuple[str, str, str]:
    """Convert an AFNI orientation code (e.g. "LPI") to nibabel axis codes."""
    code = code.upper()
    if len(code) != 3 or any(c not in _OPPOSITE for c in code):
        raise ValueError(f"Invalid orientation code: {code}")
    return tuple(_OPPOSITE[c] for c in code)


def axcodes_to_afni(axcodes: Tuple[str, ...]) -> str:
    """Convert nibabel axis codes (e.g. ("R", "A", "S")) to an AFNI code."""
    return "".join(_OPPOSITE[c] for c in axcodes)


def orientation_code(img: nib.Nifti1Image) -> str:
    """Return the AFNI orientation code of an image."""
    return axcodes_to_afni(nib.aff2axcodes(img.affine))


def voxel_size(img: nib.Nifti1Image) -> Tuple[float, float, float]:
    """Return the voxel spacing of the three spatial axes in mm."""
    zooms = img.header.get_zooms()[:3]
    return tuple(float(z) for z in zooms)


def is_oblique(img: nib.Nifti1Image, tolerance_deg: float = OBLIQUITY_TOLERANCE_DEG) -> bool:
    """Return whether the voxel axes are tilted relative to the world axes."""
    angles = np.degrees(nib.affines.obliquity(img.affine))
    return bool(np.max(np.abs(angles)) > tolerance_deg)


def reorient(img: nib.Nifti1Image, code: str) -> nib.Nifti1Image:
    """Permute/flip voxel axes so the image has the given AFNI orientation."""
    target = nib.orientations.axcodes2ornt(afni_to_axcodes(code))
    current = nib.orientations.io_orientation(img.affine)
    transform = nib.orientations.ornt_transform(current, target)
    return img.as_reoriented(transform)


def deoblique(img: nib.Nifti1Image) -> nib.Nifti1Image:
    """Replace the affine with the closest axis-aligned affine.

    Voxel data, spacing and the position of the first voxel are kept; only
    the rotation that made the grid oblique is dropped.
    """
    affine = img.affine
    zooms = voxel_size(img)
    ornt = nib.orientations.io_orientation(affine)

    cardinal = np.eye(4)
    cardinal[:3, :3] = 0.0
    for voxel_axis, (world_axis, flip) in enumerate(ornt):
        cardinal[int(world_axis), voxel_axis] = flip * zooms[voxel_axis]
    cardinal[:3, 3] = affine[:3, 3]

    return _with_affine(img, cardinal)


def reset_space(img: nib.Nifti1Image) -> nib.Nifti1Image:
    """Mark the image as living in its own scanner frame.

    Drops any template/space labelling (Talairach, MNI, aligned) from the
    qform and sform codes, keeping the geometry itself unchanged.
    """
    return _with_affine(img, img.affine)


def copy_geometry(reference: nib.Nifti1Image, img: nib.Nifti1Image) -> nib.Nifti1Image:
    """Copy spatial header geometry from ``reference`` onto ``img``'s voxels.

    Raises:
        ValueError: If the spatial grids differ in size.
    """
    if tuple(img.shape[:3]) != tuple(reference.shape[:3]):
        raise ValueError(
            f"Cannot copy geometry: grid {img.shape[:3]} does not match reference {reference.shape[:3]}"
        )

    data = np.asanyarray(img.dataobj)
    header = img.header.copy()
    header.set_data_dtype(data.dtype)
    zooms = list(header.get_zooms())
    zooms[:3] = voxel_size(reference)
    header.set_zooms(zooms)

    qform, qcode = reference.header.get_qform(coded=True)
    sform, scode = reference.header.get_sform(coded=True)

    out = img.__class__(data, reference.affine, header)
    out.set_qform(qform if qform is not None else reference.affine, code=int(qcode or XFORM_SCANNER))
    out.set_sform(sform if sform is not None else reference.affine, code=int(scode or XFORM_SCANNER))
    return out


def flip_xy(img: nib.Nifti1Image) -> nib.Nifti1Image:
    """Reverse the first two voxel axes (fslswapdim -x -y z).

    The affine is updated so the flipped image still describes the same
    anatomy; a subsequent geometry copy is what moves the data.
    """
    data = np.asanyarray(img.dataobj)[::-1, ::-1, ...]
    nx, ny = img.shape[0], img.shape[1]
    flip = np.array(
        [
            [-1.0, 0.0, 0.0, nx - 1],
            [0.0, -1.0, 0.0, ny - 1],
            [0.0, 0.0, 1.0, 0.0],
            [0.0, 0.0, 0.0, 1.0],
        ]
    )
    affine = img.affine @ flip
    header = img.header.copy()
    header.set_data_dtype(data.dtype)
    out = img.__class__(np.ascontiguousarray(data), affine, header)
    out.set_qform(affine, code=int(img.header["qform_code"]) or XFORM_SCANNER)
    out.set_sform(affine, code=int(img.header["sform_code"]) or XFORM_SCANNER)
    return out


def binarize(img: nib.Nifti1Image, threshold: float) -> nib.Nifti1Image:
    """Return a uint8 mask of voxels with value >= threshold."""
    data = np.asanyarray(img.dataobj)
    return _mask_like(img, data >= threshold)


def select_label(img: nib.Nifti1Image, label: int) -> nib.Nifti1Image:
    """Return a uint8 mask of voxels equal to ``label``."""
    data = np.asanyarray(img.dataobj)
    return _mask_like(img, np.rint(data) == label)


def mask_statistics(img: nib.Nifti1Image) -> Tuple[int, float]:
    """Count nonzero voxels and their volume in mm^3 (fslstats -V)."""
    data = np.asanyarray(img.dataobj)
    count = int(np.count_nonzero(data))
    voxel_mm3 = float(np.prod(voxel_size(img)))
    return count, count * voxel_mm3


def _mask_like(img: nib.Nifti1Image, mask: np.ndarray) -> nib.Nifti1Image:
    header = img.header.copy()
    header.set_data_dtype(np.uint8)
    header.set_slope_inter(1.0, 0.0)
    out = img.__class__(mask.astype(np.uint8), img.affine, header)
    return out


def _with_affine(img: nib.Nifti1Image, affine: np.ndarray) -> nib.Nifti1Image:
    data = np.asanyarray(img.dataobj)
    header = img.header.copy()
    header.set_data_dtype(data.dtype)
    out = img.__class__(data, affine, header)
    out.set_qform(affine, code=XFORM_SCANNER)
    out.set_sform(affine, code=XFORM_SCANNER)
    return out
