#!/usr/bin/env python3
"""
Surface and image helpers built on nibabel.

`remove_fs_offset` and `image_header_info` are used by the stage itself.
`load_surface` and `load_surface_map` are the public API for reading the
GIFTI surfaces and morphology maps the stage writes, e.g. in downstream
analyses or when checking outputs:

    vertices, faces = load_surface(layout.conte69_surface("lh", "fsLR-32k", "pial"))
    thickness = load_surface_map(layout.morphology_map("lh", "fsLR-32k", "thickness"))
"""

import logging
from pathlib import Path

import nibabel as nb
import numpy as np

logger = logging.getLogger("bids-poststructural.surfaces")

POINTSET = "NIFTI_INTENT_POINTSET"
TRIANGLE = "NIFTI_INTENT_TRIANGLE"

# FreeSurfer volume-geometry centre, i.e. the c_ras offset
CENTER_KEYS = ("VolGeomC_R", "VolGeomC_A", "VolGeomC_S")


def _pointset(img, path):
    arrays = img.get_arrays_from_intent(POINTSET)
    if not arrays:
        raise ValueError(f"No pointset data array in surface: {path}")
    return arrays[0]


def remove_fs_offset(in_file, out_file):
    """
    Remove the offset-to-origin FreeSurfer stores in GIFTI surfaces.

    ``mris_convert`` keeps the volume-geometry centre in the pointset
    metadata; Workbench ignores it, so surfaces derived from FreeSurfer are
    only comparable to Workbench outputs once it is zeroed.

    Parameters
    ----------
    in_file : str or Path
        GIFTI surface written by FreeSurfer tools
    out_file : str or Path
        Output GIFTI surface

    Returns
    -------
    Path
        Path to the written surface
    """
    img = nb.load(str(in_file))
    pointset = _pointset(img, in_file)

    for key in CENTER_KEYS:
        if key in pointset.meta:
            logger.debug(f"Zeroing {key}={pointset.meta[key]} in {in_file}")
        pointset.meta[key] = "0.000000"

    out_file = Path(out_file)
    img.to_filename(str(out_file))
    return out_file


def load_surface(path):
    """
    Load a GIFTI surface mesh.

    Parameters
    ----------
    path : str or Path
        ``.surf.gii`` file

    Returns
    -------
    tuple of numpy.ndarray
        ``(vertices, faces)`` with shapes ``(n, 3)`` and ``(m, 3)``
    """
    img = nb.load(str(path))
    vertices = np.asarray(_pointset(img, path).data, dtype=float)
    triangles = img.get_arrays_from_intent(TRIANGLE)
    if not triangles:
        raise ValueError(f"No triangle data array in surface: {path}")
    faces = np.asarray(triangles[0].data, dtype=int)
    return vertices, faces


def load_surface_map(path):
    """
    Load per-vertex data from a GIFTI map (``.func.gii``/``.shape.gii``).

    Returns
    -------
    numpy.ndarray
        1-D array for a single map, 2-D ``(n_vertices, n_maps)`` otherwise
    """
    img = nb.load(str(path))
    if not img.darrays:
        raise ValueError(f"No data arrays in map: {path}")
    data = [np.asarray(darray.data) for darray in img.darrays]
    if len(data) == 1:
        return data[0]
    return np.column_stack(data)


def image_header_info(path):
    """
    Summarise the geometry of a volume for provenance records.

    Parameters
    ----------
    path : str or Path
        NIfTI or MGH volume

    Returns
    -------
    dict
        Name, dimensions, voxel sizes and the sform/qform codes and matrix
    """
    img = nb.load(str(path))
    header = img.header
    info = {
        "Name": str(path),
        "dim": [int(d) for d in img.shape],
        "pixdim": [round(float(z), 6) for z in header.get_zooms()],
        "affine": np.round(img.affine, 6).tolist(),
    }
    if isinstance(img, nb.Nifti1Image):
        info["sform_code"] = int(header["sform_code"])
        info["qform_code"] = int(header["qform_code"])
    return info
