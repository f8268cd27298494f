#!/usr/bin/env python3
"""
Surface-specific constants shared by the post-structural stage.
"""

# FreeSurfer hemisphere prefix -> BIDS hemi entity
HEMISPHERES = {
    "lh": "L",
    "rh": "R",
}

RECON_METHODS = ("freesurfer", "fastsurfer")

# Surfaces resampled onto the fsLR-32k mesh in fsnative space
RESAMPLED_LABELS = ("pial", "white")

# Surfaces registered to nativepro space, in processing order.
# Entries ending in .surf.gii already exist as GIFTI in the subject surf dir.
NATIVEPRO_LABELS = ("midthickness.surf.gii", "pial", "white")

MORPHOLOGY_MEASURES = ("thickness", "curv")
MORPHOLOGY_MESHES = ("fsnative", "fsaverage5", "fsLR-32k")

# Source subject of the bundled annotation library
ANNOT_SUBJECT = "fsaverage5"
ANNOT_SUFFIX = "_mics.annot"

# Label values below this are subcortical in the aparc2aseg output
CORTICAL_LABEL_THRESHOLD = 1000

# Module name used in QC and status records
MODULE_NAME = "post_structural"
UPSTREAM_MODULE = "proc_surf"

# Expected FreeSurfer subject-directory inputs, relative to the subject dir
SUBJECT_SURFACE_FILES = {
    "surf/lh.white": "left white surface",
    "surf/rh.white": "right white surface",
    "surf/lh.pial": "left pial surface",
    "surf/rh.pial": "right pial surface",
    "surf/lh.sphere.reg": "left registered sphere",
    "surf/rh.sphere.reg": "right registered sphere",
}


def reference_sphere_name(hemi_cap):
    """Filename of the bundled fsLR-32k sphere deformed to fsaverage."""
    return f"fs_LR-deformed_to-fsaverage.{hemi_cap}.sphere.32k_fs_LR.surf.gii"


def label_stem(label):
    """Strip the GIFTI extension from a surface label (``midthickness.surf.gii``)."""
    return label[:-len(".surf.gii")] if label.endswith(".surf.gii") else label
