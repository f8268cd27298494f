#!/usr/bin/env python3
"""
Precondition checks and input selection for the post-structural stage.

Everything here runs before the stage writes to the output tree.
"""

import json
import logging
from collections import namedtuple

from poststruct.freesurfer.utils import (
    ANNOT_SUFFIX,
    HEMISPHERES,
    RECON_METHODS,
    SUBJECT_SURFACE_FILES,
    UPSTREAM_MODULE,
)

logger = logging.getLogger("bids-poststructural.selection")

Atlas = namedtuple("Atlas", ["name", "annot"])


class PreconditionError(RuntimeError):
    """A required upstream artifact or configuration value is missing."""


def _marker_method(marker):
    """Extract the method from ``<id>_module-proc_surf-<method>.json``."""
    return marker.name[:-len(".json")].split(f"{UPSTREAM_MODULE}-", 1)[-1]


def select_recon_method(markers, prefer_fastsurfer=False):
    """
    Select the surface reconstruction whose outputs will be used.

    Parameters
    ----------
    markers : list of Path
        Upstream ``proc_surf`` QC markers found for the subject
    prefer_fastsurfer : bool, optional
        Use FastSurfer when both reconstructions exist

    Returns
    -------
    str
        ``freesurfer`` or ``fastsurfer``

    Raises
    ------
    PreconditionError
        If no reconstruction has been run
    """
    methods = sorted({_marker_method(m) for m in markers})
    if not methods:
        raise PreconditionError(
            f"No {UPSTREAM_MODULE} outputs found: run the surface reconstruction first"
        )
    if len(methods) == 1:
        method = methods[0]
    else:
        logger.warning(f"Subject has been processed with {' and '.join(methods)}")
        if prefer_fastsurfer:
            logger.info("fastsurfer will be used")
            method = "fastsurfer"
        else:
            logger.info("freesurfer is the default")
            method = "freesurfer"

    if method not in RECON_METHODS:
        raise PreconditionError(f"Unknown surface reconstruction method: {method}")
    return method


def check_dependency_status(marker):
    """
    Verify that the upstream module reported completion.

    Parameters
    ----------
    marker : Path
        Upstream module QC JSON

    Raises
    ------
    PreconditionError
        If the marker is missing, unreadable or not ``COMPLETED``
    """
    if not marker.exists():
        raise PreconditionError(f"Missing {UPSTREAM_MODULE} status file: {marker}")
    try:
        with open(marker) as f:
            status = json.load(f).get("Status")
    except (OSError, ValueError) as e:
        raise PreconditionError(f"Unreadable {UPSTREAM_MODULE} status file {marker}: {e}")
    if status != "COMPLETED":
        raise PreconditionError(
            f"{UPSTREAM_MODULE} status is {status!r} in {marker}: re-run the surface reconstruction"
        )


def available_atlases(parcellation_dir):
    """
    List the bundled left-hemisphere annotations.

    Returns
    -------
    list of Atlas
        Atlases sorted by name
    """
    if not parcellation_dir.is_dir():
        return []
    atlases = []
    for annot in sorted(parcellation_dir.glob("lh.*annot")):
        annot_name = annot.name[len("lh."):]
        name = annot_name.split(ANNOT_SUFFIX)[0].split(".annot")[0]
        atlases.append(Atlas(name, annot_name))
    return atlases


def resolve_atlases(parcellation_dir, selector):
    """
    Resolve the atlas selector against the bundled library.

    ``DEFAULT`` selects every annotation in ``parcellation_dir``. An explicit
    comma-separated list is matched name by name against
    ``lh.<name>_mics.annot``; names without a match are dropped with a
    warning, and only an empty result is an error.

    Parameters
    ----------
    parcellation_dir : Path
        Directory holding ``lh.*.annot`` / ``rh.*.annot`` files
    selector : str
        ``DEFAULT`` or e.g. ``"aparc,schaefer-400"``

    Returns
    -------
    list of Atlas
        Resolved atlases sorted by name

    Raises
    ------
    PreconditionError
        If no atlas could be resolved
    """
    library = available_atlases(parcellation_dir)

    if selector.strip().upper() == "DEFAULT":
        atlases = library
        logger.info(f"Selected parcellations: DEFAULT, N={len(atlases)}")
    else:
        by_name = {atlas.name: atlas for atlas in library}
        requested = [name.strip() for name in selector.split(",") if name.strip()]
        atlases = []
        for name in requested:
            annot = parcellation_dir / f"lh.{name}{ANNOT_SUFFIX}"
            if annot.exists():
                atlases.append(by_name.get(name, Atlas(name, annot.name[len("lh."):])))
            else:
                logger.warning(f"Atlas '{name}' not found in {parcellation_dir}, skipping")
        atlases = sorted(set(atlases))
        logger.info(f"Selected parcellations: {selector}, N={len(atlases)}")

    if not atlases:
        names = ", ".join(atlas.name for atlas in library) or "none available"
        raise PreconditionError(
            f"Provided atlas '{selector}' does not match any bundled parcellation, "
            f"try one of: {names}"
        )
    return atlases


def check_inputs(layout):
    """
    Verify the inputs the stage reads.

    Parameters
    ----------
    layout : SubjectLayout
        Layout with a selected reconstruction method

    Raises
    ------
    PreconditionError
        On the first missing input
    """
    required = [
        (layout.t1_nativepro, "T1w in nativepro space: run the structural processing"),
        (layout.t1_fast_seg, "subcortical segmentation: run the structural processing"),
        (layout.t1_surf, "T1w in surface space: re-run the surface reconstruction"),
        (layout.t1_mgz, "mri/T1.mgz: re-run the surface reconstruction"),
    ]
    for rel_path, description in SUBJECT_SURFACE_FILES.items():
        required.append((layout.fs_subject_dir / rel_path, description))
    for hemi in HEMISPHERES:
        required.append((layout.reference_sphere(hemi), "fsLR-32k reference sphere"))

    for path, description in required:
        if not path.exists():
            raise PreconditionError(f"Subject {layout.bids_id} is missing {description} ({path})")
        logger.debug(f"Found input: {path}")
