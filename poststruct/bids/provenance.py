#!/usr/bin/env python3
"""
BIDS Provenance for the post-structural stage

This module writes the records downstream modules rely on: the
transformation and surface provenance JSONs, the module status JSON, the
per-subject processing status table and the derivatives
dataset_description.json.
"""

import fcntl
import getpass
import json
import logging
import os
import platform
import tempfile
from contextlib import contextmanager
from datetime import datetime
from pathlib import Path

import pandas as pd

from poststruct import __version__
from poststruct.freesurfer.surfaces import image_header_info
from poststruct.freesurfer.utils import HEMISPHERES, NATIVEPRO_LABELS
from poststruct.manifest import write_json_atomic

# Configure logging
logger = logging.getLogger("bids-poststructural.provenance")

STATUS_COLUMNS = [
    "id",
    "session",
    "module",
    "status",
    "progress",
    "time",
    "date",
    "user",
    "workstation",
    "version",
]


def _user():
    try:
        return getpass.getuser()
    except (KeyError, OSError):
        return os.environ.get("USER", "unknown")


def write_transformations_json(path, fixed, moving, transform):
    """
    Record the affine registration between two volumes.

    Parameters
    ----------
    path : Path
        Output JSON
    fixed : Path
        Fixed (reference) image
    moving : Path
        Moving image
    transform : Path
        Transform mapping ``moving`` onto ``fixed``

    Returns
    -------
    dict
        The written record
    """
    record = {
        "Version": __version__,
        "LastRun": datetime.now().isoformat(),
        "fixedImage": image_header_info(fixed),
        "movingImage": image_header_info(moving),
        "transformation": str(transform),
    }
    write_json_atomic(path, record)
    logger.info(f"Transformation record saved to {path}")
    return record


def write_post_structural_json(path, layout, atlases, threads):
    """
    Record the surface processing outputs of a subject.

    Parameters
    ----------
    path : Path
        Output JSON
    layout : SubjectLayout
        Subject layout with a selected reconstruction method
    atlases : list of Atlas
        Parcellations processed
    threads : int
        Thread count used

    Returns
    -------
    dict
        The written record
    """
    surfaces = {}
    for hemi in HEMISPHERES:
        for label in NATIVEPRO_LABELS:
            for space in ("fsnative", "nativepro"):
                surface = layout.conte69_surface(hemi, "fsLR-32k", label, space=space)
                if surface.exists():
                    surfaces.setdefault(space, []).append(surface.name)

    record = {
        "Module": "post_structural",
        "Version": __version__,
        "LastRun": datetime.now().isoformat(),
        "SurfaceProc": layout.method,
        "SurfaceDir": str(layout.subjects_dir),
        "SurfaceSubject": layout.bids_id,
        "NativeSurfSpace": image_header_info(layout.t1_surf),
        "Atlas": [atlas.name for atlas in atlases],
        "fsLR-32k": surfaces,
        "Threads": threads,
    }
    write_json_atomic(path, record)
    logger.info(f"Post-structural record saved to {path}")
    return record


def read_module_status(path):
    """
    Read a module status JSON.

    Returns
    -------
    dict or None
        The parsed record, or None if it does not exist
    """
    path = Path(path)
    if not path.exists():
        return None
    with open(path) as f:
        return json.load(f)


def write_module_status(path, module, manifest, elapsed_minutes, threads, proc):
    """
    Write the module status JSON consumed by downstream stages.

    Parameters
    ----------
    path : Path
        Output JSON
    module : str
        Module name
    manifest : StepManifest
        Step statuses of the run
    elapsed_minutes : float
        Processing time
    threads : int
        Thread count used
    proc : str
        Processing-mode tag

    Returns
    -------
    dict
        The written record
    """
    record = {
        "Module": module,
        "Status": manifest.status,
        "Progress": manifest.progress,
        "Steps": {name: entry["status"].value for name, entry in manifest.steps.items()},
        "User": _user(),
        "Workstation": platform.node(),
        "LastRun": datetime.now().isoformat(),
        "ProcessingTimeMinutes": round(elapsed_minutes, 3),
        "Threads": threads,
        "Proc": proc,
        "Version": __version__,
    }
    write_json_atomic(path, record)
    logger.info(f"Module status saved to {path}")
    return record


def update_status_csv(csv_path, participant, session, module, manifest, elapsed_minutes):
    """
    Upsert the status row of a subject/session/module in the status table.

    The table is rewritten under an exclusive lock on a sidecar file, so
    runs for different subjects can update it at the same time.

    Parameters
    ----------
    csv_path : Path
        Status table shared by every subject of the derivatives dataset
    participant : str
        Participant label without ``sub-``
    session : str or None
        Session label without ``ses-``
    module : str
        Module name
    manifest : StepManifest
        Step statuses of the run
    elapsed_minutes : float
        Processing time

    Returns
    -------
    pandas.DataFrame
        The updated table
    """
    csv_path = Path(csv_path)
    row = {
        "id": f"sub-{participant}",
        "session": session or "",
        "module": module,
        "status": manifest.status,
        "progress": manifest.progress,
        "time": round(elapsed_minutes, 3),
        "date": datetime.now().strftime("%d-%m-%Y"),
        "user": _user(),
        "workstation": platform.node(),
        "version": __version__,
    }

    with _locked(csv_path):
        table = _upsert_status_row(csv_path, row, module)
    logger.info(f"Status table updated: {csv_path}")
    return table


@contextmanager
def _locked(path):
    """Hold an exclusive lock on a sidecar ``.<name>.lock`` file."""
    lock_path = path.with_name(f".{path.name}.lock")
    with open(lock_path, "a") as lock_file:
        fcntl.flock(lock_file, fcntl.LOCK_EX)
        try:
            yield
        finally:
            fcntl.flock(lock_file, fcntl.LOCK_UN)


def _upsert_status_row(csv_path, row, module):
    if csv_path.exists():
        table = pd.read_csv(csv_path, dtype={"id": str, "session": str}, keep_default_na=False)
        same = (
            (table["id"] == row["id"])
            & (table["session"] == row["session"])
            & (table["module"] == module)
        )
        table = table.loc[~same]
        table = pd.concat([table, pd.DataFrame([row])], ignore_index=True)
    else:
        table = pd.DataFrame([row], columns=STATUS_COLUMNS)

    fd, tmp_name = tempfile.mkstemp(prefix=f".{csv_path.name}.", dir=csv_path.parent)
    try:
        with os.fdopen(fd, "w") as f:
            table.to_csv(f, index=False)
        os.replace(tmp_name, csv_path)
    except BaseException:
        if os.path.exists(tmp_name):
            os.remove(tmp_name)
        raise
    return table


def create_dataset_description(output_dir, bids_dir):
    """
    Create the derivatives dataset_description.json if it doesn't exist.

    Parameters
    ----------
    output_dir : Path
        Derivatives directory
    bids_dir : Path
        Source BIDS dataset

    Returns
    -------
    bool
        True if a new file was written
    """
    dataset_desc = Path(output_dir) / "dataset_description.json"
    if dataset_desc.exists():
        return False

    write_json_atomic(dataset_desc, {
        "Name": "Post-structural surface derivatives",
        "BIDSVersion": "1.8.0",
        "DatasetType": "derivative",
        "GeneratedBy": [{
            "Name": "bids-poststructural",
            "Version": __version__,
            "Description": "Standard-mesh surfaces, parcellations and morphology maps",
        }],
        "SourceDatasets": [{"URL": f"file://{Path(bids_dir).absolute()}"}],
    })
    logger.info(f"Created {dataset_desc}")
    return True

