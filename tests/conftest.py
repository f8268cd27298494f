#!/usr/bin/env python3
"""
Shared fixtures for the post-structural tests.

The stage is exercised end to end with a fake tool runner that writes the
files an external tool would produce, so no neuroimaging software is needed.
"""

import json
import os
from pathlib import Path
from types import SimpleNamespace

import nibabel as nb
from nibabel import gifti
import numpy as np
import pytest

from poststruct.bids.layout import SubjectLayout
from poststruct.config import PostStructuralConfig
from poststruct.freesurfer.wrapper import ToolError


def write_volume(path):
    """Write a small valid NIfTI or MGH volume."""
    data = np.zeros((4, 4, 4), dtype=np.uint8)
    path = Path(path)
    if path.name.endswith(".mgz"):
        nb.MGHImage(data, np.eye(4)).to_filename(str(path))
    else:
        nb.Nifti1Image(data, np.eye(4)).to_filename(str(path))
    return path


def write_surface(path, offset=(10.5, -3.25, 7.0)):
    """Write a small valid GIFTI surface carrying a FreeSurfer c_ras offset."""
    vertices = np.array(
        [[0, 0, 0], [1, 0, 0], [0, 1, 0], [0, 0, 1]], dtype=np.float32
    )
    faces = np.array([[0, 1, 2], [0, 1, 3], [0, 2, 3], [1, 2, 3]], dtype=np.int32)
    meta = {f"VolGeomC_{axis}": f"{value:.6f}" for axis, value in zip("RAS", offset)}
    pointset = gifti.GiftiDataArray(
        vertices,
        intent="NIFTI_INTENT_POINTSET",
        datatype="NIFTI_TYPE_FLOAT32",
        meta=gifti.GiftiMetaData(meta),
    )
    triangles = gifti.GiftiDataArray(
        faces, intent="NIFTI_INTENT_TRIANGLE", datatype="NIFTI_TYPE_INT32"
    )
    nb.GiftiImage(darrays=[pointset, triangles]).to_filename(str(path))
    return Path(path)


def write_dummy(path):
    """Write a placeholder matching the file type."""
    path = Path(path)
    if path.name.endswith(".surf.gii"):
        return write_surface(path)
    if path.name.endswith((".nii.gz", ".nii", ".mgz")):
        return write_volume(path)
    path.write_text("dummy")
    return path


class FakeRunner:
    """Stands in for ToolRunner, materialising the outputs of each command.

    Parameters
    ----------
    fail_on : dict, optional
        Tool name -> exit status to fail with
    fail_after_output : bool, optional
        Write the outputs before failing, leaving a stale file behind
    no_output : list, optional
        Substrings of output paths the fake tools never write
    interrupt_on : dict, optional
        Tool name -> signal sent to the current process
    """

    def __init__(self, fail_on=None, fail_after_output=False, no_output=(), interrupt_on=None):
        self.fail_on = fail_on or {}
        self.fail_after_output = fail_after_output
        self.no_output = list(no_output)
        self.interrupt_on = interrupt_on or {}
        self.calls = []

    def tools(self):
        return [cmd[0] for cmd in self.calls]

    def run(self, cmd, step=None):
        cmd = [str(c) for c in cmd]
        self.calls.append(cmd)
        tool = cmd[0]

        if tool in self.interrupt_on:
            os.kill(os.getpid(), self.interrupt_on[tool])

        if tool in self.fail_on and not self.fail_after_output:
            raise ToolError(cmd, self.fail_on[tool], "simulated failure")

        if tool == "antsRegistrationSyN.sh":
            prefix = cmd[cmd.index("-o") + 1]
            targets = [f"{prefix}0GenericAffine.mat", f"{prefix}Warped.nii.gz"]
        else:
            targets = [arg for arg in cmd[1:] if os.sep in arg and not arg.startswith("[")]

        for target in targets:
            path = Path(target)
            if path.exists() or not path.parent.is_dir():
                continue
            if any(pattern in target for pattern in self.no_output):
                continue
            write_dummy(path)

        if tool in self.fail_on:
            raise ToolError(cmd, self.fail_on[tool], "simulated failure")
        return SimpleNamespace(returncode=0, stdout="", stderr="")


def write_status(path, status="COMPLETED"):
    path.parent.mkdir(parents=True, exist_ok=True)
    with open(path, "w") as f:
        json.dump({"Module": "proc_surf", "Status": status, "Progress": "3/3"}, f)
    return path


@pytest.fixture
def bids_dataset(tmp_path):
    """Create a temporary BIDS dataset for testing."""
    bids_dir = tmp_path / "rawdata"
    anat_dir = bids_dir / "sub-01" / "ses-01" / "anat"
    anat_dir.mkdir(parents=True)

    with open(bids_dir / "dataset_description.json", "w") as f:
        json.dump({"Name": "Test BIDS Dataset", "BIDSVersion": "1.8.0", "DatasetType": "raw"}, f)

    (anat_dir / "sub-01_ses-01_T1w.nii.gz").touch()
    return bids_dir


@pytest.fixture
def resources_dir(tmp_path):
    """Bundled annotation library and reference spheres."""
    resources = tmp_path / "resources"
    parcellations = resources / "parcellations"
    surfaces = resources / "surfaces"
    parcellations.mkdir(parents=True)
    surfaces.mkdir(parents=True)

    for atlas in ("aparc", "schaefer-100"):
        for hemi in ("lh", "rh"):
            (parcellations / f"{hemi}.{atlas}_mics.annot").write_text("annot")
    for hemi in ("L", "R"):
        write_surface(surfaces / f"fs_LR-deformed_to-fsaverage.{hemi}.sphere.32k_fs_LR.surf.gii")
    return resources


@pytest.fixture
def derivatives(tmp_path, bids_dataset, resources_dir):
    """Derivatives tree with completed structural and surface stages.

    Returns a namespace with the main directories and a ``config`` factory.
    """
    output_dir = tmp_path / "derivatives" / "pipeline"
    tmp_root = tmp_path / "scratch"

    def make_config(**kwargs):
        options = {
            "session": "01",
            "threads": 2,
            "tmp_dir": tmp_root,
            "resources_dir": resources_dir,
        }
        options.update(kwargs)
        return PostStructuralConfig(bids_dataset, output_dir, "01", **options)

    layout = SubjectLayout(make_config(), "freesurfer")
    layout.anat_dir.mkdir(parents=True)
    write_volume(layout.t1_nativepro)
    write_volume(layout.t1_fast_seg)
    write_status(layout.proc_surf_marker("freesurfer"))

    for method in ("freesurfer", "fastsurfer"):
        fs_subject = SubjectLayout(make_config(), method).fs_subject_dir
        for subdir in ("mri", "surf", "label"):
            (fs_subject / subdir).mkdir(parents=True)
        for volume in ("orig.mgz", "T1.mgz", "aseg.mgz"):
            write_volume(fs_subject / "mri" / volume)
        for hemi in ("lh", "rh"):
            for surface in ("white", "pial", "sphere.reg", "thickness", "curv"):
                (fs_subject / "surf" / f"{hemi}.{surface}").write_text("freesurfer surface")

    return SimpleNamespace(
        output_dir=output_dir,
        tmp_root=tmp_root,
        bids_dir=bids_dataset,
        resources_dir=resources_dir,
        layout=layout,
        config=make_config,
    )


def populate_outputs(layout, atlases=("aparc", "schaefer-100")):
    """Create every output of the stage, as after a complete earlier run."""
    layout.make_output_dirs()
    write_volume(layout.t1_fsnative)
    write_dummy(layout.affine)
    for atlas in atlases:
        write_volume(layout.atlas_volume(atlas))
    for hemi in ("lh", "rh"):
        write_surface(layout.fs_surface(hemi, "midthickness.surf.gii"))
        write_surface(layout.subject_sphere(hemi))
        for label in ("midthickness", "pial", "white"):
            write_surface(layout.conte69_surface(hemi, "fsLR-32k", label, space="fsnative"))
    for surface in layout.nativepro_surfaces():
        write_surface(surface)
    for path in layout.morphology_maps():
        write_dummy(path)
