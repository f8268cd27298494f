#!/usr/bin/env python3
"""
Tests for the post-structural stage orchestrator.
"""

import json
import signal
from unittest.mock import patch

import pandas as pd
import pytest

from conftest import FakeRunner, populate_outputs, write_status
from poststruct.manifest import StepManifest, StepStatus
from poststruct.selection import PreconditionError
from poststruct.workflow import PipelineInterrupted, PostStructuralWorkflow

EXPECTED_STEPS = [
    "affine",
    "parcellation_atlas-aparc",
    "parcellation_atlas-schaefer-100",
    "fsLR-32k_hemi-L_label-pial",
    "fsLR-32k_hemi-L_label-white",
    "fsLR-32k_hemi-R_label-pial",
    "fsLR-32k_hemi-R_label-white",
    "nativepro_surfaces",
    "morphology",
]


def test_full_run_freesurfer(derivatives):
    """Test a run from scratch with FreeSurfer outputs."""
    runner = FakeRunner()
    workflow = PostStructuralWorkflow(derivatives.config(), runner=runner)
    record = workflow.run()

    layout = workflow.layout
    assert record["Status"] == "COMPLETED"
    assert record["Progress"] == f"{len(EXPECTED_STEPS)}/{len(EXPECTED_STEPS)}"
    assert list(record["Steps"]) == EXPECTED_STEPS

    # Outputs of every step
    assert layout.t1_fsnative.exists()
    assert layout.affine.exists()
    assert layout.atlas_volume("aparc").exists()
    assert layout.atlas_volume("schaefer-100").exists()
    assert all(path.exists() for path in layout.nativepro_surfaces())
    assert all(path.exists() for path in layout.morphology_maps())

    # ANTs by-products are removed
    assert not list(layout.xfm_dir.glob("*Warped.nii.gz"))

    # Records
    with open(layout.transformations_json) as f:
        transformations = json.load(f)
    assert transformations["transformation"] == str(layout.affine)
    assert transformations["fixedImage"]["dim"] == [4, 4, 4]

    with open(layout.post_structural_json) as f:
        post_structural = json.load(f)
    assert post_structural["SurfaceProc"] == "freesurfer"
    assert post_structural["Atlas"] == ["aparc", "schaefer-100"]
    assert len(post_structural["fsLR-32k"]["nativepro"]) == 6

    with open(layout.module_json) as f:
        assert json.load(f)["Status"] == "COMPLETED"
    assert layout.status_csv.exists()
    assert (derivatives.output_dir / "dataset_description.json").exists()

    # Freesurfer path registers the surfaces with the Workbench affine
    tools = runner.tools()
    assert "c3d_affine_tool" in tools
    assert "wb_command" in tools
    assert any("-surface-apply-affine" in cmd for cmd in runner.calls)

    # Scratch directory removed
    assert not workflow.scratch_dir.exists()


def test_step_order(derivatives):
    """Test that tools run in dependency order."""
    runner = FakeRunner()
    PostStructuralWorkflow(derivatives.config(atlas="aparc"), runner=runner).run()

    tools = runner.tools()
    assert tools[:3] == ["mrconvert", "antsRegistrationSyN.sh", "antsApplyTransforms"]
    assert tools.index("mri_aparc2aseg") < tools.index("wb_shortcuts")
    assert tools.index("wb_shortcuts") < tools.index("c3d_affine_tool")

    thresholds = [cmd for cmd in runner.calls if cmd[0] == "fslmaths"]
    assert thresholds[0][2:4] == ["-thr", "1000"]


def test_fastsurfer_path(derivatives):
    """Test the FastSurfer code path resamples instead of applying the affine."""
    write_status(derivatives.layout.proc_surf_marker("fastsurfer"))
    runner = FakeRunner()
    workflow = PostStructuralWorkflow(derivatives.config(fastsurfer=True), runner=runner)
    record = workflow.run()

    layout = workflow.layout
    assert workflow.method == "fastsurfer"
    assert layout.subjects_dir == derivatives.output_dir.parent / "fastsurfer"
    assert record["Status"] == "COMPLETED"
    assert "c3d_affine_tool" not in runner.tools()
    assert layout.conte69_surface("lh", "fsnative", "midthickness", space="nativepro").exists()

    resample_targets = [
        cmd[-1] for cmd in runner.calls if cmd[:2] == ["wb_command", "-surface-resample"]
    ]
    for surface in layout.nativepro_surfaces():
        assert str(surface) in resample_targets


def test_idempotent_rerun(derivatives):
    """Test that a subject with every output runs no tools."""
    config = derivatives.config()
    populate_outputs(derivatives.layout)

    runner = FakeRunner()
    record = PostStructuralWorkflow(config, runner=runner).run()

    assert runner.calls == []
    assert record["Status"] == "COMPLETED"

    manifest = StepManifest.load(derivatives.layout.manifest_json)
    assert all(manifest.status_of(name) is StepStatus.DONE for name in EXPECTED_STEPS)

    # A completed record short-circuits and is returned unchanged
    with open(derivatives.layout.module_json) as f:
        written = json.load(f)
    second_runner = FakeRunner()
    second = PostStructuralWorkflow(config, runner=second_runner).run()
    assert second_runner.calls == []
    assert second == written
    with open(derivatives.layout.module_json) as f:
        assert json.load(f) == written


def test_missing_output_not_counted(derivatives):
    """Test that a step whose tool writes nothing is not counted."""
    runner = FakeRunner(no_output=["atlas-aparc"])
    workflow = PostStructuralWorkflow(derivatives.config(), runner=runner)
    record = workflow.run()

    assert record["Status"] == "INCOMPLETE"
    assert record["Progress"] == f"{len(EXPECTED_STEPS) - 1}/{len(EXPECTED_STEPS)}"
    assert record["Steps"]["parcellation_atlas-aparc"] == "failed"
    assert record["Steps"]["parcellation_atlas-schaefer-100"] == "done"

    manifest = StepManifest.load(workflow.layout.manifest_json)
    assert manifest.failed_steps() == ["parcellation_atlas-aparc"]
    assert "missing outputs" in manifest.steps["parcellation_atlas-aparc"]["message"]


def test_failed_tool_with_stale_output(derivatives):
    """Test that a non-zero exit fails the step even if the output was written."""
    runner = FakeRunner(fail_on={"antsApplyTransforms": 1}, fail_after_output=True)
    workflow = PostStructuralWorkflow(derivatives.config(atlas="aparc"), runner=runner)
    record = workflow.run()

    layout = workflow.layout
    assert layout.t1_fsnative.exists()
    assert record["Status"] == "INCOMPLETE"
    assert record["Steps"]["affine"] == "failed"
    assert record["Steps"]["parcellation_atlas-aparc"] == "failed"
    assert record["Steps"]["nativepro_surfaces"] == "done"

    manifest = StepManifest.load(layout.manifest_json)
    assert manifest.steps["affine"]["returncode"] == 1
    assert not layout.transformations_json.exists()


def test_failed_run_is_resumed(derivatives):
    """Test that re-running only repeats the steps that did not complete."""
    config = derivatives.config(atlas="aparc")
    PostStructuralWorkflow(config, runner=FakeRunner(fail_on={"mri_aparc2aseg": 1})).run()

    runner = FakeRunner()
    record = PostStructuralWorkflow(config, runner=runner).run()

    assert record["Status"] == "COMPLETED"
    assert runner.tools()[0] == "mri_surf2surf"
    assert "antsRegistrationSyN.sh" not in runner.tools()
    assert "wb_shortcuts" not in runner.tools()


def test_missing_nativepro_fails_fast(derivatives):
    """Test that a missing nativepro T1w stops before any write."""
    derivatives.layout.t1_nativepro.unlink()
    runner = FakeRunner()

    with pytest.raises(PreconditionError, match="nativepro"):
        PostStructuralWorkflow(derivatives.config(), runner=runner).run()

    layout = derivatives.layout
    assert runner.calls == []
    for directory in (layout.xfm_dir, layout.parc_dir, layout.surf_dir, layout.maps_dir, layout.logs_dir):
        assert not directory.exists()
    assert not layout.manifest_json.exists()
    assert not layout.module_json.exists()
    assert not layout.status_csv.exists()
    assert not (derivatives.output_dir / "dataset_description.json").exists()
    assert not derivatives.tmp_root.exists()


def test_missing_recon_fails(derivatives):
    """Test that a subject without surface reconstruction is rejected."""
    derivatives.layout.proc_surf_marker("freesurfer").unlink()
    runner = FakeRunner()

    with pytest.raises(PreconditionError):
        PostStructuralWorkflow(derivatives.config(), runner=runner).run()
    assert runner.calls == []


def test_unknown_atlas_fails(derivatives):
    """Test that an atlas selection without any match is rejected."""
    with pytest.raises(PreconditionError, match="does not match"):
        PostStructuralWorkflow(derivatives.config(atlas="glasser-360"), runner=FakeRunner()).run()


@pytest.mark.parametrize("nocleanup", [False, True])
def test_interrupt_cleans_scratch(derivatives, nocleanup):
    """Test that SIGINT removes the scratch directory unless nocleanup is set."""
    runner = FakeRunner(interrupt_on={"antsRegistrationSyN.sh": signal.SIGINT})
    workflow = PostStructuralWorkflow(derivatives.config(nocleanup=nocleanup), runner=runner)
    previous_handler = signal.getsignal(signal.SIGINT)

    with pytest.raises(PipelineInterrupted):
        workflow.run()

    assert workflow.scratch_dir.exists() is nocleanup
    assert signal.getsignal(signal.SIGINT) == previous_handler

    # Nothing after the interrupted step ran and no status was recorded
    assert runner.tools() == ["mrconvert", "antsRegistrationSyN.sh"]
    assert not workflow.layout.module_json.exists()
    manifest = StepManifest.load(workflow.layout.manifest_json)
    assert manifest.status_of("affine") is StepStatus.FAILED
    assert manifest.status_of("morphology") is StepStatus.PENDING


def test_nocleanup_keeps_scratch(derivatives):
    """Test that nocleanup keeps the scratch directory after a normal run."""
    workflow = PostStructuralWorkflow(derivatives.config(nocleanup=True), runner=FakeRunner())
    workflow.run()
    assert workflow.scratch_dir.exists()
    assert workflow.scratch_dir.parent == derivatives.tmp_root


@pytest.mark.parametrize("fastsurfer", [False, True])
def test_failure_cascades_to_dependent_steps(derivatives, fastsurfer):
    """Test a failed resampling marks later steps failed and the run still completes its records."""
    if fastsurfer:
        write_status(derivatives.layout.proc_surf_marker("fastsurfer"))
    runner = FakeRunner(fail_on={"wb_shortcuts": 1})
    workflow = PostStructuralWorkflow(derivatives.config(fastsurfer=fastsurfer), runner=runner)
    record = workflow.run()

    layout = workflow.layout
    assert record["Status"] == "INCOMPLETE"
    assert record["Progress"] == f"3/{len(EXPECTED_STEPS)}"
    for name in EXPECTED_STEPS[3:]:
        assert record["Steps"][name] == "failed"

    manifest = StepManifest.load(layout.manifest_json)
    assert manifest.steps["fsLR-32k_hemi-L_label-pial"]["returncode"] == 1
    assert "missing inputs" in manifest.steps["nativepro_surfaces"]["message"]
    assert "missing outputs" in manifest.steps["morphology"]["message"]

    # Morphology still maps what does not depend on the resampling
    for hemi in ("lh", "rh"):
        for measure in ("thickness", "curv"):
            assert layout.morphology_map(hemi, "fsnative", measure).exists()
            assert layout.morphology_map(hemi, "fsaverage5", measure).exists()
            assert not layout.morphology_map(hemi, "fsLR-32k", measure).exists()

    with open(layout.module_json) as f:
        assert json.load(f)["Status"] == "INCOMPLETE"
    table = pd.read_csv(layout.status_csv, dtype=str, keep_default_na=False)
    assert list(table["status"]) == ["INCOMPLETE"]
    assert not workflow.scratch_dir.exists()


def test_missing_step_input_skips_tools(derivatives):
    """Test a step whose inputs are missing fails without running its tools."""
    populate_outputs(derivatives.layout)
    derivatives.layout.atlas_volume("schaefer-100").unlink()
    derivatives.layout.affine.unlink()
    derivatives.layout.t1_fsnative.unlink()

    runner = FakeRunner(no_output=["0GenericAffine.mat"])
    record = PostStructuralWorkflow(derivatives.config(), runner=runner).run()

    assert record["Steps"]["affine"] == "failed"
    assert record["Steps"]["parcellation_atlas-aparc"] == "done"
    assert record["Steps"]["parcellation_atlas-schaefer-100"] == "failed"
    assert "mri_surf2surf" not in runner.tools()


def test_unreadable_file_fails_step(derivatives):
    """Test a file error raised inside a step is recorded as a failure."""
    with patch(
        "poststruct.workflow.remove_fs_offset",
        side_effect=FileNotFoundError("lh.midthickness.surf.gii"),
    ):
        record = PostStructuralWorkflow(derivatives.config(), runner=FakeRunner()).run()

    assert record["Status"] == "INCOMPLETE"
    assert record["Steps"]["nativepro_surfaces"] == "failed"
    assert record["Steps"]["morphology"] == "done"


def test_unrecorded_affine_fails_step(derivatives):
    """Test the affine step is not counted when its record cannot be written."""
    with patch(
        "poststruct.workflow.write_transformations_json",
        side_effect=OSError("No space left on device"),
    ):
        workflow = PostStructuralWorkflow(derivatives.config(atlas="aparc"), runner=FakeRunner())
        record = workflow.run()

    assert record["Steps"]["affine"] == "failed"
    assert record["Steps"]["parcellation_atlas-aparc"] == "done"
    manifest = StepManifest.load(workflow.layout.manifest_json)
    assert "No space left" in manifest.steps["affine"]["message"]
