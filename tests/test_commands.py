#!/usr/bin/env python3
"""
Tests for the external command builders.
"""

from pathlib import Path

from poststruct.freesurfer import commands


def test_ants_registration_affine():
    cmd = commands.ants_registration_affine(
        Path("nativepro.nii.gz"), Path("T1.nii.gz"), Path("xfm/sub-01_from-fsnative_to_nativepro_T1w_"), 8
    )
    assert cmd[0] == "antsRegistrationSyN.sh"
    assert cmd[cmd.index("-t") + 1] == "a"
    assert cmd[cmd.index("-n") + 1] == "8"
    assert cmd[cmd.index("-p") + 1] == "d"
    assert cmd[cmd.index("-f") + 1] == Path("nativepro.nii.gz")


def test_ants_apply_transforms_inverse():
    cmd = commands.ants_apply_transforms("in.nii.gz", "ref.nii.gz", "affine.mat", "out.nii.gz", invert=True)
    assert "[affine.mat,1]" in cmd
    assert "-n" not in cmd
    assert cmd[cmd.index("-o") + 1] == "out.nii.gz"


def test_ants_apply_transforms_labels():
    cmd = commands.ants_apply_transforms(
        "in.nii.gz", "ref.nii.gz", "affine.mat", "out.nii.gz", interpolation="GenericLabel"
    )
    assert cmd[cmd.index("-n") + 1] == "GenericLabel"
    assert cmd[cmd.index("-t") + 1] == "affine.mat"


def test_surf2surf_annot():
    cmd = commands.surf2surf_annot("lh", "sub-01", "lh.aparc_mics.annot", "label/lh.aparc_mics.annot")
    assert cmd[cmd.index("--srcsubject") + 1] == "fsaverage5"
    assert cmd[cmd.index("--trgsubject") + 1] == "sub-01"
    assert cmd[cmd.index("--sval-annot") + 1] == "lh.aparc_mics.annot"


def test_fslmaths_threshold():
    assert commands.fslmaths_threshold("a.nii.gz", "b.nii.gz") == [
        "fslmaths", "a.nii.gz", "-thr", "1000", "b.nii.gz",
    ]


def test_mrconvert_force():
    assert commands.mrconvert("a.mgz", "a.nii.gz") == ["mrconvert", "a.mgz", "a.nii.gz"]
    assert commands.mrconvert("a.mgz", "a.nii.gz", force=True)[-1] == "-force"


def test_metric_resample_area_surfaces():
    cmd = commands.metric_resample("in.func.gii", "sphere", "fsLR", "out.func.gii", "mid", "mid32k")
    assert cmd[:2] == ["wb_command", "-metric-resample"]
    assert cmd[5] == "ADAP_BARY_AREA"
    assert cmd[-3:] == ["-area-surfs", "mid", "mid32k"]


def test_surface_resample():
    cmd = commands.surface_resample("lh.pial.surf.gii", "sphere", "fsLR", "out.surf.gii")
    assert cmd == [
        "wb_command", "-surface-resample", "lh.pial.surf.gii", "sphere", "fsLR", "BARYCENTRIC", "out.surf.gii",
    ]


def test_c3d_itk_to_world():
    assert commands.c3d_itk_to_world("affine.mat", "wb.mat") == [
        "c3d_affine_tool", "-itk", "affine.mat", "-inv", "-o", "wb.mat",
    ]
    assert "-inv" not in commands.c3d_itk_to_world("affine.mat", "wb.mat", invert=False)


def test_freesurfer_resample_prep_order():
    cmd = commands.freesurfer_resample_prep("white", "pial", "sphere.reg", "fsLR", "mid", "mid32k", "sphere")
    assert cmd == [
        "wb_shortcuts", "-freesurfer-resample-prep",
        "white", "pial", "sphere.reg", "fsLR", "mid", "mid32k", "sphere",
    ]


def test_mris_convert_scalar():
    assert commands.mris_convert_scalar("lh.thickness", "lh.white", "out.func.gii") == [
        "mris_convert", "-c", "lh.thickness", "lh.white", "out.func.gii",
    ]
