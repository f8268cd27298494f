#!/usr/bin/env python3
"""
Command builders for the external tools used by the post-structural stage.

Each function returns the argument list for ``ToolRunner.run``.
"""

from poststruct.freesurfer.utils import ANNOT_SUBJECT, CORTICAL_LABEL_THRESHOLD


def mrconvert(in_file, out_file, force=False):
    cmd = ["mrconvert", in_file, out_file]
    if force:
        cmd.append("-force")
    return cmd


def ants_registration_affine(fixed, moving, out_prefix, threads):
    """Affine-only ``antsRegistrationSyN.sh`` in double precision."""
    return [
        "antsRegistrationSyN.sh",
        "-d", "3",
        "-f", fixed,
        "-m", moving,
        "-o", out_prefix,
        "-t", "a",
        "-n", str(threads),
        "-p", "d",
    ]


def ants_apply_transforms(in_file, reference, transform, out_file, invert=False,
                          interpolation=None):
    """
    Build an ``antsApplyTransforms`` command.

    Parameters
    ----------
    in_file : Path
        Image to resample
    reference : Path
        Reference image defining the output grid
    transform : Path
        Transform file
    out_file : Path
        Output image
    invert : bool, optional
        Apply the inverse of ``transform``
    interpolation : str, optional
        Interpolator, e.g. ``GenericLabel``

    Returns
    -------
    list
        Command list
    """
    cmd = ["antsApplyTransforms", "-d", "3", "-i", in_file, "-r", reference]
    if interpolation:
        cmd.extend(["-n", interpolation])
    cmd.extend(["-t", f"[{transform},1]" if invert else transform])
    cmd.extend(["-o", out_file, "-v", "-u", "int"])
    return cmd


def surf2surf_annot(hemi, subject, annot, out_file, src_subject=ANNOT_SUBJECT):
    """Transfer an annotation from ``src_subject`` onto ``subject``."""
    return [
        "mri_surf2surf",
        "--hemi", hemi,
        "--srcsubject", src_subject,
        "--trgsubject", subject,
        "--sval-annot", annot,
        "--tval", out_file,
    ]


def surf2surf_metric(hemi, subject, in_file, out_file, trg_subject=ANNOT_SUBJECT):
    """Resample a curvature-format map from ``subject`` onto ``trg_subject``."""
    return [
        "mri_surf2surf",
        "--hemi", hemi,
        "--srcsubject", subject,
        "--srcsurfval", in_file,
        "--src_type", "curv",
        "--trgsubject", trg_subject,
        "--trgsurfval", out_file,
        "--trg_type", "gii",
    ]


def aparc2aseg(subject, out_file, annot):
    return [
        "mri_aparc2aseg",
        "--s", subject,
        "--o", out_file,
        "--annot", annot,
        "--new-ribbon",
    ]


def label2vol(seg, template, out_file, regheader):
    return [
        "mri_label2vol",
        "--seg", seg,
        "--temp", template,
        "--o", out_file,
        "--regheader", regheader,
    ]


def fslreorient2std(in_file, out_file):
    return ["fslreorient2std", in_file, out_file]


def fslmaths_threshold(in_file, out_file, threshold=CORTICAL_LABEL_THRESHOLD):
    return ["fslmaths", in_file, "-thr", str(threshold), out_file]


def freesurfer_resample_prep(white, pial, sphere_reg, reference_sphere,
                             midthickness, midthickness_resampled, sphere_out):
    """
    Build the Workbench FreeSurfer resample-prep shortcut.

    Creates the native midthickness, its fsLR-32k resampling and the
    subject sphere in GIFTI format.
    """
    return [
        "wb_shortcuts", "-freesurfer-resample-prep",
        white,
        pial,
        sphere_reg,
        reference_sphere,
        midthickness,
        midthickness_resampled,
        sphere_out,
    ]


def mris_convert(in_file, out_file):
    return ["mris_convert", in_file, out_file]


def mris_convert_scalar(scalar, surface, out_file):
    """Convert a curvature-format scalar to GIFTI on ``surface``."""
    return ["mris_convert", "-c", scalar, surface, out_file]


def surface_resample(in_surf, current_sphere, new_sphere, out_surf,
                     method="BARYCENTRIC"):
    return [
        "wb_command", "-surface-resample",
        in_surf,
        current_sphere,
        new_sphere,
        method,
        out_surf,
    ]


def metric_resample(in_metric, current_sphere, new_sphere, out_metric,
                    current_area, new_area, method="ADAP_BARY_AREA"):
    return [
        "wb_command", "-metric-resample",
        in_metric,
        current_sphere,
        new_sphere,
        method,
        out_metric,
        "-area-surfs", current_area, new_area,
    ]


def surface_match(match_surf, in_surf, out_surf):
    """Fit ``in_surf`` to the bounding box of ``match_surf``."""
    return ["wb_command", "-surface-match", match_surf, in_surf, out_surf]


def surface_apply_affine(in_surf, affine, out_surf):
    return ["wb_command", "-surface-apply-affine", in_surf, affine, out_surf]


def c3d_itk_to_world(itk_affine, out_file, invert=True):
    """Convert an ITK affine to a world-coordinate matrix for Workbench."""
    cmd = ["c3d_affine_tool", "-itk", itk_affine]
    if invert:
        cmd.append("-inv")
    cmd.extend(["-o", out_file])
    return cmd
