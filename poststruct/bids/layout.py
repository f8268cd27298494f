#!/usr/bin/env python3
"""
Subject layout for post-structural derivatives

This module derives every input and output path of the stage from the
subject identity, following the derivatives filename grammar
``<bids_id>_hemi-<H>_surf-<mesh>[_space-<space>]_label-<label>``.
"""

import logging

from poststruct.freesurfer.utils import (
    HEMISPHERES,
    MODULE_NAME,
    MORPHOLOGY_MEASURES,
    MORPHOLOGY_MESHES,
    UPSTREAM_MODULE,
    label_stem,
    reference_sphere_name,
)

logger = logging.getLogger("bids-poststructural.layout")


class SubjectLayout:
    """Paths of one subject/session in the derivatives tree."""

    def __init__(self, config, method=None):
        """
        Initialize the layout.

        Parameters
        ----------
        config : PostStructuralConfig
            Run configuration
        method : str, optional
            Selected reconstruction method; required for surface paths
        """
        self.config = config
        self.method = method

        self.subject = f"sub-{config.participant}"
        self.session = f"ses-{config.session}" if config.session else None
        if self.session:
            self.bids_id = f"{self.subject}_{self.session}"
            self.subject_dir = config.output_dir / self.subject / self.session
        else:
            self.bids_id = self.subject
            self.subject_dir = config.output_dir / self.subject

        self.anat_dir = self.subject_dir / "anat"
        self.qc_dir = self.subject_dir / "QC"
        self.xfm_dir = self.subject_dir / "xfm"
        self.parc_dir = self.subject_dir / "parc"
        self.surf_dir = self.subject_dir / "surf"
        self.maps_dir = self.subject_dir / "maps"
        self.logs_dir = self.subject_dir / "logs"

        self.t1_nativepro = self.anat_dir / f"{self.bids_id}_space-nativepro_T1w.nii.gz"
        self.t1_fast_seg = (
            self.anat_dir / f"{self.bids_id}_space-nativepro_T1w_atlas-subcortical.nii.gz"
        )
        self.t1_fsnative = self.anat_dir / f"{self.bids_id}_space-fsnative_T1w.nii.gz"
        self.affine_prefix = self.xfm_dir / f"{self.bids_id}_from-fsnative_to_nativepro_T1w_"
        self.affine = self.xfm_dir / f"{self.affine_prefix.name}0GenericAffine.mat"
        self.transformations_json = (
            self.xfm_dir / f"{self.bids_id}_transformations-{MODULE_NAME}.json"
        )
        self.post_structural_json = self.anat_dir / f"{self.bids_id}_{MODULE_NAME}.json"
        self.module_json = self.qc_dir / f"{self.bids_id}_module-{MODULE_NAME}.json"
        self.manifest_json = self.qc_dir / f"{self.bids_id}_module-{MODULE_NAME}_steps.json"
        self.status_csv = config.output_dir / "processed_subjects.csv"

    @property
    def output_dirs(self):
        return [
            self.anat_dir,
            self.qc_dir,
            self.xfm_dir,
            self.parc_dir,
            self.surf_dir,
            self.maps_dir,
            self.logs_dir,
        ]

    def make_output_dirs(self):
        """Create the subject output directories."""
        for directory in self.output_dirs:
            directory.mkdir(parents=True, exist_ok=True)

    def proc_surf_markers(self):
        """
        Find upstream surface reconstruction QC markers.

        Returns
        -------
        list of Path
            Sorted ``<bids_id>_module-proc_surf-<method>.json`` files
        """
        if not self.qc_dir.exists():
            return []
        return sorted(self.qc_dir.glob(f"{self.bids_id}_module-{UPSTREAM_MODULE}-*.json"))

    def proc_surf_marker(self, method):
        return self.qc_dir / f"{self.bids_id}_module-{UPSTREAM_MODULE}-{method}.json"

    def _require_method(self):
        if self.method is None:
            raise RuntimeError("Reconstruction method has not been selected")

    @property
    def subjects_dir(self):
        self._require_method()
        return self.config.subjects_dir(self.method)

    @property
    def fs_subject_dir(self):
        """FreeSurfer-style subject directory of the reconstruction."""
        return self.subjects_dir / self.bids_id

    @property
    def t1_surf(self):
        """Surface-space T1 volume."""
        return self.fs_subject_dir / "mri" / "orig.mgz"

    @property
    def t1_mgz(self):
        return self.fs_subject_dir / "mri" / "T1.mgz"

    @property
    def aseg(self):
        return self.fs_subject_dir / "mri" / "aseg.mgz"

    def fs_surface(self, hemi, name):
        """Surface file in the reconstruction ``surf/`` dir (``lh.white``...)."""
        return self.fs_subject_dir / "surf" / f"{hemi}.{name}"

    def fs_label(self, hemi, name):
        return self.fs_subject_dir / "label" / f"{hemi}.{name}"

    def reference_sphere(self, hemi):
        """Bundled fsLR-32k sphere for a hemisphere (``lh``/``rh``)."""
        return self.config.surface_dir / reference_sphere_name(HEMISPHERES[hemi])

    def surface_id(self, hemi):
        return f"{self.bids_id}_hemi-{HEMISPHERES[hemi]}_surf"

    def conte69_surface(self, hemi, mesh, label, space=None):
        """
        Get a surface path in the subject ``surf/`` output directory.

        Parameters
        ----------
        hemi : str
            ``lh`` or ``rh``
        mesh : str
            Mesh entity, e.g. ``fsLR-32k`` or ``fsnative``
        label : str
            Surface label, e.g. ``pial`` or ``midthickness.surf.gii``
        space : str, optional
            Space entity, e.g. ``fsnative`` or ``nativepro``

        Returns
        -------
        Path
            ``<bids_id>_hemi-<H>_surf-<mesh>[_space-<space>]_label-<label>.surf.gii``
        """
        space_entity = f"_space-{space}" if space else ""
        return self.surf_dir / (
            f"{self.surface_id(hemi)}-{mesh}{space_entity}_label-{label_stem(label)}.surf.gii"
        )

    def subject_sphere(self, hemi):
        return self.conte69_surface(hemi, "fsnative", "sphere")

    def nativepro_surfaces(self):
        """The six fsLR-32k surfaces registered to nativepro space."""
        return [
            self.conte69_surface(hemi, "fsLR-32k", label, space="nativepro")
            for hemi in HEMISPHERES
            for label in ("midthickness", "pial", "white")
        ]

    def atlas_volume(self, atlas):
        """Atlas labels resampled to nativepro space."""
        return self.parc_dir / f"{self.bids_id}_space-nativepro_T1w_atlas-{atlas}.nii.gz"

    def morphology_map(self, hemi, mesh, measure):
        return self.maps_dir / (
            f"{self.bids_id}_hemi-{HEMISPHERES[hemi]}_surf-{mesh}_label-{measure}.func.gii"
        )

    def morphology_maps(self):
        """Every map produced by the morphology sub-pipeline."""
        return [
            self.morphology_map(hemi, mesh, measure)
            for hemi in HEMISPHERES
            for measure in MORPHOLOGY_MEASURES
            for mesh in MORPHOLOGY_MESHES
        ]
