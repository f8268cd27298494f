#!/usr/bin/env python3
"""
Cortical morphology sub-pipeline.

Thickness and curvature are mapped from the subject surfaces onto the
fsnative, fsaverage5 and fsLR-32k meshes.
"""

import logging

from poststruct.freesurfer import commands
from poststruct.freesurfer.utils import ANNOT_SUBJECT, HEMISPHERES, MORPHOLOGY_MEASURES

logger = logging.getLogger("bids-poststructural.morphology")


class MorphologyPipeline:
    """Computes per-vertex morphology maps for one subject."""

    def __init__(self, layout, runner):
        """
        Initialize the morphology pipeline.

        Parameters
        ----------
        layout : SubjectLayout
            Subject layout with a selected reconstruction method
        runner : ToolRunner
            Runner for the external tools
        """
        self.layout = layout
        self.runner = runner

    def expected_outputs(self):
        return self.layout.morphology_maps()

    def missing_outputs(self):
        return [path for path in self.expected_outputs() if not path.exists()]

    def required_inputs(self):
        """Subject surfaces and curvature files every map is computed from."""
        return [
            self.layout.fs_surface(hemi, name)
            for hemi in HEMISPHERES
            for name in ("white",) + MORPHOLOGY_MEASURES
        ]

    def _fslr_inputs(self, hemi):
        layout = self.layout
        return [
            layout.subject_sphere(hemi),
            layout.fs_surface(hemi, "midthickness.surf.gii"),
            layout.conte69_surface(hemi, "fsLR-32k", "midthickness", space="fsnative"),
        ]

    def run(self, step="morphology"):
        """
        Compute every missing morphology map.

        fsLR-32k maps are left missing when the subject sphere or the
        midthickness surfaces have not been produced.

        Raises
        ------
        ToolError
            If any tool fails; maps written before the failure are kept
        """
        layout = self.layout
        layout.maps_dir.mkdir(parents=True, exist_ok=True)

        for hemi in HEMISPHERES:
            for measure in MORPHOLOGY_MEASURES:
                native_map = layout.morphology_map(hemi, "fsnative", measure)
                fsaverage_map = layout.morphology_map(hemi, ANNOT_SUBJECT, measure)
                fslr_map = layout.morphology_map(hemi, "fsLR-32k", measure)

                if not native_map.exists():
                    logger.info(f"Mapping {hemi} {measure} to fsnative")
                    self.runner.run(
                        commands.mris_convert_scalar(
                            layout.fs_surface(hemi, measure),
                            layout.fs_surface(hemi, "white"),
                            native_map,
                        ),
                        step=step,
                    )

                if not fsaverage_map.exists():
                    logger.info(f"Mapping {hemi} {measure} to {ANNOT_SUBJECT}")
                    self.runner.run(
                        commands.surf2surf_metric(
                            hemi,
                            layout.bids_id,
                            layout.fs_surface(hemi, measure),
                            fsaverage_map,
                        ),
                        step=step,
                    )

                if not fslr_map.exists():
                    fslr_missing = [path for path in self._fslr_inputs(hemi) if not path.exists()]
                    if fslr_missing:
                        logger.warning(
                            f"Cannot map {hemi} {measure} to fsLR-32k, missing: "
                            f"{', '.join(p.name for p in fslr_missing)}"
                        )
                        continue
                    logger.info(f"Mapping {hemi} {measure} to fsLR-32k")
                    self.runner.run(
                        commands.metric_resample(
                            native_map,
                            layout.subject_sphere(hemi),
                            layout.reference_sphere(hemi),
                            fslr_map,
                            layout.fs_surface(hemi, "midthickness.surf.gii"),
                            layout.conte69_surface(hemi, "fsLR-32k", "midthickness", space="fsnative"),
                        ),
                        step=step,
                    )
