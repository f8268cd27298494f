#!/usr/bin/env python3
"""
Post-structural stage orchestrator

This module drives the post-structural processing of one subject/session:
affine registration of the surface space to nativepro space, transfer of the
cortical parcellations, resampling of the surfaces onto the fsLR-32k mesh,
registration of those surfaces to nativepro space and the morphology maps.

Every step is idempotent: when all of its outputs exist it is counted as done
without running any tool. A step whose inputs are missing is marked failed
without running, so a failure cascades to the steps that depend on it. A step
only counts as done when its tools exited successfully, its outputs exist
afterwards and they could be recorded; file errors raised while reading or
writing count as a failure of that step.
"""

import logging
import shutil
import signal
import tempfile
import threading
import time
from collections import namedtuple
from contextlib import contextmanager
from pathlib import Path

from nibabel.filebasedimages import ImageFileError

from poststruct.bids.layout import SubjectLayout
from poststruct.bids.provenance import (
    create_dataset_description,
    read_module_status,
    update_status_csv,
    write_module_status,
    write_post_structural_json,
    write_transformations_json,
)
from poststruct.freesurfer import commands
from poststruct.freesurfer.surfaces import remove_fs_offset
from poststruct.freesurfer.utils import (
    HEMISPHERES,
    MODULE_NAME,
    NATIVEPRO_LABELS,
    RESAMPLED_LABELS,
    label_stem,
)
from poststruct.freesurfer.wrapper import ToolError, ToolRunner
from poststruct.manifest import StepManifest, StepStatus
from poststruct.morphology import MorphologyPipeline
from poststruct.selection import (
    check_dependency_status,
    check_inputs,
    resolve_atlases,
    select_recon_method,
)

# Configure logging
logger = logging.getLogger("bids-poststructural.workflow")

Step = namedtuple(
    "Step", ["name", "outputs", "action", "on_done", "inputs"], defaults=(None, ())
)

# Errors from reading or copying files inside a step
FILE_ERRORS = (OSError, ImageFileError)


class PipelineInterrupted(KeyboardInterrupt):
    """Raised from the signal handler when the run is interrupted."""

    def __init__(self, signum):
        self.signum = signum
        super().__init__(f"Interrupted by signal {signal.Signals(signum).name}")


def resample_step_name(hemi, label):
    return f"fsLR-32k_hemi-{HEMISPHERES[hemi]}_label-{label}"


@contextmanager
def trap_signals(signals=(signal.SIGINT, signal.SIGTERM)):
    """
    Turn SIGINT/SIGTERM into :class:`PipelineInterrupted` within the block.

    Handlers can only be installed from the main thread; elsewhere the block
    runs with the existing handlers.
    """
    if threading.current_thread() is not threading.main_thread():
        yield
        return

    def _handler(signum, frame):
        raise PipelineInterrupted(signum)

    previous = {signum: signal.signal(signum, _handler) for signum in signals}
    try:
        yield
    finally:
        for signum, handler in previous.items():
            signal.signal(signum, handler)


class PostStructuralWorkflow:
    """Runs the post-structural stage for one subject/session."""

    def __init__(self, config, runner=None):
        """
        Initialize the workflow.

        Parameters
        ----------
        config : PostStructuralConfig
            Run configuration
        runner : ToolRunner, optional
            Tool runner; one is created from the configuration if omitted
        """
        self.config = config
        self.runner = runner
        self.layout = SubjectLayout(config)
        self.method = None
        self.atlases = []
        self.manifest = None
        self.scratch_dir = None

    def prepare(self):
        """
        Check preconditions and select inputs without writing anything.

        Returns
        -------
        SubjectLayout
            Layout bound to the selected reconstruction method

        Raises
        ------
        PreconditionError
            If an upstream stage, input file or atlas is missing
        """
        self.method = select_recon_method(
            self.layout.proc_surf_markers(), prefer_fastsurfer=self.config.fastsurfer
        )
        self.layout = SubjectLayout(self.config, self.method)
        check_dependency_status(self.layout.proc_surf_marker(self.method))
        self.atlases = resolve_atlases(self.config.parcellation_dir, self.config.atlas)
        check_inputs(self.layout)
        return self.layout

    def run(self):
        """
        Run the stage.

        Returns
        -------
        dict
            The module status record

        Raises
        ------
        PreconditionError
            If a precondition fails; nothing has been written
        PipelineInterrupted
            If SIGINT/SIGTERM was received; no status record is written
        """
        layout = self.prepare()

        existing = read_module_status(layout.module_json)
        if existing and existing.get("Status") == "COMPLETED":
            logger.info(f"Subject {layout.bids_id} has already completed {MODULE_NAME}")
            return existing

        logger.info("================================")
        logger.info(f"POST-structural processing: {layout.bids_id}")
        logger.info(f"Surface software: {self.method}")
        logger.info(f"Parcellations: {', '.join(a.name for a in self.atlases)}")
        logger.info(f"Threads: {self.config.threads}")
        logger.info(f"Saving temporary dir: {self.config.nocleanup}")
        logger.info("================================")

        start = time.time()
        layout.make_output_dirs()
        create_dataset_description(self.config.output_dir, self.config.bids_dir)

        if self.runner is None:
            self.runner = ToolRunner(
                env=self.config.tool_environment(self.method),
                logs_dir=layout.logs_dir,
                bids_id=layout.bids_id,
            )

        surface_steps = self.plan()
        morphology_step = self._morphology_step()

        self.manifest = StepManifest(layout.manifest_json, MODULE_NAME, layout.bids_id)
        for step in surface_steps + [morphology_step]:
            self.manifest.register(step.name, step.outputs)

        self.config.tmp_dir.mkdir(parents=True, exist_ok=True)
        self.scratch_dir = Path(
            tempfile.mkdtemp(prefix=f"post-struct_{layout.bids_id}_", dir=self.config.tmp_dir)
        )
        logger.debug(f"Scratch directory: {self.scratch_dir}")

        with trap_signals():
            try:
                for step in surface_steps:
                    self._execute(step)
                # Required by the morphology sub-pipeline
                write_post_structural_json(
                    layout.post_structural_json, layout, self.atlases, self.config.threads
                )
                self._execute(morphology_step)
            finally:
                self.cleanup()

        elapsed_minutes = (time.time() - start) / 60
        record = write_module_status(
            layout.module_json,
            MODULE_NAME,
            self.manifest,
            elapsed_minutes,
            self.config.threads,
            self.config.proc,
        )
        update_status_csv(
            layout.status_csv,
            self.config.participant,
            self.config.session,
            MODULE_NAME,
            self.manifest,
            elapsed_minutes,
        )

        if self.manifest.status == "COMPLETED":
            logger.info(f"{MODULE_NAME} completed: {self.manifest.progress} steps")
        else:
            logger.warning(
                f"{MODULE_NAME} incomplete: {self.manifest.progress} steps, "
                f"not completed: {', '.join(self.manifest.failed_steps())}"
            )
        return record

    def plan(self):
        """
        Build the surface and parcellation steps in dependency order.

        Returns
        -------
        list of Step
        """
        layout = self.layout
        steps = [
            Step(
                "affine",
                [layout.t1_fsnative, layout.affine],
                self._affine,
                self._record_affine,
                inputs=[layout.t1_surf, layout.t1_nativepro],
            )
        ]

        for atlas in self.atlases:
            steps.append(Step(
                f"parcellation_atlas-{atlas.name}",
                [layout.atlas_volume(atlas.name)],
                lambda atlas=atlas: self._parcellation(atlas),
                inputs=[layout.affine] + [
                    self.config.parcellation_dir / f"{hemi}.{atlas.annot}" for hemi in HEMISPHERES
                ],
            ))

        for hemi in HEMISPHERES:
            for label in RESAMPLED_LABELS:
                outputs = self._resample_prep_outputs(hemi) + [
                    layout.conte69_surface(hemi, "fsLR-32k", label, space="fsnative")
                ]
                steps.append(Step(
                    resample_step_name(hemi, label),
                    outputs,
                    lambda hemi=hemi, label=label: self._resample_fslr32k(hemi, label),
                    inputs=[layout.fs_surface(hemi, label), layout.reference_sphere(hemi)],
                ))

        if self.method == "fastsurfer":
            nativepro_action = self._nativepro_fastsurfer
            nativepro_inputs = [
                path
                for hemi in HEMISPHERES
                for path in (
                    layout.fs_surface(hemi, "midthickness.surf.gii"),
                    layout.subject_sphere(hemi),
                )
            ]
        else:
            nativepro_action = self._nativepro_freesurfer
            nativepro_inputs = [layout.affine] + [
                path
                for hemi in HEMISPHERES
                for label in NATIVEPRO_LABELS
                for path in (
                    layout.fs_surface(hemi, label),
                    layout.conte69_surface(hemi, "fsLR-32k", label, space="fsnative"),
                )
            ]
        steps.append(Step(
            "nativepro_surfaces",
            layout.nativepro_surfaces(),
            nativepro_action,
            inputs=nativepro_inputs,
        ))
        return steps

    def _morphology_step(self):
        morphology = MorphologyPipeline(self.layout, self.runner)
        return Step(
            "morphology",
            morphology.expected_outputs(),
            morphology.run,
            inputs=morphology.required_inputs(),
        )

    def _execute(self, step):
        """
        Run one step under the skip/verify policy.

        Returns
        -------
        bool
            True if the step is done
        """
        missing = [path for path in step.outputs if not path.exists()]
        if not missing:
            logger.info(f"Step {step.name}: outputs exist, skipping")
            self.manifest.mark(step.name, StepStatus.DONE, message="outputs exist")
            return True

        missing_inputs = [path for path in step.inputs if not path.exists()]
        if missing_inputs:
            message = f"missing inputs: {', '.join(p.name for p in missing_inputs)}"
            logger.error(f"Step {step.name} cannot run, {message}")
            self.manifest.mark(step.name, StepStatus.FAILED, message=message)
            return False

        logger.info(f"Step {step.name}: running")
        self.manifest.mark(step.name, StepStatus.RUNNING)
        try:
            step.action()
        except ToolError as e:
            logger.error(f"Step {step.name} failed: {e}")
            self.manifest.mark(step.name, StepStatus.FAILED, returncode=e.returncode, message=str(e))
            return False
        except FILE_ERRORS as e:
            logger.error(f"Step {step.name} failed: {e}")
            self.manifest.mark(step.name, StepStatus.FAILED, message=str(e))
            return False
        except PipelineInterrupted:
            self.manifest.mark(step.name, StepStatus.FAILED, message="interrupted")
            raise

        missing = [path for path in step.outputs if not path.exists()]
        if missing:
            message = f"missing outputs: {', '.join(p.name for p in missing)}"
            logger.error(f"Step {step.name} produced no output: {message}")
            self.manifest.mark(step.name, StepStatus.FAILED, returncode=0, message=message)
            return False

        if step.on_done is not None:
            try:
                step.on_done()
            except FILE_ERRORS as e:
                logger.error(f"Step {step.name} outputs could not be recorded: {e}")
                self.manifest.mark(step.name, StepStatus.FAILED, returncode=0, message=str(e))
                return False

        self.manifest.mark(step.name, StepStatus.DONE, returncode=0)
        return True

    def cleanup(self):
        """Remove the scratch directory unless ``nocleanup`` is set."""
        if self.scratch_dir is None or not self.scratch_dir.exists():
            return
        if self.config.nocleanup:
            logger.info(f"Keeping temporary directory: {self.scratch_dir}")
            return
        shutil.rmtree(self.scratch_dir)
        logger.debug(f"Removed temporary directory: {self.scratch_dir}")

    def _run(self, cmd, step):
        return self.runner.run(cmd, step=step)

    # Steps

    def _affine(self):
        layout = self.layout
        t1_in_fs = self.scratch_dir / "T1.nii.gz"
        self._run(commands.mrconvert(layout.t1_surf, t1_in_fs), "affine")
        self._run(
            commands.ants_registration_affine(
                layout.t1_nativepro, t1_in_fs, layout.affine_prefix, self.config.threads
            ),
            "affine",
        )
        self._run(
            commands.ants_apply_transforms(
                layout.t1_nativepro, t1_in_fs, layout.affine, layout.t1_fsnative, invert=True
            ),
            "affine",
        )
        # ANTs registration by-products
        for warped in layout.xfm_dir.glob("*Warped.nii.gz"):
            warped.unlink()

    def _record_affine(self):
        write_transformations_json(
            self.layout.transformations_json,
            self.layout.t1_nativepro,
            self.layout.t1_fsnative,
            self.layout.affine,
        )

    def _parcellation(self, atlas):
        layout = self.layout
        step = f"parcellation_atlas-{atlas.name}"
        logger.info(f"{atlas.name}: fsaverage5 annotation to T1w nativepro volume")

        for hemi in HEMISPHERES:
            self._run(
                commands.surf2surf_annot(
                    hemi,
                    layout.bids_id,
                    self.config.parcellation_dir / f"{hemi}.{atlas.annot}",
                    layout.fs_label(hemi, atlas.annot),
                ),
                step,
            )

        fs_mgz = self.scratch_dir / f"{atlas.name}.mgz"
        fs_tmp = self.scratch_dir / f"{atlas.name}_in_T1.mgz"
        fs_nii = self.scratch_dir / f"{layout.bids_id}_space-fsnative_T1w_{atlas.name}.nii.gz"

        annot_name = atlas.annot[:-len(".annot")]
        self._run(commands.aparc2aseg(layout.bids_id, fs_mgz, annot_name), step)
        self._run(commands.label2vol(fs_mgz, layout.t1_surf, fs_tmp, layout.aseg), step)
        self._run(commands.mrconvert(fs_tmp, fs_nii, force=True), step)
        self._run(commands.fslreorient2std(fs_nii, fs_nii), step)
        self._run(commands.fslmaths_threshold(fs_nii, fs_nii), step)
        self._run(
            commands.ants_apply_transforms(
                fs_nii,
                layout.t1_nativepro,
                layout.affine,
                layout.atlas_volume(atlas.name),
                interpolation="GenericLabel",
            ),
            step,
        )

    def _resample_prep_outputs(self, hemi):
        return [
            self.layout.fs_surface(hemi, "midthickness.surf.gii"),
            self.layout.conte69_surface(hemi, "fsLR-32k", "midthickness", space="fsnative"),
            self.layout.subject_sphere(hemi),
        ]

    def _resample_fslr32k(self, hemi, label):
        layout = self.layout
        step = resample_step_name(hemi, label)

        prep_outputs = self._resample_prep_outputs(hemi)
        if not all(path.exists() for path in prep_outputs):
            logger.info(f"Native surfaces to fsLR-32k sphere ({hemi})")
            self._run(
                commands.freesurfer_resample_prep(
                    layout.fs_surface(hemi, "white"),
                    layout.fs_surface(hemi, "pial"),
                    layout.fs_surface(hemi, "sphere.reg"),
                    layout.reference_sphere(hemi),
                    *prep_outputs,
                ),
                step,
            )

        gifti = self.scratch_dir / f"{hemi}.{label}.surf.gii"
        self._run(commands.mris_convert(layout.fs_surface(hemi, label), gifti), step)
        self._run(
            commands.surface_resample(
                gifti,
                layout.subject_sphere(hemi),
                layout.reference_sphere(hemi),
                layout.conte69_surface(hemi, "fsLR-32k", label, space="fsnative"),
            ),
            step,
        )

    def _nativepro_freesurfer(self):
        """Apply the fsnative-to-nativepro affine to the fsLR-32k surfaces."""
        layout = self.layout
        step = "nativepro_surfaces"
        wb_affine = self.scratch_dir / f"{layout.bids_id}_from-fsnative_to_nativepro_wb.mat"
        self._run(commands.c3d_itk_to_world(layout.affine, wb_affine), step)

        for label in NATIVEPRO_LABELS:
            stem = label_stem(label)
            for hemi in HEMISPHERES:
                logger.info(f"Apply transformations to {hemi} {stem} surface")
                if label.endswith(".surf.gii"):
                    in_surf = layout.fs_surface(hemi, label)
                else:
                    in_surf = self.scratch_dir / f"{hemi}.{label}.surf.gii"
                    self._run(commands.mris_convert(layout.fs_surface(hemi, label), in_surf), step)

                no_offset = self.scratch_dir / f"{hemi}.{stem}_no_offset.surf.gii"
                remove_fs_offset(in_surf, no_offset)

                # The fsLR-32k surface keeps the bounding box of the native one
                matched = self.scratch_dir / f"{hemi}.{stem}_fsLR-32k_space-fsnative.surf.gii"
                self._run(
                    commands.surface_match(
                        no_offset,
                        layout.conte69_surface(hemi, "fsLR-32k", stem, space="fsnative"),
                        matched,
                    ),
                    step,
                )
                self._run(
                    commands.surface_apply_affine(
                        matched,
                        wb_affine,
                        layout.conte69_surface(hemi, "fsLR-32k", stem, space="nativepro"),
                    ),
                    step,
                )

    def _nativepro_fastsurfer(self):
        """Resample the FastSurfer surfaces, already in nativepro space, to fsLR-32k."""
        layout = self.layout
        step = "nativepro_surfaces"

        for hemi in HEMISPHERES:
            midthickness = layout.fs_surface(hemi, "midthickness.surf.gii")
            shutil.copyfile(
                midthickness,
                layout.conte69_surface(hemi, "fsnative", "midthickness", space="nativepro"),
            )
            self._resample_nativepro(midthickness, hemi, "midthickness", step)

            for label in RESAMPLED_LABELS:
                gifti = self.scratch_dir / (
                    f"{layout.surface_id(hemi)}-fsnative_space-nativepro_label-{label}.surf.gii"
                )
                self._run(commands.mris_convert(layout.fs_surface(hemi, label), gifti), step)
                self._resample_nativepro(gifti, hemi, label, step)

    def _resample_nativepro(self, in_surf, hemi, label, step):
        self._run(
            commands.surface_resample(
                in_surf,
                self.layout.subject_sphere(hemi),
                self.layout.reference_sphere(hemi),
                self.layout.conte69_surface(hemi, "fsLR-32k", label, space="nativepro"),
            ),
            step,
        )
