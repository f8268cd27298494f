#!/usr/bin/env python3
"""
Run configuration for the post-structural stage.

Every component receives a :class:`PostStructuralConfig` instead of reading
process-wide environment variables.
"""

import os
import tempfile
from pathlib import Path

DEFAULT_ATLAS = "DEFAULT"
DEFAULT_PROC = "LOCAL"
RESOURCES_ENV = "POSTSTRUCT_RESOURCES"


def _strip_prefix(label, prefix):
    """Remove a BIDS entity prefix (``sub-``/``ses-``) from a label."""
    if label is None:
        return None
    label = str(label).strip()
    if label.startswith(prefix):
        label = label[len(prefix):]
    return label or None


class PostStructuralConfig:
    """Validated configuration for one subject/session run."""

    def __init__(self, bids_dir, output_dir, participant, session=None,
                 atlas=DEFAULT_ATLAS, fastsurfer=False, threads=1, tmp_dir=None,
                 nocleanup=False, proc=DEFAULT_PROC, resources_dir=None,
                 surf_dir=None):
        """
        Initialize the configuration.

        Parameters
        ----------
        bids_dir : str
            Path to the raw BIDS dataset
        output_dir : str
            Path to the pipeline derivatives directory
        participant : str
            Participant label, with or without the ``sub-`` prefix
        session : str, optional
            Session label, with or without the ``ses-`` prefix
        atlas : str, optional
            ``DEFAULT`` or a comma-separated list of atlas names
        fastsurfer : bool, optional
            Prefer FastSurfer outputs when both reconstructions exist
        threads : int, optional
            Number of threads handed to the external tools
        tmp_dir : str, optional
            Root for the scratch directory (system temp dir by default)
        nocleanup : bool, optional
            Keep the scratch directory after the run
        proc : str, optional
            Processing-mode tag recorded in the status files
        resources_dir : str, optional
            Directory holding ``parcellations/`` and ``surfaces/``
        surf_dir : str, optional
            Surface reconstruction subjects directory override

        Raises
        ------
        ValueError
            If the participant label is empty or the thread count is invalid
        """
        self.participant = _strip_prefix(participant, "sub-")
        if not self.participant:
            raise ValueError("A participant label is required")
        self.session = _strip_prefix(session, "ses-")

        try:
            self.threads = int(threads)
        except (TypeError, ValueError):
            raise ValueError(f"Invalid thread count: {threads!r}")
        if self.threads < 1:
            raise ValueError(f"Thread count must be at least 1, got {self.threads}")

        self.bids_dir = Path(bids_dir)
        self.output_dir = Path(output_dir)
        self.atlas = (atlas or DEFAULT_ATLAS).strip()
        self.fastsurfer = bool(fastsurfer)
        self.tmp_dir = Path(tmp_dir) if tmp_dir else Path(tempfile.gettempdir())
        self.nocleanup = bool(nocleanup)
        self.proc = proc or DEFAULT_PROC

        if resources_dir is None:
            resources_dir = os.environ.get(RESOURCES_ENV, "resources")
        self.resources_dir = Path(resources_dir)
        self.surf_dir = Path(surf_dir) if surf_dir else None

    @property
    def parcellation_dir(self):
        return self.resources_dir / "parcellations"

    @property
    def surface_dir(self):
        return self.resources_dir / "surfaces"

    def subjects_dir(self, method):
        """
        Get the surface reconstruction subjects directory.

        Parameters
        ----------
        method : str
            Reconstruction method (``freesurfer`` or ``fastsurfer``)

        Returns
        -------
        Path
            ``surf_dir`` if given, else ``<output_dir>/../<method>``
        """
        if self.surf_dir is not None:
            return self.surf_dir
        return self.output_dir.parent / method

    def tool_environment(self, method):
        """
        Build the environment for external tool processes.

        The current environment is copied, never modified.

        Parameters
        ----------
        method : str
            Reconstruction method, used to resolve ``SUBJECTS_DIR``

        Returns
        -------
        dict
            Environment mapping for ``subprocess.run``
        """
        env = dict(os.environ)
        env["OMP_NUM_THREADS"] = str(self.threads)
        env["ITK_GLOBAL_DEFAULT_NUMBER_OF_THREADS"] = str(self.threads)
        env["SUBJECTS_DIR"] = str(self.subjects_dir(method))
        return env

    def __repr__(self):
        return (
            f"PostStructuralConfig(participant={self.participant!r}, "
            f"session={self.session!r}, atlas={self.atlas!r}, "
            f"fastsurfer={self.fastsurfer}, threads={self.threads})"
        )
