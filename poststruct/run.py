#!/usr/bin/env python3
"""
BIDS App for the post-structural surface processing stage.

This BIDS App registers the FreeSurfer/FastSurfer surfaces of a participant
to the fsLR-32k mesh and to nativepro space, maps cortical parcellations to
the nativepro volume and computes morphology maps.
"""

import logging
import sys

import click

from bids import BIDSLayout
from poststruct import __version__
from poststruct.config import DEFAULT_ATLAS, DEFAULT_PROC, RESOURCES_ENV, PostStructuralConfig
from poststruct.freesurfer.utils import MODULE_NAME
from poststruct.selection import PreconditionError
from poststruct.utils import check_dependencies, get_version_info, setup_logging
from poststruct.workflow import PipelineInterrupted, PostStructuralWorkflow

logger = logging.getLogger("bids-poststructural")

EXIT_INCOMPLETE = 2
EXIT_INTERRUPTED = 130


def _log_version_info(version_info):
    """Log version information."""
    logger.info(f"bids-poststructural version: {version_info['bids_poststructural']['version']}")
    logger.info(f"FreeSurfer version: {version_info['freesurfer']['version']}")
    logger.info(f"Python version: {version_info['python']['version']}")
    if version_info["python"]["packages"]:
        logger.info("Python package versions:")
        for package, package_version in version_info["python"]["packages"].items():
            logger.info(f"  {package}: {package_version}")


def validate_participant(bids_dir, participant, session=None, skip_bids_validation=False):
    """Check that the participant (and session) exist in the BIDS dataset.

    Args:
        bids_dir (str): Path to BIDS root directory
        participant (str): Participant label without "sub-"
        session (str): Session label without "ses-"
        skip_bids_validation (bool): Skip BIDS validation

    Returns:
        bool: True if the participant/session were found
    """
    try:
        layout = BIDSLayout(str(bids_dir), validate=not skip_bids_validation)
        logger.info("Found BIDS dataset")
    except Exception as e:
        logger.error(f"Error loading BIDS dataset: {str(e)}")
        return False

    if participant not in layout.get_subjects():
        logger.error(f"Subject sub-{participant} not found in dataset")
        return False

    if session and session not in layout.get_sessions(subject=participant):
        logger.error(f"Session ses-{session} not found for subject sub-{participant}")
        return False

    return True


def process_participant(config, skip_bids_validation=False, log_level=logging.INFO):
    """Run the post-structural stage for one participant/session.

    Once the preconditions pass, logging is also written to
    logs/<bids_id>_post_structural.log in the subject derivatives.

    Args:
        config (PostStructuralConfig): Run configuration
        skip_bids_validation (bool): Skip BIDS validation
        log_level (int): Logging level for the subject log

    Returns:
        int: Exit code
    """
    if not validate_participant(
        config.bids_dir, config.participant, config.session, skip_bids_validation
    ):
        return 1

    missing_tools = check_dependencies()
    if missing_tools:
        logger.warning(f"Missing executables, dependent steps will fail: {', '.join(missing_tools)}")

    workflow = PostStructuralWorkflow(config)
    try:
        layout = workflow.prepare()
        log_file = layout.logs_dir / f"{layout.bids_id}_{MODULE_NAME}.log"
        setup_logging(log_level, str(log_file))
        logger.info(f"Logging to {log_file}")
        record = workflow.run()
    except PreconditionError as e:
        logger.error(str(e))
        return 1
    except PipelineInterrupted as e:
        logger.error(f"Processing interrupted: {str(e)}")
        return EXIT_INTERRUPTED

    logger.info("================================")
    logger.info(f"Status: {record['Status']} ({record.get('Progress', '')})")
    logger.info("================================")

    if record["Status"] != "COMPLETED":
        return EXIT_INCOMPLETE
    return 0


@click.command()
@click.version_option(version=__version__)
@click.argument("bids_dir", type=click.Path(exists=True, file_okay=False, resolve_path=True))
@click.argument("output_dir", type=click.Path(file_okay=False, resolve_path=True))
@click.argument("analysis_level", type=click.Choice(["participant"]))
@click.option(
    "--participant_label",
    "--participant-label",
    required=True,
    help='The label of the participant to analyze (with or without "sub-" prefix).',
)
@click.option(
    "--session_label",
    "--session-label",
    help='The label of the session to analyze (with or without "ses-" prefix).',
)
@click.option(
    "--atlas",
    default=DEFAULT_ATLAS,
    show_default=True,
    help='Comma-separated parcellations (e.g. "aparc,schaefer-400") or DEFAULT for all.',
)
@click.option("--fastsurfer", is_flag=True, help="Use FastSurfer outputs when both reconstructions exist.")
@click.option("--threads", type=click.IntRange(min=1), default=1, show_default=True,
              help="Number of threads for the external tools.")
@click.option("--tmp-dir", type=click.Path(file_okay=False, resolve_path=True),
              help="Root directory for temporary files.")
@click.option("--nocleanup", is_flag=True, help="Keep the temporary directory.")
@click.option("--proc", default=DEFAULT_PROC, show_default=True, help="Processing-mode tag for status records.")
@click.option(
    "--resources-dir",
    envvar=RESOURCES_ENV,
    type=click.Path(exists=True, file_okay=False, resolve_path=True),
    help="Directory with the bundled parcellations/ and surfaces/.",
)
@click.option("--surf-dir", type=click.Path(file_okay=False, resolve_path=True),
              help="Surface reconstruction subjects directory (default: OUTPUT_DIR/../<method>).")
@click.option("--skip-bids-validation", is_flag=True, help="Skip BIDS validation.")
@click.option("--verbose", is_flag=True, help="Enable verbose output.")
def cli(
    bids_dir,
    output_dir,
    analysis_level,
    participant_label,
    session_label,
    atlas,
    fastsurfer,
    threads,
    tmp_dir,
    nocleanup,
    proc,
    resources_dir,
    surf_dir,
    skip_bids_validation,
    verbose,
):
    """Post-structural surface processing BIDS App.

    BIDS_DIR is the path to the BIDS dataset directory.

    OUTPUT_DIR is the pipeline derivatives directory holding the outputs of
    the structural and surface reconstruction stages.

    ANALYSIS_LEVEL must be 'participant'.
    """
    log_level = logging.DEBUG if verbose else logging.INFO
    setup_logging(log_level)
    _log_version_info(get_version_info())

    try:
        config = PostStructuralConfig(
            bids_dir,
            output_dir,
            participant_label,
            session=session_label,
            atlas=atlas,
            fastsurfer=fastsurfer,
            threads=threads,
            tmp_dir=tmp_dir,
            nocleanup=nocleanup,
            proc=proc,
            resources_dir=resources_dir,
            surf_dir=surf_dir,
        )
    except ValueError as e:
        logger.error(f"Invalid configuration: {str(e)}")
        sys.exit(1)

    logger.info(f"Configuration: {config!r}")
    sys.exit(process_participant(config, skip_bids_validation, log_level))


def main():
    """Entry point for the CLI."""
    try:
        cli()
    except Exception as e:
        logger.error(f"Error: {str(e)}")
        sys.exit(1)


if __name__ == "__main__":
    main()
