#!/usr/bin/env python3
"""
Utility functions for the post-structural BIDS app.

This module provides common utility functions used across the application,
including logging configuration, tool discovery and version reporting.
"""

import datetime
import logging
import os
import re
import shutil
import sys
from importlib.metadata import PackageNotFoundError, version
from pathlib import Path

from poststruct import __version__

# External executables invoked by the stage, by provider
REQUIRED_TOOLS = {
    "FreeSurfer": ["mris_convert", "mri_surf2surf", "mri_aparc2aseg", "mri_label2vol"],
    "Workbench": ["wb_command", "wb_shortcuts"],
    "ANTs": ["antsRegistrationSyN.sh", "antsApplyTransforms"],
    "FSL": ["fslreorient2std", "fslmaths"],
    "MRtrix3": ["mrconvert"],
    "c3d": ["c3d_affine_tool"],
}


def get_freesurfer_version():
    """
    Get FreeSurfer version string from the installation build stamp.

    Returns
    -------
    str
        FreeSurfer version string, or "unknown" if not available
    """
    fs_home = os.environ.get("FREESURFER_HOME")
    if not fs_home:
        return "unknown"

    build_stamp_path = Path(fs_home) / "build-stamp.txt"
    if not build_stamp_path.exists():
        return "unknown"

    try:
        build_stamp = build_stamp_path.read_text().strip()
    except OSError as e:
        logging.warning(f"Failed to read {build_stamp_path}: {str(e)}")
        return "unknown"

    # e.g. "freesurfer-linux-ubuntu22_x86_64-7.4.1-20230614-7eb8460"
    version_match = re.search(r"(\d+\.\d+\.\d+)", build_stamp)
    if version_match:
        return version_match.group(1)
    return build_stamp or "unknown"


LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"

# Third-party loggers kept at WARNING
QUIET_LOGGERS = ("nibabel", "bids")


def setup_logging(log_level=logging.INFO, log_file=None):
    """
    Configure console logging and, optionally, a per-subject log file.

    Calling it again replaces the handlers, so the console logger set up at
    startup can be extended with the subject log once the subject's
    derivatives directory is known.

    Parameters
    ----------
    log_level : int, optional
        Logging level (e.g., logging.INFO, logging.DEBUG)
    log_file : str or Path, optional
        Log file, opened in append mode so reruns of a subject accumulate
    """
    root = logging.getLogger()
    for handler in root.handlers[:]:
        root.removeHandler(handler)

    formatter = logging.Formatter(LOG_FORMAT)
    handlers = [logging.StreamHandler()]
    if log_file:
        log_file = Path(log_file)
        log_file.parent.mkdir(parents=True, exist_ok=True)
        handlers.append(logging.FileHandler(log_file, mode="a"))

    for handler in handlers:
        handler.setFormatter(formatter)
        root.addHandler(handler)
    root.setLevel(log_level)

    for name in QUIET_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)


def check_dependencies(tools=None):
    """
    Check that the external executables are available.

    Parameters
    ----------
    tools : dict, optional
        Provider -> executables mapping (default: ``REQUIRED_TOOLS``)

    Returns
    -------
    list of str
        Missing executables; empty if all were found
    """
    tools = REQUIRED_TOOLS if tools is None else tools
    missing = []
    for provider, executables in tools.items():
        for executable in executables:
            if shutil.which(executable) is None:
                logging.warning(f"{provider} executable not found in PATH: {executable}")
                missing.append(executable)
    return missing


def get_version_info():
    """
    Get version information for the application and its environment.

    Returns
    -------
    dict
        Dictionary containing version information for all components
    """
    version_info = {
        "bids_poststructural": {
            "version": __version__,
            "timestamp": datetime.datetime.now().isoformat(),
        },
        "freesurfer": {
            "version": get_freesurfer_version(),
            "home": os.environ.get("FREESURFER_HOME"),
        },
        "python": {
            "version": sys.version,
            "packages": {},
        },
    }

    for package in ["numpy", "pandas", "nibabel", "pybids", "click"]:
        try:
            version_info["python"]["packages"][package] = version(package)
        except PackageNotFoundError:
            pass

    return version_info
