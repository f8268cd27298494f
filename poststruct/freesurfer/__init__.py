"""
External neuroimaging tool integration

This package wraps the FreeSurfer, Workbench, ANTs, FSL, MRtrix and c3d
command-line tools used by the post-structural stage, and provides nibabel
helpers for the surfaces they produce.
"""

from .surfaces import load_surface, load_surface_map
from .wrapper import ToolError, ToolRunner

__all__ = ['ToolError', 'ToolRunner', 'load_surface', 'load_surface_map']
