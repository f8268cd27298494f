"""
Post-structural stage for BIDS derivatives

This package registers FreeSurfer/FastSurfer cortical surfaces of a subject
into the fsLR-32k standard mesh and the native processing space, transfers
cortical parcellations to the native volume, and computes morphology maps.
"""

try:
    from importlib.metadata import PackageNotFoundError, version

    __version__ = version("bids-poststructural")
except PackageNotFoundError:
    __version__ = "0.1.0"

__all__ = ["__version__"]
