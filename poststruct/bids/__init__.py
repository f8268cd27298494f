"""
BIDS integration module for the post-structural stage

This package derives subject paths following the derivatives naming grammar
and writes the provenance and status records of the stage.
"""

from .layout import SubjectLayout

__all__ = ['SubjectLayout']
