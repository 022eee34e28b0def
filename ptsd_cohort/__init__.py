"""Matched veteran / civilian PTSD treatment-outcome analysis."""

__version__ = "0.1.0"
