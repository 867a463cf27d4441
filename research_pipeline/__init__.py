"""Deadline-bounded multi-stage research pipeline."""

__version__ = "0.1.0"
