"""AIPM workspace state engine."""

__version__ = "0.1.0"
