"""Chorus - routing core for multi-personality Discord responders."""

__version__ = "0.1.0"
