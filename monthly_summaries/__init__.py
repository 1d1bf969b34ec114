"""Summarize monthly conversation exports into one narrative document."""

__version__ = "0.1.0"
