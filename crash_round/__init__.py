"""Provably-fair crash round engine."""

__version__ = "1.0.0"
