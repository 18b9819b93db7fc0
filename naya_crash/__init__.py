"""NayaPlay Crash round engine."""

__version__ = "1.0.0"
