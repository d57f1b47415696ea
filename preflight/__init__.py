"""Container image and operator bundle certification checks."""

__version__ = "0.1.0"
