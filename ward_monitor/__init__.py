"""Live feed health and patient safety monitoring for many camera sources."""

__version__ = "0.3.0"
