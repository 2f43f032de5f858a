"""nightly: sequential task sessions for an AI coding worker on git branches."""

__version__ = "1.2.0"
