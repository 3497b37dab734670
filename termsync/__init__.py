"""termsync - encrypted sync of terminal profiles and settings across machines."""

__version__ = "1.0.0"
