"""Background job runner and recurring-message campaign scheduler."""

__version__ = "1.0.0"
