"""Update Center: batch installation of versioned packages with progress reconciliation."""

__version__ = "0.1.0"
