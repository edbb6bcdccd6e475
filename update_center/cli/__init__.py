"""Command-line interface for the Update Center."""
