"""NDJSON output, atomic fetch state and fetch metadata for pull request exports."""

__version__ = "0.1.0"
__all__ = ["metadata", "output", "state"]