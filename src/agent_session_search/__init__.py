"""Index, browse and search AI coding-assistant session logs."""

__version__ = "0.1.0"
