"""Filestamp: persisted file-state cache for cheap change detection."""

__version__ = "0.3.0"
