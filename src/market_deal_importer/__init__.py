"""Streaming importer and classifier for Filecoin storage market deals."""

__version__ = "0.1.0"
