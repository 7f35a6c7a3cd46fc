"""ZBRS - discovery, validation and import of Bible repositories."""

__version__ = "0.1.0"
