"""Local-first sync engine for Activities and Sessions."""

__version__ = "0.3.0"
