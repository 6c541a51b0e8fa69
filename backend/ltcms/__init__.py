"""LTCMS authentication and session backend."""

__version__ = "0.1.0"
