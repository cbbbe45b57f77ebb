"""Lockbox — local, file-backed secrets manager with environment inheritance."""

__version__ = "0.1.0"
