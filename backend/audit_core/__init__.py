"""Audit trail, signing and rollback core."""

__version__ = "0.1.0"
