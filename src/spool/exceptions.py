"""Spool exception hierarchy.

Provides a structured exception tree so catch blocks can be specific
and callers can distinguish between different failure modes.
"""

from __future__ import annotations


class SpoolError(Exception):
    """Base for all Spool exceptions."""


class ModelError(SpoolError):
    """Provider connection, timeout, parse failures."""
