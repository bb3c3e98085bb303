"""Exceptions raised by tracesift."""

from __future__ import annotations

__all__ = ['TraceSiftConfigError']


class TraceSiftConfigError(ValueError):
    """
    Error raised when there is a problem with the tracesift configuration.
    """
