"""Reported-state layer.

The store in this package is the single owner of the device's reported
twin document. Nothing else mutates or publishes it.
"""

from edgetwin.state.store import StateStore

__all__ = ["StateStore"]
