"""Exceptions raised by the preparation steps around store transitions.

Transitions themselves never raise; these are caught by the loader,
reconciler and interaction services, logged, and turned into no-ops.
"""

from __future__ import annotations


class SyncError(Exception):
    """Base class for sync engine failures."""


class ProfileLoadError(SyncError):
    """A profile or subscription lookup failed."""


class NotAuthenticatedError(SyncError):
    """An operation needed a signed-in user and there was none."""
