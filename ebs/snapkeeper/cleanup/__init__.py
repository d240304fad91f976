"""
Cleanup pass for SnapKeeper.

Deletes owned snapshots whose Expires tag has passed. Snapshots without an
Expires tag are permanent.
"""

from .service import CleanupReport, CleanupService

__all__ = ["CleanupService", "CleanupReport"]
