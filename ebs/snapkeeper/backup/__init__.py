"""
Backup pass for SnapKeeper.

Snapshots tagged volumes that are due and stamps each snapshot with its
retention deadline.
"""

from .service import BackupReport, BackupService

__all__ = ["BackupService", "BackupReport"]
