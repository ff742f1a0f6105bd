"""Backup and restore of the source tree, configuration, database and media."""

from healthguard.backup.database import CouchDatabase, DatabaseError
from healthguard.backup.manager import LAST_KNOWN_GOOD, BackupManager

__all__ = ["BackupManager", "CouchDatabase", "DatabaseError", "LAST_KNOWN_GOOD"]
