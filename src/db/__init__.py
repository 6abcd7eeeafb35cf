"""Database module."""
from src.db.database import close_db, get_db, init_db
from src.db.models import Backup, Base, Cluster, Export, RestoreJob, SshHostKey, VpsNode

__all__ = [
    "get_db",
    "init_db",
    "close_db",
    "Base",
    "Cluster",
    "VpsNode",
    "Backup",
    "RestoreJob",
    "Export",
    "SshHostKey",
]
