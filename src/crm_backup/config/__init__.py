"""
Configuration for the backup/restore engine.
"""

from .config_loader import BackupConfig

__all__ = ["BackupConfig"]
