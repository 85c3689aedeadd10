"""
Backup module for Cloudkeeper.

This module handles the core backup functionality including:
- Database export (mysqldump)
- Compression of file groups
- Upload to the remote store (Google Drive or S3)
- Retention policy enforcement
- Execution orchestration
"""

from .executor import BackupExecutor
from .exporter import DatabaseExporter
from .compression import Archiver
from .storage import DriveStore, S3Store
from .uploader import Uploader
from .retention import RetentionManager

__all__ = [
    'BackupExecutor',
    'DatabaseExporter',
    'Archiver',
    'DriveStore',
    'S3Store',
    'Uploader',
    'RetentionManager'
]
