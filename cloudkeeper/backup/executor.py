"""
Backup executor - orchestrates one complete backup run.

Workflow:
1. Pre-flight: destination folder and credentials must be configured
2. Clean old remote backups (fresh listing)
3. Export databases and/or compress file groups, depending on the backup type
4. Upload every artifact, one at a time
5. Remove the local artifacts
6. Clean old remote backups again, now including the new uploads

Stages run strictly in order. A fatal error stops the run where it happened
and leaves any produced artifacts on disk for inspection.
"""

import logging
import os
from datetime import datetime, timezone
from typing import List, Optional

from .compression import Archiver
from .errors import AuthError, BackupError, ConfigError, EmptyResultError
from .exporter import DatabaseExporter
from .models import BackupArtifact, BackupType, RunResult, RunStage, bytes_to_mb, format_duration, total_size
from .progress import ProgressSink
from .retention import RetentionManager
from .uploader import Uploader


logger = logging.getLogger(__name__)


class BackupExecutor:
    """
    Orchestrates exporter, archiver, uploader and retention manager.

    Args:
        exporter: Database exporter
        archiver: File group archiver
        uploader: Uploader bound to the destination folder
        retention: Retention manager bound to the same folder
        progress: Sink receiving progress events and the final result
    """

    def __init__(self, exporter: DatabaseExporter, archiver: Archiver, uploader: Uploader,
                 retention: RetentionManager, progress: Optional[ProgressSink] = None):
        self.exporter = exporter
        self.archiver = archiver
        self.uploader = uploader
        self.retention = retention
        self.progress = progress or ProgressSink()
        self.stage = RunStage.IDLE
        self.artifacts: List[BackupArtifact] = []
        self.files_processed = 0
        self.total_files = 0
        self.total_size_bytes = 0

    def run(self, backup_type=None) -> RunResult:
        """
        Execute one backup run.

        Args:
            backup_type: BackupType or 'full' | 'database' | 'files' (default full)

        Returns:
            RunResult; on failure it carries the triggering error and the
            duration up to the failure point
        """
        started_at = datetime.now(timezone.utc)
        self.stage = RunStage.IDLE
        self.artifacts = []
        self.files_processed = 0
        self.total_files = 0
        self.total_size_bytes = 0
        resolved_type = BackupType.FULL
        success = False
        error = None

        try:
            resolved_type = BackupType.from_value(backup_type)
            self.progress.log(f"Starting backup: {resolved_type.display_name}")
            logger.info(f"Starting backup run (type: {resolved_type.value})")

            self._preflight()
            self._execute_workflow(resolved_type)

            self.stage = RunStage.DONE
            success = True

        except (BackupError, OSError) as e:
            error = e
            if isinstance(e, BackupError):
                e.stage = e.stage or self.stage.value
            logger.error(f"Backup failed during {self.stage.value}: {e}")
            self.progress.error(f"Backup failed: {e}")
            self.stage = RunStage.FAILED

        except Exception as e:
            error = e
            logger.exception(f"Unexpected error during {self.stage.value}: {e}")
            self.progress.error(f"Backup failed: {e}")
            self.stage = RunStage.FAILED

        result = RunResult(
            success=success,
            files_processed=self.files_processed,
            total_files=self.total_files,
            total_size_bytes=self.total_size_bytes,
            duration=datetime.now(timezone.utc) - started_at,
            backup_type=resolved_type,
            stage=self.stage,
            error=error
        )

        if result.success:
            message = (
                f"Backup completed in {format_duration(result.duration)}: "
                f"{result.files_processed}/{result.total_files} files uploaded "
                f"({result.total_size_mb}MB)"
            )
            logger.info(message)
            self.progress.log(message)
        else:
            logger.info(f"Backup failed after {format_duration(result.duration)}")

        self.progress.run_finished(result)
        return result

    def _preflight(self):
        """
        Check the destination before anything is touched.

        Raises:
            ConfigError: If the folder or credentials are missing
        """
        if not self.uploader.folder:
            raise ConfigError("Destination folder is not configured", stage=RunStage.IDLE.value)

        try:
            self.uploader.credentials.ensure_valid_credential()
        except AuthError as e:
            raise ConfigError(f"Destination credentials are not usable: {e}", stage=RunStage.IDLE.value)

    def _execute_workflow(self, backup_type: BackupType):
        """Execute the main backup workflow steps."""
        # Step 1: Clean old backups
        self.stage = RunStage.CLEANING_OLD
        self.retention.cleanup_remote()

        # Step 2: Export databases
        if backup_type.exports_databases:
            self.stage = RunStage.EXPORTING
            self.artifacts.extend(self.exporter.export())

        # Step 3: Compress file groups
        if backup_type.compresses_files:
            self.stage = RunStage.COMPRESSING
            self.artifacts.extend(self.archiver.compress_groups())

        if not self.artifacts:
            self.progress.log("No backup files were created")
            raise EmptyResultError("No backup files were created", stage=self.stage.value)

        self.total_files = len(self.artifacts)
        self.total_size_bytes = total_size(self.artifacts)
        self.progress.log(
            f"Total: {self.total_files} files ({bytes_to_mb(self.total_size_bytes)}MB)"
        )

        # Step 4: Upload
        self.stage = RunStage.UPLOADING
        self.files_processed = self.uploader.upload_all(self.artifacts)
        if self.files_processed < self.total_files:
            logger.warning(f"Only {self.files_processed}/{self.total_files} files were uploaded")

        # Step 5: Remove local artifacts, whatever the upload outcome
        self.stage = RunStage.CLEANING_LOCAL
        self._cleanup_local()

        # Step 6: Clean again so the new uploads count toward retention
        self.stage = RunStage.CLEANING_OLD_AGAIN
        self.retention.cleanup_remote()

    def _cleanup_local(self):
        """Remove local artifacts."""
        for artifact in self.artifacts:
            try:
                if os.path.exists(artifact.local_path):
                    os.remove(artifact.local_path)
                    logger.debug(f"Removed local artifact {artifact.local_path}")
            except OSError as e:
                logger.warning(f"Failed to remove local artifact {artifact.local_path}: {e}")
                self.progress.error(f"Error removing temporary file {artifact.name}: {e}")

        self.progress.log("Temporary files removed")
