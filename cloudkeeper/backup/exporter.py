"""
Database export through mysqldump.

Strategies:
- all: one dump of every database; a failure is fatal for the export
- individual: one dump per configured database (or per listed database
  when none are configured); failures are reported and skipped
- except: one dump per listed database not in the exclusion list

Each dump streams the process stdout straight to disk while counting bytes
for the progress estimate.
"""

import logging
import os
from typing import Callable, List, Optional

from .errors import ProcessError
from .models import (
    ArtifactKind, BackupArtifact, DatabaseConnection, ExportSpec, artifact_timestamp
)
from .processes import spawn_process
from .progress import ProgressEstimator, ProgressSink


logger = logging.getLogger(__name__)


class DatabaseExporter:
    """
    Drives mysqldump to produce database dump artifacts.

    Args:
        connection: Database server connection settings
        spec: Which databases to dump
        output_dir: Directory where dump files are written
        progress: Sink receiving progress events
        spawner: Process-spawn collaborator, ``spawn_process`` by default
        mysqldump_bin: mysqldump executable
        mysql_bin: mysql client executable, used to list databases
    """

    def __init__(self, connection: DatabaseConnection, spec: ExportSpec, output_dir: str,
                 progress: Optional[ProgressSink] = None, spawner: Callable = spawn_process,
                 mysqldump_bin: str = 'mysqldump', mysql_bin: str = 'mysql'):
        self.connection = connection
        self.spec = spec
        self.output_dir = output_dir
        self.progress = progress or ProgressSink()
        self.spawner = spawner
        self.mysqldump_bin = mysqldump_bin
        self.mysql_bin = mysql_bin
        self.errors: List[ProcessError] = []

    def _connection_args(self) -> List[str]:
        return [
            f"--host={self.connection.host}",
            f"--port={self.connection.port}",
            f"--user={self.connection.user}",
        ]

    def _connection_env(self):
        # Keeps the password out of the process list
        return {'MYSQL_PWD': self.connection.password} if self.connection.password else None

    def list_databases(self) -> List[str]:
        """
        List database names on the server, minus the excluded ones.

        Returns:
            Database names in server order

        Raises:
            ProcessError: If the mysql client fails
        """
        args = self._connection_args() + ['-N', '-e', 'SHOW DATABASES;']
        try:
            process = self.spawner(self.mysql_bin, args, self._connection_env())
        except OSError as e:
            raise ProcessError(f"Failed to start {self.mysql_bin}: {e}", unit='list')

        output = b''.join(process.iter_stdout())
        exit_code = process.wait()

        if exit_code != 0:
            raise ProcessError(
                f"Failed to list databases (exit code {exit_code}): {process.stderr_text}",
                unit='list', exit_code=exit_code, stderr=process.stderr_text
            )

        excluded = set(self.spec.excluded)
        names = [line.strip() for line in output.decode('utf-8', errors='replace').splitlines()]
        return [name for name in names if name and name not in excluded]

    def _units_to_export(self) -> List[str]:
        if self.spec.strategy == ExportSpec.INDIVIDUAL and self.spec.units:
            return list(self.spec.units)

        # Listing already drops excluded names for both remaining cases
        return self.list_databases()

    def export(self) -> List[BackupArtifact]:
        """
        Export databases according to the spec.

        Returns:
            Artifacts for every unit that exported successfully

        Raises:
            ProcessError: In 'all' mode when the dump fails, or when the
                database list cannot be obtained
        """
        self.errors = []

        if not self.spec.enabled:
            self.progress.log("Database backup disabled in configuration")
            return []

        os.makedirs(self.output_dir, exist_ok=True)

        if self.spec.strategy == ExportSpec.ALL:
            operation = "Export of all databases"
            self.progress.start_operation(operation)
            try:
                artifact = self.export_all_databases()
            except ProcessError as e:
                self.errors.append(e)
                self.progress.error(str(e))
                self.progress.end_operation(operation, success=False)
                raise
            self.progress.end_operation(operation)
            return [artifact]

        units = self._units_to_export()
        operation = f"Export of {len(units)} individual databases"
        self.progress.start_operation(operation)

        artifacts = []
        for index, name in enumerate(units, start=1):
            try:
                artifacts.append(self.export_single_database(name, index, len(units)))
            except ProcessError as e:
                self.errors.append(e)
                logger.error(f"Export of database {name} failed: {e}")
                self.progress.error(f"Error exporting database {name}: {e}")

        self.progress.end_operation(operation, success=not self.errors)
        return artifacts

    def export_all_databases(self) -> BackupArtifact:
        dump_path = os.path.join(self.output_dir, f"all-databases-{artifact_timestamp()}.sql")
        args = self._connection_args() + ['--all-databases', '--ignore-table=mysql.event']
        artifact = self._dump('all-databases', args, dump_path, "Exporting all databases")
        self.progress.log(f"All databases exported to: {dump_path}")
        return artifact

    def export_single_database(self, name: str, current: int, total: int) -> BackupArtifact:
        dump_path = os.path.join(self.output_dir, f"db-{name}-{artifact_timestamp()}.sql")
        args = self._connection_args() + ['--databases', name]
        artifact = self._dump(name, args, dump_path, f"Exporting database {name} ({current}/{total})")
        self.progress.log(f"Database {name} exported to: {dump_path}")
        return artifact

    def _dump(self, unit: str, args: List[str], dump_path: str, operation: str) -> BackupArtifact:
        """
        Run one mysqldump and stream its stdout into ``dump_path``.

        Percent is capped at 95 while streaming; 100 is only reported once
        the process has exited cleanly.

        Raises:
            ProcessError: If the process cannot start or exits non-zero
        """
        try:
            process = self.spawner(self.mysqldump_bin, args, self._connection_env())
        except OSError as e:
            raise ProcessError(f"Failed to start {self.mysqldump_bin} for {unit}: {e}", unit=unit)

        estimator = ProgressEstimator()
        try:
            with open(dump_path, 'wb') as output:
                for chunk in process.iter_stdout():
                    output.write(chunk)
                    self.progress.update_progress(estimator.add(len(chunk)), operation)
        except OSError as e:
            process.kill()
            process.wait()
            self._remove_partial(dump_path)
            raise ProcessError(f"Failed to write dump for {unit}: {e}", unit=unit)

        exit_code = process.wait()
        stderr = process.stderr_text

        if exit_code != 0:
            self._remove_partial(dump_path)
            raise ProcessError(
                f"mysqldump failed for {unit} with exit code {exit_code}"
                + (f": {stderr}" if stderr else ''),
                unit=unit, exit_code=exit_code, stderr=stderr
            )

        if stderr:
            logger.warning(f"mysqldump stderr for {unit}: {stderr}")

        self.progress.update_progress(estimator.complete(), f"Database {unit} exported")
        return BackupArtifact.from_path(dump_path, ArtifactKind.DATABASE_DUMP)

    def _remove_partial(self, path: str):
        if os.path.exists(path):
            try:
                os.remove(path)
            except OSError as e:
                logger.warning(f"Failed to remove partial dump {path}: {e}")
