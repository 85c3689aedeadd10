"""
Compression of file groups into tar.gz archives.

Each configured group (name -> list of paths) becomes one archive written
with gzip level 9. Progress is estimated from compressed bytes written
against the summed size of the inputs; directories are not walked for
sizing and count as a fixed placeholder instead.
"""

import logging
import os
import tarfile
from pathlib import Path
from typing import Callable, Dict, List, Mapping, Optional, Sequence

from .errors import CompressionError
from .models import ArtifactKind, BackupArtifact, artifact_timestamp
from .progress import CountingWriter, ProgressEstimator, ProgressSink


logger = logging.getLogger(__name__)

DIRECTORY_SIZE_ESTIMATE = 100 * 1024 * 1024
UNREADABLE_SIZE_ESTIMATE = 10 * 1024 * 1024
COMPRESS_LEVEL = 9


def estimate_total_size(paths: Sequence[str]) -> int:
    """
    Estimate the input size of a group without walking directories.

    Args:
        paths: Existing file or directory paths

    Returns:
        Sum of file sizes, with a placeholder for each directory
    """
    total = 0
    for path in paths:
        try:
            if os.path.isdir(path):
                total += DIRECTORY_SIZE_ESTIMATE
            else:
                total += os.stat(path).st_size
        except OSError:
            total += UNREADABLE_SIZE_ESTIMATE
    return total


def create_tar_gz(
    source_paths: List[str],
    archive_path: str,
    on_write: Optional[Callable[[int], None]] = None
) -> str:
    """
    Create a gzip compressed tar archive.

    Args:
        source_paths: Files and directories to include, stored under their basename
        archive_path: Output archive path
        on_write: Called with the number of compressed bytes after each write

    Returns:
        ``archive_path`` once the stream is closed

    Raises:
        CompressionError: If the archive cannot be written; the partial
            archive is removed
    """
    if not source_paths:
        raise CompressionError("No source paths provided")

    try:
        with open(archive_path, 'wb') as raw:
            writer = CountingWriter(raw, on_write or (lambda size: None))
            with tarfile.open(fileobj=writer, mode='w:gz', compresslevel=COMPRESS_LEVEL) as tar:
                for source_path in source_paths:
                    source = Path(source_path)

                    if not source.exists():
                        raise CompressionError(f"Path does not exist: {source_path}")

                    tar.add(str(source), arcname=source.name, recursive=True)
        return archive_path
    except Exception as e:
        # Clean up partial archive on failure
        if os.path.exists(archive_path):
            try:
                os.remove(archive_path)
            except OSError:
                logger.warning(f"Failed to remove partial archive {archive_path}")
        if isinstance(e, CompressionError):
            raise
        raise CompressionError(f"Failed to create archive: {e}")


def generate_archive_filename(group_name: str, timestamp: Optional[str] = None) -> str:
    """
    Generate a standardized archive filename.

    Format: {group_name}-{timestamp}.tar.gz

    Args:
        group_name: Name of the backup group
        timestamp: Timestamp string, current time when omitted

    Returns:
        Filename (without path)
    """
    timestamp = timestamp or artifact_timestamp()

    # Sanitize group name (replace spaces and special chars with underscores)
    safe_group_name = "".join(
        c if c.isalnum() or c in ('-', '_') else '_'
        for c in group_name
    )

    return f"{safe_group_name}-{timestamp}.tar.gz"


class Archiver:
    """
    Compresses named groups of local paths, one archive per non-empty group.

    Args:
        groups: Mapping of group name to ordered paths
        output_dir: Directory where archives are written
        progress: Sink receiving progress events
    """

    def __init__(self, groups: Mapping[str, Sequence[str]], output_dir: str,
                 progress: Optional[ProgressSink] = None):
        self.groups: Dict[str, List[str]] = {name: list(paths) for name, paths in (groups or {}).items()}
        self.output_dir = output_dir
        self.progress = progress or ProgressSink()
        self.errors: List[CompressionError] = []

    def compress_groups(self) -> List[BackupArtifact]:
        """
        Compress every group in configuration order.

        Missing paths are dropped first; a group left empty is skipped with a
        notice. A group that fails to compress is reported and the remaining
        groups still run.

        Returns:
            One artifact per successfully compressed group
        """
        self.errors = []
        timestamp = artifact_timestamp()
        artifacts = []

        group_entries = list(self.groups.items())
        operation = f"Compression of {len(group_entries)} file groups"
        self.progress.start_operation(operation)

        if group_entries:
            os.makedirs(self.output_dir, exist_ok=True)

        for index, (group_name, paths) in enumerate(group_entries, start=1):
            valid_paths = [path for path in paths if os.path.exists(path)]

            if not valid_paths:
                logger.info(f"No existing paths for group {group_name}, skipping")
                self.progress.log(f"No valid files found for group: {group_name}")
                continue

            missing = len(paths) - len(valid_paths)
            if missing:
                logger.warning(f"Group {group_name}: {missing} missing path(s) ignored")

            archive_path = os.path.join(self.output_dir, generate_archive_filename(group_name, timestamp))
            try:
                artifacts.append(self.compress_group(valid_paths, archive_path, index, len(group_entries)))
            except CompressionError as e:
                e.unit = group_name
                self.errors.append(e)
                logger.error(f"Compression of group {group_name} failed: {e}")
                self.progress.error(f"Error compressing group {group_name}: {e}")

        self.progress.end_operation(operation, success=not self.errors)
        return artifacts

    def compress_group(self, paths: List[str], archive_path: str, current: int, total: int) -> BackupArtifact:
        operation = f"Compressing group {current}/{total}"
        estimator = ProgressEstimator(total=estimate_total_size(paths))

        def on_write(size: int):
            self.progress.update_progress(estimator.add(size), operation)

        create_tar_gz(paths, archive_path, on_write)

        self.progress.update_progress(estimator.complete(), f"Group {current}/{total} compressed")
        self.progress.log(f"Archive created: {archive_path}")
        return BackupArtifact.from_path(archive_path, ArtifactKind.COMPRESSED_GROUP)
