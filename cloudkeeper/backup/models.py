"""
Value types shared by the backup pipeline.

These are plain dataclasses: artifacts produced locally, entries listed from
the remote store, the retention policy, the database export selection and the
result of a run.
"""

import os
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, Dict, List, Mapping, Optional, Sequence, Tuple

from .errors import ConfigError


class ArtifactKind(str, Enum):
    DATABASE_DUMP = 'database-dump'
    COMPRESSED_GROUP = 'compressed-group'


@dataclass(frozen=True)
class BackupArtifact:
    """A locally produced file waiting to be uploaded."""

    local_path: str
    size_bytes: int
    kind: ArtifactKind

    @property
    def name(self) -> str:
        return os.path.basename(self.local_path)

    @classmethod
    def from_path(cls, local_path: str, kind: ArtifactKind) -> 'BackupArtifact':
        """Build an artifact from an existing file, reading its size from disk."""
        return cls(local_path=local_path, size_bytes=os.path.getsize(local_path), kind=kind)


@dataclass(frozen=True)
class RemoteEntry:
    """Metadata for a file already present in the remote store."""

    id: str
    name: str
    created_at: datetime
    size_bytes: Optional[int] = None


class BackupType(str, Enum):
    """
    What a run produces.

    Resolved once at run start; each case maps to a fixed subset of the
    exporter and archiver stages.
    """

    FULL = 'full'
    DATABASE = 'database'
    FILES = 'files'

    @property
    def exports_databases(self) -> bool:
        return self in (BackupType.FULL, BackupType.DATABASE)

    @property
    def compresses_files(self) -> bool:
        return self in (BackupType.FULL, BackupType.FILES)

    @property
    def display_name(self) -> str:
        return {
            BackupType.FULL: 'Full (databases + files)',
            BackupType.DATABASE: 'Databases only',
            BackupType.FILES: 'Files only',
        }[self]

    @classmethod
    def from_value(cls, value: Optional[str]) -> 'BackupType':
        if value is None or value == '':
            return cls.FULL
        try:
            return cls(str(value).strip().lower())
        except ValueError:
            raise ConfigError(
                f"Invalid backup type: {value}. Valid options: {[t.value for t in cls]}"
            )


class RunStage(str, Enum):
    IDLE = 'idle'
    CLEANING_OLD = 'cleaning_old'
    EXPORTING = 'exporting'
    COMPRESSING = 'compressing'
    UPLOADING = 'uploading'
    CLEANING_LOCAL = 'cleaning_local'
    CLEANING_OLD_AGAIN = 'cleaning_old_again'
    DONE = 'done'
    FAILED = 'failed'


def _as_list(value: Any) -> List[str]:
    """Accept a list or a comma separated string and return clean items."""
    if value is None:
        return []
    if isinstance(value, str):
        items = value.split(',')
    else:
        items = list(value)
    return [str(item).strip() for item in items if str(item).strip()]


def _as_bool(value: Any, default: bool) -> bool:
    if value is None:
        return default
    if isinstance(value, bool):
        return value
    return str(value).strip().lower() in ('1', 'true', 'yes', 'on')


@dataclass(frozen=True)
class RetentionPolicy:
    """
    Rules deciding which remote entries get deleted.

    Only entries whose name matches one of ``name_patterns`` are ever
    eligible, so unrelated files sharing the folder are never touched.
    """

    COUNT = 'count'
    AGE = 'age'

    enabled: bool = True
    strategy: str = COUNT
    keep_last: int = 5
    max_age_days: Optional[int] = None
    name_patterns: Tuple[str, ...] = ()

    def __post_init__(self):
        if self.strategy not in (self.COUNT, self.AGE):
            raise ConfigError(
                f"Invalid retention strategy: {self.strategy!r}. Valid options: ['count', 'age']"
            )
        if self.keep_last < 0:
            raise ConfigError(f"keep_last must be >= 0, got {self.keep_last}")
        if self.max_age_days is not None and self.max_age_days < 0:
            raise ConfigError(f"max_age_days must be >= 0, got {self.max_age_days}")

    @property
    def uses_age(self) -> bool:
        """Age wins only when selected and a maximum age is actually set."""
        return self.strategy == self.AGE and bool(self.max_age_days)

    @classmethod
    def from_config(cls, data: Optional[Mapping[str, Any]]) -> 'RetentionPolicy':
        """
        Build a policy from an untrusted mapping.

        Args:
            data: Mapping with keys enabled, strategy, keep_last, max_age_days
                and name_patterns (list or comma separated string)

        Raises:
            ConfigError: If a value cannot be interpreted
        """
        data = data or {}
        try:
            keep_last = int(data.get('keep_last', 5))
            max_age = data.get('max_age_days')
            max_age_days = int(max_age) if max_age not in (None, '') else None
        except (TypeError, ValueError) as e:
            raise ConfigError(f"Invalid retention setting: {e}")

        return cls(
            enabled=_as_bool(data.get('enabled'), True),
            strategy=str(data.get('strategy') or cls.COUNT).strip().lower(),
            keep_last=keep_last,
            max_age_days=max_age_days,
            name_patterns=tuple(_as_list(data.get('name_patterns'))),
        )


@dataclass(frozen=True)
class DatabaseConnection:
    host: str = 'localhost'
    port: int = 3306
    user: str = 'root'
    password: str = ''


@dataclass(frozen=True)
class ExportSpec:
    """
    Which database units to dump.

    strategy 'all' dumps everything into one file, 'individual' dumps the
    configured units (or every listed unit when none are configured) and
    'except' dumps every listed unit not in ``excluded``.
    """

    ALL = 'all'
    INDIVIDUAL = 'individual'
    EXCEPT = 'except'

    enabled: bool = True
    strategy: str = ALL
    units: Tuple[str, ...] = ()
    excluded: Tuple[str, ...] = ()

    def __post_init__(self):
        if self.strategy not in (self.ALL, self.INDIVIDUAL, self.EXCEPT):
            raise ConfigError(
                f"Invalid database backup strategy: {self.strategy!r}. "
                f"Valid options: ['all', 'individual', 'except']"
            )

    @classmethod
    def from_config(cls, data: Optional[Mapping[str, Any]]) -> 'ExportSpec':
        data = data or {}
        return cls(
            enabled=_as_bool(data.get('enabled'), True),
            strategy=str(data.get('strategy') or cls.ALL).strip().lower(),
            units=tuple(_as_list(data.get('units'))),
            excluded=tuple(_as_list(data.get('excluded'))),
        )


@dataclass(frozen=True)
class RunResult:
    """Outcome of one orchestrated run. Never persisted by the pipeline."""

    success: bool
    files_processed: int = 0
    total_files: int = 0
    total_size_bytes: int = 0
    duration: timedelta = field(default_factory=timedelta)
    backup_type: BackupType = BackupType.FULL
    stage: RunStage = RunStage.IDLE
    error: Optional[BaseException] = None

    @property
    def total_size_mb(self) -> float:
        return bytes_to_mb(self.total_size_bytes)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'success': self.success,
            'files_processed': self.files_processed,
            'total_files': self.total_files,
            'total_size_bytes': self.total_size_bytes,
            'total_size_mb': self.total_size_mb,
            'duration_seconds': round(self.duration.total_seconds(), 3),
            'duration': format_duration(self.duration),
            'backup_type': self.backup_type.value,
            'stage': self.stage.value,
            'error': str(self.error) if self.error else None,
        }


def bytes_to_mb(size_bytes: Optional[int]) -> float:
    if not size_bytes:
        return 0.0
    return round(size_bytes / 1024 / 1024, 2)


def format_duration(duration: timedelta) -> str:
    """
    Format a duration as '1h 2m 3s', '2m 3s' or '3s'.

    Args:
        duration: Elapsed time

    Returns:
        Human readable string
    """
    seconds = int(duration.total_seconds())
    minutes, seconds = divmod(seconds, 60)
    hours, minutes = divmod(minutes, 60)

    if hours > 0:
        return f"{hours}h {minutes}m {seconds}s"
    elif minutes > 0:
        return f"{minutes}m {seconds}s"
    return f"{seconds}s"


def total_size(artifacts: Sequence[BackupArtifact]) -> int:
    return sum(artifact.size_bytes for artifact in artifacts)


def artifact_timestamp(now: Optional[datetime] = None) -> str:
    """
    Timestamp used in artifact file names.

    ISO-8601 with ':' and '.' replaced so the result is filesystem safe,
    e.g. 2024-01-15T12-30-00-123Z.
    """
    now = now or datetime.now(timezone.utc)
    iso = now.strftime('%Y-%m-%dT%H:%M:%S.') + f"{now.microsecond // 1000:03d}Z"
    return iso.replace(':', '-').replace('.', '-')
