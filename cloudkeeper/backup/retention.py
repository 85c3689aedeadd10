"""
Retention policy enforcement for remote backups.

Selection is a pure function of a fresh remote listing and a policy:
1. keep only entries whose name matches one of the policy's glob patterns
2. rely on the listing being ordered newest-first (it is not re-sorted)
3. 'count' deletes everything past the newest ``keep_last`` entries,
   'age' deletes everything created before now - ``max_age_days``

Deletion attempts every selected entry independently and counts only
confirmed deletions.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from fnmatch import fnmatchcase
from typing import List, Optional, Sequence

from .credentials import CredentialProvider
from .errors import BackupError, NotFoundError, StorageError
from .models import RemoteEntry, RetentionPolicy
from .progress import ProgressSink
from .storage import RemoteStore


logger = logging.getLogger(__name__)


def matches_pattern(name: str, patterns: Sequence[str]) -> bool:
    """
    Check a file name against glob patterns.

    '*' matches any run of characters and '?' exactly one; the whole name
    must match. Matching is case sensitive.
    """
    return any(fnmatchcase(name, pattern) for pattern in patterns)


def filter_by_patterns(entries: Sequence[RemoteEntry], patterns: Sequence[str]) -> List[RemoteEntry]:
    """Keep entries matching at least one pattern, preserving order."""
    return [entry for entry in entries if matches_pattern(entry.name, patterns)]


def _aware(value: datetime) -> datetime:
    return value if value.tzinfo else value.replace(tzinfo=timezone.utc)


def select_for_deletion(
    entries: Sequence[RemoteEntry],
    policy: RetentionPolicy,
    now: Optional[datetime] = None
) -> List[RemoteEntry]:
    """
    Compute which remote entries the policy deletes.

    Args:
        entries: Remote listing, newest first
        policy: Retention policy
        now: Reference time for the age strategy (defaults to current UTC time)

    Returns:
        Entries to delete, in listing order
    """
    eligible = filter_by_patterns(entries, policy.name_patterns)

    if policy.uses_age:
        cutoff = _aware(now or datetime.now(timezone.utc)) - timedelta(days=policy.max_age_days)
        return [entry for entry in eligible if _aware(entry.created_at) < cutoff]

    return eligible[policy.keep_last:]


@dataclass
class RetentionResult:
    listed: int = 0
    eligible: int = 0
    selected: int = 0
    deleted: int = 0
    failed: List[str] = field(default_factory=list)


class RetentionManager:
    """
    Applies a retention policy to one remote folder.

    Args:
        store: Remote store collaborator
        credentials: Credential provider used before every remote call
        folder: Folder whose files are subject to the policy
        policy: Retention policy
        progress: Sink receiving progress events
    """

    def __init__(self, store: RemoteStore, credentials: CredentialProvider, folder: Optional[str],
                 policy: RetentionPolicy, progress: Optional[ProgressSink] = None):
        self.store = store
        self.credentials = credentials
        self.folder = folder
        self.policy = policy
        self.progress = progress or ProgressSink()
        self._failed: List[str] = []

    def list_backups(self) -> List[RemoteEntry]:
        """
        Fetch a fresh listing of the folder, newest first.

        Raises:
            StorageError: If the listing fails
        """
        credential = self.credentials.ensure_valid_credential()
        return self.store.list_entries(credential, self.folder)

    def delete_all(self, selected: Sequence[RemoteEntry]) -> int:
        """
        Delete every selected entry, one at a time.

        A failed deletion is logged and skipped. An entry that is already
        gone counts as not deleted and is not retried.

        Returns:
            Number of confirmed deletions
        """
        deleted_count = 0
        seen = set()
        self._failed = []

        for index, entry in enumerate(selected, start=1):
            if entry.id in seen:
                continue
            seen.add(entry.id)

            try:
                credential = self.credentials.ensure_valid_credential()
                self.store.delete(credential, entry.id)
                deleted_count += 1
                logger.info(f"Deleted remote backup: {entry.name} ({entry.id})")
                self.progress.log(f"Old backup removed: {entry.name} ({entry.created_at:%Y-%m-%d})")
            except NotFoundError as e:
                self._failed.append(entry.id)
                logger.warning(f"Remote backup already gone: {entry.name} ({entry.id}): {e}")
                self.progress.error(f"Backup {entry.name} no longer exists")
            except BackupError as e:
                self._failed.append(entry.id)
                logger.error(f"Failed to delete remote backup {entry.name} ({entry.id}): {e}")
                self.progress.error(f"Error removing backup {entry.name}: {e}")
            except Exception as e:
                self._failed.append(entry.id)
                logger.exception(f"Unexpected error deleting remote backup {entry.name} ({entry.id}): {e}")
                self.progress.error(f"Error removing backup {entry.name}: {e}")

            percent = round(index / len(selected) * 100)
            self.progress.update_progress(percent, "Cleaning old backups")

        return deleted_count

    def cleanup_remote(self) -> RetentionResult:
        """
        Enforce the policy on a fresh listing of the folder.

        Listing failures are logged and reported as an empty pass; they do
        not raise.

        Returns:
            RetentionResult with counts for this pass
        """
        result = RetentionResult()

        if not self.policy.enabled:
            self.progress.log("Cleanup of old backups disabled")
            return result

        operation = "Cleanup of old backups"
        self.progress.start_operation(operation)

        try:
            entries = self.list_backups()
        except StorageError as e:
            logger.error(f"Failed to list remote backups: {e}")
            self.progress.error(f"Error listing remote backups: {e}")
            self.progress.end_operation(operation, success=False)
            return result
        except Exception as e:
            logger.exception(f"Unexpected error listing remote backups: {e}")
            self.progress.error(f"Error listing remote backups: {e}")
            self.progress.end_operation(operation, success=False)
            return result

        result.listed = len(entries)
        result.eligible = len(filter_by_patterns(entries, self.policy.name_patterns))
        self.progress.log(f"Found {result.eligible} backup files in the remote folder")

        if self.policy.uses_age:
            self.progress.log(f"Removing backups older than {self.policy.max_age_days} days")
        else:
            self.progress.log(f"Keeping the last {self.policy.keep_last} backups")

        selected = select_for_deletion(entries, self.policy)
        result.selected = len(selected)

        if not selected:
            self.progress.log("No old backups to clean up")
            self.progress.end_operation(operation)
            return result

        self.progress.log(f"Found {len(selected)} old backups to clean up")
        result.deleted = self.delete_all(selected)
        result.failed = list(self._failed)

        self.progress.end_operation(operation, success=not result.failed)
        self.progress.log(f"{result.deleted} files removed from the remote folder")
        return result
