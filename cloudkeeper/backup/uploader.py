"""
Upload of finished artifacts to the remote store.

Retry policy, at most one extra attempt per failure class:
- auth failure: refresh the credential once and retry
- destination not found: retry once into the store root, then go back to
  the configured folder for the next artifact
Any other failure, or a second failure of the same class, is terminal.
"""

import logging
import os
from typing import List, Optional, Sequence

from .credentials import CredentialProvider
from .errors import (
    AuthError, BackupError, DestinationNotFoundError, StorageError, TransferError
)
from .models import BackupArtifact, RemoteEntry, bytes_to_mb
from .progress import ProgressEstimator, ProgressSink
from .storage import RemoteStore, get_mime_type


logger = logging.getLogger(__name__)

AUTH_SIGNATURES = ('token', 'authentication', 'unauthorized', 'invalid_grant', 'invalid credentials')
DESTINATION_SIGNATURES = ('file not found', 'folder not found', 'nosuchbucket')


def classify_transfer_error(error: Exception) -> str:
    """
    Classify an upload failure as 'auth', 'destination' or 'terminal'.

    Typed store errors decide first; otherwise the message is matched
    against known signatures.
    """
    if isinstance(error, AuthError):
        return TransferError.AUTH
    if isinstance(error, DestinationNotFoundError):
        return TransferError.DESTINATION
    if isinstance(error, TransferError):
        return error.kind

    message = str(error).lower()
    if any(signature in message for signature in AUTH_SIGNATURES):
        return TransferError.AUTH
    if any(signature in message for signature in DESTINATION_SIGNATURES):
        return TransferError.DESTINATION
    return TransferError.TERMINAL


class Uploader:
    """
    Sends artifacts to one destination folder of a remote store.

    Args:
        store: Remote store collaborator
        credentials: Credential provider used before every remote call
        folder: Destination folder identifier
        progress: Sink receiving progress events
    """

    def __init__(self, store: RemoteStore, credentials: CredentialProvider,
                 folder: Optional[str], progress: Optional[ProgressSink] = None):
        self.store = store
        self.credentials = credentials
        self.folder = folder
        self.progress = progress or ProgressSink()
        self.uploaded: List[RemoteEntry] = []
        self.failures: List[TransferError] = []

    def upload(self, artifact: BackupArtifact, current: int = 1, total: int = 1) -> RemoteEntry:
        """
        Upload one artifact.

        Returns:
            The remote entry created for the artifact

        Raises:
            TransferError: When the upload fails terminally
        """
        destination = self.folder
        auth_retried = False
        root_retried = False
        attempts = 0

        while True:
            attempts += 1
            try:
                return self._attempt(artifact, destination, current, total)
            except StorageError as e:
                kind = classify_transfer_error(e)
                logger.warning(f"Upload attempt {attempts} of {artifact.name} failed ({kind}): {e}")
                self.progress.error(f"Error uploading {artifact.name}: {e}")

                if kind == TransferError.AUTH and not auth_retried:
                    auth_retried = True
                    self.progress.log("Refreshing credentials...")
                    try:
                        self.credentials.refresh_credential()
                    except AuthError as refresh_error:
                        raise TransferError(
                            f"Upload of {artifact.name} failed and credentials could not be refreshed: {refresh_error}",
                            kind=TransferError.AUTH, attempts=attempts
                        ) from refresh_error
                    self.progress.log("Retrying upload...")
                    continue

                if kind == TransferError.DESTINATION and destination and not root_retried:
                    root_retried = True
                    destination = None
                    self.progress.log("Destination folder not found, retrying upload to the store root...")
                    continue

                raise TransferError(
                    f"Upload of {artifact.name} failed: {e}", kind=kind, attempts=attempts
                ) from e

    def _attempt(self, artifact: BackupArtifact, folder: Optional[str], current: int, total: int) -> RemoteEntry:
        credential = self.credentials.ensure_valid_credential()

        operation = f"Uploading file {current}/{total}"
        size = artifact.size_bytes or os.path.getsize(artifact.local_path)
        estimator = ProgressEstimator(total=size)

        def on_progress(nbytes: int):
            self.progress.update_progress(estimator.add(nbytes), operation)

        entry = self.store.create(
            credential,
            folder,
            artifact.local_path,
            artifact.name,
            get_mime_type(artifact.local_path),
            on_progress
        )

        self.progress.update_progress(estimator.complete(), f"File {current}/{total} uploaded")
        self.progress.log(
            f"File uploaded: {entry.name} ({bytes_to_mb(entry.size_bytes or size)}MB)"
            + ('' if folder else ' to store root')
        )
        return entry

    def upload_all(self, artifacts: Sequence[BackupArtifact]) -> int:
        """
        Upload artifacts one at a time, in order.

        A failed artifact is logged and skipped; this method never raises.

        Returns:
            Number of artifacts uploaded successfully
        """
        self.uploaded = []
        self.failures = []

        if not artifacts:
            self.progress.log("No files to upload")
            return 0

        operation = f"Upload of {len(artifacts)} files"
        self.progress.start_operation(operation)
        self.progress.log(f"Uploading files to folder: {self.folder or 'root'}")

        success_count = 0
        for index, artifact in enumerate(artifacts, start=1):
            if not os.path.exists(artifact.local_path):
                logger.error(f"Artifact not found: {artifact.local_path}")
                self.progress.error(f"File not found: {artifact.local_path}")
                self.failures.append(TransferError(f"File not found: {artifact.local_path}"))
                continue

            try:
                self.uploaded.append(self.upload(artifact, index, len(artifacts)))
                success_count += 1
            except TransferError as e:
                self.failures.append(e)
                logger.error(f"Upload of {artifact.local_path} failed: {e}")
                self.progress.error(f"Upload failed for {artifact.local_path}")
            except (BackupError, OSError) as e:
                failure = TransferError(f"Upload of {artifact.name} failed: {e}")
                self.failures.append(failure)
                logger.error(f"Upload of {artifact.local_path} failed: {e}")
                self.progress.error(f"Upload failed for {artifact.local_path}")
            except Exception as e:
                self.failures.append(TransferError(f"Upload of {artifact.name} failed: {e}"))
                logger.exception(f"Unexpected error uploading {artifact.local_path}: {e}")
                self.progress.error(f"Upload failed for {artifact.local_path}")

        self.progress.end_operation(operation, success=not self.failures)
        self.progress.log(f"{success_count}/{len(artifacts)} files uploaded")
        return success_count
