"""
Remote stores for backup artifacts.

Supports:
- DriveStore: Google Drive folder (files listed newest-first by createdTime)
- S3Store: AWS S3 bucket, the folder being a key prefix

Stores take a credential handle on every call and never keep it. Provider
exceptions are translated at this boundary into AuthError,
DestinationNotFoundError, NotFoundError or StorageError.
"""

import logging
import os
from datetime import datetime, timezone
from typing import Callable, List, Optional

import boto3
from botocore.exceptions import BotoCoreError, ClientError, NoCredentialsError
from google.auth.exceptions import RefreshError
from googleapiclient.discovery import build
from googleapiclient.errors import HttpError
from googleapiclient.http import MediaFileUpload

from .errors import AuthError, DestinationNotFoundError, NotFoundError, StorageError
from .models import RemoteEntry

logger = logging.getLogger(__name__)

ProgressCallback = Callable[[int], None]

MIME_TYPES = {
    '.gz': 'application/gzip',
    '.tgz': 'application/gzip',
    '.sql': 'application/sql',
    '.tar': 'application/x-tar',
}


def get_mime_type(path: str) -> str:
    ext = os.path.splitext(path)[1].lower()
    return MIME_TYPES.get(ext, 'application/octet-stream')


class RemoteStore:
    """
    Interface of a remote store.

    ``folder`` is a store specific destination identifier; None means the
    store's default root.
    """

    def list_entries(self, credential, folder: Optional[str], prefix: str = '') -> List[RemoteEntry]:
        """
        List files in ``folder``, newest first.

        Args:
            credential: Handle from the credential provider
            folder: Destination folder, None for the root
            prefix: Only return entries whose name starts with this

        Raises:
            StorageError: If listing fails
        """
        raise NotImplementedError

    def create(self, credential, folder: Optional[str], local_path: str, name: str,
               mime_type: str, on_progress: Optional[ProgressCallback] = None) -> RemoteEntry:
        """
        Upload ``local_path`` as ``name`` into ``folder``.

        Args:
            on_progress: Called with the number of bytes sent since the last call

        Raises:
            AuthError: If the credential was rejected
            DestinationNotFoundError: If the folder does not exist
            StorageError: For any other failure
        """
        raise NotImplementedError

    def delete(self, credential, entry_id: str):
        """
        Delete an entry.

        Raises:
            NotFoundError: If the entry no longer exists
            StorageError: For any other failure
        """
        raise NotImplementedError


def _parse_rfc3339(value: str) -> datetime:
    return datetime.fromisoformat(value.replace('Z', '+00:00')).astimezone(timezone.utc)


class DriveStore(RemoteStore):
    """
    Google Drive store.

    Args:
        chunk_size: Resumable upload chunk size in bytes
        service_factory: Builds a Drive service from a credential; defaults
            to googleapiclient ``build('drive', 'v3', ...)``
    """

    FOLDER_MIME = 'application/vnd.google-apps.folder'
    FIELDS = 'id, name, createdTime, size'

    def __init__(self, chunk_size: int = 5 * 1024 * 1024, service_factory: Optional[Callable] = None):
        self.chunk_size = chunk_size
        self._service_factory = service_factory or self._build_service

    @staticmethod
    def _build_service(credential):
        return build('drive', 'v3', credentials=credential, cache_discovery=False)

    def _translate(self, e: Exception, action: str, folder: Optional[str] = None) -> StorageError:
        if isinstance(e, StorageError):
            return e
        if isinstance(e, RefreshError):
            return AuthError(f"Drive {action} failed, token could not be refreshed: {e}")
        if isinstance(e, HttpError):
            status = getattr(e, 'status_code', None) or int(getattr(e.resp, 'status', 0) or 0)
            if status == 401:
                return AuthError(f"Drive {action} failed, authentication rejected: {e}")
            if status == 404 and action == 'upload' and folder:
                return DestinationNotFoundError(f"Drive folder not found: {folder}")
            if status == 404:
                return NotFoundError(f"Drive {action} failed, file not found: {e}")
            return StorageError(f"Drive {action} failed ({status}): {e}")
        return StorageError(f"Drive {action} failed: {e}")

    def _to_entry(self, item: dict) -> RemoteEntry:
        return RemoteEntry(
            id=item['id'],
            name=item.get('name', ''),
            created_at=_parse_rfc3339(item['createdTime']),
            size_bytes=int(item['size']) if item.get('size') is not None else None
        )

    def list_entries(self, credential, folder: Optional[str], prefix: str = '') -> List[RemoteEntry]:
        parent = folder or 'root'
        query = f"'{parent}' in parents and trashed = false and mimeType != '{self.FOLDER_MIME}'"

        entries: List[RemoteEntry] = []
        page_token = None
        try:
            service = self._service_factory(credential)
            while True:
                response = service.files().list(
                    q=query,
                    spaces='drive',
                    fields=f"nextPageToken, files({self.FIELDS}, mimeType)",
                    orderBy='createdTime desc',
                    pageSize=1000,
                    pageToken=page_token
                ).execute()

                for item in response.get('files', []):
                    if not item.get('createdTime'):
                        continue
                    if prefix and not item.get('name', '').startswith(prefix):
                        continue
                    entries.append(self._to_entry(item))

                page_token = response.get('nextPageToken')
                if not page_token:
                    break
        except Exception as e:
            raise self._translate(e, 'list', folder)

        # Each page is ordered; keep the whole listing ordered too
        entries.sort(key=lambda entry: entry.created_at, reverse=True)
        return entries

    def create(self, credential, folder: Optional[str], local_path: str, name: str,
               mime_type: str, on_progress: Optional[ProgressCallback] = None) -> RemoteEntry:
        metadata = {'name': name}
        if folder:
            metadata['parents'] = [folder]

        try:
            service = self._service_factory(credential)
            media = MediaFileUpload(local_path, mimetype=mime_type, chunksize=self.chunk_size, resumable=True)
            request = service.files().create(body=metadata, media_body=media, fields=self.FIELDS)

            sent = 0
            response = None
            while response is None:
                status, response = request.next_chunk()
                if status is not None and on_progress:
                    on_progress(status.resumable_progress - sent)
                    sent = status.resumable_progress

            if on_progress:
                remaining = os.path.getsize(local_path) - sent
                if remaining > 0:
                    on_progress(remaining)
        except Exception as e:
            raise self._translate(e, 'upload', folder)

        return self._to_entry(response)

    def delete(self, credential, entry_id: str):
        try:
            service = self._service_factory(credential)
            service.files().delete(fileId=entry_id).execute()
        except Exception as e:
            raise self._translate(e, 'delete')


class S3Store(RemoteStore):
    """
    AWS S3 store.

    Objects are stored under ``{folder}/{name}``; the bucket root is used
    when no folder is given. Files larger than ``multipart_threshold`` are
    sent in parts of ``chunk_size`` bytes.
    """

    AUTH_ERROR_CODES = {
        'ExpiredToken', 'ExpiredTokenException', 'InvalidAccessKeyId',
        'InvalidToken', 'SignatureDoesNotMatch', 'TokenRefreshRequired',
    }
    NOT_FOUND_CODES = {'404', 'NoSuchKey', 'NotFound'}

    def __init__(self, bucket_name: str, region: str = 'us-east-1', endpoint_url: Optional[str] = None,
                 multipart_threshold: int = 100 * 1024 * 1024, chunk_size: int = 10 * 1024 * 1024):
        self.bucket_name = bucket_name
        self.region = region
        self.endpoint_url = endpoint_url
        self.multipart_threshold = multipart_threshold
        self.chunk_size = chunk_size

    def _client(self, credential):
        try:
            return boto3.client(
                's3',
                region_name=self.region,
                endpoint_url=self.endpoint_url,
                **(credential or {})
            )
        except Exception as e:
            raise StorageError(f"Failed to initialize S3 client: {e}")

    @staticmethod
    def _key(folder: Optional[str], name: str) -> str:
        folder = (folder or '').strip('/')
        return f"{folder}/{name}" if folder else name

    def _translate(self, e: Exception, action: str) -> StorageError:
        if isinstance(e, StorageError):
            return e
        if isinstance(e, NoCredentialsError):
            return AuthError(f"S3 {action} failed, no credentials: {e}")
        if isinstance(e, ClientError):
            error_code = e.response.get('Error', {}).get('Code', 'Unknown')
            if error_code in self.AUTH_ERROR_CODES:
                return AuthError(f"S3 {action} failed ({error_code}): {e}")
            if error_code == 'NoSuchBucket':
                return DestinationNotFoundError(f"Bucket does not exist: {self.bucket_name}")
            if error_code in self.NOT_FOUND_CODES:
                return NotFoundError(f"S3 {action} failed ({error_code}): {e}")
            return StorageError(f"S3 {action} failed ({error_code}): {e}")
        if isinstance(e, BotoCoreError):
            return StorageError(f"S3 {action} failed: {e}")
        return StorageError(f"Failed to {action} S3 object: {e}")

    def list_entries(self, credential, folder: Optional[str], prefix: str = '') -> List[RemoteEntry]:
        key_prefix = self._key(folder, prefix) if (folder or prefix) else ''
        try:
            client = self._client(credential)
            entries = []
            paginator = client.get_paginator('list_objects_v2')

            for page in paginator.paginate(Bucket=self.bucket_name, Prefix=key_prefix):
                for obj in page.get('Contents', []):
                    if obj['Key'].endswith('/'):
                        continue
                    entries.append(RemoteEntry(
                        id=obj['Key'],
                        name=obj['Key'].rsplit('/', 1)[-1],
                        created_at=obj['LastModified'],
                        size_bytes=obj['Size']
                    ))
        except Exception as e:
            raise self._translate(e, 'list')

        entries.sort(key=lambda entry: entry.created_at, reverse=True)
        return entries

    def create(self, credential, folder: Optional[str], local_path: str, name: str,
               mime_type: str, on_progress: Optional[ProgressCallback] = None) -> RemoteEntry:
        if not os.path.exists(local_path):
            raise StorageError(f"Local file not found: {local_path}")

        key = self._key(folder, name)
        try:
            client = self._client(credential)
            file_size = os.path.getsize(local_path)

            if file_size > self.multipart_threshold:
                self._multipart_upload(client, local_path, key, mime_type, on_progress)
            else:
                self._simple_upload(client, local_path, key, mime_type)
                if on_progress:
                    on_progress(file_size)

            head = client.head_object(Bucket=self.bucket_name, Key=key)
        except Exception as e:
            raise self._translate(e, 'upload')

        return RemoteEntry(
            id=key,
            name=name,
            created_at=head['LastModified'],
            size_bytes=head.get('ContentLength', file_size)
        )

    def _simple_upload(self, client, local_path: str, key: str, mime_type: str):
        with open(local_path, 'rb') as f:
            client.put_object(
                Bucket=self.bucket_name,
                Key=key,
                Body=f,
                ContentType=mime_type
            )

    def _multipart_upload(self, client, local_path: str, key: str, mime_type: str,
                          on_progress: Optional[ProgressCallback] = None):
        response = client.create_multipart_upload(
            Bucket=self.bucket_name,
            Key=key,
            ContentType=mime_type
        )
        upload_id = response['UploadId']

        parts = []

        try:
            with open(local_path, 'rb') as f:
                part_number = 1

                while True:
                    data = f.read(self.chunk_size)
                    if not data:
                        break

                    response = client.upload_part(
                        Bucket=self.bucket_name,
                        Key=key,
                        PartNumber=part_number,
                        UploadId=upload_id,
                        Body=data
                    )

                    parts.append({
                        'PartNumber': part_number,
                        'ETag': response['ETag']
                    })
                    if on_progress:
                        on_progress(len(data))

                    part_number += 1

            client.complete_multipart_upload(
                Bucket=self.bucket_name,
                Key=key,
                UploadId=upload_id,
                MultipartUpload={'Parts': parts}
            )

        except Exception:
            try:
                client.abort_multipart_upload(
                    Bucket=self.bucket_name,
                    Key=key,
                    UploadId=upload_id
                )
            except (ClientError, BotoCoreError) as abort_error:
                logger.warning(f"Failed to abort multipart upload for {key}: {abort_error}")
            raise

    def delete(self, credential, entry_id: str):
        try:
            client = self._client(credential)
            # delete_object succeeds for missing keys, so check first
            client.head_object(Bucket=self.bucket_name, Key=entry_id)
            client.delete_object(Bucket=self.bucket_name, Key=entry_id)
        except Exception as e:
            raise self._translate(e, 'delete')
