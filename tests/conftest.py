"""
Shared pytest fixtures for Cloudkeeper tests.

This module provides fixtures for:
- Flask app and test client
- Fake collaborators: process spawner, remote store, credential provider
- A recording progress sink
- Mock S3 via moto
- Temporary file fixtures
"""

import os
from datetime import datetime, timedelta, timezone
from typing import Dict, List, Optional
from unittest.mock import MagicMock, patch

import pytest
import boto3
from moto import mock_aws

from cloudkeeper import create_app
from cloudkeeper.backup.credentials import CredentialProvider
from cloudkeeper.backup.errors import AuthError, NotFoundError, StorageError
from cloudkeeper.backup.models import RemoteEntry
from cloudkeeper.backup.progress import ProgressSink
from cloudkeeper.backup.storage import RemoteStore


class FakeProcess:
    """Stands in for SpawnedProcess with canned output."""

    def __init__(self, chunks=None, exit_code=0, stderr=''):
        self.chunks = list(chunks or [])
        self.exit_code = exit_code
        self.stderr = stderr
        self.killed = False

    def iter_stdout(self):
        for chunk in self.chunks:
            yield chunk

    def wait(self):
        return self.exit_code

    def kill(self):
        self.killed = True

    @property
    def stderr_text(self):
        return self.stderr


class FakeSpawner:
    """
    Process-spawn collaborator returning FakeProcess objects.

    ``listing`` is the output of the database listing command; ``dumps``
    maps a unit name ('all-databases' or a database name) to its process.
    """

    def __init__(self, listing=None, dumps=None, listing_exit_code=0):
        self.listing = listing or []
        self.dumps: Dict[str, FakeProcess] = dumps or {}
        self.listing_exit_code = listing_exit_code
        self.calls = []

    def __call__(self, command, args, env=None):
        self.calls.append((command, list(args), env))

        if '-e' in args:
            output = ''.join(f"{name}\n" for name in self.listing).encode()
            return FakeProcess([output], self.listing_exit_code, 'access denied' if self.listing_exit_code else '')

        if '--all-databases' in args:
            return self.dumps.get('all-databases', FakeProcess([b'-- dump\n']))

        name = args[args.index('--databases') + 1]
        return self.dumps.get(name, FakeProcess([f'-- dump {name}\n'.encode()]))


class FakeCredentials(CredentialProvider):
    """
    Credential provider with scripted failures.

    ``ensure_errors`` is a list of exceptions raised by successive
    ensure_valid_credential calls. ``refresh_error`` replaces the AuthError
    raised when a refresh is not possible.
    """

    def __init__(self, valid=True, can_refresh=True):
        self.valid = valid
        self.can_refresh = can_refresh
        self.ensure_errors = []
        self.refresh_error = None
        self.ensure_calls = 0
        self.refresh_calls = 0

    def ensure_valid_credential(self):
        self.ensure_calls += 1
        if self.ensure_errors:
            raise self.ensure_errors.pop(0)
        if not self.valid:
            raise AuthError("No credentials")
        return 'token'

    def refresh_credential(self):
        self.refresh_calls += 1
        if self.refresh_error is not None:
            raise self.refresh_error
        if not self.can_refresh:
            raise AuthError("Refresh failed")
        return 'token'


class FakeStore(RemoteStore):
    """
    In-memory remote store.

    ``create_errors`` is a list of exceptions raised by successive create
    calls before uploads start to succeed. Folders in ``missing_folders``
    raise a 'File not found' error on upload.
    """

    def __init__(self, entries: Optional[List[RemoteEntry]] = None):
        self.entries: List[RemoteEntry] = list(entries or [])
        self.create_errors: List[Exception] = []
        self.delete_errors: Dict[str, Exception] = {}
        self.list_error: Optional[Exception] = None
        self.missing_folders = set()
        self.created = []
        self.deleted = []
        self.list_calls = 0

    def list_entries(self, credential, folder, prefix=''):
        self.list_calls += 1
        if self.list_error:
            raise self.list_error
        return sorted(self.entries, key=lambda entry: entry.created_at, reverse=True)

    def create(self, credential, folder, local_path, name, mime_type, on_progress=None):
        if self.create_errors:
            raise self.create_errors.pop(0)
        if folder in self.missing_folders:
            raise StorageError(f"File not found: {folder}")

        size = os.path.getsize(local_path)
        if on_progress:
            on_progress(size // 2)
            on_progress(size - size // 2)

        entry = RemoteEntry(
            id=f"id-{len(self.created) + 1}",
            name=name,
            created_at=datetime.now(timezone.utc),
            size_bytes=size
        )
        self.created.append((folder, entry))
        self.entries.append(entry)
        return entry

    def delete(self, credential, entry_id):
        if entry_id in self.delete_errors:
            raise self.delete_errors[entry_id]
        if not any(entry.id == entry_id for entry in self.entries):
            raise NotFoundError(f"File not found: {entry_id}")
        self.entries = [entry for entry in self.entries if entry.id != entry_id]
        self.deleted.append(entry_id)


class RecordingSink(ProgressSink):
    """Progress sink that records every event."""

    def __init__(self):
        self.events = []
        self.results = []

    def start_operation(self, operation):
        self.events.append(('start', operation))

    def update_progress(self, percent, operation, detail=''):
        self.events.append(('progress', percent, operation))

    def end_operation(self, operation, success=True):
        self.events.append(('end', operation, success))

    def log(self, message):
        self.events.append(('log', message))

    def error(self, message):
        self.events.append(('error', message))

    def run_finished(self, result):
        self.results.append(result)

    def percents(self, operation=None):
        return [
            event[1] for event in self.events
            if event[0] == 'progress' and (operation is None or event[2] == operation)
        ]

    def messages(self, kind):
        return [event[1] for event in self.events if event[0] == kind]


def make_entries(names, start=None, step=timedelta(days=1)):
    """
    Build RemoteEntry values, the first name being the oldest.

    Returned newest first, like a store listing.
    """
    start = start or datetime(2024, 1, 1, tzinfo=timezone.utc)
    entries = [
        RemoteEntry(id=str(index + 1), name=name, created_at=start + step * index, size_bytes=100)
        for index, name in enumerate(names)
    ]
    return list(reversed(entries))


@pytest.fixture
def fake_spawner():
    return FakeSpawner(listing=['shop', 'crm'])


@pytest.fixture
def fake_store():
    return FakeStore()


@pytest.fixture
def fake_credentials():
    return FakeCredentials()


@pytest.fixture
def sink():
    return RecordingSink()


@pytest.fixture(scope='function')
def app(tmp_path):
    """Create Flask app with test configuration."""
    app = create_app('testing', overrides={
        'TEMP_DIR': str(tmp_path / 'temp'),
        'LOG_DIR': str(tmp_path / 'logs'),
        'STORAGE_BACKEND': 's3',
        'S3_BUCKET': 'test-bucket',
        'S3_PREFIX': 'backups',
        'AWS_ACCESS_KEY_ID': 'testing',
        'AWS_SECRET_ACCESS_KEY': 'testing',
        'BACKUP_GROUPS': {},
        'DB_BACKUP_ENABLED': False,
    })

    yield app


@pytest.fixture(scope='function')
def client(app):
    """Flask test client for making HTTP requests."""
    return app.test_client()


@pytest.fixture
def mock_s3():
    """
    Mock AWS S3 service using moto.

    Creates a test bucket 'test-bucket' in us-east-1 region.
    """
    with mock_aws():
        s3 = boto3.resource('s3', region_name='us-east-1')
        s3.create_bucket(Bucket='test-bucket')
        yield s3


@pytest.fixture
def temp_files(tmp_path):
    """
    Create temporary test files and directories.

    Creates:
    - test_file1.txt
    - test_file2.log
    - nested/test_file3.txt
    """
    (tmp_path / 'test_file1.txt').write_text('Test content 1')
    (tmp_path / 'test_file2.log').write_text('Test log content')

    nested_dir = tmp_path / 'nested'
    nested_dir.mkdir()
    (nested_dir / 'test_file3.txt').write_text('Nested test content')

    return tmp_path


@pytest.fixture(scope='function')
def mock_scheduler():
    """Mock APScheduler for testing scheduler functionality."""
    with patch('cloudkeeper.scheduler.BackgroundScheduler') as mock_sched:
        scheduler_instance = MagicMock()
        mock_sched.return_value = scheduler_instance

        scheduler_instance.running = False
        scheduler_instance.get_jobs.return_value = []

        yield scheduler_instance


@pytest.fixture
def remote_entries():
    """Factory building RemoteEntry listings, see make_entries."""
    return make_entries


@pytest.fixture
def process_factory():
    """Factory building FakeProcess objects."""
    return FakeProcess
