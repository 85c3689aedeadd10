"""
Unit tests for the HTTP API (cloudkeeper/routes/backup_routes.py).
"""

from datetime import datetime, timedelta, timezone
from unittest.mock import patch

import pytest

from cloudkeeper.backup.errors import StorageError
from cloudkeeper.backup.models import RunResult


class TestHealth:
    def test_health(self, client):
        response = client.get('/health')

        assert response.status_code == 200
        assert response.get_json() == {'status': 'healthy'}


class TestRunEndpoint:
    """Test POST /api/backup/run."""

    @patch('cloudkeeper.routes.backup_routes.trigger_backup_now', return_value='manual_database_1')
    def test_trigger(self, mock_trigger, client):
        response = client.post('/api/backup/run', json={'type': 'database'})

        assert response.status_code == 202
        data = response.get_json()
        assert data['job_id'] == 'manual_database_1'
        assert data['type'] == 'database'
        mock_trigger.assert_called_once_with('database')

    @patch('cloudkeeper.routes.backup_routes.trigger_backup_now', return_value='manual_full_1')
    def test_default_type(self, mock_trigger, client):
        response = client.post('/api/backup/run')

        assert response.status_code == 202
        assert response.get_json()['type'] == 'full'

    def test_invalid_type(self, client):
        response = client.post('/api/backup/run', json={'type': 'weekly'})

        assert response.status_code == 400
        assert 'Invalid backup type' in response.get_json()['error']

    @patch('cloudkeeper.routes.backup_routes.is_backup_running', return_value=True)
    def test_conflict_while_running(self, mock_running, client):
        response = client.post('/api/backup/run', json={'type': 'full'})

        assert response.status_code == 409

    def test_scheduler_not_running(self, client):
        response = client.post('/api/backup/run', json={'type': 'full'})

        assert response.status_code == 503

    @patch('cloudkeeper.routes.backup_routes.trigger_cleanup_now', return_value='cleanup_1')
    def test_cleanup(self, mock_trigger, client):
        response = client.post('/api/backup/cleanup')

        assert response.status_code == 202
        assert response.get_json()['job_id'] == 'cleanup_1'


class TestStatusEndpoint:
    def test_status_without_runs(self, client):
        response = client.get('/api/backup/status')

        data = response.get_json()
        assert response.status_code == 200
        assert data['backup_running'] is False
        assert data['scheduler_status'] == 'stopped'
        assert data['last_result'] is None
        assert data['storage_backend'] == 's3'

    def test_status_with_last_result(self, client):
        result = RunResult(success=True, files_processed=1, total_files=1, duration=timedelta(seconds=5))
        finished_at = datetime(2024, 1, 1, 3, 0, tzinfo=timezone.utc)

        with patch('cloudkeeper.routes.backup_routes.get_last_result', return_value=result), \
                patch('cloudkeeper.routes.backup_routes.get_last_finished_at', return_value=finished_at):
            data = client.get('/api/backup/status').get_json()

        assert data['last_result']['success'] is True
        assert data['last_result']['duration'] == '5s'
        assert data['last_finished_at'] == '2024-01-01T03:00:00+00:00'


class TestListEndpoint:
    """Test GET /api/backup/list."""

    @patch('cloudkeeper.routes.backup_routes.build_retention_manager')
    def test_list_is_limited(self, mock_build, client, remote_entries):
        mock_build.return_value.list_backups.return_value = remote_entries(
            ['db-1.sql', 'db-2.sql', 'db-3.sql']
        )

        data = client.get('/api/backup/list?limit=2').get_json()

        assert data['total'] == 3
        assert [backup['name'] for backup in data['backups']] == ['db-3.sql', 'db-2.sql']
        assert data['backups'][0]['size_bytes'] == 100

    def test_invalid_limit(self, client):
        response = client.get('/api/backup/list?limit=ten')

        assert response.status_code == 400

    @patch('cloudkeeper.routes.backup_routes.build_retention_manager')
    def test_storage_failure(self, mock_build, client):
        mock_build.return_value.list_backups.side_effect = StorageError('bucket unreachable')

        response = client.get('/api/backup/list')

        assert response.status_code == 502
        assert response.get_json()['error'] == 'bucket unreachable'

    def test_list_against_s3(self, client, mock_s3):
        mock_s3.Object('test-bucket', 'backups/db-shop.sql').put(Body=b'data')

        data = client.get('/api/backup/list').get_json()

        assert data['total'] == 1
        assert data['backups'][0]['id'] == 'backups/db-shop.sql'


class TestSchedule:
    def test_schedule(self, app, client):
        app.config['BACKUP_SCHEDULE'] = ['03:00']

        data = client.get('/api/backup/schedule').get_json()

        assert data['times'] == ['03:00']
        assert data['jobs'] == []


class TestApiToken:
    """Test bearer token protection."""

    @pytest.fixture
    def protected_client(self, app):
        app.config['API_TOKEN'] = 's3cret'
        return app.test_client()

    def test_missing_token(self, protected_client):
        response = protected_client.get('/api/backup/status')

        assert response.status_code == 401
        assert response.get_json() == {'error': 'Authentication required'}

    def test_wrong_token(self, protected_client):
        response = protected_client.get('/api/backup/status', headers={'Authorization': 'Bearer nope'})

        assert response.status_code == 401

    def test_valid_token(self, protected_client):
        response = protected_client.get('/api/backup/status', headers={'Authorization': 'Bearer s3cret'})

        assert response.status_code == 200

    def test_health_is_public(self, protected_client):
        assert protected_client.get('/health').status_code == 200
