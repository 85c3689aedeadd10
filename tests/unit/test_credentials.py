"""
Unit tests for credential providers (cloudkeeper/backup/credentials.py).
"""

import json
from unittest.mock import patch

import pytest
from google.auth.exceptions import RefreshError, TransportError

from cloudkeeper.backup.credentials import GoogleOAuthCredentials, StaticCredentials
from cloudkeeper.backup.errors import AuthError


@pytest.fixture
def token_file(tmp_path):
    path = tmp_path / 'token.json'
    path.write_text(json.dumps({
        'refresh_token': 'refresh-123',
        'client_id': 'client-id',
        'client_secret': 'client-secret',
        'token_uri': 'https://oauth2.googleapis.com/token',
    }))
    return str(path)


class TestStaticCredentials:
    def test_returns_keys(self):
        provider = StaticCredentials('AKIA', 'secret')

        assert provider.ensure_valid_credential() == {
            'aws_access_key_id': 'AKIA',
            'aws_secret_access_key': 'secret',
        }

    def test_includes_session_token(self):
        provider = StaticCredentials('AKIA', 'secret', session_token='session')

        assert provider.ensure_valid_credential()['aws_session_token'] == 'session'

    def test_missing_keys(self):
        with pytest.raises(AuthError, match="not configured"):
            StaticCredentials(None, 'secret').ensure_valid_credential()

    def test_cannot_refresh(self):
        with pytest.raises(AuthError):
            StaticCredentials('AKIA', 'secret').refresh_credential()


class TestGoogleOAuthCredentials:
    """Test token file loading and refresh."""

    def test_missing_token_file(self, tmp_path):
        provider = GoogleOAuthCredentials(str(tmp_path / 'missing.json'))

        with pytest.raises(AuthError, match="Token file not found"):
            provider.ensure_valid_credential()

    def test_corrupt_token_file(self, tmp_path):
        path = tmp_path / 'token.json'
        path.write_text('{not json')

        with pytest.raises(AuthError, match="Failed to read token file"):
            GoogleOAuthCredentials(str(path)).ensure_valid_credential()

    @patch('google.oauth2.credentials.Credentials.refresh')
    def test_expired_token_is_refreshed(self, mock_refresh, token_file):
        provider = GoogleOAuthCredentials(token_file)

        credentials = provider.ensure_valid_credential()

        mock_refresh.assert_called_once()
        assert credentials.refresh_token == 'refresh-123'

    @patch('google.oauth2.credentials.Credentials.refresh')
    def test_client_overrides_are_applied(self, mock_refresh, token_file):
        provider = GoogleOAuthCredentials(token_file, client_id='other-id', client_secret='other-secret')

        credentials = provider.refresh_credential()

        assert credentials.client_id == 'other-id'
        assert credentials.client_secret == 'other-secret'

    @patch('google.oauth2.credentials.Credentials.refresh', side_effect=RefreshError('invalid_grant'))
    def test_refresh_failure_is_auth_error(self, mock_refresh, token_file):
        provider = GoogleOAuthCredentials(token_file)

        with pytest.raises(AuthError, match="Token refresh failed"):
            provider.refresh_credential()

    @patch('google.oauth2.credentials.Credentials.refresh', side_effect=TransportError('connection refused'))
    def test_unreachable_token_endpoint_is_auth_error(self, mock_refresh, token_file):
        provider = GoogleOAuthCredentials(token_file)

        with pytest.raises(AuthError, match="Token endpoint unreachable"):
            provider.ensure_valid_credential()

    @patch('google.oauth2.credentials.Credentials.refresh')
    def test_credentials_are_loaded_once(self, mock_refresh, token_file):
        provider = GoogleOAuthCredentials(token_file)

        first = provider.refresh_credential()
        second = provider.refresh_credential()

        assert first is second
        assert mock_refresh.call_count == 2
