"""
Credential providers for remote stores.

The uploader and the retention manager ask a provider for a credential
handle before every remote call and hand it straight to the store; nothing
downstream keeps the handle. Acquiring the initial OAuth token (the consent
flow) happens outside this package: GoogleOAuthCredentials only loads an
authorized-user token file and refreshes it.
"""

import json
import logging
import os
from typing import Any, Dict, Optional

from google.auth.exceptions import GoogleAuthError, RefreshError, TransportError
from google.auth.transport.requests import Request
from google.oauth2.credentials import Credentials

from .errors import AuthError


logger = logging.getLogger(__name__)

DRIVE_SCOPES = ['https://www.googleapis.com/auth/drive.file']


class CredentialProvider:
    """Base class for credential providers."""

    def ensure_valid_credential(self) -> Any:
        """
        Return a credential handle that is valid right now.

        Raises:
            AuthError: If no valid credential can be produced
        """
        raise NotImplementedError

    def refresh_credential(self) -> Any:
        """
        Force a credential refresh and return the new handle.

        Raises:
            AuthError: If the provider has no refresh capability or the refresh fails
        """
        raise NotImplementedError


class StaticCredentials(CredentialProvider):
    """
    Fixed access keys, as used by S3.

    Static keys cannot be refreshed, so refresh_credential always fails.
    """

    def __init__(self, access_key: Optional[str], secret_key: Optional[str],
                 session_token: Optional[str] = None):
        self.access_key = access_key
        self.secret_key = secret_key
        self.session_token = session_token

    def ensure_valid_credential(self) -> Dict[str, Optional[str]]:
        if not self.access_key or not self.secret_key:
            raise AuthError("Access key and secret key are not configured")

        credential = {
            'aws_access_key_id': self.access_key,
            'aws_secret_access_key': self.secret_key,
        }
        if self.session_token:
            credential['aws_session_token'] = self.session_token
        return credential

    def refresh_credential(self):
        raise AuthError("Static credentials cannot be refreshed")


class GoogleOAuthCredentials(CredentialProvider):
    """
    OAuth user credentials for Google Drive loaded from a token file.

    Args:
        token_file: Authorized-user JSON (refresh_token, client_id, client_secret, ...)
        client_id: Overrides the client id stored in the token file
        client_secret: Overrides the client secret stored in the token file
        scopes: OAuth scopes
    """

    def __init__(self, token_file: str, client_id: Optional[str] = None,
                 client_secret: Optional[str] = None, scopes=None):
        self.token_file = token_file
        self.client_id = client_id
        self.client_secret = client_secret
        self.scopes = list(scopes or DRIVE_SCOPES)
        self._credentials: Optional[Credentials] = None

    def _load(self) -> Credentials:
        if self._credentials is not None:
            return self._credentials

        if not self.token_file or not os.path.exists(self.token_file):
            raise AuthError(f"Token file not found: {self.token_file}. Authorize the application first.")

        try:
            with open(self.token_file, 'r') as f:
                info = json.load(f)
        except (OSError, ValueError) as e:
            raise AuthError(f"Failed to read token file {self.token_file}: {e}")

        if self.client_id:
            info['client_id'] = self.client_id
        if self.client_secret:
            info['client_secret'] = self.client_secret

        try:
            self._credentials = Credentials.from_authorized_user_info(info, self.scopes)
        except ValueError as e:
            raise AuthError(f"Invalid token file {self.token_file}: {e}")

        return self._credentials

    def ensure_valid_credential(self) -> Credentials:
        credentials = self._load()

        if credentials.valid:
            return credentials

        if credentials.refresh_token:
            logger.info("Access token expired, refreshing")
            return self.refresh_credential()

        raise AuthError("Credentials are not valid and no refresh token is available")

    def refresh_credential(self) -> Credentials:
        credentials = self._load()

        if not credentials.refresh_token:
            raise AuthError("No refresh token available")

        try:
            credentials.refresh(Request())
        except RefreshError as e:
            raise AuthError(f"Token refresh failed: {e}")
        except TransportError as e:
            raise AuthError(f"Token endpoint unreachable: {e}")
        except GoogleAuthError as e:
            raise AuthError(f"Token refresh failed: {e}")

        logger.info("Access token refreshed")
        return credentials
