"""
API token check for the HTTP control surface.

When API_TOKEN is configured, every protected endpoint expects
``Authorization: Bearer <token>``. Without a token the API is open and is
meant to be bound to localhost only.
"""

import hmac
from functools import wraps

from flask import current_app, jsonify, request


def extract_bearer_token(header_value: str) -> str:
    """
    Extract the token from an Authorization header value.

    Args:
        header_value: Raw header, e.g. 'Bearer abc'

    Returns:
        The token, or an empty string when the header is not a bearer header
    """
    if not header_value:
        return ''

    scheme, _, token = header_value.partition(' ')
    if scheme.lower() != 'bearer':
        return ''
    return token.strip()


def verify_api_token(provided: str, expected: str) -> bool:
    """Constant time comparison of two tokens."""
    if not provided or not expected:
        return False
    return hmac.compare_digest(provided.encode(), expected.encode())


def require_api_token(view):
    """Reject the request with 401 unless the configured API token is presented."""

    @wraps(view)
    def wrapped(*args, **kwargs):
        expected = current_app.config.get('API_TOKEN')
        if expected:
            provided = extract_bearer_token(request.headers.get('Authorization', ''))
            if not verify_api_token(provided, expected):
                current_app.logger.warning(f"Rejected API request to {request.path}: invalid token")
                return jsonify({'error': 'Authentication required'}), 401
        return view(*args, **kwargs)

    return wrapped
