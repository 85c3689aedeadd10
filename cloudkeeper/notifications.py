"""
Chat notifications for backup runs.

WebhookNotifier is a ProgressSink that posts to a Discord-compatible
webhook: run start, milestone progress, errors and the final result.
Delivery failures are logged and never reach the backup run.
"""

import logging
import threading
from datetime import datetime, timezone
from typing import Dict, List, Optional

import requests

from cloudkeeper.backup.models import RunResult, format_duration
from cloudkeeper.backup.progress import MILESTONES, ProgressSink


logger = logging.getLogger(__name__)

COLORS = {
    'running': 0xFFFF00,
    'success': 0x00FF00,
    'error': 0xFF0000,
}


class WebhookNotifier(ProgressSink):
    """
    Posts backup events to a chat webhook.

    Args:
        url: Webhook URL
        username: Display name used for the posts
        timeout: Request timeout in seconds
        session: Optional requests session (created lazily otherwise)
    """

    def __init__(self, url: str, username: str = 'Cloudkeeper', timeout: int = 10,
                 session: Optional[requests.Session] = None):
        self.url = url
        self.username = username
        self.timeout = timeout
        self._session = session
        self._session_lock = threading.Lock()
        self._milestones: Dict[str, int] = {}

    def _get_session(self) -> requests.Session:
        if self._session is None:
            with self._session_lock:
                if self._session is None:
                    self._session = requests.Session()
        return self._session

    def _post(self, status: str, title: str, description: str, fields: Optional[List[dict]] = None) -> bool:
        payload = {
            'username': self.username,
            'embeds': [{
                'title': title,
                'description': description,
                'color': COLORS.get(status, 0),
                'fields': fields or [],
                'timestamp': datetime.now(timezone.utc).isoformat(),
            }],
        }

        try:
            response = self._get_session().post(self.url, json=payload, timeout=self.timeout)
            response.raise_for_status()
            return True
        except requests.RequestException as e:
            logger.warning(f"Failed to deliver notification '{title}': {e}")
            return False

    def notify_started(self, label: str):
        """Announce a run that is about to start (scheduled or manual)."""
        self._post('running', 'Backup started', label)

    def start_operation(self, operation: str):
        self._milestones[operation] = -1

    def update_progress(self, percent: int, operation: str, detail: str = ''):
        # Only 50% and completion are posted; chat channels are rate limited
        milestone = max(m for m in MILESTONES if m <= percent)
        if milestone not in (50, 100) or milestone <= self._milestones.get(operation, -1):
            return
        self._milestones[operation] = milestone
        self._post('running', 'Backup in progress', f"{operation}: {percent}%", [
            {'name': 'Details', 'value': detail or 'Processing...', 'inline': False},
        ])

    def error(self, message: str):
        self._post('error', 'Backup error', message)

    def run_finished(self, result: RunResult):
        if result.success:
            self._post('success', 'Backup completed', 'All files were processed', [
                {'name': 'Files', 'value': f"{result.files_processed}/{result.total_files}", 'inline': True},
                {'name': 'Size', 'value': f"{result.total_size_mb}MB", 'inline': True},
                {'name': 'Duration', 'value': format_duration(result.duration), 'inline': True},
            ])
        else:
            self._post('error', 'Backup failed', str(result.error) if result.error else 'Unknown error', [
                {'name': 'Stage', 'value': result.stage.value, 'inline': True},
                {'name': 'Duration', 'value': format_duration(result.duration), 'inline': True},
            ])


def build_notifier(config) -> Optional[WebhookNotifier]:
    """Return a notifier when a webhook URL is configured, None otherwise."""
    url = config.get('NOTIFY_WEBHOOK_URL')
    if not url:
        return None
    return WebhookNotifier(url, username=config.get('NOTIFY_USERNAME') or 'Cloudkeeper')
