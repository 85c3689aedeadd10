"""
Builds backup collaborators from application configuration.

Every entry point (scheduled run, manual run, cleanup, listing) goes through
these functions, so the choice of store, credentials and policy is made in
one place. ``config`` is any mapping with the keys defined in
``cloudkeeper.config.Config`` (normally ``app.config``).

Adding a destination type means implementing a RemoteStore and extending
``build_store`` and ``build_credentials``.
"""

from typing import Any, Iterable, Mapping, Optional

from .compression import Archiver
from .credentials import CredentialProvider, GoogleOAuthCredentials, StaticCredentials
from .errors import ConfigError
from .executor import BackupExecutor
from .exporter import DatabaseExporter
from .models import DatabaseConnection, ExportSpec, RetentionPolicy
from .progress import LoggingProgress, ProgressBroadcaster, ProgressSink, TerminalProgress
from .retention import RetentionManager
from .storage import DriveStore, RemoteStore, S3Store
from .uploader import Uploader


DRIVE = 'drive'
S3 = 's3'


def _backend(config: Mapping[str, Any]) -> str:
    backend = str(config.get('STORAGE_BACKEND') or DRIVE).strip().lower()
    if backend not in (DRIVE, S3):
        raise ConfigError(f"Unsupported storage backend: {backend}. Valid options: ['drive', 's3']")
    return backend


def build_store(config: Mapping[str, Any]) -> RemoteStore:
    """
    Instantiate the remote store for the configured backend.

    Raises:
        ConfigError: When the backend is unsupported or incomplete
    """
    if _backend(config) == S3:
        if not config.get('S3_BUCKET'):
            raise ConfigError("S3_BUCKET is not configured")
        return S3Store(
            bucket_name=config['S3_BUCKET'],
            region=config.get('AWS_REGION') or 'us-east-1',
            endpoint_url=config.get('S3_ENDPOINT_URL') or None,
        )
    return DriveStore()


def build_credentials(config: Mapping[str, Any]) -> CredentialProvider:
    if _backend(config) == S3:
        return StaticCredentials(
            access_key=config.get('AWS_ACCESS_KEY_ID'),
            secret_key=config.get('AWS_SECRET_ACCESS_KEY'),
            session_token=config.get('AWS_SESSION_TOKEN'),
        )
    return GoogleOAuthCredentials(
        token_file=config.get('DRIVE_TOKEN_FILE'),
        client_id=config.get('GOOGLE_OAUTH_CLIENT_ID'),
        client_secret=config.get('GOOGLE_OAUTH_CLIENT_SECRET'),
    )


def destination_folder(config: Mapping[str, Any]) -> Optional[str]:
    """Folder id on Drive, key prefix on S3."""
    if _backend(config) == S3:
        return config.get('S3_PREFIX') or None
    return config.get('DRIVE_FOLDER_ID') or None


def build_retention_policy(config: Mapping[str, Any]) -> RetentionPolicy:
    return RetentionPolicy.from_config({
        'enabled': config.get('CLEANUP_ENABLED'),
        'strategy': config.get('CLEANUP_STRATEGY'),
        'keep_last': config.get('CLEANUP_KEEP_LAST', 5),
        'max_age_days': config.get('CLEANUP_MAX_AGE_DAYS'),
        'name_patterns': config.get('CLEANUP_FILE_PATTERNS'),
    })


def build_export_spec(config: Mapping[str, Any]) -> ExportSpec:
    return ExportSpec.from_config({
        'enabled': config.get('DB_BACKUP_ENABLED'),
        'strategy': config.get('DB_BACKUP_STRATEGY'),
        'units': config.get('DB_INDIVIDUAL'),
        'excluded': config.get('DB_EXCLUDED'),
    })


def build_connection(config: Mapping[str, Any]) -> DatabaseConnection:
    try:
        port = int(config.get('DB_PORT') or 3306)
    except (TypeError, ValueError):
        raise ConfigError(f"Invalid DB_PORT: {config.get('DB_PORT')}")

    return DatabaseConnection(
        host=config.get('DB_HOST') or 'localhost',
        port=port,
        user=config.get('DB_USER') or 'root',
        password=config.get('DB_PASSWORD') or '',
    )


def build_progress(sinks: Optional[Iterable[ProgressSink]] = None,
                   terminal: bool = False) -> ProgressBroadcaster:
    """
    Broadcaster that always mirrors events into the log, plus any extra sinks.

    With ``terminal`` set, a TerminalProgress renders bars on stdout as well.
    """
    broadcaster = ProgressBroadcaster([LoggingProgress()])
    if terminal:
        broadcaster.subscribe(TerminalProgress())
    for sink in sinks or []:
        broadcaster.subscribe(sink)
    return broadcaster


def build_retention_manager(config: Mapping[str, Any],
                            progress: Optional[ProgressSink] = None) -> RetentionManager:
    return RetentionManager(
        store=build_store(config),
        credentials=build_credentials(config),
        folder=destination_folder(config),
        policy=build_retention_policy(config),
        progress=progress,
    )


def build_executor(config: Mapping[str, Any],
                   progress: Optional[ProgressSink] = None) -> BackupExecutor:
    """
    Wire a BackupExecutor from configuration.

    Store and credentials are shared by the uploader and the retention
    manager so both act on the same folder.

    Raises:
        ConfigError: When a setting cannot be interpreted
    """
    progress = progress or build_progress()
    store = build_store(config)
    credentials = build_credentials(config)
    folder = destination_folder(config)
    temp_dir = config.get('TEMP_DIR')

    if not temp_dir:
        raise ConfigError("TEMP_DIR is not configured")

    exporter = DatabaseExporter(
        connection=build_connection(config),
        spec=build_export_spec(config),
        output_dir=temp_dir,
        progress=progress,
        mysqldump_bin=config.get('MYSQLDUMP_BIN') or 'mysqldump',
        mysql_bin=config.get('MYSQL_BIN') or 'mysql',
    )
    archiver = Archiver(config.get('BACKUP_GROUPS') or {}, temp_dir, progress)
    uploader = Uploader(store, credentials, folder, progress)
    retention = RetentionManager(store, credentials, folder, build_retention_policy(config), progress)

    return BackupExecutor(exporter, archiver, uploader, retention, progress)
