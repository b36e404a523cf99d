"""
Constants used throughout the DockVault application.

This module defines all constant values used across different modules
to ensure consistency and ease of maintenance.
"""

from pathlib import Path

# Version information
VERSION = "1.0.0"

# Default paths
DEFAULT_CONFIG_PATHS = {
    'root': Path('/etc/dockvault.conf'),
    'user': Path.home() / '.config' / 'dockvault' / 'dockvault.conf'
}
CONFIG_ENV_VAR = 'DOCKVAULT_CONFIG'
ENV_OVERRIDE_PREFIX = 'DOCKVAULT_'

DEFAULT_ARCHIVE_BASE = '/backup/dockvault'
DEFAULT_STATE_DIR = '/var/lib/dockvault'
DEFAULT_LOCK_PATH = '/run/dockvault.lock'
FALLBACK_LOCK_PATH = '/tmp/dockvault.lock'

# Container labels
DEFAULT_LABEL_PREFIX = 'dockvault'
LABEL_ENABLE = 'enable'
LABEL_NAME = 'name'
LABEL_SCHEDULE = 'schedule'
LABEL_VOLUMES = 'volumes'
LABEL_ACTION = 'action'
LABEL_HOOK_PRE = 'hook.pre'
LABEL_HOOK_POST = 'hook.post'
LABEL_HOOK_USER = 'hook.user'
LABEL_EXIT_CODES_SUFFIX = '.exit-codes'
LABEL_RETRY_PREFIX = 'retry.'
LABEL_RETRY_BACKOFF = 'retry.backoff'
LABEL_RETRY_BACKOFF_MAX = 'retry.backoff-max'
LABEL_RETENTION_KEEP_LAST = 'retention.keep-last'
LABEL_RETENTION_MAX_AGE = 'retention.max-age-days'
LABEL_TIMEOUT_PREFIX = 'timeout.'
LABEL_DRY_RUN = 'dry-run'

# Retryable phases with independent attempt budgets
RETRY_PHASES = ('hook', 'capture', 'resume', 'sink')
TIMEOUT_PHASES = ('hook', 'quiesce', 'capture', 'archive', 'resume')

# Quiesce actions
ACTION_PAUSE = 'pause'
ACTION_STOP = 'stop'
ACTION_IGNORE = 'ignore'
QUIESCE_ACTIONS = (ACTION_PAUSE, ACTION_STOP, ACTION_IGNORE)

# Container states as reported by the runtime
STATE_RUNNING = 'running'
STATE_PAUSED = 'paused'
STATE_RESTARTING = 'restarting'
STATE_EXITED = 'exited'
STATE_CREATED = 'created'

# Waiting for a restarting container to settle before quiescing
RESTART_SETTLE_RETRIES = 3
RESTART_SETTLE_DELAY = 5.0

# Archive layout
ARCHIVE_FORMAT_VERSION = 1
ARCHIVE_MANIFEST_NAME = 'manifest.json'
ARCHIVE_VOLUME_DIR = 'volumes'
ARCHIVE_TIMESTAMP_FORMAT = '%Y%m%dT%H%M%SZ'
ARCHIVE_COMPRESSIONS = ('none', 'gzip')
MANIFEST_SIDECAR_SUFFIX = '.manifest.json'

# Streaming
CAPTURE_CHUNK_SIZE = 1024 * 1024
SPOOL_MEMORY_LIMIT = 8 * 1024 * 1024
# Seconds a timed-out archive build gets to notice its cancel flag
ARCHIVE_CANCEL_GRACE = 30.0

# Worker pool sizing: (max RAM in GB, concurrent jobs)
RAM_WORKER_THRESHOLDS = (
    (2, 1),
    (4, 2),
    (8, 4),
    (16, 6),
    (float('inf'), 8),
)
LOW_DISK_WARNING_GB = 1.0

# Timeouts (in seconds)
CONTAINER_STOP_TIMEOUT = 30
DOCKER_API_TIMEOUT = 120
SHUTDOWN_TIMEOUT = 300
NOTIFICATION_TIMEOUT = 15

# Logging
LOG_FORMAT = '%(asctime)s - %(name)s - %(levelname)s - %(message)s'
LOG_DATE_FORMAT = '%Y-%m-%d %H:%M:%S'
LOG_EXTRA_FIELDS = ('target', 'job_id', 'phase', 'outcome', 'volume', 'container', 'operation')
