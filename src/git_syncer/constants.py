from pathlib import Path

"""Global constants and filesystem layout definitions for Git Syncer.

This module defines the on-disk layout of the sync state (managed working
copies and logs), application identifiers, and the default values applied to
jobs and webhooks when the configuration leaves them out.
"""

# --- Identity ---
APP_NAME = "git-syncer"
"""str: The human-readable application name (also the logger name)."""

# --- Paths ---
STATE_DIR = Path(".git-syncer")
"""Path: The sync-state directory, relative to the process working directory."""

REPOS_DIR = STATE_DIR / "repos"
"""Path: Parent directory of the managed working copies, one per job."""

LOG_FILE = STATE_DIR / "git-syncer.log"
"""Path: The file path for the daemon process logs."""

# --- Git / Logic Constants ---
DEFAULT_BRANCH = "main"
"""str: The branch used when a job does not configure one."""

REMOTE_NAME = "origin"
"""str: The git remote every working copy publishes to."""

MERGE_STRATEGIES = ("normal", "rebase", "force")
"""tuple[str, ...]: Supported ways of reconciling local commits with the remote."""

UNSAFE_NAME_CHARS = '/\\:*?"<>| '
"""str: Characters replaced with '-' when a job name becomes a directory name."""

# --- Webhooks ---
WEBHOOK_TRIGGERS = ("success", "failure", "always")
"""tuple[str, ...]: Job outcomes a webhook can be bound to."""

WEBHOOK_DEFAULT_METHOD = "POST"
WEBHOOK_DEFAULT_TRIGGER = "always"
WEBHOOK_DEFAULT_RETRY_COUNT = 3
WEBHOOK_DEFAULT_RETRY_DELAY = 5

WEBHOOK_TIMEOUT = 30.0
"""float: Seconds before an outbound webhook request is abandoned."""
