"""Git Syncer: scheduled file-to-repository synchronization.

This package copies files selected by glob patterns from local directories
into managed git working copies, commits and pushes them on a cron schedule,
and notifies webhooks about the outcome of every run.
"""

from . import (
    cli,
    config,
    constants,
    daemon,
    git_wrapper,
    matcher,
    ops,
    sync,
    webhook,
)

__all__ = [
    "cli",
    "config",
    "constants",
    "daemon",
    "git_wrapper",
    "matcher",
    "ops",
    "sync",
    "webhook",
]
