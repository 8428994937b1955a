import logging
import sys
from collections.abc import Iterator
from contextlib import contextmanager
from logging.handlers import RotatingFileHandler
from pathlib import Path

from apscheduler.schedulers.base import BaseScheduler
from apscheduler.schedulers.blocking import BlockingScheduler
from apscheduler.triggers.cron import CronTrigger

from . import ops, sync
from .config import Config, Job, User
from .constants import APP_NAME, LOG_FILE
from .webhook import WebhookContext, WebhookManager

logger = logging.getLogger(APP_NAME)
logger.setLevel(logging.INFO)


def setup_logging(interactive: bool, max_log_size: int = 5 * 1024 * 1024) -> None:
    """Configures the logging subsystem.

    Args:
        interactive (bool): If True, logs to stdout only. If False, logs to
                            stderr and to a rotating log file.
        max_log_size (int): Bytes before the log file is rotated.
    """
    formatter = logging.Formatter(
        "[%(asctime)s] %(levelname)s: %(message)s", "%Y-%m-%d %H:%M:%S"
    )

    for handler in list(logger.handlers):
        logger.removeHandler(handler)
        handler.close()

    stream_handler = logging.StreamHandler(
        sys.stderr if not interactive else sys.stdout
    )
    stream_handler.setFormatter(formatter)
    logger.addHandler(stream_handler)

    if not interactive:
        LOG_FILE.parent.mkdir(parents=True, exist_ok=True)
        file_handler = RotatingFileHandler(
            LOG_FILE,
            maxBytes=max_log_size,
            backupCount=5,
        )
        file_handler.setFormatter(formatter)
        logger.addHandler(file_handler)


def prepare_user(user: User) -> None:
    """Validates a user's SSH key and restricts its permissions to 0600.

    Args:
        user (User): The user to prepare.

    Raises:
        OSError: If the key is missing or its permissions cannot be changed.
    """
    if not user.ssh_key_path:
        return
    key = Path(user.ssh_key_path).expanduser()
    if not key.is_file():
        raise FileNotFoundError(f"SSH key not found: {key}")
    key.chmod(0o600)


@contextmanager
def job_run(
    user: User, job: Job, manager: WebhookManager
) -> Iterator[WebhookContext]:
    """Wraps one job run, dispatching its webhooks when the run ends.

    Any exception raised inside the block is logged and recorded on the
    context as a failure rather than propagated. The job's webhooks are
    executed in every case.

    Args:
        user (User): The user owning the job.
        job (Job): The job being run.
        manager (WebhookManager): Registry the job's webhooks are resolved from.

    Yields:
        WebhookContext: The context of this run.
    """
    context = WebhookContext.start(user, job)
    try:
        yield context
    except Exception as e:
        logger.error(f"FAILED {job.name}: {e}")
        context.finish(e)
    finally:
        if not context.finalized:
            context.finish()
        if job.webhooks:
            manager.execute_webhooks(manager.get_by_names(job.webhooks), context)


def run_job(user: User, job: Job, manager: WebhookManager) -> WebhookContext:
    """Runs the init -> sync -> commit pipeline for one job.

    Args:
        user (User): The user owning the job.
        job (Job): The job to run.
        manager (WebhookManager): The webhook registry.

    Returns:
        WebhookContext: The finalized context of the run.
    """
    logger.info(f"Starting sync job: {job.name} for user: {user.username}")
    with job_run(user, job, manager) as context:
        ops.init_repo(user, job)
        context.changed_files = sync.sync_files(job)
        ops.commit_changes(user, job)
        logger.info(f"Completed sync job: {job.name} for user: {user.username}")
    return context


def _selected(config: Config, job_names: list[str] | None) -> list[tuple[User, Job]]:
    pairs = config.jobs
    if not job_names:
        return pairs
    unknown = set(job_names) - {job.name for _, job in pairs}
    for name in sorted(unknown):
        logger.warning(f"Unknown job '{name}'. Ignoring.")
    return [(user, job) for user, job in pairs if job.name in job_names]


def build_scheduler(
    config: Config,
    manager: WebhookManager,
    scheduler_cls: type[BaseScheduler] = BlockingScheduler,
) -> BaseScheduler:
    """Registers every configured job on a cron scheduler.

    Each job runs at most once at a time; missed runs are coalesced. Jobs of
    users whose SSH key cannot be prepared, and jobs with an invalid cron
    expression, are skipped with an error.

    Args:
        config (Config): The loaded configuration.
        manager (WebhookManager): The webhook registry.
        scheduler_cls (type[BaseScheduler]): APScheduler scheduler class.

    Returns:
        BaseScheduler: The configured (not yet started) scheduler.
    """
    scheduler = scheduler_cls(job_defaults={"coalesce": True, "max_instances": 1})

    for user in config.users:
        try:
            prepare_user(user)
        except OSError as e:
            logger.error(f"Failed to setup git config for user {user.username}: {e}")
            continue

        for job in user.jobs:
            try:
                trigger = CronTrigger.from_crontab(job.schedule)
            except ValueError as e:
                logger.error(
                    f"Failed to schedule job {job.name} for user {user.username}: {e}"
                )
                continue

            scheduler.add_job(
                run_job,
                trigger,
                args=[user, job, manager],
                id=job.name,
                name=f"{user.username}/{job.name}",
            )
            logger.info(
                f"Scheduled job: {job.name} for user: {user.username} "
                f"with schedule: {job.schedule}"
            )

    return scheduler


def run_once(
    config: Config, manager: WebhookManager, job_names: list[str] | None = None
) -> list[WebhookContext]:
    """Runs the selected jobs immediately, one after another.

    Args:
        config (Config): The loaded configuration.
        manager (WebhookManager): The webhook registry.
        job_names (list[str] | None): Restrict the run to these jobs.

    Returns:
        list[WebhookContext]: The context of every job that ran.
    """
    results = []
    prepared: dict[str, bool] = {}
    for user, job in _selected(config, job_names):
        if user.username not in prepared:
            try:
                prepare_user(user)
                prepared[user.username] = True
            except OSError as e:
                logger.error(
                    f"Failed to setup git config for user {user.username}: {e}"
                )
                prepared[user.username] = False
        if prepared[user.username]:
            results.append(run_job(user, job, manager))
    return results


def main(
    config_path: Path,
    once: bool = False,
    job_names: list[str] | None = None,
    interactive: bool = False,
) -> int:
    """The daemon entry point.

    Args:
        config_path (Path): The configuration file to load.
        once (bool): Run the jobs a single time instead of scheduling them.
        job_names (list[str] | None): Restrict a single run to these jobs.
        interactive (bool): Log to stdout only.

    Returns:
        int: The number of failed job runs (always 0 in scheduler mode).

    Raises:
        ConfigError: If the configuration cannot be loaded.
    """
    config = Config.load(config_path)
    setup_logging(interactive, config.limits.max_log_size)
    manager = WebhookManager.from_configs(config.webhooks)

    if once:
        results = run_once(config, manager, job_names)
        return sum(1 for ctx in results if ctx.status == "failure")

    logger.info("Starting Git sync service...")
    scheduler = build_scheduler(config, manager)
    try:
        scheduler.start()
    except (KeyboardInterrupt, SystemExit):
        logger.info("Git sync service stopped.")
    return 0
