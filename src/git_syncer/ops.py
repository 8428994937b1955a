import datetime
import logging
from pathlib import Path

from .config import Job, User, sanitize_name
from .constants import APP_NAME, DEFAULT_BRANCH, REMOTE_NAME
from .git_wrapper import GitError, GitRepo

logger = logging.getLogger(APP_NAME)

__all__ = [
    "build_remote_url",
    "commit_changes",
    "git_env",
    "init_repo",
    "sanitize_name",
]


def build_remote_url(url: str, user: User) -> str:
    """Embeds the user's HTTPS credentials into a remote URL.

    Only `https://` URLs are rewritten; SSH remotes authenticate with the
    user's key instead.

    Args:
        url (str): The configured remote URL.
        user (User): The user owning the job.

    Returns:
        str: The URL git should use for 'origin'.
    """
    if url.startswith("https://") and user.has_https_credentials:
        rest = url.removeprefix("https://")
        return f"https://{user.git_username}:{user.git_password}@{rest}"
    return url


def git_env(user: User) -> dict[str, str]:
    """Builds the per-invocation git environment for a user.

    Args:
        user (User): The user whose credentials apply.

    Returns:
        dict[str, str]: Environment overrides. Terminal prompts are always
        disabled; `GIT_SSH_COMMAND` is set when the user has an SSH key.
    """
    env = {"GIT_TERMINAL_PROMPT": "0"}
    if user.ssh_key_path:
        key = Path(user.ssh_key_path).expanduser()
        env["GIT_SSH_COMMAND"] = (
            f'ssh -i "{key}" -o IdentitiesOnly=yes -o BatchMode=yes'
        )
    return env


def init_repo(user: User, job: Job) -> GitRepo:
    """Ensures the job's working copy exists, has a remote, and is on its branch.

    Safe to call on every run:
    - A missing repository is created and initialized ("new").
    - 'origin' is added only when it does not exist yet.
    - A new repository with a remote gets an empty first commit, after which
      its branch is renamed to the configured one. Without a remote, the
      unborn branch is switched to the configured one instead.
    - An existing repository checks out the configured branch, creating it
      when missing.

    Args:
        user (User): The user owning the job.
        job (Job): The job whose working copy is prepared.

    Returns:
        GitRepo: The prepared working copy.

    Raises:
        RuntimeError: If any filesystem or git step fails.
    """
    repo_dir = job.repo_path
    env = git_env(user)
    is_new = False

    try:
        if not (repo_dir / ".git").exists():
            repo = GitRepo.init(repo_dir, env=env)
            is_new = True
            logger.info(f"INIT {job.name}: Created repository at {repo_dir}")
        else:
            repo = GitRepo(repo_dir, env=env)
    except (OSError, GitError) as e:
        raise RuntimeError(f"failed to initialize repository {repo_dir}: {e}") from e

    if not job.branch:
        job.branch = DEFAULT_BRANCH

    try:
        repo.set_identity(user.username, user.email)
    except GitError as e:
        raise RuntimeError(f"failed to set commit identity: {e}") from e

    if job.remote_url and repo.remote_url(REMOTE_NAME) is None:
        try:
            repo.add_remote(REMOTE_NAME, build_remote_url(job.remote_url, user))
        except GitError as e:
            raise RuntimeError(f"failed to add remote: {e}") from e
        logger.info(f"INIT {job.name}: Added remote '{REMOTE_NAME}'")

    if is_new:
        try:
            if job.remote_url:
                repo.commit("Initial commit", allow_empty=True)
                repo.rename_branch(job.branch)
            elif repo.current_branch() != job.branch:
                # No commit yet: this only repoints the unborn HEAD.
                repo.checkout(job.branch, create=True)
        except GitError as e:
            raise RuntimeError(f"failed to prepare branch {job.branch}: {e}") from e
        return repo

    try:
        if repo.branch_exists(job.branch):
            repo.checkout(job.branch)
        elif repo.current_branch() != job.branch:
            repo.checkout(job.branch, create=True)
            logger.info(f"INIT {job.name}: Created branch '{job.branch}'")
    except GitError as e:
        raise RuntimeError(f"failed to checkout branch {job.branch}: {e}") from e

    return repo


def commit_changes(user: User, job: Job) -> bool:
    """Commits the working copy and publishes it with the job's merge strategy.

    Args:
        user (User): The user recorded as commit author.
        job (Job): The job whose working copy is committed.

    Returns:
        bool: True if a commit was created, False if the tree was clean.

    Raises:
        RuntimeError: If the working copy is missing or any git step fails.
    """
    repo_dir = job.repo_path
    if not repo_dir.is_dir():
        raise RuntimeError(f"repository directory does not exist: {repo_dir}")
    try:
        repo = GitRepo(repo_dir, env=git_env(user))
    except ValueError as e:
        raise RuntimeError(str(e)) from e

    try:
        if not repo.status_porcelain():
            logger.info(f"CLEAN {job.name}: No changes to commit")
            return False

        repo.add_all()
        repo.set_identity(user.username, user.email)

        timestamp = datetime.datetime.now().strftime("%Y-%m-%d %H:%M:%S")
        repo.commit(f"Sync update by {user.username}: {timestamp}")
        logger.info(f"COMMIT {job.name}: Changes committed")
    except GitError as e:
        raise RuntimeError(f"commit failed: {e}") from e

    if job.remote_url:
        _publish(repo, job)

    return True


def _publish(repo: GitRepo, job: Job) -> None:
    """Fetches the target branch and pushes with the job's merge strategy."""
    branch = job.branch or DEFAULT_BRANCH

    try:
        repo.fetch(REMOTE_NAME, branch)
    except GitError as e:
        logger.warning(f"FETCH WARNING {job.name}: {e}")

    if job.merge_strategy == "rebase":
        upstream = f"{REMOTE_NAME}/{branch}"
        if repo.branch_exists(f"refs/remotes/{upstream}"):
            try:
                repo.rebase(upstream)
            except GitError as e:
                try:
                    repo.rebase_abort()
                except GitError as abort_error:
                    logger.error(f"REBASE ABORT FAILED {job.name}: {abort_error}")
                raise RuntimeError(f"rebase onto {upstream} failed: {e}") from e
        else:
            logger.info(f"REBASE {job.name}: {upstream} not found, nothing to rebase")
        force = False
    else:
        force = job.merge_strategy == "force"

    try:
        repo.push(REMOTE_NAME, branch, force=force)
    except GitError as e:
        raise RuntimeError(f"push failed: {e}") from e

    logger.info(
        f"PUSHED {job.name}: {REMOTE_NAME}/{branch} ({job.merge_strategy} strategy)"
    )
