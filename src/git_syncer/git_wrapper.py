import logging
import os
import subprocess
from pathlib import Path

from .constants import APP_NAME, REMOTE_NAME

logger = logging.getLogger(APP_NAME)


class GitError(RuntimeError):
    """Raised when a git command exits with a non-zero status.

    Attributes:
        args_list (list[str]): The git arguments that failed.
        output (str): Combined stdout/stderr of the failed command.
    """

    def __init__(self, args_list: list[str], output: str):
        self.args_list = args_list
        self.output = output
        detail = output.strip() or "no output"
        super().__init__(f"Git error (git {' '.join(args_list)}): {detail}")


class GitRepo:
    """A wrapper around the Git command-line interface for one working copy.

    Every command runs with `cwd` set to the working copy. Extra environment
    variables (e.g. `GIT_SSH_COMMAND`) are supplied per instance so that
    concurrent jobs never share mutable git state.

    Attributes:
        path (Path): The file system path to the repository root.
        env (dict[str, str]): Environment overrides applied to every command.
    """

    def __init__(self, path: Path, env: dict[str, str] | None = None):
        """Initializes the GitRepo instance.

        Args:
            path (Path): The path to the repository root directory.
            env (dict[str, str] | None): Environment overrides for git.

        Raises:
            ValueError: If the specified path does not contain a .git directory.
        """
        self.path = Path(path)
        self.env = dict(env or {})
        if not (self.path / ".git").exists():
            raise ValueError(f"Not a git repository: {self.path}")

    @classmethod
    def init(cls, path: Path, env: dict[str, str] | None = None) -> "GitRepo":
        """Creates the directory tree and runs `git init` inside it.

        Args:
            path (Path): The working copy to create.
            env (dict[str, str] | None): Environment overrides for git.

        Returns:
            GitRepo: A wrapper for the new repository.
        """
        path = Path(path)
        path.mkdir(parents=True, exist_ok=True)
        _run_git(["init"], cwd=path, env=env)
        return cls(path, env=env)

    def _run(self, args: list[str]) -> str:
        """Executes a Git command within the repository context.

        Args:
            args (list[str]): A list of arguments to pass to the git command.

        Returns:
            str: The stripped stdout of the command.

        Raises:
            GitError: If the git command returns a non-zero exit code.
        """
        return _run_git(args, cwd=self.path, env=self.env)

    def current_branch(self) -> str:
        """Retrieves the name of the checked-out (possibly unborn) branch."""
        return self._run(["branch", "--show-current"])

    def remote_url(self, name: str = REMOTE_NAME) -> str | None:
        """Returns the URL of a remote, or None if it is not configured."""
        try:
            return self._run(["remote", "get-url", name])
        except GitError:
            return None

    def add_remote(self, name: str, url: str) -> None:
        self._run(["remote", "add", name, url])

    def rename_branch(self, name: str) -> None:
        """Force-renames the current branch (`git branch -M`)."""
        self._run(["branch", "-M", name])

    def branch_exists(self, ref: str) -> bool:
        """Checks whether a reference resolves (`git rev-parse --verify`).

        Args:
            ref (str): A branch name or fully qualified ref.

        Returns:
            bool: True if the reference resolves to a commit.
        """
        try:
            self._run(["rev-parse", "--verify", "--quiet", ref])
            return True
        except GitError as e:
            logger.debug(f"rev-parse --verify failed for '{ref}': {e}")
            return False

    def checkout(self, branch: str, create: bool = False) -> None:
        """Checks out a branch, optionally creating it first (`-b`)."""
        cmd = ["checkout"]
        if create:
            cmd.append("-b")
        cmd.append(branch)
        self._run(cmd)

    def status_porcelain(self) -> list[str]:
        """Returns the lines of `git status --porcelain`."""
        output = self._run(["status", "--porcelain"])
        return output.splitlines() if output else []

    def add_all(self) -> None:
        """
        Stages all changes (modified, deleted, and untracked files)
        in the working directory.
        """
        self._run(["add", "."])

    def set_config(self, key: str, value: str) -> None:
        """Sets a repository-local git configuration value."""
        self._run(["config", key, value])

    def set_identity(self, name: str, email: str) -> None:
        """Sets the commit identity for this repository only."""
        self.set_config("user.name", name)
        self.set_config("user.email", email)

    def commit(self, message: str, allow_empty: bool = False) -> None:
        """Creates a new commit with the provided message.

        Args:
            message (str): The commit message.
            allow_empty (bool, optional): Whether to commit with nothing staged.
                                          Defaults to False.
        """
        cmd = ["commit", "-m", message]
        if allow_empty:
            cmd.append("--allow-empty")
        self._run(cmd)

    def fetch(self, remote: str, branch: str) -> None:
        self._run(["fetch", remote, branch])

    def rebase(self, upstream: str) -> None:
        self._run(["rebase", upstream])

    def rebase_abort(self) -> None:
        self._run(["rebase", "--abort"])

    def push(self, remote: str, branch: str, force: bool = False) -> None:
        """Pushes a branch to a remote.

        Args:
            remote (str): The remote name.
            branch (str): The branch to push.
            force (bool, optional): Overwrite the remote branch tip (`-f`).
                                    Defaults to False.
        """
        cmd = ["push"]
        if force:
            cmd.append("-f")
        cmd.extend([remote, branch])
        self._run(cmd)


def _run_git(args: list[str], cwd: Path, env: dict[str, str] | None = None) -> str:
    """Runs git in `cwd`, raising GitError with the combined output on failure."""
    full_env = None
    if env:
        full_env = os.environ.copy()
        full_env.update(env)
    try:
        res = subprocess.run(
            ["git", *args],
            cwd=cwd,
            capture_output=True,
            text=True,
            check=True,
            env=full_env,
        )
        return res.stdout.strip()
    except subprocess.CalledProcessError as e:
        output = "\n".join(part for part in (e.stdout, e.stderr) if part)
        raise GitError(args, output) from e
