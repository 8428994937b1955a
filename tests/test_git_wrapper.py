import subprocess
from pathlib import Path
from unittest.mock import MagicMock

import pytest

from git_syncer.git_wrapper import GitError, GitRepo


def test_git_repo_requires_git_dir(tmp_path: Path) -> None:
    """Verifies that GitRepo refuses a directory without a .git folder."""
    with pytest.raises(ValueError, match="Not a git repository"):
        GitRepo(tmp_path)


def test_run_raises_git_error_with_combined_output(
    mocker: MagicMock, tmp_path: Path
) -> None:
    """Verifies that git failures carry the arguments and the command output."""
    (tmp_path / ".git").mkdir()
    repo = GitRepo(tmp_path)
    mocker.patch(
        "subprocess.run",
        side_effect=subprocess.CalledProcessError(
            1, ["git", "push"], output="out text", stderr="rejected (fetch first)"
        ),
    )

    with pytest.raises(GitError) as excinfo:
        repo.push("origin", "main")

    assert excinfo.value.args_list == ["push", "origin", "main"]
    assert "out text" in excinfo.value.output
    assert "rejected (fetch first)" in str(excinfo.value)
    assert isinstance(excinfo.value, RuntimeError)


def test_run_merges_instance_env(mocker: MagicMock, tmp_path: Path) -> None:
    """Verifies per-repository environment overrides reach the subprocess."""
    (tmp_path / ".git").mkdir()
    repo = GitRepo(tmp_path, env={"GIT_SSH_COMMAND": "ssh -i key"})
    mock_run = mocker.patch("subprocess.run")
    mock_run.return_value = MagicMock(stdout="main\n")

    assert repo.current_branch() == "main"

    _, kwargs = mock_run.call_args
    assert kwargs["cwd"] == tmp_path
    assert kwargs["env"]["GIT_SSH_COMMAND"] == "ssh -i key"
    assert "PATH" in kwargs["env"]


@pytest.mark.parametrize(
    ("force", "expected"),
    [
        (False, ["push", "origin", "main"]),
        (True, ["push", "-f", "origin", "main"]),
    ],
)
def test_push_arguments(
    mocker: MagicMock, tmp_path: Path, force: bool, expected: list[str]
) -> None:
    (tmp_path / ".git").mkdir()
    repo = GitRepo(tmp_path)
    mock_run = mocker.patch.object(repo, "_run")

    repo.push("origin", "main", force=force)

    mock_run.assert_called_once_with(expected)


def test_checkout_create_flag(mocker: MagicMock, tmp_path: Path) -> None:
    (tmp_path / ".git").mkdir()
    repo = GitRepo(tmp_path)
    mock_run = mocker.patch.object(repo, "_run")

    repo.checkout("develop")
    mock_run.assert_called_with(["checkout", "develop"])

    repo.checkout("develop", create=True)
    mock_run.assert_called_with(["checkout", "-b", "develop"])


def test_queries_degrade_on_git_error(mocker: MagicMock, tmp_path: Path) -> None:
    """Verifies existence checks report False/None instead of raising."""
    (tmp_path / ".git").mkdir()
    repo = GitRepo(tmp_path)
    mocker.patch.object(repo, "_run", side_effect=GitError(["x"], "fatal"))

    assert repo.branch_exists("main") is False
    assert repo.remote_url() is None


def test_status_porcelain_splits_lines(mocker: MagicMock, tmp_path: Path) -> None:
    (tmp_path / ".git").mkdir()
    repo = GitRepo(tmp_path)
    mock_run = mocker.patch.object(repo, "_run")

    mock_run.return_value = "?? a.txt\n M b.txt"
    assert repo.status_porcelain() == ["?? a.txt", " M b.txt"]

    mock_run.return_value = ""
    assert repo.status_porcelain() == []


def test_init_creates_directory_tree(mocker: MagicMock, tmp_path: Path) -> None:
    """Verifies `GitRepo.init` builds missing parents before running git init."""
    target = tmp_path / "a" / "b"

    def fake_run(args: list[str], **kwargs: object) -> MagicMock:
        (kwargs["cwd"] / ".git").mkdir()  # type: ignore[operator]
        return MagicMock(stdout="")

    mock_run = mocker.patch("subprocess.run", side_effect=fake_run)

    repo = GitRepo.init(target)

    assert repo.path == target
    assert mock_run.call_args[0][0] == ["git", "init"]
