import logging
import os
import shutil
from collections.abc import Iterator
from pathlib import Path

from .config import Job
from .constants import APP_NAME, STATE_DIR
from .matcher import glob_match, has_wildcard, normalize, should_sync

logger = logging.getLogger(APP_NAME)


def copy_file(src: Path, dst: Path) -> None:
    """Copies a single file byte-for-byte, creating parent directories.

    The destination is truncated and rewritten, so an interrupted copy can be
    repaired by running it again.

    Args:
        src (Path): The file to read.
        dst (Path): The file to (re)create.

    Raises:
        OSError: If the source cannot be read or the destination written.
    """
    dst.parent.mkdir(parents=True, exist_ok=True)
    with open(src, "rb") as fsrc, open(dst, "wb") as fdst:
        shutil.copyfileobj(fsrc, fdst)


def source_pattern(source_path: str) -> str:
    """Turns a job's source path into a recursive glob pattern."""
    normalized = normalize(source_path)
    pattern = normalized.rstrip("/")
    if not pattern:
        return "/**" if normalized.startswith("/") else "**"
    if has_wildcard(pattern):
        return pattern
    if pattern == ".":
        return "**"
    return f"{pattern}/**"


def static_root(pattern: str) -> str:
    """Returns the longest leading part of a pattern that contains no wildcard."""
    segments = pattern.split("/")
    fixed: list[str] = []
    for segment in segments:
        if has_wildcard(segment):
            break
        fixed.append(segment)
    if not fixed:
        return "."
    if fixed == [""]:
        return "/"
    return "/".join(fixed)


def _raise(error: OSError) -> None:
    raise error


def iter_source_files(pattern: str) -> Iterator[Path]:
    """Lazily yields the files matched by a source pattern.

    Walks the pattern's static root once. The sync-state directory is never
    descended into, so a source of '.' does not pick up the managed working
    copies.

    Args:
        pattern (str): A normalized glob pattern (see `source_pattern`).

    Yields:
        Path: Each matching file, relative to the working directory when the
        pattern is relative, absolute otherwise.

    Raises:
        FileNotFoundError: If the static root does not exist.
        OSError: If a directory cannot be listed.
    """
    root = Path(static_root(pattern))
    if not root.is_dir():
        raise FileNotFoundError(f"Source directory not found: {root}")

    absolute = Path(pattern).is_absolute()
    state_dir = STATE_DIR.resolve()

    for dirpath, dirnames, filenames in os.walk(root, onerror=_raise):
        dirnames[:] = sorted(
            d for d in dirnames if (Path(dirpath) / d).resolve() != state_dir
        )
        for filename in sorted(filenames):
            path = Path(dirpath) / filename
            if absolute:
                candidate = path.absolute().as_posix()
            else:
                candidate = Path(os.path.relpath(path)).as_posix()
            if glob_match(pattern, candidate):
                yield path


def destination_for(job: Job, relative: str) -> Path:
    """Computes where a source file lands inside the job's working copy.

    Args:
        job (Job): The job being synced.
        relative (str): The file path relative to the source root.

    Returns:
        Path: The destination file path.
    """
    if job.keep_structure:
        return job.repo_path / relative
    basename = relative.rsplit("/", 1)[-1]
    if job.remote_path:
        return job.repo_path / normalize(job.remote_path).strip("/") / basename
    return job.repo_path / basename


def sync_files(job: Job) -> list[str]:
    """Copies the job's selected source files into its working copy.

    Args:
        job (Job): The job to sync.

    Returns:
        list[str]: Destination paths (relative to the working copy) written in
        this pass. Empty when nothing matched.

    Raises:
        ValueError: If the job configuration is invalid.
        OSError: If the source tree cannot be walked.
    """
    job.validate()

    pattern = source_pattern(job.source_path)
    root = Path(static_root(pattern))
    synced: list[str] = []

    for path in iter_source_files(pattern):
        relative = path.relative_to(root).as_posix()
        if not should_sync(relative, job.includes, job.excludes):
            continue

        dst = destination_for(job, relative)
        try:
            copy_file(path, dst)
        except OSError as e:
            logger.error(f"COPY ERROR {job.name}: {relative}: {e}")
            continue

        target = dst.relative_to(job.repo_path).as_posix()
        synced.append(target)
        logger.info(f"Synced file: {relative} -> {target}")

    if not synced:
        logger.warning(f"No files matched for job {job.name} ({pattern})")
    return synced
