"""Glob-based file selection for sync jobs.

Patterns use forward slashes regardless of the host OS. `*` and `?` stay within
a single path segment, `**` spans any number of directories, and `[...]`
character classes behave as in shell globs. Matching is case-sensitive.
"""

import logging
import re
from functools import lru_cache

from .constants import APP_NAME

logger = logging.getLogger(APP_NAME)

WILDCARD_CHARS = frozenset("*?[")


def normalize(path: str) -> str:
    """Converts a path or pattern to its canonical forward-slash form."""
    path = path.replace("\\", "/")
    while path.startswith("./"):
        path = path[2:]
    return path


def has_wildcard(pattern: str) -> bool:
    return any(ch in WILDCARD_CHARS for ch in pattern)


def _translate_class(pattern: str, i: int) -> tuple[str, int]:
    """Translates a `[...]` class starting at index i (the opening bracket)."""
    j = i + 1
    if j < len(pattern) and pattern[j] in "!^":
        j += 1
    # A leading ']' is a literal member of the class.
    if j < len(pattern) and pattern[j] == "]":
        j += 1
    while j < len(pattern) and pattern[j] != "]":
        j += 1
    if j >= len(pattern):
        raise ValueError(f"Unterminated character class in pattern '{pattern}'")

    body = pattern[i + 1 : j]
    negate = body[:1] in ("!", "^")
    if negate:
        body = body[1:]
    body = body.replace("\\", "\\\\")
    if negate:
        # A negated class must never match the separator.
        return f"[^/{body}]", j + 1
    return f"[{body}]", j + 1


@lru_cache(maxsize=512)
def translate(pattern: str) -> re.Pattern[str]:
    """Compiles a glob pattern into an anchored regular expression.

    Args:
        pattern (str): The normalized glob pattern.

    Returns:
        re.Pattern[str]: A compiled regex to be used with `fullmatch`.

    Raises:
        ValueError: If the pattern is malformed.
    """
    out: list[str] = []
    i, n = 0, len(pattern)
    while i < n:
        ch = pattern[i]
        if ch == "*":
            if pattern.startswith("**", i):
                at_start = i == 0 or pattern[i - 1] == "/"
                end = i + 2
                if at_start and end < n and pattern[end] == "/":
                    # '**/' - zero or more leading directories.
                    out.append("(?:.*/)?")
                    i = end + 1
                    continue
                if at_start and end == n and i > 0:
                    # 'dir/**' - the directory itself or anything below it.
                    if out and out[-1] == "/":
                        out[-1] = "(?:/.*)?"
                    else:
                        out.append(".*")
                    i = end
                    continue
                out.append(".*")
                i = end
                continue
            out.append("[^/]*")
        elif ch == "?":
            out.append("[^/]")
        elif ch == "[":
            fragment, i = _translate_class(pattern, i)
            out.append(fragment)
            continue
        else:
            out.append(re.escape(ch))
        i += 1
    return re.compile("".join(out))


def glob_match(pattern: str, path: str) -> bool:
    """Checks whether a path matches a glob pattern.

    The whole path must match. `*.md` selects top-level files only; use
    `**/*.md` to select them at any depth.

    Args:
        pattern (str): The glob pattern.
        path (str): The path to test.

    Returns:
        bool: True on a match. Malformed patterns never match.
    """
    pattern = normalize(pattern)
    path = normalize(path)
    try:
        regex = translate(pattern)
    except (ValueError, re.error) as e:
        logger.debug(f"Ignoring malformed pattern '{pattern}': {e}")
        return False

    return regex.fullmatch(path) is not None


def should_sync(relative_path: str, includes: list[str], excludes: list[str]) -> bool:
    """Decides whether a file is selected for synchronization.

    Exclude rules always win. An empty include list selects everything that is
    not excluded; otherwise at least one include rule must match.

    Args:
        relative_path (str): The file path relative to the sync source.
        includes (list[str]): Include glob patterns.
        excludes (list[str]): Exclude glob patterns.

    Returns:
        bool: True if the file should be copied.
    """
    if any(glob_match(pattern, relative_path) for pattern in excludes):
        return False
    if not includes:
        return True
    return any(glob_match(pattern, relative_path) for pattern in includes)
