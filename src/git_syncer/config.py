import logging
import re
import tomllib
from dataclasses import dataclass, field, fields, replace
from pathlib import Path
from typing import Any

import yaml

from .constants import (
    APP_NAME,
    DEFAULT_BRANCH,
    MERGE_STRATEGIES,
    REPOS_DIR,
    UNSAFE_NAME_CHARS,
    WEBHOOK_DEFAULT_METHOD,
    WEBHOOK_DEFAULT_RETRY_COUNT,
    WEBHOOK_DEFAULT_RETRY_DELAY,
    WEBHOOK_DEFAULT_TRIGGER,
    WEBHOOK_TRIGGERS,
)

logger = logging.getLogger(APP_NAME)


class ConfigError(ValueError):
    """Raised when the configuration document cannot produce a usable Config."""


def parse_size(value: int | str) -> int:
    """Converts human-readable size strings (e.g., '100MB') to bytes."""
    if isinstance(value, int):
        return value
    match = re.match(r"^(\d+(?:\.\d+)?)\s*([kmg]b?)$", str(value).strip().lower())
    if not match:
        raise ValueError(f"Invalid size format '{value}'")
    num, unit = float(match.group(1)), match.group(2)
    multiplier = {
        "k": 1024,
        "kb": 1024,
        "m": 1024**2,
        "mb": 1024**2,
        "g": 1024**3,
        "gb": 1024**3,
    }
    return int(num * multiplier[unit])


def parse_time(value: int | str) -> int:
    """Converts human-readable time strings (e.g., '5s', '2m') to seconds."""
    if isinstance(value, int):
        return value
    match = re.match(
        r"^(\d+(?:\.\d+)?)\s*(s|sec|m|min|h|hr)s?$", str(value).strip().lower()
    )
    if not match:
        raise ValueError(f"Invalid time format '{value}'")
    num, unit = float(match.group(1)), match.group(2)
    multiplier = {"s": 1, "sec": 1, "m": 60, "min": 60, "h": 3600, "hr": 3600}
    return int(num * multiplier[unit])


def sanitize_name(name: str) -> str:
    """Replaces path-unsafe characters in a job name with '-'."""
    return "".join("-" if ch in UNSAFE_NAME_CHARS else ch for ch in name)


@dataclass
class Job:
    """A single source -> repository synchronization task.

    Attributes:
        name (str): Unique job name; its sanitized form names the working copy.
        schedule (str): Five-field cron expression.
        source_path (str): Directory (or glob) the files are copied from.
        remote_url (str | None): Remote the working copy publishes to.
        branch (str): Branch to commit and push.
        includes (list[str]): Glob patterns a file must match (empty = all).
        excludes (list[str]): Glob patterns that always reject a file.
        webhooks (list[str]): Names of webhooks dispatched after each run.
        merge_strategy (str): One of 'normal', 'rebase', 'force'.
        remote_path (str | None): Sub-directory of the repository files land in.
        keep_structure (bool): Mirror the source tree instead of flattening it.
    """

    name: str
    schedule: str
    source_path: str
    remote_url: str | None = None
    branch: str = DEFAULT_BRANCH
    includes: list[str] = field(default_factory=list)
    excludes: list[str] = field(default_factory=list)
    webhooks: list[str] = field(default_factory=list)
    merge_strategy: str = "normal"
    remote_path: str | None = None
    keep_structure: bool = False

    @property
    def repo_path(self) -> Path:
        """Path: The managed working copy for this job."""
        return REPOS_DIR / sanitize_name(self.name)

    def validate(self) -> None:
        """Checks the invariants that must hold before files are synced.

        Raises:
            ValueError: If remote_path and keep_structure are both set.
        """
        if self.remote_path and self.keep_structure:
            raise ValueError(
                f"Job '{self.name}': remote_path and keep_structure "
                "are mutually exclusive"
            )


@dataclass
class User:
    """Commit identity, credentials, and the jobs that run under them.

    Attributes:
        username (str): Name recorded as the commit author.
        email (str): Email recorded as the commit author.
        ssh_key_path (str | None): Private key used for SSH remotes.
        git_username (str | None): HTTPS username embedded into remote URLs.
        git_password (str | None): HTTPS password or token.
        jobs (list[Job]): The user's jobs, in configuration order.
    """

    username: str
    email: str
    ssh_key_path: str | None = None
    git_username: str | None = None
    git_password: str | None = None
    jobs: list[Job] = field(default_factory=list)

    @property
    def has_https_credentials(self) -> bool:
        return bool(self.git_username and self.git_password)


@dataclass
class WebhookConfig:
    """An HTTP callback fired after a job run.

    Attributes:
        name (str): Unique registry key.
        url (str): Endpoint URL.
        method (str): HTTP method.
        headers (dict[str, str]): Extra request headers.
        body (str): Jinja2 template rendered against the run context.
        trigger (str): 'success', 'failure' or 'always'.
        retry_count (int): Number of delivery attempts.
        retry_delay (int): Seconds to wait between attempts.
        references (list[str]): Webhooks executed before this one.
    """

    name: str
    url: str
    method: str = WEBHOOK_DEFAULT_METHOD
    headers: dict[str, str] = field(default_factory=dict)
    body: str = ""
    trigger: str = WEBHOOK_DEFAULT_TRIGGER
    retry_count: int = WEBHOOK_DEFAULT_RETRY_COUNT
    retry_delay: int = WEBHOOK_DEFAULT_RETRY_DELAY
    references: list[str] = field(default_factory=list)


@dataclass
class LimitsConfig:
    """Resource limitation settings.

    Attributes:
        max_log_size (int): Max bytes for the log file before rotation.
    """

    max_log_size: int = 5 * 1024 * 1024


@dataclass
class Config:
    """Global configuration aggregator.

    Attributes:
        users (list[User]): Users and their jobs.
        webhooks (list[WebhookConfig]): Globally registered webhooks.
        limits (LimitsConfig): Resource limits.
    """

    users: list[User] = field(default_factory=list)
    webhooks: list[WebhookConfig] = field(default_factory=list)
    limits: LimitsConfig = field(default_factory=LimitsConfig)

    @property
    def jobs(self) -> list[tuple[User, Job]]:
        """Every configured job paired with its owning user."""
        return [(user, job) for user in self.users for job in user.jobs]

    @classmethod
    def load(cls, path: Path) -> "Config":
        """Reads a TOML or YAML configuration document.

        Args:
            path (Path): The configuration file. `.yaml`/`.yml` files are parsed
                with PyYAML, anything else as TOML.

        Returns:
            Config: The parsed configuration.

        Raises:
            ConfigError: If the file is unreadable, malformed, or incomplete.
        """
        path = Path(path)
        try:
            if path.suffix.lower() in (".yaml", ".yml"):
                with open(path, "r", encoding="utf-8") as f:
                    data = yaml.safe_load(f) or {}
            else:
                with open(path, "rb") as f:
                    data = tomllib.load(f)
        except OSError as e:
            raise ConfigError(f"Cannot read config {path}: {e}") from e
        except (tomllib.TOMLDecodeError, yaml.YAMLError) as e:
            raise ConfigError(f"Config syntax error in {path}: {e}") from e

        if not isinstance(data, dict):
            raise ConfigError(f"Config {path} must be a mapping at the top level")
        return cls.from_dict(data)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Config":
        """Builds a Config from an already-parsed document."""
        _warn_unknown("config", data, {"users", "webhooks", "limits"})
        instance = cls()

        if "limits" in data:
            instance.limits = _update_limits(instance.limits, data["limits"] or {})

        instance.webhooks = [
            _build_webhook(i, raw) for i, raw in enumerate(data.get("webhooks") or [])
        ]
        instance.users = [
            _build_user(i, raw) for i, raw in enumerate(data.get("users") or [])
        ]

        _ensure_unique("webhook", [w.name for w in instance.webhooks])
        _ensure_unique("job", [job.name for _, job in instance.jobs])
        _ensure_unique(
            "job directory", [job.repo_path.name for _, job in instance.jobs]
        )
        return instance


def _warn_unknown(section: str, data: dict, valid: set[str]) -> None:
    invalid_keys = set(data) - valid
    if invalid_keys:
        logger.warning(
            f"Unknown config keys in [{section}]: "
            f"{', '.join(sorted(invalid_keys))}. Ignoring."
        )


def _ensure_unique(kind: str, names: list[str]) -> None:
    seen: set[str] = set()
    for name in names:
        if name in seen:
            raise ConfigError(f"Duplicate {kind} name '{name}'")
        seen.add(name)


def _pick(section: str, cls: type, raw: Any, required: tuple[str, ...]) -> dict:
    """Filters a raw mapping down to the dataclass fields, enforcing required ones."""
    if not isinstance(raw, dict):
        raise ConfigError(f"[{section}] must be a mapping, got {type(raw).__name__}")
    valid = {f.name for f in fields(cls)}
    _warn_unknown(section, raw, valid)
    for key in required:
        if raw.get(key) in (None, ""):
            raise ConfigError(f"[{section}] missing required field '{key}'")
    return {k: v for k, v in raw.items() if k in valid}


def _as_list(section: str, key: str, value: Any) -> list[str]:
    if value is None:
        return []
    if isinstance(value, str):
        return [value]
    if not isinstance(value, list):
        raise ConfigError(f"[{section}].{key} must be a list")
    return [str(v) for v in value]


def _build_job(section: str, raw: Any) -> Job:
    values = _pick(section, Job, raw, ("name", "schedule", "source_path"))
    section = f"job '{values['name']}'"

    for key in ("includes", "excludes", "webhooks"):
        values[key] = _as_list(section, key, values.get(key))

    # Explicit empty values fall back to the defaults.
    values["branch"] = values.get("branch") or DEFAULT_BRANCH
    values["merge_strategy"] = values.get("merge_strategy") or "normal"
    if values["merge_strategy"] not in MERGE_STRATEGIES:
        raise ConfigError(
            f"[{section}] invalid merge_strategy '{values['merge_strategy']}' "
            f"(expected one of: {', '.join(MERGE_STRATEGIES)})"
        )
    keep_structure = values.get("keep_structure")
    if keep_structure is None:
        keep_structure = False
    if not isinstance(keep_structure, bool):
        raise ConfigError(
            f"[{section}] keep_structure must be true or false, "
            f"got {keep_structure!r}"
        )
    values["keep_structure"] = keep_structure
    values["remote_url"] = values.get("remote_url") or None
    values["remote_path"] = values.get("remote_path") or None

    if values["remote_path"] and values["keep_structure"]:
        logger.warning(
            f"[{section}] remote_path and keep_structure are mutually exclusive; "
            "the job will fail until one is removed."
        )
    return Job(**values)


def _build_user(index: int, raw: Any) -> User:
    values = _pick(f"users[{index}]", User, raw, ("username", "email"))
    section = f"user '{values['username']}'"
    jobs_raw = values.pop("jobs", None) or []
    if not isinstance(jobs_raw, list):
        raise ConfigError(f"[{section}].jobs must be a list")
    values["jobs"] = [
        _build_job(f"{section} jobs[{i}]", job) for i, job in enumerate(jobs_raw)
    ]
    for key in ("ssh_key_path", "git_username", "git_password"):
        values[key] = values.get(key) or None
    return User(**values)


def _build_webhook(index: int, raw: Any) -> WebhookConfig:
    values = _pick(f"webhooks[{index}]", WebhookConfig, raw, ("name", "url"))
    section = f"webhook '{values['name']}'"

    values["method"] = str(values.get("method") or WEBHOOK_DEFAULT_METHOD).upper()
    values["trigger"] = values.get("trigger") or WEBHOOK_DEFAULT_TRIGGER
    if values["trigger"] not in WEBHOOK_TRIGGERS:
        raise ConfigError(
            f"[{section}] invalid trigger '{values['trigger']}' "
            f"(expected one of: {', '.join(WEBHOOK_TRIGGERS)})"
        )

    headers = values.get("headers") or {}
    if not isinstance(headers, dict):
        raise ConfigError(f"[{section}].headers must be a mapping")
    values["headers"] = {str(k): str(v) for k, v in headers.items()}
    values["body"] = values.get("body") or ""
    values["references"] = _as_list(section, "references", values.get("references"))

    try:
        values["retry_count"] = int(
            values.get("retry_count") or WEBHOOK_DEFAULT_RETRY_COUNT
        )
        values["retry_delay"] = parse_time(
            values.get("retry_delay") or WEBHOOK_DEFAULT_RETRY_DELAY
        )
    except ValueError as e:
        raise ConfigError(f"[{section}] {e}") from e
    return WebhookConfig(**values)


def _update_limits(instance: LimitsConfig, updates: Any) -> LimitsConfig:
    """Updates the limits section, warning on invalid keys and values."""
    if not isinstance(updates, dict):
        logger.warning("Config section [limits] must be a table. Ignoring.")
        return instance
    valid_keys = instance.__dataclass_fields__.keys()
    _warn_unknown("limits", updates, set(valid_keys))

    filtered_updates = {}
    for k, v in updates.items():
        if k not in valid_keys:
            continue
        try:
            filtered_updates[k] = parse_size(v)
        except ValueError as e:
            logger.warning(
                f"Config error in [limits].{k}: {e}. Falling back to default."
            )
    return replace(instance, **filtered_updates)
