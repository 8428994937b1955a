"""Webhook registry and dispatch.

Webhooks form a named graph through their `references`. A dispatch walks the
graph depth-first, running referenced webhooks before the ones that reference
them, and records every visited name so that cycles and shared dependencies
execute at most once per dispatch.
"""

import datetime
import logging
import time
from collections.abc import Callable
from dataclasses import dataclass, field, replace
from typing import Any

import httpx
from jinja2 import Environment, StrictUndefined, TemplateError

from .config import ConfigError, Job, User, WebhookConfig
from .constants import (
    APP_NAME,
    WEBHOOK_DEFAULT_METHOD,
    WEBHOOK_DEFAULT_RETRY_COUNT,
    WEBHOOK_DEFAULT_RETRY_DELAY,
    WEBHOOK_DEFAULT_TRIGGER,
    WEBHOOK_TIMEOUT,
)

logger = logging.getLogger(APP_NAME)

_jinja = Environment(undefined=StrictUndefined, keep_trailing_newline=True)


class WebhookError(RuntimeError):
    """Raised when a webhook cannot be rendered or delivered."""


@dataclass
class WebhookContext:
    """The outcome of one job run, exposed to webhook body templates.

    Attributes:
        user (User): The user owning the job.
        job (Job): The job that ran.
        status (str): 'success' or 'failure' once finalized.
        error (str | None): The failure message, if any.
        start_time (str): ISO-8601 start timestamp.
        end_time (str): ISO-8601 end timestamp.
        duration (str): Elapsed time, e.g. '0:00:02.5'.
        changed_files (list[str]): Files written into the working copy.
    """

    user: User
    job: Job
    status: str = ""
    error: str | None = None
    start_time: str = ""
    end_time: str = ""
    duration: str = ""
    changed_files: list[str] = field(default_factory=list)
    _started: datetime.datetime | None = field(default=None, repr=False)

    @classmethod
    def start(cls, user: User, job: Job) -> "WebhookContext":
        now = datetime.datetime.now().astimezone()
        return cls(user=user, job=job, start_time=now.isoformat(), _started=now)

    @property
    def finalized(self) -> bool:
        return bool(self.status)

    def finish(self, error: BaseException | None = None) -> None:
        """Stamps the end time and the final status."""
        now = datetime.datetime.now().astimezone()
        self.end_time = now.isoformat()
        if self._started is not None:
            self.duration = str(now - self._started)
        if error is not None:
            self.status = "failure"
            self.error = str(error) or type(error).__name__
        else:
            self.status = "success"

    def template_vars(self) -> dict[str, Any]:
        return {
            "user": self.user,
            "job": self.job,
            "status": self.status,
            "error": self.error,
            "start_time": self.start_time,
            "end_time": self.end_time,
            "duration": self.duration,
            "changed_files": self.changed_files,
        }


def render_body(template: str, context: WebhookContext) -> str:
    """Renders a webhook body template against a run context.

    Args:
        template (str): Jinja2 template source.
        context (WebhookContext): The finalized run context.

    Returns:
        str: The rendered request body.

    Raises:
        WebhookError: If the template cannot be parsed or rendered.
    """
    if not template:
        return ""
    try:
        return _jinja.from_string(template).render(**context.template_vars())
    except TemplateError as e:
        raise WebhookError(f"failed to render webhook body template: {e}") from e
    except Exception as e:
        # Expressions inside the template can raise anything (e.g. `1 / 0`).
        raise WebhookError(
            f"failed to render webhook body template: {type(e).__name__}: {e}"
        ) from e


def should_trigger(trigger: str, status: str) -> bool:
    return trigger == "always" or trigger == status


class WebhookManager:
    """A name -> WebhookConfig registry that dispatches job notifications.

    The registry is filled once at startup and only read afterwards, so
    concurrent job runs may dispatch through the same manager.

    Attributes:
        webhooks (dict[str, WebhookConfig]): Registered webhooks by name.
    """

    def __init__(
        self,
        transport: httpx.BaseTransport | None = None,
        sleep: Callable[[float], None] = time.sleep,
    ):
        """Initializes an empty registry.

        Args:
            transport (httpx.BaseTransport | None): Custom httpx transport,
                mainly for tests. Defaults to the regular network transport.
            sleep (Callable[[float], None]): Used to wait between retries.
        """
        self.webhooks: dict[str, WebhookConfig] = {}
        self._transport = transport
        self._sleep = sleep

    @classmethod
    def from_configs(
        cls, configs: list[WebhookConfig], **kwargs: Any
    ) -> "WebhookManager":
        manager = cls(**kwargs)
        for config in configs:
            manager.register(config)
        return manager

    def register(self, webhook: WebhookConfig) -> None:
        """Adds a webhook to the registry, filling in defaults.

        Args:
            webhook (WebhookConfig): The webhook to register.

        Raises:
            ConfigError: If the name or URL is empty.
        """
        if not webhook.name:
            raise ConfigError("webhook name cannot be empty")
        if not webhook.url:
            raise ConfigError(f"webhook '{webhook.name}': URL cannot be empty")

        self.webhooks[webhook.name] = replace(
            webhook,
            method=(webhook.method or WEBHOOK_DEFAULT_METHOD).upper(),
            trigger=webhook.trigger or WEBHOOK_DEFAULT_TRIGGER,
            retry_count=(
                webhook.retry_count
                if webhook.retry_count > 0
                else WEBHOOK_DEFAULT_RETRY_COUNT
            ),
            retry_delay=(
                webhook.retry_delay
                if webhook.retry_delay > 0
                else WEBHOOK_DEFAULT_RETRY_DELAY
            ),
        )

    def get_by_names(self, names: list[str]) -> list[WebhookConfig]:
        """Looks up registered webhooks, silently dropping unknown names."""
        return [self.webhooks[name] for name in names if name in self.webhooks]

    def execute_webhooks(
        self, webhooks: list[WebhookConfig], context: WebhookContext
    ) -> list[str]:
        """Executes webhooks (and their references) for a finished job run.

        Every webhook is attempted even if an earlier one failed. Failures are
        logged, never raised.

        Args:
            webhooks (list[WebhookConfig]): Top-level webhooks to execute.
            context (WebhookContext): The finalized run context.

        Returns:
            list[str]: Names of the top-level webhooks that failed.
        """
        executed: set[str] = set()
        failed: list[str] = []
        for webhook in webhooks:
            try:
                self._execute_with_references(webhook, context, executed)
            except WebhookError as e:
                logger.error(f"WEBHOOK ERROR {webhook.name}: {e}")
                failed.append(webhook.name)
            except Exception:
                logger.exception(f"WEBHOOK ERROR {webhook.name}: unexpected failure")
                failed.append(webhook.name)
        return failed

    def _execute_with_references(
        self, webhook: WebhookConfig, context: WebhookContext, executed: set[str]
    ) -> None:
        if webhook.name in executed:
            return
        executed.add(webhook.name)

        for ref_name in webhook.references:
            ref = self.webhooks.get(ref_name)
            if ref is None:
                continue
            try:
                self._execute_with_references(ref, context, executed)
            except WebhookError as e:
                raise WebhookError(
                    f"referenced webhook {ref_name} failed: {e}"
                ) from e

        if not should_trigger(webhook.trigger, context.status):
            logger.debug(
                f"WEBHOOK {webhook.name}: skipped "
                f"(trigger={webhook.trigger}, status={context.status})"
            )
            return

        self._execute(webhook, context)

    def _execute(self, webhook: WebhookConfig, context: WebhookContext) -> None:
        """Renders and delivers one webhook with retries."""
        body = render_body(webhook.body, context)
        attempts = max(webhook.retry_count, 1)

        last_error: Exception | None = None
        for attempt in range(1, attempts + 1):
            try:
                self._send(webhook, body)
                logger.info(f"WEBHOOK {webhook.name}: delivered")
                return
            except (httpx.HTTPError, httpx.InvalidURL, WebhookError) as e:
                last_error = e
                logger.warning(f"Webhook {webhook.name} attempt {attempt} failed: {e}")
                if attempt < attempts:
                    self._sleep(webhook.retry_delay)

        raise WebhookError(
            f"webhook execution failed after {attempts} attempts: {last_error}"
        )

    def _send(self, webhook: WebhookConfig, body: str) -> None:
        headers = dict(webhook.headers)
        if not any(k.lower() == "content-type" for k in headers):
            headers["Content-Type"] = "application/json"

        with httpx.Client(timeout=WEBHOOK_TIMEOUT, transport=self._transport) as client:
            try:
                request = client.build_request(
                    webhook.method, webhook.url, headers=headers, content=body.encode()
                )
            except (UnicodeEncodeError, TypeError, ValueError) as e:
                raise WebhookError(f"invalid webhook request: {e}") from e
            response = client.send(request)

        if not response.is_success:
            raise WebhookError(
                f"webhook request failed with status code: {response.status_code}"
            )
