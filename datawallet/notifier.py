"""Owner notifications: structured log lines or a JSON webhook."""

from __future__ import annotations

from typing import Any

import httpx
import structlog

from .config import NotifierConfig
from .interfaces import Notifier
from .logging import mask_token
from .models import AuthorizationRequest, ProcessingTask

logger = structlog.get_logger()


class LogNotifier(Notifier):
    """Writes every notification to the log."""

    async def send_authorization_request(self, request: AuthorizationRequest) -> None:
        logger.info(
            "notify_authorization_request",
            task_id=request.task_id,
            owner=request.owner_identity,
            subject=request.summary.subject,
            attachments=request.summary.attachment_count,
            estimated_cost=request.summary.estimated_cost,
            callback_url=request.callback_url.replace(request.token, mask_token(request.token)),
            expires_at=request.expires_at.isoformat(),
        )

    async def send_completion(self, task: ProcessingTask) -> None:
        logger.info(
            "notify_completion",
            task_id=task.task_id,
            owner=task.owner_identity,
            locators=task.artifact_locators,
            tx_ref=task.attestation.tx_ref if task.attestation else None,
            credits=task.actual_cost,
        )

    async def send_failure(self, task: ProcessingTask, reason: str) -> None:
        logger.info("notify_failure", task_id=task.task_id, owner=task.owner_identity, reason=reason)


class WebhookNotifier(Notifier):
    """POSTs each notification as JSON to a configured URL.

    Raises :class:`httpx.HTTPError` on delivery failure; callers treat
    notifications as best-effort.
    """

    def __init__(self, config: NotifierConfig) -> None:
        if not config.webhook_url:
            raise ValueError("WebhookNotifier requires a webhook URL")
        self._config = config
        self._webhook_url = config.webhook_url
        self._client: httpx.AsyncClient | None = None

    async def start(self) -> None:
        self._client = httpx.AsyncClient(timeout=httpx.Timeout(self._config.timeout_seconds))

    async def stop(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None

    async def _post(self, kind: str, payload: dict[str, Any]) -> None:
        if self._client is None:
            raise AssertionError("Notifier not started")
        response = await self._client.post(self._webhook_url, json={"type": kind, **payload})
        response.raise_for_status()
        logger.debug("notification_delivered", type=kind, status_code=response.status_code)

    async def send_authorization_request(self, request: AuthorizationRequest) -> None:
        await self._post(
            "authorization_request",
            request.model_dump(mode="json", exclude={"token"}),
        )

    async def send_completion(self, task: ProcessingTask) -> None:
        await self._post("completion", {"task": task.model_dump(mode="json")})

    async def send_failure(self, task: ProcessingTask, reason: str) -> None:
        await self._post("failure", {"task": task.model_dump(mode="json"), "reason": reason})


def build_notifier(config: NotifierConfig) -> Notifier:
    return WebhookNotifier(config) if config.webhook_url else LogNotifier()
