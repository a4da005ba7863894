"""Authorization broker: time-boxed, single-use owner approval of a task."""

from __future__ import annotations

import abc
import asyncio
import contextlib
import hashlib
import hmac
import secrets
from collections.abc import Awaitable, Callable
from datetime import datetime, timedelta
from urllib.parse import urlencode

import structlog

from .config import AuthorizationConfig, PolicyMode
from .errors import (
    AuthorizationExpired,
    AuthorizationNotFound,
    IdentityMismatch,
    InvalidSignature,
    InvalidTransitionError,
    NotFoundError,
)
from .logging import mask_token
from .models import AuthorizationRequest, AuthorizationSummary, ProcessingTask, TaskState, utcnow
from .state_machine import Actor, transition
from .task_store import TaskStore

logger = structlog.get_logger()


# ------------------------------------------------------------------
# Signature verification
# ------------------------------------------------------------------


class SignatureVerifier(abc.ABC):
    """Decides whether *signature* approves *request*."""

    @abc.abstractmethod
    async def verify(self, request: AuthorizationRequest, signature: str) -> bool: ...


class HmacSignatureVerifier(SignatureVerifier):
    """Expects the hex HMAC-SHA256 of ``"<task_id>:<token>"`` under a shared secret."""

    def __init__(self, secret: str) -> None:
        self._secret = secret.encode("utf-8")

    def sign(self, request: AuthorizationRequest) -> str:
        message = f"{request.task_id}:{request.token}".encode("utf-8")
        return hmac.new(self._secret, message, hashlib.sha256).hexdigest()

    async def verify(self, request: AuthorizationRequest, signature: str) -> bool:
        candidate = signature.strip().lower().removeprefix("0x")
        return hmac.compare_digest(candidate, self.sign(request))


class LengthOnlySignatureVerifier(SignatureVerifier):
    """Accepts any signature of at least *min_length* characters.  Testing only."""

    def __init__(self, min_length: int) -> None:
        self._min_length = min_length

    async def verify(self, request: AuthorizationRequest, signature: str) -> bool:
        accepted = len(signature.strip()) >= self._min_length
        logger.warning(
            "signature_not_enforced",
            task_id=request.task_id,
            accepted=accepted,
            policy=PolicyMode.ALLOW_ALL_FOR_TESTING.value,
        )
        return accepted


def build_signature_verifier(config: AuthorizationConfig) -> SignatureVerifier:
    if config.signature_policy == PolicyMode.ALLOW_ALL_FOR_TESTING:
        return LengthOnlySignatureVerifier(config.min_signature_length)
    if config.signing_secret is None:
        raise ValueError("signature policy 'enforced' requires a signing secret")
    return HmacSignatureVerifier(config.signing_secret.get_secret_value())


# ------------------------------------------------------------------
# Broker
# ------------------------------------------------------------------


class AuthorizationBroker:
    """Issues and redeems authorization requests.

    The broker owns the ``PENDING_AUTHORIZATION`` state: it moves tasks to
    ``AUTHORIZED`` on a valid signature and to ``CANCELLED`` on rejection,
    operator cancellation or expiry.  After a successful authorization it
    calls *on_authorized* (which only enqueues the finalize job) and returns
    without waiting for finalization.
    """

    def __init__(
        self,
        config: AuthorizationConfig,
        store: TaskStore,
        verifier: SignatureVerifier,
        *,
        on_authorized: Callable[[str], Awaitable[None]] | None = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._config = config
        self._store = store
        self._verifier = verifier
        self._on_authorized = on_authorized
        self._clock = clock
        self._requests: dict[str, AuthorizationRequest] = {}
        self._locks: dict[str, asyncio.Lock] = {}

    def set_on_authorized(self, callback: Callable[[str], Awaitable[None]]) -> None:
        self._on_authorized = callback

    @property
    def pending_count(self) -> int:
        return len(self._requests)

    def get_request(self, task_id: str) -> AuthorizationRequest | None:
        """The live request for *task_id*, if one exists and has not expired."""
        request = self._requests.get(task_id)
        if request is None or request.is_expired(self._clock()):
            return None
        return request

    def _lock_for(self, task_id: str) -> asyncio.Lock:
        return self._locks.setdefault(task_id, asyncio.Lock())

    def _discard(self, task_id: str) -> AuthorizationRequest | None:
        self._locks.pop(task_id, None)
        return self._requests.pop(task_id, None)

    # ------------------------------------------------------------------
    # Operations
    # ------------------------------------------------------------------

    async def issue(
        self,
        task_id: str,
        owner_identity: str,
        summary: AuthorizationSummary,
    ) -> AuthorizationRequest:
        """Create the live request for *task_id*, replacing any earlier one."""
        token = secrets.token_urlsafe(32)
        now = self._clock()
        query = urlencode({"task": task_id, "token": token})
        request = AuthorizationRequest(
            task_id=task_id,
            owner_identity=owner_identity.lower(),
            token=token,
            created_at=now,
            expires_at=now + timedelta(hours=self._config.window_hours),
            summary=summary,
            callback_url=f"{self._config.base_url.rstrip('/')}/authorize?{query}",
        )
        async with self._lock_for(task_id):
            self._requests[task_id] = request
        logger.info(
            "authorization_issued",
            task_id=task_id,
            owner=request.owner_identity,
            token=mask_token(token),
            expires_at=request.expires_at.isoformat(),
        )
        return request

    async def validate(self, task_id: str, signature: str, claimed_identity: str) -> ProcessingTask:
        """Redeem the live request for *task_id*.

        Raises one of the :class:`AuthorizationError` subclasses and leaves
        the task untouched on failure.
        """
        async with self._lock_for(task_id):
            request = self._requests.get(task_id)
            if request is None:
                raise AuthorizationNotFound(task_id, f"no live authorization request for {task_id}")
            now = self._clock()
            if request.is_expired(now):
                raise AuthorizationExpired(
                    task_id, f"authorization for {task_id} expired at {request.expires_at.isoformat()}"
                )
            if claimed_identity.strip().lower() != request.owner_identity.lower():
                logger.warning("authorization_identity_mismatch", task_id=task_id, claimed=claimed_identity)
                raise IdentityMismatch(task_id, f"{claimed_identity} does not own task {task_id}")
            if not signature or not await self._verifier.verify(request, signature):
                logger.warning("authorization_invalid_signature", task_id=task_id)
                raise InvalidSignature(task_id, f"signature rejected for task {task_id}")

            task = await self._store.update(
                task_id,
                lambda t: transition(
                    t,
                    TaskState.AUTHORIZED,
                    actor=Actor.BROKER,
                    message=f"authorized by {request.owner_identity}",
                    authorized_at=now,
                ),
            )
            self._discard(task_id)

        logger.info("authorization_granted", task_id=task_id, owner=request.owner_identity)
        if self._on_authorized is not None:
            await self._on_authorized(task_id)
        return task

    async def reject(self, task_id: str, identity: str, reason: str = "") -> ProcessingTask:
        """Owner declines the task; the task is cancelled."""
        async with self._lock_for(task_id):
            request = self._requests.get(task_id)
            if request is None:
                raise AuthorizationNotFound(task_id, f"no live authorization request for {task_id}")
            if identity.strip().lower() != request.owner_identity.lower():
                raise IdentityMismatch(task_id, f"{identity} does not own task {task_id}")
            task = await self._cancel_task(task_id, f"rejected by owner: {reason or 'no reason given'}")
            self._discard(task_id)
        return task

    async def revoke(self, task_id: str) -> None:
        """Drop the live request for *task_id*; no-op if there is none."""
        if self._discard(task_id) is not None:
            logger.info("authorization_revoked", task_id=task_id)

    async def cancel(self, task_id: str, reason: str) -> ProcessingTask:
        """Cancel a task that is still waiting for authorization."""
        async with self._lock_for(task_id):
            task = await self._cancel_task(task_id, reason)
            self._discard(task_id)
        return task

    async def _cancel_task(self, task_id: str, reason: str) -> ProcessingTask:
        return await self._store.update(
            task_id,
            lambda t: transition(t, TaskState.CANCELLED, actor=Actor.BROKER, message=reason),
        )

    # ------------------------------------------------------------------
    # Expiry sweep
    # ------------------------------------------------------------------

    async def sweep_expired(self) -> list[str]:
        """Cancel every task whose authorization request has expired."""
        now = self._clock()
        expired = [task_id for task_id, req in self._requests.items() if req.is_expired(now)]
        cancelled: list[str] = []
        for task_id in expired:
            async with self._lock_for(task_id):
                request = self._requests.get(task_id)
                if request is None or not request.is_expired(now):
                    continue
                try:
                    await self._cancel_task(task_id, "authorization expired")
                except (InvalidTransitionError, NotFoundError) as exc:
                    logger.warning("expired_request_without_pending_task", task_id=task_id, error=str(exc))
                else:
                    cancelled.append(task_id)
                self._discard(task_id)
        if cancelled:
            logger.info("authorization_sweep", cancelled=len(cancelled))
        return cancelled

    async def run_sweeper(self, shutdown_event: asyncio.Event) -> None:
        """Sweep on a fixed interval until *shutdown_event* is set."""
        logger.info("authorization_sweeper_started", interval=self._config.sweep_interval_seconds)
        while not shutdown_event.is_set():
            await self.sweep_expired()
            with contextlib.suppress(TimeoutError):
                await asyncio.wait_for(shutdown_event.wait(), timeout=self._config.sweep_interval_seconds)
        logger.info("authorization_sweeper_stopped")
