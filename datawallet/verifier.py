"""Publishes artifacts and checks that stored content is what was published."""

from __future__ import annotations

import hashlib
import json
from typing import Any

import structlog

from .config import RetryConfig
from .errors import ContentIntegrityError, PublishError, RetrievalError
from .interfaces import ContentStore
from .models import ContentArtifact, ContentVerification
from .retry import ExternalCall

logger = structlog.get_logger()

IDENTITY_DERIVATION_SALT = "rivetz-deterministic-v2"


def compute_content_hash(data: bytes) -> str:
    """0x-prefixed lowercase SHA-256 hex digest."""
    return "0x" + hashlib.sha256(data).hexdigest()


def derive_identity(key_material: str) -> str:
    """Map key material to a stable 20-byte address.

    SHA-256 over the key material and a fixed salt; the last 20 bytes of the
    digest form the address.
    """
    digest = hashlib.sha256((key_material + IDENTITY_DERIVATION_SALT).encode("utf-8")).digest()
    return "0x" + digest[-20:].hex()


def check_envelope(payload: dict[str, Any]) -> tuple[bool, bool | None, list[str]]:
    """Check the proof fields of a JSON envelope.

    Returns ``(content_verified, wallet_verified, problems)``.  An envelope
    without ``contentHash``/``content`` is taken as verified content, and
    one without ``userKey``/``walletAddress`` carries no identity claim
    (``wallet_verified`` is ``None``).
    """
    problems: list[str] = []
    content_verified = True
    wallet_verified: bool | None = None

    if "contentHash" in payload and "content" in payload:
        content = payload["content"]
        raw = content if isinstance(content, str) else json.dumps(content, sort_keys=True)
        actual = compute_content_hash(raw.encode("utf-8"))
        if actual != str(payload["contentHash"]).lower():
            content_verified = False
            problems.append(f"embedded content hash mismatch (expected {payload['contentHash']}, got {actual})")

    if "userKey" in payload and "walletAddress" in payload:
        derived = derive_identity(str(payload["userKey"]))
        wallet_verified = derived == str(payload["walletAddress"]).lower()
        if not wallet_verified:
            problems.append(f"wallet address mismatch (claimed {payload['walletAddress']}, derived {derived})")

    return content_verified, wallet_verified, problems


class ContentPublisher:
    """Content publisher and integrity verifier.

    Store calls go through per-operation retry and circuit breaking:
    publishing retries on :class:`PublishError`, retrieval on
    :class:`RetrievalError`.
    """

    def __init__(self, store: ContentStore, retry: RetryConfig) -> None:
        self._store = store
        self._publish_call = ExternalCall("content_store.publish", retry, error=PublishError)
        self._retrieve_call = ExternalCall("content_store.retrieve", retry, error=RetrievalError)
        self._pin_call = ExternalCall("content_store.pin_status", retry, error=RetrievalError)

    async def publish(self, content: bytes, name: str, metadata: dict[str, Any] | None = None) -> str:
        locator = await self._publish_call(self._store.publish, content, name, metadata)
        logger.info("content_published", name=name, locator=locator, size=len(content))
        return locator

    async def publish_artifact(
        self,
        artifact: ContentArtifact,
        content: bytes,
        metadata: dict[str, Any] | None = None,
    ) -> ContentArtifact:
        """Publish *content* for *artifact* and return the artifact with its locator."""
        actual = compute_content_hash(content)
        if actual != artifact.content_hash:
            raise ContentIntegrityError(
                f"artifact {artifact.name} changed before publishing",
                expected=artifact.content_hash,
                actual=actual,
            )
        if artifact.locator is not None:
            return artifact
        locator = await self.publish(content, artifact.name, metadata)
        return artifact.model_copy(update={"locator": locator})

    async def retrieve(self, locator: str) -> bytes:
        return await self._retrieve_call(self._store.retrieve, locator)

    async def is_pinned(self, locator: str) -> bool:
        return await self._pin_call(self._store.is_pinned, locator)

    async def check(self, locator: str, expected_hash: str) -> bytes:
        """Retrieve content and raise :class:`ContentIntegrityError` on a hash mismatch."""
        content = await self.retrieve(locator)
        actual = compute_content_hash(content)
        if actual != expected_hash.lower():
            logger.error(
                "content_integrity_violation",
                locator=locator,
                expected=expected_hash,
                actual=actual,
            )
            raise ContentIntegrityError(
                f"content at {locator} does not match its recorded hash",
                expected=expected_hash,
                actual=actual,
            )
        return content

    async def verify(self, locator: str, expected_hash: str | None = None) -> ContentVerification:
        """Retrieve *locator* and report whether its content is intact.

        Hash and identity mismatches are reported in the result; only a
        :class:`RetrievalError` propagates.
        """
        content = await self.retrieve(locator)
        actual = compute_content_hash(content)
        errors: list[str] = []

        content_verified = True
        if expected_hash is not None and actual != expected_hash.lower():
            content_verified = False
            errors.append(
                ContentIntegrityError(
                    "content does not match its recorded hash",
                    expected=expected_hash,
                    actual=actual,
                ).describe()
            )

        wallet_verified: bool | None = None
        payload = _load_json_object(content)
        if payload is not None:
            envelope_ok, wallet_verified, problems = check_envelope(payload)
            content_verified = content_verified and envelope_ok
            errors.extend(problems)

        result = ContentVerification(
            locator=locator,
            content_verified=content_verified,
            wallet_verified=wallet_verified,
            expected_hash=expected_hash,
            actual_hash=actual,
            error="; ".join(errors) or None,
        )
        logger.info(
            "content_verified",
            locator=locator,
            content_verified=content_verified,
            wallet_verified=wallet_verified,
        )
        return result


def _load_json_object(content: bytes) -> dict[str, Any] | None:
    try:
        payload = json.loads(content)
    except (UnicodeDecodeError, json.JSONDecodeError):
        return None
    return payload if isinstance(payload, dict) else None
