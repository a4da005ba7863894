"""IPFS content store backed by a Pinata-compatible pinning API."""

from __future__ import annotations

import json
from datetime import UTC, datetime
from typing import Any

import httpx
import structlog

from .config import ContentStoreConfig
from .errors import PublishError, RetrievalError
from .interfaces import ContentStore

logger = structlog.get_logger()


class IpfsContentStore(ContentStore):
    """Pins content through the pinning API and reads it back through gateways.

    Retrieval tries the primary gateway first and then each fallback gateway
    in order, returning the first successful response.
    """

    def __init__(self, config: ContentStoreConfig) -> None:
        self._config = config
        self._client: httpx.AsyncClient | None = None

    @property
    def gateways(self) -> list[str]:
        return [self._config.gateway_url, *self._config.fallback_gateways]

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def start(self) -> None:
        self._client = httpx.AsyncClient(
            timeout=httpx.Timeout(
                self._config.read_timeout_seconds,
                connect=self._config.connect_timeout_seconds,
            ),
            follow_redirects=True,
        )
        logger.info("content_store_started", api_url=self._config.api_url, gateways=len(self.gateways))

    async def stop(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None
            logger.info("content_store_stopped")

    def _http(self) -> httpx.AsyncClient:
        if self._client is None:
            raise AssertionError("Content store not started")
        return self._client

    def _auth_headers(self) -> dict[str, str]:
        if self._config.jwt is not None:
            return {"Authorization": f"Bearer {self._config.jwt.get_secret_value()}"}
        if self._config.api_key and self._config.secret_key is not None:
            return {
                "pinata_api_key": self._config.api_key,
                "pinata_secret_api_key": self._config.secret_key.get_secret_value(),
            }
        return {}

    # ------------------------------------------------------------------
    # ContentStore
    # ------------------------------------------------------------------

    async def publish(self, content: bytes, name: str, metadata: dict[str, Any] | None = None) -> str:
        if len(content) > self._config.max_upload_bytes:
            raise PublishError(
                f"{name}: {len(content)} bytes exceeds upload limit of {self._config.max_upload_bytes}"
            )

        keyvalues = {
            "fileName": name,
            "uploadedAt": datetime.now(UTC).isoformat(),
            "source": "email-data-wallet",
            "fileSize": str(len(content)),
        }
        keyvalues.update({k: str(v) for k, v in (metadata or {}).items()})

        try:
            response = await self._http().post(
                f"{self._config.api_url}/pinning/pinFileToIPFS",
                headers=self._auth_headers(),
                files={"file": (name, content, "application/octet-stream")},
                data={
                    "pinataMetadata": json.dumps({"name": name, "keyvalues": keyvalues}),
                    "pinataOptions": json.dumps({"cidVersion": 1}),
                },
            )
            response.raise_for_status()
            locator = response.json()["IpfsHash"]
        except httpx.HTTPStatusError as exc:
            raise PublishError(
                f"{name}: pinning API returned {exc.response.status_code}: {exc.response.text[:200]}"
            ) from exc
        except (httpx.HTTPError, KeyError, ValueError) as exc:
            raise PublishError(f"{name}: upload failed: {exc}") from exc

        logger.info("content_pinned", name=name, locator=locator, size=len(content))
        return locator

    async def retrieve(self, locator: str) -> bytes:
        failures: list[str] = []
        for gateway in self.gateways:
            url = f"{gateway.rstrip('/')}/{locator}"
            try:
                response = await self._http().get(url)
                response.raise_for_status()
            except httpx.HTTPStatusError as exc:
                failures.append(f"{gateway}: HTTP {exc.response.status_code}")
            except httpx.HTTPError as exc:
                failures.append(f"{gateway}: {type(exc).__name__}")
            else:
                if failures:
                    logger.info("content_retrieved_from_fallback", locator=locator, gateway=gateway)
                return response.content
            logger.debug("gateway_failed", locator=locator, gateway=gateway)

        logger.error("content_unavailable", locator=locator, attempts=failures)
        raise RetrievalError(
            f"content {locator} unavailable from all {len(failures)} endpoint(s): " + "; ".join(failures),
            locator=locator,
            attempts=failures,
        )

    async def is_pinned(self, locator: str) -> bool:
        try:
            response = await self._http().get(
                f"{self._config.api_url}/data/pinList",
                params={"hashContains": locator, "status": "pinned"},
                headers=self._auth_headers(),
            )
            response.raise_for_status()
            return bool(response.json().get("rows"))
        except (httpx.HTTPError, ValueError) as exc:
            raise RetrievalError(f"pin status of {locator} unavailable: {exc}", locator=locator) from exc

    async def test_connection(self) -> bool:
        try:
            response = await self._http().get(
                f"{self._config.api_url}/data/testAuthentication",
                headers=self._auth_headers(),
            )
        except httpx.HTTPError as exc:
            logger.warning("content_store_connection_failed", error=str(exc))
            return False
        return response.status_code == 200
