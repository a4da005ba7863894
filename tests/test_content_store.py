"""Tests for datawallet.content_store."""

from __future__ import annotations

import httpx
import pytest
import respx
from pydantic import SecretStr

from datawallet.config import ContentStoreConfig
from datawallet.content_store import IpfsContentStore
from datawallet.errors import PublishError, RetrievalError

LOCATOR = "bafybeigdyrzt5sfp7udm7hu76uh7y26nf3efuylqabf3oclgtqy55fbzdi"


@pytest.fixture
async def ipfs(content_store_config: ContentStoreConfig):
    store = IpfsContentStore(content_store_config)
    await store.start()
    yield store
    await store.stop()


class TestPublish:
    @pytest.mark.asyncio
    @respx.mock
    async def test_publish_returns_locator(self, ipfs: IpfsContentStore):
        route = respx.post("https://pin.test/pinning/pinFileToIPFS").respond(
            200, json={"IpfsHash": LOCATOR, "PinSize": 5}
        )

        locator = await ipfs.publish(b"hello", "hello.txt", {"taskId": "task_1"})

        assert locator == LOCATOR
        request = route.calls[0].request
        assert request.headers["Authorization"] == "Bearer test-jwt"
        body = request.content.decode("utf-8", errors="replace")
        assert "hello.txt" in body
        assert '"taskId": "task_1"' in body

    @pytest.mark.asyncio
    @respx.mock
    async def test_api_key_headers(self, content_store_config: ContentStoreConfig):
        config = content_store_config.model_copy(
            update={"jwt": None, "api_key": "key", "secret_key": SecretStr("secret")}
        )
        store = IpfsContentStore(config)
        await store.start()
        route = respx.post("https://pin.test/pinning/pinFileToIPFS").respond(200, json={"IpfsHash": LOCATOR})
        try:
            await store.publish(b"x", "x.bin")
        finally:
            await store.stop()
        headers = route.calls[0].request.headers
        assert headers["pinata_api_key"] == "key"
        assert headers["pinata_secret_api_key"] == "secret"

    @pytest.mark.asyncio
    @respx.mock
    async def test_http_error_raises_publish_error(self, ipfs: IpfsContentStore):
        respx.post("https://pin.test/pinning/pinFileToIPFS").respond(503, text="maintenance")
        with pytest.raises(PublishError, match="503"):
            await ipfs.publish(b"hello", "hello.txt")

    @pytest.mark.asyncio
    @respx.mock
    async def test_transport_error_raises_publish_error(self, ipfs: IpfsContentStore):
        respx.post("https://pin.test/pinning/pinFileToIPFS").mock(side_effect=httpx.ConnectError("refused"))
        with pytest.raises(PublishError, match="upload failed"):
            await ipfs.publish(b"hello", "hello.txt")

    @pytest.mark.asyncio
    async def test_oversized_upload_rejected(self, content_store_config: ContentStoreConfig):
        store = IpfsContentStore(content_store_config.model_copy(update={"max_upload_bytes": 4}))
        await store.start()
        try:
            with pytest.raises(PublishError, match="exceeds upload limit"):
                await store.publish(b"hello", "hello.txt")
        finally:
            await store.stop()


class TestRetrieve:
    @pytest.mark.asyncio
    @respx.mock
    async def test_primary_gateway(self, ipfs: IpfsContentStore):
        respx.get(f"https://gw1.test/ipfs/{LOCATOR}").respond(200, content=b"payload")
        assert await ipfs.retrieve(LOCATOR) == b"payload"

    @pytest.mark.asyncio
    @respx.mock
    async def test_falls_back_in_order(self, ipfs: IpfsContentStore):
        primary = respx.get(f"https://gw1.test/ipfs/{LOCATOR}").respond(504)
        second = respx.get(f"https://gw2.test/ipfs/{LOCATOR}").mock(side_effect=httpx.ReadTimeout("slow"))
        third = respx.get(f"https://gw3.test/ipfs/{LOCATOR}").respond(200, content=b"payload")

        assert await ipfs.retrieve(LOCATOR) == b"payload"
        assert primary.called and second.called and third.called

    @pytest.mark.asyncio
    @respx.mock
    async def test_all_endpoints_fail(self, ipfs: IpfsContentStore):
        respx.get(f"https://gw1.test/ipfs/{LOCATOR}").respond(500)
        respx.get(f"https://gw2.test/ipfs/{LOCATOR}").respond(404)
        respx.get(f"https://gw3.test/ipfs/{LOCATOR}").mock(side_effect=httpx.ConnectError("refused"))

        with pytest.raises(RetrievalError) as exc_info:
            await ipfs.retrieve(LOCATOR)

        err = exc_info.value
        assert err.locator == LOCATOR
        assert err.attempts == [
            "https://gw1.test/ipfs: HTTP 500",
            "https://gw2.test/ipfs: HTTP 404",
            "https://gw3.test/ipfs: ConnectError",
        ]


class TestPinStatus:
    @pytest.mark.asyncio
    @respx.mock
    async def test_is_pinned(self, ipfs: IpfsContentStore):
        route = respx.get("https://pin.test/data/pinList").respond(200, json={"count": 1, "rows": [{"ipfs_pin_hash": LOCATOR}]})
        assert await ipfs.is_pinned(LOCATOR)
        assert route.calls[0].request.url.params["hashContains"] == LOCATOR

    @pytest.mark.asyncio
    @respx.mock
    async def test_not_pinned(self, ipfs: IpfsContentStore):
        respx.get("https://pin.test/data/pinList").respond(200, json={"count": 0, "rows": []})
        assert not await ipfs.is_pinned(LOCATOR)

    @pytest.mark.asyncio
    @respx.mock
    async def test_pin_status_failure_raises_retrieval_error(self, ipfs: IpfsContentStore):
        respx.get("https://pin.test/data/pinList").respond(503)
        with pytest.raises(RetrievalError, match="pin status"):
            await ipfs.is_pinned(LOCATOR)

    @pytest.mark.asyncio
    @respx.mock
    async def test_connection(self, ipfs: IpfsContentStore):
        respx.get("https://pin.test/data/testAuthentication").respond(
            200, json={"message": "Congratulations! You are communicating with the Pinata API!"}
        )
        assert await ipfs.test_connection()

    @pytest.mark.asyncio
    @respx.mock
    async def test_connection_failure(self, ipfs: IpfsContentStore):
        respx.get("https://pin.test/data/testAuthentication").mock(side_effect=httpx.ConnectError("refused"))
        assert not await ipfs.test_connection()

