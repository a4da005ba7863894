"""Tests for datawallet.service."""

from __future__ import annotations

import asyncio
from unittest.mock import AsyncMock, patch

import pytest

from datawallet.config import ServiceConfig
from datawallet.errors import MailSourceError
from datawallet.ledger import SimulatedLedger
from datawallet.models import ProcessingTask, ServiceStatus, TaskState
from datawallet.registry import OwnerRegistry
from datawallet.parser import MimeParser, UnparsedMessage
from datawallet.service import DataWalletService
from tests.conftest import FakeContentStore, FakeMailSource, RecordingNotifier, make_message


@pytest.fixture
def mail_source() -> FakeMailSource:
    return FakeMailSource(
        [
            make_message(source_id="1"),
            make_message(sender="mallory@evil.example", source_id="2"),
        ]
    )


@pytest.fixture
def service(service_config: ServiceConfig, registry: OwnerRegistry, mail_source: FakeMailSource) -> DataWalletService:
    return DataWalletService(
        service_config,
        registry=registry,
        mail_source=mail_source,
        content_store=FakeContentStore(),
        ledger=SimulatedLedger(service_config.ledger),
        notifier=RecordingNotifier(),
    )


class TestPollOnce:
    @pytest.mark.asyncio
    async def test_ingests_and_acknowledges_every_message(
        self, service: DataWalletService, mail_source: FakeMailSource
    ):
        tasks = await service.poll_once()

        assert [t.state for t in tasks] == [TaskState.PENDING_AUTHORIZATION, TaskState.FAILED]
        assert mail_source.processed == ["1", "2"]
        assert service.last_poll_at is not None
        assert await service.poll_once() == []

    @pytest.mark.asyncio
    async def test_failed_ingest_is_left_unacknowledged(
        self, service: DataWalletService, mail_source: FakeMailSource
    ):
        with patch.object(
            service.orchestrator, "ingest", AsyncMock(side_effect=[RuntimeError("boom"), ProcessingTask()])
        ):
            await service.poll_once()
        assert mail_source.processed == ["2"]

    @pytest.mark.asyncio
    async def test_unparseable_message_becomes_failed_task(self, service: DataWalletService):
        source = FakeMailSource([UnparsedMessage(raw_bytes=b"\xff\xfe garbage", source_id="9", error="bad charset")])
        service.mail_source = source

        with patch.object(MimeParser, "parse", side_effect=LookupError("unknown encoding: x-bogus")):
            tasks = await service.poll_once()

        assert len(tasks) == 1
        assert tasks[0].state == TaskState.FAILED
        assert tasks[0].error == "ParseError: unknown encoding: x-bogus"
        assert source.processed == ["9"]
        assert await service.poll_once() == []

    @pytest.mark.asyncio
    async def test_listing_failure_raises_mail_source_error(
        self, service: DataWalletService, mail_source: FakeMailSource
    ):
        mail_source.list_unread = AsyncMock(side_effect=MailSourceError("imap down"))
        with pytest.raises(MailSourceError):
            await service.poll_once()
        # retried before giving up
        assert mail_source.list_unread.await_count == 3


class TestPollLoop:
    @pytest.mark.asyncio
    async def test_degrades_and_recovers(self, service: DataWalletService, mail_source: FakeMailSource):
        service.status = ServiceStatus.RUNNING
        original = mail_source.list_unread
        mail_source.list_unread = AsyncMock(side_effect=MailSourceError("imap down"))

        loop = asyncio.create_task(service._run_poll_loop())
        try:
            async with asyncio.timeout(2.0):
                while service.status != ServiceStatus.DEGRADED:
                    await asyncio.sleep(0.01)
            mail_source.list_unread = original
            async with asyncio.timeout(2.0):
                while service.status != ServiceStatus.RUNNING:
                    await asyncio.sleep(0.01)
        finally:
            service.request_shutdown()
            await asyncio.wait_for(loop, timeout=2.0)

        assert mail_source.processed == ["1", "2"]


class TestHealthAndConnections:
    @pytest.mark.asyncio
    async def test_health_details(self, service: DataWalletService):
        await service.poll_once()
        details = await service.health_check()
        assert details["pending_authorizations"] == 1
        assert details["queue_depth"] == 0
        assert details["ledger_network"] == "polygon-amoy"
        assert details["last_poll_at"] is not None

    @pytest.mark.asyncio
    async def test_check_connections(self, service: DataWalletService):
        assert await service.check_connections() == {
            "mail_source": True,
            "content_store": True,
            "ledger": True,
        }

    @pytest.mark.asyncio
    async def test_start_stop(self, service: DataWalletService):
        await service.start()
        await service.stop()

    def test_registry_loaded_from_file(self, service_config: ServiceConfig, tmp_path):
        path = tmp_path / "owners.json"
        path.write_text('[{"email": "bob@example.com", "identity": "0x' + "22" * 20 + '"}]')
        config = service_config.model_copy(
            update={"validation": service_config.validation.model_copy(update={"registry_path": str(path)})}
        )
        service = DataWalletService(
            config,
            mail_source=FakeMailSource(),
            content_store=FakeContentStore(),
            notifier=RecordingNotifier(),
        )
        assert service.registry.lookup("bob@example.com") is not None
        assert isinstance(service.ledger, SimulatedLedger)
