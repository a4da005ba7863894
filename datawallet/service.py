"""DataWalletService: wires the components together and runs them."""

from __future__ import annotations

import asyncio
import contextlib
import time
from datetime import datetime
from typing import Any

import structlog
import uvicorn

from .allocator import WalletAllocator
from .api import create_app
from .authorization import AuthorizationBroker, build_signature_verifier
from .config import ServiceConfig
from .content_store import IpfsContentStore
from .errors import MailSourceError
from .interfaces import ContentStore, Ledger, MailSource, Notifier
from .ledger import LedgerAttestor, build_ledger
from .logging import setup_logging
from .mail_source import ImapMailSource
from .models import ProcessingTask, ServiceStatus, utcnow
from .notifier import build_notifier
from .orchestrator import TaskOrchestrator
from .parser import UnparsedMessage
from .registry import OwnerRegistry
from .retry import ExternalCall
from .shutdown import install_signal_handlers
from .task_store import InMemoryTaskStore, TaskStore
from .validator import Validator
from .verifier import ContentPublisher

logger = structlog.get_logger()


class DataWalletService:
    """The long-running service.

    ``run()`` starts the following concurrently via
    :class:`asyncio.TaskGroup`:

    * the mailbox poll loop (unless polling is disabled)
    * the finalize worker pool and its periodic re-drive
    * the authorization expiry sweep
    * the HTTP API server (health endpoints and authorization callback)

    External collaborators can be injected; anything not given is built
    from *config*.
    """

    def __init__(
        self,
        config: ServiceConfig,
        *,
        store: TaskStore | None = None,
        registry: OwnerRegistry | None = None,
        mail_source: MailSource | None = None,
        content_store: ContentStore | None = None,
        ledger: Ledger | None = None,
        notifier: Notifier | None = None,
    ) -> None:
        self.config = config
        self.status: ServiceStatus = ServiceStatus.STARTING
        self.start_time: float = time.monotonic()
        self.last_poll_at: datetime | None = None
        self._shutdown_event = asyncio.Event()

        if registry is None:
            policy = config.validation.allow_list_policy
            if config.validation.registry_path:
                registry = OwnerRegistry.from_file(config.validation.registry_path, policy=policy)
            else:
                registry = OwnerRegistry(policy=policy)
        self.registry = registry

        self.store = store or InMemoryTaskStore()
        self.mail_source = mail_source or ImapMailSource(config.imap)
        self.content_store = content_store or IpfsContentStore(config.content_store)
        self.ledger = ledger or build_ledger(config.ledger)
        self.notifier = notifier or build_notifier(config.notifier)

        self.broker = AuthorizationBroker(
            config.authorization,
            self.store,
            build_signature_verifier(config.authorization),
        )
        self.publisher = ContentPublisher(self.content_store, config.retry)
        self.attestor = LedgerAttestor(self.ledger, config.retry)
        self.orchestrator = TaskOrchestrator(
            store=self.store,
            validator=Validator(config.validation, self.registry),
            allocator=WalletAllocator(config.cost),
            broker=self.broker,
            publisher=self.publisher,
            attestor=self.attestor,
            notifier=self.notifier,
            worker_config=config.worker,
        )
        self._mail_call = ExternalCall("mail_source", config.retry, error=MailSourceError)

    def request_shutdown(self) -> None:
        self._shutdown_event.set()

    # ------------------------------------------------------------------
    # Mailbox polling
    # ------------------------------------------------------------------

    async def poll_once(self) -> list[ProcessingTask]:
        """Ingest every unread message, one at a time, acknowledging each after ingestion.

        Unparseable messages become failed tasks.  A message whose ingestion
        raises is left unacknowledged and will be listed again on the next
        cycle.
        """
        messages = await self._mail_call(self.mail_source.list_unread)
        tasks: list[ProcessingTask] = []
        for message in messages:
            try:
                if isinstance(message, UnparsedMessage):
                    task = await self.orchestrator.ingest_raw(message.raw_bytes, source_id=message.source_id)
                else:
                    task = await self.orchestrator.ingest(message)
            except Exception:
                logger.exception("message_ingest_failed", source_id=message.source_id)
                continue
            tasks.append(task)
            if message.source_id is not None:
                await self._mail_call(self.mail_source.mark_processed, message.source_id)
        self.last_poll_at = utcnow()
        if tasks:
            logger.info("poll_cycle_complete", ingested=len(tasks))
        return tasks

    async def _run_poll_loop(self) -> None:
        interval = self.config.imap.poll_interval_seconds
        logger.info("poll_loop_started", interval=interval, mailbox=self.config.imap.mailbox)
        while not self._shutdown_event.is_set():
            try:
                await self.poll_once()
            except MailSourceError as exc:
                if self.status == ServiceStatus.RUNNING:
                    self.status = ServiceStatus.DEGRADED
                logger.error("poll_cycle_failed", error=str(exc))
            else:
                if self.status == ServiceStatus.DEGRADED:
                    self.status = ServiceStatus.RUNNING
            with contextlib.suppress(TimeoutError):
                await asyncio.wait_for(self._shutdown_event.wait(), timeout=interval)
        logger.info("poll_loop_stopped")

    # ------------------------------------------------------------------
    # Health
    # ------------------------------------------------------------------

    async def health_check(self) -> dict[str, Any]:
        return {
            "last_poll_at": self.last_poll_at.isoformat() if self.last_poll_at else None,
            "queue_depth": self.orchestrator.queue_depth,
            "pending_authorizations": self.broker.pending_count,
            "ledger_network": self.ledger.network,
        }

    async def check_connections(self) -> dict[str, bool]:
        """Test connectivity of the mail source, content store and ledger."""
        results = {
            "mail_source": await self.mail_source.test_connection(),
            "content_store": await self.content_store.test_connection(),
            "ledger": await self.ledger.test_connection(),
        }
        logger.info("connection_check", **results)
        return results

    # ------------------------------------------------------------------
    # API server
    # ------------------------------------------------------------------

    async def _run_api_server(self) -> None:
        """Serve the HTTP API until the shutdown event fires."""
        config = uvicorn.Config(
            create_app(self),
            host=self.config.api_host,
            port=self.config.api_port,
            log_level="warning",
        )
        server = uvicorn.Server(config)

        serve_task = asyncio.create_task(server.serve())
        await self._shutdown_event.wait()
        server.should_exit = True
        await serve_task

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def start(self) -> None:
        await self.content_store.start()
        await self.ledger.start()
        await self.notifier.start()

    async def stop(self) -> None:
        await self.notifier.stop()
        await self.ledger.stop()
        await self.content_store.stop()
        await self.mail_source.close()

    async def run(self) -> None:
        """Start all subsystems and run until SIGTERM / SIGINT."""
        setup_logging(json=self.config.log_json, level=self.config.log_level)
        install_signal_handlers(self._shutdown_event)
        self.start_time = time.monotonic()

        logger.info(
            "service_starting",
            service=self.config.name,
            ledger_mode=self.config.ledger.mode.value,
            allow_list_policy=self.config.validation.allow_list_policy.value,
            signature_policy=self.config.authorization.signature_policy.value,
        )

        await self.start()
        try:
            async with asyncio.TaskGroup() as tg:
                if self.config.poll_enabled:
                    tg.create_task(self._run_poll_loop())
                tg.create_task(self.orchestrator.run_workers(self._shutdown_event))
                tg.create_task(self.broker.run_sweeper(self._shutdown_event))
                tg.create_task(self._run_api_server())
                self.status = ServiceStatus.RUNNING
        except* Exception:
            logger.exception("service_task_group_error", service=self.config.name)
        finally:
            self.status = ServiceStatus.STOPPING
            await self.stop()
            self.status = ServiceStatus.STOPPED
            logger.info("service_stopped", service=self.config.name)
