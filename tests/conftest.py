"""Shared test fixtures for the datawallet test suite."""

from __future__ import annotations

import hashlib
from email import encoders
from email.mime.base import MIMEBase
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from typing import Any

import pytest

from datawallet.allocator import WalletAllocator
from datawallet.authorization import AuthorizationBroker, HmacSignatureVerifier
from datawallet.config import (
    AuthorizationConfig,
    ContentStoreConfig,
    CostConfig,
    ImapConfig,
    LedgerConfig,
    RetryConfig,
    ServiceConfig,
    ValidationConfig,
    WorkerConfig,
)
from datawallet.errors import PublishError, RetrievalError
from datawallet.interfaces import ContentStore, MailSource, Notifier
from datawallet.ledger import LedgerAttestor, SimulatedLedger
from datawallet.models import AuthorizationRequest, ProcessingTask
from datawallet.orchestrator import TaskOrchestrator
from datawallet.parser import NormalizedMessage, ParsedAttachment, UnparsedMessage
from datawallet.registry import OwnerRegistration, OwnerRegistry
from datawallet.task_store import InMemoryTaskStore
from datawallet.validator import Validator
from datawallet.verifier import ContentPublisher

OWNER_EMAIL = "alice@example.com"
OWNER_IDENTITY = "0x" + "a1" * 20
OTHER_IDENTITY = "0x" + "b2" * 20
SIGNING_SECRET = "test-signing-secret"


# ------------------------------------------------------------------
# Configs
# ------------------------------------------------------------------


@pytest.fixture
def retry_config() -> RetryConfig:
    return RetryConfig(
        max_attempts=3,
        initial_wait_seconds=0.01,
        max_wait_seconds=0.05,
        multiplier=2.0,
        breaker_fail_threshold=50,
    )


@pytest.fixture
def validation_config() -> ValidationConfig:
    return ValidationConfig()


@pytest.fixture
def cost_config() -> CostConfig:
    return CostConfig()


@pytest.fixture
def auth_config() -> AuthorizationConfig:
    return AuthorizationConfig(signing_secret=SIGNING_SECRET, sweep_interval_seconds=0.05)


@pytest.fixture
def ledger_config() -> LedgerConfig:
    return LedgerConfig(simulated_delay_seconds=0.0)


@pytest.fixture
def worker_config() -> WorkerConfig:
    return WorkerConfig(finalize_workers=2, queue_size=16)


@pytest.fixture
def content_store_config() -> ContentStoreConfig:
    return ContentStoreConfig(
        api_url="https://pin.test",
        gateway_url="https://gw1.test/ipfs",
        fallback_gateways=["https://gw2.test/ipfs", "https://gw3.test/ipfs"],
        jwt="test-jwt",
    )


@pytest.fixture
def imap_config() -> ImapConfig:
    return ImapConfig(
        host="imap.test.com",
        port=993,
        use_ssl=True,
        username="testuser",
        password="testpass",
        mailbox="INBOX",
        poll_interval_seconds=0.05,
    )


@pytest.fixture
def service_config(
    imap_config: ImapConfig,
    retry_config: RetryConfig,
    auth_config: AuthorizationConfig,
    ledger_config: LedgerConfig,
    worker_config: WorkerConfig,
    content_store_config: ContentStoreConfig,
) -> ServiceConfig:
    return ServiceConfig(
        name="datawallet-test",
        api_port=18080,
        log_json=False,
        imap=imap_config,
        retry=retry_config,
        authorization=auth_config,
        ledger=ledger_config,
        worker=worker_config,
        content_store=content_store_config,
    )


# ------------------------------------------------------------------
# Fakes for external systems
# ------------------------------------------------------------------


class FakeContentStore(ContentStore):
    """In-memory content-addressed store with switchable failure modes."""

    def __init__(self) -> None:
        self.objects: dict[str, bytes] = {}
        self.publish_failures = 0
        self.unreachable = False
        self.publish_calls = 0

    async def publish(self, content: bytes, name: str, metadata: dict[str, Any] | None = None) -> str:
        self.publish_calls += 1
        if self.publish_failures > 0:
            self.publish_failures -= 1
            raise PublishError(f"{name}: pinning API returned 503")
        locator = "bafy" + hashlib.sha256(content).hexdigest()[:40]
        self.objects[locator] = content
        return locator

    async def retrieve(self, locator: str) -> bytes:
        if self.unreachable or locator not in self.objects:
            raise RetrievalError(f"content {locator} unavailable", locator=locator, attempts=["gw: timeout"])
        return self.objects[locator]

    async def is_pinned(self, locator: str) -> bool:
        return locator in self.objects

    def tamper(self, locator: str, content: bytes) -> None:
        self.objects[locator] = content


class RecordingNotifier(Notifier):
    def __init__(self) -> None:
        self.requests: list[AuthorizationRequest] = []
        self.completed: list[ProcessingTask] = []
        self.failed: list[tuple[ProcessingTask, str]] = []

    async def send_authorization_request(self, request: AuthorizationRequest) -> None:
        self.requests.append(request)

    async def send_completion(self, task: ProcessingTask) -> None:
        self.completed.append(task)

    async def send_failure(self, task: ProcessingTask, reason: str) -> None:
        self.failed.append((task, reason))


class FakeMailSource(MailSource):
    def __init__(self, messages: list[NormalizedMessage | UnparsedMessage] | None = None) -> None:
        self.messages = list(messages or [])
        self.processed: list[str] = []

    async def test_connection(self) -> bool:
        return True

    async def list_unread(self) -> list[NormalizedMessage | UnparsedMessage]:
        return [m for m in self.messages if m.source_id not in self.processed]

    async def mark_processed(self, message_id: str) -> None:
        self.processed.append(message_id)


@pytest.fixture
def content_store() -> FakeContentStore:
    return FakeContentStore()


@pytest.fixture
def notifier() -> RecordingNotifier:
    return RecordingNotifier()


# ------------------------------------------------------------------
# Components
# ------------------------------------------------------------------


@pytest.fixture
def registry() -> OwnerRegistry:
    return OwnerRegistry(
        [
            OwnerRegistration(
                email=OWNER_EMAIL,
                identity=OWNER_IDENTITY,
                display_name="Alice",
                allow_list=["assistant@partner.org", "@trusted.example"],
            )
        ]
    )


@pytest.fixture
def store() -> InMemoryTaskStore:
    return InMemoryTaskStore()


@pytest.fixture
def signer() -> HmacSignatureVerifier:
    return HmacSignatureVerifier(SIGNING_SECRET)


@pytest.fixture
def broker(
    auth_config: AuthorizationConfig,
    store: InMemoryTaskStore,
    signer: HmacSignatureVerifier,
) -> AuthorizationBroker:
    return AuthorizationBroker(auth_config, store, signer)


@pytest.fixture
def publisher(content_store: FakeContentStore, retry_config: RetryConfig) -> ContentPublisher:
    return ContentPublisher(content_store, retry_config)


@pytest.fixture
def attestor(ledger_config: LedgerConfig, retry_config: RetryConfig) -> LedgerAttestor:
    return LedgerAttestor(SimulatedLedger(ledger_config), retry_config)


@pytest.fixture
def orchestrator(
    store: InMemoryTaskStore,
    validation_config: ValidationConfig,
    registry: OwnerRegistry,
    cost_config: CostConfig,
    broker: AuthorizationBroker,
    publisher: ContentPublisher,
    attestor: LedgerAttestor,
    notifier: RecordingNotifier,
    worker_config: WorkerConfig,
) -> TaskOrchestrator:
    return TaskOrchestrator(
        store=store,
        validator=Validator(validation_config, registry),
        allocator=WalletAllocator(cost_config),
        broker=broker,
        publisher=publisher,
        attestor=attestor,
        notifier=notifier,
        worker_config=worker_config,
    )


# ------------------------------------------------------------------
# Message builders
# ------------------------------------------------------------------


def make_pdf(size: int) -> bytes:
    """A payload of exactly *size* bytes carrying a PDF signature."""
    header = b"%PDF-1.7\n"
    return header + b"0" * (size - len(header))


def make_message(
    *,
    sender: str = OWNER_EMAIL,
    forwarded_by: str | None = None,
    to: list[str] | None = None,
    subject: str = "Quarterly statements",
    body: str = "Please store these statements.",
    attachments: list[tuple[str, str, bytes]] | None = None,
    size_bytes: int | None = None,
    authenticity_headers: list[str] | None = None,
    source_id: str | None = "101",
) -> NormalizedMessage:
    parsed = [ParsedAttachment(filename=f, content_type=ct, payload=p) for f, ct, p in attachments or []]
    return NormalizedMessage(
        message_id="<msg-001@example.com>",
        subject=subject,
        from_address=sender,
        to_addresses=to or ["wallet@rootz.test"],
        cc_addresses=[],
        date="Mon, 01 Jun 2025 12:00:00 +0000",
        body_text=body,
        body_html=None,
        headers={"Subject": subject, "From": sender},
        size_bytes=size_bytes if size_bytes is not None else len(body) + sum(len(p.payload) for p in parsed) + 500,
        forwarded_by=forwarded_by,
        authenticity_headers=authenticity_headers
        if authenticity_headers is not None
        else ["mx.test; spf=pass; dkim=pass header.d=example.com; dmarc=pass"],
        attachments=parsed,
        source_id=source_id,
    )


@pytest.fixture
def scenario_message() -> NormalizedMessage:
    """Two PDF attachments of 1,887,436 and 570,164 bytes."""
    return make_message(
        attachments=[
            ("statement-q1.pdf", "application/pdf", make_pdf(1_887_436)),
            ("statement-q2.pdf", "application/pdf", make_pdf(570_164)),
        ]
    )


def build_eml(
    *,
    subject: str = "Multipart Email",
    from_addr: str = OWNER_EMAIL,
    to_addr: str = "wallet@rootz.test",
    body_text: str = "Plain body",
    body_html: str | None = "<p>HTML body</p>",
    attachments: list[tuple[str, str, bytes]] | None = None,
    extra_headers: dict[str, str] | None = None,
) -> bytes:
    """Build a multipart message as raw bytes."""
    msg = MIMEMultipart("mixed")
    msg["Subject"] = subject
    msg["From"] = from_addr
    msg["To"] = to_addr
    msg["Message-ID"] = "<multi-001@example.com>"
    msg["Date"] = "Mon, 01 Jun 2025 12:00:00 +0000"
    for name, value in (extra_headers or {}).items():
        msg[name] = value

    alt = MIMEMultipart("alternative")
    alt.attach(MIMEText(body_text, "plain"))
    if body_html is not None:
        alt.attach(MIMEText(body_html, "html"))
    msg.attach(alt)

    for filename, content_type, payload in attachments or []:
        maintype, subtype = content_type.split("/", 1)
        part = MIMEBase(maintype, subtype)
        part.set_payload(payload)
        encoders.encode_base64(part)
        part.add_header("Content-Disposition", "attachment", filename=filename)
        msg.attach(part)

    return msg.as_bytes()
