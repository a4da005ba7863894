"""Service configuration loaded from environment variables.

Every concern has its own settings class and env-var prefix; the root
:class:`ServiceConfig` nests them so a single ``ServiceConfig()`` call
picks up the whole environment.
"""

from __future__ import annotations

from enum import Enum

from pydantic import Field, SecretStr, model_validator
from pydantic_settings import BaseSettings

MIB = 1024 * 1024


class PolicyMode(str, Enum):
    """How a permission check is answered.

    ``ALLOW_ALL_FOR_TESTING`` approves unconditionally and is meant for
    development environments only; every approval it grants is logged.
    """

    ENFORCED = "enforced"
    ALLOW_ALL_FOR_TESTING = "allow_all_for_testing"


class LedgerMode(str, Enum):
    SIMULATED = "simulated"
    REAL = "real"


class ImapConfig(BaseSettings):
    """IMAP mailbox the service polls for inbound messages."""

    model_config = {"env_prefix": "IMAP_"}

    host: str = Field(default="localhost", description="IMAP server hostname")
    port: int = Field(default=993, description="IMAP server port")
    use_ssl: bool = Field(default=True, description="Use SSL/TLS connection")
    username: str = Field(default="", description="IMAP login username")
    password: SecretStr = Field(default=SecretStr(""), description="IMAP login password")
    mailbox: str = Field(default="INBOX", description="IMAP mailbox/folder to poll")
    poll_interval_seconds: float = Field(
        default=60.0,
        description="Seconds between mailbox poll cycles",
    )


class ValidationConfig(BaseSettings):
    """Limits applied to every inbound message unless an owner overrides them."""

    model_config = {"env_prefix": "VALIDATION_"}

    max_message_bytes: int = Field(default=25 * MIB, description="Maximum raw message size")
    max_attachment_count: int = Field(default=10, description="Maximum attachments per message")
    max_attachment_bytes: int = Field(default=10 * MIB, description="Maximum size of one attachment")
    allowed_extensions: list[str] = Field(
        default=[".pdf", ".doc", ".docx", ".xls", ".xlsx", ".txt", ".jpg", ".png"],
        description="Attachment file extensions accepted for wallet creation",
    )
    allow_list_policy: PolicyMode = Field(
        default=PolicyMode.ENFORCED,
        description="Whether owner allow-lists are consulted or every sender is allowed",
    )
    registry_path: str | None = Field(
        default=None,
        description="JSON file holding owner registrations",
    )


class CostConfig(BaseSettings):
    """Credit prices used for the cost estimate."""

    model_config = {"env_prefix": "COST_"}

    email_credits: int = Field(default=3, description="Credits for the e-mail wallet")
    attachment_credits: int = Field(default=2, description="Credits per attachment wallet")
    authorization_credits: int = Field(default=1, description="Credits for the authorization step")
    size_credit_bytes: int = Field(
        default=MIB,
        description="Attachment bytes covered by one size unit (started units are charged)",
    )
    size_credits_per_unit: int = Field(default=1, description="Credits per size unit")


class AuthorizationConfig(BaseSettings):
    """Owner authorization window and signature policy."""

    model_config = {"env_prefix": "AUTH_"}

    base_url: str = Field(
        default="https://auth.rootz.global",
        description="Base URL of the page owners use to approve a task",
    )
    window_hours: float = Field(default=24.0, description="Lifetime of an authorization token")
    sweep_interval_seconds: float = Field(
        default=60.0,
        description="Seconds between sweeps cancelling expired authorization requests",
    )
    signature_policy: PolicyMode = Field(
        default=PolicyMode.ENFORCED,
        description="Whether signatures are checked against the signing secret",
    )
    signing_secret: SecretStr | None = Field(
        default=None,
        description="Shared secret for HMAC signatures over task id and token",
    )
    min_signature_length: int = Field(
        default=11,
        description="Shortest signature accepted when signatures are not enforced",
    )

    @model_validator(mode="after")
    def _require_secret_when_enforced(self) -> AuthorizationConfig:
        if self.signature_policy == PolicyMode.ENFORCED and self.signing_secret is None:
            raise ValueError("AUTH_SIGNING_SECRET is required when AUTH_SIGNATURE_POLICY=enforced")
        return self


class ContentStoreConfig(BaseSettings):
    """IPFS pinning service and retrieval gateways."""

    model_config = {"env_prefix": "CONTENT_STORE_"}

    api_url: str = Field(default="https://api.pinata.cloud", description="Pinning API base URL")
    gateway_url: str = Field(
        default="https://gateway.pinata.cloud/ipfs",
        description="Primary retrieval gateway",
    )
    fallback_gateways: list[str] = Field(
        default=[
            "https://ipfs.io/ipfs",
            "https://cloudflare-ipfs.com/ipfs",
            "https://dweb.link/ipfs",
        ],
        description="Gateways tried in order when the primary gateway fails",
    )
    jwt: SecretStr | None = Field(default=None, description="Pinning service JWT")
    api_key: str | None = Field(default=None, description="Pinning service API key")
    secret_key: SecretStr | None = Field(default=None, description="Pinning service API secret")
    connect_timeout_seconds: float = Field(default=10.0, description="Connect timeout per request")
    read_timeout_seconds: float = Field(default=300.0, description="Read timeout per request")
    max_upload_bytes: int = Field(default=100 * MIB, description="Largest artifact accepted for upload")


class LedgerConfig(BaseSettings):
    """Ledger attestation settings."""

    model_config = {"env_prefix": "LEDGER_"}

    mode: LedgerMode = Field(default=LedgerMode.SIMULATED, description="simulated or real transactions")
    rpc_url: str | None = Field(default=None, description="JSON-RPC endpoint of the ledger node")
    network: str = Field(default="polygon-amoy", description="Network identifier recorded on attestations")
    chain_id: int = Field(default=80002, description="Chain id of the network")
    contract_address: str | None = Field(default=None, description="Attestation contract address")
    sender_address: str | None = Field(
        default=None,
        description="Account the node signs attestation transactions with",
    )
    schema_path: str | None = Field(default=None, description="Contract schema JSON file")
    attest_function: str = Field(default="updateIPFSHash", description="Contract function recording a locator")
    registered_function: str = Field(default="isRegistered", description="Contract registration query")
    balance_function: str = Field(default="getCreditBalance", description="Contract balance query")
    simulated_delay_seconds: float = Field(default=1.0, description="Delay of a simulated attestation")
    simulated_balance: int = Field(default=60, description="Balance reported in simulated mode")
    gas_buffer_percent: int = Field(default=20, description="Headroom added to the gas estimate")
    confirmation_timeout_seconds: float = Field(default=120.0, description="Maximum wait for a receipt")
    confirmation_poll_seconds: float = Field(default=2.0, description="Interval between receipt polls")
    timeout_seconds: float = Field(default=30.0, description="JSON-RPC request timeout")

    @model_validator(mode="after")
    def _require_real_mode_settings(self) -> LedgerConfig:
        if self.mode == LedgerMode.REAL:
            missing = [
                name
                for name in ("rpc_url", "contract_address", "sender_address", "schema_path")
                if not getattr(self, name)
            ]
            if missing:
                raise ValueError(f"ledger mode 'real' requires: {', '.join(missing)}")
        return self


class RetryConfig(BaseSettings):
    """Retry / backoff and circuit breaker settings for external calls."""

    model_config = {"env_prefix": "RETRY_"}

    max_attempts: int = Field(default=3, description="Maximum attempts per external call")
    initial_wait_seconds: float = Field(default=1.0, description="Initial backoff wait in seconds")
    max_wait_seconds: float = Field(default=30.0, description="Maximum backoff wait in seconds")
    multiplier: float = Field(default=2.0, description="Exponential backoff multiplier")
    breaker_fail_threshold: int = Field(
        default=5,
        description="Consecutive failed calls that open a circuit",
    )
    breaker_reset_seconds: float = Field(
        default=60.0,
        description="Seconds an open circuit waits before letting a trial call through",
    )
    breaker_max_reset_seconds: float = Field(
        default=600.0,
        description="Upper bound for the reset wait after repeated openings",
    )


class WorkerConfig(BaseSettings):
    """Finalize queue and worker pool."""

    model_config = {"env_prefix": "WORKER_"}

    finalize_workers: int = Field(default=4, description="Concurrent finalize workers")
    queue_size: int = Field(default=256, description="Maximum queued finalize jobs")
    redrive_interval_seconds: float = Field(
        default=30.0,
        description="Seconds between passes re-queueing authorized tasks that have no finalize job",
    )


class NotifierConfig(BaseSettings):
    """Where owner notifications are delivered."""

    model_config = {"env_prefix": "NOTIFIER_"}

    webhook_url: str | None = Field(
        default=None,
        description="POST notifications to this URL; log them when unset",
    )
    timeout_seconds: float = Field(default=10.0, description="Webhook request timeout")


class ServiceConfig(BaseSettings):
    """Root configuration for the data wallet service.

    Nested configs are populated from their own env-var prefixes.
    """

    model_config = {"env_prefix": "DATAWALLET_"}

    name: str = Field(default="email-data-wallet", description="Service name used in logs and health")
    api_host: str = Field(default="0.0.0.0", description="Bind address of the HTTP API")
    api_port: int = Field(default=8080, description="Port of the HTTP API and health endpoints")
    log_level: str = Field(default="INFO", description="Root log level")
    log_json: bool = Field(default=True, description="Render logs as JSON lines")
    poll_enabled: bool = Field(default=True, description="Poll the mailbox for new messages")

    imap: ImapConfig = Field(default_factory=ImapConfig)
    validation: ValidationConfig = Field(default_factory=ValidationConfig)
    cost: CostConfig = Field(default_factory=CostConfig)
    authorization: AuthorizationConfig = Field(default_factory=AuthorizationConfig)
    content_store: ContentStoreConfig = Field(default_factory=ContentStoreConfig)
    ledger: LedgerConfig = Field(default_factory=LedgerConfig)
    retry: RetryConfig = Field(default_factory=RetryConfig)
    worker: WorkerConfig = Field(default_factory=WorkerConfig)
    notifier: NotifierConfig = Field(default_factory=NotifierConfig)
