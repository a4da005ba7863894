"""Email data wallet service.

Turns inbound e-mail into owner-authorized, content-addressed data wallets
attested on a ledger.  Public API re-exported here for convenience::

    from datawallet import DataWalletService, ServiceConfig
"""

from .authorization import AuthorizationBroker, HmacSignatureVerifier, SignatureVerifier
from .config import PolicyMode, ServiceConfig
from .content_store import IpfsContentStore
from .errors import (
    AttestationError,
    AuthorizationError,
    ContentIntegrityError,
    DataWalletError,
    NotFoundError,
    PublishError,
    RetrievalError,
    ValidationError,
)
from .interfaces import ContentStore, Ledger, MailSource, Notifier
from .ledger import LedgerAttestor, build_ledger
from .logging import setup_logging
from .models import ContentArtifact, ProcessingTask, TaskState
from .orchestrator import TaskOrchestrator
from .parser import MimeParser, NormalizedMessage
from .service import DataWalletService
from .task_store import InMemoryTaskStore, TaskStore
from .verifier import ContentPublisher, compute_content_hash, derive_identity

__all__ = [
    "AttestationError",
    "AuthorizationBroker",
    "AuthorizationError",
    "ContentArtifact",
    "ContentIntegrityError",
    "ContentPublisher",
    "ContentStore",
    "DataWalletError",
    "DataWalletService",
    "HmacSignatureVerifier",
    "InMemoryTaskStore",
    "IpfsContentStore",
    "Ledger",
    "LedgerAttestor",
    "MailSource",
    "MimeParser",
    "NormalizedMessage",
    "NotFoundError",
    "Notifier",
    "PolicyMode",
    "ProcessingTask",
    "PublishError",
    "RetrievalError",
    "ServiceConfig",
    "SignatureVerifier",
    "TaskOrchestrator",
    "TaskState",
    "TaskStore",
    "ValidationError",
    "build_ledger",
    "compute_content_hash",
    "derive_identity",
    "setup_logging",
]
