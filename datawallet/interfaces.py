"""Abstract interfaces of the external systems the pipeline talks to."""

from __future__ import annotations

import abc
from typing import Any

from .models import AuthorizationRequest, ProcessingTask, TransactionStatus
from .parser import NormalizedMessage, UnparsedMessage


class MailSource(abc.ABC):
    """Supplies unread messages and accepts processed acknowledgements."""

    @abc.abstractmethod
    async def test_connection(self) -> bool:
        """Return True if the source is reachable with the configured credentials."""

    @abc.abstractmethod
    async def list_unread(self) -> list[NormalizedMessage | UnparsedMessage]:
        """Return messages not yet acknowledged, oldest first.

        Messages that could not be parsed are returned as
        :class:`UnparsedMessage` rather than dropped.
        """

    @abc.abstractmethod
    async def mark_processed(self, message_id: str) -> None:
        """Acknowledge a message so it is not listed again.

        *message_id* is the ``source_id`` of a message returned by
        :meth:`list_unread`.
        """

    async def close(self) -> None:
        """Release connections.  The default does nothing."""


class Notifier(abc.ABC):
    """Delivers owner-facing notices.  Delivery is best-effort."""

    async def start(self) -> None:
        """Open connections.  The default does nothing."""

    async def stop(self) -> None:
        """Close connections.  The default does nothing."""

    @abc.abstractmethod
    async def send_authorization_request(self, request: AuthorizationRequest) -> None: ...

    @abc.abstractmethod
    async def send_completion(self, task: ProcessingTask) -> None: ...

    @abc.abstractmethod
    async def send_failure(self, task: ProcessingTask, reason: str) -> None: ...


class ContentStore(abc.ABC):
    """Content-addressed storage."""

    async def start(self) -> None: ...

    async def stop(self) -> None: ...

    @abc.abstractmethod
    async def publish(self, content: bytes, name: str, metadata: dict[str, Any] | None = None) -> str:
        """Store *content* and return its locator.  Raises ``PublishError``."""

    @abc.abstractmethod
    async def retrieve(self, locator: str) -> bytes:
        """Fetch content, falling back across endpoints.  Raises ``RetrievalError``."""

    @abc.abstractmethod
    async def is_pinned(self, locator: str) -> bool: ...

    async def test_connection(self) -> bool:
        return True


class Ledger(abc.ABC):
    """Distributed ledger used for attestations and account queries."""

    network: str

    async def start(self) -> None: ...

    async def stop(self) -> None: ...

    @abc.abstractmethod
    async def attest(self, task_id: str, locator: str) -> str:
        """Record *locator* against *task_id* and return the transaction reference."""

    @abc.abstractmethod
    async def is_registered(self, identity: str) -> bool: ...

    @abc.abstractmethod
    async def get_balance(self, identity: str) -> int: ...

    @abc.abstractmethod
    async def get_transaction_status(self, tx_ref: str) -> TransactionStatus: ...

    async def test_connection(self) -> bool:
        return True
