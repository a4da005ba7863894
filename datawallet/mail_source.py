"""IMAP-backed :class:`MailSource`."""

from __future__ import annotations

import imaplib

import structlog

from .config import ImapConfig
from .errors import MailSourceError
from .imap_client import AsyncImapClient
from .interfaces import MailSource
from .parser import MimeParser, NormalizedMessage, UnparsedMessage

logger = structlog.get_logger()


class ImapMailSource(MailSource):
    """Lists unseen messages in one mailbox and flags them once processed.

    The connection is opened lazily and re-opened when a NOOP shows it has
    dropped.  Messages that fail to parse are returned as
    :class:`UnparsedMessage` so they can still be ingested and acknowledged.
    """

    def __init__(self, config: ImapConfig, *, client: AsyncImapClient | None = None) -> None:
        self._config = config
        self._client = client or AsyncImapClient(config)
        self._parser = MimeParser()

    async def _ensure_connected(self) -> None:
        if not await self._client.is_connected():
            await self._client.disconnect()
            await self._client.connect()

    async def test_connection(self) -> bool:
        try:
            await self._ensure_connected()
        except (imaplib.IMAP4.error, OSError) as exc:
            logger.warning("imap_connection_test_failed", host=self._config.host, error=str(exc))
            return False
        return True

    async def list_unread(self) -> list[NormalizedMessage | UnparsedMessage]:
        try:
            await self._ensure_connected()
            fetched = await self._client.fetch_unseen()
        except (imaplib.IMAP4.error, OSError) as exc:
            raise MailSourceError(f"listing unread messages failed: {exc}") from exc

        messages: list[NormalizedMessage | UnparsedMessage] = []
        for item in fetched:
            try:
                messages.append(self._parser.parse(item.raw_bytes, source_id=item.uid))
            except (ValueError, LookupError) as exc:
                logger.warning("message_parse_failed", uid=item.uid, error=str(exc))
                messages.append(UnparsedMessage(raw_bytes=item.raw_bytes, source_id=item.uid, error=str(exc)))
        logger.info("unread_messages_listed", count=len(messages))
        return messages

    async def mark_processed(self, message_id: str) -> None:
        try:
            await self._client.mark_seen(message_id)
        except (imaplib.IMAP4.error, OSError) as exc:
            raise MailSourceError(f"marking {message_id} processed failed: {exc}") from exc
        logger.debug("message_marked_processed", uid=message_id)

    async def close(self) -> None:
        await self._client.disconnect()
