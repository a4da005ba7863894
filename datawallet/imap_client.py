"""Async IMAP client wrapping stdlib imaplib with asyncio.to_thread."""

from __future__ import annotations

import asyncio
import imaplib
from dataclasses import dataclass

import structlog

from .config import ImapConfig

logger = structlog.get_logger()


@dataclass
class FetchedEmail:
    """Raw message fetched from IMAP."""

    uid: str
    raw_bytes: bytes


class AsyncImapClient:
    """Async-friendly IMAP client.

    Blocking ``imaplib`` calls run in a worker thread.  Messages are fetched
    with ``BODY.PEEK[]`` so reading them does not set ``\\Seen``; a message
    is only flagged once it has been processed.
    """

    def __init__(self, config: ImapConfig) -> None:
        self._config = config
        self._conn: imaplib.IMAP4_SSL | imaplib.IMAP4 | None = None

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def connect(self) -> None:
        await asyncio.to_thread(self._connect_sync)
        logger.info("imap_connected", host=self._config.host, mailbox=self._config.mailbox)

    def _connect_sync(self) -> None:
        if self._config.use_ssl:
            self._conn = imaplib.IMAP4_SSL(self._config.host, self._config.port)
        else:
            self._conn = imaplib.IMAP4(self._config.host, self._config.port)
        self._conn.login(self._config.username, self._config.password.get_secret_value())
        self._conn.select(self._config.mailbox)

    async def disconnect(self) -> None:
        if self._conn is not None:
            await asyncio.to_thread(self._disconnect_sync)
            self._conn = None
            logger.info("imap_disconnected")

    def _disconnect_sync(self) -> None:
        assert self._conn is not None
        for command in (self._conn.close, self._conn.logout):
            try:
                command()
            except (imaplib.IMAP4.error, OSError) as exc:
                logger.debug("imap_disconnect_error", error=str(exc))

    async def is_connected(self) -> bool:
        """Check connection liveness with a NOOP command."""
        if self._conn is None:
            return False
        try:
            status, _ = await asyncio.to_thread(self._conn.noop)
            return status == "OK"
        except (imaplib.IMAP4.error, OSError):
            return False

    # ------------------------------------------------------------------
    # Messages
    # ------------------------------------------------------------------

    async def fetch_unseen(self) -> list[FetchedEmail]:
        assert self._conn is not None, "Not connected"
        return await asyncio.to_thread(self._fetch_unseen_sync)

    async def mark_seen(self, uid: str) -> None:
        assert self._conn is not None, "Not connected"
        await asyncio.to_thread(self._mark_seen_sync, uid)

    def _fetch_unseen_sync(self) -> list[FetchedEmail]:
        assert self._conn is not None
        status, data = self._conn.uid("SEARCH", None, "UNSEEN")
        if status != "OK" or not data or not data[0]:
            return []

        results: list[FetchedEmail] = []
        for uid_bytes in data[0].split():
            uid = uid_bytes.decode()
            status, msg_data = self._conn.uid("FETCH", uid, "(BODY.PEEK[])")
            if status != "OK" or not msg_data or not msg_data[0]:
                logger.warning("imap_fetch_skipped", uid=uid, status=status)
                continue
            raw_bytes: bytes = msg_data[0][1]  # type: ignore[index]
            results.append(FetchedEmail(uid=uid, raw_bytes=raw_bytes))

        logger.debug("imap_poll_complete", fetched=len(results))
        return results

    def _mark_seen_sync(self, uid: str) -> None:
        assert self._conn is not None
        status, _ = self._conn.uid("STORE", uid, "+FLAGS", "(\\Seen)")
        if status != "OK":
            raise imaplib.IMAP4.error(f"STORE failed for uid {uid}: {status}")
