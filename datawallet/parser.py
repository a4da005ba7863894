"""MIME parser: raw RFC 822 bytes -> :class:`NormalizedMessage`."""

from __future__ import annotations

import email
import email.policy
import email.utils
from dataclasses import dataclass, field
from email.message import Message

FORWARDED_BY_HEADERS = ("X-Forwarded-For", "X-Forwarded-By", "Resent-From")
AUTHENTICITY_HEADERS = ("Authentication-Results", "ARC-Authentication-Results", "Received-SPF")


@dataclass
class ParsedAttachment:
    """A single attachment extracted from a MIME message."""

    filename: str
    content_type: str
    payload: bytes

    @property
    def size(self) -> int:
        return len(self.payload)

    @property
    def extension(self) -> str:
        _, dot, ext = self.filename.rpartition(".")
        return f".{ext.lower()}" if dot else ""


@dataclass
class NormalizedMessage:
    """Structured representation of one inbound message."""

    message_id: str
    subject: str
    from_address: str
    to_addresses: list[str]
    cc_addresses: list[str]
    date: str
    body_text: str | None
    body_html: str | None
    headers: dict[str, str]
    size_bytes: int
    forwarded_by: str | None = None
    authenticity_headers: list[str] = field(default_factory=list)
    attachments: list[ParsedAttachment] = field(default_factory=list)
    source_id: str | None = None

    @property
    def sender(self) -> str:
        """Address that submitted the message: the forwarder if any, else ``From``."""
        return self.forwarded_by or self.from_address

    @property
    def recipients(self) -> list[str]:
        return [*self.to_addresses, *self.cc_addresses]


@dataclass
class UnparsedMessage:
    """Raw bytes of a message the mail source could not parse.

    Still ingested, so it ends as a failed task instead of being listed
    on every poll.
    """

    raw_bytes: bytes
    source_id: str | None
    error: str


class MimeParser:
    """Stateless parser for raw messages."""

    def parse(self, raw_bytes: bytes, *, source_id: str | None = None) -> NormalizedMessage:
        msg = email.message_from_bytes(raw_bytes, policy=email.policy.default)

        body_text, body_html = self._extract_bodies(msg)

        return NormalizedMessage(
            message_id=str(msg.get("Message-ID", "")).strip(),
            subject=str(msg.get("Subject", "")),
            from_address=self._first_address(msg.get("From")) or "",
            to_addresses=self._parse_address_list(msg.get("To")),
            cc_addresses=self._parse_address_list(msg.get("Cc")),
            date=str(msg.get("Date", "")),
            body_text=body_text,
            body_html=body_html,
            headers={k: str(v) for k, v in msg.items()},
            size_bytes=len(raw_bytes),
            forwarded_by=self._forwarded_by(msg),
            authenticity_headers=[
                str(value) for name in AUTHENTICITY_HEADERS for value in msg.get_all(name, [])
            ],
            attachments=self._extract_attachments(msg),
            source_id=source_id,
        )

    def _forwarded_by(self, msg: Message) -> str | None:
        for header in FORWARDED_BY_HEADERS:
            address = self._first_address(msg.get(header))
            if address:
                return address
        return None

    def _extract_bodies(self, msg: Message) -> tuple[str | None, str | None]:
        """Walk MIME parts and return (plain_text, html_text)."""
        body_text: str | None = None
        body_html: str | None = None

        for part in msg.walk():
            if part.get_content_maintype() == "multipart":
                continue
            if "attachment" in str(part.get("Content-Disposition", "")):
                continue

            content_type = part.get_content_type()
            payload = part.get_content()
            if not isinstance(payload, str):
                continue
            if content_type == "text/plain" and body_text is None:
                body_text = payload
            elif content_type == "text/html" and body_html is None:
                body_html = payload

        return body_text, body_html

    def _extract_attachments(self, msg: Message) -> list[ParsedAttachment]:
        attachments: list[ParsedAttachment] = []

        for part in msg.walk():
            if part.get_content_maintype() == "multipart":
                continue
            disposition = str(part.get("Content-Disposition", ""))
            filename = part.get_filename()
            if "attachment" not in disposition and not filename:
                continue

            payload = part.get_content()
            if isinstance(payload, bytes):
                raw = payload
            elif isinstance(payload, str):
                raw = payload.encode("utf-8")
            else:
                # message/rfc822 parts come back as Message objects
                raw = payload.as_bytes()

            attachments.append(
                ParsedAttachment(
                    filename=filename or "unnamed",
                    content_type=part.get_content_type(),
                    payload=raw,
                )
            )

        return attachments

    def _first_address(self, header_value: object) -> str | None:
        addresses = self._parse_address_list(header_value)
        return addresses[0] if addresses else None

    def _parse_address_list(self, header_value: object) -> list[str]:
        if not header_value:
            return []
        return [addr.lower() for _, addr in email.utils.getaddresses([str(header_value)]) if addr]
