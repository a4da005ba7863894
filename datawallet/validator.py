"""Decides whether an inbound message may become a data wallet."""

from __future__ import annotations

from dataclasses import dataclass, field

import structlog

from .config import ValidationConfig
from .errors import ValidationError
from .parser import NormalizedMessage, ParsedAttachment
from .registry import OwnerRegistration, OwnerRegistry

logger = structlog.get_logger()

FILE_SIGNATURES: dict[str, bytes] = {
    ".pdf": b"%PDF",
    ".jpg": b"\xff\xd8\xff",
    ".jpeg": b"\xff\xd8\xff",
    ".png": b"\x89PNG\r\n\x1a\n",
    ".zip": b"PK\x03\x04",
}


@dataclass
class AuthenticityReport:
    """SPF / DKIM / DMARC results found in the message headers."""

    spf: bool
    dkim: bool
    dmarc: bool

    @property
    def score(self) -> int:
        return sum((self.spf, self.dkim, self.dmarc))

    @property
    def warnings(self) -> list[str]:
        checks = (("SPF", self.spf), ("DKIM", self.dkim), ("DMARC", self.dmarc))
        return [f"{name} did not pass" for name, passed in checks if not passed]


@dataclass
class ValidationResult:
    owner: OwnerRegistration
    authenticity: AuthenticityReport
    warnings: list[str] = field(default_factory=list)

    @property
    def owner_identity(self) -> str:
        return self.owner.identity


def assess_authenticity(message: NormalizedMessage) -> AuthenticityReport:
    values = [value.lower() for value in message.authenticity_headers]
    joined = " ".join(values)
    return AuthenticityReport(
        spf="spf=pass" in joined or any(value.startswith("pass") for value in values),
        dkim="dkim=pass" in joined,
        dmarc="dmarc=pass" in joined,
    )


class Validator:
    """Runs every independent check and reports all violations together.

    Authenticity results only ever produce warnings.
    """

    def __init__(self, config: ValidationConfig, registry: OwnerRegistry) -> None:
        self._config = config
        self._registry = registry

    def validate(self, message: NormalizedMessage) -> ValidationResult:
        """Return the owning registration or raise :class:`ValidationError`."""
        errors: list[str] = []

        owner = self._resolve_owner(message)
        if owner is None:
            errors.append(
                f"sender {message.sender or '<missing>'} is not registered "
                "and not on any owner's allow-list"
            )

        errors.extend(self._check_size(message, owner))
        errors.extend(self._check_attachments(message, owner))

        authenticity = assess_authenticity(message)
        warnings = authenticity.warnings

        if errors:
            logger.info(
                "message_rejected",
                message_id=message.message_id,
                sender=message.sender,
                errors=errors,
            )
            raise ValidationError(errors, warnings)

        assert owner is not None
        if warnings:
            logger.warning(
                "message_authenticity_warnings",
                message_id=message.message_id,
                score=authenticity.score,
                warnings=warnings,
            )
        return ValidationResult(owner=owner, authenticity=authenticity, warnings=warnings)

    # ------------------------------------------------------------------
    # Checks
    # ------------------------------------------------------------------

    def _resolve_owner(self, message: NormalizedMessage) -> OwnerRegistration | None:
        if not message.sender:
            return None
        owner = self._registry.lookup(message.sender)
        if owner is not None:
            return owner

        # Delegated submission: a registered recipient allow-lists the original sender
        for recipient in message.recipients:
            candidate = self._registry.lookup(recipient)
            if candidate is not None and self._registry.is_allowed(candidate, message.from_address):
                logger.info(
                    "sender_allow_listed",
                    sender=message.from_address,
                    owner=candidate.identity,
                )
                return candidate
        return None

    def _check_size(self, message: NormalizedMessage, owner: OwnerRegistration | None) -> list[str]:
        limit = self._config.max_message_bytes
        if owner is not None and owner.limits.max_message_bytes is not None:
            limit = owner.limits.max_message_bytes
        if message.size_bytes > limit:
            return [f"message size {message.size_bytes} bytes exceeds maximum of {limit} bytes"]
        return []

    def _check_attachments(
        self,
        message: NormalizedMessage,
        owner: OwnerRegistration | None,
    ) -> list[str]:
        errors: list[str] = []
        max_count = self._config.max_attachment_count
        allowed = self._config.allowed_extensions
        if owner is not None:
            if owner.limits.max_attachment_count is not None:
                max_count = owner.limits.max_attachment_count
            if owner.limits.allowed_extensions is not None:
                allowed = owner.limits.allowed_extensions
        allowed_set = {ext.lower() for ext in allowed}

        if len(message.attachments) > max_count:
            errors.append(f"{len(message.attachments)} attachments exceed maximum of {max_count}")

        for attachment in message.attachments:
            errors.extend(self._check_attachment(attachment, allowed_set))
        return errors

    def _check_attachment(self, attachment: ParsedAttachment, allowed: set[str]) -> list[str]:
        errors: list[str] = []
        if attachment.extension not in allowed:
            errors.append(f"attachment {attachment.filename}: file type not allowed")
        if attachment.size > self._config.max_attachment_bytes:
            errors.append(
                f"attachment {attachment.filename}: {attachment.size} bytes exceeds "
                f"maximum of {self._config.max_attachment_bytes} bytes"
            )
        signature = FILE_SIGNATURES.get(attachment.extension)
        if signature is not None and not attachment.payload.startswith(signature):
            errors.append(f"attachment {attachment.filename}: content does not match file type")
        return errors
