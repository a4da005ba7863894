"""Owner registrations and their sender allow-lists."""

from __future__ import annotations

import json
import re
from pathlib import Path

import structlog
from pydantic import BaseModel, Field, field_validator

from .config import PolicyMode

logger = structlog.get_logger()

IDENTITY_RE = re.compile(r"^0x[0-9a-fA-F]{40}$")


class OwnerLimits(BaseModel):
    """Per-owner overrides of the global validation limits."""

    max_message_bytes: int | None = None
    max_attachment_count: int | None = None
    allowed_extensions: list[str] | None = None


class OwnerRegistration(BaseModel):
    """An e-mail address registered to an owning identity."""

    email: str = Field(description="Registered e-mail address")
    identity: str = Field(description="0x-prefixed 20-byte owner address")
    display_name: str = ""
    active: bool = True
    allow_list: list[str] = Field(
        default_factory=list,
        description="Sender addresses or @domains allowed to submit on the owner's behalf",
    )
    limits: OwnerLimits = Field(default_factory=OwnerLimits)

    @field_validator("email")
    @classmethod
    def _normalise_email(cls, value: str) -> str:
        return value.strip().lower()

    @field_validator("identity")
    @classmethod
    def _check_identity(cls, value: str) -> str:
        if not IDENTITY_RE.match(value):
            raise ValueError(f"invalid owner identity {value!r}")
        return value.lower()

    @field_validator("allow_list")
    @classmethod
    def _normalise_allow_list(cls, value: list[str]) -> list[str]:
        return [entry.strip().lower() for entry in value if entry.strip()]


class OwnerRegistry:
    """Looks up owners by e-mail address and answers allow-list queries.

    With ``PolicyMode.ALLOW_ALL_FOR_TESTING`` every allow-list query is
    approved; each such approval is logged as a warning.
    """

    def __init__(
        self,
        registrations: list[OwnerRegistration] | None = None,
        *,
        policy: PolicyMode = PolicyMode.ENFORCED,
    ) -> None:
        self.policy = policy
        self._by_email: dict[str, OwnerRegistration] = {}
        for registration in registrations or []:
            self.register(registration)
        if policy == PolicyMode.ALLOW_ALL_FOR_TESTING:
            logger.warning("allow_list_policy_allow_all", policy=policy.value)

    @classmethod
    def from_file(cls, path: str | Path, *, policy: PolicyMode = PolicyMode.ENFORCED) -> OwnerRegistry:
        """Load registrations from a JSON list of registration objects."""
        data = json.loads(Path(path).read_text(encoding="utf-8"))
        registrations = [OwnerRegistration.model_validate(item) for item in data]
        logger.info("owner_registry_loaded", path=str(path), owners=len(registrations))
        return cls(registrations, policy=policy)

    def register(self, registration: OwnerRegistration) -> None:
        self._by_email[registration.email] = registration

    def lookup(self, address: str) -> OwnerRegistration | None:
        """Active registration for *address*, if any."""
        registration = self._by_email.get(address.strip().lower())
        if registration is None or not registration.active:
            return None
        return registration

    def lookup_identity(self, identity: str) -> OwnerRegistration | None:
        wanted = identity.lower()
        for registration in self._by_email.values():
            if registration.identity == wanted and registration.active:
                return registration
        return None

    def is_allowed(self, owner: OwnerRegistration, sender: str) -> bool:
        """True if *sender* may submit messages on behalf of *owner*."""
        if self.policy == PolicyMode.ALLOW_ALL_FOR_TESTING:
            logger.warning(
                "allow_list_bypassed",
                owner=owner.identity,
                sender=sender,
                policy=self.policy.value,
            )
            return True

        sender = sender.strip().lower()
        domain = "@" + sender.rpartition("@")[2]
        return sender in owner.allow_list or domain in owner.allow_list
