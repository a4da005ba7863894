"""Domain records of the data wallet pipeline."""

from __future__ import annotations

import uuid
from datetime import UTC, datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel, Field, computed_field


def utcnow() -> datetime:
    return datetime.now(UTC)


def new_task_id() -> str:
    """Timestamp plus random suffix, e.g. ``task_1718000000_1a2b3c4d``."""
    return f"task_{int(utcnow().timestamp())}_{uuid.uuid4().hex[:8]}"


class TaskState(str, Enum):
    """Lifecycle states of a :class:`ProcessingTask`."""

    RECEIVED = "received"
    VALIDATING = "validating"
    CREATING = "creating"
    PENDING_AUTHORIZATION = "pending_authorization"
    AUTHORIZED = "authorized"
    PROCESSING = "processing"
    PUBLISHING = "publishing"
    ATTESTING = "attesting"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in (TaskState.COMPLETED, TaskState.FAILED, TaskState.CANCELLED)


class StepOutcome(str, Enum):
    STARTED = "started"
    COMPLETED = "completed"
    FAILED = "failed"
    WARNING = "warning"


class ProcessingLogEntry(BaseModel):
    """One append-only entry in a task's processing log."""

    timestamp: datetime = Field(default_factory=utcnow, description="When the step was recorded (UTC)")
    step: str = Field(description="Pipeline step name")
    outcome: StepOutcome = Field(description="Result of the step")
    message: str = Field(default="", description="Human-readable detail")
    error: str | None = Field(default=None, description="Error description for failed steps")


class LedgerAttestationRecord(BaseModel):
    """A content locator recorded against a task on the ledger."""

    task_id: str
    locator: str = Field(description="Content locator that was attested")
    tx_ref: str = Field(description="Ledger transaction reference")
    network: str = Field(description="Ledger network identifier")
    simulated: bool = Field(default=False, description="True when no real transaction was sent")
    attested_at: datetime = Field(default_factory=utcnow)


class ArtifactRole(str, Enum):
    EMAIL = "email"
    ATTACHMENT = "attachment"


class VerificationOutcome(str, Enum):
    UNVERIFIED = "unverified"
    VERIFIED = "verified"
    MISMATCHED = "mismatched"


class ContentArtifact(BaseModel):
    """One unit of content destined for the content-addressed store."""

    role: ArtifactRole
    name: str = Field(description="File name used when publishing")
    content_type: str = Field(default="application/octet-stream")
    content_hash: str = Field(description="0x-prefixed SHA-256 of the raw content")
    size_bytes: int
    locator: str | None = Field(default=None, description="Content store locator once published")
    verification: VerificationOutcome = Field(default=VerificationOutcome.UNVERIFIED)


class ProcessingTask(BaseModel):
    """Tracks one inbound message from receipt to completion.

    Tasks are never mutated in place: every change produces a new record
    which replaces the stored one as a whole.
    """

    task_id: str = Field(default_factory=new_task_id, description="Globally unique, immutable task identity")
    message_id: str = Field(default="", description="Message-ID of the source message")
    state: TaskState = Field(default=TaskState.RECEIVED)
    owner_identity: str | None = Field(default=None, description="Owning identity once validated")
    created_at: datetime = Field(default_factory=utcnow)
    authorized_at: datetime | None = None
    completed_at: datetime | None = None
    estimated_cost: int = Field(default=0, description="Estimated credits")
    actual_cost: int | None = Field(default=None, description="Credits charged on completion")
    processing_log: list[ProcessingLogEntry] = Field(default_factory=list)
    artifacts: list[ContentArtifact] = Field(default_factory=list, description="Artifacts allocated for this task")
    attestation: LedgerAttestationRecord | None = None
    error: str | None = Field(default=None, description="Terminal error message")

    @computed_field  # type: ignore[prop-decorator]
    @property
    def artifact_locators(self) -> list[str]:
        return [a.locator for a in self.artifacts if a.locator is not None]

    @property
    def state_history(self) -> list[TaskState]:
        """States the task has entered, in order, reconstructed from its log."""
        history = [TaskState.RECEIVED]
        for entry in self.processing_log:
            if entry.step.startswith("state:"):
                history.append(TaskState(entry.step.removeprefix("state:")))
        return history


class CostBreakdown(BaseModel):
    """Estimated credits, itemised."""

    email: int
    attachments: int
    authorization: int
    size: int

    @property
    def total(self) -> int:
        return self.email + self.attachments + self.authorization + self.size


class AuthorizationSummary(BaseModel):
    """What the owner is asked to approve."""

    subject: str
    sender: str
    attachment_count: int
    estimated_cost: int


class AuthorizationRequest(BaseModel):
    """A live, single-use approval request for one task."""

    task_id: str
    owner_identity: str
    token: str
    created_at: datetime = Field(default_factory=utcnow)
    expires_at: datetime
    summary: AuthorizationSummary
    callback_url: str

    def is_expired(self, now: datetime | None = None) -> bool:
        return (now or utcnow()) >= self.expires_at


class TransactionStatus(str, Enum):
    PENDING = "pending"
    CONFIRMED = "confirmed"
    FAILED = "failed"


class ContentVerification(BaseModel):
    """Result of verifying one piece of published content."""

    locator: str
    content_verified: bool
    wallet_verified: bool | None = Field(
        default=None,
        description="Outcome of the identity derivation check; None when the content carries no identity claim",
    )
    expected_hash: str | None = None
    actual_hash: str | None = None
    error: str | None = None
    pinned: bool | None = Field(
        default=None,
        description="Whether the content store reports the content pinned; None when unknown",
    )


class ServiceStatus(str, Enum):
    STARTING = "starting"
    RUNNING = "running"
    DEGRADED = "degraded"
    STOPPING = "stopping"
    STOPPED = "stopped"


class HealthStatus(BaseModel):
    """Response model for the /health endpoint."""

    service_name: str
    status: ServiceStatus
    uptime_seconds: float
    details: dict[str, Any] = Field(default_factory=dict)
