"""Request/response schemas for the HTTP API."""

from __future__ import annotations

from pydantic import BaseModel, Field

from .models import ContentVerification, ProcessingTask, TaskState


class AuthorizeBody(BaseModel):
    """Request body for POST /api/v1/tasks/{id}/authorize."""

    signature: str = Field(min_length=1)
    identity: str = Field(min_length=1, description="Identity claiming ownership of the task")


class RejectBody(BaseModel):
    """Request body for POST /api/v1/tasks/{id}/reject."""

    identity: str = Field(min_length=1)
    reason: str = ""


class CancelBody(BaseModel):
    reason: str = "cancelled by operator"


class AuthorizationOut(BaseModel):
    success: bool = True
    task_id: str
    state: TaskState


class AuthorizationFailureOut(BaseModel):
    success: bool = False
    reason: str
    detail: str


class TaskListOut(BaseModel):
    identity: str
    tasks: list[ProcessingTask]


class VerificationReportOut(BaseModel):
    task_id: str
    verified: bool
    artifacts: list[ContentVerification]


class LedgerAccountOut(BaseModel):
    identity: str
    network: str
    registered: bool
    balance: int
    known_owner: bool = Field(description="Identity belongs to an owner in the local registry")
