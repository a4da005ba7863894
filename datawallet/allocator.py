"""Splits a validated message into wallet artifacts and prices them."""

from __future__ import annotations

import json
import math
from dataclasses import dataclass, field

import structlog

from .config import CostConfig
from .models import ArtifactRole, ContentArtifact, CostBreakdown
from .parser import NormalizedMessage
from .verifier import compute_content_hash

logger = structlog.get_logger()


@dataclass
class AllocationPlan:
    """Artifacts for one task together with their raw content.

    ``artifacts[i]`` is the record for ``payloads[i]``; the e-mail artifact
    always comes first.
    """

    task_id: str
    owner_identity: str
    subject: str
    sender: str
    cost: CostBreakdown
    artifacts: list[ContentArtifact] = field(default_factory=list)
    payloads: list[bytes] = field(default_factory=list)

    @property
    def attachment_count(self) -> int:
        return sum(1 for a in self.artifacts if a.role == ArtifactRole.ATTACHMENT)


def estimate_cost(config: CostConfig, attachment_sizes: list[int]) -> CostBreakdown:
    """Base credits plus per-attachment credits plus one charge per started size unit."""
    size_units = math.ceil(sum(attachment_sizes) / config.size_credit_bytes)
    return CostBreakdown(
        email=config.email_credits,
        attachments=config.attachment_credits * len(attachment_sizes),
        authorization=config.authorization_credits,
        size=config.size_credits_per_unit * size_units,
    )


class WalletAllocator:
    def __init__(self, config: CostConfig) -> None:
        self._config = config

    def allocate(self, task_id: str, owner_identity: str, message: NormalizedMessage) -> AllocationPlan:
        cost = estimate_cost(self._config, [a.size for a in message.attachments])
        plan = AllocationPlan(
            task_id=task_id,
            owner_identity=owner_identity,
            subject=message.subject,
            sender=message.sender,
            cost=cost,
        )

        attachment_artifacts: list[ContentArtifact] = []
        for attachment in message.attachments:
            attachment_artifacts.append(
                ContentArtifact(
                    role=ArtifactRole.ATTACHMENT,
                    name=attachment.filename,
                    content_type=attachment.content_type,
                    content_hash=compute_content_hash(attachment.payload),
                    size_bytes=attachment.size,
                )
            )

        package = build_email_package(task_id, owner_identity, message, attachment_artifacts, cost)
        plan.artifacts.append(
            ContentArtifact(
                role=ArtifactRole.EMAIL,
                name=f"{task_id}-email.json",
                content_type="application/json",
                content_hash=compute_content_hash(package),
                size_bytes=len(package),
            )
        )
        plan.payloads.append(package)
        plan.artifacts.extend(attachment_artifacts)
        plan.payloads.extend(a.payload for a in message.attachments)

        logger.info(
            "wallets_allocated",
            task_id=task_id,
            artifacts=len(plan.artifacts),
            estimated_cost=cost.total,
        )
        return plan


def build_email_package(
    task_id: str,
    owner_identity: str,
    message: NormalizedMessage,
    attachments: list[ContentArtifact],
    cost: CostBreakdown,
) -> bytes:
    """Canonical JSON document stored as the e-mail artifact."""
    content = message.body_text if message.body_text is not None else (message.body_html or "")
    document = {
        "type": "email_data_wallet",
        "version": 1,
        "taskId": task_id,
        "walletAddress": owner_identity,
        "messageId": message.message_id,
        "subject": message.subject,
        "from": message.from_address,
        "forwardedBy": message.forwarded_by,
        "to": message.to_addresses,
        "cc": message.cc_addresses,
        "date": message.date,
        "content": content,
        "contentHash": compute_content_hash(content.encode("utf-8")),
        "attachments": [
            {
                "fileName": a.name,
                "contentType": a.content_type,
                "size": a.size_bytes,
                "contentHash": a.content_hash,
            }
            for a in attachments
        ],
        "credits": {**cost.model_dump(), "total": cost.total},
    }
    return json.dumps(document, sort_keys=True, separators=(",", ":")).encode("utf-8")
