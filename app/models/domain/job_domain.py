# app/models/domain/job_domain.py
"""
Dispatch Job Domain Models
Notification jobs, their priorities and the wire schema used when a job is
persisted (dead-letter store) or transmitted.
"""

import uuid
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum, IntEnum
from typing import Any

from app.models.domain.blood_domain import Urgency


class ChannelType(str, Enum):
    EMAIL = "email"
    SMS = "sms"


class JobPriority(IntEnum):
    """Higher value is served first."""

    LOW = 1
    MEDIUM = 2
    HIGH = 3
    EMERGENCY = 4

    @classmethod
    def from_urgency(cls, urgency: Urgency) -> "JobPriority":
        return cls(urgency.rank)


class JobStatus(str, Enum):
    QUEUED = "queued"
    SCHEDULED = "scheduled"
    IN_FLIGHT = "in_flight"
    COMPLETED = "completed"
    EXHAUSTED = "exhausted"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in (JobStatus.COMPLETED, JobStatus.EXHAUSTED, JobStatus.CANCELLED)


@dataclass(frozen=True, slots=True)
class JobHandle:
    """Returned by enqueue; used to look up or cancel a job."""

    job_id: str
    queue: str


@dataclass(slots=True)
class NotificationJob:
    """A unit of asynchronous notification work with priority and retry state."""

    type: ChannelType
    recipient: str
    template_id: str
    data: dict[str, Any] = field(default_factory=dict)
    priority: JobPriority = JobPriority.MEDIUM
    attempts: int = 0
    max_attempts: int = 3
    scheduled_for: datetime | None = None
    queue: str = "notification"
    request_id: str | None = None
    best_effort: bool = False
    id: str = field(default_factory=lambda: str(uuid.uuid4()))
    status: JobStatus = JobStatus.QUEUED
    last_error: str | None = None
    exhaustion: Exception | None = None
    retries_cleared: bool = False
    escalated: bool = False
    sequence: int = 0

    @property
    def remaining_attempts(self) -> int:
        return max(self.max_attempts - self.attempts, 0)

    def handle(self) -> JobHandle:
        return JobHandle(job_id=self.id, queue=self.queue)

    def sort_key(self) -> tuple:
        """Heap key: priority first, escalated jobs before peers, then insertion order."""
        return (-int(self.priority), 0 if self.escalated else 1, self.sequence)

    def to_wire(self) -> dict[str, Any]:
        """Serialize using the transmitted job schema."""
        return {
            "id": self.id,
            "type": self.type.value,
            "recipient": self.recipient,
            "templateId": self.template_id,
            "data": self.data,
            "priority": int(self.priority),
            "attempts": self.attempts,
            "maxAttempts": self.max_attempts,
            "scheduledFor": self.scheduled_for.isoformat() if self.scheduled_for else None,
            "queue": self.queue,
            "requestId": self.request_id,
            "bestEffort": self.best_effort,
        }

    @classmethod
    def from_wire(cls, payload: dict[str, Any]) -> "NotificationJob":
        """Rebuild a job from its wire form; missing optional keys take defaults."""
        scheduled_for = payload.get("scheduledFor")
        if isinstance(scheduled_for, str):
            scheduled_for = datetime.fromisoformat(scheduled_for.replace("Z", "+00:00"))
        if scheduled_for is not None and scheduled_for.tzinfo is None:
            scheduled_for = scheduled_for.replace(tzinfo=UTC)

        job = cls(
            type=ChannelType(payload["type"]),
            recipient=payload["recipient"],
            template_id=payload["templateId"],
            data=dict(payload.get("data") or {}),
            priority=JobPriority(int(payload.get("priority", JobPriority.MEDIUM))),
            attempts=int(payload.get("attempts", 0)),
            max_attempts=int(payload.get("maxAttempts", 3)),
            scheduled_for=scheduled_for,
            queue=payload.get("queue") or "notification",
            request_id=payload.get("requestId"),
            best_effort=bool(payload.get("bestEffort", False)),
        )
        if payload.get("id"):
            job.id = payload["id"]
        return job
