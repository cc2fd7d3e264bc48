from __future__ import annotations

from dataclasses import asdict, dataclass
from typing import Any

JOB_WAITING = "waiting"
JOB_DELAYED = "delayed"
JOB_ACTIVE = "active"
JOB_COMPLETED = "completed"
JOB_FAILED = "failed"
JOB_STALLED = "stalled"

JOB_STATES = (JOB_WAITING, JOB_DELAYED, JOB_ACTIVE, JOB_COMPLETED, JOB_FAILED, JOB_STALLED)
OUTSTANDING_JOB_STATES = frozenset({JOB_WAITING, JOB_DELAYED, JOB_ACTIVE, JOB_STALLED})


@dataclass(frozen=True, slots=True)
class JobPayload:
    document_id: str
    case_id: str
    display_name: str
    source_location: str
    priority: int = 5

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, raw: dict[str, Any]) -> "JobPayload":
        return cls(
            document_id=str(raw["document_id"]),
            case_id=str(raw["case_id"]),
            display_name=str(raw.get("display_name") or ""),
            source_location=str(raw.get("source_location") or ""),
            priority=int(raw["priority"]) if raw.get("priority") is not None else 5,
        )


@dataclass(slots=True)
class Job:
    id: str
    payload: JobPayload
    priority: int
    state: str
    attempts: int
    max_attempts: int
    progress: int
    failure_reason: str | None
    worker_id: str | None
    stalled_count: int
    enqueued_at: str
    available_at: str
    started_at: str | None
    finished_at: str | None
    heartbeat_at: str | None


@dataclass(frozen=True, slots=True)
class JobStatus:
    id: str
    queue_state: str
    progress: int
    payload: JobPayload
    failure_reason: str | None
    attempts: int
    started_at: str | None
    finished_at: str | None
