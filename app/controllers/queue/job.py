from dataclasses import dataclass
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


class QueueName(str, Enum):
    SEND_EMAIL = "send-email"
    SYNC_ACCOUNT = "sync-account"
    BULK_MUTATE = "bulk-mutate"
    NOTIFY = "notify"
    CLEANUP = "cleanup"


class JobState(str, Enum):
    WAITING = "waiting"
    DELAYED = "delayed"
    ACTIVE = "active"
    COMPLETED = "completed"
    FAILED = "failed"


PENDING_STATES = (JobState.WAITING, JobState.DELAYED, JobState.ACTIVE)

PRIORITIES = {"high": 1, "normal": 5, "low": 10}
DEFAULT_PRIORITY = PRIORITIES["normal"]


@dataclass(frozen=True)
class QueueLimiter:
    max_jobs: int
    duration_seconds: int


@dataclass(frozen=True)
class QueueConfig:
    concurrency: int
    max_attempts: int = 3
    backoff_base_seconds: float = 2.0
    limiter: QueueLimiter | None = None


QUEUE_CONFIGS: dict[QueueName, QueueConfig] = {
    QueueName.SEND_EMAIL: QueueConfig(concurrency=5, limiter=QueueLimiter(max_jobs=10, duration_seconds=1)),
    QueueName.SYNC_ACCOUNT: QueueConfig(
        concurrency=3, max_attempts=5, backoff_base_seconds=5.0, limiter=QueueLimiter(max_jobs=5, duration_seconds=60)
    ),
    QueueName.BULK_MUTATE: QueueConfig(concurrency=2),
    QueueName.NOTIFY: QueueConfig(concurrency=10, max_attempts=5),
    QueueName.CLEANUP: QueueConfig(concurrency=1),
}


class JobOptions(BaseModel):
    priority: int = DEFAULT_PRIORITY
    delay: float = 0.0
    job_id: str | None = None
    max_attempts: int | None = None
    backoff_base_seconds: float | None = None
    remove_on_complete: bool = False


class Job(BaseModel):
    """A queued unit of work, stored as JSON under `queue:{name}:job:{id}`."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    id: str
    queue: QueueName
    payload: dict[str, Any] = Field(default_factory=dict)
    priority: int = DEFAULT_PRIORITY
    state: JobState = JobState.WAITING
    attempts: int = 0
    max_attempts: int = 3
    backoff_base_seconds: float = 2.0
    remove_on_complete: bool = False
    created_at: float
    process_after: float | None = None
    started_at: float | None = None
    finished_at: float | None = None
    last_error: str | None = None
    result: Any = None

    def to_json(self) -> str:
        return self.model_dump_json(by_alias=True)

    @classmethod
    def from_json(cls, raw: str) -> "Job":
        return cls.model_validate_json(raw)

    @property
    def waiting_score(self) -> float:
        # Priority first, then creation time in ms
        return self.priority * 1e13 + self.created_at * 1000

    def backoff_delay(self) -> float:
        """Delay before the next attempt, after `attempts` failures."""
        return self.backoff_base_seconds * (2 ** max(0, self.attempts - 1))
