"""
Job Queue Domain Entities
=========================

Jobs, their options and the events the scheduler publishes.

Times are epoch seconds (floats); durations are seconds.
"""

import copy
from dataclasses import asdict, dataclass, field, fields, replace
from typing import Any, Dict, List, Mapping, Optional, Union

from ticketflow.config import JobPriority, JobState
from ticketflow.core import ValidationException

# Redis scores are doubles: priority * 2**32 + seq must stay below 2**53
MAX_JOB_PRIORITY = 2 ** 21
MAX_JOB_SEQ = 2 ** 32

STALLED_FAILED_REASON = "job stalled more than allowable limit"


class BackoffType(str):
    """Retry delay strategies."""
    EXPONENTIAL = "exponential"
    FIXED = "fixed"


class JobEventType(str):
    """Events published on the scheduler's event channel."""
    WAITING = "waiting"
    ACTIVE = "active"
    COMPLETED = "completed"
    RETRYING = "retrying"
    FAILED = "failed"
    STALLED = "stalled"


@dataclass(frozen=True)
class BackoffPolicy:
    """Delay before the next attempt of a failed job."""
    type: str = BackoffType.EXPONENTIAL
    delay: float = 2.0

    def __post_init__(self):
        if self.type not in (BackoffType.EXPONENTIAL, BackoffType.FIXED):
            raise ValidationException(f"Unknown backoff type: {self.type}")
        if self.delay < 0:
            raise ValidationException("Backoff delay cannot be negative")

    def compute(self, attempts_made: int) -> float:
        """Delay after ``attempts_made`` attempts (1-based)."""
        if self.type == BackoffType.FIXED:
            return self.delay
        return self.delay * 2 ** max(attempts_made - 1, 0)

    @classmethod
    def from_value(cls, value: Union["BackoffPolicy", Mapping[str, Any], float, int]) -> "BackoffPolicy":
        if isinstance(value, BackoffPolicy):
            return value
        if isinstance(value, Mapping):
            return cls(**value)
        return cls(delay=float(value))


@dataclass(frozen=True)
class JobOptions:
    """
    Options applied to a job at enqueue time.

    ``remove_on_complete`` / ``remove_on_fail`` cap how many finished jobs
    the queue keeps (None keeps them all).
    """
    priority: int = JobPriority.NORMAL
    delay: float = 0.0
    attempts: int = 3
    backoff: BackoffPolicy = field(default_factory=BackoffPolicy)
    timeout: Optional[float] = None
    remove_on_complete: Optional[int] = 100
    remove_on_fail: Optional[int] = 50

    def __post_init__(self):
        if not 1 <= self.priority <= MAX_JOB_PRIORITY:
            raise ValidationException(f"Job priority must be between 1 and {MAX_JOB_PRIORITY}")
        if self.delay < 0:
            raise ValidationException("Job delay cannot be negative")
        if self.attempts < 1:
            raise ValidationException("Job attempts must be at least 1")
        if self.timeout is not None and self.timeout <= 0:
            raise ValidationException("Job timeout must be positive")
        for name in ("remove_on_complete", "remove_on_fail"):
            value = getattr(self, name)
            if value is not None and value < 0:
                raise ValidationException(f"{name} cannot be negative")

    def merge(self, overrides: Union["JobOptions", Mapping[str, Any], None]) -> "JobOptions":
        """
        Return the options to use given ``overrides``.

        A mapping overrides only the keys it names (unknown keys are
        rejected). A JobOptions instance is a complete option set and is
        returned as-is, replacing every default.
        """
        if overrides is None:
            return self
        if isinstance(overrides, JobOptions):
            return overrides

        known = {f.name for f in fields(self)}
        unknown = sorted(set(overrides) - known)
        if unknown:
            raise ValidationException(f"Unknown job options: {', '.join(unknown)}")

        changes = dict(overrides)
        if "backoff" in changes:
            changes["backoff"] = BackoffPolicy.from_value(changes["backoff"])
        return replace(self, **changes)


@dataclass
class Job:
    """
    A unit of work on a named queue.

    ``attempts_made`` counts handler runs that finished (success, error or
    timeout); stalls do not consume attempts.
    """

    id: str
    queue_name: str
    payload: Any
    created_at: float
    priority: int = JobPriority.NORMAL
    attempts_made: int = 0
    max_attempts: int = 3
    backoff: BackoffPolicy = field(default_factory=BackoffPolicy)
    state: str = JobState.WAITING

    delay: float = 0.0
    timeout: Optional[float] = None
    processed_on: Optional[float] = None
    finished_on: Optional[float] = None
    failed_reason: Optional[str] = None
    return_value: Any = None
    stalled_count: int = 0
    retry_delays: List[float] = field(default_factory=list)
    remove_on_complete: Optional[int] = 100
    remove_on_fail: Optional[int] = 50

    # Broker bookkeeping
    seq: int = 0
    lease_token: Optional[str] = None
    lease_expires_at: Optional[float] = None

    @classmethod
    def create(
        cls,
        job_id: str,
        queue_name: str,
        payload: Any,
        options: JobOptions,
        now: float,
        seq: int
    ) -> "Job":
        return cls(
            id=job_id,
            queue_name=queue_name,
            payload=copy.deepcopy(payload),
            created_at=now,
            priority=options.priority,
            max_attempts=options.attempts,
            backoff=options.backoff,
            state=JobState.DELAYED if options.delay > 0 else JobState.WAITING,
            delay=options.delay,
            timeout=options.timeout,
            remove_on_complete=options.remove_on_complete,
            remove_on_fail=options.remove_on_fail,
            seq=seq,
        )

    @property
    def order_score(self) -> int:
        """Dispatch order within a queue: priority first, then enqueue order."""
        return self.priority * MAX_JOB_SEQ + self.seq

    def copy(self) -> "Job":
        return copy.deepcopy(self)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "Job":
        values = {f.name: data[f.name] for f in fields(cls) if f.name in data}
        if "backoff" in values:
            values["backoff"] = BackoffPolicy.from_value(values["backoff"])
        values["retry_delays"] = list(values.get("retry_delays") or [])
        return cls(**values)


@dataclass(frozen=True)
class JobEvent:
    """Something that happened to a job, as seen by observers."""
    type: str
    queue_name: str
    job_id: str
    timestamp: float
    attempts_made: int = 0
    data: Dict[str, Any] = field(default_factory=dict)
