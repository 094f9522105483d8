"""
Job Brokers
===========

Concrete implementations of IBroker:
- InMemoryBroker: single process, for tests and local runs
- RedisBroker: sorted sets plus Lua scripts, shared by any number of
  scheduler processes
"""

import functools
import heapq
import json
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Tuple

from redis.asyncio import Redis
from redis.exceptions import RedisError

from ticketflow.config import JobState, TERMINAL_JOB_STATES, VALID_JOB_STATES
from ticketflow.core import BrokerConnectionError
from ticketflow.infrastructure.redis import create_redis_client
from ticketflow.queueing.application import IBroker
from ticketflow.queueing.domain import Job, JobOptions
from ticketflow.shared.infrastructure.logging import get_logger

logger = get_logger(__name__)


# ========== In-memory ==========

@dataclass
class _MemoryQueue:
    jobs: Dict[str, Job] = field(default_factory=dict)
    waiting: List[Tuple[int, str]] = field(default_factory=list)
    delayed: Dict[str, float] = field(default_factory=dict)
    seq: int = 0


class InMemoryBroker(IBroker):
    """
    Process-local broker.

    Every method runs without awaiting, so each is atomic on the event
    loop. Callers always receive copies; stored jobs change only through
    broker methods.
    """

    def __init__(self):
        self._queues: Dict[str, _MemoryQueue] = {}
        self._connected = False

    async def connect(self) -> None:
        self._connected = True

    async def close(self) -> None:
        self._connected = False

    async def ping(self) -> bool:
        return self._connected

    async def add(self, queue_name: str, payload: Any, options: JobOptions, now: float) -> Job:
        store = self._store(queue_name)
        store.seq += 1
        job = Job.create(str(store.seq), queue_name, payload, options, now, store.seq)
        store.jobs[job.id] = job

        if job.state == JobState.DELAYED:
            store.delayed[job.id] = now + job.delay
        else:
            heapq.heappush(store.waiting, (job.order_score, job.id))
        return job.copy()

    async def get_job(self, queue_name: str, job_id: str) -> Optional[Job]:
        job = self._store(queue_name).jobs.get(job_id)
        return job.copy() if job is not None else None

    async def lease(self, queue_name: str, token: str, lock_duration: float, now: float) -> Optional[Job]:
        store = self._store(queue_name)

        for job_id, run_at in list(store.delayed.items()):
            if run_at <= now:
                del store.delayed[job_id]
                job = store.jobs[job_id]
                job.state = JobState.WAITING
                heapq.heappush(store.waiting, (job.order_score, job_id))

        while store.waiting:
            _, job_id = heapq.heappop(store.waiting)
            job = store.jobs.get(job_id)
            if job is None or job.state != JobState.WAITING:
                continue
            job.state = JobState.ACTIVE
            job.processed_on = now
            job.lease_token = token
            job.lease_expires_at = now + lock_duration
            return job.copy()
        return None

    async def renew(self, queue_name: str, job_id: str, token: str, lock_duration: float, now: float) -> bool:
        job = self._owned(queue_name, job_id, token)
        if job is None:
            return False
        job.lease_expires_at = now + lock_duration
        return True

    async def move_to_completed(self, job: Job, token: str, now: float) -> bool:
        return self._move_owned(job, token, JobState.COMPLETED)

    async def move_to_failed(self, job: Job, token: str, now: float) -> bool:
        return self._move_owned(job, token, JobState.FAILED)

    async def move_to_delayed(self, job: Job, token: str, run_at: float, now: float) -> bool:
        if not self._move_owned(job, token, JobState.DELAYED):
            return False
        self._store(job.queue_name).delayed[job.id] = run_at
        return True

    async def list_stalled(self, queue_name: str, now: float) -> List[Job]:
        return [
            job.copy()
            for job in self._store(queue_name).jobs.values()
            if job.state == JobState.ACTIVE and job.lease_expires_at is not None
            and job.lease_expires_at <= now
        ]

    async def requeue_stalled(self, job: Job, now: float) -> bool:
        if not self._move_expired(job, now, JobState.WAITING):
            return False
        heapq.heappush(self._store(job.queue_name).waiting, (job.order_score, job.id))
        return True

    async def fail_stalled(self, job: Job, now: float) -> bool:
        return self._move_expired(job, now, JobState.FAILED)

    async def counts(self, queue_name: str) -> Dict[str, int]:
        counts = {state: 0 for state in VALID_JOB_STATES}
        for job in self._store(queue_name).jobs.values():
            counts[job.state] += 1
        return counts

    async def clean(self, queue_name: str, grace: float, now: float) -> Dict[str, int]:
        store = self._store(queue_name)
        cutoff = now - grace
        removed = {state: 0 for state in TERMINAL_JOB_STATES}
        for job_id, job in list(store.jobs.items()):
            if job.state in removed and job.finished_on is not None and job.finished_on < cutoff:
                del store.jobs[job_id]
                removed[job.state] += 1
        return removed

    async def trim(self, queue_name: str, state: str, keep: int) -> int:
        store = self._store(queue_name)
        finished = sorted(
            (job for job in store.jobs.values() if job.state == state),
            key=lambda job: (job.finished_on or 0.0, job.seq)
        )
        excess = finished[:max(len(finished) - keep, 0)]
        for job in excess:
            del store.jobs[job.id]
        return len(excess)

    def _store(self, queue_name: str) -> _MemoryQueue:
        return self._queues.setdefault(queue_name, _MemoryQueue())

    def _owned(self, queue_name: str, job_id: str, token: str) -> Optional[Job]:
        job = self._store(queue_name).jobs.get(job_id)
        if job is None or job.state != JobState.ACTIVE or job.lease_token != token:
            return None
        return job

    def _move_owned(self, job: Job, token: str, state: str) -> bool:
        if self._owned(job.queue_name, job.id, token) is None:
            return False
        self._replace(job, state)
        return True

    def _move_expired(self, job: Job, now: float, state: str) -> bool:
        stored = self._store(job.queue_name).jobs.get(job.id)
        if (
            stored is None
            or stored.state != JobState.ACTIVE
            or stored.lease_expires_at is None
            or stored.lease_expires_at > now
        ):
            return False
        self._replace(job, state)
        return True

    def _replace(self, job: Job, state: str) -> None:
        updated = job.copy()
        updated.state = state
        updated.lease_token = None
        updated.lease_expires_at = None
        self._store(job.queue_name).jobs[job.id] = updated


# ========== Redis ==========

# KEYS: waiting, delayed, active, order
# ARGV: now, lease_until, token, job key prefix, promote limit
LEASE_SCRIPT = """
local due = redis.call("ZRANGEBYSCORE", KEYS[2], "-inf", ARGV[1], "LIMIT", 0, tonumber(ARGV[5]))
for _, id in ipairs(due) do
  redis.call("ZREM", KEYS[2], id)
  redis.call("ZADD", KEYS[1], redis.call("HGET", KEYS[4], id), id)
  redis.call("HSET", ARGV[4] .. id, "state", "waiting")
end
local popped = redis.call("ZPOPMIN", KEYS[1])
if #popped == 0 then
  return nil
end
local id = popped[1]
local key = ARGV[4] .. id
redis.call("ZADD", KEYS[3], ARGV[2], id)
redis.call("HSET", key, "state", "active", "processed_on", ARGV[1],
  "lock_token", ARGV[3], "lease_expires_at", ARGV[2])
return {id, redis.call("HGET", key, "data")}
"""

# KEYS: active
# ARGV: job key, job id, token, lease_until
RENEW_SCRIPT = """
if redis.call("HGET", ARGV[1], "lock_token") ~= ARGV[3] then
  return 0
end
if not redis.call("ZSCORE", KEYS[1], ARGV[2]) then
  return 0
end
redis.call("ZADD", KEYS[1], "XX", ARGV[4], ARGV[2])
redis.call("HSET", ARGV[1], "lease_expires_at", ARGV[4])
return 1
"""

# KEYS: active, target set
# ARGV: job key, job id, token, target score, state, data
MOVE_OWNED_SCRIPT = """
if redis.call("HGET", ARGV[1], "lock_token") ~= ARGV[3] then
  return 0
end
if redis.call("ZREM", KEYS[1], ARGV[2]) == 0 then
  return 0
end
redis.call("ZADD", KEYS[2], ARGV[4], ARGV[2])
redis.call("HSET", ARGV[1], "state", ARGV[5], "data", ARGV[6], "lock_token", "", "lease_expires_at", "")
return 1
"""

# KEYS: active, target set
# ARGV: job key, job id, now, target score, state, data
MOVE_STALLED_SCRIPT = """
local expires = redis.call("ZSCORE", KEYS[1], ARGV[2])
if not expires or tonumber(expires) > tonumber(ARGV[3]) then
  return 0
end
redis.call("ZREM", KEYS[1], ARGV[2])
redis.call("ZADD", KEYS[2], ARGV[4], ARGV[2])
redis.call("HSET", ARGV[1], "state", ARGV[5], "data", ARGV[6], "lock_token", "", "lease_expires_at", "")
return 1
"""

# KEYS: finished set, order
# ARGV: max score (exclusive form), job key prefix
CLEAN_SCRIPT = """
local ids = redis.call("ZRANGEBYSCORE", KEYS[1], "-inf", ARGV[1])
for _, id in ipairs(ids) do
  redis.call("DEL", ARGV[2] .. id)
  redis.call("HDEL", KEYS[2], id)
end
if #ids > 0 then
  redis.call("ZREMRANGEBYSCORE", KEYS[1], "-inf", ARGV[1])
end
return #ids
"""

# KEYS: finished set, order
# ARGV: keep, job key prefix
TRIM_SCRIPT = """
local excess = redis.call("ZCARD", KEYS[1]) - tonumber(ARGV[1])
if excess <= 0 then
  return 0
end
local ids = redis.call("ZRANGE", KEYS[1], 0, excess - 1)
for _, id in ipairs(ids) do
  redis.call("DEL", ARGV[2] .. id)
  redis.call("HDEL", KEYS[2], id)
end
redis.call("ZREMRANGEBYRANK", KEYS[1], 0, excess - 1)
return excess
"""

PROMOTE_LIMIT = 1000


def _translate_errors(func):
    """Surface redis failures as BrokerConnectionError."""

    @functools.wraps(func)
    async def wrapper(self, *args, **kwargs):
        try:
            return await func(self, *args, **kwargs)
        except RedisError as e:
            raise BrokerConnectionError(f"Redis broker error: {e}") from e

    return wrapper


class RedisBroker(IBroker):
    """
    Redis-backed broker.

    Per queue ``q`` under ``prefix``:
        {prefix}:{q}:id         INCR counter for job ids
        {prefix}:{q}:job:{id}   hash: data (job JSON), state, processed_on,
                                lock_token, lease_expires_at
        {prefix}:{q}:order      hash: id -> dispatch score
        {prefix}:{q}:waiting    zset scored by priority * 2**32 + seq
        {prefix}:{q}:delayed    zset scored by run-at time
        {prefix}:{q}:active     zset scored by lease expiry
        {prefix}:{q}:completed  zset scored by finish time
        {prefix}:{q}:failed     zset scored by finish time

    Every transition out of a set runs inside a Lua script, so a job is in
    exactly one set at a time.
    """

    def __init__(
        self,
        redis_url: str = "redis://localhost:6379/0",
        prefix: str = "ticketflow",
        client: Optional[Redis] = None
    ):
        self._redis_url = redis_url
        self._prefix = prefix
        self._redis: Optional[Redis] = client
        self._scripts: Dict[str, Any] = {}

    async def connect(self) -> None:
        if self._redis is None:
            self._redis = create_redis_client(self._redis_url)

        try:
            await self._redis.ping()
        except RedisError as e:
            raise BrokerConnectionError(f"Cannot connect to Redis: {e}") from e

        self._scripts = {
            "lease": self._redis.register_script(LEASE_SCRIPT),
            "renew": self._redis.register_script(RENEW_SCRIPT),
            "move_owned": self._redis.register_script(MOVE_OWNED_SCRIPT),
            "move_stalled": self._redis.register_script(MOVE_STALLED_SCRIPT),
            "clean": self._redis.register_script(CLEAN_SCRIPT),
            "trim": self._redis.register_script(TRIM_SCRIPT),
        }
        logger.info("Redis broker connected", extra={"prefix": self._prefix})

    async def close(self) -> None:
        if self._redis is not None:
            await self._redis.aclose()
            self._redis = None
            self._scripts = {}

    async def ping(self) -> bool:
        if self._redis is None:
            return False
        try:
            return bool(await self._redis.ping())
        except RedisError:
            return False

    @_translate_errors
    async def add(self, queue_name: str, payload: Any, options: JobOptions, now: float) -> Job:
        seq = await self._redis.incr(self._key(queue_name, "id"))
        job = Job.create(str(seq), queue_name, payload, options, now, seq)

        async with self._redis.pipeline(transaction=True) as pipe:
            pipe.hset(self._job_key(queue_name, job.id), mapping={"data": self._dump(job), "state": job.state})
            pipe.hset(self._key(queue_name, "order"), job.id, job.order_score)
            if job.state == JobState.DELAYED:
                pipe.zadd(self._key(queue_name, JobState.DELAYED), {job.id: now + job.delay})
            else:
                pipe.zadd(self._key(queue_name, JobState.WAITING), {job.id: job.order_score})
            await pipe.execute()
        return job

    @_translate_errors
    async def get_job(self, queue_name: str, job_id: str) -> Optional[Job]:
        fields = await self._redis.hgetall(self._job_key(queue_name, job_id))
        if not fields or "data" not in fields:
            return None
        return self._load(fields)

    @_translate_errors
    async def lease(self, queue_name: str, token: str, lock_duration: float, now: float) -> Optional[Job]:
        lease_until = now + lock_duration
        result = await self._scripts["lease"](
            keys=[
                self._key(queue_name, JobState.WAITING),
                self._key(queue_name, JobState.DELAYED),
                self._key(queue_name, JobState.ACTIVE),
                self._key(queue_name, "order"),
            ],
            args=[now, lease_until, token, self._job_key(queue_name, ""), PROMOTE_LIMIT],
        )
        if not result:
            return None

        job = Job.from_dict(json.loads(result[1]))
        job.state = JobState.ACTIVE
        job.processed_on = now
        job.lease_token = token
        job.lease_expires_at = lease_until
        return job

    @_translate_errors
    async def renew(self, queue_name: str, job_id: str, token: str, lock_duration: float, now: float) -> bool:
        renewed = await self._scripts["renew"](
            keys=[self._key(queue_name, JobState.ACTIVE)],
            args=[self._job_key(queue_name, job_id), job_id, token, now + lock_duration],
        )
        return bool(renewed)

    async def move_to_completed(self, job: Job, token: str, now: float) -> bool:
        return await self._move_owned(job, token, JobState.COMPLETED, job.finished_on or now)

    async def move_to_failed(self, job: Job, token: str, now: float) -> bool:
        return await self._move_owned(job, token, JobState.FAILED, job.finished_on or now)

    async def move_to_delayed(self, job: Job, token: str, run_at: float, now: float) -> bool:
        return await self._move_owned(job, token, JobState.DELAYED, run_at)

    @_translate_errors
    async def list_stalled(self, queue_name: str, now: float) -> List[Job]:
        job_ids = await self._redis.zrangebyscore(self._key(queue_name, JobState.ACTIVE), "-inf", now)
        jobs = []
        for job_id in job_ids:
            job = await self.get_job(queue_name, job_id)
            if job is not None:
                jobs.append(job)
        return jobs

    async def requeue_stalled(self, job: Job, now: float) -> bool:
        return await self._move_stalled(job, now, JobState.WAITING, job.order_score)

    async def fail_stalled(self, job: Job, now: float) -> bool:
        return await self._move_stalled(job, now, JobState.FAILED, job.finished_on or now)

    @_translate_errors
    async def counts(self, queue_name: str) -> Dict[str, int]:
        async with self._redis.pipeline(transaction=False) as pipe:
            for state in VALID_JOB_STATES:
                pipe.zcard(self._key(queue_name, state))
            sizes = await pipe.execute()
        return dict(zip(VALID_JOB_STATES, (int(size) for size in sizes)))

    @_translate_errors
    async def clean(self, queue_name: str, grace: float, now: float) -> Dict[str, int]:
        removed = {}
        for state in TERMINAL_JOB_STATES:
            removed[state] = int(await self._scripts["clean"](
                keys=[self._key(queue_name, state), self._key(queue_name, "order")],
                args=[f"({now - grace}", self._job_key(queue_name, "")],
            ))
        return removed

    @_translate_errors
    async def trim(self, queue_name: str, state: str, keep: int) -> int:
        removed = await self._scripts["trim"](
            keys=[self._key(queue_name, state), self._key(queue_name, "order")],
            args=[keep, self._job_key(queue_name, "")],
        )
        return int(removed)

    # ---------- Internals ----------

    @_translate_errors
    async def _move_owned(self, job: Job, token: str, state: str, score: float) -> bool:
        moved = await self._scripts["move_owned"](
            keys=[self._key(job.queue_name, JobState.ACTIVE), self._key(job.queue_name, state)],
            args=[self._job_key(job.queue_name, job.id), job.id, token, score, state, self._dump(job)],
        )
        return bool(moved)

    @_translate_errors
    async def _move_stalled(self, job: Job, now: float, state: str, score: float) -> bool:
        moved = await self._scripts["move_stalled"](
            keys=[self._key(job.queue_name, JobState.ACTIVE), self._key(job.queue_name, state)],
            args=[self._job_key(job.queue_name, job.id), job.id, now, score, state, self._dump(job)],
        )
        return bool(moved)

    def _key(self, queue_name: str, suffix: str) -> str:
        return f"{self._prefix}:{queue_name}:{suffix}"

    def _job_key(self, queue_name: str, job_id: str) -> str:
        return f"{self._prefix}:{queue_name}:job:{job_id}"

    @staticmethod
    def _dump(job: Job) -> str:
        data = job.to_dict()
        data.pop("lease_token", None)
        data.pop("lease_expires_at", None)
        return json.dumps(data, default=str)

    @staticmethod
    def _load(fields: Dict[str, str]) -> Job:
        job = Job.from_dict(json.loads(fields["data"]))
        job.state = fields.get("state") or job.state
        if fields.get("processed_on"):
            job.processed_on = float(fields["processed_on"])
        job.lease_token = fields.get("lock_token") or None
        job.lease_expires_at = float(fields["lease_expires_at"]) if fields.get("lease_expires_at") else None
        return job
