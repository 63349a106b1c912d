"""
Storage seams for the workflow engines.

Each engine keeps its rules, templates, schedules and history behind a
small protocol so a deployment can back it with real storage. The
in-memory implementations guard their state with a single re-entrant lock
so request threads in one process can share a module-level engine. The
Redis implementations hold state that the web process and the Celery
workers must both see. ``CASE_WORKFLOW['STATE_BACKEND']`` picks between
them through the ``build_*`` factories at the bottom of this module.
"""

import functools
import heapq
import itertools
import pickle
import threading
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, Dict, Generic, Iterator, List, Optional, Protocol, TypeVar

import redis
from django.conf import settings

from apps.common.utils import generate_id, get_workflow_setting

T = TypeVar('T')


class KeyedStore(Protocol[T]):
    """Records addressed by their ``id`` attribute."""

    def get(self, record_id: str) -> Optional[T]:
        ...

    def all(self) -> List[T]:
        ...

    def save(self, record: T) -> T:
        ...

    def delete(self, record_id: str) -> bool:
        ...

    def count(self) -> int:
        ...


class RuleStore(KeyedStore, Protocol):
    """Business rules and workflow task rules."""


class AutomationRuleStore(KeyedStore, Protocol):
    """Automation rules."""


class TemplateStore(KeyedStore, Protocol):
    """Task templates and template instances."""


class ScheduleStore(KeyedStore, Protocol):
    """Scheduled tasks."""


class HistoryStore(Protocol[T]):
    """Append-only log kept in insertion order."""

    def append(self, entry: T) -> None:
        ...

    def entries(self) -> List[T]:
        ...

    def clear(self) -> None:
        ...


class InMemoryStore(Generic[T]):
    """Dict-backed keyed store; iteration keeps insertion order."""

    def __init__(self, records=None):
        self._records: Dict[str, T] = {}
        self._lock = threading.RLock()
        for record in records or []:
            self.save(record)

    def get(self, record_id: str) -> Optional[T]:
        with self._lock:
            return self._records.get(record_id)

    def all(self) -> List[T]:
        with self._lock:
            return list(self._records.values())

    def save(self, record: T) -> T:
        with self._lock:
            self._records[record.id] = record
        return record

    def delete(self, record_id: str) -> bool:
        with self._lock:
            return self._records.pop(record_id, None) is not None

    def count(self) -> int:
        with self._lock:
            return len(self._records)

    def filter(self, predicate: Callable[[T], bool]) -> List[T]:
        with self._lock:
            return [record for record in self._records.values() if predicate(record)]

    def __contains__(self, record_id: str) -> bool:
        with self._lock:
            return record_id in self._records

    def __iter__(self) -> Iterator[T]:
        return iter(self.all())

    def __len__(self) -> int:
        return self.count()


class InMemoryHistoryStore(Generic[T]):
    """Bounded log; the oldest entries drop off past ``max_entries``."""

    def __init__(self, max_entries: Optional[int] = None):
        limit = max_entries if max_entries is not None else get_workflow_setting('HISTORY_LIMIT')
        self._entries = deque(maxlen=limit)
        self._lock = threading.RLock()

    def append(self, entry: T) -> None:
        with self._lock:
            self._entries.append(entry)

    def entries(self) -> List[T]:
        with self._lock:
            return list(self._entries)

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)


@dataclass
class DelayedJob:
    """A delayed action waiting in the queue."""

    fire_time: datetime
    payload: Any
    id: str = field(default_factory=lambda: generate_id('delayed'))
    created_at: Optional[datetime] = None


class DelayedActionQueue:
    """
    Min-heap of delayed jobs ordered by fire time.

    Entries are ``(fire_time, sequence, job)``; the sequence keeps jobs
    with the same fire time in push order and keeps the heap from ever
    comparing jobs.
    """

    def __init__(self):
        self._heap: List[tuple] = []
        self._sequence = itertools.count()
        self._lock = threading.RLock()

    def push(self, fire_time: datetime, payload: Any, created_at: Optional[datetime] = None) -> DelayedJob:
        job = DelayedJob(fire_time=fire_time, payload=payload, created_at=created_at)
        with self._lock:
            heapq.heappush(self._heap, (fire_time, next(self._sequence), job))
        return job

    def pop_due(self, reference_time: datetime) -> List[DelayedJob]:
        """Remove and return every job whose fire time is at or before ``reference_time``."""
        due = []
        with self._lock:
            while self._heap and self._heap[0][0] <= reference_time:
                _, _, job = heapq.heappop(self._heap)
                due.append(job)
        return due

    def peek_all(self) -> List[DelayedJob]:
        """Every waiting job, earliest first."""
        with self._lock:
            return [job for _, _, job in sorted(self._heap, key=lambda entry: entry[:2])]

    def remove(self, job_id: str) -> bool:
        with self._lock:
            for index, (_, _, job) in enumerate(self._heap):
                if job.id == job_id:
                    self._heap.pop(index)
                    heapq.heapify(self._heap)
                    return True
        return False

    def clear(self) -> None:
        with self._lock:
            self._heap.clear()

    def __len__(self) -> int:
        with self._lock:
            return len(self._heap)


class RedisStore(Generic[T]):
    """
    Keyed store shared between processes through Redis.

    Records are pickled into one hash. A sorted set scored by an
    insertion counter keeps ``all()`` in first-save order.
    """

    def __init__(self, client, namespace: str):
        self.client = client
        self.namespace = namespace
        self._records_key = state_key(namespace, 'records')
        self._order_key = state_key(namespace, 'order')
        self._sequence_key = state_key(namespace, 'sequence')

    def get(self, record_id: str) -> Optional[T]:
        raw = self.client.hget(self._records_key, record_id)
        return pickle.loads(raw) if raw is not None else None

    def all(self) -> List[T]:
        record_ids = self.client.zrange(self._order_key, 0, -1)
        if not record_ids:
            return []
        return [pickle.loads(raw) for raw in self.client.hmget(self._records_key, record_ids) if raw is not None]

    def save(self, record: T) -> T:
        sequence = self.client.incr(self._sequence_key)
        pipe = self.client.pipeline()
        pipe.hset(self._records_key, record.id, pickle.dumps(record))
        pipe.zadd(self._order_key, {record.id: sequence}, nx=True)
        pipe.execute()
        return record

    def delete(self, record_id: str) -> bool:
        pipe = self.client.pipeline()
        pipe.hdel(self._records_key, record_id)
        pipe.zrem(self._order_key, record_id)
        removed, _ = pipe.execute()
        return removed > 0

    def count(self) -> int:
        return self.client.hlen(self._records_key)

    def filter(self, predicate: Callable[[T], bool]) -> List[T]:
        return [record for record in self.all() if predicate(record)]

    def __contains__(self, record_id: str) -> bool:
        return bool(self.client.hexists(self._records_key, record_id))

    def __iter__(self) -> Iterator[T]:
        return iter(self.all())

    def __len__(self) -> int:
        return self.count()


class RedisHistoryStore(Generic[T]):
    """Bounded log in a Redis list; the oldest entries are trimmed off."""

    def __init__(self, client, namespace: str, max_entries: Optional[int] = None):
        self.client = client
        self.max_entries = max_entries if max_entries is not None else get_workflow_setting('HISTORY_LIMIT')
        self._key = state_key(namespace, 'history')

    def append(self, entry: T) -> None:
        pipe = self.client.pipeline()
        pipe.rpush(self._key, pickle.dumps(entry))
        pipe.ltrim(self._key, -self.max_entries, -1)
        pipe.execute()

    def entries(self) -> List[T]:
        return [pickle.loads(raw) for raw in self.client.lrange(self._key, 0, -1)]

    def clear(self) -> None:
        self.client.delete(self._key)

    def __len__(self) -> int:
        return self.client.llen(self._key)


class RedisDelayedActionQueue:
    """
    Delayed jobs in a Redis sorted set scored by fire time.

    Members are ``<sequence>:<job id>`` with a zero padded sequence, so
    jobs with the same fire time come back in push order. A worker owns a
    due job only once its ``ZREM`` succeeds, so two workers draining the
    same queue never run a job twice.
    """

    def __init__(self, client, namespace: str):
        self.client = client
        self._queue_key = state_key(namespace, 'queue')
        self._jobs_key = state_key(namespace, 'jobs')
        self._sequence_key = state_key(namespace, 'sequence')

    def push(self, fire_time: datetime, payload: Any, created_at: Optional[datetime] = None) -> DelayedJob:
        job = DelayedJob(fire_time=fire_time, payload=payload, created_at=created_at)
        member = f"{self.client.incr(self._sequence_key):016d}:{job.id}"
        pipe = self.client.pipeline()
        pipe.hset(self._jobs_key, member, pickle.dumps(job))
        pipe.zadd(self._queue_key, {member: fire_time.timestamp()})
        pipe.execute()
        return job

    def pop_due(self, reference_time: datetime) -> List[DelayedJob]:
        """Claim and return every job whose fire time is at or before ``reference_time``."""
        due = []
        for member in self.client.zrangebyscore(self._queue_key, '-inf', reference_time.timestamp()):
            if not self.client.zrem(self._queue_key, member):
                continue
            raw = self.client.hget(self._jobs_key, member)
            self.client.hdel(self._jobs_key, member)
            if raw is not None:
                due.append(pickle.loads(raw))
        return due

    def peek_all(self) -> List[DelayedJob]:
        """Every waiting job, earliest first."""
        members = self.client.zrange(self._queue_key, 0, -1)
        if not members:
            return []
        return [pickle.loads(raw) for raw in self.client.hmget(self._jobs_key, members) if raw is not None]

    def remove(self, job_id: str) -> bool:
        suffix = f":{job_id}".encode()
        for member in self.client.zrange(self._queue_key, 0, -1):
            if _as_bytes(member).endswith(suffix) and self.client.zrem(self._queue_key, member):
                self.client.hdel(self._jobs_key, member)
                return True
        return False

    def clear(self) -> None:
        self.client.delete(self._queue_key, self._jobs_key)

    def __len__(self) -> int:
        return self.client.zcard(self._queue_key)


def _as_bytes(value) -> bytes:
    return value if isinstance(value, bytes) else str(value).encode()


def state_key(namespace: str, suffix: str) -> str:
    return f"{get_workflow_setting('STATE_KEY_PREFIX')}:{namespace}:{suffix}"


def uses_redis_state() -> bool:
    return str(get_workflow_setting('STATE_BACKEND')).lower() == 'redis'


@functools.lru_cache(maxsize=None)
def _client_for(url: str):
    # Pickled records are binary, so responses stay undecoded.
    return redis.Redis.from_url(url)


def get_state_client():
    """Redis client for shared engine state; defaults to the Celery broker."""
    return _client_for(get_workflow_setting('STATE_REDIS_URL') or settings.CELERY_BROKER_URL)


def build_keyed_store(namespace: str):
    """Keyed store for ``namespace`` on the configured state backend."""
    if uses_redis_state():
        return RedisStore(get_state_client(), namespace)
    return InMemoryStore()


def build_history_store(namespace: str, max_entries: Optional[int] = None):
    if uses_redis_state():
        return RedisHistoryStore(get_state_client(), namespace, max_entries)
    return InMemoryHistoryStore(max_entries)


def build_delayed_queue(namespace: str):
    if uses_redis_state():
        return RedisDelayedActionQueue(get_state_client(), namespace)
    return DelayedActionQueue()
