# backend/gptcore/services/job_store.py
from __future__ import annotations

from abc import ABC, abstractmethod
import logging
import threading
from typing import Callable, Dict, List, Optional

import redis

from ..core.config import Settings
from ..schemas.jobs import Job
from .errors import JobNotFoundError

logger = logging.getLogger(__name__)

JobMutator = Callable[[Job], Job]
JobPredicate = Callable[[Job], bool]


class JobStore(ABC):
    """
    Key -> Job registry shared by every request handler.

    Implementations guarantee that `update` and `delete_if` run their
    read-check-write sequence atomically per key. Callers always receive
    copies; mutating a returned Job never changes the stored record.
    """

    @abstractmethod
    def put(self, job: Job) -> None:
        ...

    @abstractmethod
    def get(self, job_id: str) -> Optional[Job]:
        ...

    @abstractmethod
    def update(self, job_id: str, mutator: JobMutator) -> Job:
        """Apply `mutator` to the stored job and persist its return value."""

    @abstractmethod
    def delete(self, job_id: str) -> bool:
        ...

    @abstractmethod
    def delete_if(self, job_id: str, predicate: JobPredicate) -> bool:
        """Delete the job only if `predicate` holds for its current state."""

    @abstractmethod
    def list(self) -> List[Job]:
        ...


def _sorted(jobs: List[Job]) -> List[Job]:
    return sorted(jobs, key=lambda j: j.start_time)


class InMemoryJobStore(JobStore):
    """
    Process-local store. Nothing survives a restart.
    """

    def __init__(self) -> None:
        self._jobs: Dict[str, Job] = {}
        self._lock = threading.RLock()

    def put(self, job: Job) -> None:
        with self._lock:
            self._jobs[job.id] = job.model_copy(deep=True)

    def get(self, job_id: str) -> Optional[Job]:
        with self._lock:
            job = self._jobs.get(job_id)
            return job.model_copy(deep=True) if job is not None else None

    def update(self, job_id: str, mutator: JobMutator) -> Job:
        with self._lock:
            current = self._jobs.get(job_id)
            if current is None:
                raise JobNotFoundError(job_id)
            updated = mutator(current.model_copy(deep=True))
            self._jobs[job_id] = updated.model_copy(deep=True)
            return updated

    def delete(self, job_id: str) -> bool:
        with self._lock:
            return self._jobs.pop(job_id, None) is not None

    def delete_if(self, job_id: str, predicate: JobPredicate) -> bool:
        with self._lock:
            current = self._jobs.get(job_id)
            if current is None or not predicate(current.model_copy(deep=True)):
                return False
            del self._jobs[job_id]
            return True

    def list(self) -> List[Job]:
        with self._lock:
            return _sorted([job.model_copy(deep=True) for job in self._jobs.values()])

    def __len__(self) -> int:
        with self._lock:
            return len(self._jobs)


class RedisJobStore(JobStore):
    """
    Redis-backed store so several API processes (and the Celery retention
    worker) share one registry.

    Each job is a JSON document under `<prefix><job_id>`; `<prefix>index` is a
    set of known ids. Read-modify-write runs inside WATCH/MULTI transactions,
    retried by redis-py when a concurrent writer touches the key.
    """

    def __init__(self, client: redis.Redis, prefix: str = "gptcore:research_job:") -> None:
        self._client = client
        self._prefix = prefix

    @classmethod
    def from_url(cls, url: str, prefix: str = "gptcore:research_job:") -> "RedisJobStore":
        client = redis.from_url(
            url,
            decode_responses=True,
            socket_timeout=5,
            socket_connect_timeout=5,
        )
        return cls(client, prefix=prefix)

    def _key(self, job_id: str) -> str:
        return f"{self._prefix}{job_id}"

    @property
    def _index_key(self) -> str:
        return f"{self._prefix}index"

    @staticmethod
    def _dump(job: Job) -> str:
        return job.model_dump_json()

    @staticmethod
    def _load(raw: str | bytes) -> Job:
        return Job.model_validate_json(raw)

    def put(self, job: Job) -> None:
        pipe = self._client.pipeline()
        pipe.set(self._key(job.id), self._dump(job))
        pipe.sadd(self._index_key, job.id)
        pipe.execute()

    def get(self, job_id: str) -> Optional[Job]:
        raw = self._client.get(self._key(job_id))
        return self._load(raw) if raw is not None else None

    def update(self, job_id: str, mutator: JobMutator) -> Job:
        key = self._key(job_id)

        def _txn(pipe: redis.client.Pipeline) -> Job:
            raw = pipe.get(key)
            if raw is None:
                raise JobNotFoundError(job_id)
            updated = mutator(self._load(raw))
            pipe.multi()
            pipe.set(key, self._dump(updated))
            return updated

        return self._client.transaction(_txn, key, value_from_callable=True)

    def delete(self, job_id: str) -> bool:
        pipe = self._client.pipeline()
        pipe.delete(self._key(job_id))
        pipe.srem(self._index_key, job_id)
        deleted, _ = pipe.execute()
        return bool(deleted)

    def delete_if(self, job_id: str, predicate: JobPredicate) -> bool:
        key = self._key(job_id)

        def _txn(pipe: redis.client.Pipeline) -> bool:
            raw = pipe.get(key)
            if raw is None or not predicate(self._load(raw)):
                return False
            pipe.multi()
            pipe.delete(key)
            pipe.srem(self._index_key, job_id)
            return True

        return self._client.transaction(_txn, key, value_from_callable=True)

    def list(self) -> List[Job]:
        ids = sorted(self._client.smembers(self._index_key))
        if not ids:
            return []
        jobs: List[Job] = []
        for job_id, raw in zip(ids, self._client.mget([self._key(i) for i in ids])):
            if raw is None:
                # Expired or deleted behind our back; drop the stale index entry
                self._client.srem(self._index_key, job_id)
                continue
            jobs.append(self._load(raw))
        return _sorted(jobs)


def build_job_store(settings: Settings) -> JobStore:
    if settings.JOB_STORE_BACKEND == "redis":
        if not settings.REDIS_URL:
            raise RuntimeError("JOB_STORE_BACKEND=redis requires REDIS_URL to be set")
        logger.info("Using Redis job store", extra={"step": "job_store"})
        return RedisJobStore.from_url(settings.REDIS_URL, prefix=settings.JOB_REDIS_PREFIX)
    logger.info("Using in-memory job store", extra={"step": "job_store"})
    return InMemoryJobStore()
