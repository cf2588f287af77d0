"""Background memory work. Jobs run on a thread pool; results come back on a queue.

The UI loop submits jobs and drains results with poll(). A job carries
everything it needs by value, so nothing the caller mutates afterwards can
leak into a running job.
"""

from __future__ import annotations

import logging
import queue
import threading
import uuid
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable

from persona_mind.mind import Mind

logger = logging.getLogger(__name__)

# Takes a persona name, returns a Mind for it. The worker never closes it.
MindFactory = Callable[[str], Mind]


def _job_id() -> str:
    return uuid.uuid4().hex[:12]


@dataclass(frozen=True)
class RetrievalJob:
    persona: str
    query: str
    limit: int | None = None
    job_id: str = field(default_factory=_job_id)


@dataclass(frozen=True)
class ReflectionJob:
    persona: str
    summary: str
    recent_user_messages: tuple[str, ...] = ()
    now: datetime | None = None
    job_id: str = field(default_factory=_job_id)

    def __post_init__(self) -> None:
        # Lists passed in by the caller are snapshotted
        object.__setattr__(self, "recent_user_messages", tuple(self.recent_user_messages))


@dataclass(frozen=True)
class WorkResult:
    job_id: str
    kind: str        # "retrieval" | "reflection"
    value: Any = None
    error: str | None = None

    @property
    def ok(self) -> bool:
        return self.error is None


class MemoryWorker:
    """Runs retrieval and reflection off the caller's thread.

    Reflections for one persona run one at a time; different personas
    run concurrently. Failures come back as a WorkResult with ``error``.
    """

    def __init__(self, mind_factory: MindFactory, max_workers: int = 2) -> None:
        self._mind_factory = mind_factory
        self._executor = ThreadPoolExecutor(max_workers=max_workers,
                                            thread_name_prefix="persona-mind")
        self._outbox: queue.Queue[WorkResult] = queue.Queue()
        self._locks: dict[str, threading.Lock] = {}
        self._locks_guard = threading.Lock()

    # ── submit ─────────────────────────────────────────────────────────

    def submit_retrieval(self, job: RetrievalJob) -> str:
        self._executor.submit(self._run, job.job_id, "retrieval", self._retrieve, job)
        return job.job_id

    def submit_reflection(self, job: ReflectionJob) -> str:
        self._executor.submit(self._run, job.job_id, "reflection", self._reflect, job)
        return job.job_id

    # ── results ────────────────────────────────────────────────────────

    def poll(self) -> list[WorkResult]:
        """Every result available right now. Never blocks."""
        results = []
        while True:
            try:
                results.append(self._outbox.get_nowait())
            except queue.Empty:
                return results

    def wait(self, timeout: float | None = None) -> WorkResult | None:
        """Block for the next result; None on timeout."""
        try:
            return self._outbox.get(timeout=timeout)
        except queue.Empty:
            return None

    def shutdown(self, wait: bool = True) -> None:
        self._executor.shutdown(wait=wait)

    def __enter__(self) -> MemoryWorker:
        return self

    def __exit__(self, *args) -> None:
        self.shutdown()

    # ── execution ──────────────────────────────────────────────────────

    def _run(self, job_id: str, kind: str, fn: Callable[[Any], Any], job: Any) -> None:
        try:
            value = fn(job)
        except Exception as exc:
            logger.warning("%s job %s failed: %s", kind, job_id, exc)
            self._outbox.put(WorkResult(job_id, kind, error=str(exc) or type(exc).__name__))
            return
        self._outbox.put(WorkResult(job_id, kind, value=value))

    def _retrieve(self, job: RetrievalJob):
        mind = self._mind_factory(job.persona)
        return mind.recall(job.query, limit=job.limit)

    def _reflect(self, job: ReflectionJob) -> bool:
        with self._persona_lock(job.persona):
            mind = self._mind_factory(job.persona)
            return mind.reflect(job.summary, list(job.recent_user_messages), now=job.now)

    def _persona_lock(self, persona: str) -> threading.Lock:
        with self._locks_guard:
            lock = self._locks.get(persona)
            if lock is None:
                lock = self._locks[persona] = threading.Lock()
            return lock
