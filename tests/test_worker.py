"""Tests for the background worker and its result channel."""

import threading
import time
from unittest import mock

import pytest

from persona_mind.worker import MemoryWorker, ReflectionJob, RetrievalJob, WorkResult


def _drain(worker, expected, timeout=5.0):
    results = []
    deadline = time.monotonic() + timeout
    while len(results) < expected and time.monotonic() < deadline:
        result = worker.wait(timeout=0.1)
        if result is not None:
            results.append(result)
    return results


class FakeMind:
    def __init__(self, persona):
        self.persona = persona
        self.reflections = []

    def recall(self, query, limit=None):
        if query == "boom":
            raise RuntimeError("store exploded")
        return [f"{self.persona}:{query}"]

    def reflect(self, summary, recent_user_messages, now=None):
        self.reflections.append((summary, recent_user_messages))
        return True


@pytest.fixture
def minds():
    return {}


@pytest.fixture
def worker(minds):
    def factory(persona):
        return minds.setdefault(persona, FakeMind(persona))

    w = MemoryWorker(factory, max_workers=4)
    yield w
    w.shutdown()


class TestJobs:
    def test_jobs_are_frozen(self):
        job = RetrievalJob("ada", "tea")
        with pytest.raises(AttributeError):
            job.query = "coffee"

    def test_job_ids_unique(self):
        assert RetrievalJob("ada", "tea").job_id != RetrievalJob("ada", "tea").job_id

    def test_messages_captured_by_value(self):
        recent = ["first"]
        job = ReflectionJob("ada", "summary", recent)
        recent.append("second")
        assert job.recent_user_messages == ("first",)


class TestWorker:
    def test_retrieval_result(self, worker):
        job_id = worker.submit_retrieval(RetrievalJob("ada", "tea"))
        [result] = _drain(worker, 1)
        assert result == WorkResult(job_id, "retrieval", value=["ada:tea"])
        assert result.ok

    def test_failure_becomes_result(self, worker):
        job_id = worker.submit_retrieval(RetrievalJob("ada", "boom"))
        [result] = _drain(worker, 1)
        assert result.job_id == job_id
        assert not result.ok
        assert "store exploded" in result.error

    def test_reflection_result(self, worker, minds):
        job = ReflectionJob("ada", "talked about tea", ("I like tea",))
        worker.submit_reflection(job)
        [result] = _drain(worker, 1)
        assert result.kind == "reflection"
        assert result.value is True
        assert minds["ada"].reflections == [("talked about tea", ["I like tea"])]

    def test_poll_never_blocks(self, worker):
        assert worker.poll() == []

    def test_poll_drains_everything(self, worker):
        ids = {worker.submit_retrieval(RetrievalJob("ada", f"q{i}")) for i in range(5)}
        deadline = time.monotonic() + 5
        results = []
        while len(results) < 5 and time.monotonic() < deadline:
            results.extend(worker.poll())
            time.sleep(0.01)
        assert {r.job_id for r in results} == ids


class TestPersonaLocks:
    def _tracking_factory(self, active, peak, guard):
        class SlowMind:
            def __init__(self, persona):
                self.persona = persona

            def reflect(self, summary, recent_user_messages, now=None):
                with guard:
                    active[self.persona] = active.get(self.persona, 0) + 1
                    peak[self.persona] = max(peak.get(self.persona, 0), active[self.persona])
                    peak["total"] = max(peak.get("total", 0), sum(active.values()))
                time.sleep(0.2)
                with guard:
                    active[self.persona] -= 1
                return True

        return SlowMind

    def test_same_persona_serialized(self):
        active, peak, guard = {}, {}, threading.Lock()
        slow = self._tracking_factory(active, peak, guard)
        with MemoryWorker(slow, max_workers=4) as worker:
            for _ in range(3):
                worker.submit_reflection(ReflectionJob("ada", "s"))
            results = _drain(worker, 3)
        assert len(results) == 3
        assert peak["ada"] == 1

    def test_different_personas_concurrent(self):
        active, peak, guard = {}, {}, threading.Lock()
        slow = self._tracking_factory(active, peak, guard)
        with MemoryWorker(slow, max_workers=4) as worker:
            worker.submit_reflection(ReflectionJob("ada", "s"))
            worker.submit_reflection(ReflectionJob("grace", "s"))
            results = _drain(worker, 2)
        assert len(results) == 2
        assert peak["total"] == 2


def test_factory_failure_reported():
    factory = mock.Mock(side_effect=OSError("disk full"))
    with MemoryWorker(factory) as worker:
        worker.submit_reflection(ReflectionJob("ada", "s"))
        [result] = _drain(worker, 1)
    assert result.error == "disk full"
    assert result.kind == "reflection"
