#!/usr/bin/env python3
"""
test_persistence.py - Event stores and the background persistence worker

Run with: pytest tests/test_persistence.py -v
"""

import asyncio
import json

import pytest

from respira.events import AdjustTempo, Boot, Halt, LoadProtocol
from respira.persistence import JsonlEventStore, MemoryEventStore, PersistenceWorker


T0 = 1_700_000_000_000.0
DAY = 24 * 3600 * 1000


# =============================================================================
# Stores
# =============================================================================

class TestMemoryEventStore:

    def test_events_and_meta(self):
        store = MemoryEventStore()

        async def scenario():
            await store.write_event(Boot(timestamp=T0))
            await store.set_meta("k", {"a": 1})
            return await store.get_meta("k"), await store.get_meta("missing")

        value, missing = asyncio.run(scenario())
        assert value == {"a": 1}
        assert missing is None
        assert len(store.events) == 1

    def test_garbage_collect(self):
        store = MemoryEventStore()
        store.events = [Boot(timestamp=T0 - 8 * DAY), Halt(timestamp=T0 - DAY)]
        removed = asyncio.run(store.garbage_collect(7 * DAY, now_ms=T0))
        assert removed == 1
        assert isinstance(store.events[0], Halt)


class TestJsonlEventStore:

    @pytest.fixture
    def store(self, tmp_path):
        return JsonlEventStore(tmp_path / "respira")

    def test_round_trip_events(self, store):
        written = [
            Boot(timestamp=T0),
            LoadProtocol(pattern_id="box", timestamp=T0 + 1),
            AdjustTempo(scale=1.1, reason="test", timestamp=T0 + 2),
        ]

        async def scenario():
            for e in written:
                await store.write_event(e)
            return await store.read_events()

        assert asyncio.run(scenario()) == written

    def test_bad_lines_skipped(self, store):
        asyncio.run(store.write_event(Boot(timestamp=T0)))
        with store.events_path.open("a", encoding="utf-8") as f:
            f.write("{not json\n")
            f.write(json.dumps({"type": "NOPE", "timestamp": T0}) + "\n")
        events = asyncio.run(store.read_events())
        assert events == [Boot(timestamp=T0)]

    def test_meta_persists_across_instances(self, store, tmp_path):
        asyncio.run(store.set_meta("safety_registry", {"box": {"resonance_score": 0.7}}))
        asyncio.run(store.set_meta("other", 3))
        reopened = JsonlEventStore(tmp_path / "respira")
        assert asyncio.run(reopened.get_meta("safety_registry")) == {"box": {"resonance_score": 0.7}}
        assert asyncio.run(reopened.get_meta("other")) == 3

    def test_garbage_collect_drops_old_and_corrupt(self, store):
        async def scenario():
            await store.write_event(Boot(timestamp=T0 - 8 * DAY))
            await store.write_event(Halt(timestamp=T0))
            with store.events_path.open("a", encoding="utf-8") as f:
                f.write("garbage\n")
            removed = await store.garbage_collect(7 * DAY, now_ms=T0)
            return removed, await store.read_events()

        removed, events = asyncio.run(scenario())
        assert removed == 2
        assert events == [Halt(timestamp=T0)]

    def test_empty_store(self, store):
        assert asyncio.run(store.read_events()) == []
        assert asyncio.run(store.get_meta("anything")) is None
        assert asyncio.run(store.garbage_collect(DAY, now_ms=T0)) == 0


# =============================================================================
# Worker
# =============================================================================

class TestPersistenceWorker:

    @pytest.fixture
    def worker(self):
        w = PersistenceWorker()
        yield w
        w.close()

    def test_submit_and_flush(self, worker):
        store = MemoryEventStore()
        for i in range(20):
            worker.submit(lambda i=i: store.write_event(Boot(timestamp=T0 + i)))
        assert worker.flush(timeout=2.0)
        assert [e.timestamp for e in store.events] == [T0 + i for i in range(20)]

    def test_on_result(self, worker):
        store = MemoryEventStore()
        store.meta["k"] = "v"
        received = []
        worker.submit(lambda: store.get_meta("k"), on_result=received.append)
        assert worker.flush(timeout=2.0)
        assert received == ["v"]

    def test_failure_counted_not_raised(self, worker):
        async def broken():
            raise OSError("disk full")

        worker.submit(broken, label="broken")
        assert worker.flush(timeout=2.0)
        assert worker.failures == 1

    def test_closed_worker_drops(self):
        worker = PersistenceWorker()
        worker.close()
        store = MemoryEventStore()
        assert worker.submit(lambda: store.write_event(Boot(timestamp=T0))) is None
        worker.close()
        assert store.events == []
