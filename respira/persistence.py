"""
Respira Persistence - Fire-and-Forget Event Log and Metadata
============================================================

The control loop never waits on storage. Writes are handed to a
PersistenceWorker, a daemon thread running its own asyncio loop, and any
failure is logged and forgotten; the kernel carries on in memory.

Architecture:
    [Kernel (control thread)]
            │  submit(coro)          (never blocks)
            ▼
    ┌──────────────────────┐
    │  PersistenceWorker   │  asyncio loop on a daemon thread
    └──────────┬───────────┘
               ▼
    ┌──────────────────────┐
    │      EventStore      │  get_meta / set_meta / write_event / garbage_collect
    ├──────────────────────┤
    │  MemoryEventStore    │  tests, ephemeral sessions
    │  JsonlEventStore     │  events.jsonl + meta.json on disk
    └──────────────────────┘
"""

from __future__ import annotations

import asyncio
import concurrent.futures
import json
import logging
import os
import threading
import time
from pathlib import Path
from typing import Any, Awaitable, Callable, Dict, List, Optional, Set

from .events import BaseEvent, parse_event

logger = logging.getLogger(__name__)


def _now_ms() -> float:
    return time.time() * 1000.0


# =============================================================================
# Stores
# =============================================================================

class EventStore:
    """Async storage collaborator."""

    async def get_meta(self, key: str) -> Optional[Any]:
        raise NotImplementedError

    async def set_meta(self, key: str, value: Any) -> None:
        raise NotImplementedError

    async def write_event(self, event: BaseEvent) -> None:
        raise NotImplementedError

    async def garbage_collect(self, retention_ms: float, now_ms: Optional[float] = None) -> int:
        """Drop events older than the retention window. Returns how many."""
        raise NotImplementedError


class MemoryEventStore(EventStore):
    """In-process store."""

    def __init__(self):
        self.events: List[BaseEvent] = []
        self.meta: Dict[str, Any] = {}

    async def get_meta(self, key: str) -> Optional[Any]:
        return self.meta.get(key)

    async def set_meta(self, key: str, value: Any) -> None:
        self.meta[key] = value

    async def write_event(self, event: BaseEvent) -> None:
        self.events.append(event)

    async def garbage_collect(self, retention_ms: float, now_ms: Optional[float] = None) -> int:
        cutoff = (now_ms if now_ms is not None else _now_ms()) - retention_ms
        before = len(self.events)
        self.events = [e for e in self.events if e.timestamp >= cutoff]
        return before - len(self.events)


class JsonlEventStore(EventStore):
    """
    Events appended to ``events.jsonl``, metadata in ``meta.json``.

    Blocking file I/O runs via asyncio.to_thread; an asyncio.Lock keeps
    writers from interleaving.
    """

    def __init__(self, data_dir: Path):
        self.data_dir = Path(os.path.expanduser(str(data_dir)))
        self.data_dir.mkdir(parents=True, exist_ok=True)
        self.events_path = self.data_dir / "events.jsonl"
        self.meta_path = self.data_dir / "meta.json"
        self._lock: Optional[asyncio.Lock] = None

    def _get_lock(self) -> asyncio.Lock:
        if self._lock is None:
            self._lock = asyncio.Lock()
        return self._lock

    # -- blocking helpers ---------------------------------------------------

    def _read_meta_file(self) -> Dict[str, Any]:
        if not self.meta_path.exists():
            return {}
        with self.meta_path.open("r", encoding="utf-8") as f:
            return json.load(f)

    def _write_meta_file(self, meta: Dict[str, Any]) -> None:
        tmp = self.meta_path.with_suffix(".json.tmp")
        with tmp.open("w", encoding="utf-8") as f:
            json.dump(meta, f, indent=2)
        os.replace(tmp, self.meta_path)

    def _append_line(self, line: str) -> None:
        with self.events_path.open("a", encoding="utf-8") as f:
            f.write(line + "\n")

    def _read_lines(self) -> List[str]:
        if not self.events_path.exists():
            return []
        with self.events_path.open("r", encoding="utf-8") as f:
            return [line for line in f.read().splitlines() if line.strip()]

    def _rewrite_lines(self, lines: List[str]) -> None:
        tmp = self.events_path.with_suffix(".jsonl.tmp")
        with tmp.open("w", encoding="utf-8") as f:
            for line in lines:
                f.write(line + "\n")
        os.replace(tmp, self.events_path)

    # -- EventStore ---------------------------------------------------------

    async def get_meta(self, key: str) -> Optional[Any]:
        async with self._get_lock():
            meta = await asyncio.to_thread(self._read_meta_file)
        return meta.get(key)

    async def set_meta(self, key: str, value: Any) -> None:
        async with self._get_lock():
            meta = await asyncio.to_thread(self._read_meta_file)
            meta[key] = value
            await asyncio.to_thread(self._write_meta_file, meta)

    async def write_event(self, event: BaseEvent) -> None:
        line = event.model_dump_json()
        async with self._get_lock():
            await asyncio.to_thread(self._append_line, line)

    async def garbage_collect(self, retention_ms: float, now_ms: Optional[float] = None) -> int:
        cutoff = (now_ms if now_ms is not None else _now_ms()) - retention_ms
        async with self._get_lock():
            lines = await asyncio.to_thread(self._read_lines)
            kept = []
            for line in lines:
                try:
                    if json.loads(line).get("timestamp", 0) >= cutoff:
                        kept.append(line)
                except json.JSONDecodeError:
                    logger.warning(f"Dropping corrupt event line during GC: {line[:80]}")
            if len(kept) != len(lines):
                await asyncio.to_thread(self._rewrite_lines, kept)
        removed = len(lines) - len(kept)
        if removed:
            logger.info(f"Garbage-collected {removed} events older than {cutoff:.0f}")
        return removed

    async def read_events(self) -> List[BaseEvent]:
        """Parse the log back into typed events, skipping bad lines."""
        async with self._get_lock():
            lines = await asyncio.to_thread(self._read_lines)
        events: List[BaseEvent] = []
        for line in lines:
            try:
                events.append(parse_event(line))
            except ValueError as e:
                logger.warning(f"Skipping unreadable event line: {e}")
        return events


# =============================================================================
# Worker
# =============================================================================

class PersistenceWorker:
    """
    Runs store coroutines on a private event loop so synchronous callers
    never block on I/O.

    Example:
        worker = PersistenceWorker()
        worker.submit(lambda: store.write_event(event), label="write_event")
        worker.flush(timeout=1.0)
        worker.close()
    """

    def __init__(self, name: str = "respira-persistence"):
        self._loop = asyncio.new_event_loop()
        self._thread = threading.Thread(target=self._run, name=name, daemon=True)
        self._pending: Set[concurrent.futures.Future] = set()
        self._lock = threading.Lock()
        self._closed = False
        self.failures = 0
        self._thread.start()

    def _run(self) -> None:
        asyncio.set_event_loop(self._loop)
        self._loop.run_forever()

    async def _invoke(
        self,
        factory: Callable[[], Awaitable[Any]],
        label: str,
        on_result: Optional[Callable[[Any], None]],
    ) -> Any:
        try:
            result = await factory()
            if on_result is not None:
                on_result(result)
            return result
        except Exception as e:
            self.failures += 1
            logger.warning(f"Persistence {label} failed: {e!r}")
            return None

    def submit(
        self,
        factory: Callable[[], Awaitable[Any]],
        label: str = "persistence",
        on_result: Optional[Callable[[Any], None]] = None,
    ) -> Optional[concurrent.futures.Future]:
        """Schedule ``factory()`` on the worker loop. Never raises."""
        if self._closed:
            logger.debug(f"Worker closed, dropping {label}")
            return None
        future = asyncio.run_coroutine_threadsafe(
            self._invoke(factory, label, on_result), self._loop,
        )
        with self._lock:
            self._pending.add(future)
        future.add_done_callback(self._on_done)
        return future

    def _on_done(self, future: concurrent.futures.Future) -> None:
        with self._lock:
            self._pending.discard(future)

    def flush(self, timeout: Optional[float] = 5.0) -> bool:
        """Wait for everything submitted so far. True if all finished."""
        with self._lock:
            pending = list(self._pending)
        if not pending:
            return True
        _, not_done = concurrent.futures.wait(pending, timeout=timeout)
        return not not_done

    def close(self, timeout: float = 2.0) -> None:
        if self._closed:
            return
        self.flush(timeout)
        self._closed = True
        self._loop.call_soon_threadsafe(self._loop.stop)
        self._thread.join(timeout)
        if not self._thread.is_alive():
            self._loop.close()


__all__ = [
    "EventStore",
    "MemoryEventStore",
    "JsonlEventStore",
    "PersistenceWorker",
]
