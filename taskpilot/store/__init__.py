"""
taskpilot Task State Store

A single-writer actor per project. It owns the task ledger and the
append-only progress log, and drives dispatch from a self-rearming alarm.

Every mutation happens under the store's lock and bumps the ledger
version; readers only ever receive deep copies.

Dispatch discipline:
  - an entry is marked in-flight (and its attempt counted) before the
    execution request leaves the process
  - in-flight entries are never eligible; only complete/fail, a failed
    send, or the dispatch timeout clears the marker
  - at most `capacity` entries are in flight; one dispatch per firing
"""

from __future__ import annotations

import threading
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Callable, Protocol

from loguru import logger

from taskpilot.agents.prompt import PROGRESS_CONTEXT_LIMIT, tail
from taskpilot.config_loader import StoreConfig
from taskpilot.models import (
    ExecutionRequest,
    ExecutionResult,
    Ledger,
    LedgerEntry,
    ProgressEntry,
    TaskRecord,
    utc_now,
)
from taskpilot.store.alarm import Alarm, ThreadingAlarm
from taskpilot.store.storage import FileStateStorage, MemoryStateStorage, StateStorage

LEDGER_KEY = "ledger"
PROGRESS_KEY = "progress"


class TaskNotFoundError(KeyError):
    def __init__(self, task_id: str):
        super().__init__(task_id)
        self.task_id = task_id

    def __str__(self) -> str:
        return f"Task not found: {self.task_id}"


class ExecutionDispatcher(Protocol):
    def trigger_execution(self, request: ExecutionRequest) -> object: ...


@dataclass
class DispatchTarget:
    """Static parts of every ExecutionRequest a store sends."""
    repo_url: str
    callback_url: str
    base_branch: str = "main"
    max_iterations: int = 10


class TaskStateStore:
    def __init__(
        self,
        project_name: str,
        storage: StateStorage,
        dispatcher: ExecutionDispatcher,
        target: DispatchTarget,
        config: StoreConfig | None = None,
        alarm: Alarm | None = None,
    ):
        self.project_name = project_name
        self.storage = storage
        self.dispatcher = dispatcher
        self.target = target
        self.config = config or StoreConfig()
        self.alarm = alarm or ThreadingAlarm(self.dispatch, name=project_name)
        self._lock = threading.RLock()

    # ------------------------------------------------------------------
    # Commands
    # ------------------------------------------------------------------

    def enqueue(self, task: TaskRecord) -> None:
        """
        Insert or overwrite a task with a fresh attempt history.
        A re-enqueued task carries new requirements, so its attempts reset.
        """
        with self._lock:
            ledger = self._load_ledger()
            previous = ledger.tasks.get(task.id)
            ledger.tasks[task.id] = LedgerEntry(
                description=task.description or task.title,
                branch_name=task.branch or f"task/{task.id}",
                passes=False,
                attempts=0,
                in_flight=previous.in_flight if previous else False,
                dispatched_at=previous.dispatched_at if previous else None,
            )
            ledger.touch()
            self._save_ledger(ledger)
            logger.info(f"[STORE] {self.project_name}: enqueued {task.id} (v{ledger.version})")
            self.alarm.arm(self.config.dispatch_delay)

    def complete(self, task_id: str, result: ExecutionResult) -> LedgerEntry:
        with self._lock:
            ledger = self._load_ledger()
            entry = ledger.tasks.get(task_id)
            if entry is None:
                raise TaskNotFoundError(task_id)
            if entry.passes:
                logger.info(f"[STORE] {self.project_name}: {task_id} already passed, ignoring completion")
                return entry.model_copy(deep=True)

            entry.passes = result.success
            entry.pr_url = result.pr_url
            entry.last_attempt_at = utc_now()
            entry.error = None if result.success else (result.error or entry.error)
            entry.in_flight = False
            entry.dispatched_at = None
            ledger.touch()
            self._save_ledger(ledger)
            logger.info(f"[STORE] {self.project_name}: completed {task_id} (passes={entry.passes})")

            if result.learnings:
                self._append_progress(ProgressEntry(
                    task_id=task_id,
                    description=entry.description,
                    learnings=result.learnings,
                    files_changed=result.files_changed,
                ))

            self._rearm(ledger)
            return entry.model_copy(deep=True)

    def fail(self, task_id: str, error: str) -> LedgerEntry:
        """
        Record a failed attempt. Dispatch already counted the attempt for
        an in-flight entry; failures reported outside a dispatch count here.
        """
        with self._lock:
            ledger = self._load_ledger()
            entry = ledger.tasks.get(task_id)
            if entry is None:
                raise TaskNotFoundError(task_id)
            if entry.passes:
                logger.info(f"[STORE] {self.project_name}: {task_id} already passed, ignoring failure: {error}")
                return entry.model_copy(deep=True)

            if not entry.in_flight:
                entry.attempts += 1
            entry.passes = False
            entry.error = error
            entry.last_attempt_at = utc_now()
            entry.in_flight = False
            entry.dispatched_at = None
            ledger.touch()
            self._save_ledger(ledger)
            logger.info(
                f"[STORE] {self.project_name}: failed {task_id} "
                f"(attempt {entry.attempts}/{self.config.max_attempts}): {error}"
            )

            self._rearm(ledger)
            return entry.model_copy(deep=True)

    def update_progress(self, entry: ProgressEntry) -> None:
        with self._lock:
            self._append_progress(entry)

    def dispatch(self) -> str | None:
        """
        Alarm handler. Sends at most one execution request and returns the
        dispatched task id, if any.
        """
        with self._lock:
            ledger = self._load_ledger()
            changed = self._reclaim_stuck(ledger)

            selected: tuple[str, LedgerEntry] | None = None
            if self._in_flight_count(ledger) < self.config.capacity:
                selected = self._first_eligible(ledger)

            request: ExecutionRequest | None = None
            if selected is not None:
                task_id, entry = selected
                now = utc_now()
                entry.attempts += 1
                entry.in_flight = True
                entry.dispatched_at = now
                entry.last_attempt_at = now
                changed = True
                request = ExecutionRequest(
                    task_id=task_id,
                    repo_url=self.target.repo_url,
                    base_branch=self.target.base_branch,
                    branch_name=entry.branch_name,
                    prompt=entry.description or task_id,
                    max_iterations=self.target.max_iterations,
                    callback_url=self.target.callback_url,
                    progress_context=self._progress_tail(),
                )

            if changed:
                ledger.touch()
                self._save_ledger(ledger)
            self._rearm(ledger)

        if request is None:
            return None

        attempt = selected[1].attempts
        logger.info(f"[STORE] {self.project_name}: dispatching {request.task_id} (attempt {attempt})")
        try:
            self.dispatcher.trigger_execution(request)
        except Exception as e:
            logger.error(f"[STORE] {self.project_name}: dispatch of {request.task_id} failed: {e}")
            self._release_after_failed_send(request.task_id, attempt, str(e))
        return request.task_id

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def next_eligible_task(self) -> tuple[str, LedgerEntry] | None:
        with self._lock:
            found = self._first_eligible(self._load_ledger())
            if found is None:
                return None
            return found[0], found[1].model_copy(deep=True)

    def get_ledger(self) -> Ledger:
        with self._lock:
            return self._load_ledger().model_copy(deep=True)

    def get_progress_log(self) -> str:
        with self._lock:
            return self.storage.get(PROGRESS_KEY) or ""

    def progress_context(self, limit: int = PROGRESS_CONTEXT_LIMIT) -> str:
        with self._lock:
            return self._progress_tail(limit)

    # ------------------------------------------------------------------
    # Internals (callers hold the lock)
    # ------------------------------------------------------------------

    def _load_ledger(self) -> Ledger:
        raw = self.storage.get(LEDGER_KEY)
        if raw:
            return Ledger.model_validate_json(raw)
        ledger = Ledger(project_name=self.project_name)
        self._save_ledger(ledger)
        return ledger

    def _save_ledger(self, ledger: Ledger) -> None:
        self.storage.put(LEDGER_KEY, ledger.model_dump_json(by_alias=True, indent=2))

    def _append_progress(self, entry: ProgressEntry) -> None:
        current = self.storage.get(PROGRESS_KEY) or ""
        self.storage.put(PROGRESS_KEY, current + entry.render())

    def _progress_tail(self, limit: int = PROGRESS_CONTEXT_LIMIT) -> str:
        return tail(self.storage.get(PROGRESS_KEY) or "", limit)

    def _is_eligible(self, entry: LedgerEntry) -> bool:
        return not entry.passes and not entry.in_flight and entry.attempts < self.config.max_attempts

    def _first_eligible(self, ledger: Ledger) -> tuple[str, LedgerEntry] | None:
        for task_id, entry in ledger.tasks.items():
            if self._is_eligible(entry):
                return task_id, entry
        return None

    @staticmethod
    def _in_flight_count(ledger: Ledger) -> int:
        return sum(1 for entry in ledger.tasks.values() if entry.in_flight)

    def _reclaim_stuck(self, ledger: Ledger) -> bool:
        """Return in-flight entries with no callback after `dispatch_timeout` to the pool."""
        cutoff = datetime.now(timezone.utc) - timedelta(seconds=self.config.dispatch_timeout)
        reclaimed = False
        for task_id, entry in ledger.tasks.items():
            if not entry.in_flight or not entry.dispatched_at:
                continue
            if datetime.fromisoformat(entry.dispatched_at) > cutoff:
                continue
            entry.in_flight = False
            entry.dispatched_at = None
            entry.error = f"No callback within {self.config.dispatch_timeout:g}s of dispatch"
            reclaimed = True
            logger.warning(f"[STORE] {self.project_name}: reclaimed stuck task {task_id}")
        return reclaimed

    def _rearm(self, ledger: Ledger, delay: float | None = None) -> None:
        in_flight = self._in_flight_count(ledger)
        has_eligible = self._first_eligible(ledger) is not None
        if has_eligible and in_flight < self.config.capacity:
            self.alarm.arm(self.config.dispatch_delay if delay is None else delay)
        elif in_flight:
            self.alarm.arm(self.config.reap_interval)

    def _release_after_failed_send(self, task_id: str, attempt: int, error: str) -> None:
        with self._lock:
            ledger = self._load_ledger()
            entry = ledger.tasks.get(task_id)
            # A callback or a re-enqueue may have raced ahead of us
            if entry is None or not entry.in_flight or entry.attempts != attempt:
                return
            entry.in_flight = False
            entry.dispatched_at = None
            entry.error = f"Dispatch failed: {error}"
            ledger.touch()
            self._save_ledger(ledger)
            self._rearm(ledger, delay=self.config.reap_interval)


class StoreRegistry:
    """Addresses one store actor per project name, created on first use."""

    def __init__(self, factory: Callable[[str], TaskStateStore]):
        self._factory = factory
        self._stores: dict[str, TaskStateStore] = {}
        self._lock = threading.Lock()

    def get(self, project_name: str) -> TaskStateStore:
        with self._lock:
            store = self._stores.get(project_name)
            if store is None:
                store = self._stores[project_name] = self._factory(project_name)
            return store

    def projects(self) -> list[str]:
        with self._lock:
            return list(self._stores)


def build_storage(config: StoreConfig, project_name: str) -> StateStorage:
    if config.backend == "memory":
        return MemoryStateStorage()
    return FileStateStorage(Path(config.state_dir), project_name)


__all__ = [
    "DispatchTarget",
    "ExecutionDispatcher",
    "FileStateStorage",
    "MemoryStateStorage",
    "StoreRegistry",
    "TaskNotFoundError",
    "TaskStateStore",
    "build_storage",
]
