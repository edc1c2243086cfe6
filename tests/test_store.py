import threading

import pytest

from taskpilot.models import ExecutionResult, ProgressEntry, TaskRecord
from taskpilot.store import FileStateStorage, StoreRegistry, TaskNotFoundError
from taskpilot.store.alarm import ThreadingAlarm

from conftest import FakeDispatcher


def _task(task_id: str, description: str = "Add a widget endpoint") -> TaskRecord:
    return TaskRecord(id=task_id, title=task_id, description=description, branch=f"task/{task_id}")


# ---------------------------------------------------------------------------
# Ledger basics
# ---------------------------------------------------------------------------

def test_fresh_ledger_starts_at_version_one(store):
    ledger = store.get_ledger()
    assert ledger.version == 1
    assert ledger.project_name == "demo"
    assert ledger.tasks == {}


def test_enqueue_inserts_entry_and_arms_alarm(store, alarm):
    store.enqueue(_task("t1"))

    ledger = store.get_ledger()
    entry = ledger.tasks["t1"]
    assert ledger.version == 2
    assert entry.branch_name == "task/t1"
    assert entry.passes is False
    assert entry.attempts == 0
    assert alarm.last == 1.0


def test_double_enqueue_resets_attempts_and_passes(store):
    store.enqueue(_task("t1"))
    store.fail("t1", "boom")
    store.fail("t1", "boom again")
    store.complete("t1", ExecutionResult(task_id="t1", success=True, pr_url="https://pr/1"))

    store.enqueue(_task("t1", "New requirements"))

    entry = store.get_ledger().tasks["t1"]
    assert entry.attempts == 0
    assert entry.passes is False
    assert entry.error is None
    assert entry.pr_url is None
    assert entry.description == "New requirements"


def test_every_mutation_bumps_version(store):
    store.enqueue(_task("t1"))
    v1 = store.get_ledger().version
    store.fail("t1", "nope")
    v2 = store.get_ledger().version
    store.complete("t1", ExecutionResult(task_id="t1", success=True))
    v3 = store.get_ledger().version
    assert v1 < v2 < v3


def test_get_ledger_returns_a_copy(store):
    store.enqueue(_task("t1"))
    snapshot = store.get_ledger()
    snapshot.tasks["t1"].passes = True
    snapshot.tasks.pop("t1")

    assert store.get_ledger().tasks["t1"].passes is False


def test_unknown_task_raises_not_found(store):
    with pytest.raises(TaskNotFoundError):
        store.complete("ghost", ExecutionResult(task_id="ghost", success=True))
    with pytest.raises(TaskNotFoundError):
        store.fail("ghost", "nope")


# ---------------------------------------------------------------------------
# Eligibility
# ---------------------------------------------------------------------------

def test_next_eligible_follows_ledger_order(store):
    store.enqueue(_task("a"))
    store.enqueue(_task("b"))
    task_id, entry = store.next_eligible_task()
    assert task_id == "a"
    assert entry.branch_name == "task/a"


def test_exhausted_task_is_never_eligible(store):
    store.enqueue(_task("t1"))
    for _ in range(3):
        store.fail("t1", "still broken")

    assert store.get_ledger().tasks["t1"].attempts == 3
    assert store.next_eligible_task() is None
    assert store.dispatch() is None


def test_next_eligible_returns_none_on_empty_ledger(store):
    assert store.next_eligible_task() is None


# ---------------------------------------------------------------------------
# complete / progress
# ---------------------------------------------------------------------------

def test_complete_with_learnings_appends_one_progress_entry(store):
    store.enqueue(_task("t1"))
    store.complete("t1", ExecutionResult(task_id="t1", success=True, learnings=["x"]))

    progress = store.get_progress_log()
    assert progress.count("## ") == 1
    assert "- x" in progress
    assert "### Learnings" in progress


def test_complete_without_learnings_appends_nothing(store):
    store.enqueue(_task("t1"))
    store.complete("t1", ExecutionResult(task_id="t1", success=True))
    assert store.get_progress_log() == ""


def test_complete_success_clears_error_and_records_pr(store):
    store.enqueue(_task("t1"))
    store.fail("t1", "flaky")
    entry = store.complete("t1", ExecutionResult(task_id="t1", success=True, pr_url="https://pr/7"))

    assert entry.passes is True
    assert entry.error is None
    assert entry.pr_url == "https://pr/7"
    assert entry.attempts == 1
    assert entry.last_attempt_at is not None


def test_complete_failure_keeps_result_error(store):
    store.enqueue(_task("t1"))
    entry = store.complete("t1", ExecutionResult(task_id="t1", success=False, error="tests failed"))
    assert entry.passes is False
    assert entry.error == "tests failed"


def test_update_progress_and_context_tail(store):
    store.update_progress(ProgressEntry(task_id="t0", description="seed", learnings=["a" * 50]))
    store.update_progress(ProgressEntry(task_id="t1", description="next", learnings=["b" * 50]))

    assert "t0" in store.get_progress_log()
    context = store.progress_context(limit=40)
    assert len(context) == 40
    assert store.get_progress_log().endswith(context)


# ---------------------------------------------------------------------------
# Dispatch
# ---------------------------------------------------------------------------

def test_dispatch_marks_in_flight_and_sends_one_request(store, dispatcher):
    store.enqueue(_task("t1"))
    store.enqueue(_task("t2"))

    assert store.dispatch() == "t1"

    entry = store.get_ledger().tasks["t1"]
    assert entry.attempts == 1
    assert entry.in_flight is True
    assert entry.dispatched_at is not None

    assert len(dispatcher.requests) == 1
    request = dispatcher.requests[0]
    assert request.task_id == "t1"
    assert request.branch_name == "task/t1"
    assert request.base_branch == "main"
    assert request.repo_url == "https://github.com/acme/widgets.git"
    assert request.callback_url.endswith("?project=demo")
    assert request.prompt == "Add a widget endpoint"


def test_in_flight_task_is_not_dispatched_twice(store, dispatcher, alarm):
    store.enqueue(_task("t1"))
    store.dispatch()

    assert store.dispatch() is None
    assert len(dispatcher.requests) == 1
    assert store.next_eligible_task() is None
    # Only in-flight work left: the alarm polls at the reap interval
    assert alarm.last == 60


def test_capacity_gates_dispatch(make_store, dispatcher):
    store = make_store(capacity=2)
    for task_id in ("a", "b", "c"):
        store.enqueue(_task(task_id))

    assert store.dispatch() == "a"
    assert store.dispatch() == "b"
    assert store.dispatch() is None
    assert [r.task_id for r in dispatcher.requests] == ["a", "b"]


def test_dispatch_carries_progress_context(store, dispatcher):
    store.update_progress(ProgressEntry(task_id="t0", description="seed", learnings=["use the repo helpers"]))
    store.enqueue(_task("t1"))
    store.dispatch()
    assert "use the repo helpers" in dispatcher.requests[0].progress_context


def test_failed_send_releases_entry_and_keeps_attempt(make_store, alarm):
    store = make_store()
    store.dispatcher = FakeDispatcher(error=RuntimeError("connection refused"))
    store.enqueue(_task("t1"))

    assert store.dispatch() == "t1"

    entry = store.get_ledger().tasks["t1"]
    assert entry.in_flight is False
    assert entry.attempts == 1
    assert "connection refused" in entry.error
    assert alarm.last == 60


def test_stuck_dispatch_is_reclaimed_after_timeout(make_store, dispatcher):
    store = make_store(dispatch_timeout=0)
    store.enqueue(_task("t1"))
    store.dispatch()

    assert store.dispatch() == "t1"

    entry = store.get_ledger().tasks["t1"]
    assert entry.attempts == 2
    assert entry.in_flight is True
    assert len(dispatcher.requests) == 2


def test_fail_after_dispatch_does_not_double_count(store):
    store.enqueue(_task("t1"))
    store.dispatch()
    entry = store.fail("t1", "tests failed")
    assert entry.attempts == 1
    assert entry.in_flight is False


# ---------------------------------------------------------------------------
# End-to-end ledger scenarios
# ---------------------------------------------------------------------------

def test_failed_run_then_retry_cycle(store, dispatcher):
    store.enqueue(_task("T1"))

    assert store.dispatch() == "T1"
    assert store.get_ledger().tasks["T1"].attempts == 1
    assert len(dispatcher.requests) == 1

    # The execution agent reported success=false, testsPass=false
    store.fail("T1", "Quality checks failed: Tests failed")
    entry = store.get_ledger().tasks["T1"]
    assert entry.passes is False
    assert entry.attempts == 1
    assert entry.error == "Quality checks failed: Tests failed"

    assert store.next_eligible_task()[0] == "T1"

    assert store.dispatch() == "T1"
    ledger = store.get_ledger()
    assert ledger.tasks["T1"].attempts == 2
    assert ledger.tasks["T1"].in_flight is True
    assert list(ledger.tasks) == ["T1"]
    assert len(dispatcher.requests) == 2


def test_successful_task_is_permanently_excluded(store):
    store.enqueue(_task("T2"))
    store.dispatch()
    store.complete("T2", ExecutionResult(task_id="T2", success=True, pr_url="https://pr/2"))

    store.enqueue(_task("T3"))
    store.enqueue(_task("T4"))

    assert store.get_ledger().tasks["T2"].passes is True
    seen = set()
    while (found := store.next_eligible_task()) is not None:
        seen.add(found[0])
        store.fail(found[0], "x")
    assert "T2" not in seen
    assert seen == {"T3", "T4"}


def test_late_outcomes_do_not_reopen_a_passed_task(store):
    store.enqueue(_task("T2"))
    store.dispatch()
    store.complete("T2", ExecutionResult(task_id="T2", success=True, pr_url="https://pr/2", learnings=["once"]))
    version = store.get_ledger().version

    failed = store.fail("T2", "late duplicate")
    redelivered = store.complete("T2", ExecutionResult(task_id="T2", success=False, error="stale", learnings=["twice"]))

    for entry in (failed, redelivered):
        assert entry.passes is True
        assert entry.attempts == 1
        assert entry.error is None
        assert entry.pr_url == "https://pr/2"
    assert store.get_ledger().version == version
    assert store.next_eligible_task() is None
    assert store.get_progress_log().count("## ") == 1


# ---------------------------------------------------------------------------
# Persistence and addressing
# ---------------------------------------------------------------------------

def test_file_storage_survives_a_new_store(tmp_path, make_store):
    first = make_store(storage=FileStateStorage(tmp_path, "demo"))
    first.enqueue(_task("t1"))
    first.complete("t1", ExecutionResult(task_id="t1", success=True, learnings=["kept on disk"]))

    second = make_store(storage=FileStateStorage(tmp_path, "demo"))
    assert second.get_ledger().tasks["t1"].passes is True
    assert "kept on disk" in second.get_progress_log()
    assert (tmp_path / "demo" / "ledger.json").exists()
    assert (tmp_path / "demo" / "progress.md").exists()


def test_registry_creates_one_store_per_project(make_store):
    created = []

    def factory(project):
        created.append(project)
        return make_store()

    registry = StoreRegistry(factory)
    assert registry.get("a") is registry.get("a")
    registry.get("b")
    assert created == ["a", "b"]
    assert registry.projects() == ["a", "b"]


# ---------------------------------------------------------------------------
# Alarm
# ---------------------------------------------------------------------------

def test_threading_alarm_fires_callback():
    fired = threading.Event()
    alarm = ThreadingAlarm(fired.set)
    alarm.arm(0.01)
    assert fired.wait(2)
    assert not alarm.pending


def test_threading_alarm_earliest_deadline_wins():
    fired = threading.Event()
    alarm = ThreadingAlarm(fired.set)
    alarm.arm(30)
    alarm.arm(0.01)
    assert fired.wait(2)

    fired.clear()
    alarm.arm(0.01)
    alarm.arm(30)
    assert fired.wait(2)
    alarm.cancel()


def test_threading_alarm_cancel():
    fired = threading.Event()
    alarm = ThreadingAlarm(fired.set)
    alarm.arm(0.05)
    alarm.cancel()
    assert not fired.wait(0.2)
    assert not alarm.pending
