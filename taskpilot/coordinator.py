"""
taskpilot Coordinator

Hosts one Task State Store per project and wires it to the outside world:

  - poll cycle: pending backlog tasks → enqueue → backlog `in_progress`
  - execution callback: success → pull request → complete,
    otherwise → fail; the backlog hears about the final outcome
  - store routes mirroring every store operation over HTTP
"""

from __future__ import annotations

from typing import Any

from fastapi import BackgroundTasks, Body, FastAPI, HTTPException
from loguru import logger
from pydantic import ValidationError

from taskpilot import __version__
from taskpilot.config_loader import TaskPilotConfig, load_config, repo_url_from_github
from taskpilot.integrations.backlog import BacklogClient
from taskpilot.integrations.execution_server import ExecutionServerClient
from taskpilot.integrations.github import GitHubClient, PullRequestError, generate_pr_body
from taskpilot.models import (
    ExecutionResult,
    LedgerEntry,
    ProgressEntry,
    WireModel,
    normalize_task,
    utc_now,
)
from taskpilot.store import (
    DispatchTarget,
    ExecutionDispatcher,
    StoreRegistry,
    TaskNotFoundError,
    TaskStateStore,
    build_storage,
)


class CompleteRequest(WireModel):
    task_id: str
    result: ExecutionResult


class FailRequest(WireModel):
    task_id: str
    error: str = "Execution failed"


def build_store(config: TaskPilotConfig, project_name: str, dispatcher: ExecutionDispatcher) -> TaskStateStore:
    public_url = config.coordinator.public_url.rstrip("/")
    target = DispatchTarget(
        repo_url=repo_url_from_github(config),
        callback_url=f"{public_url}/callbacks/execution?project={project_name}",
        base_branch=config.coordinator.base_branch,
        max_iterations=config.coordinator.max_iterations,
    )
    return TaskStateStore(
        project_name,
        build_storage(config.store, project_name),
        dispatcher,
        target,
        config.store,
    )


class Coordinator:
    def __init__(
        self,
        config: TaskPilotConfig | None = None,
        registry: StoreRegistry | None = None,
        github: GitHubClient | None = None,
        backlog: BacklogClient | None = None,
        dispatcher: ExecutionDispatcher | None = None,
    ):
        self.config = config or load_config()
        self.dispatcher = dispatcher or ExecutionServerClient(
            self.config.coordinator.execution_server_url,
            token=self.config.coordinator.execution_server_token,
            retry=self.config.retry,
        )
        self.registry = registry or StoreRegistry(
            lambda project: build_store(self.config, project, self.dispatcher)
        )
        self.github = github or GitHubClient(
            self.config.github.token,
            api_url=self.config.github.api_url,
            retry=self.config.retry,
        )
        if backlog is None and self.config.backlog.url:
            backlog = BacklogClient(
                self.config.backlog.url,
                self.config.backlog.api_key,
                self.config.project_name,
                assignee=self.config.backlog.assignee,
                retry=self.config.retry,
            )
        self.backlog = backlog

    def store(self, project: str | None = None) -> TaskStateStore:
        return self.registry.get(project or self.config.project_name)

    def run_cycle(self, project: str | None = None) -> list[str]:
        """Enqueue every pending backlog task. Returns the enqueued ids."""
        if self.backlog is None:
            logger.warning("[COORDINATOR] No backlog configured, nothing to poll")
            return []

        store = self.store(project)
        tasks = self.backlog.list_pending_tasks()
        logger.info(f"[COORDINATOR] Found {len(tasks)} pending task(s) for {store.project_name}")

        enqueued = []
        for task in tasks:
            store.enqueue(task)
            self.backlog.mark_in_progress(task.id)
            enqueued.append(task.id)
        return enqueued

    def handle_execution_result(self, result: ExecutionResult, project: str | None = None) -> LedgerEntry:
        store = self.store(project)
        logger.info(f"[COORDINATOR] Callback for {result.task_id} (success={result.success})")

        if not result.success:
            return self._record_failure(store, result.task_id, result.error or "Execution failed")

        entry = store.get_ledger().tasks.get(result.task_id)
        if entry is None:
            raise TaskNotFoundError(result.task_id)
        if entry.passes:
            logger.info(f"[COORDINATOR] {result.task_id} already passed ({entry.pr_url}), ignoring redelivery")
            return entry

        try:
            pr_url = self._open_pull_request(entry, result)
        except PullRequestError as e:
            logger.error(f"[COORDINATOR] PR creation failed for {result.task_id}: {e}")
            return self._record_failure(store, result.task_id, str(e))

        updated = store.complete(result.task_id, result.model_copy(update={"pr_url": pr_url}))
        if self.backlog:
            self.backlog.complete_task(result.task_id, pr_url)
        return updated

    def _open_pull_request(self, entry: LedgerEntry, result: ExecutionResult) -> str:
        gh = self.config.github
        if not gh.owner or not gh.repo:
            raise PullRequestError("GitHub repository is not configured")

        lines = entry.description.strip().splitlines()
        pr = self.github.create_pull_request(
            owner=gh.upstream_owner or gh.owner,
            repo=gh.upstream_repo or gh.repo,
            title=lines[0] if lines else result.task_id,
            body=generate_pr_body(entry.description, learnings=result.learnings),
            head=f"{gh.owner}:{entry.branch_name}",
            base=self.config.coordinator.base_branch,
        )
        return pr.html_url

    def _record_failure(self, store: TaskStateStore, task_id: str, error: str) -> LedgerEntry:
        entry = store.fail(task_id, error)
        # The backlog only hears about failures once retries are exhausted
        if self.backlog and not entry.passes and entry.attempts >= store.config.max_attempts:
            self.backlog.fail_task(task_id, error)
        return entry


def create_app(config: TaskPilotConfig | None = None, coordinator: Coordinator | None = None) -> FastAPI:
    coordinator = coordinator or Coordinator(config)

    app = FastAPI(title="taskpilot-coordinator", version=__version__)
    app.state.coordinator = coordinator

    def store_for(project: str) -> TaskStateStore:
        return app.state.coordinator.store(project)

    @app.get("/health")
    def health() -> dict[str, str]:
        return {"status": "ok"}

    # -- store routes ------------------------------------------------------

    @app.post("/projects/{project}/enqueue")
    def enqueue(project: str, payload: dict[str, Any] = Body(...)) -> dict[str, Any]:
        try:
            task = normalize_task(payload)
        except (ValueError, ValidationError) as e:
            raise HTTPException(status_code=422, detail=str(e)) from e
        store_for(project).enqueue(task)
        return {"ok": True, "taskId": task.id}

    @app.post("/projects/{project}/complete")
    def complete(project: str, body: CompleteRequest) -> dict[str, Any]:
        try:
            store_for(project).complete(body.task_id, body.result)
        except TaskNotFoundError as e:
            raise HTTPException(status_code=404, detail="Task not found") from e
        return {"ok": True}

    @app.post("/projects/{project}/fail")
    def fail(project: str, body: FailRequest) -> dict[str, Any]:
        try:
            store_for(project).fail(body.task_id, body.error)
        except TaskNotFoundError as e:
            raise HTTPException(status_code=404, detail="Task not found") from e
        return {"ok": True}

    @app.get("/projects/{project}/get-next-task")
    def get_next_task(project: str) -> dict[str, Any]:
        found = store_for(project).next_eligible_task()
        if found is None:
            return {"taskId": None, "task": None}
        task_id, entry = found
        return {"taskId": task_id, "task": entry.to_wire()}

    @app.get("/projects/{project}/get-prd")
    def get_prd(project: str) -> dict[str, Any]:
        return store_for(project).get_ledger().to_wire()

    @app.get("/projects/{project}/get-progress")
    def get_progress(project: str) -> dict[str, Any]:
        return {"progress": store_for(project).get_progress_log()}

    @app.post("/projects/{project}/update-progress")
    def update_progress(project: str, entry: ProgressEntry) -> dict[str, Any]:
        store_for(project).update_progress(entry)
        return {"ok": True}

    @app.post("/projects/{project}/dispatch")
    def dispatch(project: str) -> dict[str, Any]:
        return {"ok": True, "taskId": store_for(project).dispatch()}

    # -- orchestration -----------------------------------------------------

    @app.post("/callbacks/execution")
    def execution_callback(result: ExecutionResult, project: str | None = None) -> dict[str, Any]:
        try:
            app.state.coordinator.handle_execution_result(result, project)
        except TaskNotFoundError as e:
            raise HTTPException(status_code=404, detail="Task not found") from e
        return {"ok": True}

    @app.post("/trigger")
    def trigger(background: BackgroundTasks, project: str | None = None) -> dict[str, Any]:
        background.add_task(app.state.coordinator.run_cycle, project)
        return {"ok": True, "message": "Cycle triggered"}

    @app.get("/status")
    def status(project: str | None = None) -> dict[str, Any]:
        store = app.state.coordinator.store(project)
        return {
            "prd": store.get_ledger().to_wire(),
            "progress": store.get_progress_log(),
            "timestamp": utc_now(),
        }

    return app
