"""
taskpilot Execution Agent

Deterministic pipeline that turns one ExecutionRequest into an isolated,
verified, committed code change:

  Reap → Clone/Fetch → Worktree → Install → Prompt → Agent
       → Quality Gate → Changed files → Commit → Push → Callback

It never writes code and never opens the pull request. Every failure
becomes a failed ExecutionResult delivered to the callback URL; nothing
escapes `execute`.
"""

from __future__ import annotations

import re
import threading
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable

from loguru import logger

from taskpilot.agents import AgentRunner
from taskpilot.agents.prompt import render_prompt, tail, write_prompt_file
from taskpilot.config_loader import TaskPilotConfig, load_config
from taskpilot.integrations.execution_server import CallbackClient
from taskpilot.models import (
    ExecutionRequest,
    ExecutionResult,
    ExecutionState,
    ExecutionStatus,
    new_execution_id,
    utc_now,
)
from taskpilot.quality import QualityGate
from taskpilot.workspace import WorktreeManager

_TITLE_LIMIT = 72


class ExecutionNotFoundError(KeyError):
    def __init__(self, execution_id: str):
        super().__init__(execution_id)
        self.execution_id = execution_id

    def __str__(self) -> str:
        return f"Execution not found: {self.execution_id}"


class ExecutionCancelledError(Exception):
    pass


def repo_name_from_url(repo_url: str) -> str:
    """`https://github.com/acme/widgets.git` and `git@github.com:acme/widgets` both give `widgets`."""
    name = re.split(r"[/:]", repo_url.rstrip("/"))[-1]
    if name.endswith(".git"):
        name = name[:-4]
    return name or "repo"


def generate_commit_message(
    description: str,
    files_changed: list[str],
    author_name: str,
    author_email: str,
) -> str:
    lines = description.strip().splitlines()
    title = (lines[0] if lines else "Automated change")[:_TITLE_LIMIT]

    message = f"{title}\n\n"
    if files_changed:
        message += "Files changed:\n"
        message += "".join(f"- {f}\n" for f in files_changed)
        message += "\n"
    message += f"Co-Authored-By: {author_name} <{author_email}>"
    return message


@dataclass
class _RunContext:
    """What one pipeline run has learned so far; feeds the failure result."""
    started: float = field(default_factory=time.monotonic)
    manager: WorktreeManager | None = None
    worktree: Path | None = None
    retain_worktree: bool = False
    learnings: list[str] = field(default_factory=list)
    tests_pass: bool = False
    typecheck_pass: bool = False
    files_changed: list[str] = field(default_factory=list)


class ExecutionAgent:
    """
    Runs execution pipelines and keeps an in-memory registry of their state.

    The collaborators are factories so tests can substitute them:
      worktree_factory(repo_url, target) -> WorktreeManager
      gate_factory(worktree, quality_config) -> QualityGate
      runner_factory(worktree, prompt_file, agent_config, on_output) -> AgentRunner
    """

    def __init__(
        self,
        config: TaskPilotConfig | None = None,
        callback: CallbackClient | None = None,
        worktree_factory: Callable[[str, Path], WorktreeManager] | None = None,
        gate_factory: Callable[..., QualityGate] = QualityGate,
        runner_factory: Callable[..., AgentRunner] = AgentRunner,
    ):
        self.config = config or load_config()
        self.callback = callback or CallbackClient(retry=self.config.retry)
        self.worktree_factory = worktree_factory or WorktreeManager.clone_if_needed
        self.gate_factory = gate_factory
        self.runner_factory = runner_factory

        self._states: dict[str, ExecutionState] = {}
        self._worktrees: dict[str, tuple[WorktreeManager, Path]] = {}
        self._lock = threading.Lock()

    # -----------------------------------------------------------------------
    # Registry
    # -----------------------------------------------------------------------

    def accept(self, request: ExecutionRequest) -> str:
        execution_id = new_execution_id()
        with self._lock:
            self._states[execution_id] = ExecutionState(id=execution_id, task_id=request.task_id)
        logger.info(f"[EXECUTOR] Accepted {request.task_id} as {execution_id}")
        return execution_id

    def get_status(self, execution_id: str) -> ExecutionState | None:
        with self._lock:
            state = self._states.get(execution_id)
            return state.model_copy(deep=True) if state else None

    def cancel(self, execution_id: str) -> None:
        """Mark cancelled and drop the worktree. A running agent process is left alone."""
        with self._lock:
            state = self._states.get(execution_id)
            if state is None:
                raise ExecutionNotFoundError(execution_id)
            state.status = "cancelled"
            state.completed_at = utc_now()
            known = self._worktrees.pop(execution_id, None)

        logger.info(f"[EXECUTOR] Execution {execution_id} cancelled")
        if known:
            manager, worktree = known
            manager.delete_worktree(worktree)

    # -----------------------------------------------------------------------
    # Pipeline
    # -----------------------------------------------------------------------

    def execute(self, request: ExecutionRequest, execution_id: str | None = None) -> ExecutionResult:
        """Run the full pipeline for one request. Never raises."""
        execution_id = execution_id or self.accept(request)
        self._set_status(execution_id, "running")
        ctx = _RunContext()

        try:
            result = self._run_pipeline(request, execution_id, ctx)
        except ExecutionCancelledError as e:
            self._record(execution_id, str(e))
            result = self._result(request, execution_id, ctx, success=False, error=str(e))
        except Exception as e:
            logger.exception(f"[EXECUTOR] {request.task_id} failed")
            self._record(execution_id, f"Error: {e}")
            result = self._result(request, execution_id, ctx, success=False, error=str(e))

        try:
            self.callback.deliver(request.callback_url, result)
        except Exception:
            logger.exception(f"[EXECUTOR] Callback delivery for {request.task_id} raised")
        finally:
            self._release_worktree(execution_id, ctx)
            self._set_status(execution_id, "completed" if result.success else "failed")
            self._evict_finished()

        logger.info(
            f"[EXECUTOR] {request.task_id} finished in {result.duration}ms "
            f"(success={result.success})"
        )
        return result

    def _run_pipeline(
        self, request: ExecutionRequest, execution_id: str, ctx: _RunContext
    ) -> ExecutionResult:
        workspace = self.config.executor.workspace_path
        repo_dir = workspace / repo_name_from_url(request.repo_url)

        # ── 1. Base repository ──
        self._record(execution_id, f"Preparing repository {request.repo_url}")
        ctx.manager = self.worktree_factory(request.repo_url, repo_dir)

        # ── 2. Reap worktrees retained by earlier failed runs ──
        retention = self.config.executor.worktree_retention_hours * 3600
        for path in ctx.manager.reap_stale(retention):
            self._record(execution_id, f"Reaped stale worktree {path}")

        # ── 3. Worktree ──
        self._check_cancelled(execution_id)
        self._record(execution_id, f"Creating worktree {request.branch_name} from {request.base_branch}")
        ctx.worktree = ctx.manager.create_worktree(request.branch_name, request.base_branch)
        with self._lock:
            self._worktrees[execution_id] = (ctx.manager, ctx.worktree)
            self._states[execution_id].worktree_path = str(ctx.worktree)

        # ── 4. Dependencies ──
        gate = self.gate_factory(ctx.worktree, self.config.quality)
        self._record(execution_id, "Installing dependencies")
        gate.install_dependencies()

        # ── 5. Prompt ──
        progress = request.progress_context or self._read_progress_file(repo_dir)
        prompt = render_prompt(
            request.prompt,
            progress_context=tail(progress),
            repository=request.repo_url,
            completion_marker=self.config.agent.completion_marker,
        )
        prompt_file = write_prompt_file(
            workspace / ".taskpilot" / "prompts" / f"{request.task_id}.md", prompt
        )

        # ── 6. Agent ──
        self._check_cancelled(execution_id)
        self._record(execution_id, f"Running agent (max {request.max_iterations} iterations)")
        runner = self.runner_factory(
            ctx.worktree,
            prompt_file,
            self.config.agent,
            on_output=lambda line: self._record(execution_id, line, echo=False),
        )
        run = runner.run(request.max_iterations)

        ctx.learnings = runner.extract_learnings(run.output)
        with self._lock:
            self._states[execution_id].learnings = list(ctx.learnings)

        if not run.success:
            return self._result(request, execution_id, ctx, success=False, error="Agent execution failed")
        if not run.completed:
            logger.warning(f"[EXECUTOR] {request.task_id}: agent finished without the completion marker")
            self._record(execution_id, "Warning: completion marker not found in agent output")

        # ── 7. Quality gate ──
        self._check_cancelled(execution_id)
        self._record(execution_id, "Running quality checks")
        quality = gate.run_all()
        ctx.tests_pass = quality.tests
        ctx.typecheck_pass = quality.typecheck
        if not quality.passed:
            ctx.retain_worktree = True
            reasons = "; ".join(quality.errors) or "checks did not pass"
            return self._result(
                request, execution_id, ctx, success=False, error=f"Quality checks failed: {reasons}"
            )

        # ── 8. Changed files ──
        ctx.files_changed = ctx.manager.changed_files(ctx.worktree)
        if not ctx.files_changed:
            return self._result(request, execution_id, ctx, success=False, error="No changes were made")
        self._record(execution_id, f"{len(ctx.files_changed)} file(s) changed")

        # ── 9. Commit ──
        self._check_cancelled(execution_id)
        identity = self.config.git
        message = generate_commit_message(
            request.prompt, ctx.files_changed, identity.author_name, identity.author_email
        )
        sha = ctx.manager.commit(ctx.worktree, message, identity.author_name, identity.author_email)
        self._record(execution_id, f"Committed {sha[:10]}")

        # ── 10. Push ──
        ctx.manager.push(ctx.worktree, request.branch_name)
        self._record(execution_id, f"Pushed {request.branch_name}")

        # ── 11. Success ──
        return self._result(request, execution_id, ctx, success=True)

    # -----------------------------------------------------------------------
    # Helpers
    # -----------------------------------------------------------------------

    def _release_worktree(self, execution_id: str, ctx: _RunContext) -> None:
        # Absent when creation failed or cancel() already removed it
        with self._lock:
            owned = self._worktrees.pop(execution_id, None)
        if not owned:
            return
        manager, worktree = owned
        if ctx.retain_worktree:
            logger.info(f"[EXECUTOR] Retaining worktree for inspection: {worktree}")
        else:
            manager.delete_worktree(worktree)

    def _evict_finished(self) -> None:
        """Keep only the most recent `execution_history` finished states."""
        limit = self.config.executor.execution_history
        with self._lock:
            finished = [
                execution_id
                for execution_id, state in self._states.items()
                if state.completed_at is not None and execution_id not in self._worktrees
            ]
            for execution_id in finished[: max(0, len(finished) - limit)]:
                del self._states[execution_id]

    @staticmethod
    def _read_progress_file(repo_dir: Path) -> str:
        path = repo_dir / ".taskpilot" / "progress.md"
        if not path.exists():
            return ""
        return path.read_text(encoding="utf-8")

    def _result(
        self,
        request: ExecutionRequest,
        execution_id: str,
        ctx: _RunContext,
        success: bool,
        error: str | None = None,
    ) -> ExecutionResult:
        with self._lock:
            state = self._states.get(execution_id)
            logs = "\n".join(state.logs) if state else ""
        return ExecutionResult(
            task_id=request.task_id,
            success=success,
            error=error,
            logs=logs,
            learnings=list(ctx.learnings),
            tests_pass=ctx.tests_pass,
            typecheck_pass=ctx.typecheck_pass,
            duration=int((time.monotonic() - ctx.started) * 1000),
            files_changed=list(ctx.files_changed) if success else [],
        )

    def _record(self, execution_id: str, line: str, echo: bool = True) -> None:
        if echo:
            logger.info(f"[EXECUTOR] {execution_id}: {line}")
        with self._lock:
            state = self._states.get(execution_id)
            if state is not None:
                state.logs.append(line)

    def _set_status(self, execution_id: str, status: ExecutionStatus) -> None:
        with self._lock:
            state = self._states.get(execution_id)
            if state is None or state.status == "cancelled":
                return
            state.status = status
            if status in ("completed", "failed"):
                state.completed_at = utc_now()

    def _check_cancelled(self, execution_id: str) -> None:
        with self._lock:
            state = self._states.get(execution_id)
            cancelled = state is not None and state.status == "cancelled"
        if cancelled:
            raise ExecutionCancelledError("Execution cancelled")
