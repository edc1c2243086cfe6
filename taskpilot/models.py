"""
Shared records for both actors.

Wire models use camelCase on the wire (by alias) and snake_case in Python.
"""

from __future__ import annotations

import uuid
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Literal

import yaml
from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel


def utc_now() -> str:
    return datetime.now(timezone.utc).isoformat()


def new_execution_id() -> str:
    return f"exec-{uuid.uuid4().hex[:12]}"


class WireModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    def to_wire(self) -> dict[str, Any]:
        return self.model_dump(mode="json", by_alias=True)


# ---------------------------------------------------------------------------
# Backlog task (external input)
# ---------------------------------------------------------------------------

class TaskRecord(WireModel):
    """A backlog task. Immutable once read."""
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, frozen=True)

    id: str = Field(min_length=1)
    title: str = ""
    description: str = ""
    branch: str = ""
    status: Literal["pending", "ready", "in_progress", "review", "completed", "failed"] = "pending"
    created_at: str = Field(default_factory=utc_now)
    updated_at: str = Field(default_factory=utc_now)
    acceptance_criteria: list[str] = Field(default_factory=list)
    tags: list[str] = Field(default_factory=list)
    priority: Literal["low", "medium", "high", "urgent"] = "medium"

    @classmethod
    def from_backlog(cls, raw: Any) -> "TaskRecord":
        """
        Normalize a loosely shaped backlog payload.

        Accepts `id` or `taskId`, `title` or `name`; unknown statuses and
        priorities fall back to defaults. Raises ValueError without an id.
        """
        if not isinstance(raw, dict):
            raise ValueError(f"Backlog task must be an object, got {type(raw).__name__}")

        task_id = raw.get("id") or raw.get("taskId")
        if not task_id:
            raise ValueError("Backlog task has no id")
        task_id = str(task_id)

        status = raw.get("status") or "pending"
        if status not in ("pending", "ready", "in_progress", "review", "completed", "failed"):
            status = "pending"
        priority = raw.get("priority") or "medium"
        if priority not in ("low", "medium", "high", "urgent"):
            priority = "medium"

        return cls(
            id=task_id,
            title=str(raw.get("title") or raw.get("name") or ""),
            description=str(raw.get("description") or ""),
            branch=str(raw.get("branch") or f"task/{task_id}"),
            status=status,
            created_at=str(raw.get("createdAt") or utc_now()),
            updated_at=str(raw.get("updatedAt") or utc_now()),
            acceptance_criteria=[str(c) for c in raw.get("acceptanceCriteria") or []],
            tags=[str(t) for t in raw.get("tags") or []],
            priority=priority,
        )

    @classmethod
    def from_yaml(cls, path: Path) -> "TaskRecord":
        with open(path) as f:
            data = yaml.safe_load(f) or {}
        data.setdefault("id", path.stem)
        return cls.from_backlog(data)


def normalize_task(raw: Any) -> TaskRecord:
    return TaskRecord.from_backlog(raw)


# ---------------------------------------------------------------------------
# Ledger (owned by the Task State Store)
# ---------------------------------------------------------------------------

class LedgerEntry(WireModel):
    description: str
    branch_name: str
    passes: bool = False
    attempts: int = 0
    last_attempt_at: str | None = None
    error: str | None = None
    pr_url: str | None = None
    in_flight: bool = False
    dispatched_at: str | None = None


class Ledger(WireModel):
    project_name: str
    tasks: dict[str, LedgerEntry] = Field(default_factory=dict)
    version: int = 1
    updated_at: str = Field(default_factory=utc_now)

    def touch(self) -> None:
        """Record a mutation."""
        self.version += 1
        self.updated_at = utc_now()


class ProgressEntry(WireModel):
    timestamp: str = Field(default_factory=utc_now)
    task_id: str
    description: str = ""
    learnings: list[str] = Field(default_factory=list)
    files_changed: list[str] = Field(default_factory=list)

    def render(self) -> str:
        lines = [
            f"\n## {self.timestamp} - {self.task_id}",
            self.description,
            "",
            "### Learnings",
            *(f"- {item}" for item in self.learnings),
            "",
        ]
        if self.files_changed:
            lines += ["### Files Changed", *(f"- {f}" for f in self.files_changed), ""]
        return "\n".join(lines)


# ---------------------------------------------------------------------------
# Execution wire contract
# ---------------------------------------------------------------------------

class ExecutionRequest(WireModel):
    task_id: str = Field(min_length=1)
    repo_url: str = Field(min_length=1)
    base_branch: str = "main"
    branch_name: str = Field(min_length=1)
    prompt: str = Field(min_length=1)
    max_iterations: int = Field(default=10, ge=1)
    callback_url: str = ""
    progress_context: str = ""

    @field_validator("base_branch", mode="before")
    @classmethod
    def _default_base(cls, value: Any) -> Any:
        return value or "main"


class ExecutionResult(WireModel):
    task_id: str
    success: bool
    pr_url: str | None = None
    error: str | None = None
    logs: str = ""
    learnings: list[str] = Field(default_factory=list)
    tests_pass: bool = False
    typecheck_pass: bool = False
    duration: int = 0
    files_changed: list[str] = Field(default_factory=list)


ExecutionStatus = Literal["pending", "running", "completed", "failed", "cancelled"]


class ExecutionState(WireModel):
    """In-memory record of one run. Not persisted."""
    id: str
    task_id: str
    status: ExecutionStatus = "pending"
    started_at: str = Field(default_factory=utc_now)
    completed_at: str | None = None
    worktree_path: str | None = None
    logs: list[str] = Field(default_factory=list)
    learnings: list[str] = Field(default_factory=list)
