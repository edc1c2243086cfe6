"""
Backlog client speaking a tool-call protocol:

    POST {url}/tools/call  {"name": ..., "arguments": {...}}
    → {"content": [{"type": "text", "text": ...}], "isError": bool}

Every call is a best-effort notification: failures are logged, not raised.
"""

from __future__ import annotations

import json
from typing import Any

import httpx
from loguru import logger

from taskpilot.config_loader import RetryConfig
from taskpilot.integrations import build_retrying
from taskpilot.models import TaskRecord, utc_now


class BacklogError(Exception):
    pass


class BacklogClient:
    def __init__(
        self,
        url: str,
        api_key: str,
        project_name: str,
        assignee: str = "taskpilot-bot",
        retry: RetryConfig | None = None,
        timeout: float = 30.0,
        transport: httpx.BaseTransport | None = None,
    ):
        self.url = url.rstrip("/")
        self.api_key = api_key
        self.project_name = project_name
        self.assignee = assignee
        self.timeout = timeout
        self._retry = retry
        self._transport = transport

    def list_pending_tasks(self) -> list[TaskRecord]:
        try:
            text = build_retrying(self._retry)(
                self._call_tool,
                "list_tasks",
                {"projectId": self.project_name, "status": ["pending", "ready"], "assignee": self.assignee},
            )
        except (httpx.HTTPError, BacklogError) as e:
            logger.error(f"[BACKLOG] Failed to list pending tasks for {self.project_name}: {e}")
            return []

        if not text:
            return []
        try:
            raw_tasks = json.loads(text).get("tasks") or []
        except (json.JSONDecodeError, AttributeError) as e:
            logger.error(f"[BACKLOG] Unparseable task listing: {e}")
            return []

        tasks = []
        for raw in raw_tasks:
            try:
                tasks.append(TaskRecord.from_backlog(raw))
            except ValueError as e:
                logger.warning(f"[BACKLOG] Skipping malformed task: {e}")
        return tasks

    def update_task_status(self, task_id: str, status: str, **metadata: Any) -> bool:
        return self._notify("update_task_status", {"taskId": task_id, "status": status, **metadata})

    def mark_in_progress(self, task_id: str) -> bool:
        return self.update_task_status(
            task_id, "in_progress", agent=self.assignee, startedAt=utc_now()
        )

    def complete_task(self, task_id: str, pr_url: str | None) -> bool:
        return self._notify("complete_task", {"taskId": task_id, "prUrl": pr_url, "status": "review"})

    def fail_task(self, task_id: str, error: str) -> bool:
        return self.update_task_status(task_id, "failed", error=error)

    def _notify(self, tool: str, arguments: dict[str, Any]) -> bool:
        try:
            build_retrying(self._retry)(self._call_tool, tool, arguments)
        except (httpx.HTTPError, BacklogError) as e:
            logger.error(f"[BACKLOG] {tool} failed for {arguments.get('taskId')}: {e}")
            return False
        logger.info(f"[BACKLOG] {tool} → {arguments.get('taskId')}")
        return True

    def _call_tool(self, name: str, arguments: dict[str, Any]) -> str:
        headers = {"Authorization": f"Bearer {self.api_key}"}
        with httpx.Client(timeout=self.timeout, transport=self._transport) as client:
            response = client.post(
                f"{self.url}/tools/call",
                headers=headers,
                json={"name": name, "arguments": arguments},
            )
            response.raise_for_status()
            try:
                data = response.json()
            except ValueError as e:
                raise BacklogError(f"{name}: response is not JSON") from e
        if not isinstance(data, dict):
            raise BacklogError(f"{name}: unexpected response shape")

        content = data.get("content") or []
        text = content[0].get("text", "") if content else ""
        if data.get("isError"):
            raise BacklogError(f"{name}: {text or 'tool reported an error'}")
        return text
