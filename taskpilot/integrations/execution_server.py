"""
Client side of the execution wire contract.

ExecutionServerClient is used by the coordinator to dispatch work;
CallbackClient is used by the execution agent to report outcomes.
"""

from __future__ import annotations

from typing import Any

import httpx
from loguru import logger

from taskpilot.config_loader import RetryConfig
from taskpilot.integrations import build_retrying
from taskpilot.models import ExecutionRequest, ExecutionResult


class ExecutionServerClient:
    def __init__(
        self,
        server_url: str,
        token: str = "",
        retry: RetryConfig | None = None,
        timeout: float = 30.0,
        transport: httpx.BaseTransport | None = None,
    ):
        self.server_url = server_url.rstrip("/")
        self.token = token
        self.timeout = timeout
        self._retry = retry
        self._transport = transport

    def _headers(self) -> dict[str, str]:
        headers = {"Content-Type": "application/json"}
        if self.token:
            headers["Authorization"] = f"Bearer {self.token}"
        return headers

    def _request(self, method: str, path: str, **kwargs: Any) -> httpx.Response:
        with httpx.Client(timeout=self.timeout, transport=self._transport) as client:
            response = client.request(method, f"{self.server_url}{path}", headers=self._headers(), **kwargs)
            response.raise_for_status()
            return response

    def trigger_execution(self, request: ExecutionRequest) -> dict[str, Any]:
        """POST /execute. Raises once retries are exhausted."""
        logger.info(f"[DISPATCH] Triggering execution of {request.task_id} on {request.branch_name}")
        response = build_retrying(self._retry)(
            self._request, "POST", "/execute", json=request.to_wire()
        )
        data = response.json()
        logger.info(f"[DISPATCH] Execution {data.get('executionId')} accepted for {request.task_id}")
        return data

    def get_status(self, execution_id: str) -> dict[str, Any] | None:
        try:
            return self._request("GET", f"/status/{execution_id}").json()
        except httpx.HTTPStatusError as e:
            if e.response.status_code != 404:
                logger.error(f"[DISPATCH] Status lookup for {execution_id} failed: {e}")
            return None
        except httpx.HTTPError as e:
            logger.error(f"[DISPATCH] Status lookup for {execution_id} failed: {e}")
            return None

    def cancel(self, execution_id: str) -> bool:
        try:
            self._request("POST", f"/cancel/{execution_id}")
            logger.info(f"[DISPATCH] Execution {execution_id} cancelled")
            return True
        except httpx.HTTPError as e:
            logger.error(f"[DISPATCH] Failed to cancel {execution_id}: {e}")
            return False

    def health(self) -> bool:
        try:
            self._request("GET", "/health")
            return True
        except httpx.HTTPError as e:
            logger.error(f"[DISPATCH] Health check failed: {e}")
            return False


class CallbackClient:
    """Delivers an ExecutionResult to the request's callback URL. Never raises."""

    def __init__(
        self,
        retry: RetryConfig | None = None,
        timeout: float = 30.0,
        transport: httpx.BaseTransport | None = None,
    ):
        self.timeout = timeout
        self._retry = retry
        self._transport = transport

    def _post(self, url: str, payload: dict[str, Any]) -> None:
        with httpx.Client(timeout=self.timeout, transport=self._transport) as client:
            client.post(url, json=payload).raise_for_status()

    def deliver(self, callback_url: str, result: ExecutionResult) -> bool:
        if not callback_url:
            logger.warning(f"[CALLBACK] No callback URL for {result.task_id}; result not delivered")
            return False
        try:
            build_retrying(self._retry)(self._post, callback_url, result.to_wire())
        except Exception as e:
            # Includes httpx.InvalidURL, which is not an HTTPError
            logger.error(f"[CALLBACK] Delivery to {callback_url} failed for {result.task_id}: {e}")
            return False
        logger.info(f"[CALLBACK] Delivered result for {result.task_id} (success={result.success})")
        return True
