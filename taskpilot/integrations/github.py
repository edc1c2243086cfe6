"""GitHub pull-request creation."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any

import httpx
from loguru import logger

from taskpilot.config_loader import RetryConfig
from taskpilot.integrations import build_retrying


class PullRequestError(Exception):
    pass


@dataclass
class PullRequest:
    number: int
    html_url: str
    state: str = "open"
    title: str = ""


class GitHubClient:
    def __init__(
        self,
        token: str,
        api_url: str = "https://api.github.com",
        retry: RetryConfig | None = None,
        timeout: float = 30.0,
        transport: httpx.BaseTransport | None = None,
    ):
        self.token = token
        self.api_url = api_url.rstrip("/")
        self.timeout = timeout
        self._retry = retry
        self._transport = transport

    def _post(self, path: str, payload: dict[str, Any]) -> dict[str, Any]:
        headers = {
            "Authorization": f"Bearer {self.token}",
            "Accept": "application/vnd.github+json",
            "X-GitHub-Api-Version": "2022-11-28",
        }
        with httpx.Client(timeout=self.timeout, transport=self._transport) as client:
            response = client.post(f"{self.api_url}{path}", headers=headers, json=payload)
            response.raise_for_status()
            return response.json()

    def create_pull_request(
        self,
        owner: str,
        repo: str,
        title: str,
        body: str,
        head: str,
        base: str = "main",
        draft: bool = False,
    ) -> PullRequest:
        logger.info(f"[GITHUB] Creating PR {owner}/{repo} {head} → {base}")
        payload = {"title": title, "body": body, "head": head, "base": base, "draft": draft}
        try:
            data = build_retrying(self._retry)(self._post, f"/repos/{owner}/{repo}/pulls", payload)
        except httpx.HTTPStatusError as e:
            raise PullRequestError(
                f"GitHub API error: {e.response.status_code} {e.response.text[:500]}"
            ) from e
        except httpx.HTTPError as e:
            raise PullRequestError(f"GitHub API unreachable: {e}") from e

        pr = PullRequest(
            number=int(data["number"]),
            html_url=data["html_url"],
            state=data.get("state", "open"),
            title=data.get("title", title),
        )
        logger.info(f"[GITHUB] PR #{pr.number} created: {pr.html_url}")
        return pr


def generate_pr_body(
    description: str,
    acceptance_criteria: list[str] | None = None,
    learnings: list[str] | None = None,
) -> str:
    body = f"## Summary\n\n{description}\n\n"

    if acceptance_criteria:
        body += "## Acceptance Criteria\n\n"
        body += "".join(f"- [ ] {c}\n" for c in acceptance_criteria)
        body += "\n"

    if learnings:
        body += "## Implementation Notes\n\n"
        body += "".join(f"- {item}\n" for item in learnings)
        body += "\n"

    body += "## Test Plan\n\n"
    body += "- [x] Tests pass\n"
    body += "- [x] Type checking passes\n"
    body += "\n---\n\n*Opened automatically by taskpilot.*\n"
    return body
