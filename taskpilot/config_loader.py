"""
Configuration loader for taskpilot.
Merges built-in defaults with an optional YAML override file,
then applies environment-variable overrides for secrets and endpoints.
"""

from __future__ import annotations

import os
from pathlib import Path
from typing import Any

import yaml
from pydantic import BaseModel, Field


# ---------------------------------------------------------------------------
# Schema
# ---------------------------------------------------------------------------

class ExecutorConfig(BaseModel):
    workspace_root: str = "/workspace"
    token: str = ""
    worktree_retention_hours: float = 24.0
    execution_history: int = 500
    host: str = "0.0.0.0"
    port: int = 3000

    @property
    def workspace_path(self) -> Path:
        return Path(self.workspace_root).expanduser()


class AgentConfig(BaseModel):
    command: list[str] = Field(default_factory=lambda: [
        "claude", "-p", "{prompt}",
        "--max-turns", "{max_iterations}",
        "--permission-mode", "acceptEdits",
        "--allowedTools", "{allowed_tools}",
    ])
    allowed_tools: list[str] = Field(
        default_factory=lambda: ["Read", "Write", "Edit", "Bash", "Grep", "Glob"]
    )
    timeout_seconds: float = 30 * 60
    completion_marker: str = "<promise>COMPLETE</promise>"


class QualityConfig(BaseModel):
    manifest: str = "package.json"
    dependency_marker: str = "node_modules"
    install_command: str = "npm install"
    install_timeout: float = 600
    typecheck_command: str = "npm run typecheck"
    typecheck_fallback_command: str = "npx tsc --noEmit"
    typecheck_timeout: float = 120
    test_command: str = "npm test"
    test_timeout: float = 300
    lint_command: str = "npm run lint"
    lint_timeout: float = 120
    missing_script_marker: str = "Missing script"


class GitIdentityConfig(BaseModel):
    author_name: str = "taskpilot-bot"
    author_email: str = "taskpilot-bot@users.noreply.github.com"


class StoreConfig(BaseModel):
    backend: str = "file"  # "file" | "memory"
    state_dir: str = "~/.taskpilot/state"
    max_attempts: int = 3
    capacity: int = 1
    dispatch_delay: float = 1.0
    dispatch_timeout: float = 3600
    reap_interval: float = 60


class CoordinatorConfig(BaseModel):
    host: str = "0.0.0.0"
    port: int = 8787
    public_url: str = "http://localhost:8787"
    execution_server_url: str = "http://localhost:3000"
    execution_server_token: str = ""
    repo_url: str = ""
    base_branch: str = "main"
    max_iterations: int = 10


class GitHubConfig(BaseModel):
    token: str = ""
    owner: str = ""
    repo: str = ""
    upstream_owner: str = ""
    upstream_repo: str = ""
    api_url: str = "https://api.github.com"


class BacklogConfig(BaseModel):
    url: str = ""
    api_key: str = ""
    assignee: str = "taskpilot-bot"


class RetryConfig(BaseModel):
    attempts: int = 3
    initial_delay: float = 1.0
    max_delay: float = 30.0


class TaskPilotConfig(BaseModel):
    project_name: str = "default"
    executor: ExecutorConfig = Field(default_factory=ExecutorConfig)
    agent: AgentConfig = Field(default_factory=AgentConfig)
    quality: QualityConfig = Field(default_factory=QualityConfig)
    git: GitIdentityConfig = Field(default_factory=GitIdentityConfig)
    store: StoreConfig = Field(default_factory=StoreConfig)
    coordinator: CoordinatorConfig = Field(default_factory=CoordinatorConfig)
    github: GitHubConfig = Field(default_factory=GitHubConfig)
    backlog: BacklogConfig = Field(default_factory=BacklogConfig)
    retry: RetryConfig = Field(default_factory=RetryConfig)


# ---------------------------------------------------------------------------
# Loader
# ---------------------------------------------------------------------------

_DEFAULT_CONFIG_PATH = Path(__file__).parent / "config.yaml"

# env var -> (section, key); section None means top level
_ENV_OVERRIDES: dict[str, tuple[str | None, str]] = {
    "TASKPILOT_PROJECT": (None, "project_name"),
    "WORKSPACE_ROOT": ("executor", "workspace_root"),
    "EXECUTION_SERVER_TOKEN": ("executor", "token"),
    "EXECUTION_SERVER_URL": ("coordinator", "execution_server_url"),
    "COORDINATOR_PUBLIC_URL": ("coordinator", "public_url"),
    "TASKPILOT_REPO_URL": ("coordinator", "repo_url"),
    "GIT_AUTHOR_NAME": ("git", "author_name"),
    "GIT_AUTHOR_EMAIL": ("git", "author_email"),
    "GITHUB_TOKEN": ("github", "token"),
    "GITHUB_REPO_OWNER": ("github", "owner"),
    "GITHUB_REPO_NAME": ("github", "repo"),
    "GITHUB_UPSTREAM_OWNER": ("github", "upstream_owner"),
    "GITHUB_UPSTREAM_REPO": ("github", "upstream_repo"),
    "BACKLOG_URL": ("backlog", "url"),
    "BACKLOG_API_KEY": ("backlog", "api_key"),
    "TASKPILOT_STATE_DIR": ("store", "state_dir"),
}


def _deep_merge(base: dict, override: dict) -> dict:
    """Recursively merge override into base."""
    merged = base.copy()
    for key, value in override.items():
        if key in merged and isinstance(merged[key], dict) and isinstance(value, dict):
            merged[key] = _deep_merge(merged[key], value)
        else:
            merged[key] = value
    return merged


def _apply_env(data: dict[str, Any]) -> dict[str, Any]:
    for env_name, (section, key) in _ENV_OVERRIDES.items():
        value = os.environ.get(env_name)
        if not value:
            continue
        if section is None:
            data[key] = value
        else:
            data.setdefault(section, {})[key] = value

    # The coordinator authenticates against the executor with the same shared token
    token = os.environ.get("EXECUTION_SERVER_TOKEN")
    if token:
        data.setdefault("coordinator", {})["execution_server_token"] = token
    return data


def load_config(config_path: Path | None = None) -> TaskPilotConfig:
    """
    Load config by merging:
      1. Built-in defaults (taskpilot/config.yaml)
      2. Override file (explicit path, else $TASKPILOT_CONFIG)
      3. Environment variable overrides
    """
    with open(_DEFAULT_CONFIG_PATH, "r") as f:
        base: dict[str, Any] = yaml.safe_load(f) or {}

    override_path = config_path or (
        Path(os.environ["TASKPILOT_CONFIG"]) if os.environ.get("TASKPILOT_CONFIG") else None
    )
    if override_path:
        if not override_path.exists():
            raise FileNotFoundError(f"Config file not found: {override_path}")
        with open(override_path, "r") as f:
            overrides: dict[str, Any] = yaml.safe_load(f) or {}
        base = _deep_merge(base, overrides)

    return TaskPilotConfig(**_apply_env(base))


def repo_url_from_github(config: TaskPilotConfig) -> str:
    """Resolve the clone URL for dispatched tasks."""
    if config.coordinator.repo_url:
        return config.coordinator.repo_url
    if config.github.owner and config.github.repo:
        return f"https://github.com/{config.github.owner}/{config.github.repo}.git"
    return ""
