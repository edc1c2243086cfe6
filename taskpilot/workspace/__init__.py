"""
taskpilot Workspace Isolation

Uses 'git worktree' so that every task gets its own branch-scoped
checkout of a shared clone. Clone/fetch, worktree creation and deletion
against one clone are serialized through a per-repository lock.
"""

from __future__ import annotations

import shutil
import subprocess
import threading
import time
from pathlib import Path

from loguru import logger

_NETWORK_TIMEOUT = 600
_LOCAL_TIMEOUT = 120

_repo_locks: dict[Path, threading.Lock] = {}
_repo_locks_guard = threading.Lock()


def repo_lock(repo_path: Path) -> threading.Lock:
    """Return the process-wide lock guarding worktree lifecycle for one clone."""
    key = repo_path.resolve()
    with _repo_locks_guard:
        lock = _repo_locks.get(key)
        if lock is None:
            lock = _repo_locks[key] = threading.Lock()
        return lock


class WorktreeError(Exception):
    pass


class NoChangesError(WorktreeError):
    pass


class WorktreeManager:
    """
    Manages isolated git worktrees under `<repo>/.worktrees/<branch>`.
    """

    def __init__(self, repo_path: Path, worktree_base: str = ".worktrees"):
        self.repo_path = repo_path.resolve()
        self.worktree_root = self.repo_path / worktree_base

    @classmethod
    def clone_if_needed(cls, repo_url: str, target: Path) -> "WorktreeManager":
        """Clone `repo_url` into `target` unless a clone is already there, else fetch."""
        target = target.resolve()
        with repo_lock(target):
            if (target / ".git").exists():
                logger.info(f"[WORKSPACE] Repository already present at {target}, fetching")
                cls._run_cmd(["git", "fetch", "origin"], cwd=target, timeout=_NETWORK_TIMEOUT)
            else:
                logger.info(f"[WORKSPACE] Cloning {repo_url} → {target}")
                target.parent.mkdir(parents=True, exist_ok=True)
                cls._run_cmd(
                    ["git", "clone", repo_url, str(target)],
                    cwd=target.parent,
                    timeout=_NETWORK_TIMEOUT,
                )
        return cls(target)

    def worktree_path(self, branch: str) -> Path:
        return self.worktree_root / branch

    def create_worktree(self, branch: str, base: str = "main") -> Path:
        """
        Create a fresh worktree for `branch` from `origin/<base>`.
        Any stale worktree at the same path is removed first, and the
        branch is force-reset (-B) to the remote tip.
        """
        path = self.worktree_path(branch)

        with repo_lock(self.repo_path):
            self.worktree_root.mkdir(parents=True, exist_ok=True)

            # Does-not-exist errors are expected here
            self._git("worktree", "remove", "--force", str(path), check=False)
            if path.exists():
                shutil.rmtree(path, ignore_errors=True)
            self._git("worktree", "prune", check=False)

            self._git("fetch", "origin", timeout=_NETWORK_TIMEOUT)

            try:
                self._git("worktree", "add", "-B", branch, str(path), f"origin/{base}")
            except WorktreeError as e:
                raise WorktreeError(f"Failed to create worktree: {e}") from e

        logger.info(f"[WORKSPACE] Worktree created: {path} ({branch} ← origin/{base})")
        return path

    def changed_files(self, worktree: Path) -> list[str]:
        """Paths with uncommitted changes, untracked files included."""
        out = self._run_cmd(
            ["git", "status", "--porcelain", "-z", "--untracked-files=all"],
            cwd=worktree,
            capture=True,
        )
        files: list[str] = []
        records = out.split("\0")
        i = 0
        while i < len(records):
            record = records[i]
            i += 1
            if len(record) < 4:
                continue
            status, path = record[:2], record[3:]
            files.append(path)
            # Renames and copies carry the original path as the next record
            if status[0] in ("R", "C"):
                i += 1
        return files

    def commit(self, worktree: Path, message: str, author_name: str, author_email: str) -> str:
        """Stage everything and commit with an explicit identity. Returns the new sha."""
        self._run_cmd(["git", "add", "-A"], cwd=worktree)

        status = self._run_cmd(["git", "status", "--porcelain"], cwd=worktree, capture=True)
        if not status.strip():
            raise NoChangesError("No changes to commit")

        self._run_cmd(
            [
                "git",
                "-c", f"user.name={author_name}",
                "-c", f"user.email={author_email}",
                "commit",
                "--author", f"{author_name} <{author_email}>",
                "-m", message,
            ],
            cwd=worktree,
        )
        sha = self._run_cmd(["git", "rev-parse", "HEAD"], cwd=worktree, capture=True).strip()
        logger.info(f"[WORKSPACE] Committed {sha[:10]} in {worktree.name}")
        return sha

    def push(self, worktree: Path, branch: str) -> None:
        """Force push with upstream tracking. Task branches are rewritten on retry."""
        self._run_cmd(
            ["git", "push", "--force", "--set-upstream", "origin", branch],
            cwd=worktree,
            timeout=_NETWORK_TIMEOUT,
        )
        logger.info(f"[WORKSPACE] Pushed (force): {branch}")

    def delete_worktree(self, worktree: Path) -> None:
        """Best-effort removal. Logs failures instead of raising."""
        try:
            with repo_lock(self.repo_path):
                self._git("worktree", "remove", "--force", str(worktree))
                self._git("worktree", "prune", check=False)
            logger.info(f"[WORKSPACE] Worktree removed: {worktree}")
        except Exception as e:
            logger.error(f"[WORKSPACE] Failed to delete worktree {worktree}: {e}")

    def reap_stale(self, max_age_seconds: float) -> list[Path]:
        """Delete worktrees under the managed root untouched for longer than `max_age_seconds`."""
        if not self.worktree_root.exists():
            return []

        cutoff = time.time() - max_age_seconds
        reaped: list[Path] = []
        for path in self._managed_worktrees():
            try:
                mtime = path.stat().st_mtime
            except FileNotFoundError:
                continue
            if mtime < cutoff:
                logger.info(f"[WORKSPACE] Reaping retained worktree {path}")
                self.delete_worktree(path)
                reaped.append(path)
        return reaped

    def _managed_worktrees(self) -> list[Path]:
        out = self._git("worktree", "list", "--porcelain", capture=True, check=False)
        paths = []
        for line in out.splitlines():
            if not line.startswith("worktree "):
                continue
            path = Path(line[len("worktree "):]).resolve()
            if self.worktree_root.resolve() in path.parents:
                paths.append(path)
        return paths

    def _git(self, *args: str, check: bool = True, capture: bool = False, timeout: float = _LOCAL_TIMEOUT) -> str:
        return self._run_cmd(["git", *args], cwd=self.repo_path, check=check, capture=capture, timeout=timeout)

    @staticmethod
    def _run_cmd(
        cmd: list[str],
        cwd: Path,
        check: bool = True,
        capture: bool = False,
        timeout: float = _LOCAL_TIMEOUT,
    ) -> str:
        try:
            result = subprocess.run(cmd, cwd=cwd, capture_output=True, text=True, timeout=timeout)
        except subprocess.TimeoutExpired as e:
            raise WorktreeError(f"Git timed out after {timeout}s: {' '.join(cmd)}") from e
        if check and result.returncode != 0:
            raise WorktreeError(f"Git failed: {' '.join(cmd)}\n{result.stderr.strip()}")
        return result.stdout if capture else ""
