import os
import threading
import time

import pytest

from taskpilot.workspace import NoChangesError, WorktreeError, WorktreeManager

from conftest import git


@pytest.fixture
def manager(origin_repo, tmp_path) -> WorktreeManager:
    return WorktreeManager.clone_if_needed(str(origin_repo), tmp_path / "workspace" / "widgets")


def test_clone_if_needed_clones_once_then_fetches(origin_repo, tmp_path):
    target = tmp_path / "workspace" / "widgets"
    first = WorktreeManager.clone_if_needed(str(origin_repo), target)
    assert (target / ".git").exists()

    second = WorktreeManager.clone_if_needed(str(origin_repo), target)
    assert second.repo_path == first.repo_path


def test_concurrent_first_clones_share_one_checkout(origin_repo, tmp_path):
    target = tmp_path / "workspace" / "widgets"
    managers, errors = [], []

    def clone():
        try:
            managers.append(WorktreeManager.clone_if_needed(str(origin_repo), target))
        except WorktreeError as e:
            errors.append(e)

    threads = [threading.Thread(target=clone) for _ in range(2)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert errors == []
    assert len(managers) == 2
    assert managers[0].repo_path == managers[1].repo_path
    assert (target / ".git").exists()


def test_create_worktree_is_idempotent_and_tracks_origin_main(manager):
    first = manager.create_worktree("task/a", "main")
    (first / "scratch.txt").write_text("left over from a failed run\n")

    second = manager.create_worktree("task/a", "main")

    assert second == manager.repo_path / ".worktrees" / "task/a"
    assert not (second / "scratch.txt").exists()
    origin_main = git(manager.repo_path, "rev-parse", "origin/main").strip()
    assert git(second, "rev-parse", "HEAD").strip() == origin_main
    assert git(second, "rev-parse", "--abbrev-ref", "HEAD").strip() == "task/a"


def test_create_worktree_from_unknown_base_fails(manager):
    with pytest.raises(WorktreeError, match="Failed to create worktree"):
        manager.create_worktree("task/b", "does-not-exist")


def test_changed_files_includes_untracked(manager):
    wt = manager.create_worktree("task/c")
    (wt / "README.md").write_text("# widgets v2\n")
    (wt / "src").mkdir()
    (wt / "src" / "widget.py").write_text("WIDGET = 1\n")

    assert sorted(manager.changed_files(wt)) == ["README.md", "src/widget.py"]


def test_changed_files_empty_on_clean_worktree(manager):
    wt = manager.create_worktree("task/d")
    assert manager.changed_files(wt) == []


def test_commit_without_changes_raises(manager):
    wt = manager.create_worktree("task/e")
    with pytest.raises(NoChangesError, match="No changes to commit"):
        manager.commit(wt, "nothing", "Bot", "bot@example.com")


def test_commit_uses_explicit_identity_and_push_publishes_branch(manager, origin_repo):
    wt = manager.create_worktree("task/f")
    (wt / "feature.txt").write_text("hello\n")

    sha = manager.commit(wt, "Add feature file\n\nFiles changed:\n- feature.txt", "Bot", "bot@example.com")

    assert git(wt, "log", "-1", "--format=%an <%ae>").strip() == "Bot <bot@example.com>"
    assert git(wt, "log", "-1", "--format=%s").strip() == "Add feature file"

    manager.push(wt, "task/f")
    assert git(origin_repo, "rev-parse", "refs/heads/task/f").strip() == sha


def test_push_overwrites_remote_branch(manager, origin_repo):
    wt = manager.create_worktree("task/g")
    (wt / "one.txt").write_text("1\n")
    manager.commit(wt, "first", "Bot", "bot@example.com")
    manager.push(wt, "task/g")

    # A retry starts again from origin/main and must replace the first attempt
    wt = manager.create_worktree("task/g")
    (wt / "two.txt").write_text("2\n")
    sha = manager.commit(wt, "second", "Bot", "bot@example.com")
    manager.push(wt, "task/g")

    assert git(origin_repo, "rev-parse", "refs/heads/task/g").strip() == sha


def test_delete_worktree_is_best_effort(manager):
    wt = manager.create_worktree("task/h")
    manager.delete_worktree(wt)
    assert not wt.exists()

    # Second delete only logs
    manager.delete_worktree(wt)


def test_reap_stale_removes_only_old_worktrees(manager):
    old = manager.create_worktree("task/old")
    fresh = manager.create_worktree("task/fresh")
    two_days_ago = time.time() - 2 * 24 * 3600
    os.utime(old, (two_days_ago, two_days_ago))

    reaped = manager.reap_stale(24 * 3600)

    assert [p.name for p in reaped] == ["old"]
    assert not old.exists()
    assert fresh.exists()
