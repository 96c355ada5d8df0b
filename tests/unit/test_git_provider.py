"""Tests for the async git client and GitVcsProvider against real repositories."""

from __future__ import annotations

from pathlib import Path

import pytest

from taskfleet.core.result import Err, MergeConflictError, Ok
from taskfleet.git.client import AsyncRepo, _parse_status
from taskfleet.git.provider import GitVcsProvider
from tests.conftest import git


@pytest.fixture
def vcs() -> GitVcsProvider:
    return GitVcsProvider()


def _commit_file(repo: Path, name: str, content: str, message: str) -> None:
    (repo / name).write_text(content, encoding="utf-8")
    git(repo, "add", name)
    git(repo, "commit", "-m", message)


class TestAsyncRepo:
    @pytest.mark.asyncio
    async def test_open_outside_repository(self, tmp_path: Path) -> None:
        plain = tmp_path / "plain"
        plain.mkdir()
        assert (await AsyncRepo.open(plain)).is_err()

    @pytest.mark.asyncio
    async def test_open_missing_path(self, tmp_path: Path) -> None:
        match await AsyncRepo.open(tmp_path / "missing"):
            case Err(err):
                assert err.message == "Repository path does not exist"
            case Ok(_):
                pytest.fail("expected an error")

    @pytest.mark.asyncio
    async def test_status_counts(self, git_repo: Path) -> None:
        (git_repo / "new.txt").write_text("x", encoding="utf-8")
        repo = (await AsyncRepo.open(git_repo)).unwrap()
        status = (await repo.status()).unwrap()
        assert status.branch == "main"
        assert status.untracked == 1
        assert status.dirty


class TestBranches:
    @pytest.mark.asyncio
    async def test_current_branch(self, vcs: GitVcsProvider, git_repo: Path) -> None:
        assert await vcs.current_branch(git_repo) == Ok("main")

    @pytest.mark.asyncio
    async def test_detached_head(self, vcs: GitVcsProvider, git_repo: Path) -> None:
        git(git_repo, "checkout", "--detach")
        result = await vcs.current_branch(git_repo)
        assert result.is_err()

    @pytest.mark.asyncio
    async def test_ensure_branch(self, vcs: GitVcsProvider, git_repo: Path) -> None:
        assert await vcs.ensure_branch(git_repo, "fleet/feature", "main") == Ok(True)
        assert await vcs.ensure_branch(git_repo, "fleet/feature", "main") == Ok(False)
        assert await vcs.branch_exists(git_repo, "fleet/feature")
        assert not await vcs.branch_exists(git_repo, "fleet/other")

    @pytest.mark.asyncio
    async def test_remotes(self, vcs: GitVcsProvider, git_repo: Path, tmp_path: Path) -> None:
        assert not await vcs.has_remote(git_repo, "origin")

        remote = tmp_path / "remote.git"
        git(tmp_path, "init", "--bare", str(remote))
        git(git_repo, "remote", "add", "origin", str(remote))
        assert await vcs.has_remote(git_repo, "origin")

        assert (await vcs.push_branch(git_repo, "main", "origin")).is_ok()
        assert git(remote, "rev-parse", "main") == git(git_repo, "rev-parse", "main")

    @pytest.mark.asyncio
    async def test_push_without_remote_fails(self, vcs: GitVcsProvider, git_repo: Path) -> None:
        match await vcs.push_branch(git_repo, "main", "origin"):
            case Err(err):
                assert err.message == "Push failed"
                assert err.context["remote"] == "origin"
            case Ok(_):
                pytest.fail("push without a remote should fail")


class TestWorktrees:
    @pytest.mark.asyncio
    async def test_create_and_remove(
        self, vcs: GitVcsProvider, git_repo: Path, tmp_path: Path
    ) -> None:
        path = tmp_path / "worktrees" / "plan-1" / "a"
        created = (await vcs.create_worktree(git_repo, path, "fleet/a", "main")).unwrap()

        assert created == path.resolve()
        assert (path / "README.md").exists()
        assert await vcs.current_branch(path) == Ok("fleet/a")

        assert (await vcs.remove_worktree(git_repo, path)).is_ok()
        assert not path.exists()
        assert (await vcs.prune_worktrees(git_repo)).is_ok()
        assert await vcs.branch_exists(git_repo, "fleet/a")

    @pytest.mark.asyncio
    async def test_checkout_existing_branch(
        self, vcs: GitVcsProvider, git_repo: Path, tmp_path: Path
    ) -> None:
        git(git_repo, "branch", "fleet/feature")
        path = tmp_path / "integration"
        result = await vcs.create_worktree(
            git_repo, path, "fleet/feature", "main", new_branch=False
        )
        assert result.is_ok()
        assert await vcs.current_branch(path) == Ok("fleet/feature")

    @pytest.mark.asyncio
    async def test_duplicate_branch_fails(
        self, vcs: GitVcsProvider, git_repo: Path, tmp_path: Path
    ) -> None:
        git(git_repo, "branch", "fleet/a")
        result = await vcs.create_worktree(git_repo, tmp_path / "wt", "fleet/a", "main")
        assert result.is_err()


class TestCommit:
    @pytest.mark.asyncio
    async def test_clean_tree_commits_nothing(self, vcs: GitVcsProvider, git_repo: Path) -> None:
        assert await vcs.commit_all(git_repo, "noop") == Ok(None)

    @pytest.mark.asyncio
    async def test_commits_untracked_changes(self, vcs: GitVcsProvider, git_repo: Path) -> None:
        (git_repo / "feature.py").write_text("print('hi')\n", encoding="utf-8")
        sha = (await vcs.commit_all(git_repo, "a: Add feature")).unwrap()

        assert sha is not None
        assert sha == git(git_repo, "rev-parse", "HEAD")
        assert git(git_repo, "log", "-1", "--format=%s") == "a: Add feature"


class TestMerge:
    @pytest.mark.asyncio
    async def test_merge_creates_merge_commit(
        self, vcs: GitVcsProvider, git_repo: Path, tmp_path: Path
    ) -> None:
        task = tmp_path / "task-a"
        git(git_repo, "worktree", "add", "-b", "fleet/a", str(task))
        _commit_file(task, "a.txt", "a\n", "a: work")

        sha = (await vcs.merge_branch(git_repo, "fleet/a", "Merge task a")).unwrap()

        assert sha == git(git_repo, "rev-parse", "HEAD")
        assert (git_repo / "a.txt").exists()
        parents = git(git_repo, "rev-list", "--parents", "-n", "1", "HEAD").split()
        assert len(parents) == 3
        assert git(git_repo, "log", "-1", "--format=%s") == "Merge task a"

    @pytest.mark.asyncio
    async def test_conflict_is_aborted(
        self, vcs: GitVcsProvider, git_repo: Path, tmp_path: Path
    ) -> None:
        task = tmp_path / "task-b"
        git(git_repo, "worktree", "add", "-b", "fleet/b", str(task))
        _commit_file(task, "README.md", "# from task\n", "b: edit readme")
        _commit_file(git_repo, "README.md", "# from main\n", "main: edit readme")
        head_before = git(git_repo, "rev-parse", "HEAD")

        match await vcs.merge_branch(git_repo, "fleet/b", "Merge task b"):
            case Err(MergeConflictError() as err):
                assert err.branch == "fleet/b"
                assert [p.name for p in err.conflict_files] == ["README.md"]
            case other:
                pytest.fail(f"expected a merge conflict, got {other!r}")

        assert git(git_repo, "rev-parse", "HEAD") == head_before
        assert git(git_repo, "status", "--porcelain") == ""
        assert (git_repo / "README.md").read_text(encoding="utf-8") == "# from main\n"

    @pytest.mark.asyncio
    async def test_unknown_branch_is_plain_error(
        self, vcs: GitVcsProvider, git_repo: Path
    ) -> None:
        match await vcs.merge_branch(git_repo, "fleet/missing", "Merge"):
            case Err(err):
                assert not isinstance(err, MergeConflictError)
            case Ok(_):
                pytest.fail("merging a missing branch should fail")


class TestParsing:
    def test_parse_status(self) -> None:
        raw = "\0".join(
            [
                "# branch.oid 1234abcd",
                "# branch.head feature",
                "1 M. N... 100644 100644 100644 aaa bbb staged.py",
                "1 .M N... 100644 100644 100644 aaa bbb edited.py",
                "? new.txt",
                "",
            ]
        )
        status = _parse_status(raw, Path("/repo"))
        assert status.branch == "feature"
        assert (status.staged, status.unstaged, status.untracked) == (1, 1, 1)
        assert status.dirty

    def test_parse_clean_status(self) -> None:
        status = _parse_status("# branch.oid 1234abcd\0# branch.head main\0", Path("/repo"))
        assert status.branch == "main"
        assert not status.dirty
