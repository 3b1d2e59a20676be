"""Tests for builds/content_hash.py module.

Uses real git repositories in temporary directories.
"""

import shutil
import subprocess
from pathlib import Path
from unittest.mock import patch

import pytest

from kernel_imagegen.builds.content_hash import (
    GitVcs,
    compute_content_hash,
    is_checkout_tip,
    require_clean,
    require_pushable,
)
from kernel_imagegen.builds.tags import ContentHash
from kernel_imagegen.errors import DIRTY_TREE, DirtyTreeError, VcsError

pytestmark = pytest.mark.skipif(shutil.which("git") is None, reason="git not installed")


def git(repo: Path, *args: str) -> str:
    """Run a git command in a test repository."""
    result = subprocess.run(
        [
            "git",
            "-c",
            "user.name=Test",
            "-c",
            "user.email=test@example.com",
            "-c",
            "commit.gpgsign=false",
            *args,
        ],
        cwd=repo,
        capture_output=True,
        text=True,
        check=True,
    )
    return result.stdout.strip()


@pytest.fixture
def repo(tmp_path: Path) -> Path:
    """A git repository with a 'kernel' build directory and one commit."""
    root = tmp_path / "repo"
    kernel_dir = root / "kernel"
    kernel_dir.mkdir(parents=True)
    (kernel_dir / "Dockerfile").write_text("FROM scratch\n")
    (kernel_dir / "config-6.6.x-x86_64").write_text("CONFIG_FOO=y\n")
    (root / "README").write_text("readme\n")
    git(root, "init", "-q")
    git(root, "add", ".")
    git(root, "commit", "-q", "-m", "initial")
    return root


class TestGitVcs:
    """Tests for GitVcs."""

    def test_tree_hash_matches_ls_tree(self, repo: Path) -> None:
        expected = git(repo, "rev-parse", "HEAD:kernel")
        assert GitVcs().tree_hash(repo / "kernel") == expected

    def test_tree_hash_of_repo_root(self, repo: Path) -> None:
        expected = git(repo, "rev-parse", "HEAD^{tree}")
        assert GitVcs().tree_hash(repo) == expected

    def test_untracked_path(self, repo: Path) -> None:
        (repo / "other").mkdir()
        with pytest.raises(VcsError, match="not tracked"):
            GitVcs().tree_hash(repo / "other")

    def test_not_a_repository(self, tmp_path: Path) -> None:
        with pytest.raises(VcsError):
            GitVcs().tree_hash(tmp_path)

    def test_clean_tree(self, repo: Path) -> None:
        assert GitVcs().is_dirty(repo / "kernel") is False

    def test_modified_tree_is_dirty(self, repo: Path) -> None:
        (repo / "kernel" / "Dockerfile").write_text("FROM alpine\n")
        assert GitVcs().is_dirty(repo / "kernel") is True

    def test_changes_elsewhere_do_not_dirty(self, repo: Path) -> None:
        (repo / "README").write_text("changed\n")
        assert GitVcs().is_dirty(repo / "kernel") is False

    def test_head_commit(self, repo: Path) -> None:
        assert GitVcs().head_commit(repo / "kernel") == git(repo, "rev-parse", "HEAD")

    def test_missing_git_binary(self, repo: Path) -> None:
        with pytest.raises(VcsError, match="Failed to run git"):
            GitVcs(git_bin="definitely-not-git").tree_hash(repo / "kernel")

    def test_resolve_commit(self, repo: Path) -> None:
        branch = git(repo, "rev-parse", "--abbrev-ref", "HEAD")
        assert GitVcs().resolve_commit(repo / "kernel", branch) == git(
            repo, "rev-parse", "HEAD"
        )

    def test_resolve_unknown_ref(self, repo: Path) -> None:
        with pytest.raises(VcsError):
            GitVcs().resolve_commit(repo / "kernel", "no-such-branch")

    def test_is_checkout_tip(self, repo: Path) -> None:
        first = git(repo, "rev-parse", "HEAD")
        branch = git(repo, "rev-parse", "--abbrev-ref", "HEAD")
        git(repo, "commit", "-q", "--allow-empty", "-m", "empty")
        vcs = GitVcs()
        assert is_checkout_tip(repo / "kernel", branch, vcs) is True
        assert is_checkout_tip(repo / "kernel", first, vcs) is False


class TestComputeContentHash:
    """Tests for compute_content_hash function."""

    def test_clean_hash(self, repo: Path) -> None:
        content_hash = compute_content_hash(repo / "kernel")
        assert content_hash == ContentHash(git(repo, "rev-parse", "HEAD:kernel"))

    def test_identical_content_identical_hash(self, repo: Path) -> None:
        assert compute_content_hash(repo / "kernel") == compute_content_hash(
            repo / "kernel"
        )

    def test_edit_changes_hash(self, repo: Path) -> None:
        """Committing a change to a build input changes the hash."""
        before = compute_content_hash(repo / "kernel")

        (repo / "kernel" / "config-6.6.x-x86_64").write_text("CONFIG_FOO=n\n")
        dirty = compute_content_hash(repo / "kernel")
        assert dirty.dirty is True
        assert dirty.tree_hash == before.tree_hash

        git(repo, "commit", "-q", "-am", "change config")
        after = compute_content_hash(repo / "kernel")
        assert after.dirty is False
        assert after.tree_hash != before.tree_hash

    def test_unrelated_edit_keeps_hash(self, repo: Path) -> None:
        before = compute_content_hash(repo / "kernel")
        (repo / "README").write_text("changed\n")
        git(repo, "commit", "-q", "-am", "docs")
        assert compute_content_hash(repo / "kernel") == before

    def test_older_commit_is_never_dirty(self, repo: Path) -> None:
        first = git(repo, "rev-parse", "HEAD")
        (repo / "README").write_text("changed\n")
        git(repo, "commit", "-q", "-am", "docs")
        (repo / "kernel" / "Dockerfile").write_text("FROM alpine\n")
        content_hash = compute_content_hash(repo / "kernel", commit_ref=first)
        assert content_hash.dirty is False

    def test_branch_name_of_tip_is_dirty(self, repo: Path) -> None:
        branch = git(repo, "rev-parse", "--abbrev-ref", "HEAD")
        (repo / "kernel" / "Dockerfile").write_text("FROM alpine\n")
        assert compute_content_hash(repo / "kernel", commit_ref=branch).dirty is True

    def test_other_names_of_tip_are_dirty(self, repo: Path) -> None:
        refs = [
            "HEAD~0",
            git(repo, "rev-parse", "HEAD"),
            git(repo, "rev-parse", "--short", "HEAD"),
        ]
        (repo / "kernel" / "Dockerfile").write_text("FROM alpine\n")
        for ref in refs:
            assert compute_content_hash(repo / "kernel", commit_ref=ref).dirty is True

    def test_custom_vcs(self, tmp_path: Path) -> None:
        """Any VcsBackend can be used."""

        class FakeVcs:
            def tree_hash(self, path: Path, ref: str) -> str:
                return "feed"

            def is_dirty(self, path: Path) -> bool:
                return True

            def head_commit(self, path: Path) -> str:
                return "c0ffee"

        assert compute_content_hash(tmp_path, vcs=FakeVcs()) == ContentHash(
            "feed", dirty=True
        )

    def test_git_timeout(self, tmp_path: Path) -> None:
        with patch(
            "kernel_imagegen.builds.content_hash.subprocess.run",
            side_effect=subprocess.TimeoutExpired(cmd="git", timeout=60),
        ):
            with pytest.raises(VcsError, match="timed out"):
                compute_content_hash(tmp_path)


class TestRequireClean:
    """Tests for require_clean function."""

    def test_clean_passes(self) -> None:
        require_clean(ContentHash("abc123"))

    def test_dirty_raises(self) -> None:
        with pytest.raises(DirtyTreeError, match="not clean") as exc_info:
            require_clean(ContentHash("abc123", dirty=True))
        assert exc_info.value.code == DIRTY_TREE


class TestRequirePushable:
    """Tests for require_pushable function."""

    def test_clean_tip_passes(self, repo: Path) -> None:
        content_hash = compute_content_hash(repo / "kernel")
        require_pushable(repo / "kernel", content_hash)

    def test_branch_name_with_modified_tree_refused(self, repo: Path) -> None:
        branch = git(repo, "rev-parse", "--abbrev-ref", "HEAD")
        (repo / "kernel" / "Dockerfile").write_text("FROM alpine\n")
        content_hash = compute_content_hash(repo / "kernel", commit_ref=branch)
        with pytest.raises(DirtyTreeError, match="not clean"):
            require_pushable(repo / "kernel", content_hash, commit_ref=branch)

    def test_older_commit_with_other_content_refused(self, repo: Path) -> None:
        """Images built from the working tree cannot carry an older hash."""
        first = git(repo, "rev-parse", "HEAD")
        (repo / "kernel" / "config-6.6.x-x86_64").write_text("CONFIG_FOO=n\n")
        git(repo, "commit", "-q", "-am", "change config")

        content_hash = compute_content_hash(repo / "kernel", commit_ref=first)
        with pytest.raises(DirtyTreeError, match="differs from"):
            require_pushable(repo / "kernel", content_hash, commit_ref=first)

    def test_older_commit_with_same_content_passes(self, repo: Path) -> None:
        first = git(repo, "rev-parse", "HEAD")
        (repo / "README").write_text("changed\n")
        git(repo, "commit", "-q", "-am", "docs")

        content_hash = compute_content_hash(repo / "kernel", commit_ref=first)
        require_pushable(repo / "kernel", content_hash, commit_ref=first)

    def test_older_commit_with_modified_tree_refused(self, repo: Path) -> None:
        first = git(repo, "rev-parse", "HEAD")
        (repo / "README").write_text("changed\n")
        git(repo, "commit", "-q", "-am", "docs")
        (repo / "kernel" / "Dockerfile").write_text("FROM alpine\n")

        content_hash = compute_content_hash(repo / "kernel", commit_ref=first)
        with pytest.raises(DirtyTreeError):
            require_pushable(repo / "kernel", content_hash, commit_ref=first)
